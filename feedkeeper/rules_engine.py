"""
Rule Evaluation Engine - run user automation rules against new articles.

A rule is a conjunction of conditions plus an ordered list of actions.
Rules run in descending priority order; once a rule with priority above
SHORT_CIRCUIT_PRIORITY matches, lower-priority rules are not evaluated
for that article. Every executed rule leaves a row in rule_executions.

Conditions and actions are closed sets of typed values. Stored JSON is
decoded into them once, so an unknown operator or action type is
rejected when the rule is saved instead of being silently ignored at
evaluation time.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Sequence, assert_never

from .database.converters import utc_now
from .notification_service import Notification, NotificationChannel

if TYPE_CHECKING:
    from .database import Database, DBArticle, DBRule

logger = logging.getLogger(__name__)

# Matching a rule above this priority stops evaluation of the rest.
# Fixed policy; there is no per-user setting for it.
SHORT_CIRCUIT_PRIORITY = 50


class RuleFormatError(ValueError):
    """A stored or submitted rule definition cannot be decoded."""
    pass


class TriggerType(str, Enum):
    NEW_ARTICLE = "new_article"
    KEYWORD_MATCH = "keyword_match"
    FEED_MATCH = "feed_match"
    AUTHOR_MATCH = "author_match"


class ConditionField(str, Enum):
    TITLE = "title"
    CONTENT = "content"
    FEED_ID = "feed_id"
    AUTHOR = "author"
    URL = "url"
    TYPE = "type"
    TAGS = "tags"


class Operator(str, Enum):
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    MATCHES_REGEX = "matches_regex"
    IN = "in"
    NOT_IN = "not_in"


class ActionType(str, Enum):
    MOVE_TO_FOLDER = "move_to_folder"
    ADD_TAG = "add_tag"
    MARK_READ = "mark_read"
    BOOKMARK = "bookmark"
    DELETE = "delete"
    NOTIFY = "notify"


def _enum_value(enum_cls, raw, what: str):
    try:
        return enum_cls(raw)
    except ValueError:
        raise RuleFormatError(f"Unknown {what}: {raw!r}")


# ─────────────────────────────────────────────────────────────
# Conditions
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Condition:
    field: ConditionField
    operator: Operator
    value: Any
    # None means "not given": matching is case sensitive
    case_sensitive: bool | None = None

    @property
    def is_case_sensitive(self) -> bool:
        return self.case_sensitive is not False

    @classmethod
    def from_dict(cls, data: Any) -> "Condition":
        if not isinstance(data, dict):
            raise RuleFormatError(f"Condition must be an object, got {type(data).__name__}")
        if "value" not in data:
            raise RuleFormatError("Condition is missing a value")
        case_sensitive = data.get("case_sensitive")
        if case_sensitive is not None and not isinstance(case_sensitive, bool):
            raise RuleFormatError("case_sensitive must be a boolean")
        return cls(
            field=_enum_value(ConditionField, data.get("field"), "condition field"),
            operator=_enum_value(Operator, data.get("operator"), "condition operator"),
            value=data["value"],
            case_sensitive=case_sensitive,
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "field": self.field.value,
            "operator": self.operator.value,
            "value": self.value,
        }
        if self.case_sensitive is not None:
            data["case_sensitive"] = self.case_sensitive
        return data


@dataclass(frozen=True)
class RuleSubject:
    """The article fields conditions can look at."""
    article_id: int
    feed_id: int
    title: str
    content: str
    author: str
    url: str
    feed_type: str
    tags: tuple[str, ...] = ()

    @classmethod
    def from_article(cls, article: "DBArticle", tags: Sequence[str] = ()) -> "RuleSubject":
        return cls(
            article_id=article.id,
            feed_id=article.feed_id,
            title=article.title or "",
            content=article.content or article.summary or "",
            author=article.author or "",
            url=article.url or "",
            feed_type=article.feed_type or "rss",
            tags=tuple(tags),
        )

    def extract(self, field_name: ConditionField) -> str | int | tuple[str, ...]:
        match field_name:
            case ConditionField.TITLE:
                return self.title
            case ConditionField.CONTENT:
                return self.content
            case ConditionField.FEED_ID:
                return self.feed_id
            case ConditionField.AUTHOR:
                return self.author
            case ConditionField.URL:
                return self.url
            case ConditionField.TYPE:
                return self.feed_type
            case ConditionField.TAGS:
                return self.tags
            case _:
                assert_never(field_name)


def _fold(value: Any, case_sensitive: bool) -> Any:
    if isinstance(value, str) and not case_sensitive:
        return value.lower()
    return value


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _comparable(a: Any, b: Any) -> bool:
    return (isinstance(a, str) and isinstance(b, str)) or (_is_int(a) and _is_int(b))


def _regex_search(pattern: Any, text: str, case_sensitive: bool) -> bool:
    if not isinstance(pattern, str):
        return False
    try:
        return re.search(pattern, text, 0 if case_sensitive else re.IGNORECASE) is not None
    except re.error:
        return False


def _evaluate_scalar(op: Operator, actual: str | int, value: Any, case_sensitive: bool) -> bool:
    match op:
        case Operator.CONTAINS | Operator.NOT_CONTAINS:
            if not (isinstance(actual, str) and isinstance(value, str)):
                return False
            found = _fold(value, case_sensitive) in _fold(actual, case_sensitive)
            return found if op is Operator.CONTAINS else not found
        case Operator.EQUALS | Operator.NOT_EQUALS:
            if not _comparable(actual, value):
                return False
            equal = _fold(actual, case_sensitive) == _fold(value, case_sensitive)
            return equal if op is Operator.EQUALS else not equal
        case Operator.MATCHES_REGEX:
            return isinstance(actual, str) and _regex_search(value, actual, case_sensitive)
        case Operator.IN | Operator.NOT_IN:
            if not isinstance(value, list):
                return False
            candidates = [_fold(v, case_sensitive) for v in value if _comparable(actual, v)]
            found = _fold(actual, case_sensitive) in candidates
            return found if op is Operator.IN else not found
        case _:
            assert_never(op)


def _evaluate_tags(op: Operator, tags: tuple[str, ...], value: Any, case_sensitive: bool) -> bool:
    """Tag conditions test membership rather than string content."""
    folded = {_fold(t, case_sensitive) for t in tags}
    match op:
        case Operator.CONTAINS | Operator.EQUALS:
            return isinstance(value, str) and _fold(value, case_sensitive) in folded
        case Operator.NOT_CONTAINS | Operator.NOT_EQUALS:
            return isinstance(value, str) and _fold(value, case_sensitive) not in folded
        case Operator.MATCHES_REGEX:
            return any(_regex_search(value, tag, case_sensitive) for tag in tags)
        case Operator.IN | Operator.NOT_IN:
            if not isinstance(value, list):
                return False
            wanted = {_fold(v, case_sensitive) for v in value if isinstance(v, str)}
            present = bool(folded & wanted)
            return present if op is Operator.IN else not present
        case _:
            assert_never(op)


def evaluate_condition(condition: Condition, subject: RuleSubject) -> bool:
    """
    Evaluate one condition against an article.

    Total over its input: a bad regex or a value of the wrong type for the
    operator is a non-match, never an exception.
    """
    actual = subject.extract(condition.field)
    if isinstance(actual, tuple):
        return _evaluate_tags(condition.operator, actual, condition.value, condition.is_case_sensitive)
    return _evaluate_scalar(condition.operator, actual, condition.value, condition.is_case_sensitive)


def matches_conditions(conditions: Sequence[Condition], subject: RuleSubject) -> bool:
    """All conditions must hold; no conditions always matches."""
    return all(evaluate_condition(c, subject) for c in conditions)


# ─────────────────────────────────────────────────────────────
# Actions
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MoveToFolder:
    folder_id: int


@dataclass(frozen=True)
class AddTag:
    tag: str


@dataclass(frozen=True)
class MarkRead:
    pass


@dataclass(frozen=True)
class Bookmark:
    pass


@dataclass(frozen=True)
class DeleteArticle:
    pass


@dataclass(frozen=True)
class Notify:
    message: str | None = None


RuleAction = MoveToFolder | AddTag | MarkRead | Bookmark | DeleteArticle | Notify


def parse_action(data: Any) -> RuleAction:
    """Decode a stored action ({"type": ..., "params": {...}})."""
    if not isinstance(data, dict):
        raise RuleFormatError(f"Action must be an object, got {type(data).__name__}")
    action_type = _enum_value(ActionType, data.get("type"), "action type")
    params = data.get("params") or {}
    if not isinstance(params, dict):
        raise RuleFormatError("Action params must be an object")

    match action_type:
        case ActionType.MOVE_TO_FOLDER:
            folder_id = params.get("folder_id")
            if not _is_int(folder_id):
                raise RuleFormatError("move_to_folder requires an integer folder_id")
            return MoveToFolder(folder_id=folder_id)
        case ActionType.ADD_TAG:
            tag = params.get("tag")
            if not isinstance(tag, str) or not tag.strip():
                raise RuleFormatError("add_tag requires a non-empty tag")
            return AddTag(tag=tag.strip())
        case ActionType.MARK_READ:
            return MarkRead()
        case ActionType.BOOKMARK:
            return Bookmark()
        case ActionType.DELETE:
            return DeleteArticle()
        case ActionType.NOTIFY:
            message = params.get("message")
            if message is not None and not isinstance(message, str):
                raise RuleFormatError("notify message must be a string")
            return Notify(message=message)
        case _:
            assert_never(action_type)


def action_to_dict(action: RuleAction) -> dict[str, Any]:
    match action:
        case MoveToFolder(folder_id=folder_id):
            return {"type": ActionType.MOVE_TO_FOLDER.value, "params": {"folder_id": folder_id}}
        case AddTag(tag=tag):
            return {"type": ActionType.ADD_TAG.value, "params": {"tag": tag}}
        case MarkRead():
            return {"type": ActionType.MARK_READ.value, "params": {}}
        case Bookmark():
            return {"type": ActionType.BOOKMARK.value, "params": {}}
        case DeleteArticle():
            return {"type": ActionType.DELETE.value, "params": {}}
        case Notify(message=message):
            params = {"message": message} if message is not None else {}
            return {"type": ActionType.NOTIFY.value, "params": params}
        case _:
            assert_never(action)


# ─────────────────────────────────────────────────────────────
# Rules
# ─────────────────────────────────────────────────────────────

def parse_definition(
    conditions: Sequence[Any],
    actions: Sequence[Any],
) -> tuple[list[Condition], list[RuleAction]]:
    """Decode a rule's conditions and actions, raising RuleFormatError."""
    return [Condition.from_dict(c) for c in conditions], [parse_action(a) for a in actions]


def is_candidate(trigger: TriggerType, conditions: Sequence[Condition]) -> bool:
    """
    Check that a rule's trigger agrees with its own conditions.

    A feed_match rule without a feed_id condition (and so on) is not
    evaluated at all.
    """
    fields = {c.field for c in conditions}
    match trigger:
        case TriggerType.NEW_ARTICLE:
            return True
        case TriggerType.FEED_MATCH:
            return ConditionField.FEED_ID in fields
        case TriggerType.KEYWORD_MATCH:
            return ConditionField.TITLE in fields or ConditionField.CONTENT in fields
        case TriggerType.AUTHOR_MATCH:
            return ConditionField.AUTHOR in fields
        case _:
            assert_never(trigger)


@dataclass(frozen=True)
class CompiledRule:
    id: int
    name: str
    trigger: TriggerType
    conditions: tuple[Condition, ...]
    actions: tuple[RuleAction, ...]
    priority: int

    @classmethod
    def from_db(cls, rule: "DBRule") -> "CompiledRule":
        conditions, actions = parse_definition(rule.conditions, rule.actions)
        return cls(
            id=rule.id,
            name=rule.name,
            trigger=_enum_value(TriggerType, rule.trigger_type, "trigger type"),
            conditions=tuple(conditions),
            actions=tuple(actions),
            priority=rule.priority,
        )


@dataclass
class RuleOutcome:
    """What happened when a matching rule ran against an article."""
    rule_id: int
    article_id: int
    success: bool
    actions_taken: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class RuleTestResult:
    article: "DBArticle"
    would_match: bool
    would_execute_actions: list[dict[str, Any]]


class RuleEngine:
    """Evaluates enabled rules against articles and executes their actions."""

    def __init__(
        self,
        db: "Database",
        notifier: NotificationChannel | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.notifier = notifier
        self._clock = clock

    def load_rules(self, user_id: int) -> list[CompiledRule]:
        """Enabled rules, highest priority first. Undecodable rules are skipped."""
        compiled = []
        for rule in self.db.get_rules(user_id, enabled_only=True):
            try:
                compiled.append(CompiledRule.from_db(rule))
            except RuleFormatError as e:
                logger.warning(f"Skipping rule {rule.id} ('{rule.name}'): {e}")
        return compiled

    def evaluate_articles(self, article_ids: Sequence[int], user_id: int) -> list[RuleOutcome]:
        """Run the user's rules against each article. Rules are loaded once."""
        if not article_ids:
            return []
        rules = self.load_rules(user_id)
        if not rules:
            return []

        outcomes: list[RuleOutcome] = []
        for article_id in article_ids:
            article = self.db.get_article(article_id)
            if article is None:
                continue
            outcomes.extend(self.evaluate(article, rules, user_id))
        return outcomes

    def evaluate(
        self,
        article: "DBArticle",
        rules: Sequence[CompiledRule],
        user_id: int,
    ) -> list[RuleOutcome]:
        """Run already-loaded rules (in the given order) against one article."""
        subject = RuleSubject.from_article(article, self.db.get_article_tags(user_id, article.id))
        outcomes = []

        for rule in rules:
            if not is_candidate(rule.trigger, rule.conditions):
                continue
            if not matches_conditions(rule.conditions, subject):
                continue

            outcome = self._execute(rule, article, user_id)
            outcomes.append(outcome)

            # Later rules see tags added by earlier ones (only actions that ran)
            applied = rule.actions[:len(outcome.actions_taken)]
            added = [a.tag for a in applied if isinstance(a, AddTag) and a.tag not in subject.tags]
            if added:
                subject = replace(subject, tags=subject.tags + tuple(added))

            # A failed rule counts as no match, so it never stops lower rules
            if outcome.success and rule.priority > SHORT_CIRCUIT_PRIORITY:
                logger.debug(
                    f"Rule '{rule.name}' (priority {rule.priority}) matched article {article.id}; "
                    f"skipping lower-priority rules"
                )
                break

        return outcomes

    def _execute(self, rule: CompiledRule, article: "DBArticle", user_id: int) -> RuleOutcome:
        now = self._clock()
        taken: list[str] = []
        try:
            for action in rule.actions:
                taken.append(self._apply(action, rule, article, user_id, now))
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"Rule '{rule.name}' ({rule.id}) failed on article {article.id}: {message}")
            self.db.add_rule_execution(rule.id, article.id, False, taken, now, message)
            return RuleOutcome(rule.id, article.id, success=False, actions_taken=taken, error=message)

        self.db.add_rule_execution(rule.id, article.id, True, taken, now)
        self.db.record_rule_match(rule.id, now)
        logger.info(f"Rule '{rule.name}' matched article {article.id}: {', '.join(taken) or 'no actions'}")
        return RuleOutcome(rule.id, article.id, success=True, actions_taken=taken)

    def _apply(
        self,
        action: RuleAction,
        rule: CompiledRule,
        article: "DBArticle",
        user_id: int,
        now: datetime,
    ) -> str:
        """Execute one action. Returns a short description for the audit log."""
        match action:
            case MoveToFolder(folder_id=folder_id):
                self.db.move_article_to_folder(user_id, article.id, folder_id)
                return f"move_to_folder:{folder_id}"
            case AddTag(tag=tag):
                self.db.add_article_tag(user_id, article.id, tag, source="rule")
                return f"add_tag:{tag}"
            case MarkRead():
                self.db.mark_read(user_id, article.id, now)
                return "mark_read"
            case Bookmark():
                self.db.bookmark_article(user_id, article.id, now)
                return "bookmark"
            case DeleteArticle():
                self.db.delete_article(user_id, article.id, now)
                return "delete"
            case Notify(message=message):
                if self.notifier is None:
                    raise RuntimeError("No notification channel configured")
                self.notifier.enqueue(Notification(
                    user_id=user_id,
                    message=message or f"{rule.name}: {article.title}",
                    created_at=now,
                    rule_id=rule.id,
                    article_id=article.id,
                ))
                return "notify"
            case _:
                assert_never(action)

    def test_rule(
        self,
        conditions: Sequence[Condition],
        actions: Sequence[RuleAction],
        user_id: int,
        limit: int = 10,
    ) -> list[RuleTestResult]:
        """
        Dry run: evaluate conditions against recent articles.

        Uses the same condition evaluation as live runs but executes no
        actions and writes no execution rows.
        """
        results = []
        action_dicts = [action_to_dict(a) for a in actions]
        for article in self.db.get_recent_articles(user_id, limit):
            subject = RuleSubject.from_article(article, self.db.get_article_tags(user_id, article.id))
            would_match = matches_conditions(conditions, subject)
            results.append(RuleTestResult(
                article=article,
                would_match=would_match,
                would_execute_actions=action_dicts if would_match else [],
            ))
        return results
