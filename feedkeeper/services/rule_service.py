"""
Rule service: business logic for automation rule management.

Rule definitions are decoded by the rule engine before they are saved,
so the database only ever holds conditions and actions the engine can run.
"""

import logging
from typing import Any

from fastapi import HTTPException

from ..config import DEFAULT_USER_ID
from ..database import Database
from ..database.converters import utc_now
from ..database.models import DBRule, DBRuleExecution
from ..exceptions import require_rule
from ..rules_engine import (
    RuleEngine,
    RuleFormatError,
    RuleTestResult,
    TriggerType,
    action_to_dict,
    parse_definition,
)

logger = logging.getLogger(__name__)


class RuleService:
    """Service for automation rule business logic."""

    def __init__(self, db: Database, rule_engine: RuleEngine | None = None):
        self.db = db
        self.rule_engine = rule_engine

    @staticmethod
    def _normalize(
        conditions: list[dict[str, Any]],
        actions: list[dict[str, Any]],
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Decode a definition and re-encode it in canonical form. 400 on bad input."""
        try:
            parsed_conditions, parsed_actions = parse_definition(conditions, actions)
        except RuleFormatError as e:
            raise HTTPException(status_code=400, detail=f"Invalid rule: {e}")
        return (
            [c.to_dict() for c in parsed_conditions],
            [action_to_dict(a) for a in parsed_actions],
        )

    # ─────────────────────────────────────────────────────────────
    # CRUD
    # ─────────────────────────────────────────────────────────────

    def list_rules(self, enabled_only: bool = False) -> list[DBRule]:
        return self.db.get_rules(DEFAULT_USER_ID, enabled_only=enabled_only)

    def get_rule(self, rule_id: int) -> DBRule:
        return require_rule(self.db.get_rule(rule_id, DEFAULT_USER_ID))

    def create_rule(
        self,
        name: str,
        conditions: list[dict[str, Any]],
        actions: list[dict[str, Any]],
        trigger_type: TriggerType = TriggerType.NEW_ARTICLE,
        description: str | None = None,
        priority: int = 0,
        enabled: bool = True,
    ) -> DBRule:
        conditions, actions = self._normalize(conditions, actions)
        rule_id = self.db.add_rule(
            name,
            conditions,
            actions,
            trigger_type=trigger_type.value,
            description=description,
            priority=priority,
            enabled=enabled,
            user_id=DEFAULT_USER_ID,
        )
        logger.info(f"Created rule {rule_id} ('{name}')")
        return self.get_rule(rule_id)

    def update_rule(
        self,
        rule_id: int,
        name: str | None = None,
        description: str | None = None,
        enabled: bool | None = None,
        trigger_type: TriggerType | None = None,
        conditions: list[dict[str, Any]] | None = None,
        actions: list[dict[str, Any]] | None = None,
        priority: int | None = None,
    ) -> DBRule:
        """
        Update the given fields of a rule.

        description: empty string clears it, None keeps it. A new
        conditions or actions list is validated together with the stored
        half of the definition.
        """
        rule = self.get_rule(rule_id)

        if conditions is not None or actions is not None:
            new_conditions, new_actions = self._normalize(
                conditions if conditions is not None else rule.conditions,
                actions if actions is not None else rule.actions,
            )
            conditions = new_conditions if conditions is not None else None
            actions = new_actions if actions is not None else None

        self.db.update_rule(
            rule_id,
            utc_now(),
            name=name,
            description=description or None,
            clear_description=description == "",
            enabled=enabled,
            trigger_type=trigger_type.value if trigger_type else None,
            conditions=conditions,
            actions=actions,
            priority=priority,
        )
        return self.get_rule(rule_id)

    def delete_rule(self, rule_id: int) -> None:
        self.get_rule(rule_id)
        self.db.delete_rules([rule_id], DEFAULT_USER_ID)

    def toggle_rule(self, rule_id: int) -> DBRule:
        rule = self.get_rule(rule_id)
        self.db.set_rules_enabled([rule_id], not rule.enabled, DEFAULT_USER_ID)
        return self.get_rule(rule_id)

    # ─────────────────────────────────────────────────────────────
    # Bulk operations
    # ─────────────────────────────────────────────────────────────

    @staticmethod
    def _check_bulk(rule_ids: list[int]):
        if not rule_ids:
            raise HTTPException(status_code=400, detail="No rule IDs provided")
        if len(rule_ids) > 100:
            raise HTTPException(status_code=400, detail="Maximum 100 rules per request")

    def bulk_toggle(self, rule_ids: list[int], enabled: bool) -> int:
        self._check_bulk(rule_ids)
        return self.db.set_rules_enabled(rule_ids, enabled, DEFAULT_USER_ID)

    def bulk_delete(self, rule_ids: list[int]) -> int:
        self._check_bulk(rule_ids)
        return self.db.delete_rules(rule_ids, DEFAULT_USER_ID)

    # ─────────────────────────────────────────────────────────────
    # Dry run and history
    # ─────────────────────────────────────────────────────────────

    def test_rule(
        self,
        conditions: list[dict[str, Any]],
        actions: list[dict[str, Any]],
        limit: int = 10,
    ) -> list[RuleTestResult]:
        """Evaluate an unsaved definition against recent articles without side effects."""
        if not self.rule_engine:
            raise HTTPException(status_code=500, detail="Rule engine not initialized")
        try:
            parsed_conditions, parsed_actions = parse_definition(conditions, actions)
        except RuleFormatError as e:
            raise HTTPException(status_code=400, detail=f"Invalid rule: {e}")
        return self.rule_engine.test_rule(parsed_conditions, parsed_actions, DEFAULT_USER_ID, limit)

    def get_executions(self, rule_id: int, limit: int = 50) -> list[DBRuleExecution]:
        self.get_rule(rule_id)
        return self.db.get_rule_executions(rule_id, limit)

    def get_stats(self, rule_id: int) -> dict:
        self.get_rule(rule_id)
        return self.db.get_rule_stats(rule_id)
