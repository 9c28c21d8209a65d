"""
Rule repository - CRUD for automation rules and their execution log.
"""

import json
from datetime import datetime
from typing import Any

from .connection import DatabaseConnection
from .converters import row_to_rule, row_to_rule_execution, to_db_time
from .models import DBRule, DBRuleExecution


class RuleRepository:
    """Repository for automation rules and rule executions."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    # --- Rules CRUD ---

    def add_rule(
        self,
        name: str,
        conditions: list[dict[str, Any]],
        actions: list[dict[str, Any]],
        trigger_type: str = "new_article",
        description: str | None = None,
        priority: int = 0,
        enabled: bool = True,
        user_id: int = 1,
    ) -> int:
        """Add a new rule. Returns rule ID."""
        with self._db.conn() as conn:
            cursor = conn.execute(
                """INSERT INTO automation_rules
                   (user_id, name, description, enabled, trigger_type,
                    conditions, actions, priority)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (user_id, name, description, enabled, trigger_type,
                 json.dumps(conditions), json.dumps(actions), priority)
            )
            return cursor.lastrowid

    def get_rule(self, rule_id: int, user_id: int = 1) -> DBRule | None:
        """Get a single rule by ID."""
        with self._db.conn() as conn:
            row = conn.execute(
                "SELECT * FROM automation_rules WHERE id = ? AND user_id = ?",
                (rule_id, user_id)
            ).fetchone()
            return row_to_rule(row) if row else None

    def get_rules(self, user_id: int = 1, enabled_only: bool = False) -> list[DBRule]:
        """Get a user's rules, highest priority first."""
        query = "SELECT * FROM automation_rules WHERE user_id = ?"
        if enabled_only:
            query += " AND enabled = 1"
        query += " ORDER BY priority DESC, id ASC"
        with self._db.conn() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
            return [row_to_rule(row) for row in rows]

    def update_rule(
        self,
        rule_id: int,
        updated_at: datetime,
        name: str | None = None,
        description: str | None = None,
        clear_description: bool = False,
        enabled: bool | None = None,
        trigger_type: str | None = None,
        conditions: list[dict[str, Any]] | None = None,
        actions: list[dict[str, Any]] | None = None,
        priority: int | None = None,
    ):
        """Update the given fields of a rule."""
        fields: list[str] = []
        params: list[Any] = []
        if name is not None:
            fields.append("name = ?")
            params.append(name)
        if clear_description:
            fields.append("description = NULL")
        elif description is not None:
            fields.append("description = ?")
            params.append(description)
        if enabled is not None:
            fields.append("enabled = ?")
            params.append(enabled)
        if trigger_type is not None:
            fields.append("trigger_type = ?")
            params.append(trigger_type)
        if conditions is not None:
            fields.append("conditions = ?")
            params.append(json.dumps(conditions))
        if actions is not None:
            fields.append("actions = ?")
            params.append(json.dumps(actions))
        if priority is not None:
            fields.append("priority = ?")
            params.append(priority)
        if not fields:
            return

        fields.append("updated_at = ?")
        params.append(to_db_time(updated_at))
        params.append(rule_id)
        with self._db.conn() as conn:
            conn.execute(
                f"UPDATE automation_rules SET {', '.join(fields)} WHERE id = ?",
                params
            )

    def set_enabled(self, rule_ids: list[int], enabled: bool, user_id: int = 1) -> int:
        """Enable or disable rules. Returns number of rows changed."""
        if not rule_ids:
            return 0
        placeholders = ", ".join("?" for _ in rule_ids)
        with self._db.conn() as conn:
            cursor = conn.execute(
                f"""UPDATE automation_rules SET enabled = ?
                    WHERE user_id = ? AND id IN ({placeholders})""",
                (enabled, user_id, *rule_ids)
            )
            return cursor.rowcount

    def delete_rules(self, rule_ids: list[int], user_id: int = 1) -> int:
        """Delete rules (and, by cascade, their executions)."""
        if not rule_ids:
            return 0
        placeholders = ", ".join("?" for _ in rule_ids)
        with self._db.conn() as conn:
            cursor = conn.execute(
                f"DELETE FROM automation_rules WHERE user_id = ? AND id IN ({placeholders})",
                (user_id, *rule_ids)
            )
            return cursor.rowcount

    def record_match(self, rule_id: int, matched_at: datetime):
        """Bump a rule's match counter."""
        with self._db.conn() as conn:
            conn.execute(
                """UPDATE automation_rules
                   SET match_count = match_count + 1, last_matched_at = ?
                   WHERE id = ?""",
                (to_db_time(matched_at), rule_id)
            )

    # --- Execution log (append only) ---

    def add_execution(
        self,
        rule_id: int,
        article_id: int,
        success: bool,
        actions_taken: list[str],
        executed_at: datetime,
        error_message: str | None = None,
    ) -> int:
        """Append an execution record."""
        with self._db.conn() as conn:
            cursor = conn.execute(
                """INSERT INTO rule_executions
                   (rule_id, article_id, success, actions_taken, error_message, executed_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (rule_id, article_id, success, json.dumps(actions_taken),
                 error_message, to_db_time(executed_at))
            )
            return cursor.lastrowid

    def get_executions(self, rule_id: int, limit: int = 50) -> list[DBRuleExecution]:
        """Most recent executions of a rule."""
        with self._db.conn() as conn:
            rows = conn.execute(
                """SELECT * FROM rule_executions WHERE rule_id = ?
                   ORDER BY executed_at DESC, id DESC LIMIT ?""",
                (rule_id, limit)
            ).fetchall()
            return [row_to_rule_execution(row) for row in rows]

    def get_executions_for_article(self, article_id: int) -> list[DBRuleExecution]:
        with self._db.conn() as conn:
            rows = conn.execute(
                "SELECT * FROM rule_executions WHERE article_id = ? ORDER BY id",
                (article_id,)
            ).fetchall()
            return [row_to_rule_execution(row) for row in rows]

    def get_stats(self, rule_id: int) -> dict:
        """Aggregate execution counts for a rule."""
        with self._db.conn() as conn:
            row = conn.execute(
                """SELECT
                       COUNT(*) AS total_executions,
                       COALESCE(SUM(CASE WHEN success THEN 1 ELSE 0 END), 0) AS successful,
                       COALESCE(SUM(CASE WHEN success THEN 0 ELSE 1 END), 0) AS failed,
                       MAX(executed_at) AS last_execution
                   FROM rule_executions WHERE rule_id = ?""",
                (rule_id,)
            ).fetchone()
            return {
                "total_executions": row["total_executions"],
                "successful": row["successful"],
                "failed": row["failed"],
                "last_execution": row["last_execution"],
            }
