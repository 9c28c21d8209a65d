"""
Settings repository - key/value storage for user settings and the
global refresh schedule.

Values are stored as text; typed accessors fall back to the default when
a stored value does not parse.
"""

from datetime import datetime

from .connection import DatabaseConnection
from .converters import parse_db_time, to_db_time, utc_now

_UPSERT = """INSERT INTO settings (key, value, updated_at)
             VALUES (?, ?, ?)
             ON CONFLICT(key) DO UPDATE SET
             value = excluded.value, updated_at = excluded.updated_at"""


class SettingsRepository:
    """Repository for application settings."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    def get(self, key: str, default: str | None = None) -> str | None:
        with self._db.conn() as conn:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
            if row is None or row["value"] is None:
                return default
            return row["value"]

    def get_int(self, key: str, default: int, minimum: int | None = None) -> int:
        raw = self.get(key)
        try:
            value = int(raw) if raw is not None else default
        except ValueError:
            value = default
        return max(minimum, value) if minimum is not None else value

    def get_datetime(self, key: str) -> datetime | None:
        return parse_db_time(self.get(key))

    def set(self, key: str, value: str | int | datetime | None):
        self.set_many({key: value})

    def set_many(self, values: dict[str, str | int | datetime | None]):
        """Write several settings in one transaction."""
        updated_at = to_db_time(utc_now())
        with self._db.conn() as conn:
            conn.executemany(
                _UPSERT,
                [(key, _encode(value), updated_at) for key, value in values.items()]
            )

    def get_all(self) -> dict[str, str]:
        with self._db.conn() as conn:
            rows = conn.execute(
                "SELECT key, value FROM settings WHERE value IS NOT NULL"
            ).fetchall()
            return {row["key"]: row["value"] for row in rows}


def _encode(value: str | int | datetime | None) -> str | None:
    if isinstance(value, datetime):
        return to_db_time(value)
    if value is None:
        return None
    return str(value)
