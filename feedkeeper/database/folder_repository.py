"""
Folder repository - folders that group feeds and filed articles.
"""

from .connection import DatabaseConnection
from .converters import row_to_folder
from .models import DBFolder


class FolderRepository:
    """Repository for folder operations."""

    def __init__(self, db: DatabaseConnection):
        self._db = db

    def get_or_create(self, name: str, user_id: int = 1) -> tuple[DBFolder, bool]:
        """Return the folder with this name, creating it if needed."""
        with self._db.conn() as conn:
            row = conn.execute(
                "SELECT * FROM folders WHERE user_id = ? AND name = ?",
                (user_id, name)
            ).fetchone()
            if row:
                return row_to_folder(row), False
            cursor = conn.execute(
                "INSERT INTO folders (user_id, name) VALUES (?, ?)",
                (user_id, name)
            )
            return DBFolder(id=cursor.lastrowid, name=name, user_id=user_id), True

    def get(self, folder_id: int) -> DBFolder | None:
        with self._db.conn() as conn:
            row = conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone()
            return row_to_folder(row) if row else None

    def get_all(self, user_id: int = 1) -> list[DBFolder]:
        with self._db.conn() as conn:
            rows = conn.execute(
                "SELECT * FROM folders WHERE user_id = ? ORDER BY name COLLATE NOCASE",
                (user_id,)
            ).fetchall()
            return [row_to_folder(row) for row in rows]
