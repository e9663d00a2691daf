"""Project membership gate used before any blueprint state is read or mutated."""

from __future__ import annotations

from typing import Optional

from .database import Database


class AccessControl:
    """
    Yes/no membership check for a project.

    The role hierarchy lives with the project service; any role counts as
    membership here.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def add_member(self, project: str, actor: str, role: str = "member") -> None:
        with self.database.connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO project_members (project, actor, role) VALUES (?, ?, ?)",
                (project, actor, role),
            )

    def remove_member(self, project: str, actor: str) -> None:
        with self.database.connection() as conn:
            conn.execute("DELETE FROM project_members WHERE project = ? AND actor = ?", (project, actor))

    def member_type(self, project: str, actor: Optional[str]) -> Optional[str]:
        if not actor:
            return None
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT role FROM project_members WHERE project = ? AND actor = ?",
                (project, actor),
            ).fetchone()
        return row["role"] if row else None

    def is_member(self, project: str, actor: Optional[str]) -> bool:
        return self.member_type(project, actor) is not None
