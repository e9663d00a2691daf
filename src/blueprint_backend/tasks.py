"""
Minimal task persistence for the location relation.

Tasks are owned elsewhere; this store keeps only what the blueprint
pipeline needs: an optional location pointing at a page of a blueprint,
the listing of tasks located on one blueprint, and the reference count the
integrity guard checks before a delete.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from .database import Database, deserialize_datetime, serialize_datetime
from .errors import InvalidTaskLocation, RecordNotFound
from .models import TaskLocation, TaskPublic
from .utils import utcnow


@dataclass
class TaskRecord:
    id: str
    project: str
    description: str
    created_at: datetime
    location: Optional[TaskLocation] = None
    deleted: bool = False

    def to_public(self) -> TaskPublic:
        return TaskPublic(
            id=self.id,
            project=self.project,
            description=self.description,
            location=self.location,
            created_at=self.created_at,
        )


def _row_to_task(row: sqlite3.Row) -> TaskRecord:
    location = None
    if row["location_blueprint"] is not None:
        location = TaskLocation(
            blueprint=row["location_blueprint"],
            page_number=row["location_page"],
            x=row["location_x"],
            y=row["location_y"],
        )
    return TaskRecord(
        id=row["id"],
        project=row["project"],
        description=row["description"],
        location=location,
        deleted=bool(row["deleted"]),
        created_at=deserialize_datetime(row["created_at"]),
    )


def count_referencing_tasks(conn: sqlite3.Connection, blueprint_id: str) -> int:
    """Number of live tasks whose location points at ``blueprint_id``."""
    row = conn.execute(
        "SELECT COUNT(*) AS total FROM tasks WHERE location_blueprint = ? AND deleted = 0",
        (blueprint_id,),
    ).fetchone()
    return row["total"]


class TaskStore:
    def __init__(self, database: Database) -> None:
        self.database = database

    def create_task(
        self,
        project: str,
        description: str = "",
        location: Optional[TaskLocation] = None,
        task_id: Optional[str] = None,
    ) -> TaskRecord:
        """
        Create a task, optionally located on a blueprint page.

        The location is checked inside the same write transaction that inserts
        the task, so a concurrent blueprint delete either sees this task or
        happens before it and makes the location invalid.

        Raises:
            InvalidTaskLocation: If the blueprint is missing, deleted, owned
                by another project, or has no such page
        """
        record = TaskRecord(
            id=task_id or uuid4().hex,
            project=project,
            description=description,
            location=location,
            created_at=utcnow(),
        )
        with self.database.transaction() as conn:
            if location is not None:
                self._check_location(conn, project, location)
            conn.execute(
                """
                INSERT INTO tasks (
                    id, project, description, location_blueprint, location_page,
                    location_x, location_y, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.project,
                    record.description,
                    location.blueprint if location else None,
                    location.page_number if location else None,
                    location.x if location else None,
                    location.y if location else None,
                    serialize_datetime(record.created_at),
                ),
            )
        return record

    @staticmethod
    def _check_location(conn: sqlite3.Connection, project: str, location: TaskLocation) -> None:
        row = conn.execute(
            "SELECT project, pages, deleted FROM blueprints WHERE id = ?",
            (location.blueprint,),
        ).fetchone()
        if row is None or row["deleted"]:
            raise InvalidTaskLocation(f"Blueprint {location.blueprint} does not exist")
        if row["project"] != project:
            raise InvalidTaskLocation(f"Blueprint {location.blueprint} belongs to another project")

        page_count = len(json.loads(row["pages"] or "[]"))
        if location.page_number > page_count:
            raise InvalidTaskLocation(f"Blueprint {location.blueprint} has no page {location.page_number}")

    def get(self, task_id: str) -> TaskRecord:
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ? AND deleted = 0", (task_id,)).fetchone()
        if row is None:
            raise RecordNotFound(f"Task {task_id} not found")
        return _row_to_task(row)

    def list_on_blueprint(self, blueprint_id: str) -> List[TaskRecord]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE location_blueprint = ? AND deleted = 0 ORDER BY created_at",
                (blueprint_id,),
            ).fetchall()
        return [_row_to_task(row) for row in rows]

    def delete(self, task_id: str) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute("UPDATE tasks SET deleted = 1 WHERE id = ? AND deleted = 0", (task_id,))
            return cursor.rowcount > 0
