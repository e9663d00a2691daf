"""
Blueprint record access layer.

The store splits writes in two groups:

- client-facing operations (create, update of the name, soft delete)
- job-owned operations (lease claim, status changes, page appends), which
  only succeed for the job holding the record's conversion lease and only
  while the record is not deleted

Every job-owned write is a single conditional statement or a short
``BEGIN IMMEDIATE`` transaction, so a rejected write leaves the row exactly
as it was.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .database import Database, deserialize_datetime, serialize_datetime
from .errors import ImmutableField, RecordGone, RecordNotFound
from .models import BlueprintPublic, ConversionStatus, PageDescriptor
from .utils import utcnow

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({"name"})


@dataclass
class BlueprintRecord:
    """
    Persisted state of one uploaded blueprint.

    Attributes:
        id: Unique identifier (hex UUID)
        project: Owning project id
        name: Display name, editable by project members
        key_prefix: Object-store prefix of the source document and page images
        creator: Actor who uploaded the document
        progress: Fraction of pages rendered, in [0, 1]
        pages: Page descriptors in document order
        status: Conversion state
        error: Failure message once the conversion failed
        conversion_job: Id of the job holding the conversion lease
        deleted: Soft-delete flag
        cleanup_pending: True until the blob footprint of a deleted record is gone
    """

    id: str
    project: str
    name: str
    key_prefix: str
    creator: str
    progress: float
    status: ConversionStatus
    created_at: datetime
    updated_at: datetime
    pages: List[PageDescriptor] = field(default_factory=list)
    error: Optional[str] = None
    conversion_job: Optional[str] = None
    deleted: bool = False
    cleanup_pending: bool = False

    @property
    def is_complete(self) -> bool:
        return self.progress >= 1

    def to_public(self) -> BlueprintPublic:
        return BlueprintPublic(
            id=self.id,
            name=self.name,
            project=self.project,
            progress=self.progress,
            pages=self.pages,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def _row_to_record(row: sqlite3.Row) -> BlueprintRecord:
    return BlueprintRecord(
        id=row["id"],
        project=row["project"],
        name=row["name"],
        key_prefix=row["key_prefix"],
        creator=row["creator"],
        progress=row["progress"],
        pages=[PageDescriptor.model_validate(page) for page in json.loads(row["pages"] or "[]")],
        status=ConversionStatus(row["status"]),
        error=row["error"],
        conversion_job=row["conversion_job"],
        deleted=bool(row["deleted"]),
        cleanup_pending=bool(row["cleanup_pending"]),
        created_at=deserialize_datetime(row["created_at"]),
        updated_at=deserialize_datetime(row["updated_at"]),
    )


class BlueprintStore:
    def __init__(self, database: Database) -> None:
        self.database = database

    def create(self, name: str, project: str, key_prefix: str, creator: str, blueprint_id: Optional[str] = None) -> BlueprintRecord:
        now = utcnow()
        record = BlueprintRecord(
            id=blueprint_id or uuid4().hex,
            project=project,
            name=name,
            key_prefix=key_prefix,
            creator=creator,
            progress=0.0,
            status=ConversionStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT INTO blueprints (
                    id, project, name, key_prefix, creator, progress, pages,
                    status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, 0, '[]', ?, ?, ?)
                """,
                (
                    record.id,
                    record.project,
                    record.name,
                    record.key_prefix,
                    record.creator,
                    record.status.value,
                    serialize_datetime(now),
                    serialize_datetime(now),
                ),
            )
        logger.info(f"Blueprint {record.id} created in project {project} under {key_prefix}")
        return record

    def get(self, blueprint_id: str, include_deleted: bool = False) -> BlueprintRecord:
        """
        Fetch a record by id.

        Raises:
            RecordNotFound: If no record matches, or it is soft-deleted and
                ``include_deleted`` is False
        """
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM blueprints WHERE id = ?", (blueprint_id,)).fetchone()
        if row is None or (row["deleted"] and not include_deleted):
            raise RecordNotFound(f"Blueprint {blueprint_id} not found")
        return _row_to_record(row)

    def find(self, blueprint_id: str) -> Optional[BlueprintRecord]:
        """Fetch a record whether or not it is deleted; None when absent."""
        try:
            return self.get(blueprint_id, include_deleted=True)
        except RecordNotFound:
            return None

    def list_by_project(self, project: str) -> List[BlueprintRecord]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM blueprints WHERE project = ? AND deleted = 0 ORDER BY created_at DESC",
                (project,),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def update(self, blueprint_id: str, **fields: Any) -> BlueprintRecord:
        """
        Apply a client update.

        Only ``name`` may change after creation; ``pages``, ``progress`` and
        ``key_prefix`` belong to the conversion job. Fields passed as None
        are left unchanged.

        Raises:
            ImmutableField: If any other field is named
            RecordNotFound: If the record is absent or deleted
        """
        forbidden = sorted(set(fields) - MUTABLE_FIELDS)
        if forbidden:
            raise ImmutableField(f"Fields cannot be updated: {', '.join(forbidden)}")

        changes: Dict[str, Any] = {key: value for key, value in fields.items() if value is not None}
        if not changes:
            return self.get(blueprint_id)

        assignments = ", ".join(f"{key} = ?" for key in changes)
        values = [*changes.values(), serialize_datetime(utcnow()), blueprint_id]
        with self.database.connection() as conn:
            cursor = conn.execute(
                f"UPDATE blueprints SET {assignments}, updated_at = ? WHERE id = ? AND deleted = 0",
                values,
            )
            if cursor.rowcount == 0:
                raise RecordNotFound(f"Blueprint {blueprint_id} not found")
        return self.get(blueprint_id)

    def soft_delete(self, conn: sqlite3.Connection, blueprint_id: str) -> bool:
        """
        Mark a record deleted and flag its blob footprint for cleanup.

        Runs on the caller's connection so it commits together with the
        integrity check that cleared it.
        """
        cursor = conn.execute(
            "UPDATE blueprints SET deleted = 1, cleanup_pending = 1, updated_at = ? WHERE id = ? AND deleted = 0",
            (serialize_datetime(utcnow()), blueprint_id),
        )
        return cursor.rowcount > 0

    # Job-owned writes

    def claim_conversion(self, blueprint_id: str, job_id: str) -> bool:
        """Grant the conversion lease to ``job_id``; False when already granted."""
        with self.database.connection() as conn:
            cursor = conn.execute(
                "UPDATE blueprints SET conversion_job = ?, updated_at = ? WHERE id = ? AND conversion_job IS NULL AND deleted = 0",
                (job_id, serialize_datetime(utcnow()), blueprint_id),
            )
            return cursor.rowcount > 0

    def mark_rendering(self, blueprint_id: str, job_id: str) -> None:
        with self.database.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE blueprints SET status = ?, updated_at = ?
                WHERE id = ? AND conversion_job = ? AND deleted = 0 AND status = ?
                """,
                (
                    ConversionStatus.RENDERING.value,
                    serialize_datetime(utcnow()),
                    blueprint_id,
                    job_id,
                    ConversionStatus.PENDING.value,
                ),
            )
            if cursor.rowcount == 0:
                raise RecordGone(f"Blueprint {blueprint_id} cannot start rendering for job {job_id}")

    def append_page(
        self,
        blueprint_id: str,
        job_id: str,
        index: int,
        page: PageDescriptor,
        progress: float,
        on_complete: Optional[Callable[[sqlite3.Connection], None]] = None,
    ) -> BlueprintRecord:
        """
        Append the descriptor of page ``index`` and record the new progress.

        The write is rejected unless the record is live, leased to
        ``job_id``, still rendering, holds exactly ``index`` pages and the new
        progress does not go backwards. Reaching progress 1 completes the
        conversion in the same write, and ``on_complete`` then runs on the
        write transaction: if it raises, the append is rolled back too.

        Raises:
            RecordGone: When any of the conditions above does not hold
        """
        status = ConversionStatus.COMPLETE if progress >= 1 else ConversionStatus.RENDERING
        with self.database.transaction() as conn:
            row = conn.execute("SELECT * FROM blueprints WHERE id = ?", (blueprint_id,)).fetchone()
            if row is None or row["deleted"] or row["conversion_job"] != job_id:
                raise RecordGone(f"Blueprint {blueprint_id} is no longer writable by job {job_id}")
            if row["status"] != ConversionStatus.RENDERING.value:
                raise RecordGone(f"Blueprint {blueprint_id} is {row['status']}, not rendering")

            pages = json.loads(row["pages"] or "[]")
            if len(pages) != index or progress < row["progress"]:
                raise RecordGone(
                    f"Blueprint {blueprint_id} rejected page {index}: has {len(pages)} pages at progress {row['progress']}"
                )

            pages.append(page.model_dump())
            now = serialize_datetime(utcnow())
            conn.execute(
                "UPDATE blueprints SET pages = ?, progress = ?, status = ?, updated_at = ? WHERE id = ?",
                (json.dumps(pages), progress, status.value, now, blueprint_id),
            )
            if status == ConversionStatus.COMPLETE and on_complete is not None:
                on_complete(conn)
            updated = conn.execute("SELECT * FROM blueprints WHERE id = ?", (blueprint_id,)).fetchone()
        return _row_to_record(updated)

    def mark_failed(self, blueprint_id: str, job_id: str, error: str) -> bool:
        """Record a failed conversion; a no-op once the record is deleted."""
        with self.database.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE blueprints SET status = ?, error = ?, updated_at = ?
                WHERE id = ? AND conversion_job = ? AND deleted = 0 AND status != ?
                """,
                (
                    ConversionStatus.FAILED.value,
                    error,
                    serialize_datetime(utcnow()),
                    blueprint_id,
                    job_id,
                    ConversionStatus.COMPLETE.value,
                ),
            )
            return cursor.rowcount > 0

    # Cleanup bookkeeping

    def pending_cleanups(self) -> List[BlueprintRecord]:
        with self.database.connection() as conn:
            rows = conn.execute("SELECT * FROM blueprints WHERE deleted = 1 AND cleanup_pending = 1").fetchall()
        return [_row_to_record(row) for row in rows]

    def mark_cleaned(self, blueprint_id: str) -> None:
        with self.database.connection() as conn:
            conn.execute(
                "UPDATE blueprints SET cleanup_pending = 0, updated_at = ? WHERE id = ?",
                (serialize_datetime(utcnow()), blueprint_id),
            )
