"""
Referential integrity between blueprints and the tasks located on them.

Tasks reference blueprint pages without a database-level foreign key, so
this module enforces the one rule that matters: a blueprint cannot be
deleted while a live task is located on it. A successful delete is a soft
delete; the blueprint's blobs are removed afterwards by BlobCleanup.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from threading import Lock
from typing import List, Optional

from tenacity import Retrying, before_sleep_log, stop_after_attempt, wait_exponential

from .blueprints import BlueprintRecord, BlueprintStore
from .database import Database
from .errors import DeletionBlocked, RecordNotFound
from .object_store import ObjectStore
from .tasks import count_referencing_tasks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeletionDecision:
    allowed: bool
    reason: Optional[str] = None


class BlobCleanup:
    """
    Removes a deleted blueprint's object-store footprint.

    The ``cleanup_pending`` flag is written together with the soft delete and
    only cleared after the prefix is gone, so a cleanup interrupted by a crash
    or by exhausted retries is picked up again by ``resume_pending``.
    """

    def __init__(
        self,
        blueprints: BlueprintStore,
        store: ObjectStore,
        max_attempts: int = 5,
        backoff_min: float = 1.0,
        backoff_max: float = 30.0,
    ) -> None:
        self.blueprints = blueprints
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="blob-cleanup")
        self._futures: List[Future] = []
        self._lock = Lock()

    def schedule(self, record: BlueprintRecord) -> Future:
        future = self._executor.submit(self.run, record.id, record.key_prefix)
        with self._lock:
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(future)
        future.add_done_callback(self._log_failure)
        return future

    def run(self, blueprint_id: str, key_prefix: str) -> int:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min, max=self.backoff_max),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        removed = retrying(self.store.delete_prefix, key_prefix)
        self.blueprints.mark_cleaned(blueprint_id)
        logger.info(f"Removed {removed} objects of deleted blueprint {blueprint_id}")
        return removed

    def resume_pending(self) -> int:
        """Re-schedule cleanups left unfinished by a previous run."""
        pending = self.blueprints.pending_cleanups()
        for record in pending:
            self.schedule(record)
        if pending:
            logger.info(f"Resumed {len(pending)} pending blob cleanups")
        return len(pending)

    @staticmethod
    def _log_failure(future: Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Blob cleanup failed and stays pending until next start: {future.exception()}")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            pending = list(self._futures)
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class IntegrityGuard:
    def __init__(self, database: Database, blueprints: BlueprintStore, cleanup: BlobCleanup) -> None:
        self.database = database
        self.blueprints = blueprints
        self.cleanup = cleanup

    def can_delete(self, blueprint_id: str) -> DeletionDecision:
        with self.database.connection() as conn:
            referencing = count_referencing_tasks(conn, blueprint_id)
        if referencing:
            return DeletionDecision(allowed=False, reason=DeletionBlocked.code)
        return DeletionDecision(allowed=True)

    def delete(self, blueprint_id: str) -> BlueprintRecord:
        """
        Soft-delete a blueprint no task is located on, then free its blobs.

        The reference check and the soft delete run in one write
        transaction; a task created concurrently either commits first and
        blocks the delete, or runs after it and finds the blueprint gone.

        Raises:
            RecordNotFound: If the blueprint is absent or already deleted
            DeletionBlocked: If at least one live task is located on it
        """
        with self.database.transaction() as conn:
            row = conn.execute("SELECT deleted FROM blueprints WHERE id = ?", (blueprint_id,)).fetchone()
            if row is None or row["deleted"]:
                raise RecordNotFound(f"Blueprint {blueprint_id} not found")

            referencing = count_referencing_tasks(conn, blueprint_id)
            if referencing:
                logger.info(f"Delete of blueprint {blueprint_id} blocked by {referencing} located tasks")
                raise DeletionBlocked(f"{referencing} tasks are located on blueprint {blueprint_id}")

            self.blueprints.soft_delete(conn, blueprint_id)

        record = self.blueprints.get(blueprint_id, include_deleted=True)
        self.cleanup.schedule(record)
        logger.info(f"Blueprint {blueprint_id} deleted, cleanup of {record.key_prefix} scheduled")
        return record
