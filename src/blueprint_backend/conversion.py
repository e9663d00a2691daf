"""
Blueprint conversion jobs and their scheduling.

This module turns an uploaded PDF into per-page images and page descriptors:
- ConversionScheduler grants each record an exclusive conversion lease and
  runs the job on a worker pool, so the upload request never waits for it
- ConversionJob renders pages in document order, persisting and announcing
  progress after every page, and announces completion exactly once

Job states follow the record's ``status`` column:

    pending -> rendering -> complete
                  |
                  +-> failed (absorbing, no automatic retry)

A failed job leaves progress at its last persisted value. Jobs whose record
was deleted mid-conversion stop at their next write, which the store
rejects.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from functools import partial
from threading import Lock
from typing import Dict, Optional
from uuid import uuid4

from .blueprints import BlueprintStore
from .errors import ConversionAlreadyScheduled, RecordGone, RecordNotFound, RenderError
from .models import ConversionStatus
from .notifications import Notifier
from .object_store import ObjectStore
from .rendering import IMAGE_CONTENT_TYPE, PageRenderer
from .utils import object_key

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_NAME = "document.pdf"


def page_progress(rendered: int, total: int) -> float:
    """Fraction of pages rendered; exactly 1.0 once every page is done."""
    if rendered >= total:
        return 1.0
    return rendered / total


class ConversionJob:
    """
    Converts one blueprint; the sole writer of its pages and progress.

    Attributes:
        id: Job identifier, also the value of the record's conversion lease
        blueprint_id: The record being converted
        creator: Actor the terminal notification is attributed to
    """

    def __init__(
        self,
        blueprint_id: str,
        creator: str,
        blueprints: BlueprintStore,
        store: ObjectStore,
        renderer: PageRenderer,
        notifier: Notifier,
        job_id: Optional[str] = None,
        source_name: str = DEFAULT_SOURCE_NAME,
    ) -> None:
        self.id = job_id or uuid4().hex
        self.blueprint_id = blueprint_id
        self.creator = creator
        self.blueprints = blueprints
        self.store = store
        self.renderer = renderer
        self.notifier = notifier
        self.source_name = source_name

    def run(self) -> ConversionStatus:
        """
        Execute the conversion (runs in a worker thread).

        Returns:
            The terminal state reached: COMPLETE or FAILED
        """
        try:
            self.blueprints.mark_rendering(self.blueprint_id, self.id)
            record = self.blueprints.get(self.blueprint_id)
            source = self.store.get(object_key(record.key_prefix, self.source_name))

            with self.renderer.open(source) as document:
                total = document.page_count
                if total == 0:
                    raise RenderError("Document has no pages")
                logger.info(f"Job {self.id}: rendering {total} pages of blueprint {self.blueprint_id}")

                notice = None
                for index in range(total):
                    page = document.render(index)
                    key = object_key(record.key_prefix, index)
                    self.store.put(key, page.image, IMAGE_CONTENT_TYPE)
                    if index == total - 1:
                        notice = self.notifier.creation_notice(record.project, record.id, self.creator)

                    try:
                        # The terminal notification commits with the write that completes the record.
                        record = self.blueprints.append_page(
                            self.blueprint_id,
                            self.id,
                            index,
                            page.descriptor,
                            page_progress(index + 1, total),
                            on_complete=partial(self.notifier.store.save, notice) if notice else None,
                        )
                    except RecordGone:
                        # The prefix may already have been cleaned up; don't leave this page behind.
                        self.store.delete(key)
                        raise

                    self.notifier.progress(record.project, record.id, record.progress)

            self.notifier.publish_created(notice)
            logger.info(f"Job {self.id}: blueprint {self.blueprint_id} converted")
            return ConversionStatus.COMPLETE
        except (RecordGone, RecordNotFound) as exc:
            logger.warning(f"Job {self.id}: blueprint {self.blueprint_id} no longer writable, stopping: {exc}")
            return ConversionStatus.FAILED
        except Exception as exc:
            logger.exception(f"Job {self.id}: conversion of blueprint {self.blueprint_id} failed")
            self.blueprints.mark_failed(self.blueprint_id, self.id, str(exc))
            return ConversionStatus.FAILED


class ConversionScheduler:
    """
    Runs conversion jobs on a thread pool.

    Thread Safety:
        The lease is claimed in the database before a job is submitted, so two
        schedulers (or two processes) can never run jobs for the same record.
        The in-process future registry is protected by a lock.
    """

    def __init__(
        self,
        blueprints: BlueprintStore,
        store: ObjectStore,
        renderer: PageRenderer,
        notifier: Notifier,
        max_workers: int = 1,
        source_name: str = DEFAULT_SOURCE_NAME,
    ) -> None:
        self.blueprints = blueprints
        self.store = store
        self.renderer = renderer
        self.notifier = notifier
        self.source_name = source_name
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="conversion")
        self._futures: Dict[str, Future] = {}
        self._lock = Lock()

    def schedule(self, blueprint_id: str, creator: str) -> str:
        """
        Claim the record's conversion lease and enqueue its job.

        Returns:
            The job id

        Raises:
            ConversionAlreadyScheduled: If a job already holds the lease
            RuntimeError: If the worker pool is shut down; the record is marked failed
        """
        job = ConversionJob(
            blueprint_id,
            creator,
            self.blueprints,
            self.store,
            self.renderer,
            self.notifier,
            source_name=self.source_name,
        )
        if not self.blueprints.claim_conversion(blueprint_id, job.id):
            raise ConversionAlreadyScheduled(f"Blueprint {blueprint_id} already has a conversion job")

        try:
            future = self._executor.submit(job.run)
        except RuntimeError as exc:
            # Lease is held by a job that will never run.
            self.blueprints.mark_failed(blueprint_id, job.id, f"Conversion could not be queued: {exc}")
            raise
        with self._lock:
            self._futures[job.id] = future
        future.add_done_callback(partial(self._job_finished, job.id))
        logger.info(f"Job {job.id} queued for blueprint {blueprint_id}")
        return job.id

    def _job_finished(self, job_id: str, future: Future) -> None:
        with self._lock:
            self._futures.pop(job_id, None)
        if future.cancelled():
            logger.warning(f"Job {job_id} was cancelled before it started")
        elif future.exception() is not None:
            logger.error(f"Job {job_id} crashed: {future.exception()}")

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued job has finished; False on timeout."""
        with self._lock:
            pending = list(self._futures.values())
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
