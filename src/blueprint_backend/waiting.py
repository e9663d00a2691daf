"""
Waiting for a conversion to finish.

Conversion failures are never reported to the uploader, so anything waiting
for completion must bound its wait. Two strategies are offered, matching the
two channels the service exposes:

- ``wait_for_conversion``: bounded polling over a record getter
- ``CompletionWaiter``: a one-shot subscription to the terminal
  ``projects.blueprints.create`` event that falls back to polling when the
  event does not arrive in time (it may have been published before the
  subscription was made)
"""

from __future__ import annotations

import logging
from threading import Event
from typing import Any, Callable, Dict, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from .blueprints import BlueprintRecord
from .errors import ConversionFailed, ConversionTimeout
from .models import ConversionStatus, NotificationType
from .notifications import NOTIFICATION_EVENT, NotificationBus, project_room

logger = logging.getLogger(__name__)

Fetch = Callable[[str], BlueprintRecord]


def _still_converting(record: BlueprintRecord) -> bool:
    return not record.is_complete and record.status != ConversionStatus.FAILED


def wait_for_conversion(fetch: Fetch, blueprint_id: str, timeout: float = 240.0, interval: float = 1.0) -> BlueprintRecord:
    """
    Poll ``fetch(blueprint_id)`` until progress reaches 1.

    Args:
        fetch: Returns the current record, e.g. ``BlueprintStore.get``
        blueprint_id: The blueprint to wait for
        timeout: Seconds after which waiting stops
        interval: Seconds between polls

    Returns:
        The completed record

    Raises:
        ConversionTimeout: If progress is still below 1 after ``timeout``
        ConversionFailed: If the record reports a failed conversion
    """
    retrying = Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry_if_result(_still_converting),
    )
    try:
        record = retrying(fetch, blueprint_id)
    except RetryError as exc:
        last = exc.last_attempt.result()
        raise ConversionTimeout(f"Blueprint {blueprint_id} still at progress {last.progress} after {timeout}s") from exc

    if record.status == ConversionStatus.FAILED:
        raise ConversionFailed(f"Blueprint {blueprint_id} failed at progress {record.progress}: {record.error}")
    return record


class CompletionWaiter:
    """
    One-shot subscriber for the terminal event of a single blueprint.

    Use as a context manager so the subscription is always released::

        with CompletionWaiter(bus, project, blueprint_id) as waiter:
            record = waiter.wait(store.get, timeout=60)
    """

    def __init__(self, bus: NotificationBus, project: str, blueprint_id: str) -> None:
        self.bus = bus
        self.project = project
        self.blueprint_id = blueprint_id
        self.notification: Optional[Dict[str, Any]] = None
        self._received = Event()
        self._connection_id: Optional[str] = None

    def deliver(self, message: Dict[str, Any]) -> None:
        data = message.get("data") or {}
        if (
            message.get("event") == NOTIFICATION_EVENT
            and data.get("type") == NotificationType.BLUEPRINT_CREATE.value
            and data.get("blueprint") == self.blueprint_id
        ):
            self.notification = data
            self._received.set()

    def __enter__(self) -> "CompletionWaiter":
        self._connection_id = self.bus.connect(self)
        self.bus.subscribe(self._connection_id, project_room(self.project))
        return self

    def __exit__(self, *exc_info) -> None:
        if self._connection_id is not None:
            self.bus.disconnect(self._connection_id)
            self._connection_id = None

    def wait(
        self,
        fetch: Fetch,
        timeout: float = 240.0,
        poll_interval: float = 1.0,
        fallback_timeout: Optional[float] = None,
    ) -> BlueprintRecord:
        """
        Wait for the terminal event, then return the fresh record.

        When the event does not arrive within ``timeout`` the record is polled
        for up to ``fallback_timeout`` seconds (default: one poll interval).
        """
        if self._received.wait(timeout):
            return fetch(self.blueprint_id)

        logger.info(f"No completion event for blueprint {self.blueprint_id} after {timeout}s, polling")
        return wait_for_conversion(
            fetch,
            self.blueprint_id,
            timeout=poll_interval if fallback_timeout is None else fallback_timeout,
            interval=poll_interval,
        )
