"""
Room-scoped real-time notifications.

Subscribers (websocket sessions) join rooms named ``projects/<id>/private``.
The conversion job publishes two kinds of events to a blueprint's project
room:

- ``blueprints.progress``: ephemeral progress ticks, never stored
- ``notification``: the envelope carrying the terminal
  ``projects.blueprints.create`` event, which is stored before it is
  published so clients that missed it can list it later

Delivery is best-effort and at-most-once: a subscriber only receives events
published while it is joined, there is no replay.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple
from uuid import uuid4

from .database import Database, deserialize_datetime, serialize_datetime
from .models import NotificationPublic, NotificationType
from .utils import utcnow

logger = logging.getLogger(__name__)

PROGRESS_EVENT = "blueprints.progress"
NOTIFICATION_EVENT = "notification"

ROOM_SCOPE = "projects"
ROOM_VISIBILITIES = ("private",)


def project_room(project: str, visibility: str = "private") -> str:
    return f"{ROOM_SCOPE}/{project}/{visibility}"


def parse_room(name: str) -> Optional[Tuple[str, str]]:
    """Split a room name into (project, visibility); None when malformed."""
    parts = (name or "").split("/")
    if len(parts) != 3 or parts[0] != ROOM_SCOPE or not parts[1] or parts[2] not in ROOM_VISIBILITIES:
        return None
    return parts[1], parts[2]


class Subscriber(Protocol):
    def deliver(self, message: Dict[str, Any]) -> None:
        """Hand a message to the connection; must not block."""


class NotificationBus:
    """
    Track connections and their room memberships.

    Thread Safety:
        Publishers are conversion worker threads while joins happen on the
        event loop, so every registry access goes through one lock. Delivery
        happens outside the lock.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Subscriber] = {}
        self._rooms: Dict[str, Set[str]] = defaultdict(set)
        self._connection_rooms: Dict[str, Set[str]] = defaultdict(set)
        self._lock = Lock()

    def connect(self, subscriber: Subscriber, connection_id: Optional[str] = None) -> str:
        connection_key = connection_id or uuid4().hex
        with self._lock:
            self._connections[connection_key] = subscriber
        return connection_key

    def disconnect(self, connection_id: str) -> None:
        with self._lock:
            self._connections.pop(connection_id, None)
            for room in self._connection_rooms.pop(connection_id, set()):
                self._leave(connection_id, room)

    def subscribe(self, connection_id: str, room: str) -> None:
        """Join a room; joining twice is a no-op."""
        with self._lock:
            if connection_id not in self._connections:
                raise RuntimeError("Connection not registered")
            self._rooms[room].add(connection_id)
            self._connection_rooms[connection_id].add(room)

    def unsubscribe(self, connection_id: str, room: Optional[str] = None) -> None:
        """Leave one room, or every room when ``room`` is None."""
        with self._lock:
            rooms = list(self._connection_rooms.get(connection_id, set())) if room is None else [room]
            for name in rooms:
                self._leave(connection_id, name)
                self._connection_rooms.get(connection_id, set()).discard(name)

    def _leave(self, connection_id: str, room: str) -> None:
        members = self._rooms.get(room)
        if members:
            members.discard(connection_id)
            if not members:
                self._rooms.pop(room, None)

    def members(self, room: str) -> Set[str]:
        with self._lock:
            return set(self._rooms.get(room, set()))

    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> int:
        """
        Deliver ``{"event": event, "data": payload}`` to the room's current members.

        Returns:
            Number of subscribers the message was handed to
        """
        message = {"event": event, "data": payload}
        with self._lock:
            recipients = [
                (connection_id, self._connections[connection_id])
                for connection_id in self._rooms.get(room, set())
                if connection_id in self._connections
            ]

        delivered = 0
        for connection_id, subscriber in recipients:
            try:
                subscriber.deliver(message)
                delivered += 1
            except Exception as exc:
                logger.warning(f"Dropping connection {connection_id} after failed delivery: {exc}")
                self.disconnect(connection_id)
        return delivered


class NotificationStore:
    """Durable (strong) notifications, listed per project."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def save(self, notification: NotificationPublic, conn: Optional[sqlite3.Connection] = None) -> None:
        """Insert a notification, on the caller's transaction when ``conn`` is given."""
        if conn is None:
            with self.database.connection() as own_conn:
                self._insert(own_conn, notification)
        else:
            self._insert(conn, notification)

    @staticmethod
    def _insert(conn: sqlite3.Connection, notification: NotificationPublic) -> None:
        conn.execute(
            """
            INSERT INTO notifications (id, type, creator, strong, project, blueprint, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification.id,
                notification.type.value,
                notification.creator,
                int(notification.strong),
                notification.project,
                notification.blueprint,
                serialize_datetime(notification.created_at),
            ),
        )

    def list_for_project(self, project: str) -> List[NotificationPublic]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE project = ? ORDER BY created_at DESC, rowid DESC",
                (project,),
            ).fetchall()
        return [
            NotificationPublic(
                id=row["id"],
                type=NotificationType(row["type"]),
                creator=row["creator"],
                strong=bool(row["strong"]),
                project=row["project"],
                blueprint=row["blueprint"],
                created_at=deserialize_datetime(row["created_at"]),
            )
            for row in rows
        ]


class Notifier:
    """Builds blueprint events and routes them to the owning project's room."""

    def __init__(self, bus: NotificationBus, store: NotificationStore) -> None:
        self.bus = bus
        self.store = store

    def progress(self, project: str, blueprint: str, progress: float) -> int:
        payload = {
            "type": NotificationType.BLUEPRINT_PROGRESS.value,
            "project": project,
            "blueprint": blueprint,
            "progress": progress,
            "strong": False,
        }
        return self.bus.publish(project_room(project), PROGRESS_EVENT, payload)

    def creation_notice(self, project: str, blueprint: str, creator: str) -> NotificationPublic:
        """Build the terminal creation notification without storing or sending it."""
        return NotificationPublic(
            id=uuid4().hex,
            type=NotificationType.BLUEPRINT_CREATE,
            creator=creator,
            strong=True,
            project=project,
            blueprint=blueprint,
            created_at=utcnow(),
        )

    def publish_created(self, notification: NotificationPublic) -> int:
        return self.bus.publish(
            project_room(notification.project), NOTIFICATION_EVENT, notification.model_dump(mode="json")
        )
