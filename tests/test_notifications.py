"""
Tests for the room-scoped notification bus and the notifier.
"""

import threading

import pytest

from blueprint_backend.notifications import (
    NOTIFICATION_EVENT,
    PROGRESS_EVENT,
    parse_room,
    project_room,
)

ROOM = project_room("project-1")


class BrokenSubscriber:
    def deliver(self, message):
        raise ConnectionError("socket closed")


class TestRoomNames:
    def test_project_room(self):
        assert project_room("abc") == "projects/abc/private"

    def test_parse_room(self):
        assert parse_room("projects/abc/private") == ("abc", "private")

    @pytest.mark.parametrize(
        "name",
        ["", None, "projects/abc", "projects//private", "projects/abc/public", "orgs/abc/private", "projects/a/b/private"],
    )
    def test_malformed_rooms(self, name):
        assert parse_room(name) is None


class TestNotificationBus:
    def test_publish_reaches_joined_subscribers_only(self, bus, recording_subscriber):
        joined, idle = recording_subscriber(), recording_subscriber()
        bus.subscribe(bus.connect(joined), ROOM)
        bus.connect(idle)

        assert bus.publish(ROOM, PROGRESS_EVENT, {"progress": 0.5}) == 1
        assert joined.messages == [{"event": PROGRESS_EVENT, "data": {"progress": 0.5}}]
        assert idle.messages == []

    def test_rooms_are_isolated(self, bus, recording_subscriber):
        subscriber = recording_subscriber()
        bus.subscribe(bus.connect(subscriber), project_room("project-2"))

        assert bus.publish(ROOM, PROGRESS_EVENT, {}) == 0
        assert subscriber.messages == []

    def test_subscribe_is_idempotent(self, bus, recording_subscriber):
        subscriber = recording_subscriber()
        connection_id = bus.connect(subscriber)
        bus.subscribe(connection_id, ROOM)
        bus.subscribe(connection_id, ROOM)

        bus.publish(ROOM, PROGRESS_EVENT, {})
        assert len(subscriber.messages) == 1
        assert bus.members(ROOM) == {connection_id}

    def test_subscribe_requires_connection(self, bus):
        with pytest.raises(RuntimeError):
            bus.subscribe("unknown", ROOM)

    def test_no_replay_after_late_join(self, bus, recording_subscriber):
        bus.publish(ROOM, PROGRESS_EVENT, {"progress": 0.5})

        subscriber = recording_subscriber()
        bus.subscribe(bus.connect(subscriber), ROOM)
        assert subscriber.messages == []

    def test_unsubscribe(self, bus, recording_subscriber):
        subscriber = recording_subscriber()
        connection_id = bus.connect(subscriber)
        bus.subscribe(connection_id, ROOM)
        bus.subscribe(connection_id, project_room("project-2"))

        bus.unsubscribe(connection_id, ROOM)
        assert bus.members(ROOM) == set()
        assert bus.members(project_room("project-2")) == {connection_id}

        bus.unsubscribe(connection_id)
        assert bus.members(project_room("project-2")) == set()

    def test_disconnect_leaves_every_room(self, bus, recording_subscriber):
        connection_id = bus.connect(recording_subscriber())
        bus.subscribe(connection_id, ROOM)

        bus.disconnect(connection_id)
        assert bus.members(ROOM) == set()
        assert bus.publish(ROOM, PROGRESS_EVENT, {}) == 0

    def test_failed_delivery_drops_only_that_subscriber(self, bus, recording_subscriber):
        healthy = recording_subscriber()
        broken_id = bus.connect(BrokenSubscriber())
        healthy_id = bus.connect(healthy)
        bus.subscribe(broken_id, ROOM)
        bus.subscribe(healthy_id, ROOM)

        assert bus.publish(ROOM, PROGRESS_EVENT, {}) == 1
        assert len(healthy.messages) == 1
        assert bus.members(ROOM) == {healthy_id}

    def test_concurrent_publishers(self, bus, recording_subscriber):
        subscriber = recording_subscriber()
        bus.subscribe(bus.connect(subscriber), ROOM)

        def publish_many():
            for _ in range(50):
                bus.publish(ROOM, PROGRESS_EVENT, {})

        threads = [threading.Thread(target=publish_many) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(subscriber.messages) == 200


class TestNotifier:
    def test_progress_is_not_persisted(self, bus, notifier, notification_store, recording_subscriber):
        subscriber = recording_subscriber()
        bus.subscribe(bus.connect(subscriber), ROOM)

        assert notifier.progress("project-1", "bp-1", 0.5) == 1
        (event,) = subscriber.events(PROGRESS_EVENT)
        assert event == {
            "type": "projects.blueprints.progress",
            "project": "project-1",
            "blueprint": "bp-1",
            "progress": 0.5,
            "strong": False,
        }
        assert notification_store.list_for_project("project-1") == []

    def test_creation_notice_is_persisted_and_published(
        self, bus, notifier, notification_store, recording_subscriber
    ):
        subscriber = recording_subscriber()
        bus.subscribe(bus.connect(subscriber), ROOM)

        notification = notifier.creation_notice("project-1", "bp-1", "alice")
        notification_store.save(notification)
        notifier.publish_created(notification)

        (event,) = subscriber.events(NOTIFICATION_EVENT)
        assert event["id"] == notification.id
        assert event["type"] == "projects.blueprints.create"
        assert event["creator"] == "alice"
        assert event["strong"] is True
        assert notification_store.list_for_project("project-1") == [notification]

    def test_listing_is_scoped_and_newest_first(self, notifier, notification_store):
        first = notifier.creation_notice("project-1", "bp-1", "alice")
        second = notifier.creation_notice("project-1", "bp-2", "alice")
        for notification in (first, second, notifier.creation_notice("project-2", "bp-3", "bob")):
            notification_store.save(notification)

        listed = notification_store.list_for_project("project-1")
        assert [item.id for item in listed] == [second.id, first.id]
