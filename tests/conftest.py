"""
Pytest configuration and fixtures for Blueprint Backend tests.

Every test gets its own database, object store and application, so no state
leaks between tests.
"""

from uuid import uuid4

import fitz
import pytest
from fastapi.testclient import TestClient

from blueprint_backend.blueprints import BlueprintStore
from blueprint_backend.configuration import load_config
from blueprint_backend.database import Database
from blueprint_backend.main import create_app
from blueprint_backend.models import PageDescriptor, PageSize
from blueprint_backend.notifications import NotificationBus, NotificationStore, Notifier
from blueprint_backend.object_store import LocalObjectStore
from blueprint_backend.rendering import PageRenderer
from blueprint_backend.tasks import TaskStore
from blueprint_backend.utils import object_key

PROJECT = "project-1"
OTHER_PROJECT = "project-2"
MEMBER_TOKEN = "alice-token"
OUTSIDER_TOKEN = "mallory-token"


def make_pdf(page_count: int = 3, width: float = 612, height: float = 792, rotation: int = 0) -> bytes:
    """Build a small PDF with ``page_count`` labelled pages."""
    document = fitz.open()
    for number in range(page_count):
        page = document.new_page(width=width, height=height)
        page.insert_text((72, 72), f"Sheet A-{number + 1}")
        if rotation:
            page.set_rotation(rotation)
    data = document.tobytes()
    document.close()
    return data


class RecordingSubscriber:
    """Bus subscriber that keeps every message it receives."""

    def __init__(self):
        self.messages = []

    def deliver(self, message):
        self.messages.append(message)

    def events(self, name):
        return [message["data"] for message in self.messages if message["event"] == name]


@pytest.fixture
def recording_subscriber():
    """Factory for subscribers that record what they receive."""
    return RecordingSubscriber


@pytest.fixture
def config(tmp_path):
    """Configuration pointing every resource at the test's temp directory."""
    return load_config(
        {
            "app": {"log_level": "WARNING"},
            "database": {"path": str(tmp_path / "blueprints.db")},
            "storage": {"backend": "local", "local_root": str(tmp_path / "objects")},
            "conversion": {"max_workers": 1, "zoom": 0.5},
            "cleanup": {"max_attempts": 2, "backoff_min": 0, "backoff_max": 0},
        }
    )


@pytest.fixture
def app(config):
    return create_app(config)


@pytest.fixture
def client(app):
    """Test client with the application lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
def member_headers(services):
    """Auth headers of an actor belonging to PROJECT."""
    services.tokens.create_token("alice", token=MEMBER_TOKEN)
    services.access.add_member(PROJECT, "alice")
    return {"Authorization": f"Bearer {MEMBER_TOKEN}"}


@pytest.fixture
def outsider_headers(services):
    """Auth headers of an authenticated actor outside PROJECT."""
    services.tokens.create_token("mallory", token=OUTSIDER_TOKEN)
    services.access.add_member(OTHER_PROJECT, "mallory")
    return {"Authorization": f"Bearer {OUTSIDER_TOKEN}"}


@pytest.fixture
def pdf_factory():
    return make_pdf


@pytest.fixture
def sample_pdf():
    return make_pdf(3)


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "unit.db")


@pytest.fixture
def blueprints(database):
    return BlueprintStore(database)


@pytest.fixture
def tasks(database):
    return TaskStore(database)


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(tmp_path / "unit-objects")


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def notification_store(database):
    return NotificationStore(database)


@pytest.fixture
def notifier(bus, notification_store):
    return Notifier(bus, notification_store)


@pytest.fixture
def renderer():
    return PageRenderer(zoom=0.5)


@pytest.fixture
def make_converted_blueprint():
    """
    Factory storing a fully converted blueprint without running a job.

    Returns the record as persisted after its last page.
    """

    def factory(store: BlueprintStore, objects, project: str = PROJECT, page_count: int = 2, name: str = "plans"):
        blueprint_id = uuid4().hex
        record = store.create(name, project, object_key("blueprints", blueprint_id), "alice", blueprint_id)
        job_id = "fixture-job"
        assert store.claim_conversion(record.id, job_id)
        store.mark_rendering(record.id, job_id)
        descriptor = PageDescriptor(rotation=0, size=PageSize(unit="pts", width=612, height=792))
        for index in range(page_count):
            objects.put(object_key(record.key_prefix, index), b"\x89PNG fake", "image/png")
            record = store.append_page(record.id, job_id, index, descriptor, (index + 1) / page_count)
        return record

    return factory
