"""
Tests for the blueprint record access layer and the task location relation.
"""

import pytest

from blueprint_backend.errors import ImmutableField, InvalidTaskLocation, RecordGone, RecordNotFound
from blueprint_backend.models import ConversionStatus, PageDescriptor, PageSize, TaskLocation

PROJECT = "project-1"
JOB = "job-1"
PAGE = PageDescriptor(rotation=0, size=PageSize(unit="pts", width=612, height=792))


@pytest.fixture
def rendering(blueprints):
    """A record leased to JOB and in the rendering state."""
    record = blueprints.create("chicken", PROJECT, "blueprints/chicken", "alice")
    assert blueprints.claim_conversion(record.id, JOB)
    blueprints.mark_rendering(record.id, JOB)
    return record


def soft_delete(database, blueprints, blueprint_id):
    with database.transaction() as conn:
        return blueprints.soft_delete(conn, blueprint_id)


class TestCreateAndRead:
    def test_create_starts_empty(self, blueprints):
        record = blueprints.create("chicken", PROJECT, "blueprints/chicken", "alice")

        fetched = blueprints.get(record.id)
        assert fetched.name == "chicken"
        assert fetched.progress == 0
        assert fetched.pages == []
        assert fetched.status == ConversionStatus.PENDING
        assert fetched.conversion_job is None

    def test_get_unknown_id(self, blueprints):
        with pytest.raises(RecordNotFound):
            blueprints.get("missing")
        assert blueprints.find("missing") is None

    def test_deleted_records_are_hidden(self, database, blueprints):
        kept = blueprints.create("kept", PROJECT, "blueprints/kept", "alice")
        dropped = blueprints.create("dropped", PROJECT, "blueprints/dropped", "alice")
        assert soft_delete(database, blueprints, dropped.id)

        assert [record.id for record in blueprints.list_by_project(PROJECT)] == [kept.id]
        with pytest.raises(RecordNotFound):
            blueprints.get(dropped.id)
        assert blueprints.get(dropped.id, include_deleted=True).deleted is True
        assert blueprints.find(dropped.id).cleanup_pending is True

    def test_list_is_scoped_to_project(self, blueprints):
        blueprints.create("mine", PROJECT, "blueprints/mine", "alice")
        blueprints.create("theirs", "project-2", "blueprints/theirs", "bob")

        assert [record.name for record in blueprints.list_by_project(PROJECT)] == ["mine"]


class TestUpdate:
    def test_rename(self, blueprints):
        record = blueprints.create("chicken", PROJECT, "blueprints/chicken", "alice")
        assert blueprints.update(record.id, name="duck").name == "duck"

    def test_none_leaves_name_unchanged(self, blueprints):
        record = blueprints.create("chicken", PROJECT, "blueprints/chicken", "alice")
        assert blueprints.update(record.id, name=None).name == "chicken"

    @pytest.mark.parametrize("field", ["pages", "progress", "key_prefix", "project"])
    def test_job_owned_fields_are_immutable(self, blueprints, field):
        record = blueprints.create("chicken", PROJECT, "blueprints/chicken", "alice")

        with pytest.raises(ImmutableField):
            blueprints.update(record.id, **{field: "anything"})
        assert blueprints.get(record.id).key_prefix == "blueprints/chicken"

    def test_update_deleted_record(self, database, blueprints):
        record = blueprints.create("chicken", PROJECT, "blueprints/chicken", "alice")
        soft_delete(database, blueprints, record.id)

        with pytest.raises(RecordNotFound):
            blueprints.update(record.id, name="duck")


class TestConversionLease:
    def test_lease_is_granted_once(self, blueprints):
        record = blueprints.create("chicken", PROJECT, "blueprints/chicken", "alice")

        assert blueprints.claim_conversion(record.id, "job-a") is True
        assert blueprints.claim_conversion(record.id, "job-b") is False
        assert blueprints.get(record.id).conversion_job == "job-a"

    def test_deleted_record_cannot_be_leased(self, database, blueprints):
        record = blueprints.create("chicken", PROJECT, "blueprints/chicken", "alice")
        soft_delete(database, blueprints, record.id)

        assert blueprints.claim_conversion(record.id, JOB) is False

    def test_rendering_requires_lease(self, blueprints):
        record = blueprints.create("chicken", PROJECT, "blueprints/chicken", "alice")
        blueprints.claim_conversion(record.id, JOB)

        with pytest.raises(RecordGone):
            blueprints.mark_rendering(record.id, "other-job")


class TestAppendPage:
    def test_appends_in_order(self, blueprints, rendering):
        blueprints.append_page(rendering.id, JOB, 0, PAGE, 0.5)
        record = blueprints.append_page(rendering.id, JOB, 1, PAGE, 1.0)

        assert len(record.pages) == 2
        assert record.progress == 1.0
        assert record.status == ConversionStatus.COMPLETE
        assert record.is_complete

    def test_out_of_order_index_is_rejected(self, blueprints, rendering):
        with pytest.raises(RecordGone):
            blueprints.append_page(rendering.id, JOB, 1, PAGE, 0.5)
        assert blueprints.get(rendering.id).pages == []

    def test_progress_never_decreases(self, blueprints, rendering):
        blueprints.append_page(rendering.id, JOB, 0, PAGE, 0.5)

        with pytest.raises(RecordGone):
            blueprints.append_page(rendering.id, JOB, 1, PAGE, 0.25)
        assert blueprints.get(rendering.id).progress == 0.5

    def test_other_job_is_rejected(self, blueprints, rendering):
        with pytest.raises(RecordGone):
            blueprints.append_page(rendering.id, "other-job", 0, PAGE, 0.5)

    def test_pages_freeze_once_complete(self, blueprints, rendering):
        blueprints.append_page(rendering.id, JOB, 0, PAGE, 1.0)

        with pytest.raises(RecordGone):
            blueprints.append_page(rendering.id, JOB, 1, PAGE, 1.0)
        assert len(blueprints.get(rendering.id).pages) == 1

    def test_append_after_delete_is_rejected(self, database, blueprints, rendering):
        blueprints.append_page(rendering.id, JOB, 0, PAGE, 0.5)
        soft_delete(database, blueprints, rendering.id)

        with pytest.raises(RecordGone):
            blueprints.append_page(rendering.id, JOB, 1, PAGE, 1.0)

        record = blueprints.get(rendering.id, include_deleted=True)
        assert len(record.pages) == 1
        assert record.progress == 0.5

    def test_mark_failed_keeps_progress(self, blueprints, rendering):
        blueprints.append_page(rendering.id, JOB, 0, PAGE, 0.5)

        assert blueprints.mark_failed(rendering.id, JOB, "render error") is True
        record = blueprints.get(rendering.id)
        assert record.status == ConversionStatus.FAILED
        assert record.error == "render error"
        assert record.progress == 0.5

    def test_mark_failed_is_noop_after_delete(self, database, blueprints, rendering):
        soft_delete(database, blueprints, rendering.id)
        assert blueprints.mark_failed(rendering.id, JOB, "late") is False


class TestTaskLocations:
    def test_task_on_rendered_page(self, blueprints, tasks, object_store, make_converted_blueprint):
        record = make_converted_blueprint(blueprints, object_store, page_count=2)

        task = tasks.create_task(PROJECT, "Check beam", TaskLocation(blueprint=record.id, page_number=2, x=0.3, y=0.7))

        assert tasks.get(task.id).location.page_number == 2
        assert [located.id for located in tasks.list_on_blueprint(record.id)] == [task.id]
        assert len(tasks.list_on_blueprint(record.id)) == 1

    def test_task_without_location(self, tasks):
        task = tasks.create_task(PROJECT, "Order bricks")
        assert tasks.get(task.id).location is None

    def test_page_beyond_count_is_rejected(self, blueprints, tasks, object_store, make_converted_blueprint):
        record = make_converted_blueprint(blueprints, object_store, page_count=2)

        with pytest.raises(InvalidTaskLocation):
            tasks.create_task(PROJECT, "", TaskLocation(blueprint=record.id, page_number=3, x=0, y=0))
        assert len(tasks.list_on_blueprint(record.id)) == 0

    def test_deleted_blueprint_is_rejected(self, database, blueprints, tasks, object_store, make_converted_blueprint):
        record = make_converted_blueprint(blueprints, object_store)
        soft_delete(database, blueprints, record.id)

        with pytest.raises(InvalidTaskLocation):
            tasks.create_task(PROJECT, "", TaskLocation(blueprint=record.id, page_number=1, x=0, y=0))

    def test_other_project_blueprint_is_rejected(self, blueprints, tasks, object_store, make_converted_blueprint):
        record = make_converted_blueprint(blueprints, object_store, project="project-2")

        with pytest.raises(InvalidTaskLocation):
            tasks.create_task(PROJECT, "", TaskLocation(blueprint=record.id, page_number=1, x=0, y=0))

    def test_deleted_task_is_not_counted(self, blueprints, tasks, object_store, make_converted_blueprint):
        record = make_converted_blueprint(blueprints, object_store)
        task = tasks.create_task(PROJECT, "", TaskLocation(blueprint=record.id, page_number=1, x=0, y=0))

        assert tasks.delete(task.id) is True
        assert len(tasks.list_on_blueprint(record.id)) == 0
        with pytest.raises(RecordNotFound):
            tasks.get(task.id)
