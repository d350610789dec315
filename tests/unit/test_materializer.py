"""Unit tests for the occurrence materializer."""

from datetime import UTC, datetime

import pytest

from src.domain.task import (
    ChecklistItemCreate,
    RecurrenceFrequency,
    RecurrenceRule,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
)
from tests.unit.factories import AREA_A, EMPLOYEE_ID, MANAGER, TENANT


def _daily_template(**fields) -> TaskCreate:
    timezone = fields.pop("timezone", "UTC")
    data = {
        "title": "Check minibar",
        "area_id": AREA_A,
        "assigned_to_id": EMPLOYEE_ID,
        "due_date": datetime(2025, 1, 15, 9, 0, tzinfo=UTC),
        "recurrence_rule": RecurrenceRule(frequency=RecurrenceFrequency.DAILY, timezone=timezone),
        **fields,
    }
    return TaskCreate(**data)


async def _occurrences(services, template_id: str) -> list[dict]:
    return await services.db.list_all_records(
        collection="tasks", filter_query=f'source_task_id = "{template_id}"', sort="recurrence_index"
    )


@pytest.mark.unit
class TestMaterialize:
    """Tests for materializing a single template."""

    @pytest.mark.asyncio
    async def test_creates_occurrences_in_window(self, services):
        template = await services.projection.create_task(MANAGER, _daily_template())

        created = await services.materializer.materialize(template, window_days=3)

        rows = await _occurrences(services, template.id)
        assert created == 4
        assert [row["recurrence_index"] for row in rows] == [0, 1, 2, 3]
        assert rows[0]["due_date"] == "2025-01-15T09:00:00.000000Z"
        assert all(row["status"] == TaskStatus.PENDING for row in rows)
        assert all(row["assigned_to_id"] == EMPLOYEE_ID for row in rows)
        assert all(not row["is_recurring"] for row in rows)

    @pytest.mark.asyncio
    async def test_second_run_creates_nothing(self, services):
        template = await services.projection.create_task(MANAGER, _daily_template())
        await services.materializer.materialize(template, window_days=3)

        assert await services.materializer.materialize(template, window_days=3) == 0
        assert len(await _occurrences(services, template.id)) == 4

    @pytest.mark.asyncio
    async def test_wider_window_only_adds_new_indices(self, services):
        template = await services.projection.create_task(MANAGER, _daily_template())
        await services.materializer.materialize(template, window_days=3)

        created = await services.materializer.materialize(template, window_days=5)

        rows = await _occurrences(services, template.id)
        assert created == 2
        assert [row["recurrence_index"] for row in rows] == [0, 1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_checklist_is_copied_as_pending(self, services):
        payload = _daily_template(
            checklist_items=[ChecklistItemCreate(description="Water"), ChecklistItemCreate(description="Snacks")]
        )
        template = await services.projection.create_task(MANAGER, payload)

        await services.materializer.materialize(template, window_days=1)

        rows = await _occurrences(services, template.id)
        occurrence = await services.projection.get_task(TENANT, rows[0]["id"])
        assert occurrence.has_checklist is True
        assert [item.description for item in occurrence.checklist_items] == ["Water", "Snacks"]
        assert {item.status for item in occurrence.checklist_items} == {"pending"}
        assert {item.task_id for item in occurrence.checklist_items} == {occurrence.id}

    @pytest.mark.asyncio
    async def test_task_without_rule_creates_nothing(self, services):
        task = await services.projection.create_task(MANAGER, TaskCreate(title="One-off", area_id=AREA_A))

        assert await services.materializer.materialize(task) == 0

    @pytest.mark.asyncio
    async def test_duplicate_insert_is_skipped(self, services, monkeypatch):
        template = await services.projection.create_task(MANAGER, _daily_template())
        await services.materializer.materialize(template, window_days=3)

        # Simulate a concurrent run that did not see the rows written above
        async def no_record(**kwargs):
            return None

        async def no_rows(**kwargs):
            return 0

        monkeypatch.setattr(services.db, "get_first_record", no_record)
        monkeypatch.setattr(services.db, "count_records", no_rows)

        assert await services.materializer.materialize(template, window_days=3) == 0
        monkeypatch.undo()
        assert len(await _occurrences(services, template.id)) == 4


@pytest.mark.unit
class TestMaterializeAll:
    @pytest.mark.asyncio
    async def test_processes_active_templates(self, services):
        await services.projection.create_task(MANAGER, _daily_template())
        await services.projection.create_task(MANAGER, TaskCreate(title="One-off", area_id=AREA_A))

        report = await services.materializer.materialize_all()

        assert report.templates_processed == 1
        assert report.occurrences_created == 15
        assert report.failures == []

    @pytest.mark.asyncio
    async def test_cancelled_template_is_skipped(self, services):
        template = await services.projection.create_task(MANAGER, _daily_template())
        await services.projection.update_task(MANAGER, template.id, TaskUpdate(status=TaskStatus.CANCELLED))

        report = await services.materializer.materialize_all()

        assert report.templates_processed == 0

    @pytest.mark.asyncio
    async def test_failing_template_does_not_stop_others(self, services):
        broken = await services.projection.create_task(MANAGER, _daily_template(title="Broken", timezone="Mars/Base"))
        healthy = await services.projection.create_task(MANAGER, _daily_template())

        report = await services.materializer.materialize_all()

        assert report.templates_processed == 2
        assert [failure.template_id for failure in report.failures] == [broken.id]
        assert "Unknown timezone" in report.failures[0].error
        assert len(await _occurrences(services, healthy.id)) == 15
