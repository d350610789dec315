"""Unit tests for the completion ledger."""

import asyncio
from datetime import UTC, datetime

import pytest

from src.core.db_client import DatabaseError
from src.core.errors import NotFoundError, SyncErrorCategory, TransientStoreError
from src.domain.completion import CompletionStatus, ProblemReason
from src.domain.sync import ChecklistUpdate, ChecklistUpdateOutcome, ClientCompletion, CompletionOutcome, PushRequest
from src.domain.task import ChecklistStatus, TaskStatus
from src.services.ledger import CompletionLedger
from src.services.notification_service import NotificationType
from src.services.projection import TaskProjection
from tests.unit.factories import (
    EMPLOYEE,
    MANAGER_ID,
    OTHER_EMPLOYEE,
    OTHER_TENANT,
    FailingDispatcher,
    add_checklist_item,
    completion_payload,
    create_task,
)


CLIENT_TIME = datetime(2025, 1, 14, 8, 0, tzinfo=UTC)


def _completion(task_id: str, offline_id: str | None = "dev1-1700000000-abcd", **fields) -> ClientCompletion:
    return ClientCompletion(
        offline_id=offline_id,
        task_id=task_id,
        status=fields.pop("status", CompletionStatus.OK),
        completed_at=fields.pop("completed_at", CLIENT_TIME),
        **fields,
    )


@pytest.mark.unit
class TestRecordCompletion:
    """Tests for recording a single completion."""

    @pytest.mark.asyncio
    async def test_whole_task_completion_uses_server_time(self, services, clock):
        task = await create_task(services.db, now=clock(), task_id="T1")

        recorded = await services.ledger.record_completion(EMPLOYEE, _completion(task["id"]))

        assert recorded.outcome == CompletionOutcome.CREATED
        assert recorded.record.completed_at == CLIENT_TIME
        assert recorded.record.synced_at > CLIENT_TIME
        updated = await services.projection.get_task(EMPLOYEE.tenant_id, "T1")
        assert updated.status == TaskStatus.COMPLETED
        assert updated.completed_by_id == EMPLOYEE.user_id
        assert updated.completed_at == recorded.record.synced_at

    @pytest.mark.asyncio
    async def test_duplicate_offline_id_is_not_reapplied(self, services, clock, dispatcher):
        task = await create_task(services.db, now=clock(), task_id="T1")
        item = _completion(task["id"], status=CompletionStatus.PROBLEM)

        first = await services.ledger.record_completion(EMPLOYEE, item)
        second = await services.ledger.record_completion(EMPLOYEE, item)

        assert first.outcome == CompletionOutcome.CREATED
        assert second.outcome == CompletionOutcome.DUPLICATE
        assert second.record.id == first.record.id
        assert await services.db.count_records(collection="task_completions") == 1
        assert await services.db.count_records(collection="problems") == 1
        assert len(dispatcher.facts) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_produce_one_record(self, services, clock):
        task = await create_task(services.db, now=clock(), task_id="T1")
        item = _completion(task["id"])

        results = await asyncio.gather(
            services.ledger.record_completion(EMPLOYEE, item),
            services.ledger.record_completion(EMPLOYEE, item),
        )

        outcomes = sorted(result.outcome.value for result in results)
        assert outcomes == ["created", "duplicate"]
        assert results[0].record.id == results[1].record.id
        assert await services.db.count_records(collection="task_completions") == 1

    @pytest.mark.asyncio
    async def test_same_offline_id_in_another_tenant_is_independent(self, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")
        await create_task(services.db, now=clock(), task_id="T2", tenant_id=OTHER_TENANT, area_id="area-other")
        other_tenant_user = EMPLOYEE.model_copy(update={"tenant_id": OTHER_TENANT})

        first = await services.ledger.record_completion(EMPLOYEE, _completion("T1"))
        second = await services.ledger.record_completion(other_tenant_user, _completion("T2"))

        assert first.outcome == CompletionOutcome.CREATED
        assert second.outcome == CompletionOutcome.CREATED

    @pytest.mark.asyncio
    async def test_task_in_other_tenant_is_not_found(self, services, clock):
        await create_task(services.db, now=clock(), task_id="T2", tenant_id=OTHER_TENANT, area_id="area-other")

        with pytest.raises(NotFoundError):
            await services.ledger.record_completion(EMPLOYEE, _completion("T2"))

        assert await services.db.count_records(collection="task_completions") == 0

    @pytest.mark.asyncio
    async def test_problem_creates_problem_and_fact(self, services, clock, dispatcher):
        await create_task(services.db, now=clock(), task_id="T1", title="Fix boiler")

        recorded = await services.ledger.record_completion(
            EMPLOYEE,
            _completion(
                "T1",
                status=CompletionStatus.PROBLEM,
                problem_reason=ProblemReason.NO_SUPPLIES,
                problem_description="No descaler left",
            ),
        )

        problem = await services.db.get_first_record(
            collection="problems", filter_query=f'task_completion_id = "{recorded.record.id}"'
        )
        assert problem["reason_category"] == "no_supplies"
        assert problem["description"] == "No descaler left"
        assert problem["status"] == "open"
        assert [fact.type for fact in dispatcher.facts] == [NotificationType.PROBLEM_REPORTED]
        assert dispatcher.facts[0].problem_id == problem["id"]
        assert dispatcher.facts[0].user_id == MANAGER_ID

    @pytest.mark.asyncio
    async def test_problem_reason_defaults_to_other(self, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")

        recorded = await services.ledger.record_completion(
            EMPLOYEE, _completion("T1", status=CompletionStatus.PROBLEM, notes="Door jammed")
        )

        problem = await services.db.get_first_record(
            collection="problems", filter_query=f'task_completion_id = "{recorded.record.id}"'
        )
        assert problem["reason_category"] == "other"
        assert problem["description"] == "Door jammed"

    @pytest.mark.asyncio
    async def test_checklist_completion_updates_item_and_rolls_up(self, services, clock):
        now = clock()
        await create_task(services.db, now=now, task_id="T1", has_checklist=True)
        await add_checklist_item(services.db, task_id="T1", item_id="C1", sort_order=0, now=now)
        await add_checklist_item(services.db, task_id="T1", item_id="C2", sort_order=1, now=now)

        await services.ledger.record_completion(EMPLOYEE, _completion("T1", "dev1-1-0001", checklist_item_id="C1"))
        partial = await services.projection.get_task(EMPLOYEE.tenant_id, "T1")
        await services.ledger.record_completion(
            EMPLOYEE,
            _completion(
                "T1",
                "dev1-1-0002",
                checklist_item_id="C2",
                status=CompletionStatus.PROBLEM,
                problem_reason=ProblemReason.EQUIPMENT_BROKEN,
            ),
        )
        done = await services.projection.get_task(EMPLOYEE.tenant_id, "T1")

        assert partial.status == TaskStatus.IN_PROGRESS
        assert partial.checklist_items[0].status == ChecklistStatus.OK
        assert partial.checklist_items[0].completed_at is not None
        assert done.status == TaskStatus.COMPLETED
        assert done.checklist_items[1].status == ChecklistStatus.PROBLEM
        assert done.checklist_items[1].problem_reason == "equipment_broken"

    @pytest.mark.asyncio
    async def test_checklist_item_of_another_task_is_not_found(self, services, clock):
        now = clock()
        await create_task(services.db, now=now, task_id="T1")
        await create_task(services.db, now=now, task_id="T2")
        await add_checklist_item(services.db, task_id="T2", item_id="C2", now=now)

        with pytest.raises(NotFoundError, match="Checklist item not found"):
            await services.ledger.record_completion(EMPLOYEE, _completion("T1", checklist_item_id="C2"))

    @pytest.mark.asyncio
    async def test_conflicting_completions_keep_both_entries(self, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")

        await services.ledger.record_completion(EMPLOYEE, _completion("T1", "dev1-1-aaaa"))
        await services.ledger.record_completion(
            OTHER_EMPLOYEE, _completion("T1", "dev2-1-bbbb", status=CompletionStatus.PROBLEM)
        )

        history = await services.projection.task_history(EMPLOYEE.tenant_id, "T1")
        task = await services.projection.get_task(EMPLOYEE.tenant_id, "T1")
        assert [entry.offline_id for entry in history] == ["dev2-1-bbbb", "dev1-1-aaaa"]
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_by_id == OTHER_EMPLOYEE.user_id
        assert await services.db.count_records(collection="problems") == 1

    @pytest.mark.asyncio
    async def test_completion_without_offline_id_is_always_new(self, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")

        first = await services.ledger.record_completion(EMPLOYEE, _completion("T1", None))
        second = await services.ledger.record_completion(EMPLOYEE, _completion("T1", None))

        assert first.outcome == second.outcome == CompletionOutcome.CREATED
        assert first.record.id != second.record.id

    @pytest.mark.asyncio
    async def test_dispatch_failure_does_not_fail_completion(self, seeded_db, clock):
        dispatcher = FailingDispatcher()
        projection = TaskProjection(seeded_db, dispatcher, clock)
        ledger = CompletionLedger(seeded_db, projection, dispatcher, clock)
        await create_task(seeded_db, now=clock(), task_id="T1")

        recorded = await ledger.record_completion(EMPLOYEE, _completion("T1", status=CompletionStatus.PROBLEM))

        assert recorded.outcome == CompletionOutcome.CREATED
        assert await seeded_db.count_records(collection="problems") == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_transient(self, services, clock, monkeypatch):
        await create_task(services.db, now=clock(), task_id="T1")

        async def failing_create_record(**kwargs):
            raise DatabaseError("disk I/O error")

        monkeypatch.setattr(services.db, "create_record", failing_create_record)

        with pytest.raises(TransientStoreError, match="resubmitted"):
            await services.ledger.record_completion(EMPLOYEE, _completion("T1"))


@pytest.mark.unit
class TestChecklistUpdate:
    @pytest.mark.asyncio
    async def test_updates_item_with_server_time(self, services, clock):
        now = clock()
        await create_task(services.db, now=now, task_id="T1", has_checklist=True)
        await add_checklist_item(services.db, task_id="T1", item_id="C1", now=now)

        result = await services.ledger.apply_checklist_update(
            EMPLOYEE, ChecklistUpdate(id="C1", status=ChecklistStatus.OK, completed_at=CLIENT_TIME)
        )

        item = await services.db.get_record(collection="checklist_items", record_id="C1")
        assert result.status == ChecklistUpdateOutcome.UPDATED
        assert item["status"] == "ok"
        assert item["completed_at"] > "2025-01-15"

    @pytest.mark.asyncio
    async def test_reset_to_pending_clears_completion(self, services, clock):
        now = clock()
        await create_task(services.db, now=now, task_id="T1", has_checklist=True)
        await add_checklist_item(services.db, task_id="T1", item_id="C1", now=now)
        await services.ledger.apply_checklist_update(EMPLOYEE, ChecklistUpdate(id="C1", status=ChecklistStatus.OK))

        await services.ledger.apply_checklist_update(EMPLOYEE, ChecklistUpdate(id="C1", status=ChecklistStatus.PENDING))

        item = await services.db.get_record(collection="checklist_items", record_id="C1")
        task = await services.projection.get_task(EMPLOYEE.tenant_id, "T1")
        assert item["status"] == "pending"
        assert item["completed_at"] is None
        assert task.status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_item_is_reported_not_found(self, services):
        result = await services.ledger.apply_checklist_update(
            EMPLOYEE, ChecklistUpdate(id="missing", status=ChecklistStatus.OK)
        )

        assert result.status == ChecklistUpdateOutcome.NOT_FOUND


@pytest.mark.unit
class TestPush:
    """Tests for batch push."""

    @pytest.mark.asyncio
    async def test_partial_failure_is_isolated(self, services, clock):
        now = clock()
        await create_task(services.db, now=now, task_id="T1")
        await create_task(services.db, now=now, task_id="T3")
        request = PushRequest(
            completions=[
                completion_payload("dev1-1-0001", "T1"),
                completion_payload("dev1-1-0002", "T-missing"),
                completion_payload("dev1-1-0003", "T3"),
            ]
        )

        response = await services.ledger.push(EMPLOYEE, request)

        assert [(c.offline_id, c.status) for c in response.completions] == [
            ("dev1-1-0001", CompletionOutcome.CREATED),
            ("dev1-1-0003", CompletionOutcome.CREATED),
        ]
        assert len(response.errors) == 1
        assert response.errors[0].offline_id == "dev1-1-0002"
        assert response.errors[0].category == SyncErrorCategory.NOT_FOUND

    @pytest.mark.asyncio
    async def test_resubmitted_batch_reports_duplicates(self, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")
        request = PushRequest(completions=[completion_payload("dev1-1-0001", "T1")])

        first = await services.ledger.push(EMPLOYEE, request)
        second = await services.ledger.push(EMPLOYEE, request)

        assert first.completions[0].status == CompletionOutcome.CREATED
        assert second.completions[0].status == CompletionOutcome.DUPLICATE
        assert second.completions[0].server_id == first.completions[0].server_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "offline_id",
        ["dév1-1700000000-abcd", "007", "a\\b-1", "it's-1", 'say "hi"-1', "true"],
    )
    async def test_opaque_offline_ids_are_recognized_on_resubmission(self, services, clock, offline_id):
        await create_task(services.db, now=clock(), task_id="T1")
        request = PushRequest(completions=[completion_payload(offline_id, "T1")])

        first = await services.ledger.push(EMPLOYEE, request)
        second = await services.ledger.push(EMPLOYEE, request)

        assert first.errors == []
        assert second.errors == []
        assert first.completions[0].status == CompletionOutcome.CREATED
        assert second.completions[0].status == CompletionOutcome.DUPLICATE
        assert second.completions[0].offline_id == offline_id
        assert second.completions[0].server_id == first.completions[0].server_id
        assert await services.db.count_records(collection="task_completions") == 1

    @pytest.mark.asyncio
    async def test_malformed_items_are_reported_individually(self, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")
        request = PushRequest(
            completions=[
                {"offlineId": "dev1-1-0001", "status": "ok"},
                {"taskId": "T1", "status": "ok", "completedAt": "2025-01-15T08:00:00Z"},
                completion_payload("dev1-1-0003", "T1", status="maybe"),
                completion_payload("dev1-1-0004", "T1"),
            ]
        )

        response = await services.ledger.push(EMPLOYEE, request)

        assert [c.offline_id for c in response.completions] == ["dev1-1-0004"]
        assert [e.offline_id for e in response.errors] == ["dev1-1-0001", None, "dev1-1-0003"]
        assert {e.category for e in response.errors} == {SyncErrorCategory.VALIDATION_ERROR}

    @pytest.mark.asyncio
    async def test_items_are_applied_in_submission_order(self, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")
        request = PushRequest(
            completions=[
                completion_payload("dev1-1-0001", "T1", status="problem"),
                completion_payload("dev1-1-0002", "T1", status="ok"),
            ]
        )

        await services.ledger.push(EMPLOYEE, request)

        history = await services.projection.task_history(EMPLOYEE.tenant_id, "T1")
        assert [entry.offline_id for entry in history] == ["dev1-1-0002", "dev1-1-0001"]
        assert history[0].synced_at > history[1].synced_at

    @pytest.mark.asyncio
    async def test_checklist_updates_in_push(self, services, clock):
        now = clock()
        await create_task(services.db, now=now, task_id="T1", has_checklist=True)
        await add_checklist_item(services.db, task_id="T1", item_id="C1", now=now)
        request = PushRequest(
            checklist_updates=[
                {"id": "C1", "status": "ok"},
                {"id": "C-missing", "status": "ok"},
                {"id": "C1", "status": "broken"},
            ]
        )

        response = await services.ledger.push(EMPLOYEE, request)

        assert [(u.id, u.status) for u in response.checklist_updates] == [
            ("C1", ChecklistUpdateOutcome.UPDATED),
            ("C-missing", ChecklistUpdateOutcome.NOT_FOUND),
        ]
        assert response.errors[0].id == "C1"
        assert response.errors[0].category == SyncErrorCategory.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_wire_format(self, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")

        response = await services.ledger.push(
            EMPLOYEE,
            PushRequest(completions=[completion_payload("dev1-1-0001", "T1"), completion_payload("x", "nope")]),
        )
        payload = response.to_wire()

        assert set(payload) == {"completions", "checklistUpdates", "errors", "syncedAt"}
        assert set(payload["completions"][0]) == {"offlineId", "serverId", "status"}
        assert payload["errors"][0]["offlineId"] == "x"
        assert "id" not in payload["errors"][0]
        assert payload["errors"][0]["category"] == "not_found"
