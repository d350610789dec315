"""Unit tests for area compliance."""

from datetime import timedelta

import pytest

from src.domain.completion import CompletionStatus
from src.domain.sync import ClientCompletion
from src.services.compliance_service import calculate_area_compliance
from tests.unit.factories import AREA_A, AREA_B, EMPLOYEE, START, TENANT, create_task


async def _compliance(db, now, area_id=AREA_A, days=30):
    return await calculate_area_compliance(
        db, tenant_id=TENANT, area_id=area_id, start=now - timedelta(days=days), end=now, now=now
    )


@pytest.mark.unit
class TestCalculateAreaCompliance:
    """Tests for calculate_area_compliance."""

    @pytest.mark.asyncio
    async def test_empty_area_is_fully_compliant(self, seeded_db):
        result = await _compliance(seeded_db, START)

        assert result.total == 0
        assert result.compliance_rate == 100
        assert result.on_time_rate == 100

    @pytest.mark.asyncio
    async def test_rates(self, seeded_db):
        due = START - timedelta(days=5)
        # On time, late, open and overdue, open and not yet due
        await create_task(seeded_db, now=START, due_date=due, status="completed", completed_at=due + timedelta(hours=3))
        await create_task(seeded_db, now=START, due_date=due, status="completed", completed_at=due + timedelta(days=3))
        await create_task(seeded_db, now=START, due_date=due, status="in_progress")
        await create_task(seeded_db, now=START, due_date=START, status="pending")

        result = await _compliance(seeded_db, START)

        assert (result.total, result.completed, result.pending, result.overdue) == (4, 2, 2, 1)
        assert result.compliance_rate == 50
        assert result.on_time_rate == 50

    @pytest.mark.asyncio
    async def test_excludes_other_areas_templates_and_out_of_range(self, seeded_db):
        await create_task(seeded_db, now=START, area_id=AREA_B, due_date=START - timedelta(days=1))
        await create_task(seeded_db, now=START, is_recurring=True, due_date=START - timedelta(days=1))
        await create_task(seeded_db, now=START, due_date=START - timedelta(days=45))
        await create_task(seeded_db, now=START, due_date=START + timedelta(days=1))
        await create_task(seeded_db, now=START)

        result = await _compliance(seeded_db, START)

        assert result.total == 0

    @pytest.mark.asyncio
    async def test_counts_problem_completions(self, services, clock):
        task = await create_task(services.db, now=clock(), task_id="T1", due_date=START - timedelta(days=1))
        for offline_id, status in (("dev1-1-0001", CompletionStatus.PROBLEM), ("dev1-1-0002", CompletionStatus.OK)):
            item = ClientCompletion(offline_id=offline_id, task_id=task["id"], status=status, completed_at=START)
            await services.ledger.record_completion(EMPLOYEE, item)

        result = await _compliance(services.db, START)

        assert result.with_problems == 1
        assert result.completed == 1
