"""Compliance rollup for an area over a date range.

A read-only aggregation over tasks and completions:
- compliance_rate: completed / total tasks due in the range (100 when there are none)
- on_time_rate: completed no later than the grace period after the due date
- overdue: open tasks whose due date has passed
"""

import logging
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from src.core.clock import parse_iso, to_iso
from src.core.config import Constants
from src.core.db_client import DBClient, or_filter, sanitize_param
from src.core.logging import span
from src.domain.completion import CompletionStatus
from src.domain.task import TaskStatus


logger = logging.getLogger(__name__)


class AreaCompliance(BaseModel):
    """Compliance metrics for one area."""

    area_id: str
    total: int = Field(..., ge=0)
    completed: int = Field(..., ge=0)
    pending: int = Field(..., ge=0)
    overdue: int = Field(..., ge=0)
    with_problems: int = Field(..., ge=0)
    compliance_rate: int = Field(..., ge=0, le=100)
    on_time_rate: int = Field(..., ge=0, le=100)


def _rate(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole > 0 else 100


async def calculate_area_compliance(
    db: DBClient,
    *,
    tenant_id: str,
    area_id: str,
    start: datetime,
    end: datetime,
    now: datetime,
) -> AreaCompliance:
    """Calculate compliance metrics for tasks due in ``[start, end]``."""
    with span("compliance_service.calculate_area_compliance"):
        tasks = await db.list_all_records(
            collection="tasks",
            filter_query=(
                f'tenant_id = "{sanitize_param(tenant_id)}" && area_id = "{sanitize_param(area_id)}"'
                f' && is_recurring = "false" && due_date >= "{to_iso(start)}" && due_date <= "{to_iso(end)}"'
            ),
        )

        open_statuses = {TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value}
        completed = [t for t in tasks if t["status"] == TaskStatus.COMPLETED.value]
        pending = [t for t in tasks if t["status"] in open_statuses]
        overdue = [t for t in pending if parse_iso(t["due_date"]) < now]

        grace = timedelta(days=Constants.ON_TIME_GRACE_DAYS)
        on_time = [
            t
            for t in completed
            if t["completed_at"] and parse_iso(t["completed_at"]) <= parse_iso(t["due_date"]) + grace
        ]

        with_problems = 0
        task_ids = [t["id"] for t in tasks]
        for offset in range(0, len(task_ids), Constants.FILTER_CHUNK_SIZE):
            chunk = task_ids[offset : offset + Constants.FILTER_CHUNK_SIZE]
            with_problems += await db.count_records(
                collection="task_completions",
                filter_query=f'status = "{CompletionStatus.PROBLEM}" && {or_filter("task_id", chunk)}',
            )

        result = AreaCompliance(
            area_id=area_id,
            total=len(tasks),
            completed=len(completed),
            pending=len(pending),
            overdue=len(overdue),
            with_problems=with_problems,
            compliance_rate=_rate(len(completed), len(tasks)),
            on_time_rate=_rate(len(on_time), len(completed)),
        )
        logger.info(
            "Calculated area compliance",
            extra={"tenant_id": tenant_id, "area_id": area_id, "total": result.total, "rate": result.compliance_rate},
        )
        return result
