"""Task projection: current task and checklist state clients pull.

State is derived from ledger facts (completions) plus direct edits by
managers. Authoritative timestamps always come from the server clock.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from src.core.clock import Clock, to_iso, utc_now
from src.core.config import constants
from src.core.db_client import DBClient, or_filter, sanitize_param
from src.core.errors import NotFoundError, PermissionDeniedError
from src.core.logging import span
from src.domain.completion import CompletionRecord
from src.domain.task import ChecklistItem, ChecklistStatus, Task, TaskCreate, TaskStatus, TaskUpdate
from src.domain.user import Identity
from src.services.notification_service import (
    NotificationDispatcher,
    NotificationFact,
    NotificationType,
    dispatch_safely,
)


logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

# Fields a non-privileged caller may change on a task
EMPLOYEE_EDITABLE_FIELDS = frozenset({"status"})


def derive_task_status(current: TaskStatus, item_statuses: list[ChecklistStatus]) -> TaskStatus:
    """Roll checklist item statuses up into a task status.

    A completed or cancelled task is never changed by roll-up.
    """
    if current in TERMINAL_STATUSES or not item_statuses:
        return current
    done = [status for status in item_statuses if status != ChecklistStatus.PENDING]
    if len(done) == len(item_statuses):
        return TaskStatus.COMPLETED
    if done:
        return TaskStatus.IN_PROGRESS
    return current


def _task_filter(tenant_id: str, task_id: str) -> str:
    return f'tenant_id = "{sanitize_param(tenant_id)}" && id = "{sanitize_param(task_id)}"'


class TaskProjection:
    """Reads and writes the task read model."""

    def __init__(self, db: DBClient, dispatcher: NotificationDispatcher, now: Clock = utc_now) -> None:
        self._db = db
        self._dispatcher = dispatcher
        self._now = now

    async def get_task_record(self, tenant_id: str, task_id: str) -> dict[str, Any]:
        """Fetch a raw task row, raising NotFoundError when absent or in another tenant."""
        record = await self._db.get_first_record(collection="tasks", filter_query=_task_filter(tenant_id, task_id))
        if record is None:
            msg = f"Task not found: {task_id}"
            raise NotFoundError(msg)
        return record

    async def get_task(self, tenant_id: str, task_id: str) -> Task:
        """Fetch a task with its checklist items."""
        record = await self.get_task_record(tenant_id, task_id)
        tasks = await self.attach_checklists([record])
        return tasks[0]

    async def get_checklist_item_record(self, tenant_id: str, item_id: str) -> dict[str, Any] | None:
        return await self._db.get_first_record(
            collection="checklist_items",
            filter_query=f'tenant_id = "{sanitize_param(tenant_id)}" && id = "{sanitize_param(item_id)}"',
        )

    async def attach_checklists(self, records: list[dict[str, Any]]) -> list[Task]:
        """Build Task models with their checklist items denormalized onto them."""
        task_ids = [record["id"] for record in records]
        items_by_task: dict[str, list[dict[str, Any]]] = {task_id: [] for task_id in task_ids}

        for start in range(0, len(task_ids), constants.FILTER_CHUNK_SIZE):
            chunk = task_ids[start : start + constants.FILTER_CHUNK_SIZE]
            items = await self._db.list_all_records(
                collection="checklist_items",
                filter_query=or_filter("task_id", chunk),
                sort="task_id, sort_order",
            )
            for item in items:
                items_by_task[item["task_id"]].append(item)

        return [Task(**record, checklist_items=items_by_task[record["id"]]) for record in records]

    async def create_task(self, identity: Identity, payload: TaskCreate) -> Task:
        """Create a task (optionally a recurring template) with its checklist."""
        with span("task_projection.create_task"):
            if not identity.is_privileged:
                msg = "Only managers and admins can create tasks"
                raise PermissionDeniedError(msg)

            async with self._db.transaction():
                tenant = sanitize_param(identity.tenant_id)
                area = await self._db.get_first_record(
                    collection="areas",
                    filter_query=f'tenant_id = "{tenant}" && id = "{sanitize_param(payload.area_id)}"',
                )
                if area is None:
                    msg = f"Area not found: {payload.area_id}"
                    raise NotFoundError(msg)

                now = self._now()
                record = await self._db.create_record(
                    collection="tasks",
                    data={
                        "tenant_id": identity.tenant_id,
                        "area_id": payload.area_id,
                        "title": payload.title,
                        "description": payload.description,
                        "type": payload.type.value,
                        "priority": payload.priority.value,
                        "status": TaskStatus.PENDING.value,
                        "assigned_to_id": payload.assigned_to_id,
                        "created_by_id": identity.user_id,
                        "due_date": payload.due_date,
                        "scheduled_time": payload.scheduled_time,
                        "recurrence_rule": payload.recurrence_rule.to_wire() if payload.recurrence_rule else None,
                        "is_recurring": payload.recurrence_rule is not None,
                        "has_checklist": bool(payload.checklist_items),
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                for position, item in enumerate(payload.checklist_items):
                    await self._db.create_record(
                        collection="checklist_items",
                        data={
                            "tenant_id": identity.tenant_id,
                            "task_id": record["id"],
                            "description": item.description,
                            "sort_order": position,
                            "status": ChecklistStatus.PENDING.value,
                            "created_at": now,
                            "updated_at": now,
                        },
                    )

            task = await self.get_task(identity.tenant_id, record["id"])
            logger.info("Created task", extra={"tenant_id": identity.tenant_id, "task_id": task.id})

            if task.assigned_to_id:
                await self._emit_assigned(task)
            return task

    async def update_task(self, identity: Identity, task_id: str, payload: TaskUpdate) -> Task:
        """Apply an edit. Non-privileged callers may only change the status."""
        with span("task_projection.update_task"):
            changes = payload.model_dump(exclude_unset=True)
            if not identity.is_privileged and set(changes) - EMPLOYEE_EDITABLE_FIELDS:
                msg = "Only managers and admins can edit task details"
                raise PermissionDeniedError(msg)

            async with self._db.transaction():
                current = await self.get_task_record(identity.tenant_id, task_id)
                now = self._now()
                data: dict[str, Any] = {}
                for field, value in changes.items():
                    data[field] = value.value if isinstance(value, Enum) else value

                if "recurrence_rule" in changes:
                    rule = payload.recurrence_rule
                    data["recurrence_rule"] = rule.to_wire() if rule else None
                    data["is_recurring"] = rule is not None

                if payload.status == TaskStatus.COMPLETED and current["status"] != TaskStatus.COMPLETED.value:
                    data["completed_at"] = now
                    data["completed_by_id"] = identity.user_id
                elif "status" in changes and payload.status != TaskStatus.COMPLETED:
                    data["completed_at"] = None
                    data["completed_by_id"] = None

                if not data:
                    return await self.get_task(identity.tenant_id, task_id)

                data["updated_at"] = now
                await self._db.update_record(collection="tasks", record_id=task_id, data=data)

            task = await self.get_task(identity.tenant_id, task_id)
            logger.info(
                "Updated task",
                extra={"tenant_id": identity.tenant_id, "task_id": task_id, "fields": sorted(changes)},
            )

            if task.assigned_to_id and task.assigned_to_id != current["assigned_to_id"]:
                await self._emit_assigned(task)
            return task

    async def mark_task_completed(self, task_id: str, *, user_id: str, now: datetime) -> None:
        """Whole-task completion. Last writer wins."""
        await self._db.update_record(
            collection="tasks",
            record_id=task_id,
            data={
                "status": TaskStatus.COMPLETED.value,
                "completed_at": now,
                "completed_by_id": user_id,
                "updated_at": now,
            },
        )

    async def apply_checklist_status(
        self,
        *,
        tenant_id: str,
        item_id: str,
        status: ChecklistStatus,
        user_id: str,
        now: datetime,
        problem_reason: str | None = None,
    ) -> ChecklistItem | None:
        """Set a checklist item's status and roll the change up to its task.

        Returns:
            The updated item, or None when it does not exist in the tenant
        """
        item = await self.get_checklist_item_record(tenant_id, item_id)
        if item is None:
            return None

        is_done = status != ChecklistStatus.PENDING
        updated = await self._db.update_record(
            collection="checklist_items",
            record_id=item_id,
            data={
                "status": status.value,
                "completed_at": now if is_done else None,
                "completed_by_id": user_id if is_done else None,
                "problem_reason": problem_reason if status == ChecklistStatus.PROBLEM else None,
                "updated_at": now,
            },
        )
        await self.recompute_task_status(item["task_id"], user_id=user_id, now=now)
        return ChecklistItem(**updated)

    async def recompute_task_status(self, task_id: str, *, user_id: str, now: datetime) -> TaskStatus:
        """Recompute a task's status from its checklist items."""
        task = await self._db.get_record(collection="tasks", record_id=task_id)
        items = await self._db.list_all_records(
            collection="checklist_items", filter_query=f'task_id = "{sanitize_param(task_id)}"'
        )
        current = TaskStatus(task["status"])
        derived = derive_task_status(current, [ChecklistStatus(item["status"]) for item in items])
        if derived == current:
            return current

        data: dict[str, Any] = {"status": derived.value, "updated_at": now}
        if derived == TaskStatus.COMPLETED:
            data["completed_at"] = now
            data["completed_by_id"] = user_id
        await self._db.update_record(collection="tasks", record_id=task_id, data=data)
        logger.info("Task status rolled up", extra={"task_id": task_id, "from": current.value, "to": derived.value})
        return derived

    async def copy_checklist_items(
        self, *, tenant_id: str, source_task_id: str, target_task_id: str, now: datetime
    ) -> int:
        """Copy a template's checklist items onto an occurrence as fresh pending items."""
        items = await self._db.list_all_records(
            collection="checklist_items",
            filter_query=f'task_id = "{sanitize_param(source_task_id)}"',
            sort="sort_order",
        )
        for item in items:
            await self._db.create_record(
                collection="checklist_items",
                data={
                    "tenant_id": tenant_id,
                    "task_id": target_task_id,
                    "description": item["description"],
                    "sort_order": item["sort_order"],
                    "status": ChecklistStatus.PENDING.value,
                    "created_at": now,
                    "updated_at": now,
                },
            )
        return len(items)

    async def list_tasks(self, *, filter_query: str, sort: str = "updated_at") -> list[Task]:
        records = await self._db.list_all_records(collection="tasks", filter_query=filter_query, sort=sort)
        return await self.attach_checklists(records)

    async def count_pending_tasks(self, *, tenant_id: str, user_id: str) -> int:
        """Count open tasks the user is assigned to or created."""
        user = sanitize_param(user_id)
        return await self._db.count_records(
            collection="tasks",
            filter_query=(
                f'tenant_id = "{sanitize_param(tenant_id)}"'
                f' && (assigned_to_id = "{user}" || created_by_id = "{user}")'
                f' && (status = "{TaskStatus.PENDING}" || status = "{TaskStatus.IN_PROGRESS}")'
            ),
        )

    async def list_overdue_tasks(self, *, now: datetime, tenant_id: str | None = None) -> list[dict[str, Any]]:
        """Open, non-template tasks whose due date has passed."""
        filter_query = (
            f'due_date != null && due_date < "{to_iso(now)}" && is_recurring = "false"'
            f' && (status = "{TaskStatus.PENDING}" || status = "{TaskStatus.IN_PROGRESS}")'
        )
        if tenant_id:
            filter_query = f'tenant_id = "{sanitize_param(tenant_id)}" && {filter_query}'
        return await self._db.list_all_records(collection="tasks", filter_query=filter_query, sort="due_date")

    async def task_history(self, tenant_id: str, task_id: str) -> list[CompletionRecord]:
        """Ledger entries for a task, most recent first."""
        await self.get_task_record(tenant_id, task_id)
        records = await self._db.list_records(
            collection="task_completions",
            filter_query=f'tenant_id = "{sanitize_param(tenant_id)}" && task_id = "{sanitize_param(task_id)}"',
            sort="-synced_at",
            per_page=constants.TASK_HISTORY_LIMIT,
        )
        return [CompletionRecord(**record) for record in records]

    async def _emit_assigned(self, task: Task) -> None:
        await dispatch_safely(
            self._dispatcher,
            NotificationFact(
                type=NotificationType.TASK_ASSIGNED,
                tenant_id=task.tenant_id,
                user_id=task.assigned_to_id,
                task_id=task.id,
                title=task.title,
            ),
        )

