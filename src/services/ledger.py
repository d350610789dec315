"""Completion ledger: exactly-once acceptance of client-captured completions.

Each completion carries a client-generated ``offline_id``. The unique
``(tenant_id, offline_id)`` constraint is the source of truth for duplicates;
the lookup before insert only avoids doing work for known resubmissions.
Every item is its own transaction, so one failing item never affects the rest
of a batch.
"""

import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from src.core.clock import Clock, utc_now
from src.core.db_client import DatabaseError, DBClient, DuplicateRecordError
from src.core.errors import ItemValidationError, NotFoundError, TransientStoreError, classify_item_error
from src.core.logging import log_with_tenant_context, span
from src.domain.completion import CompletionRecord, CompletionStatus, ProblemReason, ProblemStatus
from src.domain.sync import (
    ChecklistUpdate,
    ChecklistUpdateOutcome,
    ChecklistUpdateResult,
    ClientCompletion,
    CompletionOutcome,
    CompletionResult,
    ItemError,
    PushedCompletion,
    PushRequest,
    PushResponse,
)
from src.domain.task import ChecklistStatus
from src.domain.user import Identity
from src.services.notification_service import (
    NotificationDispatcher,
    NotificationFact,
    NotificationType,
    dispatch_safely,
)
from src.services.projection import TaskProjection


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class RecordedCompletion(BaseModel):
    """Outcome of recording one completion."""

    outcome: CompletionOutcome
    record: CompletionRecord


def _raw_key(raw: Any, camel: str, snake: str) -> str | None:
    if not isinstance(raw, dict):
        return None
    value = raw.get(camel, raw.get(snake))
    return str(value) if value is not None else None


def _validate_item(model: type[ModelT], raw: Any) -> ModelT:
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise ItemValidationError.from_validation_error(e) from e


class CompletionLedger:
    """Append-only store of completion facts plus their side effects."""

    def __init__(
        self,
        db: DBClient,
        projection: TaskProjection,
        dispatcher: NotificationDispatcher,
        now: Clock = utc_now,
    ) -> None:
        self._db = db
        self._projection = projection
        self._dispatcher = dispatcher
        self._now = now

    async def find_by_offline_id(self, tenant_id: str, offline_id: str) -> CompletionRecord | None:
        record = await self._db.get_first_record_by(
            collection="task_completions", tenant_id=tenant_id, offline_id=offline_id
        )
        return CompletionRecord(**record) if record else None

    async def record_completion(self, identity: Identity, item: ClientCompletion) -> RecordedCompletion:
        """Record one completion and apply its side effects atomically.

        Resubmitting a known ``offline_id`` returns the existing record with a
        ``duplicate`` outcome and applies nothing.

        Raises:
            NotFoundError: The task or checklist item is not in the caller's tenant
            TransientStoreError: The store failed; nothing was committed
        """
        with span("completion_ledger.record_completion"):
            try:
                return await self._record(identity, item)
            except DatabaseError as e:
                logger.error(
                    "Completion not stored",
                    extra={"tenant_id": identity.tenant_id, "offline_id": item.offline_id, "error": str(e)},
                )
                raise TransientStoreError from e

    async def _record(self, identity: Identity, item: ClientCompletion) -> RecordedCompletion:
        if item.offline_id:
            existing = await self.find_by_offline_id(identity.tenant_id, item.offline_id)
            if existing is not None:
                logger.info(
                    "Duplicate completion ignored",
                    extra={"tenant_id": identity.tenant_id, "offline_id": item.offline_id},
                )
                return RecordedCompletion(outcome=CompletionOutcome.DUPLICATE, record=existing)

        facts: list[NotificationFact] = []
        try:
            async with self._db.transaction():
                record = await self._apply(identity, item, facts)
        except DuplicateRecordError:
            # Lost a race against a concurrent submission of the same offline_id
            existing = None
            if item.offline_id:
                existing = await self.find_by_offline_id(identity.tenant_id, item.offline_id)
            if existing is None:
                raise
            logger.info(
                "Concurrent duplicate completion resolved",
                extra={"tenant_id": identity.tenant_id, "offline_id": item.offline_id},
            )
            return RecordedCompletion(outcome=CompletionOutcome.DUPLICATE, record=existing)

        for fact in facts:
            await dispatch_safely(self._dispatcher, fact)

        log_with_tenant_context(
            logger,
            "info",
            "Completion recorded",
            tenant_id=identity.tenant_id,
            offline_id=item.offline_id,
            task_id=item.task_id,
            completion_id=record.id,
        )
        return RecordedCompletion(outcome=CompletionOutcome.CREATED, record=record)

    async def _apply(
        self,
        identity: Identity,
        item: ClientCompletion,
        facts: list[NotificationFact],
    ) -> CompletionRecord:
        task = await self._projection.get_task_record(identity.tenant_id, item.task_id)

        if item.checklist_item_id:
            checklist_item = await self._projection.get_checklist_item_record(
                identity.tenant_id, item.checklist_item_id
            )
            if checklist_item is None or checklist_item["task_id"] != item.task_id:
                msg = f"Checklist item not found: {item.checklist_item_id}"
                raise NotFoundError(msg)

        # Server receipt time drives state; the client's completed_at is kept for audit only
        now = self._now()
        row = await self._db.create_record(
            collection="task_completions",
            data={
                "tenant_id": identity.tenant_id,
                "offline_id": item.offline_id,
                "task_id": item.task_id,
                "checklist_item_id": item.checklist_item_id,
                "user_id": identity.user_id,
                "status": item.status.value,
                "notes": item.notes,
                "photo_urls": item.photo_urls,
                "completed_at": item.completed_at,
                "synced_at": now,
            },
        )

        if item.checklist_item_id:
            await self._projection.apply_checklist_status(
                tenant_id=identity.tenant_id,
                item_id=item.checklist_item_id,
                status=ChecklistStatus(item.status.value),
                user_id=identity.user_id,
                now=now,
                problem_reason=item.problem_reason.value if item.problem_reason else None,
            )
        else:
            await self._projection.mark_task_completed(item.task_id, user_id=identity.user_id, now=now)

        if item.status == CompletionStatus.PROBLEM:
            problem = await self._db.create_record(
                collection="problems",
                data={
                    "tenant_id": identity.tenant_id,
                    "task_completion_id": row["id"],
                    "reason_category": (item.problem_reason or ProblemReason.OTHER).value,
                    "description": item.problem_description or item.notes,
                    "status": ProblemStatus.OPEN.value,
                    "created_at": now,
                    "updated_at": now,
                },
            )
            facts.append(
                NotificationFact(
                    type=NotificationType.PROBLEM_REPORTED,
                    tenant_id=identity.tenant_id,
                    user_id=task.get("created_by_id"),
                    task_id=item.task_id,
                    problem_id=problem["id"],
                    title=task.get("title"),
                    occurred_at=now,
                )
            )

        return CompletionRecord(**row)

    async def apply_checklist_update(self, identity: Identity, update: ChecklistUpdate) -> ChecklistUpdateResult:
        """Apply a direct checklist status change; completion time is the server's."""
        async with self._db.transaction():
            item = await self._projection.apply_checklist_status(
                tenant_id=identity.tenant_id,
                item_id=update.id,
                status=update.status,
                user_id=identity.user_id,
                now=self._now(),
                problem_reason=update.problem_reason,
            )
        outcome = ChecklistUpdateOutcome.UPDATED if item is not None else ChecklistUpdateOutcome.NOT_FOUND
        return ChecklistUpdateResult(id=update.id, status=outcome)

    async def push(self, identity: Identity, request: PushRequest) -> PushResponse:
        """Process a batch in submission order, isolating failures per item."""
        with span("completion_ledger.push"):
            completions: list[CompletionResult] = []
            checklist_updates: list[ChecklistUpdateResult] = []
            errors: list[ItemError] = []

            for raw in request.completions:
                offline_id = _raw_key(raw, "offlineId", "offline_id")
                try:
                    item = _validate_item(PushedCompletion, raw)
                    recorded = await self.record_completion(identity, item)
                    completions.append(
                        CompletionResult(
                            offline_id=item.offline_id,
                            server_id=recorded.record.id,
                            status=recorded.outcome,
                        )
                    )
                except Exception as e:
                    category, message = classify_item_error(e)
                    logger.warning(
                        "Completion rejected",
                        extra={
                            "tenant_id": identity.tenant_id,
                            "offline_id": offline_id,
                            "category": category.value,
                            "error": str(e),
                        },
                    )
                    errors.append(ItemError(offline_id=offline_id, error=message, category=category))

            for raw in request.checklist_updates:
                item_id = _raw_key(raw, "id", "id")
                try:
                    update = _validate_item(ChecklistUpdate, raw)
                    checklist_updates.append(await self.apply_checklist_update(identity, update))
                except Exception as e:
                    category, message = classify_item_error(e)
                    logger.warning(
                        "Checklist update rejected",
                        extra={"tenant_id": identity.tenant_id, "id": item_id, "category": category.value},
                    )
                    errors.append(ItemError(id=item_id, error=message, category=category))

            log_with_tenant_context(
                logger,
                "info",
                "Push processed",
                tenant_id=identity.tenant_id,
                user_id=identity.user_id,
                created_count=sum(1 for c in completions if c.status == CompletionOutcome.CREATED),
                duplicate_count=sum(1 for c in completions if c.status == CompletionOutcome.DUPLICATE),
                error_count=len(errors),
            )
            return PushResponse(
                completions=completions,
                checklist_updates=checklist_updates,
                errors=errors,
                synced_at=self._now(),
            )
