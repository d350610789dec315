"""Sync protocol request and response models."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, Field

from src.core.errors import SyncErrorCategory
from src.domain.area import Area
from src.domain.completion import CompletionRecord, CompletionStatus, ProblemReason
from src.domain.task import ChecklistStatus, Task
from src.domain.wire import WireModel


class EntityType(StrEnum):
    """Entity groups a pull can ask for."""

    TASKS = "tasks"
    AREAS = "areas"
    COMPLETIONS = "completions"


class CompletionOutcome(StrEnum):
    """How the ledger treated a submitted completion."""

    CREATED = "created"
    DUPLICATE = "duplicate"


class ChecklistUpdateOutcome(StrEnum):
    """How a checklist update was applied."""

    UPDATED = "updated"
    NOT_FOUND = "not_found"


class PullRequest(WireModel):
    """Incremental pull request."""

    since_timestamp: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("sinceTimestamp", "since_timestamp", "lastSyncedAt"),
        description="Return only rows changed strictly after this instant",
    )
    entity_types: list[EntityType] | None = Field(default=None, description="Subset of entities to return")
    area_ids: list[str] | None = Field(default=None, description="Narrow the pull to these areas")

    def wants(self, entity_type: EntityType) -> bool:
        return self.entity_types is None or entity_type in self.entity_types


class ClientCompletion(WireModel):
    """A completion captured on a client, possibly while offline."""

    offline_id: str | None = Field(
        default=None, min_length=1, max_length=255, description="Client-assigned idempotency key"
    )
    task_id: str = Field(..., min_length=1, description="Task being completed")
    checklist_item_id: str | None = Field(default=None, description="Checklist item, or None for the whole task")
    status: CompletionStatus = Field(..., description="Reported outcome")
    notes: str | None = Field(default=None, description="Free-text notes")
    completed_at: datetime = Field(..., description="Client-asserted completion time")
    problem_reason: ProblemReason | None = Field(default=None, description="Reason category for problems")
    problem_description: str | None = Field(default=None, description="Problem description")
    photo_urls: list[str] | None = Field(default=None, description="Opaque photo references")


class PushedCompletion(ClientCompletion):
    """A completion inside a push batch; the idempotency key is mandatory."""

    offline_id: str = Field(..., min_length=1, max_length=255, description="Client-assigned idempotency key")


class ChecklistUpdate(WireModel):
    """Direct checklist item status change from a client."""

    id: str = Field(..., min_length=1, description="Checklist item ID")
    status: ChecklistStatus = Field(..., description="New item status")
    problem_reason: str | None = Field(default=None, description="Reason when status is problem")
    completed_at: datetime | None = Field(default=None, description="Client-asserted time (audit only)")


class PushRequest(WireModel):
    """Batch push envelope.

    Items are kept as raw mappings so each one is validated on its own and a
    malformed item is reported instead of rejecting the whole batch.
    """

    completions: list[dict[str, Any]] = Field(default_factory=list)
    checklist_updates: list[dict[str, Any]] = Field(default_factory=list)


class CompletionResult(WireModel):
    offline_id: str
    server_id: str
    status: CompletionOutcome


class ChecklistUpdateResult(WireModel):
    id: str
    status: ChecklistUpdateOutcome


class ItemError(WireModel):
    """Per-item failure; carries either ``offlineId`` or ``id``."""

    offline_id: str | None = None
    id: str | None = None
    error: str
    category: SyncErrorCategory = SyncErrorCategory.UNKNOWN

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PushResponse(WireModel):
    completions: list[CompletionResult] = Field(default_factory=list)
    checklist_updates: list[ChecklistUpdateResult] = Field(default_factory=list)
    errors: list[ItemError] = Field(default_factory=list)
    synced_at: datetime

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json", by_alias=True, exclude={"errors"})
        payload["errors"] = [error.to_wire() for error in self.errors]
        return payload


class PullResponse(WireModel):
    """Delta returned by a pull; entity groups that were not requested are omitted."""

    tasks: list[Task] | None = None
    areas: list[Area] | None = None
    completions: list[CompletionRecord] | None = None
    synced_at: datetime

    def to_wire(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json", by_alias=True)
        return {key: value for key, value in payload.items() if value is not None}


class SyncStatus(WireModel):
    pending_task_count: int
    server_time: datetime


class SingleCompletionRequest(WireModel):
    """Body of the single-item task completion endpoint."""

    status: CompletionStatus = Field(default=CompletionStatus.OK, description="Reported outcome")
    offline_id: str | None = Field(default=None, min_length=1, max_length=255, description="Idempotency key")
    notes: str | None = None
    completed_at: datetime | None = None
    problem_reason: ProblemReason | None = None
    problem_description: str | None = None
    photo_urls: list[str] | None = None


class ChecklistCompletionRequest(WireModel):
    """Body of the single checklist item completion endpoint."""

    status: CompletionStatus = Field(default=CompletionStatus.OK, description="Reported outcome")
    offline_id: str | None = Field(default=None, min_length=1, max_length=255, description="Idempotency key")
    problem_reason: ProblemReason | None = None
    notes: str | None = None
    completed_at: datetime | None = None
