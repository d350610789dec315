"""Completion ledger and problem domain models."""

from datetime import datetime
from enum import StrEnum

from pydantic import Field

from src.domain.wire import WireModel


class CompletionStatus(StrEnum):
    """Outcome a user reported for a task or checklist item."""

    OK = "ok"
    PROBLEM = "problem"


class ProblemReason(StrEnum):
    """Reason category for a reported problem."""

    NO_TIME = "no_time"
    NO_SUPPLIES = "no_supplies"
    EQUIPMENT_BROKEN = "equipment_broken"
    OTHER = "other"


class ProblemStatus(StrEnum):
    """Problem lifecycle status, independent of the ledger."""

    OPEN = "open"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"


class CompletionRecord(WireModel):
    """Immutable ledger entry: a user did something to a task or checklist item."""

    id: str = Field(..., description="Server-assigned ID")
    tenant_id: str = Field(..., description="Owning tenant ID")
    offline_id: str | None = Field(default=None, description="Client-assigned idempotency key")
    task_id: str = Field(..., description="Task the completion refers to")
    checklist_item_id: str | None = Field(default=None, description="Checklist item, or None for the whole task")
    user_id: str = Field(..., description="User who reported the completion")
    status: CompletionStatus = Field(..., description="Reported outcome")
    notes: str | None = Field(default=None, description="Free-text notes")
    photo_urls: list[str] | None = Field(default=None, description="Opaque photo references")
    completed_at: datetime = Field(..., description="Client-asserted completion time (audit only)")
    synced_at: datetime = Field(..., description="Server receipt time")


class Problem(WireModel):
    """Problem raised by a completion with status ``problem``."""

    id: str = Field(..., description="Unique problem ID")
    tenant_id: str = Field(..., description="Owning tenant ID")
    task_completion_id: str = Field(..., description="Completion that reported the problem")
    reason_category: ProblemReason = Field(default=ProblemReason.OTHER, description="Reason category")
    description: str | None = Field(default=None, description="Free-text description")
    status: ProblemStatus = Field(default=ProblemStatus.OPEN, description="Problem lifecycle status")
    corrective_task_id: str | None = Field(default=None, description="Task created to fix the problem")
    resolved_at: datetime | None = Field(default=None, description="When the problem was resolved")
    resolved_by_id: str | None = Field(default=None, description="Who resolved the problem")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
