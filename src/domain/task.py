"""Task, checklist and recurrence domain models and enums."""

from datetime import date, datetime
from enum import StrEnum
from typing import Annotated

from pydantic import Field, field_validator

from src.domain.wire import WireModel


class TaskType(StrEnum):
    """Kind of work a task represents."""

    SCHEDULED = "scheduled"
    CORRECTIVE = "corrective"
    PREVENTIVE = "preventive"


class TaskPriority(StrEnum):
    """Task priority level."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskStatus(StrEnum):
    """Task lifecycle status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChecklistStatus(StrEnum):
    """Checklist item status."""

    PENDING = "pending"
    OK = "ok"
    PROBLEM = "problem"


class RecurrenceFrequency(StrEnum):
    """Recurrence frequency."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


DayOfWeek = Annotated[int, Field(ge=0, le=6)]


class RecurrenceRule(WireModel):
    """Recurrence rule owned by a task template.

    Only the fields relevant to ``frequency`` are used; the others are ignored.
    """

    frequency: RecurrenceFrequency = Field(..., description="daily, weekly or monthly")
    interval: int = Field(default=1, ge=1, description="Every N days/weeks/months")
    days_of_week: list[DayOfWeek] | None = Field(
        default=None, description="Weekdays for weekly rules (0=Sunday .. 6=Saturday)"
    )
    day_of_month: int | None = Field(default=None, ge=1, le=31, description="Day of month for monthly rules")
    end_date: date | None = Field(default=None, description="Last date an occurrence may fall on")
    max_occurrences: int | None = Field(default=None, ge=1, description="Maximum number of occurrences")
    timezone: str | None = Field(default=None, description="IANA timezone the rule is evaluated in")


class ChecklistItem(WireModel):
    """Checklist item belonging to a task."""

    id: str = Field(..., description="Unique checklist item ID")
    tenant_id: str = Field(..., description="Owning tenant ID")
    task_id: str = Field(..., description="Parent task ID")
    description: str = Field(..., description="What has to be checked")
    sort_order: int = Field(default=0, description="Position within the checklist")
    status: ChecklistStatus = Field(default=ChecklistStatus.PENDING, description="Current item status")
    completed_at: datetime | None = Field(default=None, description="Server time the item was completed")
    completed_by_id: str | None = Field(default=None, description="User who completed the item")
    problem_reason: str | None = Field(default=None, description="Reason given when status is problem")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")


class Task(WireModel):
    """Task data transfer object. Also serves as a template when it has a recurrence rule."""

    id: str = Field(..., description="Unique task ID")
    tenant_id: str = Field(..., description="Owning tenant ID")
    area_id: str | None = Field(default=None, description="Area the task belongs to")
    title: str = Field(..., description="Task title")
    description: str | None = Field(default=None, description="Detailed task description")
    type: TaskType = Field(default=TaskType.SCHEDULED, description="Kind of task")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, description="Task priority")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="Current lifecycle status")
    assigned_to_id: str | None = Field(default=None, description="Assigned user ID")
    created_by_id: str | None = Field(default=None, description="Creator user ID")
    due_date: datetime | None = Field(default=None, description="Due date; anchors recurrence")
    scheduled_time: str | None = Field(default=None, description="Scheduled time of day (HH:MM)")
    recurrence_rule: RecurrenceRule | None = Field(default=None, description="Recurrence rule for templates")
    is_recurring: bool = Field(default=False, description="Whether the task is a recurring template")
    source_task_id: str | None = Field(default=None, description="Template this occurrence was generated from")
    recurrence_index: int | None = Field(default=None, description="0-based ordinal of the occurrence")
    has_checklist: bool = Field(default=False, description="Whether the task has checklist items")
    completed_at: datetime | None = Field(default=None, description="Server time the task was completed")
    completed_by_id: str | None = Field(default=None, description="User who completed the task")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")
    checklist_items: list[ChecklistItem] = Field(default_factory=list, description="Ordered checklist items")


class GeneratedOccurrence(WireModel):
    """A concrete occurrence computed from a template and its rule, not yet stored."""

    tenant_id: str
    source_task_id: str
    recurrence_index: int = Field(..., ge=0)
    due_date: datetime
    title: str
    description: str | None = None
    type: TaskType = TaskType.SCHEDULED
    priority: TaskPriority = TaskPriority.MEDIUM
    area_id: str | None = None
    assigned_to_id: str | None = None
    created_by_id: str | None = None
    scheduled_time: str | None = None
    has_checklist: bool = False


class ChecklistItemCreate(WireModel):
    """Checklist item given when creating a task."""

    description: str = Field(..., min_length=1, description="What has to be checked")


class TaskCreate(WireModel):
    """Payload for creating a task."""

    title: str = Field(..., min_length=1, max_length=255, description="Task title")
    description: str | None = Field(default=None, description="Detailed task description")
    area_id: str = Field(..., description="Area the task belongs to")
    type: TaskType = Field(default=TaskType.SCHEDULED, description="Kind of task")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, description="Task priority")
    assigned_to_id: str | None = Field(default=None, description="Assigned user ID")
    due_date: datetime | None = Field(default=None, description="Due date; anchors recurrence")
    scheduled_time: str | None = Field(default=None, description="Scheduled time of day (HH:MM)")
    recurrence_rule: RecurrenceRule | None = Field(default=None, description="Recurrence rule")
    checklist_items: list[ChecklistItemCreate] = Field(default_factory=list, description="Checklist items in order")

    @field_validator("scheduled_time")
    @classmethod
    def validate_scheduled_time(cls, v: str | None) -> str | None:
        """Validate scheduled time is HH:MM."""
        if v is None:
            return v
        hours, _, minutes = v.partition(":")
        if not (hours.isdigit() and minutes.isdigit() and int(hours) < 24 and int(minutes) < 60):
            raise ValueError("Scheduled time must be in HH:MM format")
        return v


class TaskUpdate(WireModel):
    """Payload for editing a task. Only fields that are set are applied."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    area_id: str | None = None
    type: TaskType | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    assigned_to_id: str | None = None
    due_date: datetime | None = None
    scheduled_time: str | None = None
    recurrence_rule: RecurrenceRule | None = None
