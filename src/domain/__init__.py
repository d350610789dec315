"""Domain models and DTOs."""

from src.domain.area import Area
from src.domain.completion import CompletionRecord, CompletionStatus, Problem, ProblemReason, ProblemStatus
from src.domain.task import (
    ChecklistItem,
    ChecklistStatus,
    GeneratedOccurrence,
    RecurrenceFrequency,
    RecurrenceRule,
    Task,
    TaskCreate,
    TaskPriority,
    TaskStatus,
    TaskType,
    TaskUpdate,
)
from src.domain.user import Identity, UserRole


__all__ = [
    "Area",
    "ChecklistItem",
    "ChecklistStatus",
    "CompletionRecord",
    "CompletionStatus",
    "GeneratedOccurrence",
    "Identity",
    "Problem",
    "ProblemReason",
    "ProblemStatus",
    "RecurrenceFrequency",
    "RecurrenceRule",
    "Task",
    "TaskCreate",
    "TaskPriority",
    "TaskStatus",
    "TaskType",
    "TaskUpdate",
    "UserRole",
]
