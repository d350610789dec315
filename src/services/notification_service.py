"""Notification facts emitted by the sync core.

Delivery, quiet hours and channel selection belong to the dispatcher; the
core only reports what happened.
"""

import logging
from datetime import datetime
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel, Field

from src.core.clock import utc_now


logger = logging.getLogger(__name__)


class NotificationType(StrEnum):
    """Kinds of facts the core emits."""

    TASK_ASSIGNED = "task_assigned"
    TASK_OVERDUE = "task_overdue"
    PROBLEM_REPORTED = "problem_reported"


class NotificationFact(BaseModel):
    """Something happened that a user may need to hear about."""

    type: NotificationType = Field(..., description="Fact type")
    tenant_id: str = Field(..., description="Tenant the fact belongs to")
    user_id: str | None = Field(default=None, description="User the fact concerns (recipient hint)")
    task_id: str | None = Field(default=None, description="Related task ID")
    problem_id: str | None = Field(default=None, description="Related problem ID")
    title: str | None = Field(default=None, description="Related task title")
    occurred_at: datetime = Field(default_factory=utc_now, description="When the fact was observed")


class NotificationDispatcher(Protocol):
    """Side channel receiving facts from the core."""

    async def dispatch(self, fact: NotificationFact) -> None: ...


class LoggingNotificationDispatcher:
    """Dispatcher that only logs facts; used when no delivery backend is wired."""

    async def dispatch(self, fact: NotificationFact) -> None:
        logger.info(
            "Notification fact",
            extra={
                "type": fact.type.value,
                "tenant_id": fact.tenant_id,
                "user_id": fact.user_id,
                "task_id": fact.task_id,
                "problem_id": fact.problem_id,
            },
        )


async def dispatch_safely(dispatcher: NotificationDispatcher, fact: NotificationFact) -> bool:
    """Dispatch a fact, logging instead of raising when the dispatcher fails.

    Returns:
        True if the dispatcher accepted the fact
    """
    try:
        await dispatcher.dispatch(fact)
    except Exception:
        # Delivery problems never fail the operation that produced the fact
        logger.exception(
            "Notification dispatch failed",
            extra={"type": fact.type.value, "tenant_id": fact.tenant_id, "task_id": fact.task_id},
        )
        return False
    return True
