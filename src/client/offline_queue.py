"""Client-side offline queue for completions captured without connectivity.

Every completion is written to the local store before any network attempt.
Items move from pending to synced once the gateway reports them created or
duplicate; failed items stay pending with a higher retry counter. Synced
items are purged after the retention window.
"""

import asyncio
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from src.client.sync_client import SyncClient, SyncRejectedError, SyncUnavailableError
from src.core.clock import Clock, parse_iso, to_iso, utc_now
from src.core.config import Settings, constants, settings
from src.core.db_client import DBClient, sanitize_param
from src.core.logging import span
from src.domain.completion import CompletionStatus, ProblemReason
from src.domain.sync import CompletionOutcome, PullResponse, PushedCompletion, PushResponse


logger = logging.getLogger(__name__)

PULL_CURSOR_KEY = "pull_cursor"


class QueuedCompletion(BaseModel):
    """A completion persisted locally, waiting to be acknowledged."""

    id: str
    offline_id: str
    task_id: str
    checklist_item_id: str | None = None
    status: CompletionStatus
    notes: str | None = None
    problem_reason: ProblemReason | None = None
    problem_description: str | None = None
    photo_urls: list[str] | None = None
    completed_at: datetime
    synced: bool = False
    retry_count: int = 0
    last_error: str | None = None
    created_at: datetime
    synced_at: datetime | None = None

    def to_payload(self) -> dict[str, Any]:
        """Render the item as a camelCase push payload."""
        completion = PushedCompletion(
            offline_id=self.offline_id,
            task_id=self.task_id,
            checklist_item_id=self.checklist_item_id,
            status=self.status,
            notes=self.notes,
            completed_at=self.completed_at,
            problem_reason=self.problem_reason,
            problem_description=self.problem_description,
            photo_urls=self.photo_urls,
        )
        return completion.model_dump(mode="json", by_alias=True, exclude_none=True)


class FlushResult(BaseModel):
    """Outcome of one flush."""

    skipped: bool = Field(default=False, description="Another flush was already running")
    attempted: int = Field(default=0, description="Pending items considered")
    synced: int = Field(default=0, description="Items acknowledged as created or duplicate")
    failed: int = Field(default=0, description="Items whose retry counter was incremented")
    used_fallback: bool = Field(default=False, description="Batch endpoint was unreachable")
    errors: dict[str, str] = Field(default_factory=dict, description="offline_id -> error message")


class OfflineQueue:
    """Durable queue of completions plus the flush loop that drains it."""

    def __init__(
        self,
        db: DBClient,
        client: SyncClient,
        device_id: str | None = None,
        app_settings: Settings | None = None,
        now: Clock = utc_now,
    ) -> None:
        self._db = db
        self._client = client
        self._settings = app_settings or settings
        self._device_id = device_id or self._settings.device_id
        self._now = now
        self._flush_lock = asyncio.Lock()

    def generate_offline_id(self) -> str:
        """Build ``{device}-{unix seconds}-{random hex}``."""
        suffix = secrets.token_hex(constants.OFFLINE_ID_SUFFIX_HEX_CHARS // 2)
        return f"{self._device_id}-{int(self._now().timestamp())}-{suffix}"

    async def capture(
        self,
        *,
        task_id: str,
        status: CompletionStatus,
        checklist_item_id: str | None = None,
        notes: str | None = None,
        problem_reason: ProblemReason | None = None,
        problem_description: str | None = None,
        photo_urls: list[str] | None = None,
        completed_at: datetime | None = None,
    ) -> QueuedCompletion:
        """Persist a completion locally and return it with its offline id."""
        now = self._now()
        record = await self._db.create_record(
            collection="pending_completions",
            data={
                "offline_id": self.generate_offline_id(),
                "task_id": task_id,
                "checklist_item_id": checklist_item_id,
                "status": status.value,
                "notes": notes,
                "problem_reason": problem_reason.value if problem_reason else None,
                "problem_description": problem_description,
                "photo_urls": photo_urls,
                "completed_at": completed_at or now,
                "synced": False,
                "retry_count": 0,
                "created_at": now,
            },
        )
        item = QueuedCompletion(**record)
        logger.info("Completion queued", extra={"offline_id": item.offline_id, "task_id": task_id})
        return item

    async def pending(self) -> list[QueuedCompletion]:
        """Unsynced items in capture order."""
        records = await self._db.list_all_records(
            collection="pending_completions", filter_query='synced = "false"', sort="created_at, rowid"
        )
        return [QueuedCompletion(**record) for record in records]

    async def pending_count(self) -> int:
        return await self._db.count_records(collection="pending_completions", filter_query='synced = "false"')

    async def stuck_items(self) -> list[QueuedCompletion]:
        """Unsynced items whose retry counter reached the alert threshold."""
        threshold = self._settings.offline_retry_alert_threshold
        records = await self._db.list_all_records(
            collection="pending_completions",
            filter_query=f'synced = "false" && retry_count >= "{threshold}"',
            sort="created_at, rowid",
        )
        return [QueuedCompletion(**record) for record in records]

    async def flush(self) -> FlushResult:
        """Push every pending item; only one flush runs at a time."""
        if self._flush_lock.locked():
            logger.info("Flush already in progress, skipping")
            return FlushResult(skipped=True)

        async with self._flush_lock:
            with span("offline_queue.flush"):
                items = await self.pending()
                if not items:
                    return FlushResult()

                try:
                    response = await self._client.push_batch([item.to_payload() for item in items])
                except (SyncUnavailableError, SyncRejectedError) as e:
                    logger.warning("Batch push failed, falling back to single items", extra={"error": str(e)})
                    result = await self._flush_one_by_one(items)
                else:
                    result = await self._apply_push_response(items, response)

                logger.info(
                    "Flush finished",
                    extra={
                        "attempted": result.attempted,
                        "synced_count": result.synced,
                        "failed_count": result.failed,
                        "used_fallback": result.used_fallback,
                    },
                )
                return result

    async def _apply_push_response(self, items: list[QueuedCompletion], response: PushResponse) -> FlushResult:
        by_offline_id = {item.offline_id: item for item in items}
        result = FlushResult(attempted=len(items))

        for completion in response.completions:
            if completion.status not in (CompletionOutcome.CREATED, CompletionOutcome.DUPLICATE):
                continue
            item = by_offline_id.get(completion.offline_id)
            if item is not None:
                await self._mark_synced(item)
                result.synced += 1

        for error in response.errors:
            item = by_offline_id.get(error.offline_id) if error.offline_id else None
            if item is not None:
                await self._mark_failed(item, error.error)
                result.failed += 1
                result.errors[item.offline_id] = error.error

        # Items missing from both lists stay pending untouched and go out again next flush
        return result

    async def _flush_one_by_one(self, items: list[QueuedCompletion]) -> FlushResult:
        result = FlushResult(attempted=len(items), used_fallback=True)
        for item in items:
            try:
                await self._client.complete_single(item.to_payload())
            except (SyncUnavailableError, SyncRejectedError) as e:
                await self._mark_failed(item, str(e))
                result.failed += 1
                result.errors[item.offline_id] = str(e)
                continue
            await self._mark_synced(item)
            result.synced += 1
        return result

    async def _mark_synced(self, item: QueuedCompletion) -> None:
        await self._db.update_record(
            collection="pending_completions",
            record_id=item.id,
            data={"synced": True, "synced_at": self._now(), "last_error": None},
        )

    async def _mark_failed(self, item: QueuedCompletion, error: str) -> None:
        await self._db.update_record(
            collection="pending_completions",
            record_id=item.id,
            data={"retry_count": item.retry_count + 1, "last_error": error},
        )

    async def cleanup(self) -> int:
        """Purge synced items older than the retention window."""
        cutoff = self._now() - timedelta(days=self._settings.offline_retention_days)
        deleted = await self._db.delete_records(
            collection="pending_completions",
            filter_query=f'synced = "true" && synced_at < "{to_iso(cutoff)}"',
        )
        if deleted:
            logger.info("Purged synced queue items", extra={"count": deleted})
        return deleted

    async def get_pull_cursor(self) -> datetime | None:
        record = await self._db.get_first_record(
            collection="sync_state", filter_query=f'id = "{sanitize_param(PULL_CURSOR_KEY)}"'
        )
        return parse_iso(record["value"]) if record and record["value"] else None

    async def _store_pull_cursor(self, value: datetime) -> None:
        async with self._db.transaction():
            existing = await self._db.get_first_record(
                collection="sync_state", filter_query=f'id = "{sanitize_param(PULL_CURSOR_KEY)}"'
            )
            if existing is None:
                await self._db.create_record(collection="sync_state", data={"id": PULL_CURSOR_KEY, "value": value})
            else:
                await self._db.update_record(collection="sync_state", record_id=PULL_CURSOR_KEY, data={"value": value})

    async def pull_updates(self) -> PullResponse:
        """Pull changes since the stored cursor and advance it to the response's ``syncedAt``."""
        since = await self.get_pull_cursor()
        response = await self._client.pull(since)
        await self._store_pull_cursor(response.synced_at)
        return response

    async def run(self, stop_event: asyncio.Event) -> None:
        """Flush and clean up until ``stop_event`` is set.

        After a flush with failures the wait doubles, up to the configured cap.
        """
        interval = self._settings.offline_flush_interval_seconds
        max_backoff = self._settings.offline_max_backoff_seconds
        consecutive_failures = 0

        while not stop_event.is_set():
            try:
                result = await self.flush()
                await self.cleanup()
            except Exception as e:
                # The loop must outlive any single round; the items stay queued
                logger.exception("Flush round failed", extra={"error": str(e)})
                result = FlushResult(failed=1)

            if result.failed:
                consecutive_failures += 1
                delay = min(interval * 2**consecutive_failures, max_backoff)
                logger.info("Flush had failures, backing off", extra={"delay_seconds": delay})
            else:
                consecutive_failures = 0
                delay = interval

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except TimeoutError:
                continue
