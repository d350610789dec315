"""Unit tests for the client offline queue and sync client."""

import asyncio
import re

import httpx
import pytest

from src.client.offline_queue import FlushResult, OfflineQueue
from src.client.sync_client import SyncClient, SyncRejectedError, SyncUnavailableError
from src.domain.completion import CompletionStatus, ProblemReason
from src.domain.sync import CompletionOutcome, CompletionResult, PushResponse
from tests.unit.factories import EMPLOYEE_ID, START, TENANT, add_checklist_item, create_task


CAPTIVE_PORTAL_PAGE = "<html><body>Hotel WiFi login</body></html>"


class BatchDownClient(SyncClient):
    """Client whose batch endpoint is unavailable; single-item calls go through."""

    async def push_batch(self, completions):
        msg = "Sync gateway returned status 502"
        raise SyncUnavailableError(msg)


class BlockingClient:
    """Client whose batch push waits until released."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def push_batch(self, completions):
        self.started.set()
        await self.release.wait()
        return PushResponse(
            completions=[
                CompletionResult(offline_id=c["offlineId"], server_id=f"srv-{n}", status=CompletionOutcome.CREATED)
                for n, c in enumerate(completions)
            ],
            synced_at=START,
        )


def _gateway_transport(app) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=app)


@pytest.fixture
async def sync_client(app):
    client = SyncClient(
        base_url="http://testserver", tenant_id=TENANT, user_id=EMPLOYEE_ID, transport=_gateway_transport(app)
    )
    yield client
    await client.close()


@pytest.fixture
def queue(queue_db, sync_client, test_settings, clock) -> OfflineQueue:
    return OfflineQueue(queue_db, sync_client, device_id="dev1", app_settings=test_settings, now=clock)


@pytest.mark.unit
class TestCapture:
    def test_offline_id_format(self, queue):
        offline_id = queue.generate_offline_id()

        assert re.fullmatch(r"dev1-\d+-[0-9a-f]{4}", offline_id)
        assert offline_id.split("-")[1] == str(int(START.timestamp()))

    @pytest.mark.asyncio
    async def test_capture_persists_before_any_network_call(self, queue):
        item = await queue.capture(
            task_id="T1",
            status=CompletionStatus.PROBLEM,
            problem_reason=ProblemReason.EQUIPMENT_BROKEN,
            photo_urls=["local://photo-1"],
        )

        pending = await queue.pending()
        assert [p.offline_id for p in pending] == [item.offline_id]
        assert pending[0].retry_count == 0
        assert pending[0].synced is False
        assert pending[0].photo_urls == ["local://photo-1"]

    @pytest.mark.asyncio
    async def test_payload_is_camel_case_without_empty_fields(self, queue):
        item = await queue.capture(task_id="T1", status=CompletionStatus.OK)

        payload = item.to_payload()

        assert set(payload) == {"offlineId", "taskId", "status", "completedAt"}
        assert payload["status"] == "ok"


@pytest.mark.unit
class TestFlush:
    """Tests for draining the queue against the gateway."""

    @pytest.mark.asyncio
    async def test_flush_marks_acknowledged_items_synced(self, queue, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")
        good = await queue.capture(task_id="T1", status=CompletionStatus.OK)
        bad = await queue.capture(task_id="missing", status=CompletionStatus.OK)

        result = await queue.flush()

        assert (result.attempted, result.synced, result.failed) == (2, 1, 1)
        assert result.used_fallback is False
        assert result.errors == {bad.offline_id: "Task not found: missing"}
        pending = await queue.pending()
        assert [p.offline_id for p in pending] == [bad.offline_id]
        assert pending[0].retry_count == 1
        assert pending[0].last_error == "Task not found: missing"
        server_row = await services.ledger.find_by_offline_id(TENANT, good.offline_id)
        assert server_row is not None

    @pytest.mark.asyncio
    async def test_resubmitted_items_are_acknowledged_as_duplicates(self, queue, sync_client, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")
        item = await queue.capture(task_id="T1", status=CompletionStatus.OK)
        # The server applied the item but the device never saw the response
        await sync_client.push_batch([item.to_payload()])

        result = await queue.flush()

        assert result.synced == 1
        assert await queue.pending_count() == 0
        assert await services.db.count_records(collection="task_completions") == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, queue):
        assert await queue.flush() == FlushResult()

    @pytest.mark.asyncio
    async def test_items_reaching_threshold_are_stuck(self, queue_db, sync_client, test_settings, clock):
        settings = test_settings.model_copy(update={"offline_retry_alert_threshold": 2})
        queue = OfflineQueue(queue_db, sync_client, device_id="dev1", app_settings=settings, now=clock)
        item = await queue.capture(task_id="missing", status=CompletionStatus.OK)

        await queue.flush()
        assert await queue.stuck_items() == []
        await queue.flush()

        assert [stuck.offline_id for stuck in await queue.stuck_items()] == [item.offline_id]

    @pytest.mark.asyncio
    async def test_concurrent_flush_is_skipped(self, queue_db, test_settings, clock):
        client = BlockingClient()
        queue = OfflineQueue(queue_db, client, device_id="dev1", app_settings=test_settings, now=clock)
        await queue.capture(task_id="T1", status=CompletionStatus.OK)

        running = asyncio.create_task(queue.flush())
        await client.started.wait()
        second = await queue.flush()
        client.release.set()
        first = await running

        assert second.skipped is True
        assert first.synced == 1


@pytest.mark.unit
class TestFallback:
    """Tests for the single-item fallback when the batch endpoint fails."""

    @pytest.mark.asyncio
    async def test_single_item_endpoints_are_used(self, app, queue_db, services, test_settings, clock):
        now = clock()
        await create_task(services.db, now=now, task_id="T1", has_checklist=True)
        await add_checklist_item(services.db, task_id="T1", now=now, item_id="C1")
        await create_task(services.db, now=now, task_id="T2")
        client = BatchDownClient(
            base_url="http://testserver", tenant_id=TENANT, user_id=EMPLOYEE_ID, transport=_gateway_transport(app)
        )
        queue = OfflineQueue(queue_db, client, device_id="dev1", app_settings=test_settings, now=clock)
        on_item = await queue.capture(
            task_id="T1",
            checklist_item_id="C1",
            status=CompletionStatus.PROBLEM,
            problem_reason=ProblemReason.NO_SUPPLIES,
        )
        on_task = await queue.capture(task_id="T2", status=CompletionStatus.OK, notes="Quick one")

        result = await queue.flush()
        await client.close()

        assert result.used_fallback is True
        assert (result.synced, result.failed) == (2, 0)
        item_row = await services.ledger.find_by_offline_id(TENANT, on_item.offline_id)
        task_row = await services.ledger.find_by_offline_id(TENANT, on_task.offline_id)
        assert item_row.checklist_item_id == "C1"
        assert task_row.notes == "Quick one"
        checklist_item = await services.db.get_record(collection="checklist_items", record_id="C1")
        assert checklist_item["problem_reason"] == "no_supplies"

    @pytest.mark.asyncio
    async def test_unreachable_gateway_keeps_items_pending(self, queue_db, test_settings, clock):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = SyncClient(
            base_url="http://testserver", tenant_id=TENANT, user_id=EMPLOYEE_ID, transport=httpx.MockTransport(refuse)
        )
        queue = OfflineQueue(queue_db, client, device_id="dev1", app_settings=test_settings, now=clock)
        await queue.capture(task_id="T1", status=CompletionStatus.OK)
        await queue.capture(task_id="T2", status=CompletionStatus.OK)

        result = await queue.flush()
        await client.close()

        assert result.used_fallback is True
        assert result.failed == 2
        assert [item.retry_count for item in await queue.pending()] == [1, 1]


@pytest.mark.unit
class TestSyncClientErrors:
    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503, json={"code": "ERR_STORE_UNAVAILABLE"}))
        async with SyncClient(base_url="http://gw", tenant_id=TENANT, user_id="u", transport=transport) as client:
            with pytest.raises(SyncUnavailableError, match="503"):
                await client.status()

    @pytest.mark.asyncio
    async def test_client_error_is_rejected(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"code": "ERR_IDENTITY_MISSING"}))
        async with SyncClient(base_url="http://gw", tenant_id=TENANT, user_id="u", transport=transport) as client:
            with pytest.raises(SyncRejectedError) as exc_info:
                await client.status()

        assert exc_info.value.status_code == 401
        assert "ERR_IDENTITY_MISSING" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_html_success_page_is_unavailable(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, html=CAPTIVE_PORTAL_PAGE))
        async with SyncClient(base_url="http://gw", tenant_id=TENANT, user_id="u", transport=transport) as client:
            with pytest.raises(SyncUnavailableError, match="non-JSON"):
                await client.status()
            with pytest.raises(SyncUnavailableError, match="non-JSON"):
                await client.complete_single({"offlineId": "dev1-1-abcd", "taskId": "T1", "status": "ok"})

    @pytest.mark.asyncio
    async def test_unexpected_json_shape_is_unavailable(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"hello": "world"}))
        async with SyncClient(base_url="http://gw", tenant_id=TENANT, user_id="u", transport=transport) as client:
            with pytest.raises(SyncUnavailableError, match="unexpected response"):
                await client.push_batch([])
            with pytest.raises(SyncUnavailableError, match="unexpected response"):
                await client.complete_single({"offlineId": "dev1-1-abcd", "taskId": "T1", "status": "ok"})

    @pytest.mark.asyncio
    async def test_identity_headers_are_sent(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, json={"pendingTaskCount": 0, "serverTime": "2025-01-15T12:00:00Z"})

        transport = httpx.MockTransport(handler)
        async with SyncClient(
            base_url="http://gw", tenant_id=TENANT, user_id="u", role="supervisor", transport=transport
        ) as client:
            status = await client.status()

        assert status.pending_task_count == 0
        assert seen["x-tenant-id"] == TENANT
        assert seen["x-user-id"] == "u"
        assert seen["x-user-role"] == "supervisor"


@pytest.mark.unit
class TestRetention:
    @pytest.mark.asyncio
    async def test_cleanup_purges_only_expired_synced_items(self, queue, queue_db, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")
        await queue.capture(task_id="T1", status=CompletionStatus.OK)
        await queue.capture(task_id="missing", status=CompletionStatus.OK)
        await queue.flush()

        clock.advance(days=1)
        assert await queue.cleanup() == 0

        clock.advance(days=7)
        assert await queue.cleanup() == 1
        assert await queue_db.count_records(collection="pending_completions") == 1
        assert await queue.pending_count() == 1


@pytest.mark.unit
class TestPullUpdates:
    @pytest.mark.asyncio
    async def test_cursor_advances_between_pulls(self, queue, services, clock):
        await create_task(services.db, now=clock(), task_id="T1")
        assert await queue.get_pull_cursor() is None

        first = await queue.pull_updates()
        await create_task(services.db, now=clock(), task_id="T2")
        second = await queue.pull_updates()

        assert [task.id for task in first.tasks] == ["T1"]
        assert [task.id for task in second.tasks] == ["T2"]
        assert await queue.get_pull_cursor() == second.synced_at


@pytest.mark.unit
class TestRunLoop:
    @pytest.mark.asyncio
    async def test_stops_when_event_is_set(self, queue, monkeypatch):
        stop = asyncio.Event()
        calls = []

        async def flush_once():
            calls.append(1)
            stop.set()
            return FlushResult()

        monkeypatch.setattr(queue, "flush", flush_once)

        await queue.run(stop)

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_backs_off_after_failed_flushes(self, queue, monkeypatch):
        stop = asyncio.Event()
        delays = []

        async def failing_flush():
            return FlushResult(attempted=1, failed=1)

        async def fake_wait_for(awaitable, timeout):
            awaitable.close()
            delays.append(timeout)
            if len(delays) == 6:
                stop.set()
            raise TimeoutError

        monkeypatch.setattr(queue, "flush", failing_flush)
        monkeypatch.setattr("src.client.offline_queue.asyncio.wait_for", fake_wait_for)

        await queue.run(stop)

        assert delays == [60.0, 120.0, 240.0, 480.0, 900.0, 900.0]

    @pytest.mark.asyncio
    async def test_captive_portal_keeps_loop_running(self, queue_db, test_settings, clock, monkeypatch):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, html=CAPTIVE_PORTAL_PAGE))
        client = SyncClient(base_url="http://gw", tenant_id=TENANT, user_id=EMPLOYEE_ID, transport=transport)
        queue = OfflineQueue(queue_db, client, device_id="dev1", app_settings=test_settings, now=clock)
        await queue.capture(task_id="T1", status=CompletionStatus.OK)
        stop = asyncio.Event()
        delays = []

        async def fake_wait_for(awaitable, timeout):
            awaitable.close()
            delays.append(timeout)
            if len(delays) == 2:
                stop.set()
            raise TimeoutError

        monkeypatch.setattr("src.client.offline_queue.asyncio.wait_for", fake_wait_for)

        await queue.run(stop)
        await client.close()

        assert delays == [60.0, 120.0]
        pending = await queue.pending()
        assert [item.retry_count for item in pending] == [2]
        assert "non-JSON" in pending[0].last_error

    @pytest.mark.asyncio
    async def test_unexpected_error_counts_as_failed_round(self, queue, monkeypatch):
        stop = asyncio.Event()
        delays = []

        async def broken_flush():
            raise RuntimeError("local store corrupted")

        async def fake_wait_for(awaitable, timeout):
            awaitable.close()
            delays.append(timeout)
            if len(delays) == 2:
                stop.set()
            raise TimeoutError

        monkeypatch.setattr(queue, "flush", broken_flush)
        monkeypatch.setattr("src.client.offline_queue.asyncio.wait_for", fake_wait_for)

        await queue.run(stop)

        assert delays == [60.0, 120.0]
