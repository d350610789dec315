"""HTTP client for the sync gateway, used by the offline queue."""

import logging
from datetime import datetime
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from src.core.config import constants
from src.domain.sync import EntityType, PullResponse, PushResponse, SyncStatus


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


# HTTP status code constants for error handling
HTTP_CLIENT_ERROR_START = 400
HTTP_CLIENT_ERROR_END = 500


class SyncUnavailableError(Exception):
    """The gateway could not be reached or failed on its side; retry later."""


class SyncRejectedError(Exception):
    """The gateway rejected the request itself (4xx)."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code


class SyncClient:
    """Thin async wrapper over the gateway endpoints.

    Identity headers are attached to every request; the transport can be
    swapped (e.g. for ``httpx.ASGITransport`` in tests).
    """

    def __init__(
        self,
        *,
        base_url: str,
        tenant_id: str,
        user_id: str,
        role: str = "employee",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = constants.API_TIMEOUT_SECONDS,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                constants.HEADER_TENANT_ID: tenant_id,
                constants.HEADER_USER_ID: user_id,
                constants.HEADER_USER_ROLE: role,
            },
            transport=transport,
            timeout=timeout,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SyncClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.warning("sync_request_unreachable", extra={"path": path, "error": str(e)})
            msg = f"Sync gateway unreachable: {e}"
            raise SyncUnavailableError(msg) from e

        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                # Captive portals and proxies answer 200 with an HTML page
                logger.warning(
                    "sync_response_not_json",
                    extra={"path": path, "content_type": response.headers.get("content-type")},
                )
                msg = f"Sync gateway returned a non-JSON response for {path}"
                raise SyncUnavailableError(msg) from e

        if HTTP_CLIENT_ERROR_START <= response.status_code < HTTP_CLIENT_ERROR_END:
            raise SyncRejectedError(response.status_code, response.text)

        logger.warning("sync_request_failed", extra={"path": path, "status_code": response.status_code})
        msg = f"Sync gateway returned status {response.status_code}"
        raise SyncUnavailableError(msg)

    async def _fetch(
        self, model: type[ModelT], method: str, path: str, *, json: dict[str, Any] | None = None
    ) -> ModelT:
        data = await self._request(method, path, json=json)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning("sync_response_invalid", extra={"path": path, "error": str(e)})
            msg = f"Sync gateway returned an unexpected response for {path}"
            raise SyncUnavailableError(msg) from e

    async def push_batch(self, completions: list[dict[str, Any]]) -> PushResponse:
        """Push a batch of completions (camelCase payloads)."""
        return await self._fetch(PushResponse, "POST", "/sync/push", json={"completions": completions})

    async def complete_single(self, item: dict[str, Any]) -> str:
        """Submit one completion through the single-item endpoints.

        Returns:
            The server id of the created or already existing completion
        """
        task_id = item["taskId"]
        checklist_item_id = item.get("checklistItemId")
        if checklist_item_id:
            path = f"/tasks/{task_id}/checklist/{checklist_item_id}/complete"
            fields = ("offlineId", "status", "notes", "problemReason", "completedAt")
        else:
            path = f"/tasks/{task_id}/complete"
            fields = (
                "offlineId",
                "status",
                "notes",
                "problemReason",
                "problemDescription",
                "photoUrls",
                "completedAt",
            )
        body = {key: item[key] for key in fields if item.get(key) is not None}
        data = await self._request("POST", path, json=body)
        try:
            return data["completion"]["id"]
        except (KeyError, TypeError) as e:
            msg = f"Sync gateway returned an unexpected response for {path}"
            raise SyncUnavailableError(msg) from e

    async def pull(
        self,
        since: datetime | None = None,
        entity_types: list[EntityType] | None = None,
    ) -> PullResponse:
        """Fetch changes since ``since`` (full resync when None)."""
        body: dict[str, Any] = {}
        if since is not None:
            body["sinceTimestamp"] = since.isoformat()
        if entity_types is not None:
            body["entityTypes"] = [entity_type.value for entity_type in entity_types]
        return await self._fetch(PullResponse, "POST", "/sync/pull", json=body)

    async def status(self) -> SyncStatus:
        return await self._fetch(SyncStatus, "GET", "/sync/status")
