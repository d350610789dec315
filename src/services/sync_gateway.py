"""Sync gateway: the pull/push/status protocol boundary.

Pull scoping:
- admins and managers see the whole tenant
- everyone else sees tasks in their areas or assigned to them, their areas,
  and completions on tasks they can see

Incremental pulls return rows changed strictly after ``since_timestamp``
(``updated_at`` for tasks and areas, server receipt time for completions).
The response's ``synced_at`` is captured before reading and sits one microsecond
behind the server clock, so anything written while the pull runs comes back on
the next call. Delivery is at-least-once; clients upsert by id.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from src.core.clock import Clock, to_iso, utc_now
from src.core.config import Settings, constants, settings
from src.core.db_client import DBClient, or_filter, sanitize_param
from src.core.errors import ScopeViolationError
from src.core.logging import span
from src.domain.area import Area
from src.domain.completion import CompletionRecord
from src.domain.sync import EntityType, PullRequest, PullResponse, PushRequest, PushResponse, SyncStatus
from src.domain.task import Task
from src.domain.user import Identity
from src.services.area_membership import AreaMembershipLookup
from src.services.ledger import CompletionLedger
from src.services.projection import TaskProjection


logger = logging.getLogger(__name__)


class PullScope:
    """Resolved visibility for one pull."""

    def __init__(self, tenant_id: str, area_ids: set[str] | None, user_id: str | None) -> None:
        self.tenant_id = tenant_id
        # None means no area restriction
        self.area_ids = area_ids
        self.user_id = user_id

    @property
    def is_restricted(self) -> bool:
        return self.area_ids is not None or self.user_id is not None

    def task_filter(self) -> str:
        base = f'tenant_id = "{sanitize_param(self.tenant_id)}"'
        conditions = []
        if self.area_ids:
            conditions.extend(f'area_id = "{sanitize_param(area_id)}"' for area_id in sorted(self.area_ids))
        if self.user_id is not None:
            conditions.append(f'assigned_to_id = "{sanitize_param(self.user_id)}"')
        if not conditions:
            if self.area_ids is not None:
                # Restricted to an empty set of areas and no user fallback
                return f'{base} && id = null'
            return base
        return f"{base} && ({' || '.join(conditions)})"


class SyncGateway:
    """Pull, push and status for offline clients."""

    def __init__(
        self,
        db: DBClient,
        ledger: CompletionLedger,
        projection: TaskProjection,
        area_lookup: AreaMembershipLookup,
        app_settings: Settings | None = None,
        now: Clock = utc_now,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._projection = projection
        self._area_lookup = area_lookup
        self._settings = app_settings or settings
        self._now = now

    async def resolve_scope(self, identity: Identity, requested_area_ids: list[str] | None) -> PullScope:
        """Work out what the caller may see.

        Raises:
            ScopeViolationError: A non-privileged caller named an area outside their membership
        """
        requested = set(requested_area_ids) if requested_area_ids else None

        if identity.is_privileged:
            return PullScope(identity.tenant_id, requested, None)

        member_of = await self._area_lookup.list_user_area_ids(tenant_id=identity.tenant_id, user_id=identity.user_id)
        if requested is not None:
            outside = requested - member_of
            if outside:
                msg = f"Areas outside caller scope: {', '.join(sorted(outside))}"
                raise ScopeViolationError(msg)
            return PullScope(identity.tenant_id, requested, None)
        return PullScope(identity.tenant_id, member_of, identity.user_id)

    async def pull(self, identity: Identity, request: PullRequest) -> PullResponse:
        """Return what changed since ``request.since_timestamp`` within the caller's scope."""
        with span("sync_gateway.pull"):
            scope = await self.resolve_scope(identity, request.area_ids)
            since = to_iso(request.since_timestamp) if request.since_timestamp else None

            async with self._db.transaction():
                # Writes stamped in the same microsecond as the read come back next time
                synced_at = self._now() - timedelta(microseconds=1)
                tasks = await self._pull_tasks(scope, since) if request.wants(EntityType.TASKS) else None
                areas = await self._pull_areas(scope, since) if request.wants(EntityType.AREAS) else None
                completions = None
                if request.wants(EntityType.COMPLETIONS):
                    completions, cursor = await self._pull_completions(scope, since)
                    if cursor is not None:
                        synced_at = min(synced_at, cursor)

            logger.info(
                "Pull served",
                extra={
                    "tenant_id": identity.tenant_id,
                    "user_id": identity.user_id,
                    "incremental": since is not None,
                    "task_count": len(tasks) if tasks is not None else None,
                    "area_count": len(areas) if areas is not None else None,
                    "completion_count": len(completions) if completions is not None else None,
                },
            )
            return PullResponse(tasks=tasks, areas=areas, completions=completions, synced_at=synced_at)

    async def _pull_tasks(self, scope: PullScope, since: str | None) -> list[Task]:
        filter_query = scope.task_filter()
        if since:
            filter_query = f'{filter_query} && updated_at > "{since}"'
        return await self._projection.list_tasks(filter_query=filter_query)

    async def _pull_areas(self, scope: PullScope, since: str | None) -> list[Area]:
        filter_query = f'tenant_id = "{sanitize_param(scope.tenant_id)}"'
        if scope.area_ids is not None:
            if not scope.area_ids:
                return []
            filter_query = f"{filter_query} && {or_filter('id', sorted(scope.area_ids))}"
        if since:
            filter_query = f'{filter_query} && updated_at > "{since}"'
        records = await self._db.list_all_records(collection="areas", filter_query=filter_query, sort="updated_at")
        return [Area(**record) for record in records]

    async def _pull_completions(
        self, scope: PullScope, since: str | None
    ) -> tuple[list[CompletionRecord], datetime | None]:
        """Fetch completions, bounded by the configured limit.

        A full resync gets the most recent slice. An incremental pull gets the
        oldest changes first; when it is truncated the returned cursor sits just
        before the last returned row so the next pull continues from there.
        """
        limit = self._settings.pull_completions_limit
        base = f'tenant_id = "{sanitize_param(scope.tenant_id)}"'
        if since:
            base = f'{base} && synced_at > "{since}"'
        sort = "synced_at" if since else "-synced_at"

        if not scope.is_restricted:
            rows = await self._db.list_records(
                collection="task_completions", filter_query=base, sort=sort, per_page=limit + 1
            )
        else:
            rows = await self._scoped_completion_rows(scope, base, sort, limit + 1)

        truncated = len(rows) > limit
        rows = rows[:limit]
        cursor = None
        if since and truncated:
            last = CompletionRecord(**rows[-1])
            cursor = last.synced_at - timedelta(microseconds=1)
        return [CompletionRecord(**row) for row in rows], cursor

    async def _scoped_completion_rows(
        self, scope: PullScope, base: str, sort: str, per_chunk: int
    ) -> list[dict[str, Any]]:
        visible = await self._db.list_all_records(collection="tasks", filter_query=scope.task_filter())
        task_ids = [task["id"] for task in visible]

        rows: list[dict[str, Any]] = []
        for offset in range(0, len(task_ids), constants.FILTER_CHUNK_SIZE):
            chunk = task_ids[offset : offset + constants.FILTER_CHUNK_SIZE]
            rows.extend(
                await self._db.list_records(
                    collection="task_completions",
                    filter_query=f"{base} && {or_filter('task_id', chunk)}",
                    sort=sort,
                    per_page=per_chunk,
                )
            )
        rows.sort(key=lambda row: row["synced_at"], reverse=sort.startswith("-"))
        return rows

    async def push(self, identity: Identity, request: PushRequest) -> PushResponse:
        """Hand a batch to the completion ledger."""
        return await self._ledger.push(identity, request)

    async def status(self, identity: Identity) -> SyncStatus:
        """Cheap backlog check: open tasks for the caller and the server time."""
        with span("sync_gateway.status"):
            pending = await self._projection.count_pending_tasks(tenant_id=identity.tenant_id, user_id=identity.user_id)
            return SyncStatus(pending_task_count=pending, server_time=self._now())
