"""Area membership lookup used to scope pulls for non-privileged users."""

from typing import Protocol

from src.core.db_client import DBClient, sanitize_param


class AreaMembershipLookup(Protocol):
    async def list_user_area_ids(self, *, tenant_id: str, user_id: str) -> set[str]: ...


class DBAreaMembership:
    """Reads memberships from the ``area_users`` table."""

    def __init__(self, db: DBClient) -> None:
        self._db = db

    async def list_user_area_ids(self, *, tenant_id: str, user_id: str) -> set[str]:
        rows = await self._db.list_all_records(
            collection="area_users",
            filter_query=f'tenant_id = "{sanitize_param(tenant_id)}" && user_id = "{sanitize_param(user_id)}"',
        )
        return {row["area_id"] for row in rows}
