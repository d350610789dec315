"""FastAPI dependencies: caller identity and wired services."""

import logging
from typing import Annotated

from fastapi import Depends, Header, Request
from pydantic import ValidationError

from src.core.config import constants
from src.core.db_client import DBClient
from src.core.errors import IdentityMissingError
from src.domain.user import Identity
from src.services.ledger import CompletionLedger
from src.services.materializer import OccurrenceMaterializer
from src.services.projection import TaskProjection
from src.services.sync_gateway import SyncGateway


logger = logging.getLogger(__name__)


async def get_identity(
    tenant_id: Annotated[str | None, Header(alias=constants.HEADER_TENANT_ID)] = None,
    user_id: Annotated[str | None, Header(alias=constants.HEADER_USER_ID)] = None,
    role: Annotated[str | None, Header(alias=constants.HEADER_USER_ROLE)] = None,
) -> Identity:
    """Resolve the caller from headers set by the upstream authenticating proxy."""
    if not tenant_id or not user_id:
        logger.warning("identity_missing", extra={"has_tenant": bool(tenant_id), "has_user": bool(user_id)})
        msg = "Tenant and user identity are required"
        raise IdentityMissingError(msg)
    try:
        return Identity(tenant_id=tenant_id, user_id=user_id, role=(role or "employee").lower())
    except ValidationError as e:
        logger.warning("identity_invalid", extra={"role": role})
        msg = f"Invalid identity: unknown role {role!r}"
        raise IdentityMissingError(msg) from e


def get_db(request: Request) -> DBClient:
    return request.app.state.db


def get_projection(request: Request) -> TaskProjection:
    return request.app.state.projection


def get_ledger(request: Request) -> CompletionLedger:
    return request.app.state.ledger


def get_gateway(request: Request) -> SyncGateway:
    return request.app.state.gateway


def get_materializer(request: Request) -> OccurrenceMaterializer:
    return request.app.state.materializer


IdentityDep = Annotated[Identity, Depends(get_identity)]
DBDep = Annotated[DBClient, Depends(get_db)]
ProjectionDep = Annotated[TaskProjection, Depends(get_projection)]
LedgerDep = Annotated[CompletionLedger, Depends(get_ledger)]
GatewayDep = Annotated[SyncGateway, Depends(get_gateway)]
MaterializerDep = Annotated[OccurrenceMaterializer, Depends(get_materializer)]
