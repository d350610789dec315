"""Sync protocol endpoints used by offline clients."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from src.domain.sync import PullRequest, PushRequest
from src.interface.dependencies import GatewayDep, IdentityDep


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/pull")
async def pull(body: PullRequest, identity: IdentityDep, gateway: GatewayDep) -> JSONResponse:
    """Return tasks, areas and completions changed since ``sinceTimestamp``."""
    response = await gateway.pull(identity, body)
    return JSONResponse(content=response.to_wire())


@router.post("/push")
async def push(body: PushRequest, identity: IdentityDep, gateway: GatewayDep) -> JSONResponse:
    """Accept a batch of client-captured completions and checklist updates.

    Item-level failures are reported in ``errors``; the request itself only
    fails for a malformed envelope or missing identity.
    """
    response = await gateway.push(identity, body)
    return JSONResponse(content=response.to_wire())


@router.get("/status")
async def status(identity: IdentityDep, gateway: GatewayDep) -> JSONResponse:
    """Pending task count for the caller and the server time."""
    response = await gateway.status(identity)
    return JSONResponse(content=response.to_wire())
