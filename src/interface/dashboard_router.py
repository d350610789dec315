"""Manager dashboard endpoints."""

import logging
from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from src.core.clock import utc_now
from src.core.db_client import sanitize_param
from src.core.errors import NotFoundError, PermissionDeniedError
from src.interface.dependencies import DBDep, IdentityDep
from src.services.compliance_service import calculate_area_compliance


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/areas/{area_id}/compliance")
async def area_compliance(
    area_id: str,
    identity: IdentityDep,
    db: DBDep,
    days: Annotated[int, Query(ge=1, le=365)] = 30,
) -> JSONResponse:
    """Compliance for tasks due in the last ``days`` days."""
    if not identity.is_privileged:
        msg = "Only managers and admins can view compliance"
        raise PermissionDeniedError(msg)

    area = await db.get_first_record(
        collection="areas",
        filter_query=f'tenant_id = "{sanitize_param(identity.tenant_id)}" && id = "{sanitize_param(area_id)}"',
    )
    if area is None:
        msg = f"Area not found: {area_id}"
        raise NotFoundError(msg)

    now = utc_now()
    compliance = await calculate_area_compliance(
        db,
        tenant_id=identity.tenant_id,
        area_id=area_id,
        start=now - timedelta(days=days),
        end=now,
        now=now,
    )
    return JSONResponse(content=compliance.model_dump(mode="json"))
