"""Task endpoints: manager CRUD, single-item completions, history, materialization."""

import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from src.core.clock import utc_now
from src.core.errors import PermissionDeniedError
from src.domain.sync import (
    ChecklistCompletionRequest,
    ClientCompletion,
    CompletionOutcome,
    SingleCompletionRequest,
)
from src.domain.task import TaskCreate, TaskUpdate
from src.interface.dependencies import IdentityDep, LedgerDep, MaterializerDep, ProjectionDep


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


def _completion_response(recorded_outcome: CompletionOutcome, payload: dict) -> JSONResponse:
    status_code = status.HTTP_201_CREATED if recorded_outcome == CompletionOutcome.CREATED else status.HTTP_200_OK
    return JSONResponse(content=payload, status_code=status_code)


@router.post("")
async def create_task(body: TaskCreate, identity: IdentityDep, projection: ProjectionDep) -> JSONResponse:
    """Create a task (managers and admins only)."""
    task = await projection.create_task(identity, body)
    return JSONResponse(content=task.to_wire(), status_code=status.HTTP_201_CREATED)


@router.post("/materialize")
async def materialize(identity: IdentityDep, materializer: MaterializerDep) -> JSONResponse:
    """Materialize upcoming occurrences for the caller's tenant now."""
    if not identity.is_privileged:
        msg = "Only managers and admins can run materialization"
        raise PermissionDeniedError(msg)
    report = await materializer.materialize_all(tenant_id=identity.tenant_id)
    return JSONResponse(content=report.model_dump(mode="json"))


@router.get("/{task_id}")
async def get_task(task_id: str, identity: IdentityDep, projection: ProjectionDep) -> JSONResponse:
    task = await projection.get_task(identity.tenant_id, task_id)
    return JSONResponse(content=task.to_wire())


@router.patch("/{task_id}")
async def update_task(
    task_id: str, body: TaskUpdate, identity: IdentityDep, projection: ProjectionDep
) -> JSONResponse:
    """Edit a task. Non-privileged callers may only change the status."""
    task = await projection.update_task(identity, task_id, body)
    return JSONResponse(content=task.to_wire())


@router.post("/{task_id}/complete")
async def complete_task(
    task_id: str, body: SingleCompletionRequest, identity: IdentityDep, ledger: LedgerDep
) -> JSONResponse:
    """Complete a whole task through the ledger (201 created, 200 duplicate)."""
    item = ClientCompletion(
        offline_id=body.offline_id,
        task_id=task_id,
        status=body.status,
        notes=body.notes,
        completed_at=body.completed_at or utc_now(),
        problem_reason=body.problem_reason,
        problem_description=body.problem_description,
        photo_urls=body.photo_urls,
    )
    recorded = await ledger.record_completion(identity, item)
    payload = {"status": recorded.outcome.value, "completion": recorded.record.to_wire()}
    return _completion_response(recorded.outcome, payload)


@router.post("/{task_id}/checklist/{item_id}/complete")
async def complete_checklist_item(
    task_id: str,
    item_id: str,
    body: ChecklistCompletionRequest,
    identity: IdentityDep,
    ledger: LedgerDep,
) -> JSONResponse:
    """Record a checklist item completion and update the item."""
    item = ClientCompletion(
        offline_id=body.offline_id,
        task_id=task_id,
        checklist_item_id=item_id,
        status=body.status,
        notes=body.notes,
        completed_at=body.completed_at or utc_now(),
        problem_reason=body.problem_reason,
    )
    recorded = await ledger.record_completion(identity, item)
    payload = {"status": recorded.outcome.value, "completion": recorded.record.to_wire()}
    return _completion_response(recorded.outcome, payload)


@router.get("/{task_id}/history")
async def task_history(task_id: str, identity: IdentityDep, projection: ProjectionDep) -> JSONResponse:
    """Ledger entries for a task, most recent first."""
    history = await projection.task_history(identity.tenant_id, task_id)
    return JSONResponse(content=[record.to_wire() for record in history])
