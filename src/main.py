"""fieldsync - offline-first sync and recurrence engine for checklist tasks."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.datastructures import State

from src.core.clock import Clock, utc_now
from src.core.config import Settings, settings
from src.core.db_client import DatabaseError, DBClient, RecordNotFoundError
from src.core.errors import ErrorCode, ErrorResponse, SyncError, error_response_for
from src.core.logging import configure_logfire, instrument_fastapi
from src.core.scheduler import MATERIALIZE_JOB, OVERDUE_JOB, build_scheduler, start_scheduler, stop_scheduler
from src.core.scheduler_tracker import job_tracker
from src.core.schema import init_db
from src.interface.dashboard_router import router as dashboard_router
from src.interface.sync_router import router as sync_router
from src.interface.tasks_router import router as tasks_router
from src.services.area_membership import DBAreaMembership
from src.services.ledger import CompletionLedger
from src.services.materializer import OccurrenceMaterializer
from src.services.notification_service import LoggingNotificationDispatcher, NotificationDispatcher
from src.services.projection import TaskProjection
from src.services.sync_gateway import SyncGateway


logger = logging.getLogger(__name__)


def wire_services(
    state: State,
    db: DBClient,
    dispatcher: NotificationDispatcher | None = None,
    now: Clock = utc_now,
    app_settings: Settings | None = None,
) -> None:
    """Construct the service graph around one store handle and attach it to app state."""
    active = app_settings or settings
    active_dispatcher = dispatcher or LoggingNotificationDispatcher()

    projection = TaskProjection(db, active_dispatcher, now)
    ledger = CompletionLedger(db, projection, active_dispatcher, now)

    state.db = db
    state.dispatcher = active_dispatcher
    state.projection = projection
    state.ledger = ledger
    state.gateway = SyncGateway(db, ledger, projection, DBAreaMembership(db), active, now)
    state.materializer = OccurrenceMaterializer(db, projection, active.materialization_window_days, now)


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    status_code, body = error_response_for(exc)
    logger.warning(
        "request_rejected",
        extra={"path": request.url.path, "code": body.code, "status_code": status_code, "error": str(exc)},
    )
    return JSONResponse(content=body.model_dump(), status_code=status_code)


async def record_not_found_handler(request: Request, exc: RecordNotFoundError) -> JSONResponse:
    message = str(exc.args[0]) if exc.args else "Record not found"
    logger.warning("record_not_found", extra={"path": request.url.path, "error": message})
    body = ErrorResponse(code=ErrorCode.ERR_NOT_FOUND, message=message)
    return JSONResponse(content=body.model_dump(), status_code=404)


async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error("store_unavailable", extra={"path": request.url.path, "error": str(exc)})
    body = ErrorResponse(
        code=ErrorCode.ERR_STORE_UNAVAILABLE,
        message="Temporary storage failure. Nothing was applied and the request can be retried.",
    )
    return JSONResponse(content=body.model_dump(), status_code=503)


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    The lifespan opens the store, creates the schema, wires the services and
    starts the scheduler when enabled.
    """
    active = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Startup
        # Configure logging first so startup logs are captured
        configure_logfire(active)

        db = DBClient(active.sqlite_db_path)
        await db.connect()
        await init_db(db)
        logger.info("Database initialized")

        wire_services(app.state, db, app_settings=active)

        scheduler = None
        if active.enable_scheduler:
            scheduler = build_scheduler(app.state.materializer, app.state.projection, app.state.dispatcher, active)
            start_scheduler(scheduler)
        try:
            yield
        finally:
            # Shutdown
            if scheduler is not None:
                stop_scheduler(scheduler)
            await db.close()

    app = FastAPI(
        title="fieldsync",
        description="Offline-first sync and recurrence engine for checklist tasks",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(RecordNotFoundError, record_not_found_handler)
    app.add_exception_handler(DatabaseError, database_error_handler)

    # Register routers
    app.include_router(sync_router)
    app.include_router(tasks_router)
    app.include_router(dashboard_router)

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse(content={"status": "healthy"}, status_code=200)

    @app.get("/health/scheduler")
    async def scheduler_health_check() -> JSONResponse:
        """Scheduler health check endpoint with job statuses."""
        job_statuses = {}
        for job_name in (MATERIALIZE_JOB, OVERDUE_JOB):
            job_statuses[job_name] = await job_tracker.get_job_status(job_name)

        dlq = job_tracker.get_dead_letter_queue()

        # Determine overall health
        has_failures = any(status["consecutive_failures"] > 0 for status in job_statuses.values())

        overall_status = "degraded" if has_failures else "healthy"
        if len(dlq) > 0:
            overall_status = "critical"

        return JSONResponse(
            content={
                "status": overall_status,
                "jobs": job_statuses,
                "dead_letter_queue_size": len(dlq),
                "dead_letter_queue": dlq,
            },
            status_code=200 if overall_status == "healthy" else 503,
        )

    return app


app = create_app()

# Instrument FastAPI with Logfire
instrument_fastapi(app)
