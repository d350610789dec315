"""Pytest configuration and fixtures for unit tests."""

from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI
from starlette.datastructures import State

from src.core.config import Settings
from src.core.db_client import DBClient
from src.core.schema import init_db, init_queue_schema
from src.main import create_app, wire_services
from tests.unit.factories import (
    AREA_A,
    AREA_B,
    EMPLOYEE_ID,
    OTHER_TENANT,
    FakeClock,
    RecordingDispatcher,
    add_membership,
    create_area,
    identity_headers,
)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings isolated from the environment and .env files."""
    return Settings(
        _env_file=None,
        sqlite_db_path=str(tmp_path / "server.db"),
        offline_queue_db_path=str(tmp_path / "queue.db"),
        enable_scheduler=False,
        default_timezone="UTC",
        pull_completions_limit=100,
        materialization_window_days=14,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
async def db(test_settings) -> AsyncIterator[DBClient]:
    """A connected server store with the schema created."""
    client = DBClient(test_settings.sqlite_db_path)
    await client.connect()
    await init_db(client)
    yield client
    await client.close()


@pytest.fixture
async def queue_db(test_settings) -> AsyncIterator[DBClient]:
    """A connected client-side queue store."""
    client = DBClient(test_settings.offline_queue_db_path)
    await client.connect()
    await init_queue_schema(client)
    yield client
    await client.close()


@pytest.fixture
async def seeded_db(db, clock) -> DBClient:
    """Two areas in the main tenant, one in another tenant, the employee a member of area A only."""
    now = clock()
    await create_area(db, area_id=AREA_A, now=now)
    await create_area(db, area_id=AREA_B, now=now)
    await create_area(db, area_id="area-other", tenant_id=OTHER_TENANT, now=now)
    await add_membership(db, area_id=AREA_A, user_id=EMPLOYEE_ID, now=now)
    return db


@pytest.fixture
def services(seeded_db, dispatcher, clock, test_settings) -> State:
    """Service graph wired around the seeded store."""
    state = State()
    wire_services(state, seeded_db, dispatcher=dispatcher, now=clock, app_settings=test_settings)
    return state


@pytest.fixture
def app(services, test_settings) -> FastAPI:
    """Application with its state wired directly (the lifespan is not run)."""
    application = create_app(test_settings)
    for name in ("db", "dispatcher", "projection", "ledger", "gateway", "materializer"):
        setattr(application.state, name, getattr(services, name))
    return application


@pytest.fixture
async def http_client(app) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def manager_headers() -> dict[str, str]:
    return identity_headers()


@pytest.fixture
def employee_headers() -> dict[str, str]:
    return identity_headers(user_id=EMPLOYEE_ID, role="employee")
