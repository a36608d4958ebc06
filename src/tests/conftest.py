import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from httpx import ASGITransport, AsyncClient
from types import SimpleNamespace
from unittest.mock import AsyncMock

from greenhouse_gateway.__main__ import APIServer, AppState, build_components
from greenhouse_gateway.adapters.base import UpstreamPlatform
from greenhouse_gateway.core.notification_engine import NotificationEngine
from greenhouse_gateway.models.directory import UserRole
from greenhouse_gateway.storage.gateway_database import GatewayDatabase


class FixedClock:
    """Settable clock handed to components instead of utcnow"""
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def config(tmp_path):
    return {
        "api": {"host": "127.0.0.1", "port": 8000},
        "database": {"path": str(tmp_path / "gateway.db"), "pool_size": 3, "retention_days": 30},
        "thingsboard": {
            "request_timeout": 5,
            "liveness_timeout": 1,
            "offline_threshold_seconds": 180,
            "telemetry_fresh_seconds": 120,
            "rpc": {"default_timeout_ms": 5000},
        },
        "notifications": {
            "timezone": "UTC",
            "offline_dedup_minutes": 30,
            "alert_dedup_minutes": 10,
            "control_dismiss_seconds": 10,
            "default_dismiss_seconds": 300,
        },
        "logging": {"level": "DEBUG", "file": ""},
    }


async def seed_directory(db: GatewayDatabase, tb_base_url: str = "http://tb.local") -> SimpleNamespace:
    directory = db.directory
    ids = SimpleNamespace()
    ids.admin = await directory.add_user("admin", UserRole.SUPERADMIN, "Site Admin")
    ids.alice = await directory.add_user("alice", UserRole.OPERATOR, "Alice Grower")
    ids.bob = await directory.add_user("bob", UserRole.OPERATOR)
    ids.vera = await directory.add_user("vera", UserRole.VIEWER)
    ids.olga = await directory.add_user("olga", UserRole.OPERATOR)
    ids.inactive = await directory.add_user("ghost", UserRole.ADMIN, is_active=False)

    ids.project = await directory.add_project("farm", "North Farm", tb_base_url, "tenant@tb", "secret")
    ids.other_project = await directory.add_project("lab", "Lab", tb_base_url, "tenant@tb", "secret")
    ids.greenhouse = await directory.add_greenhouse(ids.project, "gh1", "Greenhouse 1", "dev-1")
    ids.unlinked = await directory.add_greenhouse(ids.project, "gh2", "Greenhouse 2")

    for user_id in (ids.alice, ids.bob, ids.vera):
        await directory.grant_project_access(user_id, ids.project)
    await directory.grant_project_access(ids.olga, ids.other_project)
    return ids


@pytest_asyncio.fixture
async def database(config):
    db = GatewayDatabase(config["database"]["path"], max_connections=3)
    await db.initialize(start_cleanup=False)
    yield db
    await db.close()


@pytest_asyncio.fixture
async def seeded(database):
    return await seed_directory(database)


@pytest.fixture
def engine(database, config, clock):
    return NotificationEngine(database, config["notifications"], clock=clock)


@pytest_asyncio.fixture
async def gateway(config, clock):
    """FastAPI app over a real database with a mocked platform"""
    upstream = AsyncMock(spec=UpstreamPlatform)
    upstream.is_device_online.return_value = True
    upstream.send_rpc.return_value = {}

    state = await build_components(config, AppState(), upstream=upstream, clock=clock, start_cleanup=False)
    ids = await seed_directory(state.db)
    app = await APIServer(config, asyncio.Event(), state).initialize()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://gateway") as http:
        yield SimpleNamespace(http=http, state=state, upstream=upstream, ids=ids)

    await state.db.close()
