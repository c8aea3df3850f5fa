import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-moderation-suite")

from app.infra import postgres
from app.main import app
from app.moderation.domain import container
from app.moderation.domain.rbac import InMemoryRoleDirectory, StaffContext
from app.settings import settings


# Ensure a selector-based event loop policy on Windows to avoid Proactor issues with async IO
if hasattr(asyncio, "WindowsSelectorEventLoopPolicy"):
	asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FrozenClock:
	"""Manually advanced clock shared by the services under test."""

	def __init__(self, start: datetime | None = None) -> None:
		self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **kwargs) -> datetime:
		self.now = self.now + timedelta(**kwargs)
		return self.now


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from app.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""API tests authenticate via X-User-Id/X-User-Roles headers, which are only accepted in dev mode."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest.fixture
def clock() -> FrozenClock:
	return FrozenClock()


@pytest.fixture
def roles() -> InMemoryRoleDirectory:
	return InMemoryRoleDirectory(admins={"admin-1"}, moderators={"mod-1", "mod-2"})


@pytest.fixture(autouse=True)
def moderation_container(clock, roles):
	container.configure(roles=roles, clock=clock, staff_recipient_ids=("admin-1",))
	yield container
	container.configure()


@pytest.fixture
def moderator() -> StaffContext:
	return StaffContext(actor_id="mod-1", roles=("moderator",))


@pytest.fixture
def other_moderator() -> StaffContext:
	return StaffContext(actor_id="mod-2", roles=("moderator",))


@pytest.fixture
def admin() -> StaffContext:
	return StaffContext(actor_id="admin-1", roles=("admin",))


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
