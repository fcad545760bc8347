import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from overlooked.infra import postgres
from overlooked.infra.cache import TTLCache
from overlooked.infra.memory import InMemoryBackend
from overlooked.infra.providers import set_backend
from overlooked.main import app
from overlooked.services import build_services, set_services
from overlooked.settings import settings


class FakeClock:
	"""Wall clock for services plus a monotonic clock for caches, moved together."""

	def __init__(self, start: datetime) -> None:
		self.current = start
		self.seconds = 1000.0

	def __call__(self) -> datetime:
		return self.current

	def monotonic(self) -> float:
		return self.seconds

	def advance(self, seconds: float) -> None:
		self.current = self.current + timedelta(seconds=seconds)
		self.seconds += seconds


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from overlooked.infra.redis import redis_client, set_redis_client
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
	"""Ensure a consistent test environment.

	API tests authenticate via the X-User-Id header, which is only accepted in dev mode.
	"""
	original_env = settings.environment
	original_backend = settings.data_backend
	settings.environment = "dev"
	settings.data_backend = "memory"
	try:
		yield
	finally:
		settings.environment = original_env
		settings.data_backend = original_backend


@pytest.fixture
def clock():
	return FakeClock(datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def backend():
	return InMemoryBackend()


@pytest.fixture
def services(backend, clock):
	bundle = build_services(
		backend,
		now=clock,
		membership_cache=TTLCache(settings.membership_cache_ttl_seconds, clock.monotonic),
		url_cache=TTLCache(150, clock.monotonic),
	)
	set_backend(backend)
	set_services(bundle)
	try:
		yield bundle
	finally:
		set_services(None)
		set_backend(None)


@pytest_asyncio.fixture
async def api_client(services):
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
