import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from platesafe.main import create_app
from platesafe.safety.container import build_container
from platesafe.safety.domain.identity import InMemoryPlateDirectory
from platesafe.settings import settings

STAFF_ID = "staff-moderator-1"


class ManualClock:
	"""Wall clock that only moves when told to."""

	def __init__(self, start: datetime | None = None) -> None:
		self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

	def __call__(self) -> datetime:
		return self.now

	def advance(self, **kwargs) -> datetime:
		self.now += timedelta(**kwargs)
		return self.now


class ManualMonotonic:
	def __init__(self, start: float = 1_000.0) -> None:
		self.value = start

	def __call__(self) -> float:
		return self.value

	def advance(self, seconds: float) -> float:
		self.value += seconds
		return self.value


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from platesafe.infra.redis import redis_client, set_redis_client

	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture
def clock() -> ManualClock:
	return ManualClock()


@pytest.fixture
def monotonic() -> ManualMonotonic:
	return ManualMonotonic()


@pytest.fixture
def test_settings():
	return settings.model_copy(
		update={
			"safety_staff_ids": (STAFF_ID,),
			"rate_limit_use_redis": False,
			"safety_use_postgres": False,
			"escalation_sweep_enabled": False,
			"moderation_api_base": None,
			"moderation_api_key": None,
		}
	)


@pytest.fixture
def directory() -> InMemoryPlateDirectory:
	return InMemoryPlateDirectory()


@pytest.fixture
def container(test_settings, directory, clock):
	return build_container(test_settings, directory=directory, clock=clock)


@pytest_asyncio.fixture
async def api_client(container):
	app = create_app(container=container)
	# ASGITransport does not run the lifespan; wire the container directly.
	app.state.safety = container
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
	await container.aclose()
