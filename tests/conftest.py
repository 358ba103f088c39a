from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from matchsync.infra.memory import MemoryStore
from matchsync.session import SyncSession
from matchsync.settings import Settings

BASE_TS = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
	"""Monotonic clock the tests move by hand."""

	def __init__(self, start: float = 1_000.0) -> None:
		self.value = start

	def __call__(self) -> float:
		return self.value

	def advance(self, seconds: float) -> None:
		self.value += seconds


def ts(minutes: int) -> datetime:
	return BASE_TS + timedelta(minutes=minutes)


def profile_row(profile_id: str, **overrides) -> dict:
	row = {
		"id": profile_id,
		"first_name": profile_id.capitalize(),
		"last_name": "Tester",
		"age": 27,
		"bio": None,
		"gender": "female",
		"city": "Austin",
		"state": "TX",
		"interests": ["hiking"],
		"photos": [f"{profile_id}-1.jpg", f"{profile_id}-2.jpg"],
		"show_age": True,
		"show_location": True,
		"show_online": True,
		"created_at": BASE_TS,
	}
	row.update(overrides)
	return row


@pytest.fixture
def make_profile():
	return profile_row


@pytest.fixture
def at():
	return ts


@pytest.fixture
def clock():
	return FakeClock()


@pytest.fixture
def store():
	return MemoryStore()


@pytest.fixture
def test_settings():
	return Settings(
		query_retry_base_delay_seconds=0,
		query_retry_max_delay_seconds=0,
		cache_gc_interval_seconds=0,
	)


@pytest_asyncio.fixture
async def session(store, clock, test_settings):
	sync = SyncSession(store, settings=test_settings, clock=clock)
	try:
		yield sync
	finally:
		await sync.close()
