"""Session context shared by every hook, mutation and realtime scope.

A `SyncSession` owns one query cache for the lifetime of a signed-in app
session. Hooks receive it explicitly instead of reaching for a module-level
client, so each test (or each user on a shared process) gets its own cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Callable, Iterable, Optional

import ulid

from matchsync.domain.cache.client import QueryCache
from matchsync.domain.cache.keys import QueryKey, resource_of
from matchsync.domain.cache.models import Fetcher
from matchsync.domain.cache.observer import PageFetcher, PaginatedQueryObserver, QueryObserver
from matchsync.domain.cache.policies import policy_for, retry_policy
from matchsync.domain.discovery.models import DiscoveryProfile
from matchsync.domain.matches.models import Match
from matchsync.domain.realtime.reconciler import ConversationRealtime, ProfilesRealtime, UserRealtime
from matchsync.infra.store import RemoteStore
from matchsync.obs.logging import bind_context, reset_context
from matchsync.settings import Settings
from matchsync.settings import settings as default_settings

logger = logging.getLogger(__name__)


class SyncSession:
	def __init__(
		self,
		store: RemoteStore,
		*,
		settings: Optional[Settings] = None,
		clock: Optional[Callable[[], float]] = None,
	) -> None:
		self.store = store
		self.settings = settings or default_settings
		self.session_id = str(ulid.new())
		self.cache = QueryCache(clock=clock or time.monotonic)
		self.retry = retry_policy(self.settings)
		self.discovered: list[DiscoveryProfile] = []
		self.selected_match: Optional[Match] = None
		self.user_realtime = UserRealtime(self)
		self.conversation_realtime = ConversationRealtime(self)
		self.profiles_realtime = ProfilesRealtime(self)
		self._gc_task: Optional[asyncio.Task] = None
		self._closed = False

	# --- hook construction ---
	def query(self, key: QueryKey, fetcher: Fetcher, *, enabled: bool = True) -> QueryObserver:
		return QueryObserver(
			self.cache,
			key,
			fetcher,
			policy=policy_for(resource_of(key)),
			retry=self.retry,
			enabled=enabled,
		)

	def paginated_query(self, key: QueryKey, fetch_page: PageFetcher, *, enabled: bool = True) -> PaginatedQueryObserver:
		return PaginatedQueryObserver(
			self.cache,
			key,
			fetch_page,
			policy=policy_for(resource_of(key)),
			retry=self.retry,
			enabled=enabled,
		)

	# --- discovery working set ---
	def set_discovered(self, profiles: Iterable[DiscoveryProfile]) -> None:
		self.discovered = list(profiles)

	def remove_discovered(self, profile_id: str) -> None:
		self.discovered = [profile for profile in self.discovered if profile.id != profile_id]

	# --- identity and conversation selection ---
	async def sign_in(self, user_id: Optional[str]) -> None:
		"""Point the per-user realtime channel at `user_id` (None signs out)."""
		tokens = bind_context(session_id=self.session_id)
		try:
			if not user_id:
				await self.select_match(None)
			await self.user_realtime.set_user(user_id)
		finally:
			reset_context(tokens)

	async def select_match(self, match: Optional[Match]) -> None:
		self.selected_match = match
		await self.conversation_realtime.select(match.id if match is not None else None)

	# --- lifecycle ---
	def start(self) -> None:
		"""Start the periodic cache sweep."""
		interval = float(self.settings.cache_gc_interval_seconds)
		if interval <= 0 or (self._gc_task is not None and not self._gc_task.done()):
			return
		self._gc_task = asyncio.create_task(self._sweep(interval), name=f"cache-gc:{self.session_id}")

	async def _sweep(self, interval: float) -> None:
		try:
			while True:
				await asyncio.sleep(interval)
				evicted = self.cache.gc()
				if evicted:
					logger.debug("cache sweep evicted %d entries", evicted)
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("cache sweep failed", extra={"session_id": self.session_id})

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		task, self._gc_task = self._gc_task, None
		if task is not None:
			task.cancel()
			with suppress(asyncio.CancelledError):
				await task
		await self.conversation_realtime.stop()
		await self.user_realtime.stop()
		await self.profiles_realtime.stop()
		self.selected_match = None
		self.discovered = []
		await self.cache.close()

	async def __aenter__(self) -> "SyncSession":
		self.start()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:
		await self.close()
