"""Process-wide query cache shared by every hook in a session.

All reads and writes are synchronous steps on the event loop; the only
suspension points are remote fetches. Updaters passed to `set` therefore see
the value that is current when they run, never one captured earlier.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from contextlib import suppress
from typing import Any, Callable, Optional

from matchsync.domain.cache.exceptions import QueryNotRegistered, is_retryable
from matchsync.domain.cache.keys import QueryKey, in_family, key_matches, resource_of
from matchsync.domain.cache.models import (
	CacheEntry,
	Fetcher,
	FreshnessPolicy,
	QueryOptions,
	QueryStatus,
	RetryPolicy,
)
from matchsync.domain.cache.policies import policy_for
from matchsync.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

Listener = Callable[[CacheEntry], None]
Updater = Callable[[Any], Any]


async def call_with_retry(fetcher: Fetcher, retry: RetryPolicy, *, resource: str) -> Any:
	"""Run `fetcher`, retrying transient failures with exponential backoff."""
	failures = 0
	while True:
		try:
			return await fetcher()
		except asyncio.CancelledError:
			raise
		except Exception as exc:
			failures += 1
			if failures > retry.retries or not is_retryable(exc):
				raise
			obs_metrics.query_retry(resource)
			logger.debug("retrying %s after failure %d: %s", resource, failures, exc)
			await asyncio.sleep(retry.delay(failures))


class _Slot:
	__slots__ = ("entry", "options", "listeners", "inflight", "writes", "refetch_after")

	def __init__(self, key: QueryKey) -> None:
		self.entry = CacheEntry(key=key)
		self.options: Optional[QueryOptions] = None
		self.listeners: list[Listener] = []
		self.inflight: Optional[asyncio.Task] = None
		# Bumped by every direct write; a fetch spanning one must not overwrite it
		self.writes = 0
		self.refetch_after = False

	def fetching(self) -> bool:
		return self.inflight is not None and not self.inflight.done()


class QueryCache:
	def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
		self._clock = clock
		self._slots: dict[QueryKey, _Slot] = {}
		self._background: set[asyncio.Task] = set()
		self._closed = False

	def now(self) -> float:
		return self._clock()

	# --- reads ---
	def get(self, key: QueryKey) -> Optional[CacheEntry]:
		"""Snapshot of the entry for `key`; expired entries read as absent."""
		slot = self._slots.get(key)
		if slot is None or slot.entry.is_expired(self.now()):
			return None
		return slot.entry.snapshot()

	def get_data(self, key: QueryKey, default: Any = None) -> Any:
		entry = self.get(key)
		if entry is None or not entry.has_data():
			return default
		return entry.data

	def keys(self, prefix: Optional[QueryKey] = None) -> list[QueryKey]:
		if prefix is None:
			return list(self._slots)
		return [key for key in self._slots if key_matches(key, prefix)]

	def observer_count(self, key: QueryKey) -> int:
		slot = self._slots.get(key)
		return len(slot.listeners) if slot else 0

	# --- direct writes ---
	def set(
		self,
		key: QueryKey,
		updater: Updater,
		*,
		default: Any = None,
		policy: Optional[FreshnessPolicy] = None,
	) -> Any:
		"""Apply `updater` to the current value (or `default`) and store the result.

		An updater returning None leaves the cache untouched.
		"""
		slot = self._slots.get(key)
		now = self.now()
		current = default
		if slot is not None and slot.entry.has_data() and not slot.entry.is_expired(now):
			current = slot.entry.data
		updated = updater(current)
		if updated is None:
			return current
		if slot is None:
			slot = self._slots[key] = _Slot(key)
		self._write(key, slot, updated, now, policy)
		return updated

	def set_matching(self, prefix: QueryKey, updater: Updater) -> int:
		"""Apply `updater` to every cached value under `prefix`."""
		return self._update_where(lambda key: key_matches(key, prefix), updater)

	def set_family(self, resource_prefix: str, updater: Updater) -> int:
		return self._update_where(lambda key: in_family(key, resource_prefix), updater)

	def _update_where(self, predicate: Callable[[QueryKey], bool], updater: Updater) -> int:
		now = self.now()
		touched = 0
		for key, slot in list(self._slots.items()):
			if not predicate(key) or not slot.entry.has_data() or slot.entry.is_expired(now):
				continue
			updated = updater(slot.entry.data)
			if updated is None:
				continue
			self._write(key, slot, updated, now, None)
			touched += 1
		return touched

	def _write(self, key: QueryKey, slot: _Slot, data: Any, now: float, policy: Optional[FreshnessPolicy]) -> None:
		effective = policy or (slot.options.policy if slot.options else policy_for(resource_of(key)))
		slot.writes += 1
		slot.entry.stamp(data, now, effective)
		obs_metrics.cache_write(resource_of(key))
		self._notify(slot)

	# --- invalidation ---
	def invalidate(self, prefix: QueryKey, *, exact: bool = False) -> int:
		"""Mark matching entries stale and refetch the ones a hook is watching."""
		return self._invalidate_where(lambda key: key_matches(key, prefix, exact=exact))

	def invalidate_family(self, resource_prefix: str) -> int:
		"""Invalidate every key whose resource name starts with `resource_prefix`."""
		return self._invalidate_where(lambda key: in_family(key, resource_prefix))

	def _invalidate_where(self, predicate: Callable[[QueryKey], bool]) -> int:
		touched = 0
		for key, slot in list(self._slots.items()):
			if not predicate(key):
				continue
			slot.entry.invalidated = True
			touched += 1
			obs_metrics.cache_invalidated(resource_of(key))
			self._notify(slot)
			if slot.listeners:
				self._schedule_refetch(key)
		return touched

	# --- fetching ---
	def register(self, key: QueryKey, options: QueryOptions) -> None:
		self._slot(key).options = options

	async def fetch(self, key: QueryKey, options: Optional[QueryOptions] = None) -> Any:
		"""Fetch `key`, joining the in-flight fetch for it if there is one."""
		slot = self._slot(key)
		if options is not None:
			slot.options = options
		if slot.options is None:
			raise QueryNotRegistered(detail=str(key))
		if slot.fetching():
			obs_metrics.query_deduplicated(resource_of(key))
			task = slot.inflight
		else:
			task = asyncio.get_running_loop().create_task(self._run_fetch(key, slot))
			slot.inflight = task
			task.add_done_callback(functools.partial(self._fetch_done, slot))
		# Shielded so one caller going away does not cancel the fetch for the others
		return await asyncio.shield(task)

	async def ensure(self, key: QueryKey, options: QueryOptions) -> Any:
		"""Serve cached data when present (refreshing it in the background when
		stale), otherwise fetch it."""
		slot = self._slot(key)
		slot.options = options
		entry = slot.entry
		now = self.now()
		resource = resource_of(key)
		if entry.has_data() and not entry.is_expired(now):
			if entry.is_stale(now):
				obs_metrics.cache_read(resource, "stale")
				self._schedule_refetch(key)
			else:
				obs_metrics.cache_read(resource, "fresh")
			return entry.data
		if entry.has_data():
			self._drop_data(slot)
		obs_metrics.cache_read(resource, "miss")
		return await self.fetch(key)

	async def _run_fetch(self, key: QueryKey, slot: _Slot) -> Any:
		options = slot.options
		assert options is not None
		writes = slot.writes
		entry = slot.entry
		resource = resource_of(key)
		entry.is_fetching = True
		if not entry.has_data():
			entry.status = QueryStatus.LOADING
		self._notify(slot)
		try:
			try:
				data = await call_with_retry(options.fetcher, options.retry, resource=resource)
			except asyncio.CancelledError:
				raise
			except Exception as exc:
				entry.status = QueryStatus.ERROR
				entry.error = exc
				if entry.retain_until is None:
					entry.retain_until = self.now() + options.policy.retain_seconds
				obs_metrics.query_fetch(resource, "error")
				logger.warning(
					"query fetch failed: %s",
					exc,
					extra={"query_key": str(key), "retryable": is_retryable(exc)},
				)
				raise
			obs_metrics.query_fetch(resource, "success")
			if slot.writes != writes and entry.has_data():
				# A direct write landed while this fetch was in flight: keep it, fetch again
				entry.invalidated = True
				slot.refetch_after = True
				logger.debug("fetch result superseded by a cache write", extra={"query_key": str(key)})
				return entry.data
			entry.stamp(data, self.now(), options.policy)
			return data
		finally:
			entry.is_fetching = False
			self._notify(slot)

	def _fetch_done(self, slot: _Slot, task: asyncio.Task) -> None:
		if slot.inflight is task:
			slot.inflight = None
		if slot.refetch_after:
			slot.refetch_after = False
			key = slot.entry.key
			if slot.listeners and self._slots.get(key) is slot:
				self._schedule_refetch(key)
		if not task.cancelled():
			# Mark the exception retrieved; callers already saw it through the shield
			task.exception()

	def _schedule_refetch(self, key: QueryKey) -> None:
		slot = self._slots.get(key)
		if self._closed or slot is None or slot.options is None or slot.fetching():
			return
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			# Outside the loop the entry simply stays stale until the next read
			return
		task = loop.create_task(self._refetch_in_background(key))
		self._background.add(task)
		task.add_done_callback(self._background.discard)

	async def _refetch_in_background(self, key: QueryKey) -> None:
		try:
			await self.fetch(key)
		except asyncio.CancelledError:
			raise
		except Exception:
			# Already recorded on the entry and surfaced to observers
			logger.debug("background refetch failed", extra={"query_key": str(key)})

	# --- observers ---
	def subscribe(self, key: QueryKey, listener: Listener) -> Callable[[], None]:
		slot = self._slot(key)
		slot.listeners.append(listener)

		def _unsubscribe() -> None:
			with suppress(ValueError):
				slot.listeners.remove(listener)

		return _unsubscribe

	def _notify(self, slot: _Slot) -> None:
		if not slot.listeners:
			return
		snapshot = slot.entry.snapshot()
		for listener in list(slot.listeners):
			listener(snapshot)

	# --- lifecycle ---
	def gc(self) -> int:
		"""Evict entries past retention that no hook is watching."""
		now = self.now()
		evicted = [
			key
			for key, slot in self._slots.items()
			if not slot.listeners and not slot.fetching() and slot.entry.is_expired(now)
		]
		for key in evicted:
			del self._slots[key]
		obs_metrics.cache_evicted(len(evicted))
		return len(evicted)

	def remove(self, prefix: QueryKey) -> int:
		doomed = [key for key in self._slots if key_matches(key, prefix)]
		for key in doomed:
			slot = self._slots.pop(key)
			if slot.inflight is not None:
				slot.inflight.cancel()
		return len(doomed)

	async def wait_idle(self) -> None:
		"""Wait until no fetch, foreground or background, is pending."""
		while True:
			pending = {task for task in self._background if not task.done()}
			pending.update(slot.inflight for slot in self._slots.values() if slot.fetching())
			if not pending:
				return
			await asyncio.wait(pending)

	async def close(self) -> None:
		self._closed = True
		tasks = list(self._background)
		tasks.extend(slot.inflight for slot in self._slots.values() if slot.fetching())
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
		self._background.clear()
		self._slots.clear()

	def _slot(self, key: QueryKey) -> _Slot:
		slot = self._slots.get(key)
		if slot is None:
			slot = self._slots[key] = _Slot(key)
		return slot

	def _drop_data(self, slot: _Slot) -> None:
		entry = slot.entry
		entry.data = None
		entry.fetched_at = None
		entry.stale_after = None
		entry.retain_until = None
		entry.invalidated = False
		entry.status = QueryStatus.IDLE
		obs_metrics.cache_evicted(1)
