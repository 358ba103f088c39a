"""Per-hook views over the shared query cache.

A `QueryObserver` is what a screen holds while it is on display: mounting it
reads (or fetches) its key and keeps `result` in step with the cache until it
is unmounted. Errors never propagate out of an observer; they are carried in
`result.error` the way a UI would render them.
"""

from __future__ import annotations

import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Optional

from matchsync.domain.cache.client import QueryCache, call_with_retry
from matchsync.domain.cache.keys import QueryKey, resource_of
from matchsync.domain.cache.models import (
	CacheEntry,
	Fetcher,
	FreshnessPolicy,
	Page,
	PagedData,
	PaginatedResult,
	QueryOptions,
	QueryResult,
	QueryStatus,
	RetryPolicy,
)

logger = logging.getLogger(__name__)

ResultListener = Callable[[QueryResult], None]
PageFetcher = Callable[[int], Awaitable[Page]]


class QueryObserver:
	def __init__(
		self,
		cache: QueryCache,
		key: QueryKey,
		fetcher: Any,
		*,
		policy: FreshnessPolicy,
		retry: Optional[RetryPolicy] = None,
		enabled: bool = True,
	) -> None:
		self._cache = cache
		self._policy = policy
		self._retry = retry or RetryPolicy()
		self._key = key
		self._enabled = enabled
		self._options = self._build_options(key, fetcher)
		self._mounted = False
		self._unsubscribe: Optional[Callable[[], None]] = None
		self._listeners: list[ResultListener] = []
		self._result: QueryResult = self._idle_result()

	@property
	def key(self) -> QueryKey:
		return self._key

	@property
	def enabled(self) -> bool:
		return self._enabled

	@property
	def mounted(self) -> bool:
		return self._mounted

	@property
	def result(self) -> QueryResult:
		return self._result

	@property
	def data(self) -> Any:
		return self._result.data

	def subscribe(self, listener: ResultListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			with suppress(ValueError):
				self._listeners.remove(listener)

		return _unsubscribe

	async def mount(self) -> QueryResult:
		if self._mounted:
			return self._result
		self._mounted = True
		if not self._enabled:
			return self._result
		self._attach()
		await self._load(self._cache.ensure, self._key, self._options)
		return self._result

	def unmount(self) -> None:
		self._mounted = False
		self._detach()

	async def refetch(self) -> QueryResult:
		"""Fetch again regardless of freshness."""
		if not self._enabled:
			return self._result
		await self._load(self._cache.fetch, self._key, self._options)
		return self._result

	async def rebind(self, key: QueryKey, fetcher: Any, *, enabled: bool = True) -> QueryResult:
		"""Point the observer at a different key, as a hook does when its arguments change."""
		was_mounted = self._mounted
		self.unmount()
		self._key = key
		self._enabled = enabled
		self._options = self._build_options(key, fetcher)
		self._set_result(self._idle_result())
		if was_mounted:
			return await self.mount()
		return self._result

	async def __aenter__(self) -> "QueryObserver":
		await self.mount()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:
		self.unmount()

	# --- internals ---
	def _build_options(self, key: QueryKey, fetcher: Any) -> QueryOptions:
		return QueryOptions(fetcher=fetcher, policy=self._policy, retry=self._retry)

	def _idle_result(self) -> QueryResult:
		return QueryResult()

	def _attach(self) -> None:
		if self._unsubscribe is not None:
			return
		self._unsubscribe = self._cache.subscribe(self._key, self._on_entry)
		entry = self._cache.get(self._key)
		if entry is not None and entry.has_data():
			self._on_entry(entry)

	def _detach(self) -> None:
		if self._unsubscribe is not None:
			self._unsubscribe()
			self._unsubscribe = None

	async def _load(self, action: Callable[..., Awaitable[Any]], key: QueryKey, options: QueryOptions) -> None:
		try:
			await action(key, options)
		except Exception as exc:
			# Stored on the cache entry and surfaced through `result.error`
			logger.debug("observer load failed: %s", exc, extra={"query_key": str(key)})
		self._sync(key)

	def _sync(self, key: QueryKey) -> None:
		if not self._mounted or key != self._key:
			return
		entry = self._cache.get(key)
		if entry is not None:
			self._on_entry(entry)

	def _on_entry(self, entry: CacheEntry) -> None:
		if not self._mounted:
			return
		self._set_result(self._build_result(entry))

	def _build_result(self, entry: CacheEntry) -> QueryResult:
		return QueryResult(
			data=entry.data if entry.has_data() else None,
			status=entry.status,
			error=entry.error,
			is_fetching=entry.is_fetching,
			is_stale=entry.has_data() and entry.is_stale(self._cache.now()),
		)

	def _set_result(self, result: QueryResult) -> None:
		self._result = result
		for listener in list(self._listeners):
			listener(result)


class PaginatedQueryObserver(QueryObserver):
	"""Observer over a `PagedData` value that grows one page per `load_more`."""

	def __init__(
		self,
		cache: QueryCache,
		key: QueryKey,
		fetch_page: PageFetcher,
		*,
		policy: FreshnessPolicy,
		retry: Optional[RetryPolicy] = None,
		enabled: bool = True,
	) -> None:
		self._fetch_page = fetch_page
		self._loading_more = False
		self._load_more_error: Optional[BaseException] = None
		super().__init__(cache, key, fetch_page, policy=policy, retry=retry, enabled=enabled)

	@property
	def result(self) -> PaginatedResult:
		return self._result  # type: ignore[return-value]

	@property
	def has_more(self) -> bool:
		return self.result.has_more

	@property
	def is_loading_more(self) -> bool:
		return self._loading_more

	def get_next_page_param(self) -> Optional[int]:
		data = self._cache.get_data(self._key)
		if not isinstance(data, PagedData) or not data.pages:
			return 0
		return data.next_page if data.has_more else None

	async def load_more(self) -> PaginatedResult:
		"""Fetch and append the next page; a no-op while a load is running or
		when the last page came back short."""
		if not self._enabled or self._loading_more:
			return self.result
		current = self._cache.get_data(self._key)
		if not isinstance(current, PagedData) or not current.pages:
			if self._mounted:
				return await self.refetch()  # type: ignore[return-value]
			return await self.mount()  # type: ignore[return-value]
		if not current.has_more:
			return self.result
		key = self._key
		fetch_page = self._fetch_page
		param = current.next_page
		self._loading_more = True
		self._load_more_error = None
		self._refresh()
		try:
			page = await call_with_retry(
				lambda: fetch_page(param),
				self._retry,
				resource=resource_of(key),
			)
		except Exception as exc:
			logger.warning("load more failed: %s", exc, extra={"query_key": str(key), "page": param})
			if key == self._key:
				self._load_more_error = exc
			page = None
		finally:
			if key == self._key:
				self._loading_more = False

		if page is not None:

			def _append(old: Any) -> Optional[PagedData]:
				if not isinstance(old, PagedData) or param in old.page_params:
					return None
				return old.append_unique(page, param)

			self._cache.set(key, _append, policy=self._policy)
		self._refresh()
		return self.result

	async def refetch(self) -> QueryResult:
		self._load_more_error = None
		return await super().refetch()

	async def rebind(self, key: QueryKey, fetcher: Any, *, enabled: bool = True) -> QueryResult:
		self._fetch_page = fetcher
		self._loading_more = False
		self._load_more_error = None
		return await super().rebind(key, fetcher, enabled=enabled)

	def _build_options(self, key: QueryKey, fetcher: Any) -> QueryOptions:
		return QueryOptions(fetcher=self._pages_fetcher(key, fetcher), policy=self._policy, retry=self._retry)

	def _pages_fetcher(self, key: QueryKey, fetch_page: PageFetcher) -> Fetcher:
		cache = self._cache

		async def _fetch_pages() -> PagedData:
			# A refetch re-requests every page already loaded
			current = cache.get_data(key)
			wanted = len(current.pages) if isinstance(current, PagedData) and current.pages else 1
			data = PagedData()
			param = 0
			for _ in range(wanted):
				page = await fetch_page(param)
				data = data.append_unique(page, param)
				if not page.has_more or page.next_page is None:
					break
				param = page.next_page
			return data

		return _fetch_pages

	def _idle_result(self) -> PaginatedResult:
		return PaginatedResult()

	def _build_result(self, entry: CacheEntry) -> PaginatedResult:
		data = entry.data if entry.has_data() else None
		error = self._load_more_error or entry.error
		status = QueryStatus.ERROR if self._load_more_error is not None else entry.status
		return PaginatedResult(
			data=data,
			status=status,
			error=error,
			is_fetching=entry.is_fetching or self._loading_more,
			is_stale=entry.has_data() and entry.is_stale(self._cache.now()),
			has_more=isinstance(data, PagedData) and data.has_more,
			is_loading_more=self._loading_more,
		)

	def _refresh(self) -> None:
		if not self._mounted:
			return
		entry = self._cache.get(self._key)
		if entry is not None:
			self._set_result(self._build_result(entry))
		else:
			self._set_result(
				PaginatedResult(
					is_loading_more=self._loading_more,
					error=self._load_more_error,
					status=QueryStatus.ERROR if self._load_more_error else QueryStatus.IDLE,
				)
			)

