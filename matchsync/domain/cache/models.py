"""Value types held by the query cache."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple


class QueryStatus(str, Enum):
	IDLE = "idle"
	LOADING = "loading"
	SUCCESS = "success"
	ERROR = "error"


@dataclass(frozen=True, slots=True)
class FreshnessPolicy:
	"""How long a result stays fresh, and how long it is kept at all."""

	stale_seconds: float
	retain_seconds: float

	def __post_init__(self) -> None:
		if self.stale_seconds > self.retain_seconds:
			raise ValueError("stale window must not exceed retention window")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
	retries: int = 2
	base_delay_seconds: float = 1.0
	max_delay_seconds: float = 30.0

	def delay(self, failure_count: int) -> float:
		"""Exponential backoff after the n-th consecutive failure (1-based)."""
		return min(self.base_delay_seconds * (2 ** max(0, failure_count - 1)), self.max_delay_seconds)


@dataclass(slots=True)
class CacheEntry:
	key: tuple
	data: Any = None
	status: QueryStatus = QueryStatus.IDLE
	error: Optional[BaseException] = None
	fetched_at: Optional[float] = None
	stale_after: Optional[float] = None
	retain_until: Optional[float] = None
	invalidated: bool = False
	is_fetching: bool = False

	def has_data(self) -> bool:
		return self.fetched_at is not None

	def is_stale(self, now: float) -> bool:
		if self.invalidated or self.stale_after is None:
			return True
		return now >= self.stale_after

	def is_expired(self, now: float) -> bool:
		return self.retain_until is not None and now >= self.retain_until

	def stamp(self, data: Any, now: float, policy: FreshnessPolicy) -> None:
		self.data = data
		self.fetched_at = now
		self.stale_after = now + policy.stale_seconds
		self.retain_until = now + policy.retain_seconds
		self.status = QueryStatus.SUCCESS
		self.error = None
		self.invalidated = False

	def snapshot(self) -> "CacheEntry":
		return replace(self)


Fetcher = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class QueryOptions:
	"""What the cache needs to (re)fetch a key on its own."""

	fetcher: Fetcher
	policy: FreshnessPolicy
	retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(frozen=True, slots=True)
class Page:
	"""One fetched page. `has_more` is true iff the page came back full."""

	items: Tuple[Any, ...] = ()
	next_page: Optional[int] = None
	has_more: bool = False
	total_loaded: int = 0

	def with_items(self, items: Tuple[Any, ...], *, total_delta: int = 0) -> "Page":
		return replace(self, items=tuple(items), total_loaded=self.total_loaded + total_delta)


@dataclass(frozen=True, slots=True)
class PagedData:
	"""Pages in fetch order; `pages[0]` is the first page requested."""

	pages: Tuple[Page, ...] = ()
	page_params: Tuple[int, ...] = ()

	@property
	def last_page(self) -> Optional[Page]:
		return self.pages[-1] if self.pages else None

	@property
	def next_page(self) -> Optional[int]:
		last = self.last_page
		return last.next_page if last is not None else 0

	@property
	def has_more(self) -> bool:
		last = self.last_page
		return bool(last and last.has_more)

	def append_page(self, page: Page, param: int) -> "PagedData":
		return PagedData(pages=self.pages + (page,), page_params=self.page_params + (param,))

	def append_unique(self, page: Page, param: int) -> "PagedData":
		"""Append `page` minus any item whose id is already loaded.

		Offset pages shift when rows land ahead of them, so the next page can
		repeat the tail of the previous one. `total_loaded` is left as fetched.
		"""
		seen = {getattr(item, "id", None) for item in self.items()}
		seen.discard(None)
		kept = tuple(item for item in page.items if getattr(item, "id", None) not in seen)
		if len(kept) != len(page.items):
			page = replace(page, items=kept)
		return self.append_page(page, param)

	def replace_page(self, index: int, page: Page) -> "PagedData":
		pages = list(self.pages)
		pages[index] = page
		return replace(self, pages=tuple(pages))

	def items(self) -> list[Any]:
		"""Items in fetch order: page 0 first."""
		return [item for page in self.pages for item in page.items]


@dataclass(frozen=True, slots=True)
class QueryResult:
	"""What a hook hands to the UI."""

	data: Any = None
	status: QueryStatus = QueryStatus.IDLE
	error: Optional[BaseException] = None
	is_fetching: bool = False
	is_stale: bool = False

	@property
	def is_loading(self) -> bool:
		return self.status is QueryStatus.LOADING and self.data is None

	@property
	def is_error(self) -> bool:
		return self.status is QueryStatus.ERROR

	@property
	def is_success(self) -> bool:
		return self.status is QueryStatus.SUCCESS

	@property
	def is_idle(self) -> bool:
		return self.status is QueryStatus.IDLE


@dataclass(frozen=True, slots=True)
class PaginatedResult(QueryResult):
	has_more: bool = False
	is_loading_more: bool = False
