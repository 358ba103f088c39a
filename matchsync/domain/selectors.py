"""Smart selectors: one result shape over a primary and a fallback hook.

The strategy starts at PRIMARY and moves to FALLBACK on the first primary
error. It never moves back for the lifetime of the selector. The fallback
observer is only mounted once it is needed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from matchsync.domain.cache.models import PagedData, QueryResult
from matchsync.domain.cache.observer import PaginatedQueryObserver, QueryObserver
from matchsync.domain.discovery import queries as discovery_queries
from matchsync.domain.discovery.schemas import DiscoveryFilter
from matchsync.domain.matches import queries as match_queries
from matchsync.domain.matches.recipes import chronological, loaded_count
from matchsync.obs import metrics as obs_metrics

if TYPE_CHECKING:
	from matchsync.session import SyncSession

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
	PRIMARY = "primary"
	FALLBACK = "fallback"


class StrategyEvent(str, Enum):
	PRIMARY_ERROR = "primary_error"
	PRIMARY_SUCCESS = "primary_success"


def reduce_strategy(state: Strategy, event: StrategyEvent) -> Strategy:
	if state is Strategy.PRIMARY and event is StrategyEvent.PRIMARY_ERROR:
		return Strategy.FALLBACK
	return state


@dataclass(frozen=True, slots=True)
class SelectorResult:
	data: Any = None
	is_loading: bool = False
	error: Optional[BaseException] = None
	has_more: bool = False
	is_loading_more: bool = False
	total_loaded: int = 0
	strategy: Strategy = Strategy.PRIMARY


Projection = Callable[[QueryResult], SelectorResult]


def _flat(result: QueryResult) -> SelectorResult:
	items = list(result.data or ())
	return SelectorResult(
		data=items,
		is_loading=result.is_loading,
		error=result.error,
		total_loaded=len(items),
	)


def _paged_messages(result: QueryResult) -> SelectorResult:
	data = result.data if isinstance(result.data, PagedData) else None
	return SelectorResult(
		data=chronological(data),
		is_loading=result.is_loading,
		error=result.error,
		has_more=bool(data and data.has_more),
		is_loading_more=getattr(result, "is_loading_more", False),
		total_loaded=loaded_count(data),
	)


def _paged_listing(result: QueryResult) -> SelectorResult:
	data = result.data if isinstance(result.data, PagedData) else None
	items = data.items() if data is not None else []
	return SelectorResult(
		data=items,
		is_loading=result.is_loading,
		error=result.error,
		has_more=bool(data and data.has_more),
		is_loading_more=getattr(result, "is_loading_more", False),
		total_loaded=len(items),
	)


class SmartQuery:
	def __init__(
		self,
		name: str,
		primary: QueryObserver,
		fallback: QueryObserver,
		*,
		project_primary: Projection,
		project_fallback: Projection = _flat,
	) -> None:
		self.name = name
		self.primary = primary
		self.fallback = fallback
		self._project_primary = project_primary
		self._project_fallback = project_fallback
		self.strategy = Strategy.PRIMARY
		self._mounted = False
		self._busy = False
		self._fallback_task: Optional[asyncio.Task] = None
		self._unsubscribe = primary.subscribe(self._on_primary)

	@property
	def active(self) -> QueryObserver:
		return self.primary if self.strategy is Strategy.PRIMARY else self.fallback

	@property
	def result(self) -> SelectorResult:
		if self.strategy is Strategy.PRIMARY:
			projected = self._project_primary(self.primary.result)
		else:
			projected = self._project_fallback(self.fallback.result)
		return _with_strategy(projected, self.strategy)

	def dispatch(self, event: StrategyEvent) -> Strategy:
		previous = self.strategy
		self.strategy = reduce_strategy(previous, event)
		if self.strategy is not previous:
			obs_metrics.strategy_fallback(self.name)
			logger.warning("primary query failed, switching to fallback", extra={"selector": self.name})
		return self.strategy

	async def mount(self) -> SelectorResult:
		self._mounted = True
		self._busy = True
		try:
			if self.strategy is Strategy.PRIMARY:
				self._observe(await self.primary.mount())
			if self.strategy is Strategy.FALLBACK:
				await self._mount_fallback()
		finally:
			self._busy = False
		return self.result

	def unmount(self) -> None:
		self._mounted = False
		self.primary.unmount()
		self.fallback.unmount()
		if self._fallback_task is not None and not self._fallback_task.done():
			self._fallback_task.cancel()

	async def refetch(self) -> SelectorResult:
		self._busy = True
		try:
			if self.strategy is Strategy.PRIMARY:
				self._observe(await self.primary.refetch())
			if self.strategy is Strategy.FALLBACK:
				if self.fallback.mounted:
					await self.fallback.refetch()
				else:
					await self._mount_fallback()
		finally:
			self._busy = False
		return self.result

	async def load_more(self) -> SelectorResult:
		"""Next page on the primary path; a no-op once on the fallback."""
		if self.strategy is Strategy.PRIMARY and isinstance(self.primary, PaginatedQueryObserver):
			self._busy = True
			try:
				self._observe(await self.primary.load_more())
				if self.strategy is Strategy.FALLBACK:
					await self._mount_fallback()
			finally:
				self._busy = False
		return self.result

	async def __aenter__(self) -> "SmartQuery":
		await self.mount()
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:
		self.unmount()

	async def wait(self) -> None:
		if self._fallback_task is not None:
			await asyncio.gather(self._fallback_task, return_exceptions=True)

	def _observe(self, result: QueryResult) -> None:
		if result.is_error:
			self.dispatch(StrategyEvent.PRIMARY_ERROR)
		elif result.is_success:
			self.dispatch(StrategyEvent.PRIMARY_SUCCESS)

	def _on_primary(self, result: QueryResult) -> None:
		if self.strategy is not Strategy.PRIMARY or not result.is_error:
			return
		self.dispatch(StrategyEvent.PRIMARY_ERROR)
		if self._mounted and not self._busy and self._fallback_task is None:
			# Primary failed in a background refetch; bring the fallback up
			self._fallback_task = asyncio.get_running_loop().create_task(self._mount_fallback())

	async def _mount_fallback(self) -> None:
		if not self._mounted or self.fallback.mounted:
			return
		await self.fallback.mount()


def _with_strategy(result: SelectorResult, strategy: Strategy) -> SelectorResult:
	if result.strategy is strategy:
		return result
	return replace(result, strategy=strategy)


# --- smart hooks ---
def use_match_messages_smart(
	session: "SyncSession",
	match_id: Optional[str],
	page_size: Optional[int] = None,
) -> SmartQuery:
	return SmartQuery(
		"match_messages",
		match_queries.use_match_messages_paginated(session, match_id, page_size),
		match_queries.use_match_messages(session, match_id),
		project_primary=_paged_messages,
	)


def use_discover_profiles_smart(
	session: "SyncSession",
	filters: Optional[DiscoveryFilter],
	user_id: Optional[str],
) -> SmartQuery:
	return SmartQuery(
		"discover_profiles",
		discovery_queries.use_discover_profiles_optimized(session, filters, user_id),
		discovery_queries.use_discover_profiles(session, filters, user_id),
		project_primary=_flat,
	)


def use_discover_profiles_paginated_smart(
	session: "SyncSession",
	filters: Optional[DiscoveryFilter],
	user_id: Optional[str],
	page_size: Optional[int] = None,
) -> SmartQuery:
	return SmartQuery(
		"discover_profiles_paginated",
		discovery_queries.use_discover_profiles_paginated(session, filters, user_id, page_size),
		discovery_queries.use_discover_profiles_optimized(session, filters, user_id),
		project_primary=_paged_listing,
	)
