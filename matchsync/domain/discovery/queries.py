"""Discovery listings, liked profiles and the viewer's own profile.

Candidates come from the `privacy_respecting_profiles` view, which already
blanks whatever a profile chose not to share. Profiles the viewer liked are
looked up first and excluded; everyone else is narrowed by the filter.
"""

from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING, Optional, Sequence

from matchsync.domain.cache import keys
from matchsync.domain.cache.models import Page
from matchsync.domain.cache.mutation import require
from matchsync.domain.cache.observer import PaginatedQueryObserver, QueryObserver
from matchsync.domain.discovery.models import DISCOVERY_COLUMNS, DiscoveryProfile, LikedProfile, Profile
from matchsync.domain.discovery.schemas import DiscoveryFilter
from matchsync.infra.errors import RecordNotFound
from matchsync.infra.query import TableQuery
from matchsync.infra.store import RemoteStore

if TYPE_CHECKING:
	from matchsync.session import SyncSession

logger = logging.getLogger(__name__)

PRIVACY_VIEW = "privacy_respecting_profiles"
DISCOVER_LIMIT = 50
OPTIMIZED_LIMIT = 20


async def fetch_liked_ids(store: RemoteStore, user_id: str) -> list[str]:
	rows = await store.table("likes").select("liked_id").eq("liker_id", user_id).execute()
	return [str(row["liked_id"]) for row in rows]


def candidate_query(
	store: RemoteStore,
	filters: DiscoveryFilter,
	user_id: str,
	liked_ids: Sequence[str],
	columns: Sequence[str] = ("*",),
) -> TableQuery:
	query = store.table(PRIVACY_VIEW).select(*columns).neq("id", user_id)
	gender = filters.gender_clause
	if gender:
		query = query.eq("gender", gender)
	if filters.age_range:
		low, high = filters.age_range
		query = query.gte("age", low).lte("age", high)
	if filters.state_filter:
		query = query.eq("state", filters.state_filter)
	if filters.city_filter:
		query = query.eq("city", filters.city_filter)
	if liked_ids:
		query = query.not_in("id", liked_ids)
	return query


async def fetch_discover_profiles(
	store: RemoteStore,
	filters: DiscoveryFilter,
	user_id: Optional[str],
) -> tuple[DiscoveryProfile, ...]:
	user_id = require(user_id, "user_id")
	liked_ids = await fetch_liked_ids(store, user_id)
	rows = await candidate_query(store, filters, user_id, liked_ids).limit(DISCOVER_LIMIT).execute()
	return tuple(DiscoveryProfile.from_row(row) for row in rows)


async def fetch_discover_profiles_optimized(
	store: RemoteStore,
	filters: DiscoveryFilter,
	user_id: Optional[str],
) -> tuple[DiscoveryProfile, ...]:
	"""Smaller listing with selected columns and only the first photo per card."""
	user_id = require(user_id, "user_id")
	liked_ids = await fetch_liked_ids(store, user_id)
	rows = await (
		candidate_query(store, filters, user_id, liked_ids, DISCOVERY_COLUMNS)
		.limit(OPTIMIZED_LIMIT)
		.execute()
	)
	return tuple(DiscoveryProfile.from_row(row, first_photo_only=True) for row in rows)


async def fetch_discover_page(
	store: RemoteStore,
	filters: DiscoveryFilter,
	user_id: Optional[str],
	page: int,
	*,
	page_size: int,
) -> Page:
	"""Rows `[page * page_size, (page + 1) * page_size)` of the newest-first listing."""
	user_id = require(user_id, "user_id")
	liked_ids = await fetch_liked_ids(store, user_id)
	rows = await (
		candidate_query(store, filters, user_id, liked_ids, DISCOVERY_COLUMNS)
		.order("created_at", desc=True)
		.range(page * page_size, (page + 1) * page_size - 1)
		.execute()
	)
	full = len(rows) == page_size
	logger.debug("loaded discovery page", extra={"page": page, "count": len(rows)})
	return Page(
		items=tuple(DiscoveryProfile.from_row(row, first_photo_only=True) for row in rows),
		next_page=page + 1 if full else None,
		has_more=full,
		total_loaded=page * page_size + len(rows),
	)


async def fetch_liked_profiles(store: RemoteStore, user_id: Optional[str]) -> tuple[LikedProfile, ...]:
	user_id = require(user_id, "user_id")
	likes = await store.table("likes").select("*").eq("liker_id", user_id).order("created_at", desc=True).execute()
	if not likes:
		return ()
	liked_ids = sorted({str(row["liked_id"]) for row in likes})
	profile_rows = await store.table("profiles").select("*").in_("id", liked_ids).execute()
	by_id = {str(row["id"]): row for row in profile_rows}
	result = []
	for like in likes:
		profile_row = by_id.get(str(like["liked_id"]))
		if profile_row is None:
			# Profile deleted since the like was made
			continue
		result.append(LikedProfile.from_rows(like, profile_row))
	return tuple(result)


async def fetch_current_profile(store: RemoteStore, user_id: Optional[str]) -> Profile:
	user_id = require(user_id, "user_id")
	row = await store.table("profiles").select("*").eq("id", user_id).maybe_single().execute()
	if row is None:
		raise RecordNotFound(detail=f"profile {user_id}")
	return Profile.from_row(row)


# --- hooks ---
def _filters(filters: Optional[DiscoveryFilter]) -> DiscoveryFilter:
	return filters if filters is not None else DiscoveryFilter()


def use_current_profile(session: "SyncSession", user_id: Optional[str]) -> QueryObserver:
	return session.query(
		keys.profile_key(user_id),
		functools.partial(fetch_current_profile, session.store, user_id),
		enabled=bool(user_id),
	)


def _publishing(session: "SyncSession", fetcher):
	async def _fetch() -> tuple[DiscoveryProfile, ...]:
		profiles = await fetcher()
		session.set_discovered(profiles)
		return profiles

	return _fetch


def use_discover_profiles(
	session: "SyncSession",
	filters: Optional[DiscoveryFilter],
	user_id: Optional[str],
) -> QueryObserver:
	filters = _filters(filters)
	return session.query(
		keys.discover_profiles_key(keys.DISCOVER_PROFILES, filters, user_id),
		_publishing(session, functools.partial(fetch_discover_profiles, session.store, filters, user_id)),
		enabled=bool(user_id),
	)


def use_discover_profiles_optimized(
	session: "SyncSession",
	filters: Optional[DiscoveryFilter],
	user_id: Optional[str],
) -> QueryObserver:
	filters = _filters(filters)
	return session.query(
		keys.discover_profiles_key(keys.DISCOVER_PROFILES_OPTIMIZED, filters, user_id),
		_publishing(session, functools.partial(fetch_discover_profiles_optimized, session.store, filters, user_id)),
		enabled=bool(user_id),
	)


def use_discover_profiles_paginated(
	session: "SyncSession",
	filters: Optional[DiscoveryFilter],
	user_id: Optional[str],
	page_size: Optional[int] = None,
) -> PaginatedQueryObserver:
	filters = _filters(filters)
	size = page_size or session.settings.discovery_page_size
	return session.paginated_query(
		keys.discover_profiles_key(keys.DISCOVER_PROFILES_PAGINATED, filters, user_id),
		functools.partial(fetch_discover_page, session.store, filters, user_id, page_size=size),
		enabled=bool(user_id),
	)


def use_liked_profiles(session: "SyncSession", user_id: Optional[str]) -> QueryObserver:
	return session.query(
		keys.liked_profiles_key(user_id),
		functools.partial(fetch_liked_profiles, session.store, user_id),
		enabled=bool(user_id),
	)
