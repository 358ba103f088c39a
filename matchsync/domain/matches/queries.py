"""Query hooks and fetchers for matches, conversations and their counts."""

from __future__ import annotations

import functools
import logging
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

from matchsync.domain.cache import keys
from matchsync.domain.cache.models import Page
from matchsync.domain.cache.mutation import require
from matchsync.domain.cache.observer import PaginatedQueryObserver, QueryObserver
from matchsync.domain.discovery.models import Profile
from matchsync.domain.matches.models import LastMessage, Match, Message
from matchsync.infra.query import eq
from matchsync.infra.store import RemoteStore

if TYPE_CHECKING:
	from matchsync.session import SyncSession

logger = logging.getLogger(__name__)

LAST_MESSAGE_COLUMNS = ("match_id", "content", "created_at", "sender_id")


def _involving(user_id: str):
	return (eq("user1_id", user_id), eq("user2_id", user_id))


# --- fetchers ---
async def fetch_matches(store: RemoteStore, user_id: Optional[str]) -> tuple[Match, ...]:
	"""Matches involving the user, newest first, each with the counterpart's profile."""
	user_id = require(user_id, "user_id")
	rows = await (
		store.table("matches")
		.select("*")
		.or_(*_involving(user_id))
		.order("created_at", desc=True)
		.execute()
	)
	other_ids = sorted({str(row["user2_id"] if row["user1_id"] == user_id else row["user1_id"]) for row in rows})
	profiles: dict[str, Profile] = {}
	if other_ids:
		profile_rows = await store.table("profiles").select("*").in_("id", other_ids).execute()
		profiles = {str(row["id"]): Profile.from_row(row) for row in profile_rows}
	return tuple(Match.for_viewer(row, user_id, profiles) for row in rows)


async def fetch_match_messages(store: RemoteStore, match_id: Optional[str]) -> tuple[Message, ...]:
	match_id = require(match_id, "match_id")
	rows = await store.table("messages").select("*").eq("match_id", match_id).order("created_at").execute()
	return tuple(Message.from_row(row) for row in rows)


async def fetch_message_page(
	store: RemoteStore,
	match_id: Optional[str],
	page: int,
	*,
	page_size: int,
) -> Page:
	"""One page of a conversation, fetched newest first and returned oldest first.

	`total_loaded` is the volume requested so far, `(page + 1) * page_size`,
	whatever the page actually held.
	"""
	match_id = require(match_id, "match_id")
	rows = await (
		store.table("messages")
		.select("*")
		.eq("match_id", match_id)
		.order("created_at", desc=True)
		.range(page * page_size, (page + 1) * page_size - 1)
		.execute()
	)
	full = len(rows) == page_size
	logger.debug("loaded message page", extra={"match_id": match_id, "page": page, "count": len(rows)})
	return Page(
		items=tuple(Message.from_row(row) for row in reversed(rows)),
		next_page=page + 1 if full else None,
		has_more=full,
		total_loaded=(page + 1) * page_size,
	)


async def fetch_check_match(store: RemoteStore, user_a: Optional[str], user_b: Optional[str]) -> Optional[Match]:
	if not user_a or not user_b:
		return None
	row = await (
		store.table("matches")
		.select("*")
		.or_(
			(eq("user1_id", user_a), eq("user2_id", user_b)),
			(eq("user1_id", user_b), eq("user2_id", user_a)),
		)
		.maybe_single()
		.execute()
	)
	return Match.for_viewer(row, user_a) if row else None


async def fetch_last_messages(store: RemoteStore, match_ids: Sequence[str]) -> dict[str, LastMessage]:
	"""Latest message per match, for the match list previews."""
	if not match_ids:
		return {}
	rows = await (
		store.table("messages")
		.select(*LAST_MESSAGE_COLUMNS)
		.in_("match_id", match_ids)
		.order("created_at", desc=True)
		.execute()
	)
	latest: dict[str, LastMessage] = {}
	for row in rows:
		message = LastMessage.from_row(row)
		current = latest.get(message.match_id)
		if current is None or (message.created_at and current.created_at and message.created_at > current.created_at):
			latest[message.match_id] = message
	return latest


async def fetch_match_count(store: RemoteStore, user_id: Optional[str]) -> int:
	user_id = require(user_id, "user_id")
	return await store.table("matches").select("id").or_(*_involving(user_id)).count()


async def fetch_unread_message_count(store: RemoteStore, user_id: Optional[str]) -> int:
	"""Messages from the other party, not yet read, across all the user's matches."""
	user_id = require(user_id, "user_id")
	rows = await store.table("matches").select("id").or_(*_involving(user_id)).execute()
	match_ids = [str(row["id"]) for row in rows]
	if not match_ids:
		return 0
	return await (
		store.table("messages")
		.select("id")
		.in_("match_id", match_ids)
		.neq("sender_id", user_id)
		.is_("read_at", None)
		.count()
	)


async def fetch_unread_notification_count(store: RemoteStore, user_id: Optional[str]) -> int:
	user_id = require(user_id, "user_id")
	return await (
		store.table("notifications")
		.select("id")
		.eq("user_id", user_id)
		.is_("read_at", None)
		.count()
	)


# --- hooks ---
def use_matches(session: "SyncSession", user_id: Optional[str]) -> QueryObserver:
	return session.query(
		keys.matches_key(user_id),
		functools.partial(fetch_matches, session.store, user_id),
		enabled=bool(user_id),
	)


def use_match_messages(session: "SyncSession", match_id: Optional[str]) -> QueryObserver:
	return session.query(
		keys.match_messages_key(match_id),
		functools.partial(fetch_match_messages, session.store, match_id),
		enabled=bool(match_id),
	)


def use_match_messages_paginated(
	session: "SyncSession",
	match_id: Optional[str],
	page_size: Optional[int] = None,
) -> PaginatedQueryObserver:
	size = page_size or session.settings.message_page_size
	return session.paginated_query(
		keys.match_messages_paginated_key(match_id),
		functools.partial(fetch_message_page, session.store, match_id, page_size=size),
		enabled=bool(match_id),
	)


def use_check_match(session: "SyncSession", user_a: Optional[str], user_b: Optional[str]) -> QueryObserver:
	return session.query(
		keys.check_match_key(user_a, user_b),
		functools.partial(fetch_check_match, session.store, user_a, user_b),
		enabled=bool(user_a and user_b),
	)


def use_last_messages(session: "SyncSession", match_ids: Iterable[str]) -> QueryObserver:
	ids = tuple(match_ids)
	return session.query(
		keys.last_messages_key(ids),
		functools.partial(fetch_last_messages, session.store, ids),
		enabled=bool(ids),
	)


def use_match_count(session: "SyncSession", user_id: Optional[str]) -> QueryObserver:
	return session.query(
		keys.match_count_key(user_id),
		functools.partial(fetch_match_count, session.store, user_id),
		enabled=bool(user_id),
	)


def use_unread_message_count(session: "SyncSession", user_id: Optional[str]) -> QueryObserver:
	return session.query(
		keys.unread_message_count_key(user_id),
		functools.partial(fetch_unread_message_count, session.store, user_id),
		enabled=bool(user_id),
	)


def use_unread_notification_count(session: "SyncSession", user_id: Optional[str]) -> QueryObserver:
	return session.query(
		keys.unread_notification_count_key(user_id),
		functools.partial(fetch_unread_notification_count, session.store, user_id),
		enabled=bool(user_id),
	)
