"""Turns change-feed events into cache invalidations and patches.

Each scope holds at most one open channel:

* `UserRealtime`: one consolidated channel per signed-in user covering the
  user's matches, notifications and likes. Events only invalidate.
* `ConversationRealtime`: one channel for the conversation on screen. Message
  events patch both message caches with the same id-keyed recipes the local
  mutations use, so an echo of a local write is a no-op.
* `ProfilesRealtime`: optional, invalidates listings when other users edit
  their profiles.

A scope always closes its current channel before opening the next one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from matchsync.domain.cache import keys
from matchsync.domain.cache.client import QueryCache
from matchsync.domain.matches import recipes
from matchsync.domain.matches.models import Message
from matchsync.domain.matches.mutations import apply_incoming_message
from matchsync.domain.realtime.channel import ChannelState, ManagedChannel
from matchsync.infra.query import any_of, eq, neq
from matchsync.infra.store import ChangeEvent, ChangeType
from matchsync.obs.logging import bind_context, reset_context

if TYPE_CHECKING:
	from matchsync.session import SyncSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Invalidation:
	"""A key prefix to invalidate, or a resource family when `family` is set."""

	prefix: tuple = ()
	family: Optional[str] = None

	def apply(self, cache: QueryCache) -> int:
		if self.family is not None:
			return cache.invalidate_family(self.family)
		return cache.invalidate(self.prefix)


def _prefix(*parts) -> Invalidation:
	return Invalidation(prefix=tuple(parts))


def _family(name: str) -> Invalidation:
	return Invalidation(family=name)


def match_event_targets(user_id: str, event_type: ChangeType) -> list[Invalidation]:
	targets = [
		_prefix(keys.MATCHES),
		_prefix(keys.MATCH_COUNT, user_id),
		_prefix(keys.UNREAD_MESSAGE_COUNT, user_id),
	]
	if event_type is ChangeType.INSERT:
		targets.append(_family(keys.DISCOVERY_FAMILY))
	return targets


def notification_event_targets(user_id: str, event_type: ChangeType) -> list[Invalidation]:
	return [_prefix(keys.UNREAD_NOTIFICATION_COUNT, user_id)]


def like_event_targets(user_id: str, event_type: ChangeType) -> list[Invalidation]:
	return [
		_family(keys.DISCOVERY_FAMILY),
		_prefix(keys.MATCHES),
		_prefix(keys.LIKED_PROFILES, user_id),
	]


def message_event_targets(event_type: ChangeType) -> list[Invalidation]:
	targets = [_prefix(keys.MATCHES)]
	if event_type is ChangeType.INSERT:
		targets.append(_prefix(keys.UNREAD_MESSAGE_COUNT))
		targets.append(_prefix(keys.LAST_MESSAGES))
	return targets


def profile_event_targets(user_id: str, event_type: ChangeType) -> list[Invalidation]:
	targets = [_family(keys.DISCOVERY_FAMILY)]
	if event_type in (ChangeType.UPDATE, ChangeType.DELETE):
		targets.append(_prefix(keys.MATCHES))
	if event_type is ChangeType.UPDATE:
		targets.append(_prefix(keys.PROFILE))
	return targets


def apply_targets(cache: QueryCache, targets: list[Invalidation]) -> int:
	return sum(target.apply(cache) for target in targets)


class _Scope:
	"""Holds the single channel of one reconciliation scope."""

	scope = "scope"

	def __init__(self, session: "SyncSession") -> None:
		self._session = session
		self.channel: Optional[ManagedChannel] = None
		self._lock = asyncio.Lock()

	@property
	def state(self) -> ChannelState:
		return self.channel.state if self.channel is not None else ChannelState.UNSUBSCRIBED

	async def _replace(self, build: Optional[Callable[[], ManagedChannel]]) -> Optional[ManagedChannel]:
		async with self._lock:
			previous, self.channel = self.channel, None
			if previous is not None:
				await previous.close()
			if build is None:
				return None
			channel = build()
			self.channel = channel
			await channel.open()
			return channel

	async def stop(self) -> None:
		await self._replace(None)

	def _invalidate(self, targets: list[Invalidation]) -> None:
		apply_targets(self._session.cache, targets)


class UserRealtime(_Scope):
	scope = "user"

	def __init__(self, session: "SyncSession") -> None:
		super().__init__(session)
		self.user_id: Optional[str] = None

	async def set_user(self, user_id: Optional[str]) -> Optional[ManagedChannel]:
		"""Switch the consolidated channel to `user_id`; None signs out."""
		if user_id == self.user_id and self.channel is not None and not self.channel.degraded:
			return self.channel
		self.user_id = user_id
		if not user_id:
			return await self._replace(None)
		tokens = bind_context(user_id=user_id, channel=f"user-{user_id}-updates")
		try:
			return await self._replace(lambda: self._build(user_id))
		finally:
			reset_context(tokens)

	def _build(self, user_id: str) -> ManagedChannel:
		channel = ManagedChannel(self._session.store, f"user-{user_id}-updates", scope=self.scope)
		channel.on(
			"matches",
			lambda event: self._on_event(event, match_event_targets(user_id, event.event_type)),
			filter=any_of(eq("user1_id", user_id), eq("user2_id", user_id)),
		)
		channel.on(
			"notifications",
			lambda event: self._on_event(event, notification_event_targets(user_id, event.event_type)),
			filter=eq("user_id", user_id),
		)
		channel.on(
			"likes",
			lambda event: self._on_event(event, like_event_targets(user_id, event.event_type)),
			filter=any_of(eq("liker_id", user_id), eq("liked_id", user_id)),
		)
		return channel

	def _on_event(self, event: ChangeEvent, targets: list[Invalidation]) -> None:
		logger.debug("user change event", extra={"table": event.table, "event": event.event_type.value})
		self._invalidate(targets)


class ConversationRealtime(_Scope):
	scope = "conversation"

	def __init__(self, session: "SyncSession") -> None:
		super().__init__(session)
		self.match_id: Optional[str] = None

	async def select(self, match_id: Optional[str]) -> Optional[ManagedChannel]:
		if match_id == self.match_id and self.channel is not None and not self.channel.degraded:
			return self.channel
		self.match_id = match_id
		if not match_id:
			return await self._replace(None)
		return await self._replace(lambda: self._build(match_id))

	async def clear(self) -> None:
		await self.select(None)

	def _build(self, match_id: str) -> ManagedChannel:
		channel = ManagedChannel(self._session.store, f"messages-{match_id}", scope=self.scope)
		channel.on("messages", lambda event: self._on_message(match_id, event), filter=eq("match_id", match_id))
		return channel

	def _on_message(self, match_id: str, event: ChangeEvent) -> None:
		cache = self._session.cache
		if event.event_type is ChangeType.INSERT:
			apply_incoming_message(cache, match_id, Message.from_row(event.new))
		elif event.event_type is ChangeType.UPDATE:
			message = Message.from_row(event.new)
			cache.set(
				keys.match_messages_paginated_key(match_id),
				lambda old: recipes.replace_in_pages(old, message),
			)
			cache.set(
				keys.match_messages_key(match_id),
				lambda old: recipes.replace_message(old, message),
			)
		else:
			message_id = str(event.old.get("id") or "")
			if message_id:
				cache.set(
					keys.match_messages_paginated_key(match_id),
					lambda old: recipes.remove_from_pages(old, message_id),
				)
				cache.set(
					keys.match_messages_key(match_id),
					lambda old: recipes.remove_message(old, message_id),
				)
		self._invalidate(message_event_targets(event.event_type))


class ProfilesRealtime(_Scope):
	"""Optional channel invalidating listings when other users' profiles change."""

	scope = "profiles"

	async def start(self, user_id: Optional[str]) -> Optional[ManagedChannel]:
		if not user_id:
			return await self._replace(None)
		return await self._replace(lambda: self._build(user_id))

	def _build(self, user_id: str) -> ManagedChannel:
		channel = ManagedChannel(self._session.store, "profiles-changes", scope=self.scope)
		channel.on(
			"profiles",
			lambda event: self._invalidate(profile_event_targets(user_id, event.event_type)),
			filter=neq("id", user_id),
		)
		return channel
