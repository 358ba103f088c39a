"""Query keys: `(resource_name, *params)` tuples naming one cache slot."""

from __future__ import annotations

from typing import Any, Hashable, Iterable, Optional, Tuple

QueryKey = Tuple[Hashable, ...]

PROFILE = "profile"
DISCOVER_PROFILES = "discover-profiles"
DISCOVER_PROFILES_OPTIMIZED = "discover-profiles-optimized"
DISCOVER_PROFILES_PAGINATED = "discover-profiles-paginated"
LIKED_PROFILES = "liked-profiles"
MATCHES = "matches"
MATCH_MESSAGES = "match-messages"
MATCH_MESSAGES_PAGINATED = "match-messages-paginated"
CHECK_MATCH = "check-match"
LAST_MESSAGES = "last-messages"
MATCH_COUNT = "match-count"
UNREAD_MESSAGE_COUNT = "unread-message-count"
UNREAD_NOTIFICATION_COUNT = "unread-notification-count"

# Resource-name prefix shared by every discovery listing variant
DISCOVERY_FAMILY = DISCOVER_PROFILES


def _freeze(value: Any) -> Hashable:
	if isinstance(value, dict):
		return tuple(sorted((str(k), _freeze(v)) for k, v in value.items()))
	if isinstance(value, (list, tuple)):
		return tuple(_freeze(v) for v in value)
	if isinstance(value, (set, frozenset)):
		return tuple(sorted(_freeze(v) for v in value))
	return value


def query_key(resource: str, *params: Any) -> QueryKey:
	"""Build a key whose equality is structural, so equal params share a slot."""
	return (resource, *(_freeze(p) for p in params))


def resource_of(key: QueryKey) -> str:
	return str(key[0]) if key else ""


def key_matches(key: QueryKey, prefix: QueryKey, *, exact: bool = False) -> bool:
	if exact:
		return key == prefix
	return key[: len(prefix)] == tuple(prefix)


def in_family(key: QueryKey, resource_prefix: str) -> bool:
	return resource_of(key).startswith(resource_prefix)


def profile_key(user_id: Optional[str]) -> QueryKey:
	return query_key(PROFILE, user_id)


def matches_key(user_id: Optional[str]) -> QueryKey:
	return query_key(MATCHES, user_id)


def match_messages_key(match_id: Optional[str]) -> QueryKey:
	return query_key(MATCH_MESSAGES, match_id)


def match_messages_paginated_key(match_id: Optional[str]) -> QueryKey:
	return query_key(MATCH_MESSAGES_PAGINATED, match_id)


def check_match_key(user_a: Optional[str], user_b: Optional[str]) -> QueryKey:
	return query_key(CHECK_MATCH, user_a, user_b)


def last_messages_key(match_ids: Iterable[str]) -> QueryKey:
	return query_key(LAST_MESSAGES, tuple(match_ids))


def liked_profiles_key(user_id: Optional[str]) -> QueryKey:
	return query_key(LIKED_PROFILES, user_id)


def discover_profiles_key(resource: str, filters: Any, user_id: Optional[str]) -> QueryKey:
	return query_key(resource, filters, user_id)


def match_count_key(user_id: Optional[str]) -> QueryKey:
	return query_key(MATCH_COUNT, user_id)


def unread_message_count_key(user_id: Optional[str]) -> QueryKey:
	return query_key(UNREAD_MESSAGE_COUNT, user_id)


def unread_notification_count_key(user_id: Optional[str]) -> QueryKey:
	return query_key(UNREAD_NOTIFICATION_COUNT, user_id)
