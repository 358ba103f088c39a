"""Freshness windows per resource class.

Volatile conversation data goes stale within a minute, match and like
listings within a few minutes, own-profile data after ten.
"""

from __future__ import annotations

from matchsync.domain.cache import keys
from matchsync.domain.cache.models import FreshnessPolicy, RetryPolicy
from matchsync.settings import Settings

MINUTE = 60.0

CACHE_POLICIES: dict[str, FreshnessPolicy] = {
	keys.PROFILE: FreshnessPolicy(10 * MINUTE, 30 * MINUTE),
	keys.DISCOVER_PROFILES: FreshnessPolicy(5 * MINUTE, 10 * MINUTE),
	keys.DISCOVER_PROFILES_OPTIMIZED: FreshnessPolicy(3 * MINUTE, 8 * MINUTE),
	keys.DISCOVER_PROFILES_PAGINATED: FreshnessPolicy(5 * MINUTE, 15 * MINUTE),
	keys.LIKED_PROFILES: FreshnessPolicy(3 * MINUTE, 10 * MINUTE),
	keys.MATCHES: FreshnessPolicy(2 * MINUTE, 10 * MINUTE),
	keys.MATCH_MESSAGES: FreshnessPolicy(1 * MINUTE, 5 * MINUTE),
	keys.MATCH_MESSAGES_PAGINATED: FreshnessPolicy(30.0, 10 * MINUTE),
	keys.CHECK_MATCH: FreshnessPolicy(1 * MINUTE, 5 * MINUTE),
	keys.LAST_MESSAGES: FreshnessPolicy(30.0, 5 * MINUTE),
	keys.MATCH_COUNT: FreshnessPolicy(1 * MINUTE, 5 * MINUTE),
	keys.UNREAD_MESSAGE_COUNT: FreshnessPolicy(30.0, 5 * MINUTE),
	keys.UNREAD_NOTIFICATION_COUNT: FreshnessPolicy(30.0, 5 * MINUTE),
}

# Used for keys written directly before any hook declared a policy
DEFAULT_POLICY = FreshnessPolicy(0.0, 5 * MINUTE)


def policy_for(resource: str) -> FreshnessPolicy:
	return CACHE_POLICIES.get(resource, DEFAULT_POLICY)


def retry_policy(config: Settings) -> RetryPolicy:
	return RetryPolicy(
		retries=config.query_retry_count,
		base_delay_seconds=config.query_retry_base_delay_seconds,
		max_delay_seconds=config.query_retry_max_delay_seconds,
	)
