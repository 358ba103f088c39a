"""Central registry for Prometheus metrics used across the sync layer."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

CACHE_READS = Counter(
	"matchsync_cache_reads_total",
	"Observer cache reads by freshness outcome",
	["resource", "outcome"],
)

CACHE_WRITES = Counter(
	"matchsync_cache_writes_total",
	"Direct cache writes (optimistic updates and realtime patches)",
	["resource"],
)

CACHE_INVALIDATIONS = Counter(
	"matchsync_cache_invalidations_total",
	"Cache entries marked stale",
	["resource"],
)

CACHE_EVICTIONS = Counter(
	"matchsync_cache_evictions_total",
	"Cache entries evicted after their retention window",
)

QUERY_FETCHES = Counter(
	"matchsync_query_fetches_total",
	"Remote fetches started on behalf of query hooks",
	["resource", "result"],
)

QUERY_RETRIES = Counter(
	"matchsync_query_retries_total",
	"Fetch attempts retried after a transient failure",
	["resource"],
)

QUERY_DEDUPED = Counter(
	"matchsync_query_deduplicated_total",
	"Fetch requests joined onto an in-flight fetch for the same key",
	["resource"],
)

MUTATIONS = Counter(
	"matchsync_mutations_total",
	"Mutations executed",
	["name", "result"],
)

REALTIME_EVENTS = Counter(
	"matchsync_realtime_events_total",
	"Change-feed events reconciled into the cache",
	["table", "event"],
)

CHANNEL_TRANSITIONS = Counter(
	"matchsync_realtime_channel_transitions_total",
	"Realtime channel state transitions",
	["scope", "state"],
)

ACTIVE_CHANNELS = Gauge(
	"matchsync_realtime_channels_active",
	"Realtime channels currently subscribed",
	["scope"],
)

STRATEGY_FALLBACKS = Counter(
	"matchsync_strategy_fallbacks_total",
	"Smart selectors that switched to their fallback implementation",
	["selector"],
)


def cache_read(resource: str, outcome: str) -> None:
	CACHE_READS.labels(resource=resource, outcome=outcome).inc()


def cache_write(resource: str) -> None:
	CACHE_WRITES.labels(resource=resource).inc()


def cache_invalidated(resource: str, count: int = 1) -> None:
	if count > 0:
		CACHE_INVALIDATIONS.labels(resource=resource).inc(count)


def cache_evicted(count: int) -> None:
	if count > 0:
		CACHE_EVICTIONS.inc(count)


def query_fetch(resource: str, result: str) -> None:
	QUERY_FETCHES.labels(resource=resource, result=result).inc()


def query_retry(resource: str) -> None:
	QUERY_RETRIES.labels(resource=resource).inc()


def query_deduplicated(resource: str) -> None:
	QUERY_DEDUPED.labels(resource=resource).inc()


def mutation(name: str, result: str) -> None:
	MUTATIONS.labels(name=name, result=result).inc()


def realtime_event(table: str, event: str) -> None:
	REALTIME_EVENTS.labels(table=table, event=event.lower()).inc()


def channel_state(scope: str, state: str) -> None:
	CHANNEL_TRANSITIONS.labels(scope=scope, state=state.lower()).inc()


def channel_opened(scope: str) -> None:
	ACTIVE_CHANNELS.labels(scope=scope).inc()


def channel_closed(scope: str) -> None:
	ACTIVE_CHANNELS.labels(scope=scope).dec()


def strategy_fallback(selector: str) -> None:
	STRATEGY_FALLBACKS.labels(selector=selector).inc()
