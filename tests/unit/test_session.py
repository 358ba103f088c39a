import asyncio

import pytest

from matchsync.domain.cache import keys
from matchsync.domain.cache.policies import CACHE_POLICIES
from matchsync.domain.matches.models import Match
from matchsync.session import SyncSession
from matchsync.settings import Settings


@pytest.mark.asyncio
async def test_hooks_pick_up_resource_policies(session):
    async def fetcher():
        return ()

    observer = session.query(keys.matches_key("me"), fetcher)
    await observer.mount()

    entry = session.cache.get(keys.matches_key("me"))
    policy = CACHE_POLICIES[keys.MATCHES]
    assert entry.stale_after - entry.fetched_at == policy.stale_seconds
    assert entry.retain_until - entry.fetched_at == policy.retain_seconds


@pytest.mark.asyncio
async def test_sweeper_evicts_expired_entries(store, clock):
    config = Settings(cache_gc_interval_seconds=0.01)
    async with SyncSession(store, settings=config, clock=clock) as sync:
        sync.cache.set(("thing", 1), lambda old: "v")
        clock.advance(3600)
        await asyncio.sleep(0.05)

        assert sync.cache.keys() == []


@pytest.mark.asyncio
async def test_close_tears_down_channels_and_cache(store):
    sync = SyncSession(store, settings=Settings(cache_gc_interval_seconds=0))
    await sync.sign_in("me")
    await sync.select_match(Match(id="m-1", user1_id="me", user2_id="alice"))
    sync.cache.set(("thing", 1), lambda old: "v")
    assert len(store.channels) == 2

    await sync.close()
    await sync.close()

    assert store.channels == []
    assert sync.selected_match is None
    assert sync.cache.keys() == []


@pytest.mark.asyncio
async def test_sessions_do_not_share_caches(store):
    first = SyncSession(store)
    second = SyncSession(store)
    first.cache.set(("thing", 1), lambda old: "v")

    assert second.cache.get(("thing", 1)) is None
    assert first.session_id != second.session_id
    await first.close()
    await second.close()
