import pytest

from matchsync.domain.discovery.queries import PRIVACY_VIEW
from matchsync.domain.selectors import (
    Strategy,
    StrategyEvent,
    reduce_strategy,
    use_discover_profiles_paginated_smart,
    use_discover_profiles_smart,
    use_match_messages_smart,
)
from matchsync.infra.errors import InvalidQuery


@pytest.fixture
def conversation(store, at):
    store.seed(
        "messages",
        [
            {
                "id": f"msg-{i:02d}",
                "match_id": "m1",
                "sender_id": "alice" if i % 2 else "me",
                "content": f"message {i}",
                "created_at": at(i),
            }
            for i in range(25)
        ],
    )
    return store


def _fail_when(store, monkeypatch, predicate):
    original = store.run_query

    async def run_query(spec):
        if predicate(spec):
            raise InvalidQuery(detail="unsupported")
        return await original(spec)

    monkeypatch.setattr(store, "run_query", run_query)


def _ranged(spec):
    return spec.offset is not None


def test_strategy_only_moves_to_fallback():
    assert reduce_strategy(Strategy.PRIMARY, StrategyEvent.PRIMARY_SUCCESS) is Strategy.PRIMARY
    assert reduce_strategy(Strategy.PRIMARY, StrategyEvent.PRIMARY_ERROR) is Strategy.FALLBACK
    assert reduce_strategy(Strategy.FALLBACK, StrategyEvent.PRIMARY_SUCCESS) is Strategy.FALLBACK
    assert reduce_strategy(Strategy.FALLBACK, StrategyEvent.PRIMARY_ERROR) is Strategy.FALLBACK


@pytest.mark.asyncio
async def test_messages_use_paginated_primary(session, conversation):
    smart = use_match_messages_smart(session, "m1", 10)

    result = await smart.mount()
    assert result.strategy is Strategy.PRIMARY
    assert [m.id for m in result.data] == [f"msg-{i:02d}" for i in range(15, 25)]
    assert result.has_more
    assert not smart.fallback.mounted

    await smart.load_more()
    result = await smart.load_more()

    assert [m.id for m in result.data] == [f"msg-{i:02d}" for i in range(25)]
    assert result.total_loaded == 25
    assert not result.has_more
    smart.unmount()


@pytest.mark.asyncio
async def test_messages_fall_back_to_flat_list(session, conversation, monkeypatch):
    _fail_when(conversation, monkeypatch, _ranged)

    async with use_match_messages_smart(session, "m1", 10) as smart:
        result = smart.result
        assert result.strategy is Strategy.FALLBACK
        assert result.error is None
        assert len(result.data) == 25
        assert result.total_loaded == 25
        assert not result.has_more

        after = await smart.load_more()
        assert after.strategy is Strategy.FALLBACK
        assert smart.dispatch(StrategyEvent.PRIMARY_SUCCESS) is Strategy.FALLBACK


@pytest.mark.asyncio
async def test_background_primary_failure_mounts_fallback(session, conversation, monkeypatch):
    smart = use_match_messages_smart(session, "m1", 10)
    await smart.mount()
    _fail_when(conversation, monkeypatch, _ranged)

    session.cache.invalidate(("match-messages-paginated",))
    await session.cache.wait_idle()
    await smart.wait()

    assert smart.strategy is Strategy.FALLBACK
    assert smart.fallback.mounted
    assert len(smart.result.data) == 25
    smart.unmount()


@pytest.mark.asyncio
async def test_discovery_falls_back_from_optimized_listing(session, store, make_profile, monkeypatch):
    store.seed(PRIVACY_VIEW, [make_profile("me"), make_profile("alice"), make_profile("bob")])
    _fail_when(store, monkeypatch, lambda spec: spec.table == PRIVACY_VIEW and spec.columns != ("*",))

    smart = use_discover_profiles_smart(session, None, "me")
    result = await smart.mount()

    assert result.strategy is Strategy.FALLBACK
    assert sorted(p.id for p in result.data) == ["alice", "bob"]
    assert all(len(p.photos) == 2 for p in result.data)
    smart.unmount()


@pytest.mark.asyncio
async def test_paginated_discovery_primary(session, store, make_profile, at):
    store.seed(PRIVACY_VIEW, [make_profile("me")] + [make_profile(f"c{i}", created_at=at(i)) for i in range(4)])

    smart = use_discover_profiles_paginated_smart(session, None, "me", 3)
    result = await smart.mount()

    assert result.strategy is Strategy.PRIMARY
    assert [p.id for p in result.data] == ["c3", "c2", "c1"]
    assert result.has_more
    assert result.total_loaded == 3

    result = await smart.load_more()
    assert result.total_loaded == 4
    assert not result.has_more
    smart.unmount()
