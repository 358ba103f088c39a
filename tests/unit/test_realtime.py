import pytest

from matchsync.domain.cache import keys
from matchsync.domain.cache.models import FreshnessPolicy
from matchsync.domain.discovery.schemas import DiscoveryFilter
from matchsync.domain.matches.models import Match, Message
from matchsync.domain.matches.recipes import chronological, initial_pages
from matchsync.domain.realtime.channel import ChannelState, ManagedChannel
from matchsync.domain.realtime.reconciler import (
    Invalidation,
    like_event_targets,
    match_event_targets,
    message_event_targets,
)
from matchsync.infra.memory import MemoryChannel, MemoryStore
from matchsync.infra.store import ChangeEvent, ChangeType, ChannelStatus

POLICY = FreshnessPolicy(60, 600)


class TimingOutChannel(MemoryChannel):
    async def _open(self) -> ChannelStatus:
        return ChannelStatus.TIMED_OUT


class TimingOutStore(MemoryStore):
    def channel(self, name: str) -> MemoryChannel:
        return TimingOutChannel(self, name)


def _prime(session, *cache_keys):
    for key in cache_keys:
        session.cache.set(key, lambda old: ("cached",), policy=POLICY)


def _invalidated(session, key) -> bool:
    return session.cache.get(key).invalidated


def test_match_insert_targets_include_discovery():
    inserted = match_event_targets("me", ChangeType.INSERT)
    updated = match_event_targets("me", ChangeType.UPDATE)

    assert Invalidation(family=keys.DISCOVERY_FAMILY) in inserted
    assert Invalidation(family=keys.DISCOVERY_FAMILY) not in updated
    assert Invalidation(prefix=(keys.MATCH_COUNT, "me")) in updated


def test_like_and_message_targets():
    assert Invalidation(prefix=(keys.LIKED_PROFILES, "me")) in like_event_targets("me", ChangeType.DELETE)
    assert message_event_targets(ChangeType.DELETE) == [Invalidation(prefix=(keys.MATCHES,))]
    assert Invalidation(prefix=(keys.LAST_MESSAGES,)) in message_event_targets(ChangeType.INSERT)


@pytest.mark.asyncio
async def test_channel_lifecycle(store):
    channel = ManagedChannel(store, "probe", scope="test")

    assert await channel.open() is ChannelState.SUBSCRIBED
    await channel.close()

    assert channel.history == [
        ChannelState.UNSUBSCRIBED,
        ChannelState.SUBSCRIBING,
        ChannelState.SUBSCRIBED,
        ChannelState.CLOSED,
    ]
    assert store.channels == []


@pytest.mark.asyncio
async def test_timed_out_channel_is_degraded():
    channel = ManagedChannel(TimingOutStore(), "probe", scope="test")

    assert await channel.open() is ChannelState.TIMED_OUT
    assert channel.degraded
    await channel.close()
    assert channel.state is ChannelState.CLOSED


@pytest.mark.asyncio
async def test_errored_channel_stops_handling_events(store):
    seen = []
    channel = ManagedChannel(store, "probe", scope="test").on("messages", seen.append)
    await channel.open()
    event = ChangeEvent(table="messages", event_type=ChangeType.INSERT, new={"id": "x"})

    store.publish(event)
    store.channels[0].fail()
    store.publish(event)

    assert len(seen) == 1
    assert channel.state is ChannelState.ERROR
    await channel.close()
    assert channel.history[-2:] == [ChannelState.ERROR, ChannelState.CLOSED]


@pytest.mark.asyncio
async def test_user_channel_invalidates_on_match_and_like(session, store):
    discovery = keys.discover_profiles_key(keys.DISCOVER_PROFILES, DiscoveryFilter(), "me")
    owned = [
        keys.matches_key("me"),
        keys.match_count_key("me"),
        keys.unread_message_count_key("me"),
        keys.liked_profiles_key("me"),
        keys.unread_notification_count_key("me"),
        discovery,
    ]
    _prime(session, *owned)
    await session.sign_in("me")

    await store.table("matches").insert({"user1_id": "alice", "user2_id": "me"}).execute()

    assert all(_invalidated(session, key) for key in owned[:3])
    assert _invalidated(session, discovery)
    assert not _invalidated(session, keys.liked_profiles_key("me"))

    await store.table("likes").insert({"liker_id": "bob", "liked_id": "me"}).execute()
    assert _invalidated(session, keys.liked_profiles_key("me"))
    assert not _invalidated(session, keys.unread_notification_count_key("me"))

    await store.table("notifications").insert({"user_id": "me", "kind": "like"}).execute()
    assert _invalidated(session, keys.unread_notification_count_key("me"))


@pytest.mark.asyncio
async def test_user_channel_ignores_other_users(session, store):
    _prime(session, keys.matches_key("me"))
    await session.sign_in("me")

    await store.table("matches").insert({"user1_id": "alice", "user2_id": "bob"}).execute()
    await store.table("notifications").insert({"user_id": "alice"}).execute()

    assert not _invalidated(session, keys.matches_key("me"))


@pytest.mark.asyncio
async def test_sign_out_closes_user_channel(session, store):
    channel = await session.user_realtime.set_user("me")
    await session.sign_in(None)

    assert channel.state is ChannelState.CLOSED
    assert session.user_realtime.channel is None
    assert store.channels == []


@pytest.mark.asyncio
async def test_conversation_channel_patches_message_caches(session, store, at):
    existing = Message(id="m-1", match_id="m-alice", sender_id="alice", content="hey", created_at=at(1))
    session.cache.set(keys.match_messages_paginated_key("m-alice"), lambda old: initial_pages(existing), policy=POLICY)
    session.cache.set(keys.match_messages_key("m-alice"), lambda old: (existing,), policy=POLICY)
    store.seed("messages", [{"id": "m-1", "match_id": "m-alice", "sender_id": "alice", "content": "hey", "created_at": at(1)}])
    await session.select_match(Match(id="m-alice", user1_id="me", user2_id="alice", other_user_id="alice"))

    inserted = await store.table("messages").insert({"match_id": "m-alice", "sender_id": "alice", "content": "new"}).execute()
    await store.table("messages").update({"content": "edited"}).eq("id", "m-1").execute()
    paged = session.cache.get_data(keys.match_messages_paginated_key("m-alice"))
    flat = session.cache.get_data(keys.match_messages_key("m-alice"))

    assert [m.content for m in chronological(paged)] == ["edited", "new"]
    assert [m.content for m in flat] == ["edited", "new"]

    await store.table("messages").delete().eq("id", inserted[0]["id"]).execute()
    paged = session.cache.get_data(keys.match_messages_paginated_key("m-alice"))

    assert [m.id for m in chronological(paged)] == ["m-1"]
    assert paged.pages[0].total_loaded == 1
    assert [m.id for m in session.cache.get_data(keys.match_messages_key("m-alice"))] == ["m-1"]


@pytest.mark.asyncio
async def test_switching_conversation_closes_previous_channel(session, store):
    session.cache.set(keys.match_messages_key("m-1"), lambda old: (), policy=POLICY)
    await session.select_match(Match(id="m-1", user1_id="me", user2_id="alice"))
    first = session.conversation_realtime.channel
    await session.select_match(Match(id="m-2", user1_id="me", user2_id="bob"))

    await store.table("messages").insert({"match_id": "m-1", "sender_id": "alice", "content": "late"}).execute()

    assert first.state is ChannelState.CLOSED
    assert [channel.name for channel in store.channels] == ["messages-m-2"]
    assert session.cache.get_data(keys.match_messages_key("m-1")) == ()


@pytest.mark.asyncio
async def test_reselecting_same_conversation_keeps_channel(session, store):
    match = Match(id="m-1", user1_id="me", user2_id="alice")
    await session.select_match(match)
    first = session.conversation_realtime.channel
    await session.select_match(match)

    assert session.conversation_realtime.channel is first
    assert len(store.channels) == 1


@pytest.mark.asyncio
async def test_profile_changes_refresh_discovery(session, store):
    discovery = keys.discover_profiles_key(keys.DISCOVER_PROFILES, DiscoveryFilter(), "me")
    _prime(session, discovery)
    await session.profiles_realtime.start("me")

    await store.table("profiles").insert({"id": "me", "first_name": "Me"}).execute()
    assert not _invalidated(session, discovery)

    await store.table("profiles").insert({"id": "dana", "first_name": "Dana"}).execute()
    assert _invalidated(session, discovery)
