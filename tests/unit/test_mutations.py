import pytest

from matchsync.domain.cache.exceptions import InvalidInput, MissingIdentityError, MutationError, SyncError
from matchsync.domain.cache.mutation import MutationStatus
from matchsync.domain.discovery import queries as discovery_queries
from matchsync.domain.discovery.mutations import LikeInput, LikeProfile, PassInput, PassProfile, UnlikeProfile
from matchsync.domain.discovery.queries import PRIVACY_VIEW
from matchsync.domain.matches import queries as match_queries
from matchsync.domain.matches.models import Match
from matchsync.domain.matches.mutations import MarkMessagesAsRead, MarkReadInput, SendMessage, SendMessageInput
from matchsync.domain.matches.recipes import chronological
from matchsync.domain.realtime.channel import ChannelState
from matchsync.infra.errors import StoreError, StoreUnavailable
from matchsync.infra.query import Action

MATCH_ROW = {"id": "m-alice", "user1_id": "me", "user2_id": "alice"}


@pytest.fixture
def seeded(store, make_profile, at):
    rows = [make_profile("me"), make_profile("alice"), make_profile("bob")]
    store.seed("profiles", rows)
    store.seed(PRIVACY_VIEW, rows)
    store.seed("matches", [dict(MATCH_ROW, created_at=at(0))])
    store.seed(
        "messages",
        [
            {"id": "old-1", "match_id": "m-alice", "sender_id": "alice", "content": "hey", "created_at": at(1)},
            {"id": "old-2", "match_id": "m-alice", "sender_id": "me", "content": "hi", "created_at": at(2)},
            {"id": "old-3", "match_id": "m-alice", "sender_id": "alice", "content": "how are you", "created_at": at(3)},
        ],
    )
    return store


def _writes(store):
    return [call for call in store.calls if call[0] in ("insert", "update", "delete", "rpc")]


async def _open_conversation(session):
    paged = match_queries.use_match_messages_paginated(session, "m-alice", 10)
    flat = match_queries.use_match_messages(session, "m-alice")
    await paged.mount()
    await flat.mount()
    return paged, flat


@pytest.mark.asyncio
async def test_send_with_realtime_echo_appends_once(session, seeded):
    paged, flat = await _open_conversation(session)
    await session.select_match(Match.for_viewer(MATCH_ROW, "me"))

    message = await SendMessage(session).run(SendMessageInput(match_id="m-alice", content=" hello ", sender_id="me"))

    assert message.content == "hello"
    ids = [m.id for m in chronological(paged.data)]
    assert ids == ["old-1", "old-2", "old-3", message.id]
    assert [m.id for m in flat.data] == ids
    assert paged.data.pages[0].total_loaded == 11


@pytest.mark.asyncio
async def test_send_without_realtime_appends_locally(session, seeded):
    paged, flat = await _open_conversation(session)

    message = await SendMessage(session).run(SendMessageInput(match_id="m-alice", content="hello", sender_id="me"))

    assert chronological(paged.data)[-1] == message
    assert flat.data[-1] == message
    assert seeded.channels == []


@pytest.mark.asyncio
async def test_send_rejects_bad_input_without_remote_call(session, seeded):
    mutation = SendMessage(session)

    with pytest.raises(InvalidInput):
        await mutation.run(SendMessageInput(match_id="m-alice", content="   ", sender_id="me"))
    with pytest.raises(MissingIdentityError):
        await mutation.run(SendMessageInput(match_id="m-alice", content="hi", sender_id=""))

    assert mutation.status is MutationStatus.ERROR
    assert mutation.last_failed.content == "hi"
    assert _writes(seeded) == []


@pytest.mark.asyncio
async def test_failed_send_is_not_retried_until_asked(session, seeded, monkeypatch):
    await _open_conversation(session)
    original = seeded.run_query
    attempts = []

    async def offline(spec):
        attempts.append(spec.action)
        raise StoreUnavailable(detail="offline")

    monkeypatch.setattr(seeded, "run_query", offline)
    mutation = SendMessage(session)
    variables = SendMessageInput(match_id="m-alice", content="hello", sender_id="me")

    with pytest.raises(MutationError) as info:
        await mutation.run(variables)

    assert isinstance(info.value.cause, StoreUnavailable)
    assert attempts == [Action.INSERT]
    assert mutation.last_failed == variables

    monkeypatch.setattr(seeded, "run_query", original)
    message = await mutation.retry()

    assert mutation.status is MutationStatus.SUCCESS
    assert mutation.last_failed is None
    assert session.cache.get_data(("match-messages", "m-alice"))[-1] == message


@pytest.mark.asyncio
async def test_retry_without_failure_raises(session):
    with pytest.raises(SyncError):
        await SendMessage(session).retry()


@pytest.mark.asyncio
async def test_incoming_message_from_other_party_is_applied(session, seeded):
    paged, flat = await _open_conversation(session)
    await session.select_match(Match.for_viewer(MATCH_ROW, "me"))

    await seeded.table("messages").insert({"match_id": "m-alice", "sender_id": "alice", "content": "ping"}).execute()

    assert chronological(paged.data)[-1].content == "ping"
    assert flat.data[-1].content == "ping"


@pytest.mark.asyncio
async def test_like_is_idempotent_and_refreshes_discovery(session, seeded):
    listing = discovery_queries.use_discover_profiles(session, None, "me")
    await listing.mount()

    first = await LikeProfile(session).run(LikeInput(profile_id="alice", user_id="me"))
    second = await LikeProfile(session).run(LikeInput(profile_id="alice", user_id="me"))
    await session.cache.wait_idle()

    assert first.created
    assert not second.created
    assert len(seeded.rows("likes")) == 1
    assert [p.id for p in listing.data] == ["bob"]
    assert "alice" not in [p.id for p in session.discovered]


@pytest.mark.asyncio
async def test_concurrent_like_counts_as_existing(session, seeded, monkeypatch):
    seeded.seed("likes", [{"liker_id": "me", "liked_id": "alice"}])
    original = seeded.run_query

    async def stale_read(spec):
        if spec.action is Action.SELECT and spec.table == "likes":
            return []
        return await original(spec)

    monkeypatch.setattr(seeded, "run_query", stale_read)
    result = await LikeProfile(session).run(LikeInput(profile_id="alice", user_id="me"))

    assert not result.created
    assert len(seeded.rows("likes")) == 1


@pytest.mark.asyncio
async def test_unlike_removes_match_messages_and_selection(session, seeded):
    seeded.seed("likes", [{"liker_id": "me", "liked_id": "alice"}])
    await session.select_match(Match.for_viewer(MATCH_ROW, "me"))
    channel = session.conversation_realtime.channel

    result = await UnlikeProfile(session).run(LikeInput(profile_id="alice", user_id="me"))

    assert result.match_id == "m-alice"
    assert not result.cascade_failed
    assert seeded.rows("matches") == []
    assert seeded.rows("messages") == []
    assert seeded.rows("likes") == []
    assert session.selected_match is None
    assert channel.state is ChannelState.CLOSED


@pytest.mark.asyncio
async def test_unlike_continues_when_cascade_fails(session, seeded):
    seeded.seed("likes", [{"liker_id": "me", "liked_id": "alice"}])

    async def broken(params):
        raise StoreError("rpc_failed", detail="procedure exploded")

    seeded.register_procedure("delete_match_and_messages", broken)

    result = await UnlikeProfile(session).run(LikeInput(profile_id="alice", user_id="me"))

    assert result.cascade_failed
    assert seeded.rows("likes") == []
    assert [row["id"] for row in seeded.rows("matches")] == ["m-alice"]


@pytest.mark.asyncio
async def test_unlike_without_match_skips_cascade(session, seeded):
    seeded.seed("likes", [{"liker_id": "me", "liked_id": "bob"}])

    result = await UnlikeProfile(session).run(LikeInput(profile_id="bob", user_id="me"))

    assert result.match_id is None
    assert ("rpc", "delete_match_and_messages") not in seeded.calls
    assert seeded.rows("likes") == []


@pytest.mark.asyncio
async def test_pass_filters_cached_listings_only(session, seeded):
    plain = discovery_queries.use_discover_profiles(session, None, "me")
    optimized = discovery_queries.use_discover_profiles_optimized(session, None, "me")
    await plain.mount()
    await optimized.mount()
    before = _writes(seeded)

    await PassProfile(session).run(PassInput(profile_id="bob"))

    assert [p.id for p in plain.data] == ["alice"]
    assert [p.id for p in optimized.data] == ["alice"]
    assert "bob" not in [p.id for p in session.discovered]
    assert _writes(seeded) == before


@pytest.mark.asyncio
async def test_mark_read_stamps_other_party_messages(session, seeded):
    _, flat = await _open_conversation(session)
    unread = match_queries.use_unread_message_count(session, "me")
    assert (await unread.mount()).data == 2

    result = await MarkMessagesAsRead(session).run(MarkReadInput(match_id="m-alice", user_id="me"))
    await session.cache.wait_idle()

    assert result.updated == 2
    stored = {row["id"]: row.get("read_at") for row in seeded.rows("messages")}
    assert stored["old-1"] == result.read_at
    assert stored["old-2"] is None
    assert [m.read_at for m in flat.data] == [result.read_at] * 3
    assert unread.data == 0


@pytest.mark.asyncio
async def test_cache_update_failure_leaves_error_status(session, seeded):
    class ExplodingSend(SendMessage):
        async def on_success(self, result, variables):
            raise RuntimeError("recipe exploded")

    mutation = ExplodingSend(session)

    with pytest.raises(RuntimeError):
        await mutation.run(SendMessageInput(match_id="m-alice", content="hello", sender_id="me"))

    assert mutation.status is MutationStatus.ERROR
    assert isinstance(mutation.error, RuntimeError)
    assert mutation.last_failed is None
    assert mutation.data.content == "hello"
    assert len(seeded.rows("messages")) == 4
