import pytest

from matchsync.infra.errors import ConstraintViolation, InvalidQuery, ProcedureNotFound, StoreError
from matchsync.infra.store import ChangeEvent, ChangeType, ChannelStatus


@pytest.mark.asyncio
async def test_insert_fills_ids_and_timestamps(store):
    first, second = await store.table("messages").insert(
        [{"match_id": "m1", "content": "a"}, {"match_id": "m1", "content": "b"}]
    ).execute()

    assert first["id"] != second["id"]
    assert first["created_at"] < second["created_at"]


@pytest.mark.asyncio
async def test_maybe_single_returns_row_or_none(store):
    store.seed("profiles", [{"id": "me", "first_name": "Me"}])

    row = await store.table("profiles").select("id, first_name").eq("id", "me").maybe_single().execute()
    missing = await store.table("profiles").select().eq("id", "ghost").maybe_single().execute()

    assert row == {"id": "me", "first_name": "Me"}
    assert missing is None


@pytest.mark.asyncio
async def test_likes_are_unique_per_pair(store):
    await store.table("likes").insert({"liker_id": "me", "liked_id": "alice"}).execute()

    with pytest.raises(ConstraintViolation):
        await store.table("likes").insert({"liker_id": "me", "liked_id": "alice"}).execute()


@pytest.mark.asyncio
async def test_range_and_count(store):
    store.seed("messages", [{"match_id": "m1", "content": str(i)} for i in range(5)])

    window = await store.table("messages").select("content").order("created_at").range(1, 2).execute()

    assert [row["content"] for row in window] == ["1", "2"]
    assert await store.table("messages").select("id").eq("match_id", "m1").count() == 5
    with pytest.raises(InvalidQuery):
        await store.table("messages").delete().count()


@pytest.mark.asyncio
async def test_unknown_procedure(store):
    with pytest.raises(ProcedureNotFound):
        await store.rpc("does_not_exist", {})


@pytest.mark.asyncio
async def test_cascade_rejects_outsiders(store):
    store.seed("matches", [{"id": "m1", "user1_id": "me", "user2_id": "alice"}])

    with pytest.raises(StoreError):
        await store.rpc("delete_match_and_messages", {"p_match_id": "m1", "p_user_id": "mallory"})

    assert len(store.rows("matches")) == 1


@pytest.mark.asyncio
async def test_upload_returns_stable_url(store):
    url = await store.upload("photos", "me/1.jpg", b"\xff\xd8")

    assert url == "memory://photos/me/1.jpg"
    assert url == await store.upload("photos", "me/1.jpg", b"\xff\xd8")


@pytest.mark.asyncio
async def test_channel_receives_committed_writes(store):
    seen = []
    statuses = []
    channel = store.channel("watch").on("matches", seen.append, event="INSERT")

    await channel.subscribe(statuses.append)
    await store.table("matches").insert({"user1_id": "me", "user2_id": "bob"}).execute()
    store.publish(ChangeEvent(table="matches", event_type=ChangeType.DELETE, old={"id": "x"}))
    await channel.unsubscribe()

    assert statuses[0] is ChannelStatus.SUBSCRIBED
    assert [event.event_type for event in seen] == [ChangeType.INSERT]
    assert store.channels == []
