import asyncio

import pytest

from matchsync.domain.cache.models import Page, PagedData
from matchsync.domain.matches.queries import use_matches
from matchsync.infra.errors import InvalidQuery


class PageSource:
    """Serves `total` integers in pages of `size`."""

    def __init__(self, total: int, size: int) -> None:
        self.total = total
        self.size = size
        self.requested: list[int] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, page: int) -> Page:
        self.requested.append(page)
        if self.gate is not None and page > 0:
            await self.gate.wait()
        start = page * self.size
        items = tuple(range(start, min(start + self.size, self.total)))
        full = len(items) == self.size
        return Page(items=items, next_page=page + 1 if full else None, has_more=full, total_loaded=start + len(items))


@pytest.mark.asyncio
async def test_mount_loads_and_follows_cache_writes(session):
    calls = []

    async def fetcher():
        calls.append(1)
        return (1, 2)

    observer = session.query(("thing", "a"), fetcher)
    result = await observer.mount()
    assert result.data == (1, 2)
    assert result.is_success

    session.cache.set(("thing", "a"), lambda old: (*old, 3))
    assert observer.data == (1, 2, 3)
    assert len(calls) == 1
    observer.unmount()


@pytest.mark.asyncio
async def test_disabled_hook_never_fetches(session, store):
    observer = use_matches(session, None)
    result = await observer.mount()

    assert result.is_idle
    assert result.data is None
    assert store.calls == []


@pytest.mark.asyncio
async def test_fetch_errors_are_carried_in_result(session):
    async def fetcher():
        raise InvalidQuery(detail="no such column")

    observer = session.query(("thing", "broken"), fetcher)
    result = await observer.mount()

    assert result.is_error
    assert isinstance(result.error, InvalidQuery)
    assert result.data is None


@pytest.mark.asyncio
async def test_unmounted_observer_stops_following(session):
    async def fetcher():
        return "v1"

    observer = session.query(("thing", "b"), fetcher)
    async with observer:
        assert observer.data == "v1"
    session.cache.set(("thing", "b"), lambda old: "v2")

    assert observer.data == "v1"
    assert session.cache.observer_count(("thing", "b")) == 0


@pytest.mark.asyncio
async def test_rebind_moves_to_new_key(session):
    async def first():
        return "first"

    async def second():
        return "second"

    observer = session.query(("thing", 1), first)
    await observer.mount()
    result = await observer.rebind(("thing", 2), second)

    assert result.data == "second"
    assert observer.key == ("thing", 2)
    assert session.cache.observer_count(("thing", 1)) == 0


@pytest.mark.asyncio
async def test_subscribers_see_every_result(session):
    async def fetcher():
        return "v"

    observer = session.query(("thing", "c"), fetcher)
    seen = []
    unsubscribe = observer.subscribe(seen.append)
    await observer.mount()
    unsubscribe()
    session.cache.set(("thing", "c"), lambda old: "w")

    assert seen[-1].data == "v"
    assert observer.data == "w"


@pytest.mark.asyncio
async def test_load_more_appends_until_short_page(session):
    source = PageSource(total=5, size=2)
    observer = session.paginated_query(("paged", "x"), source)

    result = await observer.mount()
    assert result.data.items() == [0, 1]
    assert result.has_more
    assert observer.get_next_page_param() == 1

    await observer.load_more()
    result = await observer.load_more()
    assert result.data.items() == [0, 1, 2, 3, 4]
    assert not result.has_more
    assert observer.get_next_page_param() is None

    await observer.load_more()
    assert source.requested == [0, 1, 2]


@pytest.mark.asyncio
async def test_load_more_is_ignored_while_a_page_is_loading(session):
    source = PageSource(total=10, size=2)
    observer = session.paginated_query(("paged", "y"), source)
    await observer.mount()
    source.gate = asyncio.Event()

    pending = asyncio.create_task(observer.load_more())
    await asyncio.sleep(0)
    assert observer.is_loading_more
    await observer.load_more()
    source.gate.set()
    result = await pending

    assert source.requested == [0, 1]
    assert result.data.page_params == (0, 1)
    assert not observer.is_loading_more


@pytest.mark.asyncio
async def test_refetch_reloads_every_loaded_page(session):
    source = PageSource(total=10, size=2)
    observer = session.paginated_query(("paged", "z"), source)
    await observer.mount()
    await observer.load_more()

    result = await observer.refetch()

    assert source.requested == [0, 1, 0, 1]
    assert isinstance(result.data, PagedData)
    assert result.data.items() == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_load_more_failure_keeps_loaded_pages(session):
    source = PageSource(total=10, size=2)
    observer = session.paginated_query(("paged", "w"), source)
    await observer.mount()

    async def failing(page):
        raise InvalidQuery(detail="bad page")

    observer._fetch_page = failing
    result = await observer.load_more()

    assert result.is_error
    assert result.data.items() == [0, 1]
    assert not result.is_loading_more
