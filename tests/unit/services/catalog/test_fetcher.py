# Pagination fetcher unit tests
import pytest
from unittest.mock import AsyncMock, MagicMock

from listing_sync.core.exceptions import RetryableServerError, TerminalClientError
from listing_sync.schemas.listing import ListingsPage, RemoteListing
from listing_sync.services.catalog.fetcher import fetch_all, merge_unique
from listing_sync.services.retry import page_policy


def _page(count, ids):
    return ListingsPage(count=count, results=[RemoteListing(listing_id=i) for i in ids])


def _fake_client(count, failing_offsets=(), duplicates=None):
    """Client whose pages hold consecutive listing IDs; some offsets always fail"""
    duplicates = duplicates or {}

    async def get_listings_page(shop_id, limit=100, offset=0, state=None, includes="Inventory"):
        if offset in failing_offsets:
            raise RetryableServerError("HTTP 503: unavailable", 503)
        ids = list(range(offset + 1, min(offset + limit, count) + 1))
        ids.extend(duplicates.get(offset, []))
        return _page(count, ids)

    client = MagicMock()
    client.get_listings_page = AsyncMock(side_effect=get_listings_page)
    return client


def _offsets(client):
    return [c.kwargs["offset"] for c in client.get_listings_page.await_args_list]


"""
1. Pagination Tests
"""

@pytest.mark.asyncio
async def test_single_page_makes_exactly_one_request():
    client = _fake_client(count=40)

    total, items = await fetch_all(client, 42, batch_delay=0)

    assert total == 40
    assert len(items) == 40
    assert client.get_listings_page.await_count == 1


@pytest.mark.asyncio
async def test_250_listings_fetch_pages_1_and_2_after_page_0():
    client = _fake_client(count=250)
    progress = []

    total, items = await fetch_all(
        client, 42, on_progress=lambda *args: progress.append(args), batch_delay=0
    )

    assert total == 250
    assert [item.listing_id for item in items] == list(range(1, 251))
    assert _offsets(client) == [0, 100, 200]
    assert progress == [(100, 250, 0), (250, 250, 0)]


@pytest.mark.asyncio
async def test_pages_are_fetched_in_batches_with_delay(mocker):
    sleep = mocker.patch("listing_sync.services.catalog.fetcher.asyncio.sleep", new=AsyncMock())
    client = _fake_client(count=1200)

    total, items = await fetch_all(client, 42)

    assert len(items) == 1200
    # 11 remaining pages: batches [1-5], [6-10], [11]
    assert sleep.await_count == 2
    assert all(c.args[0] == 0.2 for c in sleep.await_args_list)


@pytest.mark.asyncio
async def test_state_filter_is_passed_to_every_page():
    client = _fake_client(count=150)
    await fetch_all(client, 42, state="active", batch_delay=0)
    assert all(c.kwargs["state"] == "active" for c in client.get_listings_page.await_args_list)


"""
2. Failure and Deduplication Tests
"""

@pytest.mark.asyncio
async def test_failed_page_is_retried_then_skipped():
    client = _fake_client(count=300, failing_offsets={100})
    progress = []

    total, items = await fetch_all(
        client, 42,
        on_progress=lambda *args: progress.append(args),
        batch_delay=0,
        page_retry=page_policy(delay=0),
    )

    assert total == 300
    assert len(items) == 200
    # Page 1 attempted three times (two retries)
    assert _offsets(client).count(100) == 3
    assert progress[-1] == (200, 300, 1)


@pytest.mark.asyncio
async def test_first_page_failure_propagates():
    client = MagicMock()
    client.get_listings_page = AsyncMock(side_effect=TerminalClientError("HTTP 401: unauthorized", 401))

    with pytest.raises(TerminalClientError):
        await fetch_all(client, 42, batch_delay=0)

    assert client.get_listings_page.await_count == 1


@pytest.mark.asyncio
async def test_duplicates_across_pages_keep_first_copy():
    client = _fake_client(count=200, duplicates={100: [5, 50]})

    total, items = await fetch_all(client, 42, batch_delay=0)

    ids = [item.listing_id for item in items]
    assert len(ids) == len(set(ids)) == 200


def test_merge_unique_first_seen_wins():
    seen = set()
    items = []
    first = RemoteListing(listing_id=1, title="first")
    again = RemoteListing(listing_id=1, title="second")

    assert merge_unique([first, again], items, seen) == 1
    assert items == [first]
