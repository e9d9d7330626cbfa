# Resumable apply engine unit tests
from unittest.mock import AsyncMock, MagicMock

import pytest

from listing_sync.core.exceptions import CheckpointError, RetryableServerError, TerminalClientError
from listing_sync.schemas.checkpoint import Checkpoint, FailedListing
from listing_sync.schemas.listing import DesiredListing, ListingsPage
from listing_sync.services.apply_service import ApplyService
from listing_sync.services.checkpoint import MemoryCheckpointStore

FILE_HASH = "0123456789abcdef"


class RecordingStore(MemoryCheckpointStore):
    """Memory store that keeps every saved checkpoint"""

    def __init__(self):
        super().__init__()
        self.saved = []
        self.cleared = []

    async def save(self, file_hash, checkpoint):
        self.saved.append(checkpoint.model_copy(deep=True))
        await super().save(file_hash, checkpoint)

    async def clear(self, file_hash):
        self.cleared.append(file_hash)
        await super().clear(file_hash)


class CrashingStore(RecordingStore):
    """Store whose Nth save fails, as when the process dies mid-run"""

    def __init__(self, fail_on_save):
        super().__init__()
        self.fail_on_save = fail_on_save
        self.save_calls = 0

    async def save(self, file_hash, checkpoint):
        self.save_calls += 1
        if self.save_calls == self.fail_on_save:
            raise CheckpointError("database is locked")
        await super().save(file_hash, checkpoint)


def _client(listings, make_listing):
    by_id = {listing.listing_id: listing for listing in listings}

    async def get_listing(listing_id):
        if listing_id not in by_id:
            raise TerminalClientError(f"HTTP 404: listing {listing_id} not found", 404)
        return by_id[listing_id]

    client = MagicMock()
    client.get_listing = AsyncMock(side_effect=get_listing)
    client.get_listings_page = AsyncMock(return_value=ListingsPage(count=1, results=[make_listing(999)]))
    client.create_listing = AsyncMock(return_value=1000)
    client.update_listing = AsyncMock(return_value={})
    client.update_listing_inventory = AsyncMock(return_value={})
    client.delete_listing = AsyncMock(return_value=None)
    return client


def _update(listing_id, **kwargs):
    base = dict(
        listing_id=listing_id,
        title=f"Renamed {listing_id}",
        description="A ceramic mug",
        status="active",
        tags=["mug", "ceramic"],
        sku="MUG-1",
        quantity=5,
        price=10.0,
    )
    base.update(kwargs)
    return DesiredListing(**base)


def _approve_all(desired):
    return {f"change_{i}" for i in range(1, len(desired) + 1)}


"""
1. Batching and Checkpoint Tests
"""

@pytest.mark.asyncio
async def test_twelve_updates_checkpoint_after_each_batch(make_listing):
    desired = [_update(i) for i in range(1, 13)]
    client = _client([make_listing(i) for i in range(1, 13)], make_listing)
    store = RecordingStore()
    progress = []

    failures = await ApplyService(client, store, shop_id=42).apply(
        desired, _approve_all(desired), FILE_HASH, on_progress=lambda *args: progress.append(args)
    )

    assert failures == []
    assert [len(c.processed_listing_ids) for c in store.saved] == [5, 10, 12]
    assert progress == [(5, 12, 0), (10, 12, 0), (12, 12, 0)]
    assert store.cleared == [FILE_HASH]
    assert await store.load(FILE_HASH) is None
    assert client.update_listing.await_count == 12
    assert client.update_listing_inventory.await_count == 12
    # Pre-images fetched once each
    assert client.get_listing.await_count == 12


@pytest.mark.asyncio
async def test_only_approved_changes_are_applied(make_listing):
    desired = [_update(1), _update(2), _update(3)]
    client = _client([make_listing(i) for i in range(1, 4)], make_listing)

    await ApplyService(client, RecordingStore(), shop_id=42).apply(desired, {"change_2"}, FILE_HASH)

    assert [c.args[1] for c in client.update_listing.await_args_list] == [2]


@pytest.mark.asyncio
async def test_update_body_only_sends_changed_fields(make_listing):
    client = _client([make_listing(1)], make_listing)

    await ApplyService(client, RecordingStore(), shop_id=42).apply([_update(1)], {"change_1"}, FILE_HASH)

    client.update_listing.assert_awaited_once_with(42, 1, {"title": "Renamed 1"})


@pytest.mark.asyncio
async def test_unchanged_listing_skips_update_but_sends_inventory(make_listing):
    client = _client([make_listing(1)], make_listing)

    await ApplyService(client, RecordingStore(), shop_id=42).apply(
        [_update(1, title="Test Mug")], {"change_1"}, FILE_HASH
    )

    client.update_listing.assert_not_awaited()
    client.update_listing_inventory.assert_awaited_once()


"""
2. Resume Tests
"""

@pytest.mark.asyncio
async def test_resume_skips_processed_listings(make_listing):
    desired = [_update(i) for i in range(1, 13)]
    client = _client([make_listing(i) for i in range(1, 13)], make_listing)
    store = RecordingStore()
    await store.save(FILE_HASH, Checkpoint(
        file_hash=FILE_HASH, total_listings=12, processed_listing_ids=[1, 2, 3, 4, 5],
    ))
    progress = []

    await ApplyService(client, store, shop_id=42).apply(
        desired, _approve_all(desired), FILE_HASH, on_progress=lambda *args: progress.append(args)
    )

    updated = sorted(c.args[1] for c in client.update_listing.await_args_list)
    assert updated == list(range(6, 13))
    assert progress == [(5, 7, 0), (7, 7, 0)]
    assert sorted(c.args[0] for c in client.get_listing.await_args_list) == list(range(6, 13))


@pytest.mark.asyncio
async def test_interrupted_run_resumes_after_last_saved_batch(make_listing):
    desired = [_update(i) for i in range(1, 13)]
    client = _client([make_listing(i) for i in range(1, 13)], make_listing)
    store = CrashingStore(fail_on_save=2)
    first_progress = []

    with pytest.raises(CheckpointError):
        await ApplyService(client, store, shop_id=42).apply(
            desired, _approve_all(desired), FILE_HASH, on_progress=lambda *args: first_progress.append(args)
        )

    assert first_progress == [(5, 12, 0)]
    assert sorted((await store.load(FILE_HASH)).processed_listing_ids) == [1, 2, 3, 4, 5]

    client.update_listing.reset_mock()
    client.get_listing.reset_mock()
    second_progress = []
    failures = await ApplyService(client, store, shop_id=42).apply(
        desired, _approve_all(desired), FILE_HASH, on_progress=lambda *args: second_progress.append(args)
    )

    assert failures == []
    assert sorted(c.args[1] for c in client.update_listing.await_args_list) == list(range(6, 13))
    assert second_progress == [(5, 7, 0), (7, 7, 0)]
    assert await store.load(FILE_HASH) is None


@pytest.mark.asyncio
async def test_resume_retries_failed_listings(make_listing):
    client = _client([make_listing(1), make_listing(2)], make_listing)
    store = RecordingStore()
    await store.save(FILE_HASH, Checkpoint(
        file_hash=FILE_HASH,
        processed_listing_ids=[1, 2],
        failed_listing_ids=[FailedListing(listing_id=2, error="HTTP 503")],
    ))

    await ApplyService(client, store, shop_id=42).apply([_update(1), _update(2)], {"change_1", "change_2"}, FILE_HASH)

    assert [c.args[1] for c in client.update_listing.await_args_list] == [2]


@pytest.mark.asyncio
async def test_checkpoint_for_different_file_is_ignored(make_listing):
    client = _client([make_listing(1)], make_listing)
    store = RecordingStore()
    await store.save("ffffffffffffffff", Checkpoint(file_hash="ffffffffffffffff", processed_listing_ids=[1]))

    await ApplyService(client, store, shop_id=42).apply([_update(1)], {"change_1"}, FILE_HASH)

    client.update_listing.assert_awaited_once()


@pytest.mark.asyncio
async def test_creates_are_not_repeated_on_resume(make_listing):
    desired = [_update(0, title="New Bowl"), _update(1)]
    client = _client([make_listing(1)], make_listing)
    store = RecordingStore()
    await store.save(FILE_HASH, Checkpoint(file_hash=FILE_HASH, processed_change_ids=["change_1"]))

    await ApplyService(client, store, shop_id=42).apply(desired, {"change_1", "change_2"}, FILE_HASH)

    client.create_listing.assert_not_awaited()
    client.update_listing.assert_awaited_once()


"""
3. Operation Tests
"""

@pytest.mark.asyncio
async def test_create_then_inventory_with_new_id(make_listing):
    desired = [_update(0, title="New Bowl"), _update(0, title="New Plate")]
    client = _client([], make_listing)

    failures = await ApplyService(client, RecordingStore(), shop_id=42).apply(
        desired, {"change_1", "change_2"}, FILE_HASH
    )

    assert failures == []
    assert client.create_listing.await_count == 2
    # Create defaults are resolved once per run
    client.get_listings_page.assert_awaited_once()
    body = client.create_listing.await_args_list[0].args[1]
    assert body["taxonomy_id"] == 1
    assert body["shipping_profile_id"] == 7
    assert body["readiness_state_id"] == 3
    assert [c.args[0] for c in client.update_listing_inventory.await_args_list] == [1000, 1000]


@pytest.mark.asyncio
async def test_create_inventory_failure_still_counts_as_success(make_listing):
    client = _client([], make_listing)
    client.update_listing_inventory.side_effect = TerminalClientError("HTTP 400: bad inventory", 400)
    store = RecordingStore()

    failures = await ApplyService(client, store, shop_id=42).apply(
        [_update(0, title="New Bowl")], {"change_1"}, FILE_HASH
    )

    assert failures == []
    assert store.saved[-1].processed_change_ids == ["change_1"]


@pytest.mark.asyncio
async def test_delete_without_id_sends_no_request(make_listing):
    desired = [
        _update(0, sku="DELETE", to_delete=True),
        _update(7, sku="DELETE", to_delete=True),
    ]
    client = _client([], make_listing)
    store = RecordingStore()

    failures = await ApplyService(client, store, shop_id=42).apply(desired, {"change_1", "change_2"}, FILE_HASH)

    assert failures == []
    client.delete_listing.assert_awaited_once_with(7)
    client.get_listing.assert_not_awaited()
    assert store.saved[-1].processed_listing_ids == [7]
    assert store.saved[-1].processed_change_ids == ["change_1"]


@pytest.mark.asyncio
async def test_update_failure_is_recorded_and_inventory_still_attempted(make_listing):
    client = _client([make_listing(1), make_listing(2)], make_listing)
    client.update_listing.side_effect = [RetryableServerError("HTTP 503: unavailable", 503), {}]
    store = RecordingStore()
    progress = []

    failures = await ApplyService(client, store, shop_id=42).apply(
        [_update(1), _update(2)], {"change_1", "change_2"}, FILE_HASH,
        on_progress=lambda *args: progress.append(args),
    )

    assert [f.listing_id for f in failures] == [1]
    assert "503" in failures[0].error
    assert client.update_listing_inventory.await_count == 2
    assert progress == [(2, 2, 1)]
    assert [f.listing_id for f in store.saved[-1].failed_listing_ids] == [1]


@pytest.mark.asyncio
async def test_missing_pre_image_is_refetched(make_listing):
    client = _client([make_listing(1)], make_listing)
    client.get_listing.side_effect = [RetryableServerError("HTTP 500: server error", 500), make_listing(1)]

    failures = await ApplyService(client, RecordingStore(), shop_id=42).apply([_update(1)], {"change_1"}, FILE_HASH)

    assert failures == []
    assert client.get_listing.await_count == 2
    client.update_listing.assert_awaited_once()


@pytest.mark.asyncio
async def test_item_fails_when_pre_image_cannot_be_fetched(make_listing):
    client = _client([], make_listing)

    failures = await ApplyService(client, RecordingStore(), shop_id=42).apply([_update(5)], {"change_1"}, FILE_HASH)

    assert [f.listing_id for f in failures] == [5]
    client.update_listing.assert_not_awaited()


@pytest.mark.asyncio
async def test_apply_csv_parses_and_hashes(mocker, make_listing):
    client = _client([make_listing(1)], make_listing)
    service = ApplyService(client, RecordingStore(), shop_id=42)
    apply = mocker.patch.object(service, "apply", new=AsyncMock(return_value=[]))
    content = (
        "Listing ID,Title,Description,Status\r\n"
        "1,Renamed,A ceramic mug,active\r\n"
    ).encode("utf-8")

    await service.apply_csv(content, {"change_1"}, file_name="edits.csv")

    desired, approvals, content_hash, on_progress, file_name = apply.await_args.args
    assert [d.listing_id for d in desired] == [1]
    assert len(content_hash) == 16
    assert file_name == "edits.csv"
