# listing_sync/services/apply_service.py
"""
Resumable apply engine.

Commits the approved subset of a parsed CSV to the catalog in sequential
batches of concurrent operations. A checkpoint is persisted after every
batch, so an interrupted run started again with the same file picks up
where it stopped. Per-item failures are recorded and the run continues.
"""
import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from listing_sync.schemas.checkpoint import FailedListing
from listing_sync.schemas.listing import DesiredListing, RemoteListing
from listing_sync.services.checkpoint import (
    CheckpointStore,
    InProgress,
    ItemOutcome,
    begin,
    complete,
    record_batch,
    resume_state,
    should_skip,
)
from listing_sync.services.csv_service import decode_csv, hash_content, parse_listings_csv
from listing_sync.services.listing_operations import (
    CreateDefaults,
    build_create_body,
    build_inventory_body,
    build_update_body,
    resolve_create_defaults,
)
from listing_sync.services.preview_service import change_id_for, prefetch_listings

logger = logging.getLogger(__name__)

APPLY_BATCH_SIZE = 5
PREFETCH_BATCH_SIZE = 10

ProgressCallback = Callable[[int, int, int], None]


class ApplyService:
    """
    Applies approved changes to the catalog.

    Args:
        client: Catalog API client
        store: Where checkpoints are persisted
        shop_id: Shop the listings belong to
        batch_size: Operations run concurrently per batch
    """

    def __init__(
        self,
        client,
        store: CheckpointStore,
        shop_id: int,
        batch_size: int = APPLY_BATCH_SIZE,
        prefetch_batch_size: int = PREFETCH_BATCH_SIZE,
    ):
        self.client = client
        self.store = store
        self.shop_id = shop_id
        self.batch_size = batch_size
        self.prefetch_batch_size = prefetch_batch_size
        self._create_defaults: Optional[asyncio.Task] = None

    async def apply_csv(
        self,
        content: bytes,
        approvals: Iterable[str],
        on_progress: Optional[ProgressCallback] = None,
        file_name: str = "",
    ) -> List[FailedListing]:
        """Parse, hash and apply an edited CSV file"""
        desired = parse_listings_csv(decode_csv(content))
        return await self.apply(desired, approvals, hash_content(content), on_progress, file_name)

    async def apply(
        self,
        desired: List[DesiredListing],
        approvals: Iterable[str],
        content_hash: str,
        on_progress: Optional[ProgressCallback] = None,
        file_name: str = "",
    ) -> List[FailedListing]:
        """
        Apply the approved listings.

        Args:
            desired: Listings in CSV order; positions give the change IDs
            approvals: Approved change IDs
            content_hash: Hash of the source file, keys the checkpoint
            on_progress: Called after each batch as (attempted, total, failed)
            file_name: Stored in the checkpoint for reference

        Returns:
            List[FailedListing]: items that failed during this run
        """
        approved = set(approvals)
        self._create_defaults = None

        state = resume_state(await self.store.load(content_hash), content_hash)
        if isinstance(state, InProgress):
            checkpoint = state.checkpoint
            logger.info(
                f"Resuming apply of {file_name or content_hash} "
                f"({len(checkpoint.processed_listing_ids)}/{checkpoint.total_listings} listings processed)"
            )

        work: List[Tuple[str, DesiredListing]] = []
        skipped = 0
        for position, listing in enumerate(desired, start=1):
            change_id = change_id_for(position)
            if change_id not in approved:
                continue
            if should_skip(state, listing.listing_id, change_id):
                skipped += 1
                continue
            work.append((change_id, listing))

        total = len(work)
        if skipped:
            logger.info(f"Skipping {skipped} item(s) already applied in a previous run")

        state = begin(state, content_hash, file_name, total, sorted(approved))

        update_ids = [listing.listing_id for _, listing in work if listing.listing_id and not listing.to_delete]
        existing = await prefetch_listings(update_ids, self.client.get_listing, self.prefetch_batch_size)

        attempted = 0
        failures: List[FailedListing] = []
        for start in range(0, total, self.batch_size):
            batch = work[start:start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self._apply_one(change_id, listing, existing) for change_id, listing in batch)
            )

            for outcome in outcomes:
                if outcome.failed:
                    failures.append(FailedListing(listing_id=outcome.listing_id, error=outcome.error))

            state = record_batch(state, outcomes)
            await self.store.save(content_hash, state.checkpoint)

            attempted += len(batch)
            if on_progress:
                on_progress(attempted, total, len(failures))

        state = complete(state)
        await self.store.clear(content_hash)

        logger.info(f"Apply finished: {attempted - len(failures)} succeeded, {len(failures)} failed")
        return failures

    async def _get_create_defaults(self) -> CreateDefaults:
        # Shared by every create in the run, including concurrent ones
        if self._create_defaults is None:
            self._create_defaults = asyncio.ensure_future(resolve_create_defaults(self.client, self.shop_id))
        return await self._create_defaults

    async def _apply_one(
        self,
        change_id: str,
        listing: DesiredListing,
        existing: Dict[int, RemoteListing],
    ) -> ItemOutcome:
        try:
            if listing.to_delete:
                return await self._delete(change_id, listing)
            if listing.is_create:
                return await self._create(change_id, listing)
            return await self._update(change_id, listing, existing.get(listing.listing_id))
        except Exception as e:
            logger.error(f"Error processing {change_id} (listing {listing.listing_id}): {str(e)}")
            return ItemOutcome(change_id=change_id, listing_id=listing.listing_id, error=str(e))

    async def _delete(self, change_id: str, listing: DesiredListing) -> ItemOutcome:
        if not listing.listing_id:
            logger.warning(f"{change_id}: cannot delete a listing without a listing ID")
            return ItemOutcome(change_id=change_id)

        await self.client.delete_listing(listing.listing_id)
        logger.info(f"Deleted listing {listing.listing_id}")
        return ItemOutcome(change_id=change_id, listing_id=listing.listing_id)

    async def _create(self, change_id: str, listing: DesiredListing) -> ItemOutcome:
        defaults = await self._get_create_defaults()
        body = build_create_body(listing, defaults)
        new_listing_id = await self.client.create_listing(self.shop_id, body)
        logger.info(f"Created listing {new_listing_id}")

        try:
            inventory = build_inventory_body(listing, None, defaults.readiness_state_id)
            await self.client.update_listing_inventory(new_listing_id, inventory)
        except Exception as e:
            logger.error(f"Error updating inventory for new listing {new_listing_id}: {str(e)}")

        return ItemOutcome(change_id=change_id)

    async def _update(
        self,
        change_id: str,
        listing: DesiredListing,
        current: Optional[RemoteListing],
    ) -> ItemOutcome:
        listing_id = listing.listing_id
        if current is None:
            try:
                current = await self.client.get_listing(listing_id)
            except Exception as e:
                logger.error(f"Error fetching existing listing {listing_id}: {str(e)}")
                return ItemOutcome(change_id=change_id, listing_id=listing_id, error=str(e))

        errors: List[str] = []

        try:
            body = build_update_body(listing, current)
            if body:
                await self.client.update_listing(self.shop_id, listing_id, body)
        except Exception as e:
            logger.error(f"Error updating listing {listing_id}: {str(e)}")
            errors.append(f"update: {str(e)}")

        try:
            inventory = build_inventory_body(listing, current)
            await self.client.update_listing_inventory(listing_id, inventory)
        except Exception as e:
            logger.error(f"Error updating inventory for listing {listing_id}: {str(e)}")
            errors.append(f"inventory: {str(e)}")

        if errors:
            return ItemOutcome(change_id=change_id, listing_id=listing_id, error="; ".join(errors))

        logger.info(f"Updated listing {listing_id}")
        return ItemOutcome(change_id=change_id, listing_id=listing_id)
