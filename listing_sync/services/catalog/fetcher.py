# listing_sync/services/catalog/fetcher.py
"""
Paginated fetch of a shop's full listing set.

Page 0 is fetched alone to learn the server-reported total. The remaining
pages are fetched in parallel batches with a fixed delay between batches to
stay under the API rate limit. A page that keeps failing after its page-level
retries is skipped, so the result can be smaller than the reported total.
"""
import asyncio
import logging
import math
from typing import Callable, Iterable, List, Optional, Set, Tuple

from listing_sync.schemas.listing import RemoteListing
from listing_sync.services.catalog.client import CatalogClient
from listing_sync.services.retry import RetryPolicy, page_policy, retrying

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
PAGE_BATCH_SIZE = 5
BATCH_DELAY_SECONDS = 0.2

ProgressCallback = Callable[[int, int, int], None]


def merge_unique(
    page_items: Iterable[RemoteListing],
    items: List[RemoteListing],
    seen_ids: Set[int],
) -> int:
    """
    Append listings whose ID has not been seen yet; the first-seen copy wins.

    Returns the number of listings appended.
    """
    added = 0
    for listing in page_items:
        if listing.listing_id in seen_ids:
            logger.debug(f"Dropping duplicate listing {listing.listing_id}")
            continue
        seen_ids.add(listing.listing_id)
        items.append(listing)
        added += 1
    return added


async def fetch_all(
    client: CatalogClient,
    shop_id: int,
    state: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
    page_size: int = PAGE_SIZE,
    batch_size: int = PAGE_BATCH_SIZE,
    batch_delay: float = BATCH_DELAY_SECONDS,
    page_retry: Optional[RetryPolicy] = None,
) -> Tuple[int, List[RemoteListing]]:
    """
    Fetch every listing of a shop.

    Args:
        client: Catalog API client
        shop_id: Shop ID
        state: Optional listing state filter
        on_progress: Called as (items_so_far, total_count, failed_pages)
            after the first page and after every batch
        page_size: Listings per page
        batch_size: Pages fetched concurrently per batch
        batch_delay: Seconds to wait between batches
        page_retry: Page-level retry policy (default: 2 retries, 1s apart)

    Returns:
        (total_count, listings): the server's count and the deduplicated
        listings actually retrieved
    """
    first_page = await client.get_listings_page(shop_id, limit=page_size, offset=0, state=state)
    total_count = first_page.count

    seen_ids: Set[int] = set()
    items: List[RemoteListing] = []
    merge_unique(first_page.results, items, seen_ids)
    failed_pages: List[int] = []

    if on_progress:
        on_progress(len(items), total_count, 0)

    if len(items) >= total_count:
        logger.info(f"Fetched {len(items)} of {total_count} listings in a single page")
        return total_count, items

    pages_needed = math.ceil(total_count / page_size)

    @retrying(page_retry or page_policy(), "listings page fetch")
    async def fetch_page(page: int):
        return await client.get_listings_page(
            shop_id, limit=page_size, offset=page * page_size, state=state
        )

    for batch_start in range(1, pages_needed, batch_size):
        pages = list(range(batch_start, min(batch_start + batch_size, pages_needed)))
        logger.debug(f"Fetching pages {pages[0]}-{pages[-1]} of {pages_needed - 1}")

        results = await asyncio.gather(*(fetch_page(page) for page in pages), return_exceptions=True)

        for page, result in zip(pages, results):
            if isinstance(result, Exception):
                logger.error(f"Error fetching page {page} after retries: {result}")
                failed_pages.append(page)
                continue
            if isinstance(result, BaseException):
                raise result
            merge_unique(result.results, items, seen_ids)

        if on_progress:
            on_progress(len(items), total_count, len(failed_pages))

        if len(items) >= total_count:
            break

        if batch_start + batch_size < pages_needed:
            await asyncio.sleep(batch_delay)

    if failed_pages:
        logger.warning(
            f"Failed to fetch {len(failed_pages)} page(s): {', '.join(str(p) for p in failed_pages)}"
        )

    logger.info(f"Fetched {len(items)} of {total_count} listings")
    return total_count, items
