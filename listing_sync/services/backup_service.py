# listing_sync/services/backup_service.py

import logging
from datetime import date
from pathlib import Path
from typing import Iterable, List, Optional, Union

from listing_sync.core.enums import ChangeType
from listing_sync.schemas.listing import RemoteListing
from listing_sync.schemas.preview import PreviewResult
from listing_sync.services.csv_service import listings_to_csv

logger = logging.getLogger(__name__)

BACKUP_FILENAME_TEMPLATE = "listing-backup-before-changes-{date}.csv"


class BackupService:
    """
    Snapshots the listings an approved change set is about to modify.

    Only approved updates and deletes of existing listings are backed up;
    creates have nothing to snapshot. Listings are fetched fresh, one at a
    time, and a listing that cannot be fetched is left out of the backup.
    """

    def __init__(self, client):
        self.client = client

    @staticmethod
    def affected_listing_ids(preview: PreviewResult, approvals: Iterable[str]) -> List[int]:
        approved = set(approvals)
        listing_ids: List[int] = []
        for change in preview.changes:
            if change.change_id not in approved:
                continue
            if change.change_type not in (ChangeType.UPDATE, ChangeType.DELETE):
                continue
            if change.listing_id > 0 and change.listing_id not in listing_ids:
                listing_ids.append(change.listing_id)
        return listing_ids

    async def fetch_listings(self, listing_ids: List[int]) -> List[RemoteListing]:
        listings = []
        for listing_id in listing_ids:
            try:
                listings.append(await self.client.get_listing(listing_id))
            except Exception as e:
                logger.error(f"Error fetching listing {listing_id} for backup: {str(e)}")
        return listings

    async def snapshot(self, preview: PreviewResult, approvals: Iterable[str]) -> Optional[str]:
        """
        Build the backup CSV text.

        Returns:
            Optional[str]: CSV content, or None when there is nothing to back up
        """
        listing_ids = self.affected_listing_ids(preview, approvals)
        if not listing_ids:
            logger.info("No existing listings to back up (only creates or no approved changes)")
            return None

        listings = await self.fetch_listings(listing_ids)
        if not listings:
            logger.warning("No listings could be fetched for backup")
            return None

        logger.info(f"Backing up {len(listings)} of {len(listing_ids)} listings")
        return listings_to_csv(listings)

    async def create_backup(
        self,
        preview: PreviewResult,
        approvals: Iterable[str],
        output_dir: Union[str, Path],
    ) -> Optional[Path]:
        """
        Write the backup CSV to ``output_dir``.

        Returns:
            Optional[Path]: path of the written file, None if nothing was written
        """
        content = await self.snapshot(preview, approvals)
        if content is None:
            return None

        directory = Path(output_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / BACKUP_FILENAME_TEMPLATE.format(date=date.today().isoformat())
        path.write_text(content, encoding="utf-8", newline="")

        logger.info(f"Backup created: {path}")
        return path
