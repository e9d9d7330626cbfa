from typing import List

from pydantic import BaseModel


class FailedListing(BaseModel):
    listing_id: int
    error: str = ""


class Checkpoint(BaseModel):
    """Resume state for one apply run, keyed by the source file's content hash"""
    file_hash: str
    file_name: str = ""
    total_listings: int = 0
    processed_listing_ids: List[int] = []
    # Records without a listing ID (creates, ID-less deletes) are tracked by change ID
    processed_change_ids: List[str] = []
    failed_listing_ids: List[FailedListing] = []
    accepted_change_ids: List[str] = []
    timestamp: float = 0.0

    def failed_ids(self) -> set:
        return {f.listing_id for f in self.failed_listing_ids}
