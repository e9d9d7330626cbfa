# listing_sync/schemas/__init__.py
from .listing import (
    Price, Offering, PropertyValue, Product, Inventory, RemoteListing,
    ListingsPage, DesiredVariation, DesiredListing,
)
from .preview import FieldChange, VariationChange, Change, PreviewSummary, PreviewResult
from .checkpoint import Checkpoint, FailedListing
