"""
Shared enums and constants used across the application.
"""

from enum import Enum


class ChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class FieldChangeType(str, Enum):
    MODIFIED = "modified"
    ADDED = "added"
    REMOVED = "removed"


class ListingState(str, Enum):
    """Listing states accepted by the catalog API"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"
    SOLD_OUT = "sold_out"
    EXPIRED = "expired"


# Reserved SKU value that marks a listing (or a variation) for deletion
DELETE_SENTINEL = "DELETE"

# Catalog limits
MAX_TAGS = 13
PRICE_EPSILON = 0.01
