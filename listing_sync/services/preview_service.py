# listing_sync/services/preview_service.py
"""
Diff engine: compares the listings a user wants (parsed from an edited CSV)
with the listings the catalog currently holds and describes every
difference as a Change the user can approve.

Change IDs are positional (``change_<n>``, n = 1-based row position of the
listing in the parsed CSV), so the apply step can rebuild them from the same
file without storing the preview.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from listing_sync.core.enums import ChangeType, FieldChangeType
from listing_sync.core.utils import format_price, normalize_text, prices_equal, tags_equal
from listing_sync.schemas.listing import DesiredListing, DesiredVariation, Inventory, Product, RemoteListing
from listing_sync.schemas.preview import Change, FieldChange, PreviewResult, PreviewSummary, VariationChange

logger = logging.getLogger(__name__)

PREFETCH_BATCH_SIZE = 10

FetchCurrent = Callable[[int], Awaitable[RemoteListing]]


def change_id_for(position: int) -> str:
    """Change ID of the listing at 1-based ``position`` in the parsed CSV"""
    return f"change_{position}"


def _modified(field: str, before, after) -> FieldChange:
    return FieldChange(field=field, before=before, after=after, change_type=FieldChangeType.MODIFIED)


def _added(field: str, after) -> FieldChange:
    return FieldChange(field=field, before=None, after=after, change_type=FieldChangeType.ADDED)


async def prefetch_listings(
    listing_ids: Iterable[int],
    fetch_current: FetchCurrent,
    batch_size: int = PREFETCH_BATCH_SIZE,
) -> Dict[int, RemoteListing]:
    """
    Fetch current listings in concurrent sub-batches.

    A failed lookup is logged and the ID is left out of the result.
    """
    unique_ids: List[int] = []
    for listing_id in listing_ids:
        if listing_id and listing_id not in unique_ids:
            unique_ids.append(listing_id)

    found: Dict[int, RemoteListing] = {}
    for start in range(0, len(unique_ids), batch_size):
        batch = unique_ids[start:start + batch_size]
        results = await asyncio.gather(*(fetch_current(i) for i in batch), return_exceptions=True)
        for listing_id, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.error(f"Error fetching listing {listing_id}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            found[listing_id] = result
    return found


def _variation_added_fields(variation: DesiredVariation) -> List[FieldChange]:
    fields = []
    if variation.property_option_1:
        fields.append(_added("property_option_1", normalize_text(variation.property_option_1)))
    if variation.property_option_2:
        fields.append(_added("property_option_2", normalize_text(variation.property_option_2)))
    if variation.price is not None:
        fields.append(_added("price", format_price(variation.price)))
    if variation.quantity is not None:
        fields.append(_added("quantity", variation.quantity))
    if variation.sku:
        fields.append(_added("sku", variation.sku))
    return fields


def build_create_change(desired: DesiredListing, change_id: str) -> Change:
    field_changes = [
        _added("title", normalize_text(desired.title)),
        _added("description", normalize_text(desired.description)),
    ]
    if desired.price is not None:
        field_changes.append(_added("price", format_price(desired.price)))
    if desired.quantity is not None:
        field_changes.append(_added("quantity", desired.quantity))
    if desired.sku:
        field_changes.append(_added("sku", desired.sku))
    if desired.tags:
        field_changes.append(_added("tags", ", ".join(normalize_text(t) for t in desired.tags)))
    if desired.status:
        field_changes.append(_added("status", desired.status))

    variation_changes = [
        VariationChange(
            change_id=f"{change_id}_var_{i}",
            variation_id=f"new_{i}",
            change_type=ChangeType.CREATE,
            field_changes=_variation_added_fields(variation),
        )
        for i, variation in enumerate(desired.variations)
        if not variation.to_delete
    ]

    return Change(
        change_id=change_id,
        change_type=ChangeType.CREATE,
        listing_id=0,
        title=desired.title,
        field_changes=field_changes,
        variation_changes=variation_changes,
    )


def _first_active_sku(inventory: Inventory) -> str:
    if inventory.products and not inventory.products[0].is_deleted:
        return inventory.products[0].sku
    return ""


def diff_listing(desired: DesiredListing, existing: RemoteListing) -> List[FieldChange]:
    """Listing-level field differences"""
    changes: List[FieldChange] = []
    inventory = existing.inventory

    before, after = normalize_text(existing.title), normalize_text(desired.title)
    if before != after:
        changes.append(_modified("title", before, after))

    before, after = normalize_text(existing.description), normalize_text(desired.description)
    if before != after:
        changes.append(_modified("description", before, after))

    if desired.status and desired.status != existing.state:
        changes.append(_modified("status", existing.state, desired.status))

    if not tags_equal(desired.tags, existing.tags):
        changes.append(_modified(
            "tags",
            ", ".join(normalize_text(t) for t in existing.tags),
            ", ".join(normalize_text(t) for t in desired.tags),
        ))

    if desired.price is not None and not inventory.price_on_property:
        if not prices_equal(existing.price.value, desired.price):
            changes.append(_modified("price", format_price(existing.price.value), format_price(desired.price)))

    if desired.quantity is not None and not inventory.quantity_on_property:
        if existing.quantity != desired.quantity:
            changes.append(_modified("quantity", existing.quantity, desired.quantity))

    if desired.sku and not inventory.sku_on_property:
        existing_sku = _first_active_sku(inventory)
        if desired.sku != existing_sku:
            changes.append(_modified("sku", existing_sku, desired.sku))

    return changes


def compare_variation(existing: Product, variation: DesiredVariation, inventory: Inventory) -> List[FieldChange]:
    """Differences between one existing product and its CSV variation row"""
    changes: List[FieldChange] = []
    offering = existing.offerings[0] if existing.offerings else None

    options = (variation.property_option_1, variation.property_option_2)
    for index, prop in enumerate(existing.property_values[:2]):
        before = normalize_text(", ".join(prop.values))
        after = normalize_text(options[index])
        if after and before != after:
            changes.append(_modified(f"property_option_{index + 1}", before, after))

    if offering is not None:
        if inventory.price_on_property and variation.price is not None:
            if not prices_equal(offering.price.value, variation.price):
                changes.append(_modified("price", format_price(offering.price.value), format_price(variation.price)))
        if inventory.quantity_on_property and variation.quantity is not None:
            if offering.quantity != variation.quantity:
                changes.append(_modified("quantity", offering.quantity, variation.quantity))

    if inventory.sku_on_property and variation.sku and existing.sku != variation.sku:
        changes.append(_modified("sku", existing.sku, variation.sku))

    if offering is not None and variation.is_enabled is not None and offering.is_enabled != variation.is_enabled:
        changes.append(_modified(
            "is_enabled",
            "true" if offering.is_enabled else "false",
            "true" if variation.is_enabled else "false",
        ))

    return changes


def compare_single_product(existing: Product, desired: DesiredListing, inventory: Inventory) -> List[FieldChange]:
    """Offering-level differences of a listing without variations"""
    changes: List[FieldChange] = []
    offering = existing.offerings[0] if existing.offerings else None

    if not inventory.sku_on_property and desired.sku and existing.sku != desired.sku:
        changes.append(_modified("sku", existing.sku, desired.sku))

    if offering is not None:
        if not inventory.price_on_property and desired.price is not None:
            if not prices_equal(offering.price.value, desired.price):
                changes.append(_modified("price", format_price(offering.price.value), format_price(desired.price)))
        if not inventory.quantity_on_property and desired.quantity is not None:
            if offering.quantity != desired.quantity:
                changes.append(_modified("quantity", offering.quantity, desired.quantity))

    return changes


def diff_variations(desired: DesiredListing, existing: RemoteListing, change_id: str) -> List[VariationChange]:
    inventory = existing.inventory
    changes: List[VariationChange] = []

    if not desired.has_variations:
        if inventory.products and not inventory.products[0].is_deleted:
            product = inventory.products[0]
            fields = compare_single_product(product, desired, inventory)
            if fields:
                changes.append(VariationChange(
                    change_id=f"{change_id}_product",
                    variation_id=str(product.product_id),
                    change_type=ChangeType.UPDATE,
                    field_changes=fields,
                ))
        return changes

    existing_products = {p.product_id: p for p in inventory.active_products()}

    for i, variation in enumerate(desired.variations):
        var_change_id = f"{change_id}_var_{i}"

        if variation.to_delete:
            if variation.product_id in existing_products:
                changes.append(VariationChange(
                    change_id=var_change_id,
                    variation_id=str(variation.product_id),
                    change_type=ChangeType.DELETE,
                ))
            continue

        product = existing_products.get(variation.product_id) if variation.product_id else None
        if product is None:
            changes.append(VariationChange(
                change_id=var_change_id,
                variation_id=f"new_{i}",
                change_type=ChangeType.CREATE,
                field_changes=_variation_added_fields(variation),
            ))
            continue

        fields = compare_variation(product, variation, inventory)
        if fields:
            changes.append(VariationChange(
                change_id=var_change_id,
                variation_id=str(product.product_id),
                change_type=ChangeType.UPDATE,
                field_changes=fields,
            ))

    listed_ids = {v.product_id for v in desired.variations}
    for product_id in existing_products:
        if product_id not in listed_ids:
            changes.append(VariationChange(
                change_id=f"{change_id}_var_del_{product_id}",
                variation_id=str(product_id),
                change_type=ChangeType.DELETE,
            ))

    return changes


def diff_update(desired: DesiredListing, existing: RemoteListing, change_id: str) -> Optional[Change]:
    """Update change for one listing, or None when nothing differs"""
    field_changes = diff_listing(desired, existing)
    variation_changes = diff_variations(desired, existing, change_id)
    if not field_changes and not variation_changes:
        return None
    return Change(
        change_id=change_id,
        change_type=ChangeType.UPDATE,
        listing_id=desired.listing_id,
        title=desired.title,
        field_changes=field_changes,
        variation_changes=variation_changes,
    )


async def compute_preview(desired: List[DesiredListing], fetch_current: FetchCurrent) -> PreviewResult:
    """
    Compute the reviewable change set for a parsed CSV.

    Args:
        desired: Listings in CSV order
        fetch_current: Async lookup of the current listing by ID

    Returns:
        PreviewResult: changes in CSV order and their summary
    """
    update_ids = [d.listing_id for d in desired if d.listing_id and not d.to_delete]
    current = await prefetch_listings(update_ids, fetch_current)

    changes: List[Change] = []
    for position, listing in enumerate(desired, start=1):
        change_id = change_id_for(position)

        if listing.to_delete:
            if not listing.listing_id:
                logger.debug(f"{change_id}: delete without a listing ID ignored")
                continue
            changes.append(Change(
                change_id=change_id,
                change_type=ChangeType.DELETE,
                listing_id=listing.listing_id,
                title=listing.title,
            ))
            continue

        if listing.is_create:
            changes.append(build_create_change(listing, change_id))
            continue

        existing = current.get(listing.listing_id)
        if existing is None:
            logger.warning(f"{change_id}: listing {listing.listing_id} could not be fetched, skipping")
            continue

        change = diff_update(listing, existing, change_id)
        if change is not None:
            changes.append(change)

    summary = PreviewSummary.from_changes(changes)
    logger.info(
        f"Preview: {summary.total_changes} changes "
        f"({summary.creates} creates, {summary.updates} updates, {summary.deletes} deletes)"
    )
    return PreviewResult(changes=changes, summary=summary)
