# listing_sync/services/listing_operations.py
"""
Request bodies for the listing write endpoints.

The catalog API splits a listing across two resources: the listing itself
(title, description, state, tags, listing-level price/quantity) and its
inventory (the full products array with offerings and property values).
Builders here turn a DesiredListing, optionally compared against the
current RemoteListing, into those bodies. They do no I/O except
``resolve_create_defaults``.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from listing_sync.core.enums import DELETE_SENTINEL, MAX_TAGS, ListingState
from listing_sync.core.exceptions import ValidationError
from listing_sync.core.utils import normalize_text, prices_equal, tags_equal
from listing_sync.schemas.listing import (
    DesiredListing,
    DesiredVariation,
    Product,
    RemoteListing,
)

logger = logging.getLogger(__name__)

MIN_PRICE = 0.20

# Custom variation property IDs used when a property name cannot be resolved
CUSTOM_PROPERTY_IDS = (513, 514)

WHO_MADE = "i_did"
WHEN_MADE = "2020_2024"


@dataclass(frozen=True)
class CreateDefaults:
    """Fields the API requires on create that a CSV row does not carry"""
    taxonomy_id: Optional[int] = None
    shipping_profile_id: Optional[int] = None
    readiness_state_id: Optional[int] = None


async def resolve_create_defaults(client, shop_id: int) -> CreateDefaults:
    """
    Borrow taxonomy, shipping profile and readiness state from the shop's
    first listing.

    Returns:
        CreateDefaults: any field the first listing lacks stays None
    """
    logger.info("Fetching taxonomy_id, shipping_profile_id and readiness_state_id from an existing listing")
    page = await client.get_listings_page(shop_id, limit=1, offset=0, includes="Inventory,Shipping")
    if not page.results:
        logger.warning(f"Shop {shop_id} has no listings to borrow create defaults from")
        return CreateDefaults()

    first = page.results[0]
    return CreateDefaults(
        taxonomy_id=first.taxonomy_id,
        shipping_profile_id=first.shipping_profile_id,
        readiness_state_id=existing_readiness_state_id(first),
    )


def validate_tags(tags: List[str]) -> None:
    if len(tags) > MAX_TAGS:
        raise ValidationError(f"Listings may have at most {MAX_TAGS} tags, got {len(tags)}")


def valid_price(new_price: Optional[float], existing_price: Optional[float]) -> float:
    """
    Pick a price the API will accept: the new price if it meets the minimum,
    else the existing price if that does, else the minimum.
    """
    if new_price is not None and new_price >= MIN_PRICE:
        return new_price
    if new_price is not None:
        logger.warning(f"Price {new_price} is below the minimum of {MIN_PRICE:.2f}; using existing price or minimum")
    if existing_price is not None and existing_price >= MIN_PRICE:
        return existing_price
    return MIN_PRICE


def existing_offering_price(listing: Optional[RemoteListing]) -> Optional[float]:
    if listing is None:
        return None
    for product in listing.inventory.active_products():
        offering = product.active_offering()
        if offering is not None:
            return offering.price.value
    return None


def existing_readiness_state_id(listing: Optional[RemoteListing]) -> Optional[int]:
    if listing is None:
        return None
    for product in listing.inventory.active_products():
        offering = product.active_offering()
        if offering is not None and offering.readiness_state_id:
            return offering.readiness_state_id
    return None


def build_create_body(desired: DesiredListing, defaults: CreateDefaults) -> Dict[str, Any]:
    """
    Build the POST body for a new listing.

    Quantity and price get placeholder values when the CSV leaves them
    empty; the inventory update that follows a create sets the real ones.

    Raises:
        ValidationError: missing title/description, a required default the
            shop could not supply, or too many tags
    """
    if not desired.title.strip():
        raise ValidationError("title is required")
    if not desired.description.strip():
        raise ValidationError("description is required")
    if not defaults.taxonomy_id:
        raise ValidationError(
            "taxonomy_id is required to create a listing; the shop needs at least one existing listing"
        )
    shipping_profile_id = desired.shipping_profile_id or defaults.shipping_profile_id
    if not shipping_profile_id:
        raise ValidationError("shipping_profile_id is required for physical listings")
    if not defaults.readiness_state_id:
        raise ValidationError("readiness_state_id is required for physical listings")
    validate_tags(desired.tags)

    body: Dict[str, Any] = {
        "quantity": desired.quantity if desired.quantity is not None else 1,
        "title": desired.title,
        "description": desired.description,
        "price": desired.price if desired.price is not None else 1,
        "who_made": WHO_MADE,
        "when_made": WHEN_MADE,
        "state": desired.status or ListingState.DRAFT.value,
        "taxonomy_id": defaults.taxonomy_id,
        "shipping_profile_id": shipping_profile_id,
        "readiness_state_id": defaults.readiness_state_id,
    }

    if desired.tags:
        body["tags"] = desired.tags
    if desired.has_variations:
        body["has_variations"] = True
    if desired.currency_code:
        body["currency_code"] = desired.currency_code
    if desired.materials:
        body["materials"] = desired.materials
    if desired.processing_min is not None:
        body["processing_min"] = desired.processing_min
    if desired.processing_max is not None:
        body["processing_max"] = desired.processing_max

    return body


def _materials_equal(left: List[str], right: List[str]) -> bool:
    return [m.lower() for m in left] == [m.lower() for m in right]


def build_update_body(desired: DesiredListing, existing: RemoteListing) -> Dict[str, Any]:
    """
    Build the PUT body holding only the listing fields that differ.

    Price, quantity and currency are listing-level only while the existing
    inventory does not vary them by property.

    Returns:
        Dict: empty when nothing at listing level changed
    """
    body: Dict[str, Any] = {}
    inventory = existing.inventory

    if normalize_text(desired.title) != normalize_text(existing.title):
        body["title"] = desired.title
    if normalize_text(desired.description) != normalize_text(existing.description):
        body["description"] = desired.description
    if desired.status and desired.status != existing.state:
        body["state"] = desired.status
    if not tags_equal(desired.tags, existing.tags):
        validate_tags(desired.tags)
        body["tags"] = desired.tags

    if desired.quantity is not None and not inventory.quantity_on_property:
        if desired.quantity != existing.quantity:
            body["quantity"] = desired.quantity

    if desired.price is not None and not inventory.price_on_property:
        if not prices_equal(existing.price.value, desired.price):
            body["price"] = desired.price

    if desired.currency_code and not inventory.price_on_property:
        if desired.currency_code != existing.price.currency_code:
            body["currency_code"] = desired.currency_code

    if desired.has_variations != existing.has_variations:
        body["has_variations"] = desired.has_variations

    if desired.materials is not None and not _materials_equal(desired.materials, existing.materials):
        body["materials"] = desired.materials
    if desired.shipping_profile_id is not None and desired.shipping_profile_id != existing.shipping_profile_id:
        body["shipping_profile_id"] = desired.shipping_profile_id
    if desired.processing_min is not None and desired.processing_min != existing.processing_min:
        body["processing_min"] = desired.processing_min
    if desired.processing_max is not None and desired.processing_max != existing.processing_max:
        body["processing_max"] = desired.processing_max

    return body


def _resolve_property(
    name: str,
    option: str,
    property_id: int,
    option_ids: List[int],
    existing: Optional[RemoteListing],
    fallback_id: int,
) -> Tuple[int, List[int]]:
    """
    Work out (property_id, value_ids) for one variation property.

    Explicit IDs from the CSV win. Otherwise the property is looked up by
    name among the existing products, taking value IDs from a product that
    already carries the same option. Unknown names use a custom property ID.
    """
    if property_id > 0:
        return property_id, list(option_ids)

    wanted_name = normalize_text(name).lower()
    wanted_option = normalize_text(option).lower()
    resolved_id = 0
    if existing is not None:
        for product in existing.inventory.active_products():
            for prop in product.property_values:
                if normalize_text(prop.property_name).lower() != wanted_name:
                    continue
                resolved_id = prop.property_id
                if [normalize_text(v).lower() for v in prop.values] == [wanted_option]:
                    return prop.property_id, list(prop.value_ids)

    if resolved_id:
        return resolved_id, []
    logger.debug(f"Property '{name}' not found on listing, using custom property {fallback_id}")
    return fallback_id, []


def _property_values(variation: DesiredVariation, existing: Optional[RemoteListing]) -> List[Dict[str, Any]]:
    values = []
    pairs = (
        (variation.property_name_1, variation.property_option_1,
         variation.property_id_1, variation.property_option_ids_1, CUSTOM_PROPERTY_IDS[0]),
        (variation.property_name_2, variation.property_option_2,
         variation.property_id_2, variation.property_option_ids_2, CUSTOM_PROPERTY_IDS[1]),
    )
    for name, option, property_id, option_ids, fallback_id in pairs:
        if not name or not option:
            continue
        resolved_id, value_ids = _resolve_property(name, option, property_id, option_ids, existing, fallback_id)
        values.append({
            "property_id": resolved_id,
            "property_name": name,
            "value_ids": value_ids,
            "values": [option],
        })
    return values


def _find_product(existing: Optional[RemoteListing], product_id: int) -> Optional[Product]:
    if existing is None or not product_id:
        return None
    for product in existing.inventory.active_products():
        if product.product_id == product_id:
            return product
    return None


def _usable_sku(sku: str) -> str:
    return "" if sku.strip().upper() == DELETE_SENTINEL else sku


def build_inventory_body(
    desired: DesiredListing,
    existing: Optional[RemoteListing],
    default_readiness_state_id: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Build the full inventory PUT body for a listing.

    The products array replaces the remote one, so products left out of it
    (deleted variations, products missing from the CSV) are removed.

    Args:
        desired: Target listing state
        existing: Current listing, or None for a listing that was just created
        default_readiness_state_id: Used when no existing offering supplies one

    Returns:
        Dict: ``products`` plus ``price_on_property``, ``quantity_on_property``
        and ``sku_on_property``
    """
    fallback_readiness = existing_readiness_state_id(existing) or default_readiness_state_id

    if not desired.has_variations or not desired.variations:
        return _single_product_body(desired, existing, fallback_readiness)

    listing_price = desired.price if desired.price is not None else existing_offering_price(existing)
    products: List[Dict[str, Any]] = []
    price_props: set = set()
    quantity_props: set = set()
    sku_props: set = set()

    for variation in desired.variations:
        if variation.to_delete:
            continue

        property_values = _property_values(variation, existing)
        match = _find_product(existing, variation.product_id)
        match_offering = match.active_offering() if match else None

        existing_price = match_offering.price.value if match_offering else listing_price
        offering: Dict[str, Any] = {
            "price": valid_price(variation.price, existing_price),
            "quantity": variation.quantity if variation.quantity is not None
            else (match_offering.quantity if match_offering else 0),
            "is_enabled": variation.is_enabled if variation.is_enabled is not None
            else (match_offering.is_enabled if match_offering else True),
        }
        readiness = (match_offering.readiness_state_id if match_offering else None) or fallback_readiness
        if readiness:
            offering["readiness_state_id"] = readiness
        else:
            logger.warning(f"No readiness_state_id available for a variation of listing {desired.listing_id}")

        sku = _usable_sku(variation.sku)
        property_ids = [pv["property_id"] for pv in property_values]
        if variation.price is not None:
            price_props.update(property_ids)
        if variation.quantity is not None:
            quantity_props.update(property_ids)
        if sku:
            sku_props.update(property_ids)

        products.append({
            "sku": sku,
            "property_values": property_values,
            "offerings": [offering],
        })

    _ensure_positive_quantity(products)

    inventory = existing.inventory if existing is not None else None
    return {
        "products": products,
        "price_on_property": sorted(price_props.union(inventory.price_on_property if inventory else [])),
        "quantity_on_property": sorted(quantity_props.union(inventory.quantity_on_property if inventory else [])),
        "sku_on_property": sorted(sku_props.union(inventory.sku_on_property if inventory else [])),
    }


def _single_product_body(
    desired: DesiredListing,
    existing: Optional[RemoteListing],
    readiness_state_id: Optional[int],
) -> Dict[str, Any]:
    quantity = desired.quantity
    if quantity is None and existing is not None:
        quantity = existing.quantity
    if quantity is None:
        quantity = 1

    product = next(iter(existing.inventory.active_products()), None) if existing is not None else None
    current = product.active_offering() if product else None
    offering: Dict[str, Any] = {
        "price": valid_price(desired.price, existing_offering_price(existing)),
        "quantity": quantity,
        "is_enabled": current.is_enabled if current else True,
    }
    if readiness_state_id:
        offering["readiness_state_id"] = readiness_state_id

    return {
        "products": [{
            "sku": _usable_sku(desired.sku),
            "property_values": [],
            "offerings": [offering],
        }],
        "price_on_property": [],
        "quantity_on_property": [],
        "sku_on_property": [],
    }


def _ensure_positive_quantity(products: List[Dict[str, Any]]) -> None:
    """The API rejects an inventory where every offering has quantity 0"""
    for product in products:
        for offering in product["offerings"]:
            if offering["quantity"] > 0:
                return
    if products:
        products[0]["offerings"][0]["quantity"] = 1
        logger.info("Set quantity to 1 on the first offering; at least one offering must be in stock")
