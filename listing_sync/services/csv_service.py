# listing_sync/services/csv_service.py
"""
CSV import/export of listings.

Export writes one row per listing, or one row per variation with the
listing-level fields on the first row only. Import reverses that and
groups variation rows under the listing they follow. A few INFO rows sit
above the header; the parser finds the header by its ``Listing ID`` cell.
"""
import csv
import hashlib
import html
import logging
import re
from io import StringIO
from typing import Dict, List, Optional

from listing_sync.core.enums import DELETE_SENTINEL
from listing_sync.core.exceptions import CSVFormatError
from listing_sync.core.utils import format_price
from listing_sync.schemas.listing import DesiredListing, DesiredVariation, RemoteListing

logger = logging.getLogger(__name__)

# (field key, header label) in column order
CSV_COLUMNS = [
    ("listing_id", "Listing ID"),
    ("title", "Title"),
    ("description", "Description"),
    ("status", "Status"),
    ("tags", "Tags"),
    ("variation", "Variation"),
    ("property_name_1", "Property Name 1"),
    ("property_option_1", "Property Option 1"),
    ("property_name_2", "Property Name 2"),
    ("property_option_2", "Property Option 2"),
    ("price", "Price"),
    ("currency_code", "Currency Code"),
    ("quantity", "Quantity"),
    ("sku", "SKU (DELETE=delete listing)"),
    ("variation_price", "Variation Price"),
    ("variation_quantity", "Variation Quantity"),
    ("variation_sku", "Variation SKU (DELETE=delete variation)"),
    ("materials", "Materials"),
    ("shipping_profile_id", "Shipping Profile ID"),
    ("processing_min", "Processing Min (days)"),
    ("processing_max", "Processing Max (days)"),
    ("product_id", "Product ID (DO NOT EDIT)"),
    ("property_id_1", "Property ID 1 (DO NOT EDIT)"),
    ("property_option_ids_1", "Property Option IDs 1 (DO NOT EDIT)"),
    ("property_id_2", "Property ID 2 (DO NOT EDIT)"),
    ("property_option_ids_2", "Property Option IDs 2 (DO NOT EDIT)"),
]
FIELD_KEYS = [key for key, _ in CSV_COLUMNS]
HEADER_LABELS = [label for _, label in CSV_COLUMNS]

INFO_ROWS = [
    "INFO: This CSV contains your listings. For listings with variations, each variation appears "
    "on a separate row. Listing-level fields are only on the first row.",
    "IMPORTANT: When uploading edits, keep Listing ID, Product ID and Property IDs intact. "
    "They identify which items to update.",
    "DELETE BEHAVIOR: SKU='DELETE' deletes the entire listing. Variation SKU='DELETE' deletes "
    "only that variation.",
    "UPLOAD BEHAVIOR: Rows without a Listing ID create new listings. Rows with a Listing ID update them.",
]

HEADER_SEARCH_ROWS = 10

_CURRENCY_CHARS = re.compile(r"[$€£¥₹,\s]")


def hash_content(content: bytes) -> str:
    """First 16 hex chars of the SHA-256 of the raw file; keys checkpoints"""
    return hashlib.sha256(content).hexdigest()[:16]


def decode_csv(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise CSVFormatError(f"CSV is not valid UTF-8: {str(e)}") from e


# Export

def _row(**values: str) -> List[str]:
    return [values.get(key, "") for key in FIELD_KEYS]


def _listing_rows(listing: RemoteListing) -> List[List[str]]:
    inventory = listing.inventory
    listing_fields = {
        "listing_id": str(listing.listing_id),
        "title": html.unescape(listing.title),
        "description": html.unescape(listing.description),
        "status": listing.state,
        "tags": ",".join(listing.tags),
        "materials": ", ".join(listing.materials),
        "shipping_profile_id": str(listing.shipping_profile_id or ""),
        "processing_min": "" if listing.processing_min is None else str(listing.processing_min),
        "processing_max": "" if listing.processing_max is None else str(listing.processing_max),
    }

    if not (listing.has_variations and inventory.products):
        product = next(iter(inventory.active_products()), None)
        offering = product.active_offering() if product else None
        if offering is not None:
            price, currency, quantity = offering.price.value, offering.price.currency_code, offering.quantity
        else:
            price, currency, quantity = listing.price.value, listing.price.currency_code, listing.quantity
        return [_row(
            variation="N/A",
            price=format_price(price),
            currency_code=currency,
            quantity=str(quantity),
            sku=product.sku if product else "",
            product_id=str(product.product_id) if product else "",
            **listing_fields,
        )]

    rows = []
    first = True
    for product in inventory.active_products():
        offering = product.active_offering()
        if offering is None:
            continue
        props = product.property_values
        prop1 = props[0] if len(props) > 0 else None
        prop2 = props[1] if len(props) > 1 else None

        display = [", ".join(p.values) for p in (prop1, prop2) if p is not None and p.values]
        values: Dict[str, str] = {
            "variation": " / ".join(display) or "N/A",
            "product_id": str(product.product_id),
        }
        if prop1 is not None:
            values.update(
                property_name_1=prop1.property_name,
                property_option_1=", ".join(prop1.values),
                property_id_1=str(prop1.property_id),
                property_option_ids_1=",".join(str(i) for i in prop1.value_ids),
            )
        if prop2 is not None:
            values.update(
                property_name_2=prop2.property_name,
                property_option_2=", ".join(prop2.values),
                property_id_2=str(prop2.property_id),
                property_option_ids_2=",".join(str(i) for i in prop2.value_ids),
            )

        if inventory.price_on_property:
            values["variation_price"] = format_price(offering.price.value)
        if inventory.quantity_on_property:
            values["variation_quantity"] = str(offering.quantity)
        if inventory.sku_on_property:
            values["variation_sku"] = product.sku

        if first:
            values.update(listing_fields)
            if not inventory.price_on_property:
                values["price"] = format_price(listing.price.value)
                values["currency_code"] = listing.price.currency_code
            if not inventory.quantity_on_property:
                values["quantity"] = str(listing.quantity)
            if not inventory.sku_on_property:
                values["sku"] = product.sku
            first = False

        rows.append(_row(**values))
    return rows


def listings_to_csv(listings: List[RemoteListing]) -> str:
    """Render listings in the editable CSV layout (CRLF line endings)"""
    output = StringIO()
    writer = csv.writer(output)

    for info in INFO_ROWS:
        writer.writerow([info] + [""] * (len(CSV_COLUMNS) - 1))
    writer.writerow([""] * len(CSV_COLUMNS))
    writer.writerow(HEADER_LABELS)

    for listing in listings:
        writer.writerows(_listing_rows(listing))

    return output.getvalue()


# Import

def find_header_row(records: List[List[str]]) -> int:
    """Index of the header row, or -1 when none of the first rows has one"""
    for index, record in enumerate(records[:HEADER_SEARCH_ROWS]):
        if not record:
            continue
        first = record[0].strip().strip('"').lower()
        if first == "listing id" or first.startswith("listing id "):
            return index
    return -1


def _column_map(header: List[str]) -> Dict[str, int]:
    """Map field keys to column positions; -1 marks a column the file lacks"""
    by_label = {label.lower(): key for key, label in CSV_COLUMNS}
    columns: Dict[str, int] = {}
    for position, label in enumerate(header):
        key = by_label.get(label.strip().lower())
        if key is not None:
            columns[key] = position
    full_width = len(header) >= len(FIELD_KEYS)
    for position, key in enumerate(FIELD_KEYS):
        columns.setdefault(key, position if full_width else -1)
    return columns


def parse_price(value: str) -> Optional[float]:
    """Parse ``$10.99``, ``€1,200`` and the like; None when empty or invalid"""
    cleaned = _CURRENCY_CHARS.sub("", value or "")
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        logger.warning(f"Ignoring unparseable price '{value}'")
        return None


def parse_int(value: str) -> Optional[int]:
    value = (value or "").strip()
    if not value:
        return None
    try:
        return int(float(value))
    except ValueError:
        logger.warning(f"Ignoring unparseable number '{value}'")
        return None


def parse_list(value: str) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def parse_ids(value: str) -> List[int]:
    ids = []
    for part in parse_list(value):
        parsed = parse_int(part)
        if parsed:
            ids.append(parsed)
    return ids


def _is_delete(sku: str) -> bool:
    return sku.strip().upper() == DELETE_SENTINEL


def _listing_from_row(row: Dict[str, str]) -> DesiredListing:
    materials = parse_list(row["materials"])
    return DesiredListing(
        listing_id=parse_int(row["listing_id"]) or 0,
        title=row["title"],
        description=row["description"],
        status=row["status"],
        tags=parse_list(row["tags"]),
        sku=row["sku"],
        quantity=parse_int(row["quantity"]),
        price=parse_price(row["price"]),
        currency_code=row["currency_code"],
        to_delete=_is_delete(row["sku"]),
        materials=materials or None,
        shipping_profile_id=parse_int(row["shipping_profile_id"]) or None,
        processing_min=parse_int(row["processing_min"]),
        processing_max=parse_int(row["processing_max"]),
    )


def _variation_from_row(row: Dict[str, str]) -> DesiredVariation:
    return DesiredVariation(
        product_id=parse_int(row["product_id"]) or 0,
        property_name_1=row["property_name_1"],
        property_option_1=row["property_option_1"],
        property_name_2=row["property_name_2"],
        property_option_2=row["property_option_2"],
        property_id_1=parse_int(row["property_id_1"]) or 0,
        property_option_ids_1=parse_ids(row["property_option_ids_1"]),
        property_id_2=parse_int(row["property_id_2"]) or 0,
        property_option_ids_2=parse_ids(row["property_option_ids_2"]),
        sku=row["variation_sku"],
        quantity=parse_int(row["variation_quantity"]),
        price=parse_price(row["variation_price"]),
        to_delete=_is_delete(row["variation_sku"]),
    )


def parse_listings_csv(text: str) -> List[DesiredListing]:
    """
    Parse an edited listings CSV into desired listings, in file order.

    A row starts a new listing when it carries listing-level fields (title,
    description or status) or a listing ID different from the current one.
    Rows with property options become variations of the listing they belong
    to.

    Raises:
        CSVFormatError: if the text is not CSV or has no header row
    """
    try:
        records = [record for record in csv.reader(StringIO(text)) if any(cell.strip() for cell in record)]
    except csv.Error as e:
        raise CSVFormatError(f"Failed to parse CSV: {str(e)}") from e

    header_index = find_header_row(records)
    if header_index == -1:
        raise CSVFormatError("Could not find header row in CSV")

    columns = _column_map(records[header_index])
    listings: List[DesiredListing] = []
    by_id: Dict[int, DesiredListing] = {}
    current: Optional[DesiredListing] = None

    for line, record in enumerate(records[header_index + 1:], start=header_index + 2):
        row = {
            key: (record[position].strip() if 0 <= position < len(record) else "")
            for key, position in columns.items()
        }
        listing_id = parse_int(row["listing_id"]) or 0
        has_listing_info = bool(row["title"] or row["description"] or row["status"])
        has_variation = bool(row["property_option_1"] or row["property_option_2"])
        starts_listing = has_listing_info or (
            listing_id and (current is None or listing_id != current.listing_id) and listing_id not in by_id
        )

        if starts_listing:
            current = _listing_from_row(row)
            listings.append(current)
            if current.listing_id:
                by_id.setdefault(current.listing_id, current)
            target = current
        elif has_variation:
            target = by_id.get(listing_id) if listing_id else current
            if target is None:
                logger.warning(f"Row {line}: variation row without a listing, skipping")
                continue
        else:
            logger.debug(f"Row {line}: no listing or variation data, skipping")
            continue

        if has_variation:
            target.variations.append(_variation_from_row(row))
            target.has_variations = True

    logger.info(f"Parsed {len(listings)} listings from CSV")
    return listings
