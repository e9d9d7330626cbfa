"""
Pydantic models for catalog listings.

RemoteListing mirrors the catalog API payload (``includes=Inventory``).
DesiredListing is what the user wants a listing to look like after an
offline CSV edit; ``listing_id == 0`` means "create" and ``to_delete`` is
set when the SKU column holds the delete sentinel.
"""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Price(BaseModel):
    amount: int = 0
    divisor: int = 100
    currency_code: str = ""

    model_config = ConfigDict(extra="ignore")

    @property
    def value(self) -> float:
        if not self.divisor:
            return float(self.amount)
        return self.amount / self.divisor


class Offering(BaseModel):
    offering_id: int = 0
    quantity: int = 0
    is_enabled: bool = True
    is_deleted: bool = False
    price: Price = Field(default_factory=Price)
    readiness_state_id: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class PropertyValue(BaseModel):
    property_id: int
    property_name: str = ""
    scale_id: Optional[int] = None
    value_ids: List[int] = []
    values: List[str] = []

    model_config = ConfigDict(extra="ignore")


class Product(BaseModel):
    product_id: int = 0
    sku: str = ""
    is_deleted: bool = False
    offerings: List[Offering] = []
    property_values: List[PropertyValue] = []

    model_config = ConfigDict(extra="ignore")

    def active_offering(self) -> Optional[Offering]:
        for offering in self.offerings:
            if not offering.is_deleted:
                return offering
        return None


class Inventory(BaseModel):
    products: List[Product] = []
    price_on_property: List[int] = []
    quantity_on_property: List[int] = []
    sku_on_property: List[int] = []

    model_config = ConfigDict(extra="ignore")

    def active_products(self) -> List[Product]:
        return [p for p in self.products if not p.is_deleted]


class RemoteListing(BaseModel):
    """Authoritative listing as returned by the catalog API"""
    listing_id: int
    shop_id: Optional[int] = None
    title: str = ""
    description: str = ""
    state: str = ""
    quantity: int = 0
    tags: List[str] = []
    price: Price = Field(default_factory=Price)
    has_variations: bool = False
    inventory: Inventory = Field(default_factory=Inventory)
    taxonomy_id: Optional[int] = None
    shipping_profile_id: Optional[int] = None
    materials: List[str] = []
    processing_min: Optional[int] = None
    processing_max: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class ListingsPage(BaseModel):
    """Shape of every list endpoint: ``{count, results[]}``"""
    count: int
    results: List[RemoteListing] = []

    model_config = ConfigDict(extra="ignore")


class DesiredVariation(BaseModel):
    product_id: int = 0
    property_name_1: str = ""
    property_option_1: str = ""
    property_name_2: str = ""
    property_option_2: str = ""
    property_id_1: int = 0
    property_option_ids_1: List[int] = []
    property_id_2: int = 0
    property_option_ids_2: List[int] = []
    sku: str = ""
    quantity: Optional[int] = None
    price: Optional[float] = None
    is_enabled: Optional[bool] = None
    to_delete: bool = False


class DesiredListing(BaseModel):
    listing_id: int = 0
    title: str = ""
    description: str = ""
    status: str = ""
    tags: List[str] = []
    sku: str = ""
    quantity: Optional[int] = None
    price: Optional[float] = None
    currency_code: str = ""
    has_variations: bool = False
    variations: List[DesiredVariation] = []
    to_delete: bool = False
    materials: Optional[List[str]] = None
    shipping_profile_id: Optional[int] = None
    processing_min: Optional[int] = None
    processing_max: Optional[int] = None

    @property
    def is_create(self) -> bool:
        return self.listing_id == 0 and not self.to_delete
