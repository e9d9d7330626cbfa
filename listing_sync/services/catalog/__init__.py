# listing_sync/services/catalog/__init__.py
from .client import CatalogClient
from .fetcher import fetch_all
