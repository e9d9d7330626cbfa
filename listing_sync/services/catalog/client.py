import json
import logging
import httpx
from typing import Dict, Optional, Any

from pydantic import ValidationError as PydanticValidationError

from listing_sync.core.exceptions import (
    DataError,
    RetryableServerError,
    TerminalClientError,
    TransientNetworkError,
)
from listing_sync.schemas.listing import ListingsPage, RemoteListing
from listing_sync.services.retry import RetryPolicy, request_policy, with_retry

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (408, 429)


def classify_status(status_code: int, message: str):
    """Map a non-2xx status to the matching catalog error."""
    if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
        return RetryableServerError(message, status_code)
    return TerminalClientError(message, status_code)


def _extract_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "error", "message"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


class CatalogClient:
    """
    Asynchronous client for the remote catalog REST API.

    Every request carries the bearer token and the API key header. Failures
    are classified into the catalog error taxonomy; transient network errors
    and 5xx/429/408 responses are retried with exponential backoff, other
    4xx responses and malformed bodies are raised immediately.
    """

    DEFAULT_BASE_URL = "https://openapi.etsy.com/v3/application"
    PAGE_LIMIT = 100

    def __init__(
        self,
        api_key: str,
        access_token: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the catalog client

        Args:
            api_key: Application key sent as ``x-api-key``
            access_token: OAuth bearer token (obtained externally)
            base_url: API root, defaults to the production endpoint
            timeout: Per-request timeout in seconds
            retry_policy: Request-layer retry policy
            transport: Optional httpx transport (used by tests)
        """
        self.api_key = api_key
        self.access_token = access_token
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or request_policy()
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "CatalogClient":
        return cls(
            api_key=settings.CATALOG_API_KEY,
            access_token=settings.CATALOG_ACCESS_TOKEN,
            base_url=settings.CATALOG_BASE_URL,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            retry_policy=request_policy(
                max_retries=settings.HTTP_MAX_RETRIES,
                base_delay=settings.HTTP_RETRY_BASE_DELAY,
            ),
        )

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for API requests"""
        return {
            "Authorization": f"Bearer {self.access_token}",
            "x-api-key": self.api_key,
            "Accept": "application/json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict:
        """
        Make a request to the catalog API, retrying per the request policy

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            endpoint: API endpoint (without base URL)
            data: JSON payload for POST/PUT requests
            params: Query parameters

        Returns:
            Dict: Response data ({} for empty bodies)

        Raises:
            TransientNetworkError, RetryableServerError: once retries are exhausted
            TerminalClientError: on any other 4xx
            DataError: if the body is not a JSON object
        """
        return await with_retry(
            lambda: self._send(method, endpoint, data=data, params=params),
            self.retry_policy,
            f"{method} {endpoint}",
        )

    async def _send(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = self._get_headers()

        masked_headers = headers.copy()
        masked_headers["Authorization"] = "Bearer [REDACTED]"
        logger.debug(f"Making {method} request to {url}")
        logger.debug(f"Headers: {masked_headers}")
        if params:
            logger.debug(f"Params: {params}")
        if data:
            logger.debug(f"Data: {json.dumps(data)[:500]}...")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    json=data,
                    params=params,
                )
        except httpx.TimeoutException as e:
            logger.error(f"Timeout error: {str(e)}")
            raise TransientNetworkError(f"Request timed out: {str(e)}") from e
        except httpx.RequestError as e:
            logger.error(f"Network error: {str(e)}")
            raise TransientNetworkError(f"Network error: {str(e)}") from e

        if 300 <= response.status_code < 400:
            location = response.headers.get("location", "unknown location")
            logger.error(
                f"Catalog API returned unexpected redirect ({response.status_code}) on {method} {endpoint} to {location}"
            )
            raise TerminalClientError(
                f"HTTP {response.status_code}: unexpected redirect to {location}", response.status_code
            )

        if not 200 <= response.status_code < 300:
            message = _extract_error_message(response)
            logger.error(
                f"Catalog API error ({response.status_code}) on {method} {endpoint}: {message}"
            )
            raise classify_status(response.status_code, f"HTTP {response.status_code}: {message}")

        if response.status_code == 204 or not response.content:
            return {}

        try:
            body = response.json()
        except ValueError as e:
            raise DataError(f"Invalid JSON from {method} {endpoint}: {str(e)}") from e

        if not isinstance(body, dict):
            raise DataError(f"Unexpected response type from {method} {endpoint}: {type(body).__name__}")
        return body

    # Shop operations

    async def get_shop_id(self) -> int:
        """
        Resolve the shop ID of the authenticated user

        Returns:
            int: Shop ID

        Raises:
            DataError: If the user has no shop
        """
        data = await self._make_request("GET", "/users/me")
        shop_id = data.get("shop_id")
        if not shop_id:
            raise DataError("No shop found for the authenticated user")
        return int(shop_id)

    # Listing operations

    async def get_listings_page(
        self,
        shop_id: int,
        limit: int = PAGE_LIMIT,
        offset: int = 0,
        state: Optional[str] = None,
        includes: str = "Inventory",
    ) -> ListingsPage:
        """
        Get one page of the shop's listings

        Args:
            shop_id: Shop ID
            limit: Page size
            offset: Number of listings to skip
            state: Optional listing state filter
            includes: Associations to embed

        Returns:
            ListingsPage: ``count`` (server total) and this page's ``results``
        """
        params: Dict[str, Any] = {"limit": limit, "offset": offset, "includes": includes}
        if state:
            params["state"] = state

        data = await self._make_request("GET", f"/shops/{shop_id}/listings", params=params)
        try:
            return ListingsPage.model_validate(data)
        except PydanticValidationError as e:
            raise DataError(f"Invalid listings page for shop {shop_id}: {str(e)}") from e

    async def get_listing(self, listing_id: int) -> RemoteListing:
        """
        Get a single listing with its inventory

        Args:
            listing_id: Listing ID

        Returns:
            RemoteListing: Current listing state

        Raises:
            DataError: If the response is neither a listing nor a results array
        """
        data = await self._make_request(
            "GET", f"/listings/{listing_id}", params={"includes": "Inventory"}
        )

        payload: Any = None
        if isinstance(data.get("results"), list) and data["results"]:
            payload = data["results"][0]
        elif data.get("listing_id"):
            payload = data

        if payload is None:
            raise DataError(f"Invalid listing response format for {listing_id}")

        try:
            return RemoteListing.model_validate(payload)
        except PydanticValidationError as e:
            raise DataError(f"Invalid listing {listing_id}: {str(e)}") from e

    async def create_listing(self, shop_id: int, listing_data: Dict) -> int:
        """
        Create a new listing

        Args:
            shop_id: Shop ID
            listing_data: Request body

        Returns:
            int: The newly assigned listing ID
        """
        data = await self._make_request("POST", f"/shops/{shop_id}/listings", data=listing_data)

        if isinstance(data.get("results"), list) and data["results"]:
            listing_id = data["results"][0].get("listing_id")
        else:
            listing_id = data.get("listing_id")

        if not listing_id:
            raise DataError("Invalid create listing response format")
        return int(listing_id)

    async def update_listing(self, shop_id: int, listing_id: int, listing_data: Dict) -> Dict:
        """
        Update an existing listing's scalar fields

        Args:
            shop_id: Shop ID
            listing_id: Listing ID
            listing_data: Fields to change

        Returns:
            Dict: Updated listing data
        """
        return await self._make_request(
            "PUT", f"/shops/{shop_id}/listings/{listing_id}", data=listing_data
        )

    async def update_listing_inventory(self, listing_id: int, inventory_data: Dict) -> Dict:
        """
        Replace a listing's inventory (the full products array)

        Args:
            listing_id: Listing ID
            inventory_data: ``products`` plus the ``*_on_property`` lists

        Returns:
            Dict: Updated inventory
        """
        return await self._make_request(
            "PUT", f"/listings/{listing_id}/inventory", data=inventory_data
        )

    async def delete_listing(self, listing_id: int) -> None:
        """
        Delete a listing

        Args:
            listing_id: Listing ID
        """
        await self._make_request("DELETE", f"/listings/{listing_id}")
