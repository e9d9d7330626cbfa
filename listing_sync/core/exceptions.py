from typing import Optional


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass

class PlatformServiceError(BaseServiceError):
    """Base exception for platform service errors."""
    pass

class CatalogServiceError(PlatformServiceError):
    """Base exception for catalog-specific errors."""
    pass

class CatalogAPIError(CatalogServiceError):
    """Raised when catalog API calls fail."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

class TransientNetworkError(CatalogAPIError):
    """Connection failure or timeout; no HTTP status was received."""

    def __init__(self, message: str):
        super().__init__(message, status_code=None, retryable=True)

class RetryableServerError(CatalogAPIError):
    """HTTP 5xx, 429 or 408."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message, status_code=status_code, retryable=True)

class TerminalClientError(CatalogAPIError):
    """Any other HTTP 4xx. Never retried."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message, status_code=status_code, retryable=False)

class DataError(CatalogServiceError):
    """Raised when a response body is malformed or has an unexpected shape."""
    pass

class ValidationError(BaseServiceError):
    """Raised when data validation fails."""
    pass

class CSVFormatError(BaseServiceError):
    """Raised when an uploaded CSV cannot be parsed."""
    pass

class CheckpointError(BaseServiceError):
    """Raised when checkpoint storage fails."""
    pass
