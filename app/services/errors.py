"""
Exceptions raised by the Shopify sync services.
Controllers translate these into HTTP responses; services never return error dicts.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for storefront sync failures"""


class ExternalApiError(SyncError):
    """Shopify returned a non-2xx response, or the request never completed (status_code 0)."""

    def __init__(self, status_code: int, body: str = "", path: Optional[str] = None):
        self.status_code = status_code
        self.body = body or ""
        self.path = path
        where = f" {path}" if path else ""
        super().__init__(f"Shopify API error {status_code}{where}: {self.body[:200]}")


class PreconditionError(SyncError):
    """Local state needed for the operation is missing (warehouse, fulfillment location, ...)."""


class OAuthError(SyncError):
    """OAuth install failed at `step`; `code` is the short error code shown to the merchant."""

    def __init__(self, step, code: str, message: Optional[str] = None):
        self.step = step
        self.code = code
        super().__init__(message or code)


class IntegrationSuspended(SyncError):
    """Too many consecutive failures; outward calls are paused until the cooldown passes."""

    def __init__(self, integration_id: str, error_count: int):
        self.integration_id = integration_id
        self.error_count = error_count
        super().__init__(
            f"Integration {integration_id} suspended after {error_count} consecutive errors"
        )
