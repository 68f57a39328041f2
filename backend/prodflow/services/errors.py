from __future__ import annotations

from typing import Any, Optional


class SyncConfigurationError(Exception):
    """Tenant cannot be synced as configured (no markup, no credentials)."""

    def __init__(self, tenant_id: str, reason: str):
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"tenant {tenant_id}: {reason}")


class TokenRefreshError(Exception):
    """The stored refresh token could not be exchanged for a new access token.

    Fatal for the tenant's run; the orchestrator records it and moves on to
    the next tenant.
    """

    def __init__(self, tenant_id: str, message: str, *, error_code: str = "refresh_failed",
                 status_code: Optional[int] = None):
        self.tenant_id = tenant_id
        self.error_code = error_code
        self.status_code = status_code
        super().__init__(message)


class MeliApiError(Exception):
    """Non-retryable failure from a MercadoLibre read endpoint."""

    def __init__(self, status_code: int, body: Any = None, message: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"MercadoLibre API error {status_code}")


class VariationResolutionError(Exception):
    """An item has variations but none carries the listing's SKU."""

    def __init__(self, meli_id: str, sku: str, variation_count: int):
        self.meli_id = meli_id
        self.sku = sku
        self.variation_count = variation_count
        super().__init__(
            f"no variation of {meli_id} matches SKU {sku!r} ({variation_count} live variations)"
        )
