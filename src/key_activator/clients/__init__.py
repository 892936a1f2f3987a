"""HTTP clients for the storefront backend and the vendor commerce API."""

from .backend_client import BackendClient
from .vendor_client import (
    RedemptionResult,
    RedemptionTransport,
    ValidationResult,
    VendorRedemptionClient,
)

__all__ = [
    "BackendClient",
    "RedemptionResult",
    "RedemptionTransport",
    "ValidationResult",
    "VendorRedemptionClient",
]
