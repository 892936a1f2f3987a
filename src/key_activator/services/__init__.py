"""Browser-driven services used by the activation flow."""

from .conversion import ConversionController
from .diagnostics import DiagnosticsService
from .subscription import SubscriptionChecker
from .token_capture import TokenCaptureService, ensure_identity_page

__all__ = [
    "ConversionController",
    "DiagnosticsService",
    "SubscriptionChecker",
    "TokenCaptureService",
    "ensure_identity_page",
]
