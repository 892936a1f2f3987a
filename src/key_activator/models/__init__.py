"""Data models for key activation."""

from .activation_state import (
    ACTIVATED_OUTCOMES,
    ActivationOutcome,
    ActivationState,
    ActiveSubscriptionConflictOutcome,
    AlreadyOwnedOutcome,
    AlreadyRedeemedOutcome,
    ErrorOutcome,
    ExpiredSessionOutcome,
    OutcomeKind,
    PartialSuccessOutcome,
    RegionMismatchOutcome,
    RequiresDigitalAccountOutcome,
    RunState,
    StateChange,
    SuccessOutcome,
)
from .bundle import (
    BundleProgress,
    BundleResult,
    BundleTracker,
    KeyFailure,
    KeyState,
    KeyStatus,
)
from .diagnostics import DiagnosticResults
from .product import (
    ActivationMethod,
    ActiveSubscription,
    IdentityToken,
    Product,
    ProxyCredentials,
    RegionConfig,
    is_redeemed_status,
)

__all__ = [
    # Product and credentials
    "ActivationMethod",
    "ActiveSubscription",
    "IdentityToken",
    "Product",
    "ProxyCredentials",
    "RegionConfig",
    "is_redeemed_status",
    # Bundle tracking
    "BundleProgress",
    "BundleResult",
    "BundleTracker",
    "KeyFailure",
    "KeyState",
    "KeyStatus",
    # Diagnostics
    "DiagnosticResults",
    # Run state and outcomes
    "ACTIVATED_OUTCOMES",
    "ActivationOutcome",
    "ActivationState",
    "ActiveSubscriptionConflictOutcome",
    "AlreadyOwnedOutcome",
    "AlreadyRedeemedOutcome",
    "ErrorOutcome",
    "ExpiredSessionOutcome",
    "OutcomeKind",
    "PartialSuccessOutcome",
    "RegionMismatchOutcome",
    "RequiresDigitalAccountOutcome",
    "RunState",
    "StateChange",
    "SuccessOutcome",
]
