"""Activation run state and terminal outcomes.

An activation run moves through the ActivationState values below and ends
in exactly one ActivationOutcome. Outcomes form a tagged union on `kind`;
the terminal ActivationState members share their values with OutcomeKind.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from .bundle import BundleProgress, KeyFailure
from .product import ActiveSubscription, Product, utcnow


class OutcomeKind(str, Enum):
    """Kinds of terminal activation outcome."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    ALREADY_REDEEMED = "already_redeemed"
    ALREADY_OWNED = "already_owned"
    REGION_MISMATCH = "region_mismatch"
    ACTIVE_SUBSCRIPTION_CONFLICT = "active_subscription_conflict"
    EXPIRED_SESSION = "expired_session"
    REQUIRES_DIGITAL_ACCOUNT = "requires_digital_account"
    ERROR = "error"


class ActivationState(str, Enum):
    """States of the activation state machine."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    FETCHING_PRODUCT = "fetching_product"
    VALIDATING_KEY = "validating_key"
    CHECKING_SUBSCRIPTION = "checking_subscription"
    CAPTURING_TOKEN = "capturing_token"
    ACTIVATING = "activating"
    ACTIVATING_BUNDLE = "activating_bundle"
    HANDLING_CONVERSION = "handling_conversion"

    # Terminal states
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    ALREADY_REDEEMED = "already_redeemed"
    ALREADY_OWNED = "already_owned"
    REGION_MISMATCH = "region_mismatch"
    ACTIVE_SUBSCRIPTION_CONFLICT = "active_subscription_conflict"
    EXPIRED_SESSION = "expired_session"
    REQUIRES_DIGITAL_ACCOUNT = "requires_digital_account"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self.value in _OUTCOME_VALUES

    @classmethod
    def for_outcome(cls, kind: OutcomeKind) -> "ActivationState":
        return cls(kind.value)


_OUTCOME_VALUES = frozenset(kind.value for kind in OutcomeKind)


class SuccessOutcome(BaseModel):
    kind: Literal[OutcomeKind.SUCCESS] = OutcomeKind.SUCCESS
    product_name: str = ""
    keys: list[str] = Field(default_factory=list)


class PartialSuccessOutcome(BaseModel):
    kind: Literal[OutcomeKind.PARTIAL_SUCCESS] = OutcomeKind.PARTIAL_SUCCESS
    succeeded: int
    total: int
    failures: list[KeyFailure] = Field(default_factory=list)


class AlreadyRedeemedOutcome(BaseModel):
    kind: Literal[OutcomeKind.ALREADY_REDEEMED] = OutcomeKind.ALREADY_REDEEMED


class AlreadyOwnedOutcome(BaseModel):
    kind: Literal[OutcomeKind.ALREADY_OWNED] = OutcomeKind.ALREADY_OWNED
    products: list[str] = Field(default_factory=list)


class RegionMismatchOutcome(BaseModel):
    kind: Literal[OutcomeKind.REGION_MISMATCH] = OutcomeKind.REGION_MISMATCH
    account_region: str
    key_region: str


class ActiveSubscriptionConflictOutcome(BaseModel):
    kind: Literal[OutcomeKind.ACTIVE_SUBSCRIPTION_CONFLICT] = (
        OutcomeKind.ACTIVE_SUBSCRIPTION_CONFLICT
    )
    subscription: Optional[ActiveSubscription] = None


class ExpiredSessionOutcome(BaseModel):
    kind: Literal[OutcomeKind.EXPIRED_SESSION] = OutcomeKind.EXPIRED_SESSION


class RequiresDigitalAccountOutcome(BaseModel):
    kind: Literal[OutcomeKind.REQUIRES_DIGITAL_ACCOUNT] = OutcomeKind.REQUIRES_DIGITAL_ACCOUNT
    portal_url: Optional[str] = None


class ErrorOutcome(BaseModel):
    kind: Literal[OutcomeKind.ERROR] = OutcomeKind.ERROR
    reason: str
    code: Optional[str] = None
    failures: list[KeyFailure] = Field(default_factory=list)


ActivationOutcome = Annotated[
    Union[
        SuccessOutcome,
        PartialSuccessOutcome,
        AlreadyRedeemedOutcome,
        AlreadyOwnedOutcome,
        RegionMismatchOutcome,
        ActiveSubscriptionConflictOutcome,
        ExpiredSessionOutcome,
        RequiresDigitalAccountOutcome,
        ErrorOutcome,
    ],
    Field(discriminator="kind"),
]

# Outcomes reported to the backend as an activated session.
ACTIVATED_OUTCOMES = frozenset({OutcomeKind.SUCCESS, OutcomeKind.PARTIAL_SUCCESS})


class StateChange(BaseModel):
    """One observable step of a run."""

    state: ActivationState
    at: datetime = Field(default_factory=utcnow)
    progress: float = 0.0


class RunState(BaseModel):
    """Complete state of one activation run."""

    run_id: int
    session_token: str
    status: ActivationState = ActivationState.IDLE
    progress: float = 0.0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    product: Optional[Product] = None
    bundle_progress: Optional[BundleProgress] = None
    outcome: Optional[ActivationOutcome] = None
    reported: bool = False
    cancelled: bool = False

    history: list[StateChange] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
