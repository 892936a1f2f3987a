"""Per-key state and aggregate results for multi-key (bundle) activations."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .product import utcnow


class KeyStatus(str, Enum):
    """Lifecycle of a single license key within a run."""

    PENDING = "pending"
    VALIDATING = "validating"
    REDEEMING = "redeeming"
    CONVERSION_REQUIRED = "conversion_required"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ALREADY_OWNED = "already_owned"
    ALREADY_REDEEMED = "already_redeemed"


IN_PROGRESS_STATUSES = frozenset(
    {KeyStatus.PENDING, KeyStatus.VALIDATING, KeyStatus.REDEEMING}
)

# A key in one of these never goes back to an in-progress status.
SETTLED_STATUSES = frozenset(
    {KeyStatus.SUCCEEDED, KeyStatus.ALREADY_OWNED, KeyStatus.ALREADY_REDEEMED}
)

FAILURE_STATUSES = frozenset(
    {KeyStatus.FAILED, KeyStatus.ALREADY_OWNED, KeyStatus.ALREADY_REDEEMED}
)


class KeyState(BaseModel):
    """State of one key: status, attempt counters and markets tried."""

    key: str
    status: KeyStatus = KeyStatus.PENDING
    failure_reason: Optional[str] = None
    owned_products: list[str] = Field(default_factory=list)
    recoverable: bool = False
    validation_attempts: int = 0
    redemption_attempts: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    markets_attempted: list[str] = Field(default_factory=list)

    @property
    def attempts(self) -> int:
        return self.validation_attempts + self.redemption_attempts

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    def transition(self, status: KeyStatus) -> None:
        """Move to a new status, refusing to reopen a settled key."""
        if self.is_settled and status in IN_PROGRESS_STATUSES:
            raise ValueError(
                f"Key {self.key} is {self.status.value} and cannot return to {status.value}"
            )
        self.status = status
        self.last_attempt_at = utcnow()

    def record_market(self, market: str) -> None:
        self.markets_attempted.append(market)


class KeyFailure(BaseModel):
    """A key that did not activate and why."""

    key: str
    reason: str
    status: KeyStatus = KeyStatus.FAILED


class BundleResult(BaseModel):
    """Aggregate outcome over every key of a bundle."""

    succeeded: list[str] = Field(default_factory=list)
    failed: list[KeyFailure] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def is_complete_success(self) -> bool:
        return bool(self.succeeded) and not self.failed

    @property
    def is_complete_failure(self) -> bool:
        return not self.succeeded and bool(self.failed)

    @property
    def has_partial_success(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)


class BundleProgress(BaseModel):
    """Progress counters shown while a bundle is activating."""

    total: int
    completed: int = 0
    succeeded: int = 0
    failed: int = 0
    current_key: Optional[str] = None
    current_index: Optional[int] = None


class BundleTracker:
    """Tracks KeyState for every key of a bundle, in product order.

    Usage:
        tracker = BundleTracker(["AAAAA-...", "BBBBB-..."])
        tracker.start_validating(key)
        tracker.mark_succeeded(key)
        result = tracker.result()
    """

    def __init__(self, keys: list[str] | tuple[str, ...]):
        if not keys:
            raise ValueError("A bundle needs at least one key")
        self._order = list(dict.fromkeys(keys))
        self._states = {key: KeyState(key=key) for key in self._order}

    @property
    def keys(self) -> list[str]:
        return list(self._order)

    def state(self, key: str) -> KeyState:
        try:
            return self._states[key]
        except KeyError:
            raise KeyError(f"Unknown bundle key: {key}") from None

    def states(self) -> list[KeyState]:
        return [self._states[key] for key in self._order]

    def is_settled(self, key: str) -> bool:
        return self.state(key).is_settled

    def start_validating(self, key: str) -> KeyState:
        state = self.state(key)
        state.transition(KeyStatus.VALIDATING)
        return state

    def start_redeeming(self, key: str) -> KeyState:
        state = self.state(key)
        state.transition(KeyStatus.REDEEMING)
        return state

    def mark_conversion_required(self, key: str) -> None:
        self.state(key).transition(KeyStatus.CONVERSION_REQUIRED)

    def mark_succeeded(self, key: str) -> None:
        state = self.state(key)
        state.transition(KeyStatus.SUCCEEDED)
        state.failure_reason = None
        state.recoverable = False

    def mark_failed(self, key: str, reason: str, recoverable: bool = False) -> None:
        state = self.state(key)
        state.transition(KeyStatus.FAILED)
        state.failure_reason = reason
        state.last_error = reason
        state.recoverable = recoverable

    def mark_already_owned(self, key: str, products: list[str]) -> None:
        state = self.state(key)
        state.transition(KeyStatus.ALREADY_OWNED)
        state.owned_products = list(products)
        state.failure_reason = "User already owns this content"
        state.recoverable = False

    def mark_already_redeemed(self, key: str) -> None:
        state = self.state(key)
        state.transition(KeyStatus.ALREADY_REDEEMED)
        state.failure_reason = "Key has already been redeemed"
        state.recoverable = False

    def has_failures(self) -> bool:
        return any(state.status in FAILURE_STATUSES for state in self._states.values())

    def recoverable_failures(self) -> list[str]:
        return [
            key
            for key in self._order
            if self._states[key].status == KeyStatus.FAILED and self._states[key].recoverable
        ]

    def prepare_rerun(self) -> None:
        """Reopen unsettled keys for another run, resetting their attempt budgets."""
        for state in self._states.values():
            if state.is_settled:
                continue
            state.transition(KeyStatus.PENDING)
            state.validation_attempts = 0
            state.redemption_attempts = 0
            state.failure_reason = None

    def result(self) -> BundleResult:
        result = BundleResult()
        for key in self._order:
            state = self._states[key]
            if state.status == KeyStatus.SUCCEEDED:
                result.succeeded.append(key)
            else:
                result.failed.append(
                    KeyFailure(
                        key=key,
                        reason=state.failure_reason or f"Key ended in {state.status.value}",
                        status=state.status,
                    )
                )
        return result
