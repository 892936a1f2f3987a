# Author: Green Mountain Systems AI Inc.
# Donated to IAB Tech Lab

"""Product, credential and region models.

These models describe what is being activated and where:
- The product resolved from an activation session
- Egress proxy credentials and per-region proxy endpoints
- The short-lived identity token captured from the browser
- Subscriptions found on the consumer's account
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ActivationMethod(str, Enum):
    """How a purchased product is delivered to the consumer."""

    STANDARD = "standard"
    DIGITAL_ACCOUNT = "digital_account"


# Status strings (matched as substrings) meaning the key was spent already.
REDEEMED_STATUS_VOCABULARY = (
    "redeemed",
    "alreadyredeemed",
    "used",
    "invalid",
    "consumed",
    "duplicate",
)


def is_redeemed_status(status: Optional[str]) -> bool:
    """Check a commerce status string against the redeemed vocabulary."""
    if not status:
        return False
    lowered = status.lower()
    return any(term in lowered for term in REDEEMED_STATUS_VOCABULARY)


class Product(BaseModel):
    """Immutable descriptor of a purchased product and its license keys."""

    model_config = ConfigDict(frozen=True)

    keys: tuple[str, ...]
    region: str
    product_name: str = "Microsoft Product"
    product_image: Optional[str] = None
    product_id: Optional[str] = None
    vendor: Optional[str] = None
    status: Optional[str] = None
    activation_method: ActivationMethod = ActivationMethod.STANDARD
    session_token: Optional[str] = None
    order_id: Optional[str] = None
    line_item_id: Optional[str] = None
    order_number: Optional[str] = None
    portal_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_subscription: bool = False

    @field_validator("activation_method", mode="before")
    @classmethod
    def _normalize_method(cls, value: Any) -> Any:
        # The backend has stored both "digital_account" and "Digital Account".
        if isinstance(value, str):
            cleaned = value.strip().lower().replace(" ", "_")
            return cleaned or ActivationMethod.STANDARD
        if value is None:
            return ActivationMethod.STANDARD
        return value

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_bundle(self) -> bool:
        return len(self.keys) > 1

    @property
    def primary_key(self) -> Optional[str]:
        return self.keys[0] if self.keys else None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at < now

    def is_redeemed(self) -> bool:
        return is_redeemed_status(self.status)


class RegionConfig(BaseModel):
    """Egress proxy endpoint and commerce market for one region."""

    model_config = ConfigDict(frozen=True)

    code: str
    host: str
    port: int
    market: str
    name: Optional[str] = None

    @property
    def proxy_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class ProxyCredentials(BaseModel):
    """Egress proxy credentials issued by the backend."""

    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(alias="user")
    password: str
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at

    def masked_username(self) -> str:
        if len(self.username) <= 4:
            return "*" * len(self.username)
        return self.username[:2] + "*" * (len(self.username) - 4) + self.username[-2:]


def wlid_authorization(value: str) -> str:
    """Authorization header value for a raw identity token."""
    return f'WLID1.0="{value}"'


class IdentityToken(BaseModel):
    """Identity token captured from the authenticated browser session."""

    value: str
    expires_at: datetime

    @field_validator("expires_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now >= self.expires_at

    def authorization_header(self) -> str:
        return wlid_authorization(self.value)


class ActiveSubscription(BaseModel):
    """Subscription found active on the consumer's account."""

    name: str = ""
    product_id: str = Field(default="", alias="productId")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    days_remaining: Optional[int] = Field(default=None, alias="daysRemaining")
    has_payment_issue: bool = Field(default=False, alias="hasPaymentIssue")
    autorenews: bool = False

    model_config = ConfigDict(populate_by_name=True)
