# Author: Green Mountain Systems AI Inc.
# Donated to IAB Tech Lab

"""Activation error taxonomy and error analysis.

Every failure the core can surface is an ActivationError carrying an
ErrorCode. The analyzer maps any exception (including ones raised outside
the core) onto the recoverable/terminal classification the bundle loop
uses to decide what to do with a key.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Failure categories raised by the activation core."""

    NETWORK_ERROR = "network_error"
    TOKEN_TIMEOUT = "token_timeout"
    TOKEN_CAPTURE_FAILED = "token_capture_failed"
    CONVERSION_TIMEOUT = "conversion_timeout"
    AUTHENTICATION_FAILED = "authentication_failed"
    PROXY_AUTHENTICATION_FAILED = "proxy_authentication_failed"
    PROXY_CREDENTIALS_FAILED = "proxy_credentials_failed"
    INVALID_KEY = "invalid_key"
    KEY_STATE_INVALID = "key_state_invalid"
    ALREADY_REDEEMED = "already_redeemed"
    ALREADY_OWNED = "already_owned"
    CONVERSION_REQUIRED = "conversion_required"
    CONVERSION_FAILED = "conversion_failed"
    MARKET_MISMATCH = "market_mismatch"
    CATALOG_NOT_FOUND = "catalog_not_found"
    UNSUPPORTED_REGION = "unsupported_region"
    SERVER_ERROR = "server_error"
    HTTP_ERROR = "http_error"
    BAD_REQUEST = "bad_request"
    FORBIDDEN = "forbidden"
    PRECONDITION_FAILED = "precondition_failed"
    VALIDATION_FAILED = "validation_failed"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    CANCELLED = "cancelled"
    INVALID_SESSION = "invalid_session"
    SESSION_NOT_FOUND = "session_not_found"
    VENDOR_MISMATCH = "vendor_mismatch"
    NO_KEYS = "no_keys"
    NO_BROWSER = "no_browser"


_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.NETWORK_ERROR: "Network error occurred",
    ErrorCode.TOKEN_TIMEOUT: "Token capture timed out",
    ErrorCode.TOKEN_CAPTURE_FAILED: "Token capture failed",
    ErrorCode.CONVERSION_TIMEOUT: "Subscription conversion timed out",
    ErrorCode.AUTHENTICATION_FAILED: "Authentication failed",
    ErrorCode.PROXY_AUTHENTICATION_FAILED: "Proxy authentication failed",
    ErrorCode.PROXY_CREDENTIALS_FAILED: "Failed to get proxy credentials",
    ErrorCode.INVALID_KEY: "Invalid activation key",
    ErrorCode.KEY_STATE_INVALID: "Key is not in an active state",
    ErrorCode.ALREADY_REDEEMED: "Key has already been redeemed",
    ErrorCode.ALREADY_OWNED: "User already owns this content",
    ErrorCode.CONVERSION_REQUIRED: "Subscription conversion consent required",
    ErrorCode.CONVERSION_FAILED: "Subscription conversion failed",
    ErrorCode.MARKET_MISMATCH: "Market mismatch - region conflict",
    ErrorCode.CATALOG_NOT_FOUND: "Product not found in catalog",
    ErrorCode.UNSUPPORTED_REGION: "Unsupported region",
    ErrorCode.SERVER_ERROR: "Server error",
    ErrorCode.HTTP_ERROR: "HTTP error",
    ErrorCode.BAD_REQUEST: "Bad request",
    ErrorCode.FORBIDDEN: "Access forbidden",
    ErrorCode.PRECONDITION_FAILED: "Precondition failed",
    ErrorCode.VALIDATION_FAILED: "Key validation failed",
    ErrorCode.MAX_RETRIES_EXCEEDED: "Maximum retry attempts exceeded",
    ErrorCode.CANCELLED: "Operation cancelled",
    ErrorCode.INVALID_SESSION: "Invalid activation session",
    ErrorCode.SESSION_NOT_FOUND: "Activation session not found",
    ErrorCode.VENDOR_MISMATCH: "Vendor mismatch",
    ErrorCode.NO_KEYS: "No activation keys found",
    ErrorCode.NO_BROWSER: "Browser surface not available",
}

# Codes retried in place with backoff by the vendor client.
RETRYABLE_CODES = frozenset(
    {
        ErrorCode.NETWORK_ERROR,
        ErrorCode.SERVER_ERROR,
        ErrorCode.PROXY_AUTHENTICATION_FAILED,
    }
)

# Codes a later run may still succeed on.
RECOVERABLE_CODES = RETRYABLE_CODES | {
    ErrorCode.MARKET_MISMATCH,
    ErrorCode.CATALOG_NOT_FOUND,
    ErrorCode.TOKEN_TIMEOUT,
    ErrorCode.TOKEN_CAPTURE_FAILED,
    ErrorCode.MAX_RETRIES_EXCEEDED,
}


class ActivationError(Exception):
    """Error raised by the activation core."""

    def __init__(
        self,
        code: ErrorCode,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
        products: Optional[list[str]] = None,
    ):
        self.code = code
        self.detail = detail
        self.status_code = status_code
        self.products = products or []
        super().__init__(self.message)

    @property
    def message(self) -> str:
        base = _MESSAGES[self.code]
        if self.code == ErrorCode.ALREADY_OWNED and self.products:
            return f"User already owns: {', '.join(self.products)}"
        if self.status_code is not None and self.code in (
            ErrorCode.SERVER_ERROR,
            ErrorCode.HTTP_ERROR,
        ):
            base = f"{base}: {self.status_code}"
        if self.detail:
            return f"{base}: {self.detail}"
        return base

    @property
    def recoverable(self) -> bool:
        return self.code in RECOVERABLE_CODES

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def __repr__(self) -> str:
        return f"ActivationError(code={self.code.value!r}, message={self.message!r})"


class ErrorAnalysis(BaseModel):
    """Classification of an activation failure."""

    message: str
    code: Optional[ErrorCode] = None
    is_recoverable: bool = False
    is_already_owned: bool = False
    is_already_redeemed: bool = False
    requires_conversion: bool = False
    owned_products: list[str] = Field(default_factory=list)


_REDEEMED_INDICATORS = (
    "TokenAlreadyRedeemed",
    "already been redeemed",
    "already redeemed",
    "is Redeemed",
)

_RECOVERABLE_INDICATORS = (
    "timeout",
    "network",
    "connection lost",
    "gateway",
    "502",
    "503",
    "504",
)


def analyze_error(error: BaseException) -> ErrorAnalysis:
    """Classify an error as already-owned, already-redeemed, conversion or other.

    ActivationErrors are classified by code. Anything else is classified by
    looking for vendor error codes and network indicators in its message.
    """
    if isinstance(error, ActivationError):
        return ErrorAnalysis(
            message=error.message,
            code=error.code,
            is_recoverable=error.recoverable,
            is_already_owned=error.code == ErrorCode.ALREADY_OWNED,
            is_already_redeemed=error.code == ErrorCode.ALREADY_REDEEMED,
            requires_conversion=error.code == ErrorCode.CONVERSION_REQUIRED,
            owned_products=list(error.products),
        )

    message = str(error) or error.__class__.__name__

    if "UserAlreadyOwnsContent" in message:
        return ErrorAnalysis(
            message="User already owns this content",
            is_already_owned=True,
            owned_products=_extract_owned_products(message),
        )

    if any(indicator in message for indicator in _REDEEMED_INDICATORS):
        return ErrorAnalysis(
            message="Key has already been redeemed",
            is_already_redeemed=True,
        )

    if "ConversionConsentRequired" in message:
        return ErrorAnalysis(
            message="Subscription conversion consent required",
            is_recoverable=True,
            requires_conversion=True,
        )

    lowered = message.lower()
    return ErrorAnalysis(
        message=message,
        is_recoverable=any(indicator in lowered for indicator in _RECOVERABLE_INDICATORS),
    )


def _extract_owned_products(message: str) -> list[str]:
    """Pull the product ids out of a `"data":[...]` fragment in an error message."""
    marker = '"data":['
    start = message.find(marker)
    if start < 0:
        return []
    rest = message[start + len(marker):]
    end = rest.find("]")
    if end < 0:
        return []
    return [
        item.strip().strip("\"' ")
        for item in rest[:end].split(",")
        if item.strip().strip("\"' ")
    ]


def is_proxy_auth_error(error: BaseException) -> bool:
    if isinstance(error, ActivationError):
        return error.code == ErrorCode.PROXY_AUTHENTICATION_FAILED
    message = str(error).lower()
    return "407" in message or "proxy authentication" in message or "proxy auth" in message


def error_codes_from_payload(payload: Any) -> set[str]:
    """Collect vendor error codes from a JSON error body.

    The vendor reports codes under `errorCode`, `code` and `innererror.code`
    depending on the endpoint.
    """
    codes: set[str] = set()
    if not isinstance(payload, dict):
        return codes
    for field in ("errorCode", "code"):
        value = payload.get(field)
        if isinstance(value, str):
            codes.add(value)
    inner = payload.get("innererror")
    if isinstance(inner, dict) and isinstance(inner.get("code"), str):
        codes.add(inner["code"])
    return codes
