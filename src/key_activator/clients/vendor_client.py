# Author: Green Mountain Systems AI Inc.
# Donated to IAB Tech Lab

"""Vendor commerce API client for key validation and redemption.

Calls are routed through a region's egress proxy so the vendor sees the
purchase coming from the key's licensed region. Supports:
- Token description reads (validation) with a fallback-market retry
- Order creation (redemption) with a fallback-market retry
- Bounded retries with exponential backoff, counted on the KeyState
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import httpx
from pydantic import BaseModel

from ..cache.credentials import CredentialCache
from ..config import Settings, get_settings
from ..errors import (
    ActivationError,
    ErrorCode,
    error_codes_from_payload,
    is_proxy_auth_error,
)
from ..models import IdentityToken, KeyState
from ..models.product import wlid_authorization
from ..regions import GLOBAL_MARKET, RegionRegistry
from ..retry import Backoff

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Optional[httpx.Proxy]], httpx.AsyncClient]

_DIRECT = "GLOBAL"

_REDEEMED_STATES = {"Redeemed", "AlreadyRedeemed"}


class ConversionRunner(Protocol):
    async def convert(self, key: str) -> None: ...


class ValidationResult(BaseModel):
    """Outcome of reading a key's token description."""

    valid: bool
    already_redeemed: bool = False
    token_state: Optional[str] = None
    market: str
    product_id: Optional[str] = None


class RedemptionResult(BaseModel):
    """Outcome of a successful redemption."""

    market: str
    order_id: str
    converted: bool = False


@dataclass
class RedemptionTransport:
    """HTTP client bound to one region's egress path."""

    region: str
    market: str
    client: httpx.AsyncClient
    proxied: bool


class VendorRedemptionClient:
    """Validates and redeems license keys against the vendor commerce API.

    Usage:
        vendor = VendorRedemptionClient(credentials=credential_cache)
        result = await vendor.validate(key, token, "DE")
        await vendor.redeem(key, token, "DE", market=result.market)
        await vendor.release()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[RegionRegistry] = None,
        credentials: Optional[CredentialCache] = None,
        conversion: Optional[ConversionRunner] = None,
        client_factory: Optional[ClientFactory] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        backoff: Optional[Backoff] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or RegionRegistry()
        self.credentials = credentials
        self.conversion = conversion
        self.base_url = self.settings.vendor_api_base_url.rstrip("/")
        self._client_factory = client_factory or self._default_client
        self._sleep = sleep
        self._backoff = backoff or Backoff.from_settings(self.settings)
        self._transports: dict[str, RedemptionTransport] = {}

    def _default_client(self, proxy: Optional[httpx.Proxy]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            proxy=proxy,
            timeout=self.settings.vendor_timeout_seconds,
        )

    # =========================================================================
    # Transport management
    # =========================================================================

    async def acquire_transport(self, region: str) -> RedemptionTransport:
        """Return the transport for a region, building it on first use.

        Global regions go direct with the fallback market. Other regions
        use a proxied client authenticated with cached proxy credentials.

        Raises:
            ActivationError: unsupported_region or proxy_credentials_failed
        """
        if self.registry.is_global(region):
            transport = self._transports.get(_DIRECT)
            if transport is None:
                transport = RedemptionTransport(
                    region=_DIRECT,
                    market=GLOBAL_MARKET,
                    client=self._client_factory(None),
                    proxied=False,
                )
                self._transports[_DIRECT] = transport
            return transport

        config = self.registry.require(region)
        transport = self._transports.get(config.code)
        if transport is not None:
            return transport

        if self.credentials is None:
            raise ActivationError(
                ErrorCode.PROXY_CREDENTIALS_FAILED, detail="no credential source configured"
            )
        credentials = await self.credentials.get()
        proxy = httpx.Proxy(
            config.proxy_url, auth=(credentials.username, credentials.password)
        )
        transport = RedemptionTransport(
            region=config.code,
            market=config.market,
            client=self._client_factory(proxy),
            proxied=True,
        )
        self._transports[config.code] = transport
        logger.info("Opened proxied transport for %s via %s", config.code, config.host)
        return transport

    async def release(self) -> None:
        """Close every transport opened by this client."""
        transports, self._transports = self._transports, {}
        for transport in transports.values():
            await transport.client.aclose()

    async def _drop_transport(self, transport: RedemptionTransport) -> None:
        if self._transports.get(transport.region) is transport:
            del self._transports[transport.region]
        await transport.client.aclose()

    async def _proxy_auth_failed(
        self, transport: RedemptionTransport, detail: str
    ) -> ActivationError:
        logger.warning("Proxy authentication failed for %s", transport.region)
        await self._drop_transport(transport)
        if self.credentials is not None:
            await self.credentials.invalidate()
        return ActivationError(
            ErrorCode.PROXY_AUTHENTICATION_FAILED, detail=detail, status_code=407
        )

    async def _send(
        self,
        transport: RedemptionTransport,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await transport.client.request(method, url, **kwargs)
        except httpx.ProxyError as e:
            if is_proxy_auth_error(e):
                raise await self._proxy_auth_failed(transport, str(e)) from e
            raise ActivationError(ErrorCode.NETWORK_ERROR, detail=str(e)) from e
        except httpx.TransportError as e:
            raise ActivationError(ErrorCode.NETWORK_ERROR, detail=str(e)) from e

        if response.status_code == 407:
            raise await self._proxy_auth_failed(transport, "407 from proxy")
        return response

    # =========================================================================
    # Retry accounting
    # =========================================================================

    async def _attempt(
        self,
        key_state: KeyState,
        counter: str,
        limit: int,
        region: str,
        market: Optional[str],
        operation: Callable[[RedemptionTransport, str], Awaitable[Any]],
    ) -> Any:
        """Run operation with retries, counting attempts on key_state.

        Only retryable codes are retried. A proxy authentication failure
        is retried once with fresh credentials. When the budget on
        key_state is already spent, max_retries_exceeded is raised.
        """
        proxy_retry_used = False
        while True:
            attempts = getattr(key_state, counter)
            if attempts >= limit:
                raise ActivationError(
                    ErrorCode.MAX_RETRIES_EXCEEDED, detail=key_state.last_error
                )

            setattr(key_state, counter, attempts + 1)
            transport = await self.acquire_transport(region)
            attempt_market = market or transport.market
            key_state.record_market(attempt_market)
            try:
                return await operation(transport, attempt_market)
            except ActivationError as e:
                key_state.last_error = e.message
                if not e.retryable:
                    raise
                if e.code == ErrorCode.PROXY_AUTHENTICATION_FAILED:
                    if proxy_retry_used:
                        raise
                    proxy_retry_used = True
                if attempts + 1 >= limit:
                    raise
                delay = self._backoff.delay(attempts + 1)
                logger.info(
                    "Retrying %s for key %s in %.1fs after %s",
                    counter.split("_")[0],
                    _mask(key_state.key),
                    delay,
                    e.code.value,
                )
                await self._sleep(delay)

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate(
        self,
        key: str,
        token: Union[IdentityToken, str],
        region: str,
        key_state: Optional[KeyState] = None,
    ) -> ValidationResult:
        """Read a key's token description.

        A catalog miss in the region's market is retried once against the
        fallback market. The returned market is the one that answered.
        """
        key_state = key_state or KeyState(key=key)
        market: Optional[str] = None
        while True:
            try:
                return await self._attempt(
                    key_state,
                    "validation_attempts",
                    self.settings.max_validation_attempts,
                    region,
                    market,
                    lambda transport, m: self._validate_once(key, token, transport, m),
                )
            except ActivationError as e:
                fallback = self.settings.fallback_market
                if e.code != ErrorCode.CATALOG_NOT_FOUND or market == fallback:
                    raise
                if key_state.markets_attempted and key_state.markets_attempted[-1] == fallback:
                    raise
                logger.info(
                    "Key %s not in %s catalog, retrying in %s",
                    _mask(key),
                    key_state.markets_attempted[-1] if key_state.markets_attempted else region,
                    fallback,
                )
                market = fallback

    async def _validate_once(
        self,
        key: str,
        token: Union[IdentityToken, str],
        transport: RedemptionTransport,
        market: str,
    ) -> ValidationResult:
        response = await self._send(
            transport,
            "GET",
            f"{self.base_url}/tokenDescriptions/{key}",
            params={
                "market": market,
                "language": self.settings.vendor_language,
                "supportMultiAvailabilities": "true",
            },
            headers=self._headers(token),
        )
        data = _json(response)
        codes = error_codes_from_payload(data)
        status = response.status_code

        if "CatalogSkuDataNotFound" in codes:
            raise ActivationError(ErrorCode.CATALOG_NOT_FOUND, status_code=status)

        if response.is_success:
            token_state = data.get("tokenState") if isinstance(data, dict) else None
            product_id = data.get("productId") if isinstance(data, dict) else None
            if token_state in (None, "Active"):
                return ValidationResult(
                    valid=True, token_state=token_state, market=market, product_id=product_id
                )
            return ValidationResult(
                valid=False,
                already_redeemed=token_state in _REDEEMED_STATES,
                token_state=token_state,
                market=market,
                product_id=product_id,
            )

        if status == 400 and "TokenAlreadyRedeemed" in codes:
            return ValidationResult(
                valid=False, already_redeemed=True, token_state="Redeemed", market=market
            )
        if status == 401:
            raise ActivationError(ErrorCode.AUTHENTICATION_FAILED, status_code=status)
        if status == 404:
            raise ActivationError(ErrorCode.INVALID_KEY, status_code=status)
        if status >= 500:
            raise ActivationError(ErrorCode.SERVER_ERROR, status_code=status)
        raise ActivationError(
            ErrorCode.VALIDATION_FAILED, status_code=status, detail=_first(codes)
        )

    # =========================================================================
    # Redemption
    # =========================================================================

    async def redeem(
        self,
        key: str,
        token: Union[IdentityToken, str],
        region: str,
        product: Optional[Any] = None,
        market: Optional[str] = None,
        key_state: Optional[KeyState] = None,
    ) -> RedemptionResult:
        """Create a purchase order paid with key.

        An active-market mismatch is retried once against the fallback
        market on the same transport. When a conversion runner is set, a
        consent requirement is resolved inline.
        """
        key_state = key_state or KeyState(key=key)
        if product is not None:
            logger.info("Redeeming %s key %s", getattr(product, "product_name", ""), _mask(key))
        while True:
            try:
                return await self._attempt(
                    key_state,
                    "redemption_attempts",
                    self.settings.max_redemption_attempts,
                    region,
                    market,
                    lambda transport, m: self._redeem_once(key, token, transport, m),
                )
            except ActivationError as e:
                fallback = self.settings.fallback_market
                if e.code == ErrorCode.MARKET_MISMATCH and market != fallback:
                    if key_state.markets_attempted and key_state.markets_attempted[-1] == fallback:
                        raise
                    logger.info("Market mismatch for key %s, retrying in %s", _mask(key), fallback)
                    market = fallback
                    continue
                if e.code == ErrorCode.CONVERSION_REQUIRED and self.conversion is not None:
                    await self.conversion.convert(key)
                    return RedemptionResult(
                        market=market or key_state.markets_attempted[-1],
                        order_id="",
                        converted=True,
                    )
                raise

    def _redemption_payload(self, key: str, market: str) -> dict[str, Any]:
        return {
            "orderId": str(uuid.uuid4()),
            "orderState": "Purchased",
            "billingInformation": {
                "sessionId": str(uuid.uuid4()),
                "paymentInstrumentType": "Token",
                "paymentInstrumentId": key,
            },
            "friendlyName": None,
            "clientContext": {
                "client": self.settings.client_name,
                "deviceId": self.settings.device_id,
                "deviceType": "python",
                "clientVersion": self.settings.client_version,
            },
            "language": self.settings.vendor_language,
            "market": market,
            "orderAdditionalMetadata": None,
        }

    async def _redeem_once(
        self,
        key: str,
        token: Union[IdentityToken, str],
        transport: RedemptionTransport,
        market: str,
    ) -> RedemptionResult:
        payload = self._redemption_payload(key, market)
        response = await self._send(
            transport,
            "POST",
            f"{self.base_url}/users/me/orders",
            json=payload,
            headers=self._headers(token),
        )
        status = response.status_code
        if response.is_success:
            logger.info("Redeemed key %s in market %s", _mask(key), market)
            return RedemptionResult(market=market, order_id=payload["orderId"])

        data = _json(response)
        codes = error_codes_from_payload(data)

        if status == 412:
            if "ConversionConsentRequired" in codes:
                raise ActivationError(ErrorCode.CONVERSION_REQUIRED, status_code=status)
            raise ActivationError(ErrorCode.PRECONDITION_FAILED, status_code=status)
        if status in (400, 403) and "UserAlreadyOwnsContent" in codes:
            products = data.get("data") if isinstance(data, dict) else None
            raise ActivationError(
                ErrorCode.ALREADY_OWNED,
                status_code=status,
                products=[str(p) for p in products] if isinstance(products, list) else [],
            )
        if status == 403:
            if "ActiveMarketMismatch" in codes:
                raise ActivationError(ErrorCode.MARKET_MISMATCH, status_code=status)
            raise ActivationError(ErrorCode.FORBIDDEN, status_code=status)
        if status == 409 or (status == 400 and "TokenAlreadyRedeemed" in codes):
            raise ActivationError(ErrorCode.ALREADY_REDEEMED, status_code=status)
        if status == 400:
            if "InvalidToken" in codes:
                raise ActivationError(ErrorCode.INVALID_KEY, status_code=status)
            raise ActivationError(ErrorCode.BAD_REQUEST, status_code=status, detail=_first(codes))
        if status == 401:
            raise ActivationError(ErrorCode.AUTHENTICATION_FAILED, status_code=status)
        if status >= 500:
            raise ActivationError(ErrorCode.SERVER_ERROR, status_code=status)
        raise ActivationError(ErrorCode.HTTP_ERROR, status_code=status)

    @staticmethod
    def _headers(token: Union[IdentityToken, str]) -> dict[str, str]:
        if isinstance(token, IdentityToken):
            authorization = token.authorization_header()
        else:
            authorization = wlid_authorization(token)
        return {
            "Authorization": authorization,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def _first(codes: set[str]) -> Optional[str]:
    return sorted(codes)[0] if codes else None


def _mask(key: str) -> str:
    return f"{key[:5]}-*****" if len(key) > 5 else "*****"
