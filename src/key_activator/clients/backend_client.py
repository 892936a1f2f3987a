# Author: Green Mountain Systems AI Inc.
# Donated to IAB Tech Lab

"""Backend client for activation sessions and proxy credentials.

The storefront backend exposes a PostgREST-style table API plus a few
edge functions:
- activation_sessions / line_item_readiness tables (read)
- mark-activated, get-proxy-creds and portal-auth functions (POST)
"""

import json
import logging
from datetime import timedelta
from typing import Any, Optional

import httpx

from ..config import get_settings
from ..errors import ActivationError, ErrorCode
from ..models import Product, ProxyCredentials
from ..models.product import utcnow
from ..regions import RegionRegistry

logger = logging.getLogger(__name__)

_SESSION_FIELDS = (
    "session_token,order_id,line_item_id,license_key,license_keys,region,"
    "product_name,product_id,product_image,vendor,status,expires_at"
)


class BackendClient:
    """Async client for the storefront backend.

    Usage:
        async with BackendClient() as backend:
            product = await backend.get_session(session_token)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        registry: Optional[RegionRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the backend client.

        Args:
            base_url: Backend base URL (defaults to settings)
            api_key: Backend API key sent as `apikey` and bearer token
            timeout: Request timeout in seconds
            registry: Region registry used to normalize session regions
            transport: Optional httpx transport (tests use MockTransport)
        """
        settings = get_settings()
        self.base_url = (base_url or settings.backend_url).rstrip("/")
        self.api_key = api_key or settings.backend_api_key or ""
        self.timeout = timeout or settings.backend_timeout_seconds
        self.registry = registry or RegionRegistry()
        self._settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "BackendClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.disconnect()

    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        if self._client is not None:
            return
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def disconnect(self) -> None:
        """Close the underlying HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_connected(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Backend client not connected. Use 'async with' context.")
        return self._client

    # =========================================================================
    # Activation sessions
    # =========================================================================

    async def get_session(self, session_token: str) -> Product:
        """Resolve an activation session into a Product.

        Raises:
            ActivationError: invalid_session, session_not_found, no_keys or
                network_error
        """
        client = self._ensure_connected()
        try:
            response = await client.get(
                "/rest/v1/activation_sessions",
                params={"session_token": f"eq.{session_token}", "select": _SESSION_FIELDS},
            )
        except httpx.TransportError as e:
            raise ActivationError(ErrorCode.NETWORK_ERROR, detail=str(e)) from e

        if response.status_code != 200:
            raise ActivationError(
                ErrorCode.INVALID_SESSION, status_code=response.status_code
            )

        rows = response.json()
        if not rows:
            raise ActivationError(ErrorCode.SESSION_NOT_FOUND)
        session = rows[0]

        keys = self._parse_keys(session)
        if not keys:
            raise ActivationError(ErrorCode.NO_KEYS)

        readiness = await self._get_readiness(
            session.get("order_id"), session.get("line_item_id")
        )

        region = self.registry.normalize(session.get("region")) or self._settings.default_region
        product_id = session.get("product_id")

        return Product(
            keys=tuple(keys),
            region=region,
            product_name=session.get("product_name") or "Microsoft Product",
            product_image=session.get("product_image"),
            product_id=product_id,
            vendor=session.get("vendor") or "Microsoft Store",
            status=session.get("status"),
            activation_method=readiness.get("activation_method"),
            session_token=session_token,
            order_id=session.get("order_id"),
            line_item_id=session.get("line_item_id"),
            order_number=readiness.get("order_number"),
            expires_at=session.get("expires_at"),
            is_subscription=product_id in self._settings.subscription_product_ids,
        )

    @staticmethod
    def _parse_keys(session: dict[str, Any]) -> list[str]:
        keys = session.get("license_keys")
        if isinstance(keys, str):
            # Some rows hold the array as a JSON string.
            try:
                keys = json.loads(keys)
            except ValueError:
                keys = [keys]
        if not keys and session.get("license_key"):
            keys = [session["license_key"]]
        return [key.strip() for key in keys or [] if isinstance(key, str) and key.strip()]

    async def _get_readiness(
        self, order_id: Optional[str], line_item_id: Optional[str]
    ) -> dict[str, Any]:
        """Fetch activation method and order number. Failures are tolerated."""
        if not order_id or not line_item_id:
            return {}
        client = self._ensure_connected()
        try:
            response = await client.get(
                "/rest/v1/line_item_readiness",
                params={
                    "order_id": f"eq.{order_id}",
                    "line_item_id": f"eq.{line_item_id}",
                    "select": "activation_method,order_number",
                },
            )
            response.raise_for_status()
            rows = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Could not fetch line item readiness for order %s: %s", order_id, e)
            return {}
        return rows[0] if rows else {}

    async def mark_activated(self, session_token: str, success: bool) -> None:
        """Report whether a session's keys were activated."""
        client = self._ensure_connected()
        try:
            response = await client.post(
                "/functions/v1/mark-activated",
                json={"session_token": session_token, "success": success},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ActivationError(
                ErrorCode.HTTP_ERROR, status_code=e.response.status_code
            ) from e
        except httpx.TransportError as e:
            raise ActivationError(ErrorCode.NETWORK_ERROR, detail=str(e)) from e

    async def create_portal_url(self, product: Product) -> str:
        """Create a customer portal link for a digital-account order."""
        client = self._ensure_connected()
        body = {
            "action": "create_token_and_redirect",
            "data": {
                "order_id": product.order_id,
                "order_name": product.order_number or "",
                "source": "key_activator_digital_account",
                "customer_email": "",
                "is_authenticated": False,
            },
        }
        try:
            response = await client.post("/functions/v1/portal-auth", json=body)
            response.raise_for_status()
            portal_url = response.json().get("portal_url")
        except httpx.HTTPStatusError as e:
            raise ActivationError(
                ErrorCode.HTTP_ERROR, status_code=e.response.status_code
            ) from e
        except httpx.TransportError as e:
            raise ActivationError(ErrorCode.NETWORK_ERROR, detail=str(e)) from e
        if not portal_url:
            raise ActivationError(ErrorCode.HTTP_ERROR, detail="portal_url missing")
        return portal_url

    # =========================================================================
    # Proxy credentials
    # =========================================================================

    async def get_proxy_credentials(
        self, session_token: Optional[str] = None
    ) -> ProxyCredentials:
        """Fetch egress proxy credentials.

        Credentials without an expiry are treated as valid for one hour.
        """
        client = self._ensure_connected()
        try:
            response = await client.post(
                "/functions/v1/get-proxy-creds",
                json={"session_token": session_token or "key_activator"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ActivationError(
                ErrorCode.PROXY_CREDENTIALS_FAILED, status_code=e.response.status_code
            ) from e
        except (httpx.TransportError, ValueError) as e:
            raise ActivationError(ErrorCode.PROXY_CREDENTIALS_FAILED, detail=str(e)) from e

        if not isinstance(data, dict):
            raise ActivationError(
                ErrorCode.PROXY_CREDENTIALS_FAILED, detail="unexpected response"
            )
        if not data.get("user") or not data.get("password"):
            raise ActivationError(
                ErrorCode.PROXY_CREDENTIALS_FAILED, detail="incomplete credentials"
            )
        data.setdefault("expires_at", None)
        if data["expires_at"] is None:
            data["expires_at"] = utcnow() + timedelta(hours=1)
        return ProxyCredentials.model_validate(data)
