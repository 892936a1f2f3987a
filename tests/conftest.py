"""Pytest configuration and fixtures for Key Activator tests."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import pytest

from key_activator.browser.port import BrowserAutomationPort, Surface
from key_activator.browser.scripts import (
    ACCOUNT_REGION_SCRIPT,
    ACTIVE_SUBSCRIPTIONS_SCRIPT,
    CONVERSION_MONITOR_SCRIPT,
    COOKIES_ENABLED_SCRIPT,
    LOGIN_STATE_SCRIPT,
    TOKEN_CAPTURE_SCRIPT,
)
from key_activator.cache import CredentialCache, TokenCache, TTLCache
from key_activator.clients import BackendClient, VendorRedemptionClient
from key_activator.config import Settings
from key_activator.flows import KeyActivationOrchestrator
from key_activator.regions import RegionRegistry
from key_activator.retry import Backoff
from key_activator.services import ConversionController, SubscriptionChecker, TokenCaptureService
from key_activator.storage import MemoryBackend

BACKEND_URL = "https://backend.test"
VENDOR_URL = "https://purchase.vendor.test/v7.0"


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBrowserPort(BrowserAutomationPort):
    """In-memory browser that answers the page scripts.

    token: value posted as tokenCaptured (None means the page never answers)
    token_error: posted as tokenCaptureFailed instead of a token
    conversion: "success", "failed" or None (never answers)
    script_error: raised from inject_script when set
    load_error: raised from load_url when set
    """

    def __init__(
        self,
        token: Optional[str] = "identity-token",
        token_error: Optional[str] = None,
        subscriptions: Optional[list[dict[str, Any]]] = None,
        account_country: Optional[str] = None,
        conversion: Optional[str] = "success",
    ):
        super().__init__()
        self.token = token
        self.token_error = token_error
        self.subscriptions = subscriptions or []
        self.account_country = account_country
        self.conversion = conversion
        self.script_error: Optional[Exception] = None
        self.load_error: Optional[Exception] = None
        self.cookies_enabled = True
        self.logged_in = True
        self.urls: dict[Surface, Optional[str]] = {Surface.PRIMARY: None, Surface.CONVERSION: None}
        self.loaded: list[tuple[str, Surface]] = []
        self.scripts: list[tuple[str, Surface]] = []

    def _post_soon(self, name: str, payload: dict[str, Any]) -> None:
        asyncio.get_running_loop().call_soon(self.messages.dispatch, name, payload)

    async def load_url(self, url: str, surface: Surface = Surface.PRIMARY) -> None:
        if self.load_error is not None:
            raise self.load_error
        self.loaded.append((url, surface))
        self.urls[surface] = url

    async def current_url(self, surface: Surface = Surface.PRIMARY) -> Optional[str]:
        return self.urls[surface]

    async def inject_script(self, source: str, surface: Surface = Surface.PRIMARY) -> Any:
        self.scripts.append((source, surface))
        if self.script_error is not None:
            raise self.script_error
        if source == TOKEN_CAPTURE_SCRIPT:
            if self.token_error:
                self._post_soon("tokenCaptureFailed", {"error": self.token_error})
            elif self.token:
                self._post_soon("tokenCaptured", {"token": self.token})
            return None
        if source == ACTIVE_SUBSCRIPTIONS_SCRIPT:
            return self.subscriptions
        if source == ACCOUNT_REGION_SCRIPT:
            return self.account_country
        if source == COOKIES_ENABLED_SCRIPT:
            return self.cookies_enabled
        if source == LOGIN_STATE_SCRIPT:
            return self.logged_in
        if source == CONVERSION_MONITOR_SCRIPT:
            self._post_soon("redeemPageEntered", {"url": self.urls[surface]})
            return None
        if "25-character" in source:
            if self.conversion == "success":
                self._post_soon("conversionSuccess", {})
            elif self.conversion == "failed":
                self._post_soon("conversionFailed", {"error": "RedeemToken failed: 400"})
            return None
        raise RuntimeError("Unexpected script")

    def scripts_named(self, source: str) -> int:
        return sum(1 for script, _ in self.scripts if script == source)


class BackendStub:
    """MockTransport handler emulating the storefront backend."""

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.readiness: dict[tuple[str, str], dict[str, Any]] = {}
        self.readiness_status = 200
        self.marks: list[dict[str, Any]] = []
        self.mark_status = 200
        self.credential_fetches = 0
        self.credentials: dict[str, Any] = {
            "user": "proxy-user",
            "password": "proxy-pass",
            "expires_at": (datetime.now(timezone.utc) + timedelta(hours=2)).isoformat(),
        }
        self.portal_url: Optional[str] = "https://portal.test/activate/abc"
        self.requests: list[httpx.Request] = []

    def add_session(self, token: str, **fields: Any) -> dict[str, Any]:
        row = {
            "session_token": token,
            "order_id": "order-1",
            "line_item_id": "line-1",
            "license_key": None,
            "license_keys": ["AAAAA-BBBBB-CCCCC-DDDDD-EEEEE"],
            "region": "DE",
            "product_name": "Test Game",
            "product_id": "9NBLGGH4R315",
            "product_image": None,
            "vendor": "Microsoft Store",
            "status": "paid",
            "expires_at": (datetime.now(timezone.utc) + timedelta(days=1)).isoformat(),
        }
        row.update(fields)
        self.sessions[token] = row
        return row

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        if path == "/rest/v1/activation_sessions":
            token = params["session_token"].removeprefix("eq.")
            row = self.sessions.get(token)
            return httpx.Response(200, json=[row] if row else [])

        if path == "/rest/v1/line_item_readiness":
            if self.readiness_status != 200:
                return httpx.Response(self.readiness_status, json={"message": "boom"})
            key = (params["order_id"].removeprefix("eq."), params["line_item_id"].removeprefix("eq."))
            row = self.readiness.get(key)
            return httpx.Response(200, json=[row] if row else [])

        body = json.loads(request.content or b"{}")
        if path == "/functions/v1/mark-activated":
            self.marks.append(body)
            return httpx.Response(self.mark_status, json={"ok": self.mark_status == 200})

        if path == "/functions/v1/get-proxy-creds":
            self.credential_fetches += 1
            return httpx.Response(200, json=self.credentials)

        if path == "/functions/v1/portal-auth":
            if self.portal_url is None:
                return httpx.Response(500, json={"error": "unavailable"})
            return httpx.Response(200, json={"portal_url": self.portal_url})

        return httpx.Response(404, json={"message": "not found"})


class VendorStub:
    """MockTransport handler emulating the vendor commerce API.

    Scripted responses are queued per key as (status, body) tuples; once a
    queue is empty the key validates as Active and redeems with 201.
    """

    def __init__(self) -> None:
        self.validate_responses: dict[str, list[tuple[int, Any]]] = {}
        self.redeem_responses: dict[str, list[tuple[int, Any]]] = {}
        self.calls: list[dict[str, Any]] = []
        self.proxies: list[Optional[httpx.Proxy]] = []

    def client_factory(self, proxy: Optional[httpx.Proxy]) -> httpx.AsyncClient:
        label = len(self.proxies)
        self.proxies.append(proxy)
        return httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: self._handle(label, request))
        )

    def _handle(self, label: int, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if "/tokenDescriptions/" in path:
            key = path.rsplit("/", 1)[-1]
            market = request.url.params["market"]
            self.calls.append({"op": "validate", "key": key, "market": market, "transport": label,
                               "auth": request.headers.get("Authorization")})
            queue = self.validate_responses.get(key) or []
            status, body = queue.pop(0) if queue else (200, {"tokenState": "Active"})
            return httpx.Response(status, json=body)

        if path.endswith("/users/me/orders"):
            payload = json.loads(request.content)
            key = payload["billingInformation"]["paymentInstrumentId"]
            self.calls.append({"op": "redeem", "key": key, "market": payload["market"],
                               "transport": label, "payload": payload})
            queue = self.redeem_responses.get(key) or []
            status, body = queue.pop(0) if queue else (201, {"orderId": payload["orderId"]})
            return httpx.Response(status, json=body)

        return httpx.Response(404, json={})

    def ops(self, op: str, key: Optional[str] = None) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["op"] == op and (key is None or c["key"] == key)]


@pytest.fixture
def settings() -> Settings:
    """Settings with short browser timeouts and deterministic backoff."""
    return Settings(
        _env_file=None,
        backend_url=BACKEND_URL,
        backend_api_key="anon-key",
        vendor_api_base_url=VENDOR_URL,
        token_timeout_seconds=0.05,
        conversion_timeout_seconds=0.05,
        backoff_jitter=False,
        device_id="test-device",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> RegionRegistry:
    return RegionRegistry()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
async def storage():
    backend = MemoryBackend()
    await backend.connect()
    yield backend
    await backend.disconnect()


@pytest.fixture
def port() -> FakeBrowserPort:
    return FakeBrowserPort()


@pytest.fixture
def backend_stub() -> BackendStub:
    return BackendStub()


@pytest.fixture
def vendor_stub() -> VendorStub:
    return VendorStub()


@pytest.fixture
async def backend(settings, registry, backend_stub):
    client = BackendClient(
        base_url=settings.backend_url,
        api_key=settings.backend_api_key,
        registry=registry,
        transport=httpx.MockTransport(backend_stub),
    )
    await client.connect()
    yield client
    await client.disconnect()


@pytest.fixture
def credential_cache(backend, storage) -> CredentialCache:
    return CredentialCache(backend, TTLCache(storage, "proxy_credentials"), ttl_seconds=3600)


@pytest.fixture
def token_cache(storage, settings) -> TokenCache:
    return TokenCache(TTLCache(storage, "identity_tokens"), device_id=settings.device_id)


@pytest.fixture
def vendor(settings, registry, credential_cache, vendor_stub, sleep) -> VendorRedemptionClient:
    return VendorRedemptionClient(
        settings,
        registry,
        credential_cache,
        client_factory=vendor_stub.client_factory,
        sleep=sleep,
        backoff=Backoff(jitter=False),
    )


def make_orchestrator(
    settings: Settings,
    registry: RegionRegistry,
    backend: BackendClient,
    vendor: VendorRedemptionClient,
    token_cache: TokenCache,
    port: FakeBrowserPort,
    sleep: RecordingSleep,
) -> KeyActivationOrchestrator:
    return KeyActivationOrchestrator(
        backend=backend,
        vendor=vendor,
        token_capture=TokenCaptureService(
            port, token_cache, settings, sleep=sleep, backoff=Backoff(jitter=False)
        ),
        subscriptions=SubscriptionChecker(port, registry, settings),
        port=port,
        conversion=ConversionController(port, settings),
        settings=settings,
        sleep=sleep,
        uniform=lambda low, high: 0.0,
    )


@pytest.fixture
def orchestrator(settings, registry, backend, vendor, token_cache, port, sleep):
    return make_orchestrator(settings, registry, backend, vendor, token_cache, port, sleep)
