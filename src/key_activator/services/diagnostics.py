# Author: Green Mountain Systems AI Inc.
# Donated to IAB Tech Lab

"""Environment diagnostics.

Checks the things an activation depends on before one is started: network
reachability of the identity provider, cookies and sign-in state in the
embedded browser, the account region and an active subscription. Every
check degrades to a negative answer instead of raising.
"""

import logging
from typing import Any, Optional

import httpx

from ..browser.port import BrowserAutomationPort, Surface
from ..browser.scripts import COOKIES_ENABLED_SCRIPT, LOGIN_STATE_SCRIPT
from ..config import Settings, get_settings
from ..errors import ActivationError
from ..models import DiagnosticResults
from .subscription import SubscriptionChecker
from .token_capture import ensure_identity_page

logger = logging.getLogger(__name__)


class DiagnosticsService:
    """Collects DiagnosticResults through the browser port.

    Usage:
        service = DiagnosticsService(port, SubscriptionChecker(port))
        results = await service.run()
        if not results.ok:
            print(results.problems)
    """

    def __init__(
        self,
        port: BrowserAutomationPort,
        subscriptions: SubscriptionChecker,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.port = port
        self.subscriptions = subscriptions
        self.settings = settings or get_settings()
        self._transport = transport

    async def run(self) -> DiagnosticResults:
        network_available = await self.check_network()
        browser_ready = await self._open_identity_page()

        results = DiagnosticResults(network_available=network_available)
        if browser_ready:
            results.cookies_enabled = await self._script_flag(COOKIES_ENABLED_SCRIPT)
            results.logged_in = await self._script_flag(LOGIN_STATE_SCRIPT)
            results.account_region = await self._account_region()
            results.has_active_subscription = await self._has_active_subscription()

        logger.info(
            "Diagnostics: network=%s cookies=%s logged_in=%s region=%s subscription=%s",
            results.network_available,
            results.cookies_enabled,
            results.logged_in,
            results.account_region,
            results.has_active_subscription,
        )
        return results

    async def check_network(self) -> bool:
        """True when the identity provider answers at all."""
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.settings.diagnostics_timeout_seconds,
            ) as client:
                await client.head(self.settings.identity_url)
        except httpx.HTTPError as e:
            logger.warning("Network check failed: %s", e)
            return False
        return True

    async def _open_identity_page(self) -> bool:
        try:
            await ensure_identity_page(self.port, self.settings)
        except ActivationError as e:
            logger.warning("Identity page unavailable: %s", e.message)
            return False
        return True

    async def _script_flag(self, source: str) -> bool:
        try:
            result: Any = await self.port.inject_script(source, Surface.PRIMARY)
        except Exception as e:
            logger.warning("Diagnostic script failed: %s", e)
            return False
        return result is True

    async def _account_region(self) -> Optional[str]:
        try:
            return await self.subscriptions.account_region()
        except ActivationError as e:
            logger.warning("Account region unavailable: %s", e.message)
            return None

    async def _has_active_subscription(self) -> bool:
        try:
            return await self.subscriptions.find_active_subscription() is not None
        except ActivationError as e:
            logger.warning("Subscription lookup failed: %s", e.message)
            return False
