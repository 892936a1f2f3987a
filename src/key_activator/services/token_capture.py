# Author: Green Mountain Systems AI Inc.
# Donated to IAB Tech Lab

"""Identity token capture through the embedded browser.

The token is read by a page script running on the identity provider's
domain, which posts it back as a tokenCaptured event. Captured tokens are
cached per device until they expire.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse

from ..browser.port import BrowserAutomationPort, BrowserEvent, Surface
from ..browser.scripts import TOKEN_CAPTURE_SCRIPT
from ..cache.tokens import TokenCache
from ..config import Settings, get_settings
from ..errors import ActivationError, ErrorCode
from ..models import IdentityToken
from ..retry import Backoff, cancellable_sleep

logger = logging.getLogger(__name__)


async def ensure_identity_page(port: BrowserAutomationPort, settings: Settings) -> None:
    """Load the identity provider on the primary surface unless already there.

    Raises:
        ActivationError: no_browser if the surface cannot be read or navigated
    """
    try:
        current = await port.current_url(Surface.PRIMARY)
        if current and urlparse(current).hostname == settings.identity_host:
            return
        logger.debug("Loading identity page (was %s)", current)
        await port.load_url(settings.identity_url, Surface.PRIMARY)
    except ActivationError:
        raise
    except Exception as e:
        raise ActivationError(ErrorCode.NO_BROWSER, detail=str(e)) from e


class TokenCaptureService:
    """Captures identity tokens with caching and bounded retries.

    Usage:
        service = TokenCaptureService(port, token_cache)
        token = await service.capture()
    """

    def __init__(
        self,
        port: BrowserAutomationPort,
        token_cache: TokenCache,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        backoff: Optional[Backoff] = None,
    ):
        self.port = port
        self.token_cache = token_cache
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._backoff = backoff or Backoff.from_settings(self.settings)
        self._inflight: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

    async def capture(self) -> IdentityToken:
        """Return a cached token or capture a fresh one.

        Concurrent callers share a single capture and see the same token or
        the same error.

        Raises:
            ActivationError: The last capture error once attempts run out,
                or cancelled immediately when the capture is cancelled
        """
        cached = await self.token_cache.get()
        if cached is not None:
            return cached

        task = self._inflight
        if task is None:
            self._stop = asyncio.Event()
            task = asyncio.ensure_future(self._capture_with_retries(self._stop))
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        else:
            logger.debug("Joining in-flight token capture")

        return await asyncio.shield(task)

    def cancel(self) -> None:
        """Stop the in-flight capture at its next attempt or backoff."""
        self._stop.set()
        self._inflight = None

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _capture_with_retries(self, stop: asyncio.Event) -> IdentityToken:
        max_attempts = self.settings.max_token_attempts
        last_error: Optional[ActivationError] = None

        for attempt in range(1, max_attempts + 1):
            if stop.is_set():
                raise ActivationError(ErrorCode.CANCELLED)
            cached = await self.token_cache.get()
            if cached is not None:
                return cached

            try:
                return await self._capture_once()
            except ActivationError as e:
                if e.code == ErrorCode.CANCELLED:
                    raise
                last_error = e
                logger.warning(
                    "Token capture attempt %d/%d failed: %s", attempt, max_attempts, e.message
                )

            if attempt < max_attempts:
                await cancellable_sleep(self._sleep, self._backoff.delay(attempt), stop)

        if last_error is None:
            raise ActivationError(ErrorCode.MAX_RETRIES_EXCEEDED)
        raise last_error

    async def _capture_once(self) -> IdentityToken:
        pending = self.port.messages.expect(
            BrowserEvent.TOKEN_CAPTURED.value,
            BrowserEvent.TOKEN_CAPTURE_FAILED.value,
        )
        try:
            try:
                await ensure_identity_page(self.port, self.settings)
                await self.port.inject_script(TOKEN_CAPTURE_SCRIPT, Surface.PRIMARY)
            except ActivationError:
                raise
            except Exception as e:
                raise ActivationError(ErrorCode.TOKEN_CAPTURE_FAILED, detail=str(e)) from e

            message = await pending.wait(
                self.settings.token_timeout_seconds, ErrorCode.TOKEN_TIMEOUT
            )
        finally:
            pending.close()

        if message.name == BrowserEvent.TOKEN_CAPTURE_FAILED.value:
            raise ActivationError(
                ErrorCode.TOKEN_CAPTURE_FAILED, detail=message.payload.get("error")
            )

        value = message.payload.get("token")
        if not value:
            raise ActivationError(ErrorCode.TOKEN_CAPTURE_FAILED, detail="empty token")

        logger.info("Captured identity token")
        return await self.token_cache.store(value)

    async def invalidate(self) -> None:
        """Forget the cached token, e.g. after the vendor rejected it."""
        await self.token_cache.clear()
