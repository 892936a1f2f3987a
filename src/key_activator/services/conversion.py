"""Subscription conversion (consent) sub-flow.

Some keys can only be redeemed after the consumer confirms converting an
existing subscription. The vendor's redeem page handles that interactively,
so the controller drives it on the dedicated conversion surface.
"""

import logging
from typing import Optional

from ..browser.port import BrowserAutomationPort, BrowserEvent, Surface
from ..browser.scripts import CONVERSION_MONITOR_SCRIPT, conversion_automation_script
from ..config import Settings, get_settings
from ..errors import ActivationError, ErrorCode

logger = logging.getLogger(__name__)


class ConversionController:
    """Runs the consent page for one key and waits for its result."""

    def __init__(self, port: BrowserAutomationPort, settings: Optional[Settings] = None):
        self.port = port
        self.settings = settings or get_settings()

    async def convert(self, key: str) -> None:
        """Confirm conversion for key. One attempt per call.

        Raises:
            ActivationError: conversion_failed, conversion_timeout or cancelled
        """
        pending = self.port.messages.expect(
            BrowserEvent.CONVERSION_SUCCESS.value,
            BrowserEvent.CONVERSION_FAILED.value,
        )
        try:
            try:
                await self.port.load_url(self.settings.redeem_page_url, Surface.CONVERSION)
                await self.port.inject_script(CONVERSION_MONITOR_SCRIPT, Surface.CONVERSION)
                await self.port.inject_script(
                    conversion_automation_script(key), Surface.CONVERSION
                )
            except ActivationError:
                raise
            except Exception as e:
                raise ActivationError(ErrorCode.CONVERSION_FAILED, detail=str(e)) from e

            message = await pending.wait(
                self.settings.conversion_timeout_seconds, ErrorCode.CONVERSION_TIMEOUT
            )
        finally:
            pending.close()

        if message.name == BrowserEvent.CONVERSION_FAILED.value:
            raise ActivationError(
                ErrorCode.CONVERSION_FAILED, detail=message.payload.get("error")
            )
        logger.info("Subscription conversion confirmed")
