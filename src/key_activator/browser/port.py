"""Browser automation contract.

The activation core never renders pages itself. It drives an embedded
browser through this narrow port: load a page on a surface, run a script
there, read the current URL. Page scripts report back by posting named
events, which the implementation feeds into `messages`.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

from .channel import MessageDispatcher


class Surface(str, Enum):
    """Browser surfaces the core can drive."""

    PRIMARY = "primary"
    CONVERSION = "conversion"


class BrowserEvent(str, Enum):
    """Event names posted by the page scripts."""

    TOKEN_CAPTURED = "tokenCaptured"
    TOKEN_CAPTURE_FAILED = "tokenCaptureFailed"
    CONVERSION_SUCCESS = "conversionSuccess"
    CONVERSION_FAILED = "conversionFailed"
    REDEEM_PAGE_ENTERED = "redeemPageEntered"


class BrowserAutomationPort(ABC):
    """Abstract embedded-browser driver.

    Implementations must expose a page-side bridge named by
    `key_activator.browser.scripts.BRIDGE` whose `post(name, payload)`
    forwards to `self.messages.dispatch(name, payload)`.
    """

    def __init__(self) -> None:
        self.messages = MessageDispatcher()

    @abstractmethod
    async def load_url(self, url: str, surface: Surface = Surface.PRIMARY) -> None:
        """Navigate a surface to url."""
        pass

    @abstractmethod
    async def inject_script(
        self, source: str, surface: Surface = Surface.PRIMARY
    ) -> Any:
        """Evaluate source on a surface and return its (awaited) result.

        Raises:
            Exception: If the script throws or the surface is unavailable
        """
        pass

    @abstractmethod
    async def current_url(self, surface: Surface = Surface.PRIMARY) -> Optional[str]:
        """URL currently shown on a surface, if any."""
        pass
