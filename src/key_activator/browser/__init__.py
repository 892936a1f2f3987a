"""Browser automation port, message dispatch and page scripts."""

from .channel import BrowserMessage, MessageDispatcher, PendingMessage
from .port import BrowserAutomationPort, BrowserEvent, Surface

__all__ = [
    "BrowserAutomationPort",
    "BrowserEvent",
    "BrowserMessage",
    "MessageDispatcher",
    "PendingMessage",
    "Surface",
]
