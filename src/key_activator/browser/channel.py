"""Message dispatch between the browser surfaces and the activation core.

Page scripts post named events (tokenCaptured, conversionFailed, ...). The
core registers interest in a set of event names before it triggers the page
action, then awaits exactly one matching message racing a timeout.
"""

import asyncio
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..errors import ActivationError, ErrorCode

logger = logging.getLogger(__name__)


class BrowserMessage(BaseModel):
    """A named event posted by a page script."""

    name: str
    payload: dict[str, Any] = Field(default_factory=dict)


class PendingMessage:
    """Single-consumer wait for the first message with one of several names."""

    def __init__(self, dispatcher: "MessageDispatcher", names: frozenset[str]):
        self.names = names
        self._dispatcher = dispatcher
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def _resolve(self, message: BrowserMessage) -> None:
        if not self._future.done():
            self._future.set_result(message)

    def _fail(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)

    async def wait(self, timeout: float, timeout_code: ErrorCode) -> BrowserMessage:
        """Await the message, raising ActivationError(timeout_code) on timeout."""
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError:
            raise ActivationError(timeout_code) from None
        finally:
            self.close()

    def close(self) -> None:
        """Stop listening. Late messages for these names are then dropped."""
        if not self._future.done():
            self._future.cancel()
        elif not self._future.cancelled():
            # Mark a stored exception as retrieved.
            self._future.exception()
        self._dispatcher._discard(self)


class MessageDispatcher:
    """Routes browser messages to the waits registered for them.

    Usage:
        pending = port.messages.expect("tokenCaptured", "tokenCaptureFailed")
        await port.inject_script(TOKEN_CAPTURE_SCRIPT)
        message = await pending.wait(30, ErrorCode.TOKEN_TIMEOUT)
    """

    def __init__(self) -> None:
        self._pending: list[PendingMessage] = []

    def expect(self, *names: str) -> PendingMessage:
        """Register interest in the next message carrying one of names."""
        pending = PendingMessage(self, frozenset(names))
        self._pending.append(pending)
        return pending

    def dispatch(
        self, name: str, payload: Optional[dict[str, Any]] = None
    ) -> bool:
        """Deliver a message to the oldest matching wait.

        Returns False when nothing was waiting for it.
        """
        message = BrowserMessage(name=name, payload=payload or {})
        for pending in list(self._pending):
            if name in pending.names and not pending.done:
                self._pending.remove(pending)
                pending._resolve(message)
                return True
        logger.debug("Dropping unexpected browser message %s", name)
        return False

    def cancel_all(self) -> int:
        """Resolve every outstanding wait with a cancelled error."""
        pending, self._pending = self._pending, []
        for item in pending:
            item._fail(ActivationError(ErrorCode.CANCELLED))
        if pending:
            logger.info("Cancelled %d pending browser wait(s)", len(pending))
        return len(pending)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _discard(self, pending: PendingMessage) -> None:
        if pending in self._pending:
            self._pending.remove(pending)
