"""
SilentDial - Graceful Shutdown

Tears down process-wide state when the server stops or an unhandled fault
occurs: the limiter sweep stops, every Conversation is ended and its channel
closed, and teardown gets a bounded grace period to finish.

Termination signals reach us through uvicorn, which runs the application
lifespan shutdown; faults in background tasks reach us through the event
loop exception handler installed here. After a fault teardown the server
itself is asked to exit, so that no new calls are accepted by a process
that has already given up its state.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Callable, Optional

from .conversation import ConversationRegistry
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def request_server_exit() -> None:
    """Deliver SIGTERM to this process; uvicorn turns it into a graceful exit."""
    os.kill(os.getpid(), signal.SIGTERM)


class ShutdownCoordinator:
    """
    Runs the teardown sequence.

    The first call logs the reason and detaches the fault hook. Later calls
    sweep again, ending any conversation created since.

    Args:
        rate_limiter: Limiter whose sweep task is stopped
        registry: Registry whose conversations are ended
        grace_seconds: Upper bound on waiting for channels to close
        stop_server: Called after a fault teardown to stop the server
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        registry: ConversationRegistry,
        grace_seconds: float = 1.0,
        stop_server: Optional[Callable[[], None]] = None,
    ):
        self._rate_limiter = rate_limiter
        self._registry = registry
        self._grace_seconds = grace_seconds
        self._stop_server = stop_server or request_server_exit
        self._started = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handler = None
        self._fault_task: Optional[asyncio.Task] = None

    @property
    def is_shutting_down(self) -> bool:
        return self._started

    async def shutdown(self, reason: str = "shutdown") -> int:
        """
        Stop the sweep, end every conversation and wait for channels to close.

        Returns:
            Number of conversations ended by this call
        """
        first = not self._started
        self._started = True

        if first:
            logger.info("Received %s, shutting down gracefully...", reason)
        else:
            logger.info("Received %s during shutdown, ending remaining conversations", reason)

        await self._rate_limiter.stop()

        channels = self._registry.live_channels()
        ended = self._registry.cleanup_all()

        if channels:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(channel.wait_closed() for channel in channels)),
                    timeout=self._grace_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Timed out after %.1fs waiting for %d voice channels to close",
                    self._grace_seconds,
                    len(channels),
                )

        if first:
            self.remove_exception_handler()
        logger.info("Shutdown complete: %d conversations ended", ended)
        return ended

    # -------------------------------------------------------------------------
    # Unhandled faults
    # -------------------------------------------------------------------------

    def install_exception_handler(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Route unhandled event-loop faults to the teardown sequence."""
        self._loop = loop or asyncio.get_running_loop()
        self._previous_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._handle_exception)

    def remove_exception_handler(self) -> None:
        if self._loop is not None:
            self._loop.set_exception_handler(self._previous_handler)
            self._loop = None
            self._previous_handler = None

    def _handle_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exception = context.get("exception")
        logger.error(
            "Unhandled exception: %s",
            context.get("message", "unknown fault"),
            exc_info=exception,
        )

        if not self._started and self._fault_task is None:
            self._fault_task = loop.create_task(self._shutdown_after_fault())

    async def _shutdown_after_fault(self) -> None:
        await self.shutdown("unhandledException")
        logger.error("Stopping server after unhandled exception")
        self._stop_server()
