"""
SilentDial - Duplex Voice Channel Contract

A voice channel is the real-time connection to the voice provider for one
call: inbound transcripts and control messages arrive on it, outbound
contextual updates are written to it.

Lifecycle events are pushed to a single bound handler (the owning
Conversation). After ``close()`` the handler is unbound and receives nothing
further, so teardown never re-enters the owner.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class ChannelHandler(Protocol):
    """Receiver of channel lifecycle events."""

    def on_channel_open(self) -> None:
        ...

    def on_channel_message(self, raw: str) -> None:
        ...

    def on_channel_close(self, code: int, reason: str) -> None:
        ...

    def on_channel_error(self, error: Exception) -> None:
        ...


class VoiceChannel(ABC):
    """
    Abstract base class for duplex voice channels.

    Implementations handle provider-specific:
    - Connection handshake and timeout
    - Keep-alive
    - Frame encoding
    """

    def __init__(self) -> None:
        self._handler: Optional[ChannelHandler] = None

    def bind(self, handler: ChannelHandler) -> None:
        """Attach the owner that receives lifecycle events."""
        self._handler = handler

    def unbind(self) -> None:
        self._handler = None

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True once the handshake completed and until the connection closes."""
        ...

    @abstractmethod
    async def send(self, payload: dict) -> None:
        """
        Send one JSON message.

        Raises:
            ChannelNotReadyError: If the channel is not open
            ChannelSendError: If the write fails
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Begin closing the connection. Idempotent, never raises."""
        ...

    @abstractmethod
    async def wait_closed(self) -> None:
        """Wait until the underlying connection is fully released."""
        ...

    # -------------------------------------------------------------------------
    # Event dispatch
    # -------------------------------------------------------------------------

    def _dispatch_open(self) -> None:
        if self._handler is not None:
            self._safe_call(self._handler.on_channel_open)

    def _dispatch_message(self, raw: str) -> None:
        if self._handler is not None:
            self._safe_call(self._handler.on_channel_message, raw)

    def _dispatch_close(self, code: int, reason: str) -> None:
        if self._handler is not None:
            self._safe_call(self._handler.on_channel_close, code, reason)

    def _dispatch_error(self, error: Exception) -> None:
        if self._handler is not None:
            self._safe_call(self._handler.on_channel_error, error)

    def _safe_call(self, callback, *args) -> None:
        # A failing handler must not kill the reader task
        try:
            callback(*args)
        except Exception:
            logger.exception("Voice channel handler failed")
