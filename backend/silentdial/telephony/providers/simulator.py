"""
SilentDial - Voice Call Simulator

Development provider that places no real calls. Useful for:
- Local development without ElevenLabs credentials
- Exercising the full submit -> active -> relay -> end flow
- Demos

The simulated channel opens after a short delay and answers each contextual
update with the next line of a scripted dispatcher.
"""

import asyncio
import json
import logging
import uuid
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence

from silentdial.core.briefing import CallBriefing
from silentdial.core.exceptions import ChannelNotReadyError
from silentdial.telephony.channel import VoiceChannel
from .base import VoiceProvider

logger = logging.getLogger(__name__)

CALL_LOG_SIZE = 50


DISPATCHER_SCRIPT = [
    "Emergency services, I have your information. Help is being dispatched.",
    "Can you confirm whether anyone is injured?",
    "Stay where you are if it is safe. Units are on the way.",
    "I'm still here with you. Keep typing if anything changes.",
]


class SimulatedChannel(VoiceChannel):
    """In-process stand-in for the provider's duplex channel."""

    def __init__(
        self,
        conversation_id: str,
        open_delay: float = 0.2,
        reply_delay: float = 1.5,
        script: Optional[Sequence[str]] = None,
        on_closed: Optional[Callable[[str], None]] = None,
    ):
        super().__init__()
        self.conversation_id = conversation_id
        self._on_closed = on_closed
        self._open_delay = open_delay
        self._reply_delay = reply_delay
        self._script = list(script or DISPATCHER_SCRIPT)
        self._turn = 0
        self._open = False
        self._closed = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self.sent: List[dict] = []

    @property
    def is_open(self) -> bool:
        return self._open

    def start(self) -> None:
        self._spawn(self._open_after_delay())

    async def send(self, payload: dict) -> None:
        if not self._open:
            raise ChannelNotReadyError("WebSocket connection is not ready")

        self.sent.append(payload)
        if payload.get("type") == "contextual_update":
            line = self._script[self._turn % len(self._script)]
            self._turn += 1
            self._spawn(self._reply_after_delay(line))

    def close(self) -> None:
        if self._closed.is_set():
            return

        self.unbind()
        self._open = False
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()
        self._closed.set()
        logger.debug("Simulated channel closed: %s", self.conversation_id)
        if self._on_closed is not None:
            self._on_closed(self.conversation_id)

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def hang_up(self) -> None:
        """Simulate the dispatcher ending the conversation."""
        self._dispatch_message(json.dumps({"type": "conversation_ended"}))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.append(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)

    async def _open_after_delay(self) -> None:
        await asyncio.sleep(self._open_delay)
        if self._closed.is_set():
            return
        self._open = True
        self._dispatch_open()

    async def _reply_after_delay(self, line: str) -> None:
        await asyncio.sleep(self._reply_delay)
        if self._open:
            self._dispatch_message(json.dumps({"type": "agent_response", "text": line}))


class SimulatedVoiceProvider(VoiceProvider):
    """
    Voice provider that fabricates conversations locally.

    Attributes:
        calls: Most recent briefings received, oldest first
        channels: Open channels, keyed by conversation id. A channel is
            dropped as soon as it closes.
    """

    def __init__(self, open_delay: float = 0.2, reply_delay: float = 1.5):
        self._open_delay = open_delay
        self._reply_delay = reply_delay
        self.calls: Deque[CallBriefing] = deque(maxlen=CALL_LOG_SIZE)
        self.channels: Dict[str, SimulatedChannel] = {}

    @property
    def name(self) -> str:
        return "simulator"

    def missing_configuration(self) -> Dict[str, bool]:
        return {}

    async def start_call(self, briefing: CallBriefing) -> str:
        self.calls.append(briefing)
        conversation_id = f"SIM_{uuid.uuid4().hex[:12]}"
        logger.info("[SIMULATOR] Outbound call placed: %s", conversation_id)
        return conversation_id

    def open_channel(self, conversation_id: str) -> SimulatedChannel:
        channel = SimulatedChannel(
            conversation_id,
            open_delay=self._open_delay,
            reply_delay=self._reply_delay,
            on_closed=self._release_channel,
        )
        self.channels[conversation_id] = channel
        channel.start()
        return channel

    def _release_channel(self, conversation_id: str) -> None:
        self.channels.pop(conversation_id, None)
