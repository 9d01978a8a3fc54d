"""
SilentDial - Conversation State Machine & Registry

A Conversation owns one session's outbound call: admission guard, the duplex
voice channel, the message log and the notifications relayed to the client.

States:
    idle -> calling -> active -> ended
    calling -> ended          (call initiation or channel open failed)
    ended -> calling          (a new attempt re-arms the same session)

Concurrency:
    Everything here runs on one event loop. ``try_begin_call()`` performs the
    admission check and the guard flip with no await in between, which is
    what makes the single-call invariant hold.

Observers:
    ``subscribe()`` hands out a queue-backed subscription. Each subscriber
    receives every MESSAGE / ERROR / ENDED event emitted after it subscribed,
    in emission order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from silentdial.telephony.channel import VoiceChannel

from .admission import CallAdmissionController
from .briefing import CallBriefing
from .exceptions import (
    ChannelNotReadyError,
    ChannelSendError,
    ConversationError,
    ConversationNotActiveError,
)
from .logging import mask_conversation_id, mask_session_id
from .types import (
    AdmissionDecision,
    AdmissionReason,
    Clock,
    ConversationEvent,
    ConversationEventType,
    ConversationMessage,
    ConversationState,
    EmergencyReport,
    MessageRole,
    now_ms,
)

logger = logging.getLogger(__name__)

TRANSCRIPT_TYPES = ("agent_transcript", "agent_response")
CONNECTION_LOST = "Connection lost"
CALL_ENDED = "Call ended"
CALL_FAILED = "Call failed to connect"
SEND_FAILED = "Voice connection issue, please try again"


class ConversationSubscription:
    """Queue of events for one observer. Close it when done listening."""

    def __init__(self, owner: "Conversation"):
        self._owner = owner
        self._queue: asyncio.Queue[ConversationEvent] = asyncio.Queue()
        self.closed = False

    def _put(self, event: ConversationEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def get(self) -> ConversationEvent:
        return await self._queue.get()

    def get_nowait(self) -> Optional[ConversationEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._owner._unsubscribe(self)


class Conversation:
    """
    One session's call lifecycle.

    Attributes:
        session_id: Owning session, immutable
        conversation_id: Provider identifier once a call is placed
        report: Emergency report the call is about (None for generic calls)
        messages: Append-only log of user / callee / system messages
    """

    def __init__(
        self,
        session_id: str,
        admission: CallAdmissionController,
        report: Optional[EmergencyReport] = None,
        clock: Optional[Clock] = None,
    ):
        self.session_id = session_id
        self.report = report
        self.conversation_id: Optional[str] = None
        self.messages: List[ConversationMessage] = []

        self._admission = admission
        self._clock = clock or now_ms
        self._channel: Optional[VoiceChannel] = None
        self._state = ConversationState.IDLE
        self._call_initiated = False
        self._subscribers: List[ConversationSubscription] = []
        self._settled = asyncio.Event()
        self.created_at_ms = self._clock()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def is_active(self) -> bool:
        """True only while the voice channel is confirmed open."""
        return self._state is ConversationState.ACTIVE

    @property
    def call_initiated(self) -> bool:
        return self._call_initiated

    @property
    def channel(self) -> Optional[VoiceChannel]:
        return self._channel

    def subscribe(self) -> ConversationSubscription:
        subscription = ConversationSubscription(self)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: ConversationSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def can_initiate_call(self) -> AdmissionDecision:
        """Full admission check for this session. No side effects."""
        if self._state is ConversationState.ACTIVE:
            return AdmissionDecision.deny(AdmissionReason.CALL_ALREADY_ACTIVE)
        if self._call_initiated:
            return AdmissionDecision.deny(AdmissionReason.CALL_ALREADY_INITIATED)
        return self._admission.check(self.session_id)

    def mark_call_initiated(self) -> None:
        """Flip the guard and record the call. Must directly follow a passing check."""
        if self._state not in (ConversationState.IDLE, ConversationState.ENDED):
            raise ConversationError(
                f"Cannot start a call from state {self._state.value}",
                details={"state": self._state.value},
            )

        self._call_initiated = True
        self._state = ConversationState.CALLING
        self._admission.record_call(self.session_id)
        self.conversation_id = None
        self._settled.clear()
        logger.info("Call initiated for session %s", mask_session_id(self.session_id))

    def try_begin_call(self) -> AdmissionDecision:
        """Check admission and, when granted, mark the call in the same step."""
        decision = self.can_initiate_call()
        if decision.allowed:
            self.mark_call_initiated()
        else:
            logger.warning(
                "Call admission denied for session %s: %s",
                mask_session_id(self.session_id),
                decision.reason.value if decision.reason else "unknown",
            )
        return decision

    # -------------------------------------------------------------------------
    # Call setup
    # -------------------------------------------------------------------------

    async def start_call(self, provider, briefing: CallBriefing) -> Optional[str]:
        """
        Place the call and start opening its channel.

        The conversation becomes ACTIVE only when the channel reports open.
        Provider errors roll back the admission guard and are re-raised.

        Returns:
            The provider conversation id, or None if the conversation was
            ended while the call was being placed
        """
        if self._state is not ConversationState.CALLING:
            raise ConversationError(
                "Call not initiated",
                details={"state": self._state.value},
            )

        try:
            conversation_id = await provider.start_call(briefing)
        except Exception as e:
            logger.error("Error starting call: %s", str(e))
            self.abort_call(CALL_FAILED)
            raise

        if self._state is not ConversationState.CALLING:
            logger.warning(
                "Conversation ended while the call was being placed; "
                "outbound call %s left without a channel",
                mask_conversation_id(conversation_id),
            )
            return None

        try:
            channel = provider.open_channel(conversation_id)
        except Exception as e:
            logger.error("Error opening voice channel: %s", str(e))
            self.abort_call(CALL_FAILED)
            raise

        self.attach_channel(conversation_id, channel)
        return conversation_id

    def attach_channel(self, conversation_id: str, channel: VoiceChannel) -> None:
        """Take ownership of the channel for a placed call."""
        self.conversation_id = conversation_id
        self._channel = channel
        channel.bind(self)

        # The handshake may have completed before we got here
        if channel.is_open:
            self._activate()

    async def wait_until_active(self, timeout: float) -> bool:
        """Wait for the call to become active or settle otherwise."""
        if self._state is ConversationState.ACTIVE:
            return True
        if self._state is not ConversationState.CALLING:
            return False

        try:
            await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self._state is ConversationState.ACTIVE

    def abort_call(self, reason: str = CALL_FAILED) -> None:
        """Fail a call that is still being set up. No-op in any other state."""
        if self._state is ConversationState.CALLING:
            self._fail_call(reason)

    def _activate(self) -> None:
        if self._state is not ConversationState.CALLING:
            return
        self._state = ConversationState.ACTIVE
        self._settled.set()
        logger.info(
            "Conversation active: %s",
            mask_conversation_id(self.conversation_id),
        )

    def _fail_call(self, reason: str) -> None:
        # Roll back the guard so the session can try again
        self._call_initiated = False
        self._admission.release_call(self.session_id)
        self._release_channel()
        self._state = ConversationState.ENDED
        self._record(MessageRole.SYSTEM, reason)
        self._settled.set()
        self._emit(ConversationEvent(type=ConversationEventType.ENDED))
        logger.warning(
            "Call failed for session %s: %s",
            mask_session_id(self.session_id),
            reason,
        )

    def _release_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.close()

    # -------------------------------------------------------------------------
    # Channel events
    # -------------------------------------------------------------------------

    def on_channel_open(self) -> None:
        self._activate()

    def on_channel_message(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Error parsing WebSocket message: %s", str(e))
            return

        if not isinstance(data, dict):
            logger.warning("Ignoring non-object WebSocket message")
            return

        message_type = data.get("type")

        if message_type in TRANSCRIPT_TYPES:
            text = data.get("text")
            if isinstance(text, str) and text.strip():
                self._record(MessageRole.CALLEE, text)
        elif message_type == "conversation_ended":
            logger.info("Conversation ended by provider")
            self._record(MessageRole.SYSTEM, CALL_ENDED)
            self.end()
        elif message_type == "ping":
            logger.debug("Received ping")
        else:
            logger.info("Unknown message type: %s", message_type)

    def on_channel_close(self, code: int, reason: str) -> None:
        logger.info("Voice channel closed - Code: %s, Reason: %s", code, reason or "none")
        self._on_channel_lost()

    def on_channel_error(self, error: Exception) -> None:
        logger.error("Voice channel error: %s", str(error))
        self._on_channel_lost()

    def _on_channel_lost(self) -> None:
        if self._state is ConversationState.ACTIVE:
            self._record(MessageRole.SYSTEM, CONNECTION_LOST)
            self.end()
        elif self._state is ConversationState.CALLING:
            self._fail_call(CALL_FAILED)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def send_message(self, text: str) -> bool:
        """
        Push user text to the live agent as a contextual update.

        Returns:
            True when sent, False when a transient send error was emitted

        Raises:
            ConversationNotActiveError: No live call
            ChannelNotReadyError: Channel exists but is not open
        """
        channel = self._channel
        if self._state is not ConversationState.ACTIVE or channel is None or not self.conversation_id:
            raise ConversationNotActiveError(
                "Conversation not active",
                details={"state": self._state.value},
            )
        if not channel.is_open:
            raise ChannelNotReadyError("WebSocket connection is not ready")

        payload = {
            "type": "contextual_update",
            "text": text,
            "conversation_id": self.conversation_id,
        }

        try:
            await channel.send(payload)
        except (ChannelSendError, ChannelNotReadyError) as e:
            logger.error("Error sending message to voice channel: %s", e.message)
            self._emit(ConversationEvent(type=ConversationEventType.ERROR, error=SEND_FAILED))
            return False

        self._record(MessageRole.USER, text, emit=False)
        logger.debug("Sent contextual update (%d chars)", len(text))
        return True

    def end(self) -> None:
        """End the conversation. Safe to call any number of times."""
        if self._state is ConversationState.ENDED:
            return

        self._state = ConversationState.ENDED
        self._call_initiated = False
        self._release_channel()
        self._settled.set()
        logger.info("Conversation ended for session %s", mask_session_id(self.session_id))
        self._emit(ConversationEvent(type=ConversationEventType.ENDED))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self._state.value,
            "is_active": self.is_active,
            "call_initiated": self._call_initiated,
            "conversation_id": mask_conversation_id(self.conversation_id) if self.conversation_id else None,
            "message_count": len(self.messages),
            "created_at": self.created_at_ms,
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _record(self, role: MessageRole, text: str, emit: bool = True) -> ConversationMessage:
        message = ConversationMessage(role=role, text=text, timestamp_ms=self._clock())
        self.messages.append(message)
        if emit:
            self._emit(ConversationEvent(type=ConversationEventType.MESSAGE, message=message))
        return message

    def _emit(self, event: ConversationEvent) -> None:
        for subscription in list(self._subscribers):
            subscription._put(event)


class ConversationRegistry:
    """
    Process-wide map of session id to Conversation.

    Entries live until removed or until shutdown; there is no idle expiry.
    """

    def __init__(self, admission: CallAdmissionController, clock: Optional[Clock] = None):
        self._admission = admission
        self._clock = clock
        self._conversations: Dict[str, Conversation] = {}

    def get_conversation(
        self,
        session_id: str,
        report: Optional[EmergencyReport] = None,
    ) -> Conversation:
        """Return the session's Conversation, creating an idle one if needed."""
        conversation = self._conversations.get(session_id)
        if conversation is None:
            conversation = Conversation(session_id, self._admission, report=report, clock=self._clock)
            self._conversations[session_id] = conversation
            logger.debug("Created conversation for session %s", mask_session_id(session_id))
        elif report is not None and conversation.report is None:
            conversation.report = report
        return conversation

    def get(self, session_id: str) -> Optional[Conversation]:
        return self._conversations.get(session_id)

    def remove_conversation(self, session_id: str) -> bool:
        """End and evict a session's Conversation. Returns False if unknown."""
        conversation = self._conversations.pop(session_id, None)
        if conversation is None:
            return False
        conversation.end()
        self._admission.forget_session(session_id)
        logger.info("Removed conversation for session %s", mask_session_id(session_id))
        return True

    def cleanup_all(self) -> int:
        """End and evict every Conversation. Used during shutdown."""
        conversations = list(self._conversations.values())
        self._conversations.clear()
        for conversation in conversations:
            conversation.end()
            self._admission.forget_session(conversation.session_id)
        if conversations:
            logger.info("Cleaned up %d conversations", len(conversations))
        return len(conversations)

    def live_channels(self) -> List[VoiceChannel]:
        return [c.channel for c in self._conversations.values() if c.channel is not None]

    @property
    def active_count(self) -> int:
        return sum(1 for c in self._conversations.values() if c.is_active)

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._conversations
