"""
SilentDial - WebSocket Relay

Real-time bidirectional relay between the browser and a session's call:
- Streaming dispatcher transcripts and system notices to the client
- Receiving typed user messages and forwarding them to the live call
- Ending the call on request

When the session has no live call the relay acts as a fallback operator so
the text-only journey continues.

Protocol:
    Client -> Server (JSON text frames):
        {"type": "user-message", "text": "...", "timestamp": "..."}
        {"type": "end-call"}

    Server -> Client (JSON text frames):
        {"type": "connected", "session_id": "...", "mode": "live" | "fallback"}
        {"type": "operator-message", "text": "...", "timestamp": "..."}
        {"type": "system-message", "text": "...", "timestamp": "..."}
        {"type": "operator-typing"}
        {"type": "call-ended"}
        {"type": "error", "message": "..."}
"""

import asyncio
import json
import logging
import random
from datetime import datetime, timezone
from typing import Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from silentdial.config import Settings
from silentdial.core.call_service import EmergencyCallService
from silentdial.core.conversation import ConversationSubscription
from silentdial.core.exceptions import SilentDialError
from silentdial.core.logging import mask_session_id
from silentdial.core.types import ConversationEventType, MessageRole

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

FALLBACK_GREETING = (
    "Hello, this is emergency dispatch. I can see your request. "
    "Are you in immediate danger?"
)

FALLBACK_RESPONSES = [
    "I understand. Can you provide more details about your location?",
    "Help is on the way. Please stay safe and keep this connection open.",
    "Are there any injuries that need immediate medical attention?",
    "I've dispatched units to your location. ETA is approximately 5 minutes.",
]

SEND_FAILED_MESSAGE = "Failed to send message to operator"


def iso_timestamp(timestamp_ms: Optional[float] = None) -> str:
    if timestamp_ms is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()


# =============================================================================
# WebSocket Endpoint
# =============================================================================

@router.websocket("/ws/session/{session_id}")
async def session_relay(websocket: WebSocket, session_id: str):
    """
    Relay endpoint for one session.

    Live mode forwards the Conversation's events; fallback mode answers with
    the simulated dispatcher.
    """
    service: EmergencyCallService = websocket.app.state.call_service
    settings: Settings = websocket.app.state.settings

    await websocket.accept()
    relay = SessionRelay(websocket, session_id, service, settings)

    logger.info("WebSocket connected: session=%s", mask_session_id(session_id))

    try:
        await relay.run()
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected: session=%s", mask_session_id(session_id))
    except Exception as e:
        logger.error(
            "WebSocket error (session=%s): %s",
            mask_session_id(session_id), str(e),
            exc_info=True,
        )
    finally:
        await relay.close()


class SessionRelay:
    """State for one client connection."""

    def __init__(
        self,
        websocket: WebSocket,
        session_id: str,
        service: EmergencyCallService,
        settings: Settings,
    ):
        self.websocket = websocket
        self.session_id = session_id
        self.service = service
        self.settings = settings

        self._send_lock = asyncio.Lock()
        self._subscription: Optional[ConversationSubscription] = None
        self._forward_task: Optional[asyncio.Task] = None
        self._fallback_tasks: Set[asyncio.Task] = set()

    async def run(self) -> None:
        live = self._ensure_subscribed()
        await self.send({
            "type": "connected",
            "session_id": self.session_id,
            "mode": "live" if live else "fallback",
        })

        if not live:
            logger.info(
                "No active call for session %s, using fallback operator",
                mask_session_id(self.session_id),
            )
            self._spawn(self._fallback_greeting())

        while True:
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            text = message.get("text")
            if text is None:
                await self.send({"type": "error", "message": "Binary frames are not supported"})
                continue

            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as e:
                logger.warning("Invalid JSON in WebSocket message: %s", str(e))
                await self.send({"type": "error", "message": "Invalid JSON format"})
                continue

            msg_type = parsed.get("type") if isinstance(parsed, dict) else None

            if msg_type == "user-message":
                await self.handle_user_message(str(parsed.get("text") or ""))
            elif msg_type == "end-call":
                await self.handle_end_call()
                return
            else:
                logger.warning("Unknown message type: %s", msg_type)
                await self.send({"type": "error", "message": f"Unknown message type: {msg_type}"})

    async def send(self, payload: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_json(payload)

    async def push(self, payload: dict) -> bool:
        """Send from a background task. False once the client is gone."""
        try:
            await self.send(payload)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug("Dropping %s for closed WebSocket: %s", payload.get("type"), str(e))
            return False
        return True

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

        tasks = list(self._fallback_tasks)
        if self._forward_task is not None:
            tasks.append(self._forward_task)
            self._forward_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._fallback_tasks.clear()

    # -------------------------------------------------------------------------
    # Client messages
    # -------------------------------------------------------------------------

    async def handle_user_message(self, text: str) -> None:
        if not text.strip():
            await self.send({"type": "error", "message": "Message text is required"})
            return

        if self._ensure_subscribed():
            try:
                delivered = await self.service.relay_user_message(self.session_id, text)
            except SilentDialError as e:
                logger.error("Error sending message to voice channel: %s", e.message)
                await self.send({"type": "error", "message": SEND_FAILED_MESSAGE})
                return
            if delivered:
                logger.debug("User message relayed (%d chars)", len(text))
            return

        await self.send({"type": "operator-typing"})
        self._spawn(self._fallback_reply())

    async def handle_end_call(self) -> None:
        # Stop forwarding first so call-ended goes out exactly once
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._forward_task is not None:
            self._forward_task.cancel()
            await asyncio.gather(self._forward_task, return_exceptions=True)
            self._forward_task = None

        self.service.end_call(self.session_id)
        logger.info("Call ended by client for session %s", mask_session_id(self.session_id))
        await self.send({"type": "call-ended"})
        await self.websocket.close(code=1000)

    # -------------------------------------------------------------------------
    # Live forwarding
    # -------------------------------------------------------------------------

    def _ensure_subscribed(self) -> bool:
        """Subscribe to the session's live conversation. False when there is none."""
        if self._subscription is not None and self._forward_task is not None and not self._forward_task.done():
            return True

        conversation = self.service.registry.get(self.session_id)
        if conversation is None or not conversation.is_active:
            return False

        self._subscription = conversation.subscribe()
        self._forward_task = asyncio.create_task(self._forward(self._subscription))
        return True

    async def _forward(self, subscription: ConversationSubscription) -> None:
        while True:
            event = await subscription.get()

            if event.type is ConversationEventType.MESSAGE and event.message is not None:
                message = event.message
                if message.role is MessageRole.CALLEE:
                    await self.push({
                        "type": "operator-message",
                        "text": message.text,
                        "timestamp": iso_timestamp(message.timestamp_ms),
                    })
                elif message.role is MessageRole.SYSTEM:
                    await self.push({
                        "type": "system-message",
                        "text": message.text,
                        "timestamp": iso_timestamp(message.timestamp_ms),
                    })
            elif event.type is ConversationEventType.ERROR:
                await self.push({"type": "error", "message": event.error or SEND_FAILED_MESSAGE})
            elif event.type is ConversationEventType.ENDED:
                logger.info("Conversation ended for session %s", mask_session_id(self.session_id))
                await self.push({"type": "call-ended"})
                subscription.close()
                return

    # -------------------------------------------------------------------------
    # Fallback operator
    # -------------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._fallback_tasks.add(task)
        task.add_done_callback(self._fallback_tasks.discard)

    async def _fallback_greeting(self) -> None:
        await asyncio.sleep(self.settings.fallback_greeting_delay_seconds)
        await self.push({
            "type": "operator-message",
            "text": FALLBACK_GREETING,
            "timestamp": iso_timestamp(),
        })

    async def _fallback_reply(self) -> None:
        delay = random.uniform(
            self.settings.fallback_reply_delay_min_seconds,
            self.settings.fallback_reply_delay_max_seconds,
        )
        await asyncio.sleep(delay)
        await self.push({
            "type": "operator-message",
            "text": random.choice(FALLBACK_RESPONSES),
            "timestamp": iso_timestamp(),
        })
