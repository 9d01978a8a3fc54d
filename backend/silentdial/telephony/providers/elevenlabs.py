"""
SilentDial - ElevenLabs Voice Provider

Places outbound calls through the ElevenLabs conversational agent API and
attaches to the live conversation over its WebSocket endpoint.

Outbound call:
    POST {api}/v1/convai/twilio/outbound-call
    headers: xi-api-key
    body: agent_id, agent_phone_number_id, to_number,
          conversation_initiation_client_data (prompt + first message override)
    response: {"conversation_id": "..."}

Channel:
    {ws}/v1/convai/conversation?agent_id=...&conversation_id=...
    inbound: agent_transcript | agent_response | conversation_ended | ping
    outbound: contextual_update, keep-alive ping
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, Optional
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from silentdial.config import Settings
from silentdial.core.briefing import CallBriefing
from silentdial.core.exceptions import (
    CallInitiationError,
    ChannelNotReadyError,
    ChannelOpenError,
    ChannelSendError,
    ProviderNotConfiguredError,
)
from silentdial.core.logging import mask_conversation_id
from silentdial.telephony.channel import VoiceChannel
from silentdial.telephony.privacy import E164, classify_phone_number, mask_phone_number
from .base import VoiceProvider

logger = logging.getLogger(__name__)

OUTBOUND_CALL_PATH = "/v1/convai/twilio/outbound-call"
CONVERSATION_WS_PATH = "/v1/convai/conversation"
ERROR_PREFIX = "ElevenLabs API error"


# =============================================================================
# Duplex Channel
# =============================================================================

class ElevenLabsChannel(VoiceChannel):
    """
    WebSocket channel to a live ElevenLabs conversation.

    The connection is opened by a background task started with ``start()``.
    The handshake is bounded by ``connect_timeout``; a keep-alive ping is sent
    every ``keepalive_interval`` while the socket is open and the ping loop
    stops on its own once it is not.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        connect_timeout: float = 15.0,
        keepalive_interval: float = 30.0,
        max_payload_bytes: int = 1024 * 1024,
    ):
        super().__init__()
        self._url = url
        self._api_key = api_key
        self._connect_timeout = connect_timeout
        self._keepalive_interval = keepalive_interval
        self._max_payload_bytes = max_payload_bytes

        self._ws = None
        self._open = False
        self._closing = False
        self._closed = asyncio.Event()
        self._send_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._open

    def start(self) -> None:
        """Begin the handshake in the background."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="elevenlabs-channel")
            self._task.add_done_callback(self._on_run_done)

    async def send(self, payload: dict) -> None:
        if not self._open or self._ws is None:
            raise ChannelNotReadyError("WebSocket connection is not ready")

        async with self._send_lock:
            try:
                await self._ws.send(json.dumps(payload))
            except (ConnectionClosed, WebSocketException, OSError) as e:
                raise ChannelSendError(
                    "WebSocket connection issue, please try again",
                    details={"cause": str(e)},
                ) from e

    def close(self) -> None:
        if self._closing:
            return

        self._closing = True
        self.unbind()
        self._open = False
        self._cancel_keepalive()

        if self._ws is not None:
            self._close_task = asyncio.create_task(self._ws.close())
        elif self._task is not None and not self._task.done():
            self._task.cancel()
        else:
            self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def _on_run_done(self, task: asyncio.Task) -> None:
        # Also covers a task cancelled before its first step
        self._open = False
        self._closed.set()

    # -------------------------------------------------------------------------
    # Connection task
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        try:
            ws = await asyncio.wait_for(
                websockets.connect(
                    self._url,
                    additional_headers={"xi-api-key": self._api_key},
                    compression=None,
                    max_size=self._max_payload_bytes,
                ),
                timeout=self._connect_timeout,
            )
        except asyncio.CancelledError:
            self._closed.set()
            raise
        except asyncio.TimeoutError:
            logger.error(
                "WebSocket connection timeout after %.0f seconds", self._connect_timeout
            )
            self._closed.set()
            self._dispatch_error(
                ChannelOpenError(
                    f"Voice channel handshake timed out after {self._connect_timeout:.0f}s"
                )
            )
            return
        except (WebSocketException, OSError) as e:
            logger.error("WebSocket connection failed: %s", str(e))
            self._closed.set()
            self._dispatch_error(ChannelOpenError(f"Voice channel failed to open: {e}"))
            return

        self._ws = ws
        if self._closing:
            # close() raced the handshake
            await ws.close()
            self._closed.set()
            return

        self._open = True
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(), name="elevenlabs-ping")
        logger.info("WebSocket connection established")
        self._dispatch_open()

        code, reason = 1000, ""
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                self._dispatch_message(raw)
            code = ws.close_code or 1000
            reason = ws.close_reason or ""
        except ConnectionClosed as e:
            code, reason = _close_details(e)
        except Exception as e:
            logger.error("WebSocket reader failed: %s", str(e), exc_info=True)
            self._open = False
            self._cancel_keepalive()
            self._closed.set()
            self._dispatch_error(e)
            return

        self._open = False
        self._cancel_keepalive()
        self._closed.set()
        logger.info("WebSocket closed - Code: %s, Reason: %s", code, reason or "none")
        self._dispatch_close(code, reason)

    async def _keepalive_loop(self) -> None:
        while self._open:
            await asyncio.sleep(self._keepalive_interval)
            if not self._open or self._ws is None:
                break
            try:
                await self._ws.send(json.dumps({"type": "ping"}))
                logger.debug("Sent keep-alive ping")
            except (ConnectionClosed, WebSocketException, OSError) as e:
                logger.warning("Error sending ping: %s", str(e))
                break

    def _cancel_keepalive(self) -> None:
        if self._keepalive_task is not None and not self._keepalive_task.done():
            if self._keepalive_task is not asyncio.current_task():
                self._keepalive_task.cancel()
        self._keepalive_task = None


def _close_details(exc: ConnectionClosed) -> tuple[int, str]:
    """Extract close code and reason from a ConnectionClosed exception."""
    if exc.rcvd is not None:
        return exc.rcvd.code, exc.rcvd.reason
    return 1006, "connection lost"


# =============================================================================
# Provider
# =============================================================================

class ElevenLabsProvider(VoiceProvider):
    """
    ElevenLabs conversational agent integration.

    Args:
        settings: Application settings with credentials and channel timeouts
        http_client: Optional pre-built client (tests inject a MockTransport)
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.eleven_api_base_url,
            timeout=settings.provider_request_timeout_seconds,
            headers={"Content-Type": "application/json"},
        )

        if settings.callee_number:
            kind = classify_phone_number(settings.callee_number)
            if kind != E164:
                # Twilio-backed outbound calls expect +<country><number>
                logger.warning(
                    "CALLEE_NUMBER %s is %s, expected E.164",
                    mask_phone_number(settings.callee_number),
                    kind or "not a phone number",
                )

    @property
    def name(self) -> str:
        return "elevenlabs"

    def missing_configuration(self) -> Dict[str, bool]:
        return self._settings.voice_integration_missing

    async def aclose(self) -> None:
        await self._client.aclose()

    async def start_call(self, briefing: CallBriefing) -> str:
        if not self.is_configured:
            missing = [k for k, v in self.missing_configuration().items() if v]
            raise ProviderNotConfiguredError(
                "ElevenLabs integration not configured",
                details={"missing": missing},
            )

        body = {
            "agent_id": self._settings.eleven_agent_id,
            "agent_phone_number_id": self._settings.eleven_phone_id,
            "to_number": self._settings.callee_number,
            "conversation_initiation_client_data": {
                "type": "conversation_initiation_client_data",
                "conversation_config_override": {
                    "agent": {
                        "prompt": {"prompt": briefing.prompt},
                        "first_message": briefing.first_message,
                    },
                },
            },
        }

        logger.info(
            "Starting outbound call: to=%s, agent=%s",
            mask_phone_number(self._settings.callee_number),
            mask_conversation_id(self._settings.eleven_agent_id),
        )

        try:
            response = await self._client.post(
                OUTBOUND_CALL_PATH,
                json=body,
                headers={"xi-api-key": self._settings.eleven_api_key},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            message = _error_message(e.response)
            logger.error(
                "Outbound call rejected: status=%d, message=%s",
                e.response.status_code,
                message,
            )
            raise CallInitiationError(
                f"{ERROR_PREFIX}: {message}",
                details={"provider_status": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            logger.error("Outbound call request failed: %s", str(e))
            raise CallInitiationError(f"{ERROR_PREFIX}: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        conversation_id = data.get("conversation_id") if isinstance(data, dict) else None
        if not conversation_id or not isinstance(conversation_id, str):
            raise CallInitiationError(f"{ERROR_PREFIX}: response missing conversation_id")

        logger.info(
            "Call initiated successfully: conversation=%s",
            mask_conversation_id(conversation_id),
        )
        return conversation_id

    def channel_url(self, conversation_id: str) -> str:
        query = urlencode({
            "agent_id": self._settings.eleven_agent_id or "",
            "conversation_id": conversation_id,
        })
        return f"{self._settings.eleven_ws_base_url}{CONVERSATION_WS_PATH}?{query}"

    def open_channel(self, conversation_id: str) -> ElevenLabsChannel:
        channel = ElevenLabsChannel(
            url=self.channel_url(conversation_id),
            api_key=self._settings.eleven_api_key or "",
            connect_timeout=self._settings.channel_connect_timeout_seconds,
            keepalive_interval=self._settings.channel_keepalive_interval_seconds,
            max_payload_bytes=self._settings.channel_max_payload_bytes,
        )
        channel.start()
        logger.info(
            "Opening WebSocket connection for conversation: %s",
            mask_conversation_id(conversation_id),
        )
        return channel


def _error_message(response: httpx.Response) -> str:
    """Best-effort human message from a provider error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase

    if isinstance(data, dict):
        detail = data.get("detail")
        if isinstance(detail, dict):
            detail = detail.get("message") or detail.get("status")
        message = data.get("message") or detail
        if message:
            return str(message)
    return response.reason_phrase or f"HTTP {response.status_code}"
