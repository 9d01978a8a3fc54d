"""
SilentDial - ElevenLabs Provider Tests

Tests for the outbound call request (httpx MockTransport) and the duplex
channel (websockets.connect monkeypatched with an in-memory socket).

Run with: pytest tests/test_elevenlabs_provider.py -v
"""

import asyncio
import json
from typing import List, Optional, Tuple

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError

from silentdial.config import Settings
from silentdial.core.briefing import CallBriefing
from silentdial.core.exceptions import (
    CallInitiationError,
    ChannelNotReadyError,
    ChannelOpenError,
    ProviderNotConfiguredError,
)
from silentdial.telephony.providers import elevenlabs
from silentdial.telephony.providers.elevenlabs import ElevenLabsChannel, ElevenLabsProvider


BRIEFING = CallBriefing(prompt="Agent prompt", first_message="Hello dispatcher")


@pytest.fixture
def eleven_settings() -> Settings:
    return Settings(
        app_env="testing",
        voice_provider="elevenlabs",
        eleven_api_key="sk_test_key",
        eleven_agent_id="agent_123",
        eleven_phone_id="phone_456",
        callee_number="+14155550100",
    )


def make_provider(settings: Settings, handler) -> ElevenLabsProvider:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url=settings.eleven_api_base_url,
    )
    return ElevenLabsProvider(settings, http_client=client)


class RecordingHandler:
    """Channel handler that records every lifecycle event."""

    def __init__(self):
        self.opened = 0
        self.messages: List[str] = []
        self.closes: List[Tuple[int, str]] = []
        self.errors: List[Exception] = []

    def on_channel_open(self) -> None:
        self.opened += 1

    def on_channel_message(self, raw: str) -> None:
        self.messages.append(raw)

    def on_channel_close(self, code: int, reason: str) -> None:
        self.closes.append((code, reason))

    def on_channel_error(self, error: Exception) -> None:
        self.errors.append(error)


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, incoming: Optional[list] = None, fail_with: Optional[Exception] = None):
        self.incoming = list(incoming or [])
        self.fail_with = fail_with
        self.sent: List[dict] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._closed = asyncio.Event()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.incoming:
            yield message
        if self.fail_with is not None:
            raise self.fail_with
        await self._closed.wait()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.remote_close(1000, "")

    def remote_close(self, code: int, reason: str) -> None:
        self.close_code = code
        self.close_reason = reason
        self._closed.set()


def patch_connect(monkeypatch, websocket: FakeWebSocket) -> dict:
    captured = {}

    async def fake_connect(url, **kwargs):
        captured["url"] = url
        captured.update(kwargs)
        return websocket

    monkeypatch.setattr(elevenlabs.websockets, "connect", fake_connect)
    return captured


# =============================================================================
# Outbound Call
# =============================================================================

class TestStartCall:
    """Tests for the outbound call HTTP request."""

    @pytest.mark.asyncio
    async def test_request_shape(self, eleven_settings):
        """The request carries credentials, destination and the briefing override."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("xi-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"conversation_id": "conv_abc123"})

        provider = make_provider(eleven_settings, handler)
        conversation_id = await provider.start_call(BRIEFING)
        await provider.aclose()

        assert conversation_id == "conv_abc123"
        assert seen["path"] == "/v1/convai/twilio/outbound-call"
        assert seen["key"] == "sk_test_key"

        body = seen["body"]
        assert body["agent_id"] == "agent_123"
        assert body["agent_phone_number_id"] == "phone_456"
        assert body["to_number"] == "+14155550100"
        client_data = body["conversation_initiation_client_data"]
        assert client_data["type"] == "conversation_initiation_client_data"
        agent = client_data["conversation_config_override"]["agent"]
        assert agent["prompt"]["prompt"] == "Agent prompt"
        assert agent["first_message"] == "Hello dispatcher"

    @pytest.mark.asyncio
    async def test_provider_error_message_wrapped(self, eleven_settings):
        """Provider errors surface their message behind the provider prefix."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"detail": {"status": "not_found", "message": "Agent not found"}})

        provider = make_provider(eleven_settings, handler)
        with pytest.raises(CallInitiationError) as exc_info:
            await provider.start_call(BRIEFING)

        assert exc_info.value.message == "ElevenLabs API error: Agent not found"
        assert exc_info.value.details["provider_status"] == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {},
        {"conversation_id": ""},
        {"conversation_id": 123},
        ["conv_abc123"],
        "conv_abc123",
        None,
    ])
    async def test_missing_conversation_id(self, eleven_settings, body):
        """A success response without a usable id is still a failed call."""
        provider = make_provider(eleven_settings, lambda request: httpx.Response(200, json=body))

        with pytest.raises(CallInitiationError):
            await provider.start_call(BRIEFING)

    @pytest.mark.asyncio
    async def test_transport_error(self, eleven_settings):
        """Network failures are wrapped as call initiation errors."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = make_provider(eleven_settings, handler)
        with pytest.raises(CallInitiationError) as exc_info:
            await provider.start_call(BRIEFING)

        assert exc_info.value.message.startswith("ElevenLabs API error: ")

    @pytest.mark.asyncio
    async def test_not_configured(self):
        """Missing credentials fail before any request is made."""
        calls = []
        settings = Settings(app_env="testing", eleven_api_key=None, eleven_agent_id="agent_123")

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"conversation_id": "x"})

        provider = make_provider(settings, handler)
        assert provider.is_configured is False
        assert provider.missing_configuration()["ELEVEN_API_KEY"] is True

        with pytest.raises(ProviderNotConfiguredError) as exc_info:
            await provider.start_call(BRIEFING)

        assert "ELEVEN_API_KEY" in exc_info.value.details["missing"]
        assert calls == []

    def test_channel_url(self, eleven_settings):
        provider = ElevenLabsProvider(eleven_settings, http_client=httpx.AsyncClient())

        url = provider.channel_url("conv_abc123")

        assert url == (
            "wss://api.elevenlabs.io/v1/convai/conversation"
            "?agent_id=agent_123&conversation_id=conv_abc123"
        )


# =============================================================================
# Duplex Channel
# =============================================================================

class TestChannel:
    """Tests for the WebSocket channel lifecycle."""

    @pytest.mark.asyncio
    async def test_connect_options(self, monkeypatch):
        """The handshake sends the API key and disables compression."""
        websocket = FakeWebSocket()
        captured = patch_connect(monkeypatch, websocket)
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key", max_payload_bytes=1024)

        channel.start()
        await asyncio.sleep(0.01)

        assert captured["url"] == "wss://example.test/ws"
        assert captured["additional_headers"] == {"xi-api-key": "sk_test_key"}
        assert captured["compression"] is None
        assert captured["max_size"] == 1024

        channel.close()
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_messages_dispatched_in_order(self, monkeypatch):
        """Open fires once, then inbound frames in arrival order."""
        websocket = FakeWebSocket(incoming=[
            json.dumps({"type": "agent_transcript", "text": "one"}),
            b'{"type": "agent_response", "text": "two"}',
        ])
        patch_connect(monkeypatch, websocket)
        handler = RecordingHandler()
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key")
        channel.bind(handler)

        channel.start()
        await asyncio.sleep(0.01)

        assert channel.is_open is True
        assert handler.opened == 1
        assert [json.loads(m)["text"] for m in handler.messages] == ["one", "two"]

        channel.close()
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_send(self, monkeypatch):
        """Payloads are JSON encoded onto the socket."""
        websocket = FakeWebSocket()
        patch_connect(monkeypatch, websocket)
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key")

        with pytest.raises(ChannelNotReadyError):
            await channel.send({"type": "contextual_update", "text": "early"})

        channel.start()
        await asyncio.sleep(0.01)
        await channel.send({"type": "contextual_update", "text": "hello", "conversation_id": "c1"})

        assert websocket.sent == [{"type": "contextual_update", "text": "hello", "conversation_id": "c1"}]

        channel.close()
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_remote_close_reported(self, monkeypatch):
        """A close from the provider reaches the handler with code and reason."""
        websocket = FakeWebSocket()
        patch_connect(monkeypatch, websocket)
        handler = RecordingHandler()
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key")
        channel.bind(handler)
        channel.start()
        await asyncio.sleep(0.01)

        websocket.remote_close(1000, "conversation over")
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)

        assert handler.closes == [(1000, "conversation over")]
        assert channel.is_open is False

    @pytest.mark.asyncio
    async def test_abnormal_close_reported(self, monkeypatch):
        """A dropped connection is reported as close code 1006."""
        websocket = FakeWebSocket(fail_with=ConnectionClosedError(None, None))
        patch_connect(monkeypatch, websocket)
        handler = RecordingHandler()
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key")
        channel.bind(handler)

        channel.start()
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)

        assert handler.closes[0][0] == 1006

    @pytest.mark.asyncio
    async def test_local_close_not_reported(self, monkeypatch):
        """After close() the owner hears nothing further."""
        websocket = FakeWebSocket()
        patch_connect(monkeypatch, websocket)
        handler = RecordingHandler()
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key")
        channel.bind(handler)
        channel.start()
        await asyncio.sleep(0.01)

        channel.close()
        channel.close()
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)

        assert handler.closes == []
        assert websocket.close_code == 1000

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, monkeypatch):
        """A handshake that never completes is reported as an open failure."""
        async def hanging_connect(url, **kwargs):
            await asyncio.sleep(10)

        monkeypatch.setattr(elevenlabs.websockets, "connect", hanging_connect)
        handler = RecordingHandler()
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key", connect_timeout=0.05)
        channel.bind(handler)

        channel.start()
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)

        assert len(handler.errors) == 1
        assert isinstance(handler.errors[0], ChannelOpenError)
        assert handler.opened == 0

    @pytest.mark.asyncio
    async def test_connect_refused(self, monkeypatch):
        """OS-level connect failures are reported as open failures."""
        async def refusing_connect(url, **kwargs):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(elevenlabs.websockets, "connect", refusing_connect)
        handler = RecordingHandler()
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key")
        channel.bind(handler)

        channel.start()
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)

        assert isinstance(handler.errors[0], ChannelOpenError)

    @pytest.mark.asyncio
    async def test_close_during_handshake(self, monkeypatch):
        """Closing while connecting cancels the handshake."""
        async def hanging_connect(url, **kwargs):
            await asyncio.sleep(10)

        monkeypatch.setattr(elevenlabs.websockets, "connect", hanging_connect)
        handler = RecordingHandler()
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key")
        channel.bind(handler)
        channel.start()
        await asyncio.sleep(0)

        channel.close()
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)

        assert handler.errors == []
        assert handler.opened == 0

    @pytest.mark.asyncio
    async def test_keepalive_ping(self, monkeypatch):
        """Pings are sent on the keep-alive interval while open."""
        websocket = FakeWebSocket()
        patch_connect(monkeypatch, websocket)
        channel = ElevenLabsChannel("wss://example.test/ws", "sk_test_key", keepalive_interval=0.01)

        channel.start()
        await asyncio.sleep(0.05)

        assert {"type": "ping"} in websocket.sent

        channel.close()
        await asyncio.wait_for(channel.wait_closed(), timeout=1.0)
