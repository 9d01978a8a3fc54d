"""
SilentDial - Simulator Provider Tests

Tests for the credential-free provider used in development and demos.

Run with: pytest tests/test_simulator.py -v
"""

import asyncio
import json

import pytest

from silentdial.core.briefing import build_briefing
from silentdial.core.types import ConversationState
from silentdial.telephony.providers.simulator import (
    CALL_LOG_SIZE,
    DISPATCHER_SCRIPT,
    SimulatedVoiceProvider,
)


class Recorder:
    def __init__(self):
        self.messages = []

    def on_channel_open(self) -> None:
        pass

    def on_channel_message(self, raw: str) -> None:
        self.messages.append(json.loads(raw))

    def on_channel_close(self, code: int, reason: str) -> None:
        pass

    def on_channel_error(self, error: Exception) -> None:
        pass


class TestSimulatedProvider:
    """Tests for SimulatedVoiceProvider bookkeeping."""

    @pytest.mark.asyncio
    async def test_closed_channels_released(self):
        """The provider keeps no reference to a channel once it closes."""
        provider = SimulatedVoiceProvider(open_delay=0, reply_delay=0)

        for _ in range(50):
            conversation_id = await provider.start_call(build_briefing(None))
            provider.open_channel(conversation_id).close()

        assert provider.channels == {}

    @pytest.mark.asyncio
    async def test_open_channel_tracked_until_closed(self):
        provider = SimulatedVoiceProvider(open_delay=0, reply_delay=0)
        conversation_id = await provider.start_call(build_briefing(None))

        channel = provider.open_channel(conversation_id)
        assert provider.channels == {conversation_id: channel}

        channel.close()
        channel.close()
        assert conversation_id not in provider.channels

    @pytest.mark.asyncio
    async def test_call_log_bounded(self):
        """Only the most recent briefings are kept."""
        provider = SimulatedVoiceProvider(open_delay=0, reply_delay=0)

        for _ in range(CALL_LOG_SIZE + 10):
            await provider.start_call(build_briefing(None))

        assert len(provider.calls) == CALL_LOG_SIZE

    @pytest.mark.asyncio
    async def test_ended_conversation_releases_channel(self, registry):
        """Ending the owning conversation drops the provider's reference."""
        provider = SimulatedVoiceProvider(open_delay=0, reply_delay=0)
        conversation = registry.get_conversation("session-1")
        assert conversation.try_begin_call().allowed is True

        await conversation.start_call(provider, build_briefing(None))
        assert await conversation.wait_until_active(1.0) is True
        assert len(provider.channels) == 1

        registry.remove_conversation("session-1")

        assert conversation.state is ConversationState.ENDED
        assert provider.channels == {}


class TestSimulatedChannel:
    """Tests for the scripted dispatcher."""

    @pytest.mark.asyncio
    async def test_scripted_reply(self):
        """Each contextual update is answered with the next script line."""
        provider = SimulatedVoiceProvider(open_delay=0, reply_delay=0)
        channel = provider.open_channel("SIM_test")
        recorder = Recorder()
        channel.bind(recorder)
        await asyncio.sleep(0.01)

        await channel.send({"type": "contextual_update", "text": "hello"})
        await channel.send({"type": "contextual_update", "text": "again"})
        await asyncio.sleep(0.01)

        assert [m["text"] for m in recorder.messages] == DISPATCHER_SCRIPT[:2]
        channel.close()
