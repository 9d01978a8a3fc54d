"""
SilentDial - Voice Providers

Provider-specific implementations of the outbound call + duplex channel.

Supported Providers:
- elevenlabs: ElevenLabs conversational agent over Twilio
- simulator: Development call simulator
"""

from .base import VoiceProvider
from .elevenlabs import ElevenLabsChannel, ElevenLabsProvider
from .simulator import SimulatedChannel, SimulatedVoiceProvider

__all__ = [
    "VoiceProvider",
    "ElevenLabsProvider",
    "ElevenLabsChannel",
    "SimulatedVoiceProvider",
    "SimulatedChannel",
]
