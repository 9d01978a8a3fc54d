"""
SilentDial - Telephony Integration Module

Connects a Conversation to a real (or simulated) phone call.

Components:
- channel: Duplex voice channel contract
- providers: ElevenLabs and simulator implementations
- privacy: Phone number masking

PRIVACY NOTICE:
    The destination number and provider credentials are never logged in
    cleartext and never returned by status endpoints.
"""

from .channel import ChannelHandler, VoiceChannel
from .privacy import classify_phone_number, mask_phone_number

__all__ = [
    "ChannelHandler",
    "VoiceChannel",
    "classify_phone_number",
    "mask_phone_number",
]
