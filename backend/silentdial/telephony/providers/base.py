"""
SilentDial - Voice Provider Base

Abstract base class for voice provider implementations.
"""

from abc import ABC, abstractmethod
from typing import Dict

from silentdial.core.briefing import CallBriefing
from silentdial.telephony.channel import VoiceChannel


class VoiceProvider(ABC):
    """
    Abstract base class for voice providers.

    Implementations handle provider-specific:
    - Outbound call request to a fixed destination number
    - Duplex channel URL and authentication
    - Error message extraction
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""
        ...

    @abstractmethod
    def missing_configuration(self) -> Dict[str, bool]:
        """
        Report which required settings are absent.

        Returns:
            Mapping of setting name to True when missing (values never included)
        """
        ...

    @property
    def is_configured(self) -> bool:
        """True when every required setting is present."""
        return not any(self.missing_configuration().values())

    @abstractmethod
    async def start_call(self, briefing: CallBriefing) -> str:
        """
        Ask the provider to dial the destination number.

        Args:
            briefing: Prompt and first message the voice agent speaks

        Returns:
            Opaque conversation identifier

        Raises:
            ProviderNotConfiguredError: If credentials are missing
            CallInitiationError: If the provider rejects the request
        """
        ...

    @abstractmethod
    def open_channel(self, conversation_id: str) -> VoiceChannel:
        """
        Start connecting the duplex channel for a placed call.

        Returns immediately; the channel reports open/close/error to the
        handler bound to it.
        """
        ...

    async def aclose(self) -> None:
        """Release provider resources (HTTP clients)."""
        return None
