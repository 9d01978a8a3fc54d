"""
SilentDial - Exception Hierarchy

Structured exceptions for consistent error handling across the system.
All exceptions include error codes for API responses.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .types import AdmissionDecision


class SilentDialError(Exception):
    """Base exception for all SilentDial errors."""

    code: str = "UNKNOWN_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def retry_after(self) -> Optional[int]:
        """Seconds the caller should wait before retrying, when known."""
        return self.details.get("retryAfter")


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(SilentDialError):
    """Input validation error."""
    code = "VALIDATION_ERROR"
    status_code = 400


class ReportValidationError(ValidationError):
    """Emergency report failed its invariants."""
    code = "INVALID_REPORT"


# =============================================================================
# Admission Errors
# =============================================================================

class AdmissionError(SilentDialError):
    """Request rejected before any external call was attempted."""
    code = "ADMISSION_DENIED"
    status_code = 429


class RateLimitExceededError(AdmissionError):
    """Caller exceeded a fixed-window request limit."""
    code = "RATE_LIMIT_EXCEEDED"


class AdmissionDeniedError(AdmissionError):
    """Call admission rejected for a session."""

    def __init__(self, decision: "AdmissionDecision"):
        reason = decision.reason.value if decision.reason else "Call initiation not allowed"
        details = {"reason": reason}
        if decision.retry_after_seconds is not None:
            details["retryAfter"] = decision.retry_after_seconds
        super().__init__(reason, details)
        self.decision = decision
        if decision.is_duplicate:
            self.code = "CALL_ALREADY_IN_PROGRESS"
            self.status_code = 409
        else:
            self.code = "CALL_LIMIT_EXCEEDED"


# =============================================================================
# Session Errors
# =============================================================================

class SessionError(SilentDialError):
    """Error related to session management."""
    code = "SESSION_ERROR"
    status_code = 400


class SessionNotFoundError(SessionError):
    """Session not found."""
    code = "SESSION_NOT_FOUND"
    status_code = 404


# =============================================================================
# Conversation Errors
# =============================================================================

class ConversationError(SilentDialError):
    """Operation not valid in the conversation's current state."""
    code = "CONVERSATION_ERROR"
    status_code = 409


class ConversationNotActiveError(ConversationError):
    """Conversation has no live call."""
    code = "CONVERSATION_NOT_ACTIVE"


class ChannelNotReadyError(ConversationError):
    """Voice channel exists but is not open."""
    code = "CHANNEL_NOT_READY"


# =============================================================================
# Provider Errors
# =============================================================================

class ProviderError(SilentDialError):
    """Error in the voice provider integration."""
    code = "PROVIDER_ERROR"
    status_code = 502


class ProviderNotConfiguredError(ProviderError):
    """Provider credentials are missing."""
    code = "PROVIDER_NOT_CONFIGURED"
    status_code = 503


class CallInitiationError(ProviderError):
    """Outbound call request failed."""
    code = "CALL_INITIATION_FAILED"


class ChannelOpenError(ProviderError):
    """Voice channel failed to open or timed out during the handshake."""
    code = "CHANNEL_OPEN_FAILED"


class ChannelSendError(ProviderError):
    """A single send on the voice channel failed."""
    code = "CHANNEL_SEND_FAILED"


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(SilentDialError):
    """Configuration error."""
    code = "CONFIGURATION_ERROR"
    status_code = 500
