"""
SilentDial - Core Domain Types

Internal type definitions for the call-session core. These are domain objects
used within the core and telephony layers, independent of API serialization.

Design Notes:
- API layer converts pydantic schemas to/from these types.
- Dataclasses for simplicity; frozen where the value must not change after
  creation (reports, messages, events, decisions).
- Time is carried as epoch milliseconds throughout the core, which keeps
  window arithmetic in the limiter and admission controller integer-exact.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, NewType, Optional

from .exceptions import ReportValidationError


# =============================================================================
# Type Aliases
# =============================================================================

SessionId = NewType("SessionId", str)
"""Server-generated session identifier: emergency_<epoch ms>_<random suffix>."""

Clock = Callable[[], float]
"""Returns the current time in epoch milliseconds."""


def now_ms() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000


DESCRIPTION_MIN_LENGTH = 10
DESCRIPTION_MAX_LENGTH = 280


# =============================================================================
# Emergency Report
# =============================================================================

class ServiceType(str, Enum):
    """Emergency service the caller needs."""
    POLICE = "police"
    FIRE = "fire"
    AMBULANCE = "ambulance"


@dataclass(frozen=True)
class GeoLocation:
    """Latitude/longitude pair reported by the browser."""
    latitude: float
    longitude: float


@dataclass(frozen=True)
class EmergencyReport:
    """
    Validated emergency report produced by the intake form.

    Invariants:
        - description length within [10, 280]
        - at least one of location or manual_address is present
    """
    service_needed: ServiceType
    description: str
    browser_language: str
    timestamp: str
    location: Optional[GeoLocation] = None
    manual_address: Optional[str] = None

    def __post_init__(self) -> None:
        length = len(self.description)
        if not DESCRIPTION_MIN_LENGTH <= length <= DESCRIPTION_MAX_LENGTH:
            raise ReportValidationError(
                f"Description must be between {DESCRIPTION_MIN_LENGTH} and "
                f"{DESCRIPTION_MAX_LENGTH} characters",
                details={"field": "description", "length": length},
            )
        if self.location is None and not (self.manual_address and self.manual_address.strip()):
            raise ReportValidationError(
                "Either a location or a manual address is required",
                details={"field": "location"},
            )


# =============================================================================
# Conversation Messages & Events
# =============================================================================

class MessageRole(str, Enum):
    """Who produced a conversation message."""
    USER = "user"
    CALLEE = "callee"
    SYSTEM = "system"


@dataclass(frozen=True)
class ConversationMessage:
    """One entry of a conversation's append-only message log."""
    role: MessageRole
    text: str
    timestamp_ms: float = field(default_factory=now_ms)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "timestamp": self.timestamp_ms,
        }


class ConversationState(str, Enum):
    """Lifecycle of one outbound call."""
    IDLE = "idle"
    CALLING = "calling"
    ACTIVE = "active"
    ENDED = "ended"


class ConversationEventType(str, Enum):
    """Kinds of notifications a conversation publishes to its subscribers."""
    MESSAGE = "message"
    ENDED = "ended"
    ERROR = "error"


@dataclass(frozen=True)
class ConversationEvent:
    """Notification delivered to conversation subscribers."""
    type: ConversationEventType
    message: Optional[ConversationMessage] = None
    error: Optional[str] = None


# =============================================================================
# Rate Limiting & Admission
# =============================================================================

@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a fixed-window rate limit check."""
    allowed: bool
    remaining: int
    reset_time_ms: float
    limit: int

    def retry_after_seconds(self, now: Optional[float] = None) -> int:
        """Whole seconds until the window resets (at least 1)."""
        current = now_ms() if now is None else now
        return max(1, math.ceil((self.reset_time_ms - current) / 1000))


class AdmissionReason(str, Enum):
    """Why a call attempt was rejected. Values are shown to the user."""
    CALL_ALREADY_ACTIVE = "Call already active"
    CALL_ALREADY_INITIATED = "Call already initiated"
    HOURLY_LIMIT = "Hourly call limit exceeded"
    MINUTE_LIMIT = "Minute call limit exceeded"
    COOLDOWN = "Call cooldown period active"
    SESSION_LIMIT = "Session call limit exceeded"


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of admission control. Rejections carry a reason and retry hint."""
    allowed: bool
    reason: Optional[AdmissionReason] = None
    retry_after_seconds: Optional[int] = None

    @classmethod
    def allow(cls) -> "AdmissionDecision":
        return cls(allowed=True)

    @classmethod
    def deny(
        cls,
        reason: AdmissionReason,
        retry_after_seconds: Optional[int] = None,
    ) -> "AdmissionDecision":
        return cls(allowed=False, reason=reason, retry_after_seconds=retry_after_seconds)

    @property
    def is_duplicate(self) -> bool:
        """Rejected because this session already has a call in progress."""
        return self.reason in (
            AdmissionReason.CALL_ALREADY_ACTIVE,
            AdmissionReason.CALL_ALREADY_INITIATED,
        )


# =============================================================================
# Call Outcome
# =============================================================================

class AICallStatus(str, Enum):
    """Call status reported back to the intake client."""
    ACTIVE = "active"
    FAILED = "failed"


@dataclass(frozen=True)
class CallOutcome:
    """Result of placing a call for a session."""
    session_id: str
    ai_call_status: AICallStatus
    conversation_id: Optional[str] = None
    fallback_mode: bool = False
    error: Optional[str] = None
    rate_limit: Optional[RateLimitResult] = None
