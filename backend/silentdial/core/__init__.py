"""
SilentDial - Core Package

Contains the call-session orchestration logic and domain types:
- types: Internal domain types and type aliases
- rate_limiter: Fixed-window request limiter
- admission: Global and per-session call admission
- conversation: Conversation state machine and session registry
- briefing: Text handed to the voice agent
- shutdown: Graceful teardown

The orchestration service lives in ``silentdial.core.call_service`` and is
imported directly (it depends on the telephony providers).
"""

from .types import (
    SessionId,
    EmergencyReport,
    GeoLocation,
    ServiceType,
    ConversationState,
    ConversationEvent,
    ConversationEventType,
    ConversationMessage,
    MessageRole,
    AdmissionDecision,
    AdmissionReason,
    RateLimitResult,
    CallOutcome,
    AICallStatus,
)
from .rate_limiter import RateLimiter
from .admission import AdmissionPolicy, CallAdmissionController
from .conversation import Conversation, ConversationRegistry, ConversationSubscription
from .briefing import CallBriefing, build_briefing, build_emergency_context

__all__ = [
    # Types
    "SessionId",
    "EmergencyReport",
    "GeoLocation",
    "ServiceType",
    "ConversationState",
    "ConversationEvent",
    "ConversationEventType",
    "ConversationMessage",
    "MessageRole",
    "AdmissionDecision",
    "AdmissionReason",
    "RateLimitResult",
    "CallOutcome",
    "AICallStatus",
    # Admission
    "RateLimiter",
    "AdmissionPolicy",
    "CallAdmissionController",
    # Conversation
    "Conversation",
    "ConversationRegistry",
    "ConversationSubscription",
    # Briefing
    "CallBriefing",
    "build_briefing",
    "build_emergency_context",
]
