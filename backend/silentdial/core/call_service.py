"""
SilentDial - Emergency Call Service

Orchestrates the external-facing operations:
- submit report: rate limit -> new session -> admission -> call -> wait active
- place call for an existing session (retry after fallback)
- relay user text to the live call
- end call
- status checks

Provider failures never fail the request: the outcome reports
``ai_call_status=failed`` with ``fallback_mode=True`` so the client can keep
going as a text-only exchange.
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import replace
from typing import Any, Dict, Optional

from silentdial.config import Settings
from silentdial.telephony.providers import (
    ElevenLabsProvider,
    SimulatedVoiceProvider,
    VoiceProvider,
)

from .admission import AdmissionPolicy, CallAdmissionController
from .briefing import build_briefing, build_emergency_context
from .conversation import Conversation, ConversationRegistry
from .exceptions import (
    AdmissionDeniedError,
    ChannelOpenError,
    ConfigurationError,
    ConversationError,
    ProviderError,
    RateLimitExceededError,
    SessionNotFoundError,
)
from .logging import CallEvent, LogContext, log_call_event, mask_session_id
from .rate_limiter import RateLimiter
from .types import (
    AdmissionDecision,
    AICallStatus,
    CallOutcome,
    Clock,
    EmergencyReport,
    RateLimitResult,
    now_ms,
)

logger = logging.getLogger(__name__)

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase


def generate_session_id(clock: Optional[Clock] = None) -> str:
    """emergency_<epoch ms>_<9 random base36 chars>"""
    timestamp = int((clock or now_ms)())
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(9))
    return f"emergency_{timestamp}_{suffix}"


class EmergencyCallService:
    """
    Session-level orchestration over the registry, admission and provider.

    Usage:
        service = create_call_service(settings)
        await service.startup()

        outcome = await service.submit_report(report, caller_id="203.0.113.7")

        await service.aclose()
    """

    def __init__(
        self,
        settings: Settings,
        provider: VoiceProvider,
        registry: ConversationRegistry,
        admission: CallAdmissionController,
        rate_limiter: RateLimiter,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings
        self.provider = provider
        self.registry = registry
        self.admission = admission
        self.rate_limiter = rate_limiter
        self._clock = clock or now_ms

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def startup(self) -> None:
        await self.rate_limiter.start()
        logger.info(
            "Call service started: provider=%s, configured=%s",
            self.provider.name,
            self.provider.is_configured,
        )

    async def aclose(self) -> None:
        await self.provider.aclose()

    # -------------------------------------------------------------------------
    # Rate limits
    # -------------------------------------------------------------------------

    def check_emergency_rate(self, caller_id: str) -> RateLimitResult:
        return self._check_rate(
            f"emergency:{caller_id}",
            self.settings.emergency_rate_limit_max,
            self.settings.emergency_rate_limit_window_ms,
            "Too many emergency requests. Please wait before trying again.",
        )

    def check_voice_api_rate(self, caller_id: str) -> RateLimitResult:
        return self._check_rate(
            f"voice-api:{caller_id}",
            self.settings.voice_api_rate_limit_max,
            self.settings.voice_api_rate_limit_window_ms,
            "Too many voice API requests. Please wait before trying again.",
        )

    def _check_rate(self, key: str, max_requests: int, window_ms: int, message: str) -> RateLimitResult:
        result = self.rate_limiter.check(key, max_requests, window_ms)
        if not result.allowed:
            bucket = key.split(":", 1)[0]
            log_call_event(
                logger, logging.WARNING, CallEvent.RATE_LIMITED,
                "Rate limit exceeded for %s", bucket,
                bucket=bucket, limit=result.limit, reset_time=int(result.reset_time_ms),
            )
            raise RateLimitExceededError(
                message,
                details={
                    "retryAfter": result.retry_after_seconds(self._clock()),
                    "remaining": result.remaining,
                    "limit": result.limit,
                    "resetTime": int(result.reset_time_ms),
                },
            )
        return result

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def submit_report(self, report: EmergencyReport, caller_id: str) -> CallOutcome:
        """
        Accept a validated emergency report and place the AI call.

        Raises:
            RateLimitExceededError: Caller exceeded the intake limit
            AdmissionDeniedError: Global ceilings rejected the call
        """
        rate = self.check_emergency_rate(caller_id)
        session_id = generate_session_id(self._clock)

        with LogContext(session_id=session_id):
            log_call_event(
                logger, logging.INFO, CallEvent.REPORT_RECEIVED,
                "Emergency report received: service=%s", report.service_needed.value,
                has_location=report.location is not None,
                has_address=bool(report.manual_address),
                language=report.browser_language,
            )

            conversation = self.registry.get_conversation(session_id, report)
            if not self.provider.is_configured:
                return replace(self._unavailable(conversation), rate_limit=rate)

            decision = conversation.try_begin_call()
            if not decision.allowed:
                self._log_denied(decision)
                self.registry.remove_conversation(session_id)
                raise AdmissionDeniedError(decision)

            outcome = await self._connect(conversation)

        return replace(outcome, rate_limit=rate)

    async def place_call(self, session_id: str, caller_id: str) -> CallOutcome:
        """
        Place a call for an existing session.

        Raises:
            RateLimitExceededError: Caller exceeded the voice API limit
            SessionNotFoundError: Unknown session
            AdmissionDeniedError: Duplicate call, cooldown or ceilings
        """
        rate = self.check_voice_api_rate(caller_id)
        conversation = self._require(session_id)

        with LogContext(session_id=session_id):
            if not self.provider.is_configured:
                return replace(self._unavailable(conversation), rate_limit=rate)

            decision = conversation.try_begin_call()
            if not decision.allowed:
                self._log_denied(decision)
                raise AdmissionDeniedError(decision)

            outcome = await self._connect(conversation)

        return replace(outcome, rate_limit=rate)

    async def relay_user_message(self, session_id: str, text: str) -> bool:
        """Forward user text to the live call. False on a transient send failure."""
        conversation = self._require(session_id)
        return await conversation.send_message(text)

    def end_call(self, session_id: str) -> bool:
        """End and evict the session's conversation."""
        ended = self.registry.remove_conversation(session_id)
        if not ended:
            logger.debug("End requested for unknown session %s", mask_session_id(session_id))
        return ended

    def session_status(self, session_id: str) -> Dict[str, Any]:
        return self._require(session_id).snapshot()

    def integration_status(self) -> Dict[str, Any]:
        """Whether the voice integration is usable. Never includes secret values."""
        missing = [name for name, absent in self.provider.missing_configuration().items() if absent]
        return {
            "configured": not missing,
            "provider": self.provider.name,
            "missing": missing,
        }

    def health(self) -> Dict[str, Any]:
        return {
            "sessions": len(self.registry),
            "active_calls": self.registry.active_count,
            "rate_limiter_running": self.rate_limiter.is_running,
            "provider": self.provider.name,
            "provider_configured": self.provider.is_configured,
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require(self, session_id: str) -> Conversation:
        conversation = self.registry.get(session_id)
        if conversation is None:
            raise SessionNotFoundError(
                "Session not found",
                details={"sessionId": session_id},
            )
        return conversation

    def _log_denied(self, decision: AdmissionDecision) -> None:
        log_call_event(
            logger, logging.WARNING, CallEvent.ADMISSION_DENIED,
            "Call admission denied: %s", decision.reason.value if decision.reason else "unknown",
            retry_after=decision.retry_after_seconds,
        )

    def _unavailable(self, conversation: Conversation) -> CallOutcome:
        # No admission is consumed when no call can be placed
        log_call_event(
            logger, logging.WARNING, CallEvent.FALLBACK,
            "Voice integration not configured, continuing in fallback mode",
            provider=self.provider.name,
        )
        return CallOutcome(
            session_id=conversation.session_id,
            ai_call_status=AICallStatus.FAILED,
            fallback_mode=True,
            error="Voice integration not configured",
        )

    async def _connect(self, conversation: Conversation) -> CallOutcome:
        """Place the admitted call and wait until the channel is live."""
        briefing = build_briefing(conversation.report)
        timeout = self.settings.call_activation_timeout_seconds

        try:
            await conversation.start_call(self.provider, briefing)
            if not await conversation.wait_until_active(timeout):
                conversation.abort_call("Voice channel did not open")
                raise ChannelOpenError(
                    f"Voice channel did not open within {timeout:.0f}s",
                    details={"timeout": timeout},
                )
        except ProviderError as e:
            log_call_event(
                logger, logging.ERROR, CallEvent.CALL_FAILED,
                "AI call initiation failed, continuing in fallback mode: %s", e.message,
                code=e.code,
            )
            return CallOutcome(
                session_id=conversation.session_id,
                ai_call_status=AICallStatus.FAILED,
                fallback_mode=True,
                error=e.message,
            )

        with LogContext(conversation_id=conversation.conversation_id):
            log_call_event(
                logger, logging.INFO, CallEvent.CALL_ACTIVE,
                "AI call active for session %s", mask_session_id(conversation.session_id),
                provider=self.provider.name,
            )

            if conversation.report is not None:
                try:
                    await conversation.send_message(build_emergency_context(conversation.report))
                except ConversationError as e:
                    logger.warning("Failed to send emergency context: %s", e.message)

        return CallOutcome(
            session_id=conversation.session_id,
            ai_call_status=AICallStatus.ACTIVE,
            conversation_id=conversation.conversation_id,
        )


def create_provider(settings: Settings) -> VoiceProvider:
    """Build the voice provider named by ``settings.voice_provider``."""
    name = settings.voice_provider.lower()

    if name == "elevenlabs":
        provider = ElevenLabsProvider(settings)
        if not provider.is_configured:
            missing = [k for k, v in provider.missing_configuration().items() if v]
            logger.warning(
                "ElevenLabs integration not configured (missing: %s); calls will fall back",
                ", ".join(missing),
            )
        return provider

    if name == "simulator":
        return SimulatedVoiceProvider(
            open_delay=settings.simulator_open_delay_seconds,
            reply_delay=settings.simulator_reply_delay_seconds,
        )

    raise ConfigurationError(
        f"Unknown voice provider: {settings.voice_provider}",
        details={"voice_provider": settings.voice_provider},
    )


def create_call_service(
    settings: Settings,
    provider: Optional[VoiceProvider] = None,
    clock: Optional[Clock] = None,
) -> EmergencyCallService:
    """
    Factory function to create a fully wired call service.

    Args:
        settings: Application settings
        provider: Voice provider override (tests inject fakes)
        clock: Epoch-millisecond clock shared by limiter, admission and registry

    Returns:
        Configured EmergencyCallService
    """
    admission = CallAdmissionController(AdmissionPolicy.from_settings(settings), clock=clock)
    return EmergencyCallService(
        settings=settings,
        provider=provider or create_provider(settings),
        registry=ConversationRegistry(admission, clock=clock),
        admission=admission,
        rate_limiter=RateLimiter(settings.rate_limit_sweep_interval_seconds, clock=clock),
        clock=clock,
    )
