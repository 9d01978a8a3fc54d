"""
SilentDial - REST API Routes

Endpoints for emergency intake, session call control and voice status.
Live transcript relay is handled separately via WebSocket.

Architecture:
    All call operations flow through the EmergencyCallService, accessed via
    dependency injection from app.state. Errors are raised as SilentDialError
    subclasses and rendered by the application's exception handlers.
"""

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from silentdial.core.call_service import EmergencyCallService
from silentdial.core.types import CallOutcome

from .schemas import (
    CallOutcomeResponse,
    EmergencyReportRequest,
    EndCallResponse,
    SessionStatusResponse,
    UserMessageRequest,
    UserMessageResponse,
    VoiceStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])


# =============================================================================
# Dependencies
# =============================================================================

def get_call_service(request: Request) -> EmergencyCallService:
    """Dependency to get the call service from app state."""
    return request.app.state.call_service


def get_client_ip(request: Request) -> str:
    """Caller identity for rate limiting: first X-Forwarded-For hop, else peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client is not None:
        return request.client.host
    return "unknown"


def _apply_rate_limit_headers(response: Response, outcome: CallOutcome) -> None:
    if outcome.rate_limit is None:
        return
    response.headers["X-RateLimit-Limit"] = str(outcome.rate_limit.limit)
    response.headers["X-RateLimit-Remaining"] = str(outcome.rate_limit.remaining)
    response.headers["X-RateLimit-Reset"] = str(int(outcome.rate_limit.reset_time_ms))


# =============================================================================
# Emergency Intake
# =============================================================================

@router.post(
    "/emergency",
    response_model=CallOutcomeResponse,
    response_model_exclude_none=True,
)
async def submit_emergency(
    body: EmergencyReportRequest,
    request: Request,
    response: Response,
    service: EmergencyCallService = Depends(get_call_service),
):
    """
    Submit an emergency report and start the AI call.

    Returns the new session id and whether the call is live. When the call
    cannot be placed the response still succeeds with ``fallbackMode`` so the
    client continues as a text exchange.
    """
    outcome = await service.submit_report(body.to_domain(), get_client_ip(request))
    _apply_rate_limit_headers(response, outcome)
    return CallOutcomeResponse.from_outcome(outcome)


# =============================================================================
# Session Call Control
# =============================================================================

@router.post(
    "/sessions/{session_id}/call",
    response_model=CallOutcomeResponse,
    response_model_exclude_none=True,
)
async def place_call(
    session_id: str,
    request: Request,
    response: Response,
    service: EmergencyCallService = Depends(get_call_service),
):
    """Place (or retry) the AI call for an existing session."""
    outcome = await service.place_call(session_id, get_client_ip(request))
    _apply_rate_limit_headers(response, outcome)
    return CallOutcomeResponse.from_outcome(outcome)


@router.post("/sessions/{session_id}/messages", response_model=UserMessageResponse)
async def send_user_message(
    session_id: str,
    body: UserMessageRequest,
    service: EmergencyCallService = Depends(get_call_service),
):
    """Relay typed text to the live call."""
    delivered = await service.relay_user_message(session_id, body.text)
    return UserMessageResponse(delivered=delivered)


@router.post("/sessions/{session_id}/end", response_model=EndCallResponse)
async def end_call(
    session_id: str,
    service: EmergencyCallService = Depends(get_call_service),
):
    """End the session's call. Ending an unknown session reports ended=false."""
    return EndCallResponse(ended=service.end_call(session_id))


@router.get("/sessions/{session_id}", response_model=SessionStatusResponse)
async def get_session_status(
    session_id: str,
    service: EmergencyCallService = Depends(get_call_service),
):
    """Get the current state of a session's conversation."""
    return SessionStatusResponse(**service.session_status(session_id))


# =============================================================================
# Voice Integration Status
# =============================================================================

@router.get("/voice/status", response_model=VoiceStatusResponse)
async def voice_status(service: EmergencyCallService = Depends(get_call_service)):
    """
    Report whether the voice integration is configured.

    Only the presence of each required setting is reported, never its value.
    """
    status = service.integration_status()
    if not status["configured"]:
        payload = VoiceStatusResponse(
            success=False,
            message="Voice integration not configured",
            **status,
        )
        return JSONResponse(status_code=400, content=payload.model_dump(exclude_none=True))

    return VoiceStatusResponse(success=True, message="Voice integration configured", **status)
