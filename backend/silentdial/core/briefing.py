"""
SilentDial - Call Briefing

Turns an emergency report into the text the voice agent works from:
- the agent prompt (who it speaks for, the emergency details, how to behave)
- the first sentence spoken when the dispatcher answers
- the contextual update pushed once the channel is live
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .types import EmergencyReport, ServiceType


SERVICE_DESCRIPTIONS = {
    ServiceType.POLICE: "police department",
    ServiceType.FIRE: "fire department",
    ServiceType.AMBULANCE: "medical emergency services/ambulance",
}

CONTEXT_SERVICE_DESCRIPTIONS = {
    ServiceType.POLICE: "police department",
    ServiceType.FIRE: "fire department",
    ServiceType.AMBULANCE: "medical emergency/ambulance",
}

FIRST_MESSAGE_SERVICE = {
    ServiceType.POLICE: "police",
    ServiceType.FIRE: "fire",
    ServiceType.AMBULANCE: "medical",
}

DEFAULT_PROMPT = (
    "You are an AI assistant calling on behalf of someone who cannot speak. "
    "They are in an emergency and need help. Please identify yourself and "
    "explain the situation clearly."
)

DEFAULT_FIRST_MESSAGE = (
    "Hello I am a bot for someone that cannot speak at the moment. "
    "They are in an emergency and need help."
)


@dataclass(frozen=True)
class CallBriefing:
    """Content handed to the voice provider when the call is placed."""
    prompt: str
    first_message: str


def format_report_time(timestamp: str) -> str:
    """Render an ISO-8601 report timestamp for speech; unparseable input is returned as-is."""
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return timestamp
    return parsed.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


def _location_sentence(report: EmergencyReport) -> str:
    parts = []
    if report.location is not None:
        parts.append(
            f"Location coordinates: {report.location.latitude}, {report.location.longitude}. "
        )
    if report.manual_address:
        parts.append(f"Manual address provided: {report.manual_address}. ")
    return "".join(parts)


def build_emergency_prompt(report: EmergencyReport) -> str:
    """Build the agent prompt describing the emergency and the agent's role."""
    service = SERVICE_DESCRIPTIONS[report.service_needed]

    return f"""You are an AI emergency communication assistant speaking on behalf of someone who cannot speak at the moment.

EMERGENCY DETAILS:
- Service needed: {service}
- Emergency description: {report.description}
- {_location_sentence(report)}
- Time reported: {format_report_time(report.timestamp)}
- User's language: {report.browser_language}

YOUR ROLE:
You are calling emergency services ({service}) on behalf of someone in distress. You must:
1. Clearly identify yourself as an AI assistant speaking for someone who cannot speak
2. Provide all the emergency details above clearly and concisely
3. Stay calm, professional, and speak clearly
4. Answer any questions from emergency dispatchers
5. Provide additional context if requested
6. Stay on the line until emergency services arrive or you're told to hang up

IMPORTANT:
- This is a real emergency situation requiring immediate response
- Speak with urgency but remain composed
- Be prepared to repeat information if needed
- If asked for more details, provide them clearly
- Follow any instructions given by emergency dispatchers"""


def build_first_message(report: EmergencyReport) -> str:
    """First sentence the agent speaks when the call connects."""
    return (
        "I am an AI assistant calling on behalf of someone who cannot speak at the moment. "
        "They are experiencing an emergency and need "
        f"{FIRST_MESSAGE_SERVICE[report.service_needed]} assistance immediately."
    )


def build_briefing(report: Optional[EmergencyReport]) -> CallBriefing:
    """Briefing for a report, or the generic briefing when none is known."""
    if report is None:
        return CallBriefing(prompt=DEFAULT_PROMPT, first_message=DEFAULT_FIRST_MESSAGE)
    return CallBriefing(
        prompt=build_emergency_prompt(report),
        first_message=build_first_message(report),
    )


def build_emergency_context(report: EmergencyReport, now: Optional[datetime] = None) -> str:
    """Contextual update sent to the live agent so it can answer follow-up questions."""
    service = CONTEXT_SERVICE_DESCRIPTIONS[report.service_needed]
    sent_at = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")

    context = f"EMERGENCY UPDATE - {service.upper()}: "
    context += f'The person you are speaking for has reported: "{report.description}". '

    if report.location is not None:
        context += (
            f"Their GPS coordinates are: {report.location.latitude}, "
            f"{report.location.longitude}. "
        )

    if report.manual_address:
        context += f"They also provided this address: {report.manual_address}. "

    context += f"This emergency was reported at {sent_at}. "
    context += f"The person's browser language is {report.browser_language}. "
    context += (
        "Please use this information to provide accurate details to emergency "
        "dispatchers if they ask for more specific information."
    )
    return context
