"""
SilentDial - API Schemas

Pydantic models for request/response validation.
These define the contract between the browser client and the backend.
Field names on the wire are camelCase; Python attributes are snake_case.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from silentdial.core.types import (
    DESCRIPTION_MAX_LENGTH,
    DESCRIPTION_MIN_LENGTH,
    CallOutcome,
    EmergencyReport,
    GeoLocation,
    ServiceType,
)


class CamelModel(BaseModel):
    """Base model accepting both camelCase aliases and field names."""
    model_config = ConfigDict(populate_by_name=True)


# ===========================================
# Emergency Intake
# ===========================================

class LocationSchema(CamelModel):
    """Browser geolocation."""
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class EmergencyReportRequest(CamelModel):
    """Emergency report submitted by the intake form."""

    service_needed: ServiceType = Field(alias="serviceNeeded")
    description: str = Field(
        min_length=DESCRIPTION_MIN_LENGTH,
        max_length=DESCRIPTION_MAX_LENGTH,
        description="What is happening, in the caller's words",
    )
    location: Optional[LocationSchema] = None
    manual_address: Optional[str] = Field(default=None, alias="manualAddress", max_length=500)
    browser_language: str = Field(default="en-US", alias="browserLanguage", max_length=35)
    timestamp: str = Field(description="ISO-8601 time the report was created")

    @field_validator("manual_address")
    @classmethod
    def _blank_address_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _require_location_or_address(self) -> "EmergencyReportRequest":
        if self.location is None and self.manual_address is None:
            raise ValueError("Either location or manualAddress is required")
        return self

    def to_domain(self) -> EmergencyReport:
        location = None
        if self.location is not None:
            location = GeoLocation(latitude=self.location.latitude, longitude=self.location.longitude)
        return EmergencyReport(
            service_needed=self.service_needed,
            description=self.description,
            browser_language=self.browser_language,
            timestamp=self.timestamp,
            location=location,
            manual_address=self.manual_address,
        )


class CallOutcomeResponse(CamelModel):
    """Result of placing the AI call for a session."""

    success: bool = True
    session_id: str = Field(serialization_alias="sessionId")
    conversation_id: Optional[str] = Field(default=None, serialization_alias="conversationId")
    message: str
    estimated_response_time: str = Field(default="5-10 minutes", serialization_alias="estimatedResponseTime")
    ai_call_status: str = Field(serialization_alias="aiCallStatus")
    fallback_mode: Optional[bool] = Field(default=None, serialization_alias="fallbackMode")

    @classmethod
    def from_outcome(cls, outcome: CallOutcome) -> "CallOutcomeResponse":
        if outcome.fallback_mode:
            message = "Emergency request received. Connecting you with an operator."
        else:
            message = "Emergency request received. AI assistant is calling emergency services."
        return cls(
            session_id=outcome.session_id,
            conversation_id=outcome.conversation_id,
            message=message,
            ai_call_status=outcome.ai_call_status.value,
            fallback_mode=True if outcome.fallback_mode else None,
        )


# ===========================================
# Session Operations
# ===========================================

class UserMessageRequest(CamelModel):
    """Text the user typed for the live call."""
    text: str = Field(min_length=1, max_length=1000)

    @field_validator("text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message text must not be blank")
        return value


class UserMessageResponse(CamelModel):
    success: bool = True
    delivered: bool


class EndCallResponse(CamelModel):
    success: bool = True
    ended: bool


class SessionStatusResponse(CamelModel):
    """Current status of a session's conversation."""

    success: bool = True
    session_id: str = Field(serialization_alias="sessionId")
    state: str
    is_active: bool = Field(serialization_alias="isActive")
    call_initiated: bool = Field(serialization_alias="callInitiated")
    conversation_id: Optional[str] = Field(default=None, serialization_alias="conversationId")
    message_count: int = Field(serialization_alias="messageCount")
    created_at: float = Field(serialization_alias="createdAt")


class VoiceStatusResponse(CamelModel):
    """Voice integration status. Reports presence only, never values."""

    success: bool
    configured: bool
    provider: str
    missing: List[str] = Field(default_factory=list)
    message: Optional[str] = None
