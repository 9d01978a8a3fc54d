"""
SilentDial - Test Configuration and Fixtures

Shared fixtures for all test modules.
"""

import asyncio
import json
import os
import sys
from typing import Generator, List, Optional, Union

import pytest
from fastapi.testclient import TestClient

# Ensure backend package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from silentdial.config import Settings
from silentdial.core.admission import AdmissionPolicy, CallAdmissionController
from silentdial.core.briefing import CallBriefing
from silentdial.core.call_service import EmergencyCallService, create_call_service
from silentdial.core.conversation import ConversationRegistry
from silentdial.core.exceptions import ChannelNotReadyError, ChannelSendError
from silentdial.core.rate_limiter import RateLimiter
from silentdial.core.types import EmergencyReport, GeoLocation, ServiceType
from silentdial.telephony.channel import VoiceChannel
from silentdial.telephony.providers.base import VoiceProvider


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start_ms: float = 1_700_000_000_000.0):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeVoiceChannel(VoiceChannel):
    """Channel driven by the test through simulate_* helpers."""

    def __init__(self) -> None:
        super().__init__()
        self._open = False
        self._closed = asyncio.Event()
        self.sent: List[dict] = []
        self.fail_next_send = False
        self.close_calls = 0

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def send(self, payload: dict) -> None:
        if not self._open:
            raise ChannelNotReadyError("WebSocket connection is not ready")
        if self.fail_next_send:
            self.fail_next_send = False
            raise ChannelSendError("WebSocket connection issue, please try again")
        self.sent.append(payload)

    def close(self) -> None:
        self.close_calls += 1
        if self._closed.is_set():
            return
        self.unbind()
        self._open = False
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def simulate_open(self) -> None:
        self._open = True
        self._dispatch_open()

    def simulate_message(self, message: Union[dict, str]) -> None:
        raw = message if isinstance(message, str) else json.dumps(message)
        self._dispatch_message(raw)

    def simulate_close(self, code: int = 1006, reason: str = "") -> None:
        self._open = False
        self._dispatch_close(code, reason)

    def simulate_error(self, error: Optional[Exception] = None) -> None:
        self._open = False
        self._dispatch_error(error or ConnectionError("boom"))


class FakeVoiceProvider(VoiceProvider):
    """
    Provider whose behaviour is set per test.

    open_mode:
        "immediate" - channel is already open when handed over
        "deferred"  - channel opens on the next loop iteration
        "never"     - channel never opens
    """

    def __init__(self, open_mode: str = "deferred", configured: bool = True):
        self.open_mode = open_mode
        self.configured = configured
        self.fail_with: Optional[Exception] = None
        self.calls: List[CallBriefing] = []
        self.channels: List[FakeVoiceChannel] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    def missing_configuration(self):
        return {"ELEVEN_API_KEY": not self.configured}

    async def start_call(self, briefing: CallBriefing) -> str:
        self.calls.append(briefing)
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        return f"conv_{len(self.calls):04d}"

    def open_channel(self, conversation_id: str) -> FakeVoiceChannel:
        channel = FakeVoiceChannel()
        self.channels.append(channel)
        if self.open_mode == "immediate":
            channel._open = True
        elif self.open_mode == "deferred":
            asyncio.get_running_loop().call_soon(channel.simulate_open)
        return channel

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings with safe defaults.

    Simulator provider with no artificial delays.
    """
    return Settings(
        app_env="testing",
        app_debug=True,
        app_log_level="WARNING",  # Reduce noise in tests
        voice_provider="simulator",
        simulator_open_delay_seconds=0.0,
        simulator_reply_delay_seconds=0.0,
        fallback_greeting_delay_seconds=0.0,
        fallback_reply_delay_min_seconds=0.0,
        fallback_reply_delay_max_seconds=0.0,
        call_activation_timeout_seconds=1.0,
        shutdown_grace_seconds=0.5,
    )


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(sweep_interval_seconds=60, clock=clock)


@pytest.fixture
def admission(clock: FakeClock) -> CallAdmissionController:
    """Admission controller with the reference policy."""
    return CallAdmissionController(AdmissionPolicy(), clock=clock)


@pytest.fixture
def registry(admission: CallAdmissionController, clock: FakeClock) -> ConversationRegistry:
    return ConversationRegistry(admission, clock=clock)


@pytest.fixture
def fake_provider() -> FakeVoiceProvider:
    return FakeVoiceProvider()


@pytest.fixture
def call_service(
    test_settings: Settings,
    fake_provider: FakeVoiceProvider,
    clock: FakeClock,
) -> EmergencyCallService:
    """Fully wired service over the fake provider and fake clock."""
    return create_call_service(test_settings, provider=fake_provider, clock=clock)


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def sample_report() -> EmergencyReport:
    """Police report with a manual address."""
    return EmergencyReport(
        service_needed=ServiceType.POLICE,
        description="Someone is trying to break into my apartment",
        browser_language="en-US",
        timestamp="2024-05-01T12:00:00Z",
        manual_address="12 Main Street, Apt 4",
    )


@pytest.fixture
def ambulance_report() -> EmergencyReport:
    """Ambulance report with GPS coordinates only."""
    return EmergencyReport(
        service_needed=ServiceType.AMBULANCE,
        description="My father collapsed and is not responding",
        browser_language="de-DE",
        timestamp="2024-05-01T12:00:00Z",
        location=GeoLocation(latitude=52.52, longitude=13.405),
    )


@pytest.fixture
def report_payload() -> dict:
    """Intake request body as sent by the browser."""
    return {
        "serviceNeeded": "fire",
        "description": "Smoke is coming from the kitchen next door",
        "manualAddress": "221B Baker Street",
        "browserLanguage": "en-GB",
        "timestamp": "2024-05-01T12:00:00Z",
    }


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def client(test_settings: Settings) -> Generator[TestClient, None, None]:
    """TestClient running the full app (lifespan included) on the simulator."""
    from main import create_app

    app = create_app(test_settings)
    with TestClient(app) as test_client:
        yield test_client
