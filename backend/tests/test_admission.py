"""
SilentDial - Call Admission Tests

Tests for global ceilings, cooldown and per-session limits.

Run with: pytest tests/test_admission.py -v
"""

from silentdial.core.admission import AdmissionPolicy, CallAdmissionController
from silentdial.core.types import AdmissionReason


class TestGlobalCeilings:
    """Tests for the system-wide minute and hour limits."""

    def test_fresh_controller_allows(self, admission: CallAdmissionController):
        """No calls recorded means admission passes."""
        assert admission.check("s1").allowed is True

    def test_minute_ceiling(self, admission: CallAdmissionController, clock):
        """The fourth call inside a minute is rejected across sessions."""
        for sid in ("s1", "s2", "s3"):
            admission.record_call(sid)
            clock.advance(1_000)

        decision = admission.check("s4")

        assert decision.allowed is False
        assert decision.reason is AdmissionReason.MINUTE_LIMIT
        # Oldest call ages out 60s after it was made, 3s have passed
        assert decision.retry_after_seconds == 57

    def test_minute_ceiling_clears(self, admission: CallAdmissionController, clock):
        """After a minute the per-minute ceiling no longer applies."""
        for sid in ("s1", "s2", "s3"):
            admission.record_call(sid)
        clock.advance(60_000)

        assert admission.check("s4").allowed is True

    def test_hourly_ceiling_checked_first(self, clock):
        """Hourly ceiling wins over the minute ceiling when both are hit."""
        controller = CallAdmissionController(
            AdmissionPolicy(max_calls_per_hour=2, max_calls_per_minute=2),
            clock=clock,
        )
        controller.record_call("s1")
        controller.record_call("s2")

        decision = controller.check("s3")

        assert decision.reason is AdmissionReason.HOURLY_LIMIT
        assert decision.retry_after_seconds == 3600

    def test_hourly_ceiling_over_time(self, admission: CallAdmissionController, clock):
        """Ten calls spread over the hour exhaust the hourly budget."""
        for i in range(10):
            admission.record_call(f"s{i}")
            clock.advance(5 * 60_000)

        decision = admission.check("s-new")
        assert decision.reason is AdmissionReason.HOURLY_LIMIT

        clock.advance(10 * 60_000)
        assert admission.check("s-new").allowed is True


class TestSessionRules:
    """Tests for cooldown and per-session call count."""

    def test_cooldown(self, admission: CallAdmissionController, clock):
        """A session cannot call again inside the cooldown."""
        admission.record_call("s1")
        clock.advance(10_000)

        decision = admission.check("s1")

        assert decision.allowed is False
        assert decision.reason is AdmissionReason.COOLDOWN
        assert decision.retry_after_seconds == 20

    def test_session_limit_after_cooldown(self, admission: CallAdmissionController, clock):
        """With a lifetime limit of one, the session stays capped after cooldown."""
        admission.record_call("s1")
        clock.advance(30_000)

        decision = admission.check("s1")

        assert decision.reason is AdmissionReason.SESSION_LIMIT
        assert decision.retry_after_seconds is None

    def test_release_restores_session_slot(self, admission: CallAdmissionController, clock):
        """A released call frees the session count but keeps the cooldown."""
        admission.record_call("s1")
        admission.release_call("s1")

        assert admission.check("s1").reason is AdmissionReason.COOLDOWN

        clock.advance(30_000)
        assert admission.check("s1").allowed is True

    def test_release_keeps_global_history(self, admission: CallAdmissionController):
        """Released calls still count toward the global ceilings."""
        admission.record_call("s1")
        admission.release_call("s1")

        assert admission.calls_in_window(60_000) == 1

    def test_check_has_no_side_effects(self, admission: CallAdmissionController):
        """Checking never records anything."""
        for _ in range(5):
            admission.check("s1")

        assert admission.calls_in_window(3_600_000) == 0
        assert admission.session_record("s1") is None

    def test_forget_session(self, admission: CallAdmissionController):
        """Forgetting a session drops its record only."""
        admission.record_call("s1")
        admission.forget_session("s1")

        assert admission.session_record("s1") is None
        assert admission.calls_in_window(60_000) == 1
