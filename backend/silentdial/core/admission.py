"""
SilentDial - Call Admission Control

Global call ceilings and per-session limits, evaluated before any call is
placed. The per-conversation rules (already active / already initiated) live
on the Conversation itself; this module owns the shared counters.

Rules, in order (first failure wins):
    1. Global hourly ceiling over the trailing 3,600,000 ms
    2. Global per-minute ceiling over the trailing 60,000 ms
    3. Per-session cooldown since the session's last recorded call
    4. Per-session call count ceiling

``check()`` has no side effects. ``record_call()`` must run synchronously
right after a passing check (no await in between) for the guard to hold.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Optional

from silentdial.config import Settings

from .types import AdmissionDecision, AdmissionReason, Clock, now_ms

logger = logging.getLogger(__name__)

HOUR_MS = 3_600_000
MINUTE_MS = 60_000


@dataclass(frozen=True)
class AdmissionPolicy:
    """Configured ceilings. Defaults are the reference values."""
    max_calls_per_session: int = 1
    max_calls_per_minute: int = 3
    max_calls_per_hour: int = 10
    call_cooldown_ms: int = 30_000

    @classmethod
    def from_settings(cls, settings: Settings) -> "AdmissionPolicy":
        return cls(
            max_calls_per_session=settings.max_calls_per_session,
            max_calls_per_minute=settings.max_calls_per_minute,
            max_calls_per_hour=settings.max_calls_per_hour,
            call_cooldown_ms=settings.call_cooldown_ms,
        )


@dataclass
class SessionCallRecord:
    """Per-session call accounting."""
    count: int = 0
    last_call_ms: float = 0.0


def _seconds_until(target_ms: float, now: float) -> int:
    return max(1, math.ceil((target_ms - now) / 1000))


class CallAdmissionController:
    """
    Shared call counters used by every Conversation.

    Attributes:
        policy: Active admission ceilings
    """

    def __init__(self, policy: Optional[AdmissionPolicy] = None, clock: Optional[Clock] = None):
        self.policy = policy or AdmissionPolicy()
        self._clock = clock or now_ms
        self._global_calls: deque[float] = deque()
        self._session_calls: dict[str, SessionCallRecord] = {}

    def check(self, session_id: str) -> AdmissionDecision:
        """Evaluate global and per-session limits for ``session_id``."""
        now = self._clock()
        self._prune(now)

        decision = self._check_window(now, HOUR_MS, self.policy.max_calls_per_hour,
                                      AdmissionReason.HOURLY_LIMIT)
        if decision is not None:
            return decision

        decision = self._check_window(now, MINUTE_MS, self.policy.max_calls_per_minute,
                                      AdmissionReason.MINUTE_LIMIT)
        if decision is not None:
            return decision

        record = self._session_calls.get(session_id)
        if record is not None:
            if record.last_call_ms and now - record.last_call_ms < self.policy.call_cooldown_ms:
                return AdmissionDecision.deny(
                    AdmissionReason.COOLDOWN,
                    _seconds_until(record.last_call_ms + self.policy.call_cooldown_ms, now),
                )

            if record.count >= self.policy.max_calls_per_session:
                return AdmissionDecision.deny(AdmissionReason.SESSION_LIMIT)

        return AdmissionDecision.allow()

    def record_call(self, session_id: str) -> None:
        """Record a granted call globally and for the session."""
        now = self._clock()
        self._global_calls.append(now)

        record = self._session_calls.setdefault(session_id, SessionCallRecord())
        record.count += 1
        record.last_call_ms = now

        logger.debug(
            "Call recorded: session_calls=%d, global_calls_last_hour=%d",
            record.count,
            len(self._global_calls),
        )

    def release_call(self, session_id: str) -> None:
        """
        Return a failed attempt's per-session slot.

        The cooldown timestamp and the global timestamps stay recorded: the
        attempt still reached the provider.
        """
        record = self._session_calls.get(session_id)
        if record is not None and record.count > 0:
            record.count -= 1

    def forget_session(self, session_id: str) -> None:
        """Drop per-session accounting for an evicted session."""
        self._session_calls.pop(session_id, None)

    def session_record(self, session_id: str) -> Optional[SessionCallRecord]:
        return self._session_calls.get(session_id)

    def calls_in_window(self, window_ms: int) -> int:
        """Number of calls recorded system-wide in the trailing window."""
        now = self._clock()
        return sum(1 for ts in self._global_calls if now - ts < window_ms)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _prune(self, now: float) -> None:
        while self._global_calls and now - self._global_calls[0] >= HOUR_MS:
            self._global_calls.popleft()

    def _check_window(
        self,
        now: float,
        window_ms: int,
        ceiling: int,
        reason: AdmissionReason,
    ) -> Optional[AdmissionDecision]:
        in_window = [ts for ts in self._global_calls if now - ts < window_ms]
        if len(in_window) < ceiling:
            return None

        # Enough calls must age out to drop below the ceiling again
        if ceiling > 0:
            pivot = in_window[len(in_window) - ceiling]
            retry_after = _seconds_until(pivot + window_ms, now)
        else:
            retry_after = None
        return AdmissionDecision.deny(reason, retry_after)
