"""
Period Analytics — earnings and hours for today, this week, this month and
all time, computed on read from finalized sessions.

Also provides a per-day earnings series and a rough "days until target"
projection from an exponential moving average of recent daily earnings.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

import numpy as np

from ledger.core.clock import SYSTEM_CLOCK, Clock
from ledger.core.earnings import SECONDS_PER_HOUR, ZERO, to_money
from ledger.data.models import (
    DEFAULT_TARGET_USD,
    PERIODS,
    AnalyticsReport,
    AnalyticsSnapshot,
    PersistedSession,
)
from ledger.data.repository import Repository

logger = logging.getLogger(__name__)

MIN_SAMPLES_FOR_PROJECTION = 3
PROJECTION_WINDOW_DAYS = 30
EMA_ALPHA = 0.3


def period_start(period: str, now: datetime) -> Optional[datetime]:
    """Start of ``period`` containing ``now``, in UTC. None for 'total'."""
    now = now.astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return midnight
    if period == "week":
        return midnight - timedelta(days=midnight.weekday())
    if period == "month":
        return midnight.replace(day=1)
    if period == "total":
        return None
    raise ValueError(f"Unknown period {period!r}; expected one of {', '.join(PERIODS)}")


def summarize(
    sessions: Iterable[PersistedSession],
    period: str,
    start: Optional[datetime] = None,
) -> AnalyticsSnapshot:
    earnings = ZERO
    seconds = 0
    count = 0
    for s in sessions:
        earnings += s.earnings_usd or ZERO
        seconds += s.duration_seconds or 0
        count += 1

    average = ZERO
    if seconds > 0:
        average = to_money(earnings / (Decimal(seconds) / SECONDS_PER_HOUR))
    return AnalyticsSnapshot(
        period=period,
        earnings_usd=to_money(earnings),
        hours=round(seconds / 3600.0, 2),
        session_count=count,
        average_hourly_rate=average,
        period_start=start,
    )


def exponential_moving_average(values: List[float], alpha: float = EMA_ALPHA) -> float:
    """
    alpha=0.3 means the most recent value contributes 30%.
    """
    ema = values[0]
    for v in values[1:]:
        ema = alpha * v + (1 - alpha) * ema
    return float(ema)


class AnalyticsService:
    """Read-only aggregates over a user's finalized sessions."""

    def __init__(self, repo: Repository, clock: Optional[Clock] = None) -> None:
        self.repo = repo
        self.clock = clock or SYSTEM_CLOCK

    # ── Period totals ───────────────────────────────────────────────────────

    def get_analytics(self, user_id: str, period: str, now: Optional[datetime] = None) -> AnalyticsSnapshot:
        """
        Totals for one period. Sessions are bucketed by when they started;
        sessions still running are never counted.
        """
        now = now or self.clock.now()
        start = period_start(period, now)
        sessions = self._finalized(user_id, start, now)
        return summarize(sessions, period, start)

    def get_report(self, user_id: str, now: Optional[datetime] = None) -> AnalyticsReport:
        now = now or self.clock.now()
        sessions = self._finalized(user_id, None, now)
        report = AnalyticsReport(
            user_id=user_id,
            generated_at=now,
            target_balance_usd=self._target(user_id),
        )
        for period in PERIODS:
            start = period_start(period, now)
            in_period = [s for s in sessions if start is None or s.started_at >= start]
            report.periods[period] = summarize(in_period, period, start)
        return report

    # ── Trend ───────────────────────────────────────────────────────────────

    def daily_earnings(
        self, user_id: str, days: int, now: Optional[datetime] = None
    ) -> Tuple[List[date], np.ndarray]:
        """Earnings per UTC day for the last ``days`` days, oldest first."""
        if days <= 0:
            raise ValueError("days must be positive")
        now = now or self.clock.now()
        today = period_start("today", now)
        first = today - timedelta(days=days - 1)

        dates = [(first + timedelta(days=i)).date() for i in range(days)]
        values = np.zeros(days, dtype=float)
        for s in self._finalized(user_id, first, now):
            index = (s.started_at.astimezone(timezone.utc).date() - dates[0]).days
            if 0 <= index < days:
                values[index] += float(s.earnings_usd or ZERO)
        return dates, values

    def project_days_to_target(self, user_id: str, now: Optional[datetime] = None) -> Optional[int]:
        """
        Days until the current balance reaches the target at the recent
        earning pace. None when there is too little history to say.
        """
        ledger = self.repo.read_ledger(user_id)
        if ledger is None:
            return None
        remaining = ledger.remaining_usd
        if remaining <= 0:
            return 0

        _, values = self.daily_earnings(user_id, PROJECTION_WINDOW_DAYS, now)
        earning_days = np.flatnonzero(values)
        if earning_days.size == 0:
            return None
        history = values[earning_days[0]:]
        if history.size < MIN_SAMPLES_FOR_PROJECTION:
            logger.debug("Only %d day(s) of history for user %s; no projection", history.size, user_id)
            return None

        pace = exponential_moving_average(history.tolist())
        if pace <= 0:
            return None
        return int(np.ceil(float(remaining) / pace))

    # ── Internal ────────────────────────────────────────────────────────────

    def _finalized(
        self, user_id: str, start: Optional[datetime], now: datetime
    ) -> List[PersistedSession]:
        sessions = self.repo.list_finalized_sessions(user_id, start_after=start)
        return [s for s in sessions if s.started_at <= now]

    def _target(self, user_id: str) -> Decimal:
        ledger = self.repo.read_ledger(user_id)
        return ledger.target_balance_usd if ledger else DEFAULT_TARGET_USD


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Answers "how much did I earn today / this week / this month / ever?"
#   straight from the stored sessions. Nothing here is cached or stored.
#
# Key design decisions:
#   - Only finalized sessions count. A timer still running shows up in the
#     live snapshot, never in the analytics, so nothing is counted twice.
#   - Bucketing by started_at: a session that crosses midnight counts for
#     the day it began.
#   - Weeks start on Monday, all in UTC.
#   - average_hourly_rate guards against dividing by zero hours.
#
# Interviewer-friendly talking points:
#   1. The projection uses an EMA (alpha=0.3) over daily totals, starting
#      from the first day with any earnings so a quiet month before the
#      user began does not drag the pace to zero.
#   2. numpy handles the daily series; the money totals stay Decimal.
