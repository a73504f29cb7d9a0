"""
Data models for EarningsLedger.

These are plain dataclasses that represent database rows. They decouple the rest
of the app from raw SQL dictionaries so every layer speaks the same "language."
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

ZERO = Decimal("0.00")
DEFAULT_TARGET_USD = Decimal("1000.00")

RESET_FREQUENCIES = ("none", "daily", "weekly", "monthly", "yearly")
PERIODS = ("today", "week", "month", "total")


@dataclass
class Category:
    """A rate-bearing work category (e.g. 'Consulting' at $60/hr)."""
    id: Optional[int] = None
    name: str = ""
    hourly_rate_usd: Optional[Decimal] = None
    created_at: Optional[datetime] = None


@dataclass
class Task:
    """A specific task, optionally belonging to a category."""
    id: Optional[int] = None
    name: str = ""
    category_id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class PersistedSession:
    """
    The durable record of one timer session.

    Created at first start (is_active=True, duration 0), updated in place by
    autosave, finalized exactly once (ended_at set, is_active=False).
    """
    id: Optional[int] = None
    user_id: str = ""
    task_id: Optional[int] = None
    category_id: Optional[int] = None
    hourly_rate_usd: Optional[Decimal] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: int = 0
    earnings_usd: Optional[Decimal] = None
    is_active: bool = True
    session_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_finalized(self) -> bool:
        return self.ended_at is not None and not self.is_active

    @property
    def hours(self) -> float:
        return (self.duration_seconds or 0) / 3600.0


@dataclass
class BalanceLedger:
    """One user's running balance, lifetime total, streaks and target state."""
    user_id: str = ""
    current_balance_usd: Decimal = ZERO
    lifetime_earnings_usd: Decimal = ZERO
    target_balance_usd: Decimal = DEFAULT_TARGET_USD
    target_description: Optional[str] = None
    target_deadline: Optional[date] = None
    current_streak_days: int = 0
    best_streak_days: int = 0
    last_earning_date: Optional[date] = None
    targets_achieved_count: int = 0
    auto_reset_on_target: bool = False
    reset_frequency: str = "none"
    cycle_started_at: Optional[datetime] = None
    notify_on_milestone: bool = True
    milestone_interval_pct: int = 25
    updated_at: Optional[datetime] = None

    @property
    def progress_percentage(self) -> Decimal:
        if self.target_balance_usd <= 0:
            return ZERO
        pct = (self.current_balance_usd / self.target_balance_usd * 100).quantize(Decimal("0.01"))
        return min(pct, Decimal("100.00"))

    @property
    def remaining_usd(self) -> Decimal:
        return max(self.target_balance_usd - self.current_balance_usd, ZERO)

    def days_to_deadline(self, today: date) -> Optional[int]:
        if self.target_deadline is None:
            return None
        return (self.target_deadline - today).days


@dataclass
class BalanceUpdate:
    """What changed when a finalized session was applied to a ledger."""
    ledger: BalanceLedger
    applied: bool = True
    target_reached: bool = False
    cycle_reset: bool = False
    milestones_crossed: List[int] = field(default_factory=list)


@dataclass
class AnalyticsSnapshot:
    """Totals for one reporting period. Derived on read, never stored."""
    period: str = "total"
    earnings_usd: Decimal = ZERO
    hours: float = 0.0
    session_count: int = 0
    average_hourly_rate: Decimal = ZERO
    period_start: Optional[datetime] = None


@dataclass
class AnalyticsReport:
    """All four periods side by side, plus the user's target."""
    user_id: str = ""
    generated_at: Optional[datetime] = None
    periods: Dict[str, AnalyticsSnapshot] = field(default_factory=dict)
    target_balance_usd: Decimal = DEFAULT_TARGET_USD

    def __getitem__(self, period: str) -> AnalyticsSnapshot:
        return self.periods[period]


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Defines the "shape" of every stored or reported object as Python
#   dataclasses. They carry data but have no database logic themselves.
#
# Key classes and why they exist:
#   - Category / Task: the rate lives on the category; a task points at one.
#   - PersistedSession: one row per timer session. is_active flips to False
#     exactly once, at finalize.
#   - BalanceLedger: the per-user "Mental Bank Balance". progress_percentage
#     and remaining_usd are derived, not stored, so they can never disagree
#     with the balance.
#   - AnalyticsSnapshot / AnalyticsReport: read-time aggregates.
#
# Interviewer-friendly talking points:
#   1. Decimal for money: floats cannot represent $0.10 exactly. Every money
#      field is a Decimal rounded to the cent.
#   2. Derived properties instead of stored columns: one source of truth.
#   3. lifetime_earnings_usd can exceed current_balance_usd on purpose: the
#      balance resets when a cycle rolls over, lifetime never does.
