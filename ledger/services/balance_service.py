"""
Balance Service — the "Mental Bank Balance".

Every finalized session's earnings are folded into the user's ledger exactly
once: current balance, lifetime total, daily streak, target crossings, and
progress milestones. A full rebuild replays every finalized session and must
land on the same ledger as the incremental path.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from ledger.core.earnings import ZERO, to_money
from ledger.data.models import (
    DEFAULT_TARGET_USD,
    RESET_FREQUENCIES,
    BalanceLedger,
    BalanceUpdate,
    PersistedSession,
)
from ledger.data.repository import Repository

logger = logging.getLogger(__name__)

MIN_MILESTONE_PCT = 1
MAX_MILESTONE_PCT = 50

SETTINGS_FIELDS = (
    "target_balance_usd",
    "target_description",
    "target_deadline",
    "auto_reset_on_target",
    "reset_frequency",
    "notify_on_milestone",
    "milestone_interval_pct",
)


# ── Pure folding rules ──────────────────────────────────────────────────────

def _utc_date(when: datetime) -> date:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).date()


def cycle_key(frequency: str, when: datetime):
    """Identify the reset cycle a moment falls in. None when cycles are off."""
    day = _utc_date(when)
    if frequency == "daily":
        return day
    if frequency == "weekly":
        return day - timedelta(days=day.weekday())
    if frequency == "monthly":
        return (day.year, day.month)
    if frequency == "yearly":
        return day.year
    return None


def _progress(balance: Decimal, target: Decimal) -> Decimal:
    if target <= 0:
        return ZERO
    return min(balance / target * 100, Decimal(100))


def milestones_between(before: Decimal, after: Decimal, target: Decimal, interval: int) -> List[int]:
    """Multiples of ``interval`` percent passed on the way from before to after."""
    lo = _progress(before, target)
    hi = _progress(after, target)
    return [m for m in range(interval, 101, interval) if lo < m <= hi]


def advance_streak(ledger: BalanceLedger, day: date) -> None:
    last = ledger.last_earning_date
    if last is None:
        ledger.current_streak_days = 1
    elif day == last + timedelta(days=1):
        ledger.current_streak_days += 1
    elif day > last + timedelta(days=1):
        ledger.current_streak_days = 1
    # same day, or a late session from before the last earning day: unchanged
    if last is None or day > last:
        ledger.last_earning_date = day
    ledger.best_streak_days = max(ledger.best_streak_days, ledger.current_streak_days)


def fold_session(ledger: BalanceLedger, ended_at: datetime, earnings_usd: Decimal) -> BalanceUpdate:
    """
    Apply one finished session to a copy of ``ledger``.

    Order matters: cycle rollover first (the session counts toward the cycle
    it ended in), then the money, the streak, the target check and milestones.
    """
    new = replace(ledger)
    earnings = to_money(earnings_usd)
    update = BalanceUpdate(ledger=new)

    key = cycle_key(new.reset_frequency, ended_at)
    if key is not None:
        if new.cycle_started_at is None:
            new.cycle_started_at = ended_at
        elif key > cycle_key(new.reset_frequency, new.cycle_started_at):
            new.current_balance_usd = ZERO
            new.cycle_started_at = ended_at
            update.cycle_reset = True

    before = new.current_balance_usd
    after = before + earnings
    new.current_balance_usd = after
    new.lifetime_earnings_usd += earnings

    if earnings > 0:
        advance_streak(new, _utc_date(ended_at))

    target = new.target_balance_usd
    if new.notify_on_milestone and new.milestone_interval_pct:
        update.milestones_crossed = milestones_between(before, after, target, new.milestone_interval_pct)

    if target > 0 and before < target <= after:
        new.targets_achieved_count += 1
        update.target_reached = True
        if new.auto_reset_on_target:
            new.current_balance_usd = ZERO
            new.cycle_started_at = ended_at
            update.cycle_reset = True

    return update


# ── Service ─────────────────────────────────────────────────────────────────

class BalanceService:
    """Keeps each user's BalanceLedger in step with their finalized sessions."""

    def __init__(self, repo: Repository, default_target: Decimal = DEFAULT_TARGET_USD) -> None:
        self.repo = repo
        self.default_target = to_money(default_target)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.Lock())

    def get_ledger(self, user_id: str) -> BalanceLedger:
        """The user's ledger, created with the default target on first read."""
        ledger = self.repo.read_ledger(user_id)
        if ledger is None:
            ledger = self.repo.initialize_ledger(user_id, self.default_target)
            logger.info("Initialized balance ledger for user %s (target $%s)", user_id, ledger.target_balance_usd)
        return ledger

    def apply_finalized(self, user_id: str, session: PersistedSession) -> BalanceUpdate:
        """
        Fold one finalized session into the user's ledger.

        Safe to call more than once for the same session: the second call is
        reported with ``applied=False`` and changes nothing.
        """
        with self._user_lock(user_id):
            ledger = self.get_ledger(user_id)
            if session.earnings_usd is None or session.ended_at is None:
                logger.debug("Session %s has no final earnings; not applied", session.id)
                return BalanceUpdate(ledger=ledger, applied=False)
            if self.repo.is_applied(user_id, session.id):
                return BalanceUpdate(ledger=ledger, applied=False)

            latest = self.repo.latest_applied_end(user_id)
            if latest is not None and session.ended_at <= latest:
                # Streaks and cycles depend on end order, so a session that
                # arrives after a later one is folded in by replaying them all.
                update = self._replay_with(ledger, session)
                if update is None:
                    return BalanceUpdate(ledger=ledger, applied=False)
            else:
                update = fold_session(ledger, session.ended_at, session.earnings_usd)
                if not self.repo.apply_ledger_update(update.ledger, session.id):
                    return BalanceUpdate(ledger=ledger, applied=False)

        new = update.ledger
        logger.info(
            "Applied session %s: +$%s, balance $%s / $%s",
            session.id, to_money(session.earnings_usd),
            new.current_balance_usd, new.target_balance_usd,
        )
        for pct in update.milestones_crossed:
            logger.info("User %s reached %d%% of target", user_id, pct)
        if update.target_reached:
            logger.info("User %s reached target $%s (%d so far)",
                        user_id, new.target_balance_usd, new.targets_achieved_count)
        return update

    def on_finalized(self, record: PersistedSession) -> None:
        """Finalize-listener adapter for the persistence service."""
        self.apply_finalized(record.user_id, record)

    def rebuild(self, user_id: str, persist: bool = True) -> BalanceLedger:
        """
        Recompute the ledger from scratch by replaying finalized sessions in
        end order, keeping the user's settings.
        """
        with self._user_lock(user_id):
            sessions = [
                s for s in self.repo.list_finalized_sessions(user_id)
                if s.earnings_usd is not None
            ]
            ledger = self._replay(self.get_ledger(user_id), sessions)
            if persist:
                self.repo.replace_ledger(ledger, [s.id for s in sessions])
        logger.info("Rebuilt ledger for user %s from %d session(s)", user_id, len(sessions))
        return ledger

    @staticmethod
    def _replay(current: BalanceLedger, sessions: List[PersistedSession]) -> BalanceLedger:
        """Fold ``sessions`` in end order into a zeroed copy of ``current``'s settings."""
        ledger = replace(
            current,
            current_balance_usd=ZERO,
            lifetime_earnings_usd=ZERO,
            current_streak_days=0,
            best_streak_days=0,
            last_earning_date=None,
            targets_achieved_count=0,
            cycle_started_at=None,
        )
        for s in sorted(sessions, key=lambda s: (s.ended_at, s.id)):
            ledger = fold_session(ledger, s.ended_at, s.earnings_usd).ledger
        return ledger

    def _replay_with(self, ledger: BalanceLedger, session: PersistedSession) -> Optional[BalanceUpdate]:
        """
        Apply a late session by replaying it with everything already applied.
        Caller holds the user lock. Returns None if the session was applied
        in the meantime.
        """
        applied = self.repo.list_applied_sessions(ledger.user_id)
        if any(s.id == session.id for s in applied):
            return None
        sessions = applied + [session]
        replayed = self._replay(ledger, [s for s in sessions if s.earnings_usd is not None])
        self.repo.replace_ledger(replayed, [s.id for s in sessions])
        logger.info("Session %s ended before already-applied sessions; replayed %d session(s)",
                    session.id, len(sessions))

        update = BalanceUpdate(ledger=replayed)
        update.target_reached = replayed.targets_achieved_count > ledger.targets_achieved_count
        update.cycle_reset = replayed.cycle_started_at != ledger.cycle_started_at
        if replayed.notify_on_milestone and replayed.milestone_interval_pct and not update.cycle_reset:
            update.milestones_crossed = milestones_between(
                ledger.current_balance_usd, replayed.current_balance_usd,
                replayed.target_balance_usd, replayed.milestone_interval_pct,
            )
        return update

    def update_settings(self, user_id: str, **changes) -> BalanceLedger:
        unknown = set(changes) - set(SETTINGS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown ledger setting(s): {', '.join(sorted(unknown))}")

        if "target_balance_usd" in changes:
            target = to_money(changes["target_balance_usd"])
            if target < 0:
                raise ValueError("target_balance_usd must be non-negative")
            changes["target_balance_usd"] = target
        if "reset_frequency" in changes and changes["reset_frequency"] not in RESET_FREQUENCIES:
            raise ValueError(
                f"reset_frequency must be one of {', '.join(RESET_FREQUENCIES)}"
            )
        if "milestone_interval_pct" in changes:
            interval = int(changes["milestone_interval_pct"])
            if not MIN_MILESTONE_PCT <= interval <= MAX_MILESTONE_PCT:
                raise ValueError(
                    f"milestone_interval_pct must be between {MIN_MILESTONE_PCT} and {MAX_MILESTONE_PCT}"
                )
            changes["milestone_interval_pct"] = interval
        deadline = changes.get("target_deadline")
        if isinstance(deadline, str):
            changes["target_deadline"] = date.fromisoformat(deadline)

        with self._user_lock(user_id):
            ledger = replace(self.get_ledger(user_id), **changes)
            self.repo.write_ledger(ledger)
        logger.info("Updated ledger settings for user %s: %s", user_id, ", ".join(sorted(changes)))
        return ledger

    def days_to_deadline(self, user_id: str, today: Optional[date] = None) -> Optional[int]:
        today = today or datetime.now(timezone.utc).date()
        return self.get_ledger(user_id).days_to_deadline(today)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Keeps a running "bank balance" of what the user has earned toward a
#   target. Each finalized session is applied once; rebuild() replays all of
#   them and is the ground truth the incremental path must agree with.
#
# Key design decisions:
#   - fold_session() is a pure function over a copy of the ledger, so the
#     incremental path and the rebuild share every rule.
#   - Idempotency lives in the database: the applied-sessions marker and
#     the new ledger are committed in one transaction.
#   - Streaks count UTC calendar days and only sessions that earned money.
#     A session that ended before one already applied triggers a replay of
#     the applied set, so arrival order never changes the result.
#   - The target counter only moves when the balance goes from below the
#     target to at or above it, so sitting above the target never recounts.
#
# Interviewer-friendly talking points:
#   1. Per-user locks: two finalizes for the same user cannot interleave
#      their read-modify-write, while different users never wait on each
#      other.
#   2. lifetime_earnings_usd never resets; current_balance_usd does, on a
#      cycle rollover or when auto_reset_on_target is set.
#   3. Milestones are derived by comparing progress before and after, not
#      stored, so there is nothing to keep in sync.
