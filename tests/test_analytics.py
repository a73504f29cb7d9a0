"""Unit tests for period analytics and the target projection."""

import sqlite3
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys

import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ledger.analytics.aggregator import (
    AnalyticsService,
    exponential_moving_average,
    period_start,
)
from ledger.core.clock import ManualClock
from ledger.data.database import SCHEMA_SQL
from ledger.data.repository import Repository
from ledger.services.balance_service import BalanceService

USER = "alice"
# Wednesday 2026-01-14, mid-afternoon
NOW = datetime(2026, 1, 14, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    return Repository(conn)


@pytest.fixture
def svc(repo):
    return AnalyticsService(repo, clock=ManualClock(NOW))


def _add(repo, start, seconds, earnings, user_id=USER, finalize=True):
    s = repo.create_session(user_id, 1, start)
    if finalize:
        repo.finalize_session(s.id, start + timedelta(seconds=seconds), seconds, Decimal(earnings))
    else:
        repo.upsert_session(s.id, seconds, Decimal(earnings))
    return s


class TestPeriodStart:
    def test_boundaries(self):
        assert period_start("today", NOW) == datetime(2026, 1, 14, tzinfo=timezone.utc)
        assert period_start("week", NOW) == datetime(2026, 1, 12, tzinfo=timezone.utc)
        assert period_start("month", NOW) == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert period_start("total", NOW) is None

    def test_non_utc_input_is_converted(self):
        plus_ten = timezone(timedelta(hours=10))
        local = datetime(2026, 1, 15, 2, 0, tzinfo=plus_ten)  # 16:00 UTC on the 14th
        assert period_start("today", local) == datetime(2026, 1, 14, tzinfo=timezone.utc)

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            period_start("fortnight", NOW)


class TestAnalyticsService:
    def test_empty(self, svc):
        snap = svc.get_analytics(USER, "today")
        assert snap.earnings_usd == Decimal("0.00")
        assert snap.hours == 0
        assert snap.session_count == 0
        assert snap.average_hourly_rate == Decimal("0.00")

    def test_today_excludes_in_progress(self, repo, svc):
        _add(repo, NOW - timedelta(hours=3), 3600, "60.00")
        _add(repo, NOW - timedelta(hours=1), 1800, "30.00", finalize=False)
        snap = svc.get_analytics(USER, "today")
        assert snap.session_count == 1
        assert snap.earnings_usd == Decimal("60.00")
        assert snap.hours == 1.0
        assert snap.average_hourly_rate == Decimal("60.00")

    def test_periods(self, repo, svc):
        _add(repo, datetime(2026, 1, 14, 9, tzinfo=timezone.utc), 1800, "10.00")   # today
        _add(repo, datetime(2026, 1, 12, 9, tzinfo=timezone.utc), 3600, "20.00")   # Monday
        _add(repo, datetime(2026, 1, 11, 9, tzinfo=timezone.utc), 3600, "40.00")   # last Sunday
        _add(repo, datetime(2025, 12, 31, 9, tzinfo=timezone.utc), 7200, "80.00")  # last year

        report = svc.get_report(USER)
        assert report["today"].earnings_usd == Decimal("10.00")
        assert report["week"].earnings_usd == Decimal("30.00")
        assert report["month"].earnings_usd == Decimal("70.00")
        assert report["total"].earnings_usd == Decimal("150.00")
        assert report["total"].session_count == 4
        assert report["total"].hours == 4.5
        assert report["week"].period_start == datetime(2026, 1, 12, tzinfo=timezone.utc)
        assert report.target_balance_usd == Decimal("1000.00")

        single = svc.get_analytics(USER, "week")
        assert single == report["week"]

    def test_bucketed_by_start(self, repo, svc):
        # Started yesterday, finished today: counts for yesterday.
        _add(repo, datetime(2026, 1, 13, 23, 30, tzinfo=timezone.utc), 3600, "15.00")
        assert svc.get_analytics(USER, "today").session_count == 0
        assert svc.get_analytics(USER, "week").session_count == 1

    def test_other_users_ignored(self, repo, svc):
        _add(repo, NOW - timedelta(hours=2), 600, "5.00", user_id="bob")
        assert svc.get_analytics(USER, "total").session_count == 0

    def test_average_rate_rounded(self, repo, svc):
        _add(repo, NOW - timedelta(hours=4), 3600, "10.00")
        _add(repo, NOW - timedelta(hours=2), 1800, "10.00")
        snap = svc.get_analytics(USER, "today")
        # $20 over 1.5 h
        assert snap.average_hourly_rate == Decimal("13.33")

    def test_zero_duration_rate_guard(self, repo, svc):
        _add(repo, NOW - timedelta(hours=1), 0, "0.00")
        snap = svc.get_analytics(USER, "today")
        assert snap.session_count == 1
        assert snap.average_hourly_rate == Decimal("0.00")

    def test_report_uses_ledger_target(self, repo, svc):
        BalanceService(repo).update_settings(USER, target_balance_usd="250")
        assert svc.get_report(USER).target_balance_usd == Decimal("250.00")


class TestTrend:
    def test_daily_earnings(self, repo, svc):
        _add(repo, datetime(2026, 1, 12, 9, tzinfo=timezone.utc), 3600, "20.00")
        _add(repo, datetime(2026, 1, 14, 9, tzinfo=timezone.utc), 1800, "10.00")
        _add(repo, datetime(2026, 1, 14, 11, tzinfo=timezone.utc), 1800, "5.50")
        dates, values = svc.daily_earnings(USER, 3)
        assert [d.day for d in dates] == [12, 13, 14]
        np.testing.assert_allclose(values, [20.0, 0.0, 15.5])

    def test_daily_earnings_rejects_bad_window(self, svc):
        with pytest.raises(ValueError):
            svc.daily_earnings(USER, 0)

    def test_ema(self):
        assert exponential_moving_average([10.0]) == 10.0
        assert exponential_moving_average([10.0, 20.0]) == pytest.approx(13.0)

    def test_projection_needs_history(self, repo, svc):
        BalanceService(repo).get_ledger(USER)
        assert svc.project_days_to_target(USER) is None
        _add(repo, NOW - timedelta(hours=2), 3600, "50.00")
        assert svc.project_days_to_target(USER) is None

    def test_projection_without_ledger(self, svc):
        assert svc.project_days_to_target(USER) is None

    def test_projection(self, repo, svc):
        balances = BalanceService(repo)
        balances.update_settings(USER, target_balance_usd="1000")
        for days_ago in (2, 1, 0):
            _add(repo, datetime(2026, 1, 14, 9, tzinfo=timezone.utc) - timedelta(days=days_ago),
                 3600, "100.00")
        balances.rebuild(USER)
        # $300 banked, $700 to go at $100/day
        assert svc.project_days_to_target(USER) == 7

    def test_projection_when_target_met(self, repo, svc):
        balances = BalanceService(repo)
        balances.update_settings(USER, target_balance_usd="50")
        _add(repo, NOW - timedelta(hours=2), 3600, "60.00")
        balances.rebuild(USER)
        assert svc.project_days_to_target(USER) == 0
