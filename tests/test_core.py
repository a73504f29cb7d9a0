"""Unit tests for the timer core (clock, earnings, session state machine)."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ledger.core.clock import ManualClock
from ledger.core.earnings import calculate_earnings, to_money
from ledger.core.errors import InvalidTransition, SessionNotFound
from ledger.core.session import TimerSession, TimerState


@pytest.fixture
def clock():
    return ManualClock()


class TestEarnings:
    def test_zero_seconds(self):
        assert calculate_earnings(0, Decimal("42.50")) == Decimal("0.00")

    def test_one_hour(self):
        assert calculate_earnings(3600, Decimal("10.00")) == Decimal("10.00")

    def test_half_hour(self):
        assert calculate_earnings(1800, Decimal("10.00")) == Decimal("5.00")

    def test_no_rate_is_free(self):
        assert calculate_earnings(600, None) == Decimal("0.00")
        assert calculate_earnings(600, 0) == Decimal("0.00")

    def test_rounds_half_up_to_cent(self):
        # 9 s at $1/hr = $0.0025 -> $0.00; 18 s = $0.005 -> $0.01
        assert calculate_earnings(9, Decimal("1.00")) == Decimal("0.00")
        assert calculate_earnings(18, Decimal("1.00")) == Decimal("0.01")

    def test_negative_seconds_rejected(self):
        with pytest.raises(ValueError):
            calculate_earnings(-1, Decimal("10.00"))

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError):
            calculate_earnings(60, Decimal("-1.00"))

    def test_to_money(self):
        assert to_money(None) == Decimal("0.00")
        assert to_money(12.345) == Decimal("12.35")
        assert to_money("7") == Decimal("7.00")


class TestManualClock:
    def test_advance_moves_both_readings(self, clock: ManualClock):
        wall = clock.now()
        clock.advance(90)
        assert clock.monotonic() == 90
        assert clock.now() == wall + timedelta(seconds=90)

    def test_cannot_go_backwards(self, clock: ManualClock):
        with pytest.raises(ValueError):
            clock.advance(-1)


class TestTimerSession:
    def test_new_session_is_idle(self, clock):
        s = TimerSession(1, Decimal("60"), clock=clock)
        assert s.state == TimerState.IDLE
        assert s.started_at is None
        assert s.elapsed_seconds == 0
        assert s.earnings_usd == Decimal("0.00")

    def test_start_sets_timestamps(self, clock):
        s = TimerSession(1, clock=clock)
        s.start()
        assert s.state == TimerState.RUNNING
        assert s.started_at == clock.now()
        assert s.last_resumed_at == clock.now()

    def test_elapsed_grows_while_running(self, clock):
        s = TimerSession(1, Decimal("36"), clock=clock)
        s.start()
        clock.advance(100)
        assert s.elapsed_seconds == 100
        assert s.earnings_usd == Decimal("1.00")

    def test_paused_time_does_not_count(self, clock):
        s = TimerSession(1, clock=clock)
        s.start()
        clock.advance(10)
        s.pause()
        clock.advance(500)
        assert s.elapsed_seconds == 10
        assert s.last_resumed_at is None

    def test_pause_resume_has_no_drift(self, clock):
        s = TimerSession(1, clock=clock)
        s.start()
        for _ in range(50):
            clock.advance(1.5)
            s.pause()
            clock.advance(7)
            s.resume()
        clock.advance(25)
        assert s.elapsed_seconds == pytest.approx(100.0)

    def test_wall_clock_jump_is_ignored(self, clock):
        s = TimerSession(1, clock=clock)
        s.start()
        clock.advance(60)
        clock.set_wall(clock.now() - timedelta(hours=3))
        assert s.elapsed_seconds == 60

    def test_stop_computes_final_numbers(self, clock):
        s = TimerSession(7, Decimal("60"), clock=clock)
        s.start()
        clock.advance(1800.9)
        result = s.stop()
        assert s.state == TimerState.STOPPED
        assert result.task_id == 7
        assert result.duration_seconds == 1800
        assert result.earnings_usd == Decimal("30.00")
        assert result.ended_at == clock.now()

    def test_stop_twice_returns_same_result(self, clock):
        s = TimerSession(1, Decimal("60"), clock=clock)
        s.start()
        clock.advance(90)
        first = s.stop()
        clock.advance(1000)
        second = s.stop()
        assert first == second

    def test_stop_from_paused(self, clock):
        s = TimerSession(1, Decimal("60"), clock=clock)
        s.start()
        clock.advance(60)
        s.pause()
        clock.advance(60)
        assert s.stop().duration_seconds == 60

    def test_invalid_transitions(self, clock):
        s = TimerSession(1, clock=clock)
        with pytest.raises(InvalidTransition, match="Cannot pause: current state is 'idle'"):
            s.pause()
        with pytest.raises(InvalidTransition):
            s.resume()
        with pytest.raises(InvalidTransition):
            s.stop()
        s.start()
        with pytest.raises(InvalidTransition):
            s.start()
        with pytest.raises(InvalidTransition):
            s.resume()

    def test_invalid_transition_is_runtime_error(self, clock):
        s = TimerSession(1, clock=clock)
        with pytest.raises(RuntimeError):
            s.pause()

    def test_reset_discards_time(self, clock):
        s = TimerSession(1, Decimal("60"), clock=clock)
        s.start()
        clock.advance(300)
        s.reset()
        assert s.state == TimerState.IDLE
        assert s.elapsed_seconds == 0
        assert s.started_at is None
        s.start()
        assert s.state == TimerState.RUNNING

    def test_rate_is_snapshotted(self, clock):
        rate = Decimal("20.00")
        s = TimerSession(1, rate, clock=clock)
        rate += 100
        assert s.hourly_rate_usd == Decimal("20.00")

    def test_negative_rate_rejected(self, clock):
        with pytest.raises(ValueError):
            TimerSession(1, Decimal("-5"), clock=clock)

    def test_restore_builds_paused_session(self, clock):
        started = datetime(2026, 1, 4, 8, 0, tzinfo=timezone.utc)
        s = TimerSession(1, Decimal("60"), clock=clock)
        s.restore(600, started)
        assert s.state == TimerState.PAUSED
        assert s.started_at == started
        assert s.elapsed_seconds == 600
        s.resume()
        clock.advance(600)
        assert s.stop().earnings_usd == Decimal("20.00")


class TestErrors:
    def test_session_not_found_is_key_error(self):
        err = SessionNotFound(99)
        assert isinstance(err, KeyError)
        assert "99" in str(err)
