from .clock import Clock, ManualClock, SYSTEM_CLOCK
from .earnings import calculate_earnings, to_money
from .errors import (
    AmbiguousRecovery,
    InvalidTransition,
    LedgerError,
    PersistenceWriteFailed,
    SessionNotFound,
)
from .session import StopResult, TimerSession, TimerState

__all__ = [
    "Clock", "ManualClock", "SYSTEM_CLOCK",
    "calculate_earnings", "to_money",
    "AmbiguousRecovery", "InvalidTransition", "LedgerError",
    "PersistenceWriteFailed", "SessionNotFound",
    "StopResult", "TimerSession", "TimerState",
]
