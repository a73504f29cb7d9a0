"""Exception types raised by the timer and ledger core."""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence


class LedgerError(Exception):
    """Base class for every error this package raises on purpose."""


class InvalidTransition(LedgerError, RuntimeError):
    """A timer was asked to make a move its current state does not allow."""

    def __init__(self, action: str, state: str, expected: Iterable[str]) -> None:
        self.action = action
        self.state = state
        self.expected = tuple(expected)
        wanted = " or ".join(f"'{s}'" for s in self.expected)
        super().__init__(
            f"Cannot {action}: current state is '{state}', expected {wanted}."
        )


class SessionNotFound(LedgerError, KeyError):
    """No live timer is tracked for the given task."""

    def __init__(self, task_id: object) -> None:
        self.task_id = task_id
        super().__init__(task_id)

    def __str__(self) -> str:
        return f"No timer is tracked for task {self.task_id!r}."


class PersistenceWriteFailed(LedgerError):
    """A store write failed; the persistence layer retries it."""

    def __init__(self, op: str, attempts: int = 1, cause: Optional[BaseException] = None) -> None:
        self.op = op
        self.attempts = attempts
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{op} write failed (attempt {attempts}){detail}")


class AmbiguousRecovery(LedgerError):
    """
    Active session records were found at startup with no live timer.

    The elapsed time across a restart is unknown, so these are handed to the
    user to resume or finalize instead of being guessed at.
    """

    def __init__(self, sessions: Sequence) -> None:
        self.sessions: List = list(sessions)
        ids = ", ".join(str(s.id) for s in self.sessions)
        super().__init__(f"{len(self.sessions)} unfinished session(s) need a decision: {ids}")
