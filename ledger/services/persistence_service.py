"""
Persistence Service — writes timer sessions to the store without ever
blocking the timers.

Each session gets its own FIFO of pending writes:

    create → autosave* → finalize        (or → discard, after a reset)

A write that fails stays at the head of its queue and is retried with
exponential backoff; nothing behind it can overtake it, so a slow autosave
can never clobber a later finalize. Queues are drained on a single
background writer thread, and failures only ever show up as a sync status.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ledger.config import (
    DEFAULT_AUTOSAVE_EVERY_TICKS,
    DEFAULT_RETRY_BASE_SECONDS,
    DEFAULT_RETRY_MAX_SECONDS,
)
from ledger.core.clock import SYSTEM_CLOCK, Clock
from ledger.core.earnings import ZERO, calculate_earnings
from ledger.core.errors import AmbiguousRecovery, PersistenceWriteFailed
from ledger.core.session import StopResult, TimerSession, TimerState
from ledger.data.models import PersistedSession
from ledger.data.repository import Repository
from ledger.services.timer_service import TimerListener, TimerService

logger = logging.getLogger(__name__)

# Errors a store write may raise that we treat as transient.
WRITE_ERRORS = (sqlite3.Error, OSError, PersistenceWriteFailed)

FinalizeListener = Callable[[PersistedSession], None]


class SyncStatus:
    SYNCED = "synced"
    PENDING = "pending"
    RETRYING = "retrying"


class WriteOp:
    CREATE = "create"
    AUTOSAVE = "autosave"
    FINALIZE = "finalize"
    DISCARD = "discard"


@dataclass
class PendingWrite:
    op: str
    duration_seconds: int = 0
    earnings_usd: Decimal = ZERO
    ended_at: Optional[datetime] = None
    attempts: int = 0
    next_attempt_at: float = 0.0


@dataclass
class SessionSync:
    """Write-side bookkeeping for one timer session."""
    local_id: str
    task_id: object
    category_id: Optional[int]
    hourly_rate_usd: Decimal
    started_at: datetime
    session_id: Optional[int] = None
    queue: Deque[PendingWrite] = field(default_factory=deque)
    in_flight: bool = False
    cancelled: bool = False


class PersistenceService(TimerListener):
    """Bridges the TimerService to the session store."""

    def __init__(
        self,
        repo: Repository,
        timers: TimerService,
        user_id: str,
        autosave_every_ticks: int = DEFAULT_AUTOSAVE_EVERY_TICKS,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        retry_max_seconds: float = DEFAULT_RETRY_MAX_SECONDS,
        background: bool = True,
        clock: Optional[Clock] = None,
    ) -> None:
        self.repo = repo
        self.timers = timers
        self.user_id = user_id
        self.autosave_every_ticks = autosave_every_ticks
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.clock = clock or SYSTEM_CLOCK

        self._syncs: Dict[str, SessionSync] = {}
        self._lock = threading.Lock()
        self._ticks = 0
        self._finalize_listeners: List[FinalizeListener] = []

        self._executor: Optional[Executor] = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-writer")
            if background else None
        )
        self._flush_scheduled = False

        timers.attach(self)

    def add_finalize_listener(self, listener: FinalizeListener) -> None:
        """Called with the stored record after each finalize write lands."""
        self._finalize_listeners.append(listener)

    # ── TimerListener hooks ─────────────────────────────────────────────────

    def on_started(self, session: TimerSession) -> None:
        sync = SessionSync(
            local_id=session.local_id,
            task_id=session.task_id,
            category_id=session.category_id,
            hourly_rate_usd=session.hourly_rate_usd,
            started_at=session.started_at,
        )
        sync.queue.append(PendingWrite(WriteOp.CREATE))
        with self._lock:
            self._syncs[session.local_id] = sync
        self.request_flush()

    def on_stopped(self, session: TimerSession, result: StopResult) -> None:
        with self._lock:
            sync = self._syncs.get(session.local_id)
            if sync is None:
                return
            # Finalize supersedes any autosave that has not been sent yet.
            self._drop_unsent(sync, WriteOp.AUTOSAVE)
            sync.queue.append(PendingWrite(
                WriteOp.FINALIZE,
                duration_seconds=result.duration_seconds,
                earnings_usd=result.earnings_usd,
                ended_at=result.ended_at,
            ))
        self.request_flush()

    def on_reset(self, session: TimerSession) -> None:
        with self._lock:
            sync = self._syncs.get(session.local_id)
            if sync is None:
                return
            sync.cancelled = True
            head_in_flight = sync.queue[0] if sync.in_flight and sync.queue else None
            sync.queue.clear()
            if head_in_flight is not None:
                sync.queue.append(head_in_flight)
            if sync.session_id is not None or head_in_flight is not None:
                # A row exists (or is being created): remove it once it is safe to.
                sync.queue.append(PendingWrite(WriteOp.DISCARD))
            else:
                del self._syncs[session.local_id]
        logger.info("Cancelled pending writes for abandoned task %s", session.task_id)
        self.request_flush()

    def on_adopted(self, session: TimerSession, record: PersistedSession) -> None:
        sync = SessionSync(
            local_id=session.local_id,
            task_id=session.task_id,
            category_id=session.category_id,
            hourly_rate_usd=session.hourly_rate_usd,
            started_at=record.started_at,
            session_id=record.id,
        )
        with self._lock:
            self._syncs[session.local_id] = sync

    def sync_status(self, session: TimerSession) -> Optional[str]:
        with self._lock:
            sync = self._syncs.get(session.local_id)
            if sync is None:
                return None
            if not sync.queue:
                return SyncStatus.SYNCED
            if sync.queue[0].attempts > 0:
                return SyncStatus.RETRYING
            return SyncStatus.PENDING

    # ── Autosave ────────────────────────────────────────────────────────────

    def maybe_autosave(self, sessions: Optional[Iterable[TimerSession]] = None) -> bool:
        """Count one host tick; every N ticks queue an autosave. Returns True if it did."""
        self._ticks += 1
        if self._ticks % self.autosave_every_ticks != 0:
            return False
        self.autosave(sessions if sessions is not None else self.timers.live_sessions())
        return True

    def autosave(self, sessions: Iterable[TimerSession]) -> int:
        queued = 0
        with self._lock:
            for session in sessions:
                if session.state not in (TimerState.RUNNING, TimerState.PAUSED):
                    continue
                sync = self._syncs.get(session.local_id)
                if sync is None or sync.cancelled:
                    continue
                head = sync.queue[0] if sync.queue else None
                if head is not None and head.op == WriteOp.CREATE and head.attempts:
                    # The deferred create gets another go on every autosave.
                    head.next_attempt_at = 0.0
                duration = int(session.elapsed_seconds)
                write = PendingWrite(
                    WriteOp.AUTOSAVE,
                    duration_seconds=duration,
                    earnings_usd=calculate_earnings(duration, session.hourly_rate_usd),
                )
                tail = sync.queue[-1] if sync.queue else None
                tail_unsent = tail is not None and not (sync.in_flight and len(sync.queue) == 1)
                if tail_unsent and tail.op == WriteOp.AUTOSAVE:
                    tail.duration_seconds = write.duration_seconds
                    tail.earnings_usd = write.earnings_usd
                else:
                    sync.queue.append(write)
                queued += 1
        if queued:
            logger.debug("Queued autosave for %d session(s)", queued)
        return queued

    # ── Draining ────────────────────────────────────────────────────────────

    def request_flush(self) -> None:
        """Drain queues on the writer thread. Returns immediately."""
        if self._executor is None:
            return
        with self._lock:
            if self._flush_scheduled:
                return
            self._flush_scheduled = True
        self._executor.submit(self._flush_job)

    def _flush_job(self) -> None:
        with self._lock:
            self._flush_scheduled = False
        self.flush()

    def flush(self) -> int:
        """Perform every write that is due now. Returns how many succeeded."""
        succeeded = 0
        failed_this_round: set = set()
        while True:
            job = self._next_ready(failed_this_round)
            if job is None:
                return succeeded
            sync, write = job
            record, error = self._perform(sync, write)
            if error is None:
                succeeded += 1
                self._complete(sync, write, record)
            else:
                failed_this_round.add(sync.local_id)
                self._fail(sync, write, error)

    def pending_count(self) -> int:
        with self._lock:
            return sum(len(s.queue) for s in self._syncs.values())

    def shutdown(self, wait: bool = True) -> None:
        """Run whatever is still due, then stop the writer thread."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        self.flush()

    def _next_ready(self, skip: set) -> Optional[Tuple[SessionSync, PendingWrite]]:
        now = self.clock.monotonic()
        with self._lock:
            for sync in self._syncs.values():
                if sync.in_flight or not sync.queue or sync.local_id in skip:
                    continue
                head = sync.queue[0]
                if head.next_attempt_at > now:
                    continue
                sync.in_flight = True
                return sync, head
        return None

    def _perform(
        self, sync: SessionSync, write: PendingWrite
    ) -> Tuple[Optional[PersistedSession], Optional[BaseException]]:
        """Run one store write outside the lock."""
        try:
            if write.op == WriteOp.CREATE:
                record = self.repo.create_session(
                    self.user_id, sync.task_id, sync.started_at,
                    category_id=sync.category_id,
                    hourly_rate_usd=sync.hourly_rate_usd,
                )
                return record, None
            if write.op == WriteOp.AUTOSAVE:
                self.repo.upsert_session(sync.session_id, write.duration_seconds, write.earnings_usd)
                return None, None
            if write.op == WriteOp.FINALIZE:
                landed = self.repo.finalize_session(
                    sync.session_id, write.ended_at, write.duration_seconds, write.earnings_usd,
                )
                if not landed:
                    # A previous attempt landed even though it reported failure.
                    logger.debug("Session %s was already finalized", sync.session_id)
                return self.repo.get_session(sync.session_id), None
            if write.op == WriteOp.DISCARD:
                if sync.session_id is not None:
                    self.repo.discard_session(sync.session_id)
                return None, None
            raise ValueError(f"Unknown write op {write.op!r}")
        except WRITE_ERRORS as exc:
            return None, exc

    def _complete(self, sync: SessionSync, write: PendingWrite, record: Optional[PersistedSession]) -> None:
        finalized = False
        with self._lock:
            sync.in_flight = False
            if sync.queue and sync.queue[0] is write:
                sync.queue.popleft()
            if write.op == WriteOp.CREATE and record is not None:
                sync.session_id = record.id
            if write.op in (WriteOp.FINALIZE, WriteOp.DISCARD):
                self._syncs.pop(sync.local_id, None)
                finalized = write.op == WriteOp.FINALIZE
            elif sync.cancelled and not sync.queue:
                self._syncs.pop(sync.local_id, None)

        if write.op == WriteOp.CREATE:
            logger.info("Stored session %s for task %s", sync.session_id, sync.task_id)
        elif write.op == WriteOp.DISCARD:
            logger.info("Discarded abandoned session %s", sync.session_id)
        if finalized:
            logger.info(
                "Finalized session %s for task %s: %ds, $%s",
                sync.session_id, sync.task_id, write.duration_seconds, write.earnings_usd,
            )
            self.timers.confirm_finalized(sync.task_id, sync.local_id)
            if record is not None:
                self._notify_finalized(record)

    def _fail(self, sync: SessionSync, write: PendingWrite, error: BaseException) -> None:
        with self._lock:
            sync.in_flight = False
            write.attempts += 1
            delay = min(self.retry_base_seconds * (2 ** (write.attempts - 1)), self.retry_max_seconds)
            write.next_attempt_at = self.clock.monotonic() + delay
        failure = error if isinstance(error, PersistenceWriteFailed) else PersistenceWriteFailed(
            write.op, write.attempts, error
        )
        logger.warning(
            "%s for task %s; retrying in %.1fs (%s)",
            write.op, sync.task_id, delay, failure,
        )

    def _notify_finalized(self, record: PersistedSession) -> None:
        for listener in self._finalize_listeners:
            try:
                listener(record)
            except Exception:
                logger.exception("Finalize listener failed for session %s", record.id)

    @staticmethod
    def _drop_unsent(sync: SessionSync, op: str) -> None:
        keep_head = sync.queue[0] if sync.in_flight and sync.queue else None
        sync.queue = deque(
            w for w in sync.queue if w.op != op or w is keep_head
        )

    # ── Crash recovery ──────────────────────────────────────────────────────

    def find_orphans(self) -> List[PersistedSession]:
        """Active stored sessions that no live timer is writing to."""
        with self._lock:
            known = {s.session_id for s in self._syncs.values() if s.session_id is not None}
        return [r for r in self.repo.list_active_sessions(self.user_id) if r.id not in known]

    def check_recovery(self) -> None:
        """Raise AmbiguousRecovery if unfinished sessions were left behind."""
        orphans = self.find_orphans()
        if orphans:
            logger.warning("Found %d unfinished session(s) from a previous run", len(orphans))
            raise AmbiguousRecovery(orphans)

    def resolve_orphan(self, session_id: int, action: str) -> PersistedSession:
        """
        Settle one orphaned session.

        ``"finalize"`` closes it with the last autosaved duration (ended_at is
        started_at + that duration; no unseen time is added). ``"resume"``
        adopts it into the TimerService as a paused timer.
        """
        record = self.repo.get_session(session_id)
        if record is None or not record.is_active:
            raise ValueError(f"Session {session_id} is not an unfinished session")

        if action == "resume":
            self.timers.adopt(record)
            return record
        if action != "finalize":
            raise ValueError(f"Unknown recovery action {action!r}")

        earnings = record.earnings_usd
        if earnings is None:
            earnings = calculate_earnings(record.duration_seconds, record.hourly_rate_usd)
        ended_at = record.started_at + timedelta(seconds=record.duration_seconds)
        self.repo.finalize_session(record.id, ended_at, record.duration_seconds, earnings)
        logger.info("Finalized orphaned session %s as-is (%ds)", record.id, record.duration_seconds)
        final = self.repo.get_session(record.id)
        self._notify_finalized(final)
        return final


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Turns timer events into database writes: a create at start, an autosave
#   every ~30 s, a finalize at stop. It also finds sessions left "active" by
#   a crash and lets the user decide what to do with them.
#
# Key design decisions:
#   - Per-session FIFO: writes for one session are applied strictly in the
#     order they were issued. A failed head blocks its own queue only;
#     other sessions keep saving.
#   - Backoff: a failed write waits base * 2^(attempts-1) seconds (capped)
#     before its next try. The timer on screen never notices.
#   - Coalescing: if two autosaves pile up, only the newest values are sent.
#     A finalize makes any unsent autosave pointless, so it is dropped.
#   - Reset cancels everything queued and deletes the row, so an abandoned
#     session cannot later show up as a crash leftover.
#
# Data flow:
#   TimerService → on_started/on_stopped/on_reset → queue → writer thread →
#   Repository → (finalize) → TimerService.confirm_finalized() and
#   BalanceService.apply_finalized().
#
# Interviewer-friendly talking points:
#   1. Fire-and-forget: request_flush() only submits work to a one-thread
#      executor. The tick loop never waits on I/O.
#   2. Exactly-once finalize on top of at-least-once delivery: the SQL
#      update is guarded by is_active = 1, so a retry after a write that
#      secretly succeeded is harmless.
#   3. Crash recovery refuses to guess. Unknown elapsed time is never
#      invented; the user chooses resume or finalize-as-is.
