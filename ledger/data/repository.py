"""
Repository — the single place where SQL lives.

Every other module talks to Repository, never to raw SQL. It plays three
roles for the services: category lookup, session store, and balance store.
Swapping SQLite for Postgres (or a fake in tests) touches only this file.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .models import BalanceLedger, Category, PersistedSession, Task

logger = logging.getLogger(__name__)


def _to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO string, so SQL string comparison orders correctly."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    dt = datetime.fromisoformat(s)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _parse_date(s: Optional[str]) -> Optional[date]:
    return date.fromisoformat(s) if s else None


def _money(s: Optional[str]) -> Optional[Decimal]:
    return Decimal(s) if s is not None else None


def _money_str(value: Optional[Decimal]) -> Optional[str]:
    return str(Decimal(value).quantize(Decimal("0.01"))) if value is not None else None


class Repository:
    """Data-access layer wrapping a sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        # One connection is shared by the UI thread and the writer thread.
        self._lock = threading.RLock()

    # ── Categories ──────────────────────────────────────────────────────────

    def create_category(self, name: str, hourly_rate_usd: Optional[Decimal] = None) -> Category:
        with self._lock:
            self.conn.execute(
                "INSERT OR IGNORE INTO categories (name, hourly_rate_usd) VALUES (?, ?)",
                (name, _money_str(hourly_rate_usd)),
            )
            self.conn.commit()
            # fetch back (handles IGNORE case)
            row = self.conn.execute(
                "SELECT * FROM categories WHERE name = ?", (name,)
            ).fetchone()
        return self._row_to_category(row)

    def get_category(self, category_id: int) -> Optional[Category]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM categories WHERE id = ?", (category_id,)
            ).fetchone()
        return self._row_to_category(row) if row else None

    def get_category_by_name(self, name: str) -> Optional[Category]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM categories WHERE name = ?", (name,)
            ).fetchone()
        return self._row_to_category(row) if row else None

    def list_categories(self) -> List[Category]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM categories ORDER BY name"
            ).fetchall()
        return [self._row_to_category(r) for r in rows]

    def set_category_rate(self, category_id: int, hourly_rate_usd: Optional[Decimal]) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE categories SET hourly_rate_usd = ? WHERE id = ?",
                (_money_str(hourly_rate_usd), category_id),
            )
            self.conn.commit()

    # ── Tasks ───────────────────────────────────────────────────────────────

    def create_task(self, name: str, category_id: Optional[int] = None) -> Task:
        with self._lock:
            self.conn.execute(
                "INSERT OR IGNORE INTO tasks (name, category_id) VALUES (?, ?)",
                (name, category_id),
            )
            self.conn.commit()
            row = self.conn.execute(
                "SELECT * FROM tasks WHERE name = ? AND category_id IS ? ORDER BY id LIMIT 1",
                (name, category_id),
            ).fetchone()
        return self._row_to_task(row)

    def get_task(self, task_id: int) -> Optional[Task]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(self, category_id: Optional[int] = None) -> List[Task]:
        with self._lock:
            if category_id is not None:
                rows = self.conn.execute(
                    "SELECT * FROM tasks WHERE category_id = ? ORDER BY name",
                    (category_id,),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM tasks ORDER BY name"
                ).fetchall()
        return [self._row_to_task(r) for r in rows]

    # ── Time sessions ───────────────────────────────────────────────────────

    def create_session(
        self,
        user_id: str,
        task_id: int,
        started_at: datetime,
        category_id: Optional[int] = None,
        hourly_rate_usd: Optional[Decimal] = None,
    ) -> PersistedSession:
        with self._lock:
            cur = self.conn.execute(
                """INSERT INTO time_sessions
                    (user_id, task_id, category_id, hourly_rate_usd, started_at,
                     duration_seconds, is_active)
                VALUES (?, ?, ?, ?, ?, 0, 1)""",
                (user_id, task_id, category_id, _money_str(hourly_rate_usd), _to_iso(started_at)),
            )
            self.conn.commit()
        logger.debug("Created session %d for task %s", cur.lastrowid, task_id)
        return PersistedSession(
            id=cur.lastrowid, user_id=user_id, task_id=task_id,
            category_id=category_id, hourly_rate_usd=hourly_rate_usd,
            started_at=started_at, duration_seconds=0, is_active=True,
        )

    def upsert_session(self, session_id: int, duration_seconds: int, earnings_usd: Decimal) -> bool:
        """Autosave progress on an active row. Returns False if the row is gone or final."""
        with self._lock:
            cur = self.conn.execute(
                """UPDATE time_sessions SET
                    duration_seconds = ?, earnings_usd = ?,
                    updated_at = datetime('now')
                WHERE id = ? AND is_active = 1""",
                (int(duration_seconds), _money_str(earnings_usd), session_id),
            )
            self.conn.commit()
        return cur.rowcount > 0

    def finalize_session(
        self,
        session_id: int,
        ended_at: datetime,
        duration_seconds: int,
        earnings_usd: Decimal,
    ) -> bool:
        """Mark the session complete. A second finalize is a no-op returning False."""
        with self._lock:
            cur = self.conn.execute(
                """UPDATE time_sessions SET
                    ended_at = ?, duration_seconds = ?, earnings_usd = ?,
                    is_active = 0, updated_at = datetime('now')
                WHERE id = ? AND is_active = 1""",
                (_to_iso(ended_at), int(duration_seconds), _money_str(earnings_usd), session_id),
            )
            self.conn.commit()
        return cur.rowcount > 0

    def get_session(self, session_id: int) -> Optional[PersistedSession]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM time_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_finalized_sessions(
        self,
        user_id: str,
        start_after: Optional[datetime] = None,
        start_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[PersistedSession]:
        query = "SELECT * FROM time_sessions"
        conditions: List[str] = ["user_id = ?", "ended_at IS NOT NULL", "is_active = 0"]
        params: list = [user_id]

        if start_after:
            conditions.append("started_at >= ?")
            params.append(_to_iso(start_after))
        if start_before:
            conditions.append("started_at < ?")
            params.append(_to_iso(start_before))

        query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY started_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_session(r) for r in rows]

    def list_active_sessions(self, user_id: str) -> List[PersistedSession]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM time_sessions WHERE user_id = ? AND is_active = 1 "
                "ORDER BY started_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def count_sessions(self, user_id: str) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM time_sessions WHERE user_id = ? AND ended_at IS NOT NULL",
                (user_id,),
            ).fetchone()
        return row[0]

    def discard_session(self, session_id: int) -> bool:
        """Delete an abandoned session, but only while it is still active."""
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM time_sessions WHERE id = ? AND is_active = 1", (session_id,)
            )
            self.conn.commit()
        return cur.rowcount > 0

    # ── Balance ledgers ─────────────────────────────────────────────────────

    def read_ledger(self, user_id: str) -> Optional[BalanceLedger]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM balance_ledgers WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._row_to_ledger(row) if row else None

    def initialize_ledger(self, user_id: str, target_balance_usd: Decimal) -> BalanceLedger:
        """Create the user's ledger if missing and return whatever is stored."""
        with self._lock:
            self.conn.execute(
                "INSERT OR IGNORE INTO balance_ledgers (user_id, target_balance_usd) VALUES (?, ?)",
                (user_id, _money_str(target_balance_usd)),
            )
            self.conn.commit()
            row = self.conn.execute(
                "SELECT * FROM balance_ledgers WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._row_to_ledger(row)

    def write_ledger(self, ledger: BalanceLedger) -> None:
        with self._lock:
            self._upsert_ledger_row(ledger)
            self.conn.commit()

    def apply_ledger_update(self, ledger: BalanceLedger, session_id: int) -> bool:
        """
        Write the ledger and mark ``session_id`` as applied in one transaction.

        Returns False, writing nothing, if the session was already applied.
        """
        with self._lock:
            cur = self.conn.execute(
                "INSERT OR IGNORE INTO ledger_applied_sessions (user_id, session_id) VALUES (?, ?)",
                (ledger.user_id, session_id),
            )
            if cur.rowcount == 0:
                self.conn.rollback()
                return False
            try:
                self._upsert_ledger_row(ledger)
            except sqlite3.Error:
                self.conn.rollback()
                raise
            self.conn.commit()
        return True

    def _upsert_ledger_row(self, ledger: BalanceLedger) -> None:
        self.conn.execute(
            """INSERT OR REPLACE INTO balance_ledgers (
                user_id, current_balance_usd, lifetime_earnings_usd,
                target_balance_usd, target_description, target_deadline,
                current_streak_days, best_streak_days, last_earning_date,
                targets_achieved_count, auto_reset_on_target, reset_frequency,
                cycle_started_at, notify_on_milestone, milestone_interval_pct,
                updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))""",
            (
                ledger.user_id,
                _money_str(ledger.current_balance_usd),
                _money_str(ledger.lifetime_earnings_usd),
                _money_str(ledger.target_balance_usd),
                ledger.target_description,
                ledger.target_deadline.isoformat() if ledger.target_deadline else None,
                ledger.current_streak_days,
                ledger.best_streak_days,
                ledger.last_earning_date.isoformat() if ledger.last_earning_date else None,
                ledger.targets_achieved_count,
                int(ledger.auto_reset_on_target),
                ledger.reset_frequency,
                _to_iso(ledger.cycle_started_at),
                int(ledger.notify_on_milestone),
                ledger.milestone_interval_pct,
            ),
        )

    def is_applied(self, user_id: str, session_id: int) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM ledger_applied_sessions WHERE user_id = ? AND session_id = ?",
                (user_id, session_id),
            ).fetchone()
        return row is not None

    def replace_ledger(self, ledger: BalanceLedger, session_ids: List[int]) -> None:
        """Write a replayed ledger and reset its applied set to ``session_ids``, in one transaction."""
        with self._lock:
            try:
                self.conn.execute(
                    "DELETE FROM ledger_applied_sessions WHERE user_id = ?", (ledger.user_id,)
                )
                self.conn.executemany(
                    "INSERT INTO ledger_applied_sessions (user_id, session_id) VALUES (?, ?)",
                    [(ledger.user_id, sid) for sid in session_ids],
                )
                self._upsert_ledger_row(ledger)
            except sqlite3.Error:
                self.conn.rollback()
                raise
            self.conn.commit()

    def list_applied_sessions(self, user_id: str) -> List[PersistedSession]:
        with self._lock:
            rows = self.conn.execute(
                """SELECT ts.* FROM time_sessions ts
                   JOIN ledger_applied_sessions a ON a.session_id = ts.id
                   WHERE a.user_id = ? ORDER BY ts.ended_at, ts.id""",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def latest_applied_end(self, user_id: str) -> Optional[datetime]:
        """End time of the newest session already folded into the user's ledger."""
        with self._lock:
            row = self.conn.execute(
                """SELECT MAX(ts.ended_at) AS latest FROM time_sessions ts
                   JOIN ledger_applied_sessions a ON a.session_id = ts.id
                   WHERE a.user_id = ?""",
                (user_id,),
            ).fetchone()
        return _parse_dt(row["latest"])

    # ── Row mappers ─────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_category(row: sqlite3.Row) -> Category:
        return Category(id=row["id"], name=row["name"],
                        hourly_rate_usd=_money(row["hourly_rate_usd"]),
                        created_at=_parse_dt(row["created_at"]))

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(id=row["id"], name=row["name"],
                    category_id=row["category_id"],
                    created_at=_parse_dt(row["created_at"]))

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> PersistedSession:
        return PersistedSession(
            id=row["id"], user_id=row["user_id"], task_id=row["task_id"],
            category_id=row["category_id"],
            hourly_rate_usd=_money(row["hourly_rate_usd"]),
            started_at=_parse_dt(row["started_at"]),
            ended_at=_parse_dt(row["ended_at"]),
            duration_seconds=row["duration_seconds"] or 0,
            earnings_usd=_money(row["earnings_usd"]),
            is_active=bool(row["is_active"]),
            session_notes=row["session_notes"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_ledger(row: sqlite3.Row) -> BalanceLedger:
        return BalanceLedger(
            user_id=row["user_id"],
            current_balance_usd=Decimal(row["current_balance_usd"]),
            lifetime_earnings_usd=Decimal(row["lifetime_earnings_usd"]),
            target_balance_usd=Decimal(row["target_balance_usd"]),
            target_description=row["target_description"],
            target_deadline=_parse_date(row["target_deadline"]),
            current_streak_days=row["current_streak_days"],
            best_streak_days=row["best_streak_days"],
            last_earning_date=_parse_date(row["last_earning_date"]),
            targets_achieved_count=row["targets_achieved_count"],
            auto_reset_on_target=bool(row["auto_reset_on_target"]),
            reset_frequency=row["reset_frequency"],
            cycle_started_at=_parse_dt(row["cycle_started_at"]),
            notify_on_milestone=bool(row["notify_on_milestone"]),
            milestone_interval_pct=row["milestone_interval_pct"],
            updated_at=_parse_dt(row["updated_at"]),
        )


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The Repository is the ONLY place raw SQL queries live. Services call
#   methods like repo.finalize_session() instead of writing SQL strings.
#   This is the "Repository Pattern."
#
# Key methods:
#   - create/upsert/finalize_session: the three writes of a session's life.
#     Both upsert and finalize carry "AND is_active = 1", so a late autosave
#     can never overwrite a finalized row, and a second finalize is a no-op.
#   - list_finalized_sessions(): feeds analytics and the balance rebuild.
#   - read/write_ledger + apply_ledger_update + replace_ledger: the balance
#     store. The last two touch the ledger row and the applied set together.
#
# Data flow:
#   Service layer → Repository.method() → SQL → sqlite3.Row → dataclass model
#
# Interviewer-friendly talking points:
#   1. Timestamps are written as fixed-width UTC ISO strings, so comparing
#      them as TEXT in SQL gives the same order as comparing the datetimes.
#   2. An RLock around every statement: sqlite3 connections are not safe to
#      use from two threads at once, and the persistence writer is a thread.
#   3. INSERT OR IGNORE for ledgers and applied-session markers: idempotent
#      creation without a "check then insert" race.
