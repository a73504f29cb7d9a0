"""
SQLite database initialization and connection management.

Single responsibility: own the connection, create tables.
All actual queries live in Repository.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default DB lives next to the repo root
DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "earnings_ledger.db"

SCHEMA_SQL = """
-- Categories ----------------------------------------------------------------
CREATE TABLE IF NOT EXISTS categories (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            TEXT    NOT NULL UNIQUE,
    hourly_rate_usd TEXT,
    created_at      TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Tasks ---------------------------------------------------------------------
CREATE TABLE IF NOT EXISTS tasks (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT    NOT NULL,
    category_id INTEGER REFERENCES categories(id) ON DELETE SET NULL,
    created_at  TEXT    NOT NULL DEFAULT (datetime('now')),
    UNIQUE(name, category_id)
);

-- Time sessions -------------------------------------------------------------
CREATE TABLE IF NOT EXISTS time_sessions (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id          TEXT    NOT NULL,
    task_id          INTEGER NOT NULL,
    category_id      INTEGER,
    hourly_rate_usd  TEXT,
    started_at       TEXT    NOT NULL,
    ended_at         TEXT,
    duration_seconds INTEGER NOT NULL DEFAULT 0 CHECK (duration_seconds >= 0),
    earnings_usd     TEXT,
    is_active        INTEGER NOT NULL DEFAULT 1,
    session_notes    TEXT,
    created_at       TEXT    NOT NULL DEFAULT (datetime('now')),
    updated_at       TEXT    NOT NULL DEFAULT (datetime('now')),
    CHECK (ended_at IS NULL OR ended_at >= started_at)
);

-- Balance ledgers (one per user) --------------------------------------------
CREATE TABLE IF NOT EXISTS balance_ledgers (
    user_id                TEXT    PRIMARY KEY,
    current_balance_usd    TEXT    NOT NULL DEFAULT '0.00',
    lifetime_earnings_usd  TEXT    NOT NULL DEFAULT '0.00',
    target_balance_usd     TEXT    NOT NULL DEFAULT '1000.00',
    target_description     TEXT,
    target_deadline        TEXT,
    current_streak_days    INTEGER NOT NULL DEFAULT 0,
    best_streak_days       INTEGER NOT NULL DEFAULT 0,
    last_earning_date      TEXT,
    targets_achieved_count INTEGER NOT NULL DEFAULT 0,
    auto_reset_on_target   INTEGER NOT NULL DEFAULT 0,
    reset_frequency        TEXT    NOT NULL DEFAULT 'none'
        CHECK (reset_frequency IN ('none', 'daily', 'weekly', 'monthly', 'yearly')),
    cycle_started_at       TEXT,
    notify_on_milestone    INTEGER NOT NULL DEFAULT 1,
    milestone_interval_pct INTEGER NOT NULL DEFAULT 25
        CHECK (milestone_interval_pct > 0 AND milestone_interval_pct <= 50),
    updated_at             TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Sessions already folded into a ledger (idempotency guard) -----------------
CREATE TABLE IF NOT EXISTS ledger_applied_sessions (
    user_id     TEXT    NOT NULL,
    session_id  INTEGER NOT NULL,
    applied_at  TEXT    NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (user_id, session_id)
);

-- Indexes for common queries -------------------------------------------------
CREATE INDEX IF NOT EXISTS idx_time_sessions_user_started ON time_sessions(user_id, started_at);
CREATE INDEX IF NOT EXISTS idx_time_sessions_active       ON time_sessions(user_id, is_active);
CREATE INDEX IF NOT EXISTS idx_time_sessions_task         ON time_sessions(task_id);
CREATE INDEX IF NOT EXISTS idx_tasks_category             ON tasks(category_id);
"""


class Database:
    """Thin wrapper around a SQLite connection."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self.conn: Optional[sqlite3.Connection] = None

    # -- lifecycle -----------------------------------------------------------

    def connect(self) -> sqlite3.Connection:
        """Open (or return existing) connection and ensure schema exists."""
        if self.conn is not None:
            return self.conn
        logger.info("Connecting to SQLite at %s", self.db_path)
        # The writer thread shares this connection; Repository serializes access.
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if str(self.db_path) != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        return self.conn

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Database connection closed.")

    # -- internal ------------------------------------------------------------

    def _create_tables(self) -> None:
        assert self.conn is not None
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()
        logger.info("Database schema ensured.")


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Manages the SQLite connection and makes sure all tables exist on startup.
#
# Key pieces:
#   - SCHEMA_SQL: the full DDL. CREATE IF NOT EXISTS makes it idempotent,
#     safe to run every launch.
#   - Money columns are TEXT holding decimal strings ("12.50"). SQLite has
#     no exact decimal type and REAL would reintroduce float rounding.
#   - ledger_applied_sessions: remembers which sessions a ledger has already
#     counted, so a duplicate finalize event can never double-count.
#
# Data flow:
#   App start → Database.connect() → tables created → Repository uses conn
#
# Interviewer-friendly talking points:
#   1. check_same_thread=False: the persistence writer runs on a background
#      thread. The Repository holds a lock so only one thread touches the
#      connection at a time.
#   2. The balance is not recomputed inside a database trigger; that
#      logic lives in BalanceService where it can be unit tested.
