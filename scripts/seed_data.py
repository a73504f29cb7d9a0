"""
Seed Data Generator — fills the ledger with a month of realistic sessions.

Run: python scripts/seed_data.py [num_sessions]
"""

import random
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ledger.config import DEFAULT_USER_ID
from ledger.core.earnings import calculate_earnings
from ledger.data.database import Database
from ledger.data.repository import Repository
from ledger.services.balance_service import BalanceService


def seed(num_sessions: int = 30, user_id: str = DEFAULT_USER_ID) -> None:
    db = Database()
    db.connect()
    repo = Repository(db.conn)

    # ── Categories & Tasks ──────────────────────────────────────────────
    categories_tasks = {
        ("Consulting", Decimal("60.00")): ["Client Workshop", "Architecture Review"],
        ("Freelance Dev", Decimal("45.00")): ["Frontend React", "Backend API", "Bug Fixing"],
        ("Writing", Decimal("25.00")): ["Blog Post", "Documentation"],
        ("Personal", None): ["Reading", "Side Project"],
    }

    tasks = []
    for (cat_name, rate), task_names in categories_tasks.items():
        cat = repo.create_category(cat_name, rate)
        for t_name in task_names:
            tasks.append((repo.create_task(t_name, cat.id), cat))

    # ── Generate finalized sessions ─────────────────────────────────────
    base_date = datetime.now(timezone.utc) - timedelta(days=30)

    for i in range(num_sessions):
        task, cat = random.choice(tasks)
        start = base_date + timedelta(days=i, hours=random.randint(8, 14),
                                       minutes=random.randint(0, 59))
        duration = random.randint(15, 180) * 60
        earnings = calculate_earnings(duration, cat.hourly_rate_usd)

        session = repo.create_session(
            user_id, task.id, start,
            category_id=cat.id, hourly_rate_usd=cat.hourly_rate_usd,
        )
        repo.finalize_session(session.id, start + timedelta(seconds=duration), duration, earnings)

    ledger = BalanceService(repo).rebuild(user_id)

    db.close()
    print(f"Seeded {num_sessions} sessions across {len(tasks)} tasks; "
          f"balance ${ledger.current_balance_usd} of ${ledger.target_balance_usd}.")


if __name__ == "__main__":
    count = int(sys.argv[1]) if len(sys.argv) > 1 else 30
    seed(count)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this script does:
#   Generates fake history so you can demo analytics and the balance
#   without tracking time for 30 days first. Creates rated categories,
#   tasks, and finalized sessions, then rebuilds the balance ledger.
#
# Key points:
#   - Earnings come from the same calculate_earnings() the live timers use.
#   - The ledger is produced by BalanceService.rebuild(), the same replay
#     path used to audit the incremental balance.
#
# Interviewer-friendly talking points:
#   1. Seed data is essential for development and demos. You can't test a
#      progress bar with an empty database.
#   2. This script uses the same Repository interface as the real app,
#      no raw SQL duplication.
