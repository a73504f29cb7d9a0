"""
EarningsLedger — time tracking and earnings ledger.
Entry point for the headless host.
"""

import faulthandler
import logging
import sys
from pathlib import Path

faulthandler.enable()

# Ensure ledger is importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

from PySide6.QtCore import QCoreApplication

from ledger.analytics.aggregator import AnalyticsService
from ledger.config import load_config
from ledger.core.errors import AmbiguousRecovery
from ledger.data.database import Database
from ledger.data.repository import Repository
from ledger.host.tick_host import TimerHost
from ledger.services.balance_service import BalanceService
from ledger.services.persistence_service import PersistenceService
from ledger.services.timer_service import TimerService

CONFIG_PATH = Path(__file__).resolve().parent / "earnings_ledger.json"


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler("earnings_ledger.log", encoding="utf-8"),
        ],
    )


def main() -> None:
    setup_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting EarningsLedger...")

    config = load_config(CONFIG_PATH)

    app = QCoreApplication(sys.argv)
    app.setApplicationName("EarningsLedger")
    app.setOrganizationName("EarningsLedger")

    db = Database(Path(config.db_path))
    repo = Repository(db.connect())

    timers = TimerService(category_lookup=repo.get_category)
    persistence = PersistenceService(
        repo, timers, config.user_id,
        autosave_every_ticks=config.autosave_every_ticks,
        retry_base_seconds=config.retry_base_seconds,
        retry_max_seconds=config.retry_max_seconds,
    )
    balances = BalanceService(repo, default_target=config.default_target)
    persistence.add_finalize_listener(balances.on_finalized)
    analytics = AnalyticsService(repo)

    try:
        persistence.check_recovery()
    except AmbiguousRecovery as exc:
        # Left for the user to resume or finalize; never guessed at.
        logger.warning("%s", exc)

    ledger = balances.get_ledger(config.user_id)
    today = analytics.get_analytics(config.user_id, "today")
    logger.info(
        "Balance $%s of $%s (%s%%); today $%s over %.2f h",
        ledger.current_balance_usd, ledger.target_balance_usd,
        ledger.progress_percentage, today.earnings_usd, today.hours,
    )

    host = TimerHost(timers, persistence, tick_interval_ms=config.tick_interval_ms)

    def _shutdown() -> None:
        host.stop()
        timers.stop_all()
        persistence.shutdown(wait=True)
        db.close()
        logger.info("EarningsLedger stopped.")

    app.aboutToQuit.connect(_shutdown)
    host.start()

    logger.info("Application started.")
    sys.exit(app.exec())


if __name__ == "__main__":
    main()


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The entry point. Sets up logging, loads config, wires the services
#   together, checks for sessions left behind by a crash, and runs the tick
#   host inside a Qt event loop.
#
# Key points:
#   - Wiring order mirrors the data flow: TimerService → PersistenceService
#     → BalanceService (as a finalize listener). AnalyticsService only reads.
#   - QCoreApplication rather than QApplication: the ledger needs the event
#     loop and timers, not widgets. A UI can be layered on top and connect
#     to TimerHost.snapshot_ready.
#   - aboutToQuit stops every timer so its finalize is queued, then drains
#     the writer before the connection closes.
#
# Interviewer-friendly talking points:
#   1. Recovery is reported, not auto-resolved: elapsed time across a crash
#      is unknown, so the user decides.
#   2. Logging to both console and file: console for development, file
#      for debugging user-reported issues.
