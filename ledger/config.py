"""
Runtime configuration for the ledger host.

Defaults live as module constants; an optional JSON file can override any of
them. Missing keys fall back to the defaults, and an unreadable file falls
back to a fresh default config rather than stopping the app.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from decimal import Decimal
from pathlib import Path
from typing import Optional

from ledger.data.database import DEFAULT_DB_PATH

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "local"
DEFAULT_TICK_INTERVAL_MS = 1000
DEFAULT_AUTOSAVE_EVERY_TICKS = 30       # ~30 s at one tick per second
DEFAULT_RETRY_BASE_SECONDS = 1.0
DEFAULT_RETRY_MAX_SECONDS = 60.0
DEFAULT_TARGET_USD = "1000.00"


@dataclass
class LedgerConfig:
    db_path: str = str(DEFAULT_DB_PATH)
    user_id: str = DEFAULT_USER_ID
    tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS
    autosave_every_ticks: int = DEFAULT_AUTOSAVE_EVERY_TICKS
    retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS
    retry_max_seconds: float = DEFAULT_RETRY_MAX_SECONDS
    default_target_usd: str = DEFAULT_TARGET_USD

    @property
    def default_target(self) -> Decimal:
        return Decimal(self.default_target_usd)

    def validate(self) -> None:
        if self.tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be positive")
        if self.autosave_every_ticks <= 0:
            raise ValueError("autosave_every_ticks must be positive")
        if self.retry_base_seconds < 0 or self.retry_max_seconds < self.retry_base_seconds:
            raise ValueError("retry delays must satisfy 0 <= base <= max")
        if self.default_target < 0:
            raise ValueError("default_target_usd must be non-negative")


def load_config(path: Optional[Path] = None) -> LedgerConfig:
    """Load config from ``path``, filling in defaults for anything missing."""
    if path is None or not Path(path).exists():
        logger.info("No config file found, using defaults.")
        return LedgerConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise TypeError("config root must be an object")

        known = {f.name for f in fields(LedgerConfig)}
        defaulted = sorted(known - set(raw))
        unknown = sorted(set(raw) - known)
        config = LedgerConfig(**{k: v for k, v in raw.items() if k in known})
        config.validate()
    except (OSError, json.JSONDecodeError, TypeError, ValueError, ArithmeticError):
        logger.warning("Could not load config from '%s', falling back to defaults.", path, exc_info=True)
        return LedgerConfig()

    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
    if defaulted:
        logger.info("Loaded config from '%s' with defaulted keys: %s", path, ", ".join(defaulted))
    else:
        logger.info("Loaded config from '%s'.", path)
    return config


def save_config(config: LedgerConfig, path: Path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(asdict(config), f, indent=2)
    logger.info("Saved config to '%s'", path)
