"""Tests for configuration loading."""

import json
import pytest
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from ledger.config import (
    DEFAULT_AUTOSAVE_EVERY_TICKS,
    DEFAULT_TICK_INTERVAL_MS,
    LedgerConfig,
    load_config,
    save_config,
)


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.json")
        assert config == LedgerConfig()
        assert load_config(None) == LedgerConfig()

    def test_partial_file_fills_defaults(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text(json.dumps({"user_id": "bob", "default_target_usd": "250.00"}))
        config = load_config(path)
        assert config.user_id == "bob"
        assert config.default_target == Decimal("250.00")
        assert config.tick_interval_ms == DEFAULT_TICK_INTERVAL_MS
        assert config.autosave_every_ticks == DEFAULT_AUTOSAVE_EVERY_TICKS

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text(json.dumps({"theme": "dark", "tick_interval_ms": 500}))
        assert load_config(path).tick_interval_ms == 500

    def test_corrupt_file_falls_back(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text("{not json")
        assert load_config(path) == LedgerConfig()

    def test_invalid_values_fall_back(self, tmp_path):
        path = tmp_path / "ledger.json"
        path.write_text(json.dumps({"autosave_every_ticks": 0}))
        assert load_config(path) == LedgerConfig()

    def test_round_trip(self, tmp_path):
        path = tmp_path / "ledger.json"
        save_config(LedgerConfig(user_id="carol", retry_max_seconds=30.0), path)
        config = load_config(path)
        assert config.user_id == "carol"
        assert config.retry_max_seconds == 30.0


class TestValidate:
    def test_rejects_bad_retry_window(self):
        with pytest.raises(ValueError):
            LedgerConfig(retry_base_seconds=10.0, retry_max_seconds=1.0).validate()

    def test_rejects_negative_target(self):
        with pytest.raises(ValueError):
            LedgerConfig(default_target_usd="-5").validate()
