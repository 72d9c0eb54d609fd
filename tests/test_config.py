"""Tests for configuration defaults and MNEMO_* environment overrides."""

from __future__ import annotations

from dataclasses import FrozenInstanceError
from pathlib import Path

import pytest

from mnemo.config import MnemoConfig, get_config, load_config


class TestDefaults:
    def test_values(self):
        cfg = load_config({})
        assert cfg.default_index == "default"
        assert cfg.refinement.allow_delete is False
        assert cfg.refinement.default_budget == 100
        assert cfg.refinement.access_tracking_top_n == 3
        assert cfg.windowing.epsilon_days == 14.0
        assert cfg.windowing.min_memories == 2
        assert cfg.temporal.default_policy == "warn-clamp"
        assert cfg.reconsolidation.slow_threshold_ms == 500

    def test_db_path_expanded(self):
        cfg = MnemoConfig()
        assert "~" not in str(cfg.db_path)
        assert cfg.db_path == Path("~/.mnemo/mnemo.db").expanduser()

    def test_frozen(self):
        cfg = MnemoConfig()
        with pytest.raises(FrozenInstanceError):
            cfg.default_index = "other"  # type: ignore[misc]


class TestEnvOverrides:
    def test_nested_bool(self):
        cfg = load_config({"MNEMO_REFINEMENT__ALLOW_DELETE": "true"})
        assert cfg.refinement.allow_delete is True

    def test_nested_float(self):
        cfg = load_config({"MNEMO_WINDOWING__EPSILON_DAYS": "7"})
        assert cfg.windowing.epsilon_days == 7.0

    def test_nested_int_and_str(self):
        cfg = load_config(
            {
                "MNEMO_TEMPORAL__MAX_GRAPH_NODES": "50",
                "MNEMO_TEMPORAL__DEFAULT_POLICY": "strict",
            }
        )
        assert cfg.temporal.max_graph_nodes == 50
        assert cfg.temporal.default_policy == "strict"

    def test_db_path(self, tmp_path):
        cfg = load_config({"MNEMO_DB_PATH": str(tmp_path / "x.db")})
        assert cfg.db_path == tmp_path / "x.db"

    def test_empty_value_ignored(self):
        cfg = load_config({"MNEMO_DEFAULT_INDEX": ""})
        assert cfg.default_index == "default"

    @pytest.mark.parametrize("raw", ["0", "false", "no", "off"])
    def test_falsey_bool(self, raw):
        cfg = load_config({"MNEMO_REFINEMENT__ACCESS_TRACKING_ENABLED": raw})
        assert cfg.refinement.access_tracking_enabled is False

    def test_get_config_reads_os_environ(self, monkeypatch):
        monkeypatch.setenv("MNEMO_DEFAULT_INDEX", "journal")
        assert get_config(reload=True).default_index == "journal"
        monkeypatch.delenv("MNEMO_DEFAULT_INDEX")
        assert get_config(reload=True).default_index == "default"
