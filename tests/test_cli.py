"""Tests for the operator CLI (health, stats, windows)."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import mnemo.cli as cli_module
from mnemo.cli import _health, _stats, _windows, dispatch

STATUS = {
    "db_path": "/tmp/mnemo.db",
    "db_size_mb": 1.5,
    "indexes": ["journal", "notes"],
    "memories": 12,
    "superseded": 3,
    "relationships": 7,
    "recent_operations": [
        {
            "index_name": "notes",
            "operation": "refine",
            "summary": "Applied 1 actions, skipped 0.",
            "created_at": "2025-01-05T00:00:00.000Z",
        }
    ],
}


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    engine.initialize = AsyncMock()
    engine.shutdown = AsyncMock()
    engine.status = AsyncMock(return_value=STATUS)
    engine.detect_windows = AsyncMock(
        return_value={"windows": [], "unassigned": ["a"], "stats": {"window_count": 0}}
    )
    with patch.object(cli_module, "Mnemo", return_value=engine):
        yield engine


class TestHealth:
    async def test_reports_counts(self, mock_engine):
        output = await _health()
        assert "mnemo health check:" in output
        assert "db_size: 1.50 MB" in output
        assert "indexes: 2" in output
        assert "superseded: 3" in output
        mock_engine.shutdown.assert_awaited_once()

    async def test_failure_is_reported(self, mock_engine):
        mock_engine.initialize.side_effect = OSError("permission denied")
        output = await _health()
        assert output == "Health check failed: permission denied"


class TestStats:
    async def test_all_indexes(self, mock_engine):
        output = await _stats()
        mock_engine.status.assert_awaited_once_with(None)
        assert "Indexes:       journal, notes" in output
        assert "[notes] refine: Applied 1 actions, skipped 0." in output

    async def test_single_index(self, mock_engine):
        output = await _stats("notes")
        assert output.startswith("mnemo stats for index notes:")
        assert "Indexes:" not in output

    async def test_no_operations(self, mock_engine):
        mock_engine.status.return_value = {**STATUS, "recent_operations": []}
        assert "Recent operations: none" in await _stats()


class TestWindows:
    async def test_json_output(self, mock_engine):
        output = await _windows("notes")
        assert json.loads(output)["unassigned"] == ["a"]
        mock_engine.detect_windows.assert_awaited_once_with("notes")


class TestDispatch:
    def test_no_args_falls_through(self):
        assert dispatch([]) is None

    def test_unknown_command_exits_1(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            dispatch(["compact"])
        assert exc_info.value.code == 1
        assert "Unknown command: compact" in capsys.readouterr().err

    def test_windows_requires_index(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            dispatch(["windows"])
        assert exc_info.value.code == 1
        assert "Usage:" in capsys.readouterr().err

    def test_stats_exits_0(self, mock_engine, capsys):
        with pytest.raises(SystemExit) as exc_info:
            dispatch(["stats", "notes"])
        assert exc_info.value.code == 0
        assert "Live memories: 12" in capsys.readouterr().out
