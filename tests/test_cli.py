"""Tests for the command-line entry point."""

import json
import sqlite3
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from traceguard.alerting.window import SqliteMetricSource
from traceguard.cli import main
from traceguard.storage.store import save_alert


@pytest.fixture(autouse=True)
def _use_mock_settings(mock_settings: Any) -> None:
    """Automatically use mock settings for all tests in this module."""


def _run(conn: sqlite3.Connection, argv: list[str]) -> int:
    with patch("traceguard.cli.get_initialized_connection", return_value=conn), pytest.raises(SystemExit) as exc:
        main(argv)
    return int(exc.value.code or 0)


class TestCli:
    def test_evaluate_prints_outcome(self, conn: sqlite3.Connection, capsys: pytest.CaptureFixture[str]) -> None:
        save_alert(
            conn,
            alert_id="a1",
            project_id="p1",
            name="Error rate",
            alert_type="ERROR_RATE",
            operator="GREATER_THAN",
            threshold=5.0,
        )

        code = _run(conn, ["evaluate", "a1"])

        assert code == 0
        outcome = json.loads(capsys.readouterr().out)
        assert outcome["alert_id"] == "a1"
        assert outcome["status"] == "no_data"

    def test_evaluate_unknown_alert(self, conn: sqlite3.Connection, capsys: pytest.CaptureFixture[str]) -> None:
        code = _run(conn, ["evaluate", "missing"])

        assert code == 1
        assert json.loads(capsys.readouterr().out)["status"] == "not_found"

    def test_investigate_unknown_alert(self, conn: sqlite3.Connection, capsys: pytest.CaptureFixture[str]) -> None:
        code = _run(conn, ["investigate", "missing", "--lookback-days", "3"])

        assert code == 1
        assert "Alert not found: missing" in capsys.readouterr().err

    def test_database_unavailable(self, capsys: pytest.CaptureFixture[str]) -> None:
        with (
            patch("traceguard.cli.get_initialized_connection", side_effect=ValueError("Database not configured")),
            pytest.raises(SystemExit) as exc,
        ):
            main(["evaluate", "a1"])

        assert exc.value.code == 1
        assert "Failed to open database" in capsys.readouterr().err

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit) as exc:
            main([])
        assert exc.value.code == 2

    def test_investigate_metric_failure(self, conn: sqlite3.Connection, capsys: pytest.CaptureFixture[str]) -> None:
        save_alert(
            conn,
            alert_id="a1",
            project_id="p1",
            name="Error rate",
            alert_type="ERROR_RATE",
            operator="GREATER_THAN",
            threshold=5.0,
        )

        with patch.object(
            SqliteMetricSource,
            "get_metric",
            new_callable=AsyncMock,
            side_effect=RuntimeError("database is locked"),
        ):
            code = _run(conn, ["investigate", "a1"])

        assert code == 1
        assert "metric unavailable: database is locked" in capsys.readouterr().err
