"""Tests for the command-line interface."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from src.alerts.service import TickResult
from src.alerts.stats import AlertStats
from src.cli import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    from src.config.settings import get_settings

    monkeypatch.delenv("REDIS_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _mock_db(healthy: bool = True) -> AsyncMock:
    db = AsyncMock()
    db.__aenter__.return_value = db
    db.health_check.return_value = healthy
    return db


def _mock_engine(results: dict[str, TickResult | Exception]) -> MagicMock:
    engine = MagicMock()
    engine.monitors = {name: MagicMock() for name in results}
    engine.start = AsyncMock()
    engine.stop = AsyncMock()

    async def run_job(name):
        outcome = results[name]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    engine.run_job = AsyncMock(side_effect=run_job)
    return engine


class TestRunOnce:
    def test_runs_every_monitor(self, runner: CliRunner) -> None:
        engine = _mock_engine({
            "late_visit": TickResult(job="late_visit", detections=2, created=1),
            "message": TickResult(job="message"),
        })
        with patch("src.alerts.engine.build_engine", return_value=engine) as build:
            result = runner.invoke(main, ["run-once"])

        assert result.exit_code == 0, result.output
        assert "late_visit: 2 detections, 1 created" in result.output
        assert "message: 0 detections" in result.output
        engine.start.assert_awaited_once()
        engine.stop.assert_awaited_once()
        settings = build.call_args.kwargs["settings"]
        assert settings.alerts_scheduler_enabled is False

    def test_named_job_only(self, runner: CliRunner) -> None:
        engine = _mock_engine({
            "late_visit": TickResult(job="late_visit"),
            "message": TickResult(job="message"),
        })
        with patch("src.alerts.engine.build_engine", return_value=engine):
            result = runner.invoke(main, ["run-once", "--job", "message"])

        assert result.exit_code == 0, result.output
        engine.run_job.assert_awaited_once_with("message")

    def test_unknown_job_fails(self, runner: CliRunner) -> None:
        engine = _mock_engine({"late_visit": TickResult(job="late_visit")})
        with patch("src.alerts.engine.build_engine", return_value=engine):
            result = runner.invoke(main, ["run-once", "--job", "nope"])

        assert result.exit_code == 1
        assert "nope: unknown job" in result.output
        engine.stop.assert_awaited_once()

    def test_failing_job_reported_and_others_still_run(self, runner: CliRunner) -> None:
        engine = _mock_engine({
            "late_visit": RuntimeError("db gone"),
            "message": TickResult(job="message", detections=1),
        })
        with patch("src.alerts.engine.build_engine", return_value=engine):
            result = runner.invoke(main, ["run-once"])

        assert result.exit_code == 1
        assert "late_visit: db gone" in result.output
        assert "message: 1 detections" in result.output


class TestInitDb:
    def test_creates_schema(self, runner: CliRunner) -> None:
        db = _mock_db()
        with patch("src.storage.database.Database", return_value=db):
            result = runner.invoke(main, ["init-db"])

        assert result.exit_code == 0, result.output
        assert "initialized successfully" in result.output
        executed = " ".join(str(c.args[0]) for c in db.execute.await_args_list)
        assert "unified_alerts" in executed


class TestStats:
    def test_prints_counters(self, runner: CliRunner) -> None:
        db = _mock_db()
        aggregator = MagicMock()
        aggregator.compute = AsyncMock(return_value=AlertStats(total=7, critical=2))
        with (
            patch("src.storage.database.Database", return_value=db),
            patch("src.alerts.stats.AlertStatsAggregator", return_value=aggregator),
        ):
            result = runner.invoke(main, ["stats"])

        assert result.exit_code == 0, result.output
        rows = [line.split() for line in result.output.splitlines()]
        lines = {row[0]: row[1] for row in rows if len(row) == 2 and row[1].isdigit()}
        assert lines["total"] == "7"
        assert lines["critical"] == "2"
        assert lines["this_week"] == "0"


class TestHealth:
    def test_healthy(self, runner: CliRunner) -> None:
        with patch("src.storage.database.Database", return_value=_mock_db(True)):
            result = runner.invoke(main, ["health"])

        assert result.exit_code == 0, result.output
        assert "postgres: True" in result.output
        assert "All core services healthy!" in result.output

    def test_postgres_down(self, runner: CliRunner) -> None:
        db = _mock_db()
        db.__aenter__.side_effect = OSError("connection refused")
        with patch("src.storage.database.Database", return_value=db):
            result = runner.invoke(main, ["health"])

        assert result.exit_code == 1
        assert "postgres: False" in result.output
        assert "Some services unhealthy!" in result.output
