"""CLI smoke tests — typer CliRunner against a temp SQLite store, no generator."""

from __future__ import annotations

import asyncio

import pytest
from typer.testing import CliRunner

from threatscribe import main as cli
from threatscribe.config import settings
from threatscribe.research.store import SqliteJobStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/cli.db")
    monkeypatch.setattr(settings, "openrouter_api_key", "")
    # wide enough that table cells never wrap
    monkeypatch.setattr(cli.console, "width", 200)


def _latest_job_id() -> str:
    async def _read():
        store = SqliteJobStore(settings.database_url[len("sqlite:///"):])
        await store.connect()
        (job,) = await store.get_job_history(limit=1)
        return job.id

    return asyncio.run(_read())


def test_version():
    result = runner.invoke(cli.app, ["version"])
    assert result.exit_code == 0
    assert "threatscribe" in result.output


def test_history_empty():
    result = runner.invoke(cli.app, ["history"])
    assert result.exit_code == 0
    assert "No jobs yet" in result.output


def test_run_completes_with_fallback_sections():
    result = runner.invoke(cli.app, ["run", "Ransomware trends", "--depth", "2"])
    assert result.exit_code == 0, result.output
    assert "fallback content only" in result.output
    assert "Research completed successfully" in result.output

    history = runner.invoke(cli.app, ["history"])
    assert history.exit_code == 0
    assert "Ransomware trends" in history.output
    assert "completed" in history.output


def test_run_writes_report_file(tmp_path):
    report = tmp_path / "report.md"
    result = runner.invoke(cli.app, ["run", "Phishing kits", "-o", str(report)])
    assert result.exit_code == 0, result.output
    assert report.read_text().startswith("# Comprehensive Research Report: Phishing kits")


def test_run_rejects_bad_depth():
    result = runner.invoke(cli.app, ["run", "Ransomware trends", "--depth", "9"])
    assert result.exit_code == 2
    assert "depth" in result.output


def test_show_lists_sections():
    runner.invoke(cli.app, ["run", "Botnets", "--depth", "1"])
    result = runner.invoke(cli.app, ["show", _latest_job_id()])
    assert result.exit_code == 0
    assert "Current Threat Landscape" in result.output
    assert "Future Predictions and Recommendations" in result.output


def test_show_unknown_job():
    result = runner.invoke(cli.app, ["show", "missing"])
    assert result.exit_code == 1
    assert "Job not found" in result.output


def test_cancel_then_resume():
    runner.invoke(cli.app, ["run", "Insider threats", "--depth", "1"])
    job_id = _latest_job_id()

    cancelled = runner.invoke(cli.app, ["cancel", job_id])
    assert cancelled.exit_code == 0
    assert "cancelled" in cancelled.output

    resumed = runner.invoke(cli.app, ["resume", job_id])
    assert resumed.exit_code == 0, resumed.output
    assert "run 2" in resumed.output
    assert "Research completed successfully" in resumed.output


def test_resume_completed_job_is_rejected():
    runner.invoke(cli.app, ["run", "Botnets", "--depth", "1"])
    result = runner.invoke(cli.app, ["resume", _latest_job_id()])
    assert result.exit_code == 1
    assert "Cannot resume" in result.output


def test_health_reports_store_and_disabled_generator():
    result = runner.invoke(cli.app, ["health"])
    assert result.exit_code == 0
    assert "sqlite" in result.output
    assert "disabled" in result.output
