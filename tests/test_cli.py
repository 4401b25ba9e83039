from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner

from codeplan import __version__
from codeplan.main import codeplan

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("CLI Ops"),
]


def _submit(runner: CliRunner, db_path: Path, *args: str) -> str:
    result = runner.invoke(
        codeplan,
        ["jobs", "submit", "--db-path", str(db_path), *args],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"job_id=(\S+)", result.output)
    assert match is not None, result.output
    return match.group(1)


def test_submit_run_and_inspect_with_echo_provider(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("CODEPLAN_PROVIDER", "echo")
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    job_id = _submit(
        runner,
        db_path,
        "--session-id",
        "cli-session",
        "--task-type",
        "generic_completion",
        "--prompt",
        "Echo this back.",
    )

    run = runner.invoke(
        codeplan,
        ["scheduler", "run", "--db-path", str(db_path), "--once", "--provider", "echo"],
    )
    assert run.exit_code == 0, run.output
    assert "Scheduler summary: dispatched=1" in run.output

    listed = runner.invoke(codeplan, ["jobs", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "Jobs: 1" in listed.output
    assert f"{job_id} session=cli-session type=generic_completion status=completed" in (
        listed.output
    )

    inspected = runner.invoke(
        codeplan,
        ["jobs", "inspect", "--db-path", str(db_path), "--job-id", job_id],
    )
    assert inspected.exit_code == 0, inspected.output
    assert "Status: completed" in inspected.output
    assert "Echo this back." in inspected.output
    assert "claimed queued -> preparing" in inspected.output


def test_cancel_clear_and_cancel_session(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("CODEPLAN_PROVIDER", "echo")
    db_path = tmp_path / "cli-cancel.db"
    runner = CliRunner()
    first = _submit(
        runner,
        db_path,
        "--session-id",
        "s1",
        "--task-type",
        "text_correction",
        "--prompt",
        "teh",
    )
    _submit(runner, db_path, "--session-id", "s1", "--task-type", "text_correction", "--prompt", "a")

    canceled = runner.invoke(
        codeplan,
        ["jobs", "cancel", "--db-path", str(db_path), "--job-id", first],
    )
    assert canceled.exit_code == 0, canceled.output
    assert f"Job canceled: {first}" in canceled.output

    again = runner.invoke(codeplan, ["jobs", "cancel", "--db-path", str(db_path), "--job-id", first])
    assert "already finished" in again.output

    missing = runner.invoke(
        codeplan,
        ["jobs", "cancel", "--db-path", str(db_path), "--job-id", "missing"],
    )
    assert "Job not found: missing" in missing.output

    session = runner.invoke(
        codeplan,
        ["jobs", "cancel-session", "--db-path", str(db_path), "--session-id", "s1"],
    )
    assert session.exit_code == 0, session.output
    assert "jobs=1 requests=0" in session.output

    cleared = runner.invoke(codeplan, ["jobs", "clear", "--db-path", str(db_path), "--job-id", first])
    assert f"Job cleared: {first}" in cleared.output
    hidden = runner.invoke(codeplan, ["jobs", "list", "--db-path", str(db_path)])
    assert "Jobs: 1" in hidden.output
    shown = runner.invoke(
        codeplan,
        ["jobs", "list", "--db-path", str(db_path), "--include-cleared", "--status", "canceled"],
    )
    assert "Jobs: 2" in shown.output


def test_submit_passes_options_as_payload(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("CODEPLAN_PROVIDER", "echo")
    db_path = tmp_path / "cli-options.db"
    runner = CliRunner()

    job_id = _submit(
        runner,
        db_path,
        "--session-id",
        "s1",
        "--task-type",
        "directory_scan",
        "--project-directory",
        str(tmp_path),
        "--option",
        "max_files=3",
    )
    run = runner.invoke(codeplan, ["scheduler", "run", "--db-path", str(db_path), "--once"])
    assert run.exit_code == 0, run.output

    inspected = runner.invoke(
        codeplan,
        ["jobs", "inspect", "--db-path", str(db_path), "--job-id", job_id],
    )
    assert "Status: completed" in inspected.output
    assert '"fileCount":' in inspected.output


def test_scheduler_run_reports_invalid_configuration(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("CODEPLAN_PROVIDER", "openai")
    monkeypatch.delenv("CODEPLAN_PROVIDER_API_KEY", raising=False)
    runner = CliRunner()

    result = runner.invoke(
        codeplan,
        ["scheduler", "run", "--db-path", str(tmp_path / "bad.db"), "--once"],
    )

    assert result.exit_code != 0
    assert "CODEPLAN_PROVIDER_API_KEY is required" in result.output


def test_admission_stats_and_version(monkeypatch) -> None:
    monkeypatch.setenv("CODEPLAN_ADMISSION_GLOBAL_MAX", "7")
    monkeypatch.setenv("CODEPLAN_ADMISSION_TASK_TYPE_LIMITS", "path_finder|4")
    runner = CliRunner()

    stats = runner.invoke(codeplan, ["admission", "stats"])
    assert stats.exit_code == 0, stats.output
    assert "Active requests: 0/7" in stats.output
    assert "path_finder: 0/4" in stats.output

    version = runner.invoke(codeplan, ["--version"])
    assert __version__ in version.output
