"""CLI entrypoint for codeplan."""

import logging
from pathlib import Path

import rich_click as click

from codeplan import __version__
from codeplan.config import PROVIDER_KINDS
from codeplan.jobs.controllers import (
    AdmissionStatsCommand,
    JobsCancelCommand,
    JobsCancelSessionCommand,
    JobsClearCommand,
    JobsCliController,
    JobsInspectCommand,
    JobsListCommand,
    JobsSubmitCommand,
    SchedulerRunCommand,
)
from codeplan.jobs.models import JobStatus

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()


@click.group()
@click.version_option(version=__version__, prog_name="codeplan")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def codeplan(verbose: bool) -> None:
    """Background job orchestration for model-backed coding tasks."""

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@codeplan.group()
def jobs() -> None:
    """Background job commands."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Owning session id.")
@click.option("--task-type", required=True, help="Task type, for example implementation_plan.")
@click.option("--prompt", default="", help="Prompt text sent to the model.")
@click.option(
    "--project-directory",
    type=click.Path(file_okay=False),
    default=None,
    help="Project root for path finding and directory scans.",
)
@click.option("--model", default=None, help="Model override.")
@click.option(
    "--max-output-tokens",
    type=click.IntRange(min=1),
    default=None,
    help="Output token cap for this job.",
)
@click.option(
    "--option",
    "options",
    multiple=True,
    help="Processor option as key=value (JSON values accepted). Can be repeated.",
)
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str,
    task_type: str,
    prompt: str,
    project_directory: str | None,
    model: str | None,
    max_output_tokens: int | None,
    options: tuple[str, ...],
) -> None:
    """Queue a background job for the scheduler."""

    _emit_lines(
        JOBS_CONTROLLER.submit(
            JobsSubmitCommand(
                db_path=db_path,
                session_id=session_id,
                task_type=task_type,
                prompt=prompt,
                project_directory=project_directory,
                model=model,
                max_output_tokens=max_output_tokens,
                options=options,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Only jobs of this session.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only jobs in this status.",
)
@click.option(
    "--include-cleared/--hide-cleared",
    default=False,
    show_default=True,
    help="Show jobs the user cleared from history.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum jobs to show.",
)
def jobs_list(
    db_path: Path | None,
    session_id: str | None,
    status: str | None,
    include_cleared: bool,
    limit: int,
) -> None:
    """List recent jobs."""

    _emit_lines(
        JOBS_CONTROLLER.list_jobs(
            JobsListCommand(
                db_path=db_path,
                session_id=session_id,
                status=status,
                include_cleared=include_cleared,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    _emit_lines(JOBS_CONTROLLER.inspect_job(JobsInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a job that has not finished yet."""

    _emit_lines(JOBS_CONTROLLER.cancel_job(JobsCancelCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel-session")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Session id.")
def jobs_cancel_session(db_path: Path | None, session_id: str) -> None:
    """Cancel every unfinished job of a session."""

    _emit_lines(
        JOBS_CONTROLLER.cancel_session(
            JobsCancelSessionCommand(db_path=db_path, session_id=session_id),
        ),
    )


@jobs.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--undo", is_flag=True, default=False, help="Restore a cleared job.")
def jobs_clear(db_path: Path | None, job_id: str, undo: bool) -> None:
    """Hide a job from history (or restore it with --undo)."""

    _emit_lines(
        JOBS_CONTROLLER.clear_job(
            JobsClearCommand(db_path=db_path, job_id=job_id, cleared=not undo),
        ),
    )


@codeplan.group()
def scheduler() -> None:
    """Job scheduler commands."""


@scheduler.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Drain the queue and exit, or keep polling until interrupted.",
)
@click.option(
    "--provider",
    type=click.Choice(sorted(PROVIDER_KINDS)),
    default=None,
    help="Override CODEPLAN_PROVIDER.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0.1),
    default=600.0,
    show_default=True,
    help="Upper bound for a --once run.",
)
def scheduler_run(
    db_path: Path | None,
    once: bool,
    provider: str | None,
    timeout_seconds: float,
) -> None:
    """Run the scheduler against queued jobs."""

    try:
        lines = JOBS_CONTROLLER.run_scheduler(
            SchedulerRunCommand(
                db_path=db_path,
                once=once,
                provider=provider,
                timeout_seconds=timeout_seconds,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@codeplan.group()
def admission() -> None:
    """Admission control commands."""


@admission.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def admission_stats(db_path: Path | None) -> None:
    """Show configured concurrency limits."""

    _emit_lines(JOBS_CONTROLLER.admission_stats(AdmissionStatsCommand(db_path=db_path)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    codeplan()
