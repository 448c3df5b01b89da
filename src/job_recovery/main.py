"""CLI entrypoint for job-recovery."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from job_recovery import __version__
from job_recovery.orchestrator.controllers import (
    JobCreateCommand,
    JobFailedCommand,
    JobListCommand,
    JobOutcomeCommand,
    JobRetryCommand,
    JobsCliController,
    ProgressCommand,
)

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="job-recovery")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def job_recovery(log_level: str) -> None:
    """Job failure recovery CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@job_recovery.group()
def jobs() -> None:
    """Job store and retry commands."""


@jobs.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-type", required=True, help="Handler key, for example video_assessment.")
@click.option("--subject-ref", default=None, help="Optional reference to the processed subject.")
def jobs_create(db_path: Path | None, job_type: str, subject_ref: str | None) -> None:
    """Create a pending job."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.create_job(
                JobCreateCommand(db_path=db_path, job_type=job_type, subject_ref=subject_ref),
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.list_jobs(
                JobListCommand(db_path=db_path, status=status, limit=limit),
            ),
        ),
    )


@jobs.command("failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Output format.",
)
def jobs_failed(db_path: Path | None, output_format: str) -> None:
    """List failed jobs with retry eligibility, newest first."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.failed_jobs(
                JobFailedCommand(db_path=db_path, output_format=output_format.lower()),
            ),
        ),
    )


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Reset retry count and retry even after the automatic cap was reached.",
)
@click.argument("job_id")
def jobs_retry(db_path: Path | None, force: bool, job_id: str) -> None:
    """Retry a failed job."""

    result = _run(
        lambda: JOBS_CONTROLLER.retry_job(
            JobRetryCommand(db_path=db_path, job_id=job_id, force=force),
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Retry was not started.")


@jobs.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_start(db_path: Path | None, job_id: str) -> None:
    """Move a pending job to processing."""

    _emit_lines(
        _run(lambda: JOBS_CONTROLLER.start_job(JobOutcomeCommand(db_path=db_path, job_id=job_id))),
    )


@jobs.command("complete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
def jobs_complete(db_path: Path | None, job_id: str) -> None:
    """Record a successful attempt for a processing job."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.complete_job(
                JobOutcomeCommand(db_path=db_path, job_id=job_id),
            ),
        ),
    )


@jobs.command("fail")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--reason", required=True, help="Failure reason stored on the job.")
@click.argument("job_id")
def jobs_fail(db_path: Path | None, reason: str, job_id: str) -> None:
    """Record a failed attempt for a processing job (increments retry count)."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.fail_job(
                JobOutcomeCommand(db_path=db_path, job_id=job_id, reason=reason),
            ),
        ),
    )


@job_recovery.group()
def progress() -> None:
    """Session progress commands."""


@progress.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@click.argument("workflow_type")
def progress_show(db_path: Path | None, job_id: str, workflow_type: str) -> None:
    """Show saved progress for one job workflow."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.show_progress(
                ProgressCommand(db_path=db_path, job_id=job_id, workflow_type=workflow_type),
            ),
        ),
    )


@progress.command("save")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--data", "data_json", required=True, help="Progress payload as a JSON object.")
@click.argument("job_id")
@click.argument("workflow_type")
def progress_save(db_path: Path | None, data_json: str, job_id: str, workflow_type: str) -> None:
    """Save progress for one job workflow."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.save_progress(
                ProgressCommand(
                    db_path=db_path,
                    job_id=job_id,
                    workflow_type=workflow_type,
                    data_json=data_json,
                ),
            ),
        ),
    )


@progress.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("job_id")
@click.argument("workflow_type")
def progress_clear(db_path: Path | None, job_id: str, workflow_type: str) -> None:
    """Delete saved progress for one job workflow."""

    _emit_lines(
        _run(
            lambda: JOBS_CONTROLLER.clear_progress(
                ProgressCommand(db_path=db_path, job_id=job_id, workflow_type=workflow_type),
            ),
        ),
    )


def _run(action: Callable[[], T]) -> T:
    try:
        return action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    job_recovery()
