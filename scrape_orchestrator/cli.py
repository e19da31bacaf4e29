"""
Scrape orchestrator CLI.

Usage:
    scrape-orch --help                       Show all commands
    scrape-orch init-db                      Create database tables
    scrape-orch migrate                      Run alembic migrations
    scrape-orch add-target TRT3 1g ...       Register a court endpoint
    scrape-orch submit -t ID -t ID ...       Run a scrape job and follow its logs
    scrape-orch cron-preview "0 9 * * 1-5"   Show the next fire times
    scrape-orch serve                        Run the API server
"""

import asyncio
from zoneinfo import ZoneInfo

import typer

from scrape_orchestrator.models.job import ScrapeSubType, ScrapeType
from scrape_orchestrator.models.target import Degree

app = typer.Typer(
    name="scrape-orch",
    help="Scrape orchestrator CLI - job runner for judicial portal scrapes",
    no_args_is_help=True,
)

_LEVEL_ICONS = {"info": "·", "success": "✅", "warn": "⚠️", "error": "❌"}


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


@app.command("init-db")
def init_db() -> None:
    """Create all database tables."""
    from scrape_orchestrator.core.database import init_db as _init_db
    from scrape_orchestrator.core.logging import setup_logging

    setup_logging()
    asyncio.run(_init_db())
    _print_success("Database tables created")


@app.command()
def migrate() -> None:
    """Run database migrations (alembic upgrade head)."""
    import subprocess

    result = subprocess.run(["alembic", "upgrade", "head"], check=False)
    raise typer.Exit(result.returncode)


@app.command("add-target")
def add_target(
    code: str = typer.Argument(..., help="Court code, e.g. TRT3"),
    degree: Degree = typer.Argument(..., help="Instance degree"),
    base_url: str = typer.Option(..., "--base-url", help="Portal base URL"),
    login_url: str = typer.Option(..., "--login-url", help="Portal login URL"),
    api_url: str = typer.Option(..., "--api-url", help="Portal API URL"),
    name: str | None = typer.Option(None, "--name", help="Display name"),
    system: str = typer.Option("PJE", "--system", help="Portal system"),
) -> None:
    """Register a court x degree endpoint."""
    from scrape_orchestrator.core.database import AsyncSessionLocal
    from scrape_orchestrator.models.target import TargetConfig

    async def _add() -> str:
        async with AsyncSessionLocal() as db:
            target = TargetConfig(
                code=code.upper(),
                degree=degree,
                system=system,
                name=name,
                base_url=base_url,
                login_url=login_url,
                api_url=api_url,
            )
            db.add(target)
            await db.commit()
            return target.id

    target_id = asyncio.run(_add())
    _print_success(f"{code.upper()} {degree.value}: {target_id}")


@app.command()
def submit(
    targets: list[str] = typer.Option(..., "--target", "-t", help="Target config id (repeatable)"),
    scrape_type: ScrapeType = typer.Option(
        ScrapeType.GENERAL_DOCKET, "--type", help="Scrape type"
    ),
    subtype: ScrapeSubType | None = typer.Option(
        None, "--subtype", help="Required for pending manifestation scrapes"
    ),
    credential: str = typer.Option(..., "--credential", "-c", help="Credential reference"),
) -> None:
    """Run a scrape job in this process and follow its logs until it finishes."""
    from pydantic import ValidationError

    from scrape_orchestrator.config import get_settings
    from scrape_orchestrator.core.database import AsyncSessionLocal
    from scrape_orchestrator.core.logging import setup_logging
    from scrape_orchestrator.schemas.scrape import ScrapeJobRequest
    from scrape_orchestrator.services.execution_engine import (
        ExecutionEngine,
        JobSubmissionError,
        get_job_status,
    )
    from scrape_orchestrator.services.log_stream import LogEntry, build_log_stream, sanitize_entry
    from scrape_orchestrator.services.performance_tracker import PerformanceTracker

    setup_logging()
    settings = get_settings()

    try:
        request = ScrapeJobRequest(
            credential_id=credential,
            target_config_ids=targets,
            scrape_type=scrape_type,
            scrape_subtype=subtype,
        )
    except ValidationError as e:
        _print_error(str(e))
        raise typer.Exit(code=2) from e

    def _echo(entry: LogEntry) -> None:
        data = sanitize_entry(entry)
        icon = _LEVEL_ICONS.get(data["level"], "·")
        typer.echo(f"{data['timestamp'][11:19]} {icon} {data['message']}")

    async def _run() -> bool:
        log_stream = build_log_stream(settings)
        engine = ExecutionEngine(
            AsyncSessionLocal,
            settings,
            log_stream,
            tracker=PerformanceTracker(AsyncSessionLocal),
        )
        try:
            job_id = await engine.submit(request)
            for entry in log_stream.tail(job_id):
                _echo(entry)
            unsubscribe = log_stream.subscribe(job_id, _echo)
            try:
                await engine.wait(job_id)
            finally:
                unsubscribe()

            async with AsyncSessionLocal() as db:
                job_status = await get_job_status(db, job_id, log_lines=0)
        except JobSubmissionError as e:
            _print_error(str(e))
            return False
        finally:
            await engine.shutdown()
            await log_stream.close()

        counts = job_status.counts
        typer.echo(
            f"\nJob {job_id}: {job_status.status.value} "
            f"({counts.completed}/{counts.total} targets, {counts.result_count} records)"
        )
        return counts.completed > 0

    if not asyncio.run(_run()):
        raise typer.Exit(code=1)


@app.command("cron-preview")
def cron_preview(
    expression: str = typer.Argument(..., help="Cron expression or structured frequency"),
    tz: str = typer.Option("America/Sao_Paulo", "--tz", help="IANA timezone"),
    count: int = typer.Option(5, "--count", "-n", help="Number of fire times"),
) -> None:
    """Show the next fire times of a schedule."""
    from scrape_orchestrator.core.cron import (
        CronValidationError,
        describe_cron,
        frequency_to_cron,
        get_next_run_times,
    )
    from scrape_orchestrator.core.datetime_utils import is_valid_timezone

    if not is_valid_timezone(tz):
        _print_error(f"Unknown timezone: {tz}")
        raise typer.Exit(code=2)

    try:
        cron_expression = frequency_to_cron(expression)
        times = get_next_run_times(cron_expression, tz, count=count)
    except CronValidationError as e:
        _print_error(str(e))
        raise typer.Exit(code=2) from e

    typer.echo(f"{cron_expression}  ({describe_cron(cron_expression)}, {tz})")
    zone = ZoneInfo(tz)
    for fire_time in times:
        local = fire_time.astimezone(zone)
        typer.echo(f"  {local:%Y-%m-%d %H:%M %Z}  ({fire_time:%Y-%m-%dT%H:%MZ})")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the API server."""
    import uvicorn

    uvicorn.run("scrape_orchestrator.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
