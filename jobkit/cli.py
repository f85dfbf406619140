import asyncio
import json

import click

from .config import DB_FILE, LOG_LEVEL
from .errors import JobKitError
from .executor import JobExecutor
from .jobs import SHELL_JOB, CommandPayload, default_registry
from .logging_config import configure_logging
from .registry import JobRegistry
from .repository import SqliteJobStorage
from .utils import import_object
from .worker import run_workers


def _run(coro, expected=()):
    """Run a storage coroutine, turning expected failures into a red error line."""
    try:
        return asyncio.run(coro)
    except (JobKitError, ValueError) + tuple(expected) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        raise SystemExit(1)


def _load_registry(paths) -> JobRegistry:
    registry = default_registry()
    for path in paths:
        try:
            extra = import_object(path)
        except (ImportError, ValueError) as e:
            raise click.ClickException(f"Cannot load registry {path!r}: {e}")
        if not isinstance(extra, JobRegistry):
            raise click.ClickException(f"{path!r} is not a JobRegistry")
        registry.update(extra)
    return registry


@click.group(help="jobkit — background job queue CLI")
@click.option("--db", "db_path", default=DB_FILE, show_default=True, help="SQLite database file")
@click.option("--log-level", default=LOG_LEVEL, show_default=True,
              type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False))
@click.option("--json-logs", is_flag=True, default=False, help="Emit logs as JSON lines")
@click.option("--registry", "registries", multiple=True, metavar="MODULE:ATTR",
              help="Import an extra JobRegistry with more job types (repeatable)")
@click.pass_context
def cli(ctx, db_path, log_level, json_logs, registries):
    configure_logging(log_level, json_logs)
    storage = SqliteJobStorage(_load_registry(registries), path=db_path)
    # Ensure DB/schema exist before any command runs
    _run(storage.init())
    ctx.obj = storage


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a shell command job to the queue")
@click.option("--cmd", "command", required=True, help="Command to execute")
@click.option("--timeout", type=int, default=None,
              help="Seconds before the command is killed (default: config timeout_seconds)")
@click.pass_obj
def enqueue_cmd(storage, command, timeout):
    async def _enqueue():
        t = timeout
        if t is None:
            cfg = await storage.get_config()
            t = int(float(cfg.get("timeout_seconds", "20")))
        if t <= 0:
            raise ValueError("timeout must be > 0 seconds")
        return await storage.enqueue(SHELL_JOB, CommandPayload(command=command, timeout=t))

    job = _run(_enqueue(), expected=(TypeError,))
    click.secho(f"Enqueued job {job.id} -> `{command}` (timeout={job.data.timeout}s)", fg="green")


@cli.command("enqueue-json", help="Add a job of any registered type with a JSON payload")
@click.argument("job_type")
@click.argument("payload")
@click.pass_obj
def enqueue_json_cmd(storage, job_type, payload):
    async def _enqueue():
        data = storage.registry.resolve(job_type).payload_type.decode(payload)
        return await storage.enqueue(job_type, data)

    job = _run(_enqueue(), expected=(TypeError,))
    click.secho(f"Enqueued job {job.id} ({job_type})", fg="green")


# ---------- Workers ----------
@cli.group("worker", help="Manage workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=None, help="Number of workers (default: config worker_count)")
@click.pass_obj
def worker_start(storage, count):
    async def _work():
        cfg = await storage.get_config()
        n = count if count is not None else int(float(cfg.get("worker_count", "1")))
        interval = float(cfg.get("poll_interval_seconds", "5"))
        click.secho(f"Starting {n} worker(s). Press Ctrl+C to stop…", fg="cyan")
        await run_workers(storage, JobExecutor(storage), count=n, poll_interval=interval)

    _run(_work())
    click.secho("Workers stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list", help="List queued and processing jobs")
@click.option("--type", "job_type", default=None, help="Only jobs of this type")
@click.pass_obj
def list_cmd(storage, job_type):
    jobs = _run(storage.list_jobs(job_type))

    if not jobs:
        click.echo("No jobs.")
        return

    for job in jobs:
        click.echo(f"{job.id:>8} | {job.job_type:<16} | data={job.data!r}")


@cli.command("status")
@click.pass_obj
def status_cmd(storage):
    click.echo(json.dumps(_run(storage.counts()), indent=2))


@cli.command("requeue", help="Move processing jobs back to queued. Never run while workers are active.")
@click.pass_obj
def requeue_cmd(storage):
    moved = _run(storage.requeue_orphaned())
    click.secho(f"Re-queued {moved} job(s).", fg="green")


@cli.command("repair", help="Delete jobs whose type or payload can no longer be read")
@click.pass_obj
def repair_cmd(storage):
    removed = _run(storage.repair_corrupt())
    if not removed:
        click.echo("No problematic jobs.")
        return
    click.secho(f"Removed {len(removed)} job(s): {', '.join(map(str, removed))}", fg="yellow")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_obj
def config_get(storage):
    click.echo(json.dumps(_run(storage.get_config()), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set_cmd(storage, key, value):
    _run(storage.set_config(key, value))
    click.secho(f"Config updated: {key}={value}", fg="green")


def main():
    cli()
