from __future__ import annotations

import asyncio
import json
import os
import signal
from dataclasses import dataclass
from pathlib import Path

import click

from archivist import __version__
from archivist.config import DEFAULT_CONFIG_PATH, ArchivistConfig, ConfigError, load_config
from archivist.observability import setup_logging
from archivist.registry import RepositoryRegistry
from archivist.state.store import StateError, StateStore
from archivist.supervisor import (
    EXIT_STARTUP_FAILURE,
    Supervisor,
    SupervisorError,
    build_status,
)


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: ArchivistConfig
    store: StateStore
    registry: RepositoryRegistry


def _resolve_config_path(config_value: str) -> Path:
    return Path(config_value).expanduser().resolve()


def _load_runtime(config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
        registry = RepositoryRegistry.from_config(config)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    try:
        store = StateStore(config.state_dir)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(config_path=config_path, config=config, store=store, registry=registry)


def _notify_running(store: StateStore) -> int | None:
    pid = store.running_pid()
    if pid is None:
        return None
    try:
        os.kill(pid, signal.SIGUSR1)
    except OSError:
        return None
    return pid


def _require_pair(runtime: Runtime, repository: str, routine: str) -> None:
    if repository in runtime.registry.excluded:
        raise click.ClickException(
            f"Repository '{repository}' is excluded: {runtime.registry.excluded[repository]}"
        )
    if not runtime.registry.has_pair((repository, routine)):
        raise click.ClickException(
            f"No routine '{routine}' is configured for repository '{repository}'."
        )


@click.group(invoke_without_command=True)
@click.version_option(__version__, "--version", message="version: %(version)s")
@click.option(
    "--config",
    "config_value",
    envvar="ARCHIVIST_CONFIG",
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
)
@click.pass_context
def cli(ctx: click.Context, config_value: str) -> None:
    """Keep a fleet of git-annex repositories maintained on schedule."""
    ctx.obj = _resolve_config_path(config_value)
    if ctx.invoked_subcommand is None:
        ctx.invoke(run_command)


@cli.command("run")
@click.pass_context
def run_command(ctx: click.Context) -> None:
    config_path: Path = ctx.obj
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        setup_logging()
        click.echo(f"Error: {exc}", err=True)
        ctx.exit(EXIT_STARTUP_FAILURE)
    setup_logging(config.supervisor.log_level, config.supervisor.log_file)
    supervisor = Supervisor(config, config_path=config_path, env=dict(os.environ))
    ctx.exit(asyncio.run(supervisor.run()))


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    runtime = _load_runtime(ctx.obj)
    payload = build_status(runtime.store, runtime.registry)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("trigger")
@click.argument("repository")
@click.argument("routine")
@click.pass_context
def trigger_command(ctx: click.Context, repository: str, routine: str) -> None:
    runtime = _load_runtime(ctx.obj)
    _require_pair(runtime, repository, routine)

    if runtime.store.running_pid() is not None:
        runtime.store.add_trigger(repository, routine)
        pid = _notify_running(runtime.store)
        if pid is not None:
            click.echo(f"Queued {routine} for {repository} (supervisor pid {pid}).")
        else:
            click.echo(f"Queued {routine} for {repository}; it runs when the supervisor starts.")
        return

    setup_logging(runtime.config.supervisor.log_level, runtime.config.supervisor.log_file)
    supervisor = Supervisor(runtime.config, config_path=runtime.config_path, env=dict(os.environ))
    try:
        record = asyncio.run(supervisor.run_once(repository, routine))
    except SupervisorError as exc:
        raise click.ClickException(str(exc)) from exc
    if record is None:
        raise click.ClickException("Run finished but its outcome could not be recorded.")
    click.echo(json.dumps(record.to_dict(), ensure_ascii=False, indent=2))
    if record.outcome != "success":
        ctx.exit(1)


@cli.command("history")
@click.argument("repository")
@click.argument("routine")
@click.pass_context
def history_command(ctx: click.Context, repository: str, routine: str) -> None:
    runtime = _load_runtime(ctx.obj)
    records = runtime.store.get_history(repository, routine)
    if not records:
        click.echo(f"No runs recorded for {repository}/{routine}.")
        return
    click.echo(
        json.dumps([record.to_dict() for record in records], ensure_ascii=False, indent=2)
    )


@cli.command("pause")
@click.pass_context
def pause_command(ctx: click.Context) -> None:
    runtime = _load_runtime(ctx.obj)
    runtime.store.set_paused(True)
    _notify_running(runtime.store)
    click.echo("Scheduling paused. Manual triggers still run.")


@cli.command("resume")
@click.pass_context
def resume_command(ctx: click.Context) -> None:
    runtime = _load_runtime(ctx.obj)
    runtime.store.set_paused(False)
    _notify_running(runtime.store)
    click.echo("Scheduling resumed.")
