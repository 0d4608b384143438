"""
Command line entry point for the BackApp agent.
"""

from pathlib import Path
from typing import List, Optional

import typer

from agent import __version__, create_agent
from agent.backup.errors import ConfigurationError
from agent.scheduler import run_daemon


app = typer.Typer(
    help="BackApp Agent - runs backups assigned by your BackApp server.",
    add_completion=False,
    no_args_is_help=True,
)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a config.json file"
    ),
    env: Optional[str] = typer.Option(
        None, "--env", envvar="AGENT_ENV", help="Configuration profile (development, production)"
    ),
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Log level (debug, info, warning, error)"
    ),
):
    """
    BackApp Agent

    Run a single cycle with [cyan]backapp-agent run[/cyan], or keep polling
    with [cyan]backapp-agent daemon[/cyan].
    """
    ctx.obj = {
        'config': str(config) if config else None,
        'env': env,
        'log_level': log_level,
    }


def _create_agent(ctx: typer.Context):
    try:
        return create_agent(ctx.obj['env'], ctx.obj['config'], ctx.obj['log_level'])
    except ConfigurationError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def run(
    ctx: typer.Context,
    config_id: Optional[List[str]] = typer.Option(
        None, "--config-id", help="Run this configuration now, regardless of schedule (repeatable)"
    ),
):
    """Run one backup cycle and exit."""
    backup_agent = _create_agent(ctx)

    try:
        if not backup_agent.initialize():
            raise typer.Exit(1)

        try:
            results = backup_agent.run_cycle(force_ids=config_id or [])
        except Exception:
            raise typer.Exit(1)

        if any(not result.success for _, result in results):
            raise typer.Exit(1)
    finally:
        backup_agent.cleanup()


@app.command()
def daemon(ctx: typer.Context):
    """Poll for due backups until stopped (SIGINT/SIGTERM)."""
    backup_agent = _create_agent(ctx)
    status = run_daemon(backup_agent, backup_agent.cfg.POLL_INTERVAL)
    raise typer.Exit(status)


@app.command()
def size(ctx: typer.Context):
    """Answer pending size assessment requests once."""
    backup_agent = _create_agent(ctx)

    try:
        if not backup_agent.initialize():
            raise typer.Exit(1)

        try:
            processed = backup_agent.process_size_requests()
        except Exception as e:
            typer.echo(f"Size assessment failed: {e}", err=True)
            raise typer.Exit(1)

        typer.echo(f"Processed {processed} size request(s)")
    finally:
        backup_agent.cleanup()


@app.command()
def version():
    """Show agent version"""
    typer.echo(f"backapp-agent version {__version__}")


if __name__ == '__main__':
    app()
