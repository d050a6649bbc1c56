"""
CLI commands for run history.

Thin wrappers over ``provisionctl.core.use_cases.history``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click


def _resolve_log_path(ctx: click.Context, log_path: str | None) -> Path:
    """--log-path, else the plan's settings, else the default."""
    if log_path:
        return Path(log_path)
    from provisionctl.core.errors import ConfigurationError
    from provisionctl.core.use_cases.provision import resolve_settings

    try:
        return Path(resolve_settings(ctx.obj.get("config_path")).log_path)
    except ConfigurationError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)


@click.command()
@click.option("--log-path", type=click.Path(), default=None, help="Run log to read.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def runs(ctx: click.Context, log_path: str | None, as_json: bool) -> None:
    """List past runs recorded in the run log."""
    from provisionctl.core.use_cases.history import list_runs

    result = list_runs(_resolve_log_path(ctx, log_path))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(1 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(1)

    if not result.runs:
        click.echo(f"No runs recorded in {result.log_path}")
        return

    click.secho(f"\n🕘 Runs in {result.log_path}", fg="cyan", bold=True)
    click.echo()
    status_color = {
        "succeeded": "green", "dry_run": "cyan", "failed": "red",
        "cancelled": "yellow", "incomplete": "yellow",
    }
    for summary in result.runs:
        counts = summary.counts
        click.echo(f"   {summary.run_id}  {summary.plan:<20} ", nl=False)
        click.secho(f"{summary.status:<11}", fg=status_color.get(summary.status, "white"), nl=False)
        click.echo(
            f" ✓{counts['succeeded']} ⊘{counts['skipped']} ✗{counts['failed']}"
            + (f" ▶{counts['would_run']}" if summary.dry_run else "")
            + (f"  ↺{summary.rollbacks}" if summary.rollbacks else "")
        )
    click.echo()


@click.command()
@click.argument("run_id")
@click.option("--log-path", type=click.Path(), default=None, help="Run log to read.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def summary(ctx: click.Context, run_id: str, log_path: str | None, as_json: bool) -> None:
    """Summarize one run: counts, failures, irreversible steps touched."""
    from provisionctl.core.use_cases.history import run_summary

    result = run_summary(run_id, _resolve_log_path(ctx, log_path))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(2 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(2)

    click.echo(result.text)
