"""
CLI commands for the backup area.

Thin wrappers over ``provisionctl.core.use_cases.backups``.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click


def _resolve_backup_dir(ctx: click.Context, backup_dir: str | None) -> Path:
    """--backup-dir, else the plan's settings, else the default."""
    if backup_dir:
        return Path(backup_dir)
    from provisionctl.core.errors import ConfigurationError
    from provisionctl.core.use_cases.provision import resolve_settings

    try:
        return Path(resolve_settings(ctx.obj.get("config_path")).backup_dir)
    except ConfigurationError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)


def _human_size(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


@click.group()
def backups() -> None:
    """Backups — list and prune pre-change snapshots."""


@backups.command("list")
@click.option("--backup-dir", type=click.Path(), default=None, help="Backup area to read.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, backup_dir: str | None, as_json: bool) -> None:
    """List runs that have snapshots."""
    from provisionctl.core.use_cases.backups import list_backups

    result = list_backups(_resolve_backup_dir(ctx, backup_dir))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    if not result.runs:
        click.echo(f"No backups in {result.backup_dir}")
        return

    click.secho(f"\n💾 Backups in {result.backup_dir}", fg="cyan", bold=True)
    click.echo()
    for info in result.runs:
        restored = f", {info.restored} restored" if info.restored else ""
        click.echo(
            f"   {info.run_id}  {info.snapshots} snapshots, {info.paths} paths"
            f"{restored}  ({_human_size(info.size_bytes)})"
        )
    click.echo()


@backups.command("prune")
@click.argument("run_id", required=False)
@click.option("--keep", type=int, default=None, help="Keep only the N newest runs.")
@click.option("--backup-dir", type=click.Path(), default=None, help="Backup area to prune.")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def prune_cmd(
    ctx: click.Context,
    run_id: str | None,
    keep: int | None,
    backup_dir: str | None,
    yes: bool,
    as_json: bool,
) -> None:
    """Delete snapshots of RUN_ID, or of all but the --keep N newest runs.

    Pruned runs can no longer be rolled back.

    Examples:

        provisionctl backups prune 20260117-101500-a1b2c3

        provisionctl backups prune --keep 5 --yes
    """
    from provisionctl.core.use_cases.backups import prune_backups

    target = _resolve_backup_dir(ctx, backup_dir)
    if not yes and not as_json:
        what = f"run {run_id}" if run_id else f"all but the {keep} newest runs"
        click.confirm(f"Delete backups of {what} in {target}?", abort=True)

    result = prune_backups(target, run_id=run_id, keep=keep)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(1 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(1)

    if not result.pruned:
        click.echo("Nothing to prune.")
        return
    for pruned in result.pruned:
        click.secho(f"   🗑  {pruned}", fg="yellow")
