"""
provisionctl — CLI entrypoint.

Usage:
    provisionctl --help
    sudo provisionctl run --builtin ai-workstation --dry-run
    sudo provisionctl run --resume-run 20260117-101500-a1b2c3
    sudo provisionctl run --rollback 20260117-101500-a1b2c3
    provisionctl plan --builtin ai-workstation
    provisionctl config check

Exit codes:
    0  every step succeeded, was skipped, or would run (dry run)
    1  a step failed, the run was cancelled, or a rollback halted
    2  configuration or precondition error, nothing was executed
"""

from __future__ import annotations

import json
import os
import signal
import sys
from pathlib import Path

import click

from provisionctl import __version__
from provisionctl.core.observability.logging_config import level_from_flags, setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="provisionctl")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to provision.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """provisionctl — declarative, idempotent machine provisioning."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(level=level_from_flags(verbose=verbose, quiet=quiet, debug=debug))


# ── Option parsing helpers ──────────────────────────────────────


def _parse_vars(raw: tuple[str, ...]) -> dict[str, str]:
    """``--var k=v`` pairs, on top of ``invoking_user`` from SUDO_USER."""
    variables: dict[str, str] = {}
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        variables["invoking_user"] = sudo_user
    for item in raw:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--var")
        variables[key.strip()] = value
    return variables


def _parse_only(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    ids = [s.strip() for s in raw.split(",") if s.strip()]
    return ids or None


def _fail_config(message: str, as_json: bool, kind: str = "configuration") -> None:
    if as_json:
        click.echo(json.dumps({"error": message, "error_kind": kind}, indent=2))
    else:
        click.secho(f"❌ {message}", fg="red", err=True)
    sys.exit(2)


# ── run ─────────────────────────────────────────────────────────


@cli.command()
@click.option("--builtin", "-b", default=None, help="Run a built-in plan (e.g. ai-workstation).")
@click.option("--dry-run", is_flag=True, help="Evaluate checks and log what would run; change nothing.")
@click.option("--resume-from", default=None, metavar="STEP", help="Skip every step before STEP.")
@click.option("--resume-run", default=None, metavar="RUN", help="Resume from RUN's first incomplete step.")
@click.option("--only", default=None, metavar="A,B", help="Run only these step ids.")
@click.option("--rollback", "rollback_run_id", default=None, metavar="RUN", help="Undo RUN instead of running.")
@click.option("--log-path", type=click.Path(), default=None, help="Run log (default: from plan settings).")
@click.option("--backup-dir", type=click.Path(), default=None, help="Backup area (default: from plan settings).")
@click.option("--timeout", "step_timeout", type=float, default=None, help="Default per-step timeout in seconds.")
@click.option("--keep-going", is_flag=True, help="Don't halt on the first failure.")
@click.option("--var", "var_pairs", multiple=True, metavar="KEY=VALUE", help="Set a plan variable.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    builtin: str | None,
    dry_run: bool,
    resume_from: str | None,
    resume_run: str | None,
    only: str | None,
    rollback_run_id: str | None,
    log_path: str | None,
    backup_dir: str | None,
    step_timeout: float | None,
    keep_going: bool,
    var_pairs: tuple[str, ...],
    as_json: bool,
) -> None:
    """Provision this machine from a plan.

    Examples:

        sudo provisionctl run --builtin ai-workstation --dry-run

        sudo provisionctl run --only sysctl-tuning,sysctl-apply

        sudo provisionctl run --rollback 20260117-101500-a1b2c3
    """
    variables = _parse_vars(var_pairs)
    config_path = ctx.obj.get("config_path")

    if rollback_run_id:
        _run_rollback(ctx, rollback_run_id, builtin, log_path, backup_dir, dry_run, as_json)
        return

    from provisionctl.core.engine.runner import CancelToken
    from provisionctl.core.use_cases.provision import run_provision

    cancel = CancelToken()
    previous = signal.getsignal(signal.SIGINT)

    def _on_sigint(signum, frame):
        if cancel.cancelled:
            raise KeyboardInterrupt
        cancel.cancel()
        click.secho(
            "\n⏸  Stopping after the current step (Ctrl-C again to abort now)",
            fg="yellow", err=True,
        )

    signal.signal(signal.SIGINT, _on_sigint)
    try:
        result = run_provision(
            config_path=config_path,
            builtin=builtin,
            variables=variables,
            dry_run=dry_run,
            resume_from=resume_from,
            resume_run=resume_run,
            only=_parse_only(only),
            log_path=Path(log_path) if log_path else None,
            backup_dir=Path(backup_dir) if backup_dir else None,
            step_timeout=step_timeout,
            keep_going=keep_going,
            cancel=cancel,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        label = "Precondition failed" if result.error_kind == "precondition" else "Configuration error"
        click.secho(f"❌ {label}: {result.error}", fg="red", err=True)
        sys.exit(result.exit_code)

    run_result = result.run
    assert run_result is not None  # guaranteed after error check above
    quiet = ctx.obj.get("quiet", False)

    mode_label = "[dry-run] " if dry_run else ""
    click.secho(
        f"\n⚙️  {mode_label}{run_result.plan_name} — run {run_result.run_id}",
        fg="cyan", bold=True,
    )
    click.echo()

    for rec in run_result.records:
        timing = f" ({rec.duration_ms}ms)" if rec.duration_ms else ""
        if rec.outcome == "succeeded":
            click.secho(f"   ✓ {rec.step_id}", fg="green", nl=False)
            click.echo(timing)
        elif rec.outcome == "failed":
            click.secho(f"   ✗ {rec.step_id}", fg="red", nl=False)
            click.echo(f" [{rec.error_kind}]{timing}")
            for line in (rec.error or "").split("\n")[:5]:
                click.echo(f"     │ {line}")
        elif rec.outcome == "would_run":
            click.secho(f"   ▶ {rec.step_id}", fg="cyan", nl=False)
            click.echo(f"  {rec.action}")
        elif not quiet:
            click.secho(f"   ⊘ {rec.step_id} ", fg="yellow", nl=False)
            click.echo(f"({rec.reason})")

    click.echo()
    if result.summary:
        from provisionctl.core.persistence.reporter import render_summary

        status_color = {
            "succeeded": "green", "dry_run": "cyan", "failed": "red", "cancelled": "yellow",
        }.get(run_result.status, "white")
        click.secho(render_summary(result.summary), fg=status_color)
    if not quiet:
        click.echo(f"   log: {result.log_path}")
        if run_result.failed and not dry_run:
            click.echo(f"   undo: provisionctl run --rollback {run_result.run_id}")
            click.echo(f"   retry: provisionctl run --resume-run {run_result.run_id}")
    click.echo()
    sys.exit(result.exit_code)


def _run_rollback(
    ctx: click.Context,
    run_id: str,
    builtin: str | None,
    log_path: str | None,
    backup_dir: str | None,
    dry_run: bool,
    as_json: bool,
) -> None:
    from provisionctl.core.errors import ConfigurationError
    from provisionctl.core.use_cases.provision import resolve_settings
    from provisionctl.core.use_cases.rollback import rollback_run

    try:
        settings = resolve_settings(ctx.obj.get("config_path"), builtin)
    except ConfigurationError as e:
        _fail_config(str(e), as_json)
        return

    result = rollback_run(
        run_id,
        log_path=Path(log_path or settings.log_path),
        backup_dir=Path(backup_dir or settings.backup_dir),
        dry_run=dry_run,
        require_root=settings.require_root,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(result.exit_code)

    rb = result.rollback
    assert rb is not None
    verb = "Would restore" if dry_run else "Restored"
    click.secho(f"\n↺ Rollback of {run_id}", fg="cyan", bold=True)
    for step_id in rb.restored:
        click.secho(f"   ✓ {verb} {step_id}", fg="green")
    for step_id in rb.already_restored:
        click.echo(f"   ⊘ {step_id} (already restored)")
    for step_id in rb.nothing_to_restore:
        click.echo(f"   · {step_id} (no snapshot)")
    if rb.halted_at is not None:
        click.secho(f"   ✗ Halted at {rb.halted_at} [{rb.halt_reason}]", fg="red", bold=True)
        if rb.error:
            click.echo(f"     │ {rb.error}")
    click.echo()
    sys.exit(result.exit_code)


# ── plan ────────────────────────────────────────────────────────


@cli.command()
@click.option("--builtin", "-b", default=None, help="Show a built-in plan.")
@click.option("--only", default=None, metavar="A,B", help="Restrict to these step ids.")
@click.option("--var", "var_pairs", multiple=True, metavar="KEY=VALUE", help="Set a plan variable.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(
    ctx: click.Context,
    builtin: str | None,
    only: str | None,
    var_pairs: tuple[str, ...],
    as_json: bool,
) -> None:
    """Show the resolved execution order without running anything."""
    from provisionctl.core.use_cases.provision import preview_plan

    result = preview_plan(
        config_path=ctx.obj.get("config_path"),
        builtin=builtin,
        variables=_parse_vars(var_pairs),
        only=_parse_only(only),
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(2 if result.error else 0)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(2)

    run_plan = result.plan
    assert run_plan is not None
    click.secho(f"\n📋 {run_plan.name} ({len(run_plan)} steps)", fg="cyan", bold=True)
    if result.plan_file and result.plan_file.description:
        click.echo(f"   {result.plan_file.description}")
    click.echo()
    for n, step in enumerate(run_plan, start=1):
        marker = click.style(" [irreversible]", fg="red") if not step.reversible else ""
        click.echo(f"   {n:2d}. {step.id}{marker}")
        if ctx.obj.get("verbose"):
            click.echo(f"       {step.action.display}")
            if step.depends_on:
                click.echo(f"       after: {', '.join(step.depends_on)}")
    click.echo()


# ── config ──────────────────────────────────────────────────────


@cli.group()
def config() -> None:
    """Plan configuration commands."""


@config.command("check")
@click.option("--builtin", "-b", default=None, help="Check a built-in plan.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, builtin: str | None, as_json: bool) -> None:
    """Validate a plan: schema, ids, dependencies, rollback coverage."""
    from provisionctl.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"), builtin=builtin)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 2)

    if result.valid:
        assert result.plan is not None  # guaranteed when valid
        click.secho("✅ Plan is valid", fg="green", bold=True)
        click.echo(f"   Plan: {result.plan.name}")
        click.echo(f"   Source: {result.source}")
        click.echo(f"   Steps: {len(result.plan.steps)}")
    else:
        click.secho("❌ Plan errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings and not ctx.obj.get("quiet"):
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    click.echo()
    if not result.valid:
        sys.exit(2)


# ── Sub-groups ──────────────────────────────────────────────────

from provisionctl.ui.cli.backups import backups  # noqa: E402
from provisionctl.ui.cli.history import runs, summary  # noqa: E402

cli.add_command(runs)
cli.add_command(summary)
cli.add_command(backups)


if __name__ == "__main__":
    cli()
