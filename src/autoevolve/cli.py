"""Command-line interface for autoevolve.

Commands:
- autoevolve watch <repo_path>: Run the scheduler until interrupted
- autoevolve run-once <repo_path>: Run one improvement/patch/update pass
- autoevolve check-updates / update <repo_path>: Self-update
- autoevolve versions / version-diff / changelog <repo_path>: Version ledger
- autoevolve implementations / rollback <repo_path>: Implementation history
- autoevolve patch create|apply / patches <repo_path>: Hot patches
- autoevolve check-code <file>: Run the code-safety scan on a file
- autoevolve status / unlock <repo_path>: Operations
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path

import click

from .config import AutoevolveConfig, load_config, resolve_under
from .coordinator import Coordinator
from .lock import CycleLock
from .security.filter import ContentFilter
from .status import StatusWindow, compute_status
from .types import PatchAction, PatchType, VersionStatus

_repo_argument = click.argument("repo_path", type=click.Path(exists=True, file_okay=False))
_config_option = click.option("--config", "-c", type=click.Path(exists=True), help="Config file path")


def _load(repo_path: str, config: str | None) -> tuple[Path, AutoevolveConfig]:
    root = Path(repo_path).resolve()
    if config:
        cfg = AutoevolveConfig.load_from_file(config)
        cfg.apply_env_overrides()
    else:
        cfg = load_config(root)
    return root, cfg


def _coordinator(repo_path: str, config: str | None) -> Coordinator:
    root, cfg = _load(repo_path, config)
    return Coordinator(root, cfg)


@click.group()
@click.version_option(version="1.0.0", prog_name="autoevolve")
def cli() -> None:
    """autoevolve - autonomous self-improvement pipeline."""
    pass


@cli.command()
@_repo_argument
@_config_option
def watch(repo_path: str, config: str | None) -> None:
    """Run improvement, patch and update cycles on their schedules.

    Example:
        autoevolve watch /path/to/service
    """
    coordinator = _coordinator(repo_path, config)
    sched = coordinator.config.schedule

    click.echo(f"Watching: {coordinator.root}")
    click.echo(f"Improvement every {sched.improvement_interval_seconds}s")
    click.echo(f"Patches every {sched.patch_interval_seconds}s")
    click.echo(f"Updates every {sched.update_interval_seconds}s")
    click.echo("Press Ctrl+C to stop")
    click.echo()

    try:
        asyncio.run(coordinator.start())
    except KeyboardInterrupt:
        pass
    click.echo("Stopped.")


@cli.command()
@_repo_argument
@_config_option
@click.option("--no-improve", is_flag=True, help="Skip the improvement cycle")
@click.option("--no-patches", is_flag=True, help="Skip pending hot patches")
@click.option("--update", "update_", is_flag=True, help="Also run a self-update check")
@click.option("--output", "-o", type=click.Path(), help="Save results to JSON file")
def run_once(
    repo_path: str,
    config: str | None,
    no_improve: bool,
    no_patches: bool,
    update_: bool,
    output: str | None,
) -> None:
    """Run each selected cycle once.

    Example:
        autoevolve run-once /path/to/service --update -o results.json
    """
    coordinator = _coordinator(repo_path, config)
    click.echo(f"Running single pass on: {coordinator.root}")
    click.echo()

    results = asyncio.run(
        coordinator.run_once(improve=not no_improve, patches=not no_patches, update=update_)
    )

    json_result: dict[str, object] = {}
    report = results.get("improvement")
    if report is not None:
        click.echo(f"Improvement: {report.status}")
        click.echo(f"  Issues found: {report.issues_found}")
        click.echo(f"  Proposals: {report.proposals_generated}")
        click.echo(f"  Implemented: {report.implemented}")
        click.echo(f"  Failed: {report.failed}")
        for item in report.items:
            mark = "✓" if item.get("status") == "implemented" else "✗"
            line = f"    {mark} {item.get('issue')} [{item.get('status')}]"
            if item.get("version"):
                line += f" v{item['version']}"
            click.echo(line)
        json_result["improvement"] = asdict(report)

    counts = results.get("patches")
    if counts is not None:
        click.echo(f"Patches: applied={counts['applied']} failed={counts['failed']}")
        json_result["patches"] = counts

    update_result = results.get("update")
    if update_result is not None:
        click.echo(f"Update: updated={update_result.updated} error={update_result.error}")
        json_result["update"] = update_result.to_dict()

    if output:
        output_path = Path(output)
        output_path.write_text(json.dumps(json_result, indent=2, default=str))
        click.echo()
        click.echo(f"Results saved to: {output_path}")


@cli.command("check-updates")
@_repo_argument
@_config_option
def check_updates(repo_path: str, config: str | None) -> None:
    """Report how far the working tree is behind upstream."""
    coordinator = _coordinator(repo_path, config)
    click.echo(coordinator.updater.get_status(), nl=False)


@cli.command()
@_repo_argument
@_config_option
def update(repo_path: str, config: str | None) -> None:
    """Pull, reinstall/rebuild as needed, and restart."""
    coordinator = _coordinator(repo_path, config)
    result = asyncio.run(coordinator.run_update_cycle())

    if result.skipped:
        click.echo("Skipped: another cycle holds the lock.")
        return
    if result.error:
        raise click.ClickException(f"Update failed: {result.error}")
    if not result.updated:
        click.echo("Already up to date.")
        return

    click.echo(f"Updated {result.previous_revision} -> {result.new_revision}")
    click.echo(f"  Changed files: {len(result.changes)}")
    click.echo(f"  Reinstalled: {result.reinstalled}")
    click.echo(f"  Rebuilt: {result.rebuilt}")
    click.echo(f"  Restarted: {result.restarted}")


@cli.command()
@_repo_argument
@_config_option
@click.option("--limit", "-n", type=int, default=10, show_default=True)
@click.option("--status", "status_", type=click.Choice([s.value for s in VersionStatus]), default=None)
def versions(repo_path: str, config: str | None, limit: int, status_: str | None) -> None:
    """List recent versions, newest first."""
    ledger = _coordinator(repo_path, config).ledger
    click.echo(ledger.get_summary())

    records = ledger.get_recent(limit) if status_ is None else ledger.get_by_status(VersionStatus(status_))[::-1][:limit]
    for v in records:
        click.echo(ledger.format_version(v))


@cli.command("version-diff")
@_repo_argument
@click.argument("version_a")
@click.argument("version_b")
@_config_option
def version_diff(repo_path: str, version_a: str, version_b: str, config: str | None) -> None:
    """Show files introduced in VERSION_B that VERSION_A does not have."""
    ledger = _coordinator(repo_path, config).ledger
    click.echo(ledger.get_diff(version_a, version_b), nl=False)


@cli.command()
@_repo_argument
@_config_option
def changelog(repo_path: str, config: str | None) -> None:
    """Print the rendered changelog."""
    click.echo(_coordinator(repo_path, config).ledger.get_changelog(), nl=False)


@cli.command()
@_repo_argument
@_config_option
@click.option("--limit", "-n", type=int, default=10, show_default=True)
def implementations(repo_path: str, config: str | None, limit: int) -> None:
    """List recent implementation attempts, newest first."""
    implementer = _coordinator(repo_path, config).implementer
    click.echo(implementer.get_summary())
    for impl in implementer.get_recent(limit):
        click.echo(implementer.format_implementation(impl))


@cli.command()
@_repo_argument
@click.argument("implementation_id")
@_config_option
def rollback(repo_path: str, implementation_id: str, config: str | None) -> None:
    """Restore the file an implementation modified from its backup."""
    coordinator = _coordinator(repo_path, config)
    if not asyncio.run(coordinator.rollback(implementation_id)):
        raise click.ClickException(f"Rollback failed for {implementation_id} (unknown id or no backup)")
    click.echo(f"Rolled back {implementation_id}")


@cli.group()
def patch() -> None:
    """Hot patch utilities."""


@patch.command("create")
@_repo_argument
@_config_option
@click.option("--type", "type_", type=click.Choice([t.value for t in PatchType]), default="config", show_default=True)
@click.option("--target", required=True, help="data/..., config/... or a project-relative path")
@click.option("--action", type=click.Choice([a.value for a in PatchAction]), required=True)
@click.option("--new-value", required=True)
@click.option("--old-value", default=None)
@click.option("--description", "-m", default="", help="What the patch does")
@click.option("--apply", "apply_now", is_flag=True, help="Apply immediately")
def patch_create(
    repo_path: str,
    config: str | None,
    type_: str,
    target: str,
    action: str,
    new_value: str,
    old_value: str | None,
    description: str,
    apply_now: bool,
) -> None:
    """Queue a hot patch."""
    patcher = _coordinator(repo_path, config).patcher
    p = patcher.create_patch(
        type=PatchType(type_),
        description=description or f"{action} {target}",
        target=target,
        action=PatchAction(action),
        new_value=new_value,
        old_value=old_value,
    )
    click.echo(f"Created {p.id}")

    if apply_now:
        if not patcher.apply(p.id):
            pending = next((x for x in patcher.get_pending() if x.id == p.id), None)
            raise click.ClickException(f"Patch {p.id} failed: {pending.last_error if pending else 'unknown'}")
        click.echo(f"Applied {p.id}")


@patch.command("apply")
@_repo_argument
@click.argument("patch_id", required=False)
@_config_option
def patch_apply(repo_path: str, patch_id: str | None, config: str | None) -> None:
    """Apply one pending patch, or all of them."""
    patcher = _coordinator(repo_path, config).patcher
    if patch_id:
        if not patcher.apply(patch_id):
            raise click.ClickException(f"Patch {patch_id} not applied (unknown id or failed)")
        click.echo(f"Applied {patch_id}")
        return

    counts = patcher.apply_all()
    click.echo(f"Applied: {counts['applied']}  Failed: {counts['failed']}")
    if counts["failed"]:
        sys.exit(1)


@cli.command()
@_repo_argument
@_config_option
def patches(repo_path: str, config: str | None) -> None:
    """Show pending and recently applied hot patches."""
    click.echo(_coordinator(repo_path, config).patcher.get_summary(), nl=False)


@cli.command("check-code")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--sandbox-root", type=click.Path(file_okay=False), default=".", show_default=True)
@click.option("--language", "-l", default="python", show_default=True)
@click.option("--sanitize", is_flag=True, help="Print the sanitized code")
def check_code(file_path: str, sandbox_root: str, language: str, sanitize: bool) -> None:
    """Run the heuristic safety scan on FILE_PATH.

    Exits 1 when the code is flagged unsafe.
    """
    code = Path(file_path).read_text(encoding="utf-8")
    content_filter = ContentFilter(Path(sandbox_root))
    report = content_filter.is_code_safe(code)

    if sanitize:
        click.echo(content_filter.sanitize_code(code, language), nl=False)
        click.echo()

    if report.safe:
        click.echo("✓ No issues found")
        return

    click.echo("✗ Unsafe:")
    for issue in report.issues:
        click.echo(f"  - {issue}")
    sys.exit(1)


@cli.command()
@_repo_argument
@_config_option
@click.option(
    "--format",
    "-f",
    "format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
@click.option(
    "--window-minutes",
    type=int,
    default=1440,
    show_default=True,
    help="Metrics window (best-effort from telemetry).",
)
@click.option(
    "--health",
    is_flag=True,
    help="Exit 0 if the last cycle is healthy; 1 otherwise.",
)
def status(repo_path: str, config: str | None, format: str, window_minutes: int, health: bool) -> None:
    """Show operational status/metrics from telemetry."""
    root, cfg = _load(repo_path, config)
    telemetry_path = resolve_under(root, cfg.telemetry.log_path)
    st = compute_status(telemetry_path, window=StatusWindow(seconds=max(1, window_minutes) * 60.0))

    if health:
        last = st.get("last_cycle") or {}
        status_val = (last.get("data") or {}).get("status")
        ok = status_val in {"success", "no_proposals", "locked", "skipped"}
        sys.exit(0 if ok else 1)

    if format == "json":
        click.echo(json.dumps(st, indent=2))
        return

    click.echo(f"Telemetry: {telemetry_path}")
    click.echo(f"Window: {window_minutes} minutes")
    click.echo(f"Implementations: {st['implementations']}")
    click.echo(f"Implementation success rate: {st['implementation_success_rate']}")
    click.echo(f"Security rejections: {st['security_rejections']}")
    click.echo(f"Sandbox violations: {st['sandbox_violations']}")
    click.echo(f"Commit failures: {st['commit_failures']}")
    click.echo(f"Rollbacks: {st['rollbacks']}")
    click.echo(f"Versions created: {st['versions_created']}")
    click.echo(f"Patch success rate: {st['patch_success_rate']}")
    click.echo(f"Update success rate: {st['update_success_rate']}")
    click.echo(f"Cycle latency p50 (s): {st['cycle_latency_s_p50']}")
    click.echo(f"Cycle latency p95 (s): {st['cycle_latency_s_p95']}")

    last = st.get("last_cycle") or {}
    if last:
        data = last.get("data") or {}
        click.echo()
        click.echo(f"Last cycle: run_id={last.get('run_id')} kind={data.get('kind')} status={data.get('status')}")


@cli.command()
@_repo_argument
@_config_option
@click.option("--force", is_flag=True, help="Remove without confirmation")
def unlock(repo_path: str, config: str | None, force: bool) -> None:
    """Remove a cycle lock left behind by a crashed run."""
    root, cfg = _load(repo_path, config)
    lock = CycleLock(resolve_under(root, cfg.paths.data_dir) / cfg.updater.lock_file)
    holder = lock.holder()
    if holder is None:
        click.echo("No lock held.")
        return

    click.echo(f"Lock held: {holder}")
    if not force and not click.confirm("Remove it?", default=False):
        return
    lock.release()
    click.echo("Lock removed.")


def main() -> None:
    """Entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
