"""Coordinator - ties an issue source to the mutation pipeline.

Each concern runs on its own timer, one at a time:
1. Improvement cycle: analyze -> propose -> version -> implement -> notify
2. Patch cycle: apply pending hot patches
3. Update cycle: check upstream -> pull/rebuild -> restart

The improvement and update cycles share an external lock file, so a second
invocation (another `run-once`, a manual `update`) skips instead of racing.
"""

from __future__ import annotations

import asyncio
import signal
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import AutoevolveConfig, resolve_under
from .git_ops import GitClient
from .hot_patch import HotPatcher
from .implementer import AutoImplementer
from .lock import CycleLock
from .notify import EchoNotifier, MultiNotifier, NotificationSink, NullNotifier, WebhookNotifier
from .records import NO_COMMIT
from .security.filter import ContentFilter, redact_text
from .security.sandbox import SandboxGuard
from .self_update import SelfUpdater
from .sources import IssueSource, QueuedIssueSource
from .supervisor import ProcessSupervisor
from .telemetry import TelemetrySink, prune_telemetry_file
from .types import CycleReport, Issue, Proposal, ProposalStatus, Severity, UpdateResult, VersionStatus
from .versioning import VersionLedger


class PatchLedgerHandler(FileSystemEventHandler):
    """Requests a patch cycle when the patch ledger is edited on disk."""

    def __init__(
        self,
        ledger_file: Path,
        loop: asyncio.AbstractEventLoop,
        on_change: Callable[[], None],
        debounce_seconds: float = 2.0,
    ):
        self.ledger_name = ledger_file.name
        self.loop = loop
        self.on_change = on_change
        self.debounce_seconds = debounce_seconds
        self._last_event = 0.0

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        # Atomic saves arrive as a move onto the ledger name.
        paths = [str(event.src_path), str(getattr(event, "dest_path", "") or "")]
        if not any(Path(p).name == self.ledger_name for p in paths if p):
            return

        now = time.time()
        if now - self._last_event < self.debounce_seconds:
            return
        self._last_event = now

        # Hand off to the coordinator loop (thread-safe).
        self.loop.call_soon_threadsafe(self.on_change)


def build_notifier(config: AutoevolveConfig) -> NotificationSink:
    sinks: list[NotificationSink] = []
    if config.notifications.echo:
        sinks.append(EchoNotifier())
    hook = config.notifications.webhook
    if hook.url:
        sinks.append(WebhookNotifier(hook.url, headers=hook.headers, timeout_seconds=hook.timeout_seconds))
    if not sinks:
        return NullNotifier()
    if len(sinks) == 1:
        return sinks[0]
    return MultiNotifier(sinks)


class Coordinator:
    """
    Main orchestrator for the self-improvement pipeline.

    Every collaborator can be injected; anything left out is built from config.
    """

    def __init__(
        self,
        root: Path | str,
        config: AutoevolveConfig | None = None,
        *,
        telemetry: TelemetrySink | None = None,
        sandbox: SandboxGuard | None = None,
        content_filter: ContentFilter | None = None,
        ledger: VersionLedger | None = None,
        implementer: AutoImplementer | None = None,
        updater: SelfUpdater | None = None,
        patcher: HotPatcher | None = None,
        notifier: NotificationSink | None = None,
        source: IssueSource | None = None,
        lock: CycleLock | None = None,
    ):
        self.root = Path(root).resolve()
        self.config = config or AutoevolveConfig()
        cfg = self.config

        self.data_dir = resolve_under(self.root, cfg.paths.data_dir)
        self.source_dir = resolve_under(self.root, cfg.paths.source_dir)
        self.config_dir = resolve_under(self.root, cfg.paths.config_dir)
        self.patches_dir = self.data_dir / cfg.hot_patch.patches_dir

        self.telemetry = telemetry or TelemetrySink(
            enabled=cfg.telemetry.enabled,
            path=resolve_under(self.root, cfg.telemetry.log_path),
        )
        self.sandbox = sandbox or SandboxGuard(
            resolve_under(self.root, cfg.paths.sandbox_root),
            blocked_paths=cfg.sandbox.blocked_paths,
            blocked_extensions=cfg.sandbox.blocked_extensions,
            telemetry=self.telemetry,
        )
        self.content_filter = content_filter or ContentFilter(self.sandbox.root)
        self.lock = lock or CycleLock(self.data_dir / cfg.updater.lock_file)

        self.git = GitClient(
            self.root,
            author_name=cfg.git.commit_author_name,
            author_email=cfg.git.commit_author_email,
        )
        self.ledger = ledger or VersionLedger(
            self.data_dir / cfg.versioning.versions_dir,
            initial_version=cfg.versioning.initial_version,
            changelog_title=cfg.versioning.changelog_title,
            telemetry=self.telemetry,
            content_filter=self.content_filter,
        )
        self.implementer = implementer or AutoImplementer(
            sandbox=self.sandbox,
            content_filter=self.content_filter,
            source_dir=self.source_dir,
            history_file=self.data_dir / cfg.implementer.history_file,
            backup_dir=self.data_dir / cfg.implementer.backup_dir,
            git=self.git,
            area_dirs=cfg.implementer.area_dirs,
            default_dir=cfg.implementer.default_dir,
            commit_enabled=cfg.git.commit_enabled,
            telemetry=self.telemetry,
        )
        self.updater = updater or SelfUpdater(
            self.root,
            lock=self.lock,
            git=self.git,
            supervisor=ProcessSupervisor(cfg.updater.restart_argv, cwd=self.root),
            remote=cfg.updater.remote,
            branch=cfg.updater.branch,
            manifest_files=cfg.updater.manifest_files,
            build_config_files=cfg.updater.build_config_files,
            source_prefixes=cfg.updater.source_prefixes,
            install_argv=cfg.updater.install_argv,
            build_argv=cfg.updater.build_argv,
            command_timeout_seconds=cfg.updater.command_timeout_seconds,
            process_name=cfg.updater.process_name,
            telemetry=self.telemetry,
        )
        self.patcher = patcher or HotPatcher(
            sandbox=self.sandbox,
            content_filter=self.content_filter,
            project_root=self.root,
            data_dir=self.data_dir,
            config_dir=self.config_dir,
            ledger_file=self.patches_dir / cfg.hot_patch.ledger_file,
            telemetry=self.telemetry,
        )
        self.notifier = notifier or build_notifier(cfg)
        self.source = source or QueuedIssueSource(self.data_dir / cfg.source.queue_file)

        self._running = False
        self._patch_requested: asyncio.Event | None = None

    # Improvement cycle

    async def run_improvement_cycle(self) -> CycleReport:
        """Analyze, propose, version and implement, one issue at a time."""
        run_id = str(uuid.uuid4())[:8]
        self.telemetry.log(run_id, "cycle_started", {"kind": "improvement"})

        with self.lock.hold() as acquired:
            if not acquired:
                self.telemetry.log(
                    run_id,
                    "cycle_completed",
                    {"kind": "improvement", "status": "locked", "holder": self.lock.holder()},
                )
                return CycleReport(run_id=run_id, status="locked")

            report = CycleReport(run_id=run_id, status="success")
            try:
                issues = await self.source.analyze_performance()
            except Exception as e:
                err = redact_text(str(e), max_len=200)
                self.telemetry.log(run_id, "cycle_completed", {"kind": "improvement", "status": "error", "error": err})
                await self.notifier.alert("Issue analysis failed", err)
                report.status = "error"
                return report

            report.issues_found = len(issues)
            min_rank = Severity(self.config.schedule.min_severity).rank
            for issue in issues:
                if issue.severity.rank < min_rank:
                    report.items.append(
                        {"issue": issue.description, "status": "skipped", "reason": "below_min_severity"}
                    )
                    continue
                try:
                    report.items.append(await self._improve(issue, report))
                except Exception as e:
                    # One bad item never aborts the rest of the cycle.
                    err = redact_text(str(e), max_len=200)
                    report.failed += 1
                    report.items.append({"issue": issue.description, "status": "error", "error": err})
                    await self.notifier.alert(f"Improvement failed: {issue.description}", err)

            if not report.proposals_generated:
                report.status = "no_proposals"

        self.telemetry.log(
            run_id,
            "cycle_completed",
            {
                "kind": "improvement",
                "status": report.status,
                "issues_found": report.issues_found,
                "proposals": report.proposals_generated,
                "implemented": report.implemented,
                "failed": report.failed,
                "versions": report.versions_created,
            },
        )
        return report

    async def _improve(self, issue: Issue, report: CycleReport) -> dict[str, Any]:
        solution = await self.source.generate_improvement(issue)
        if solution is None:
            return {"issue": issue.description, "status": "skipped", "reason": "no_solution"}

        proposal = Proposal(issue=issue, solution=solution)
        report.proposals_generated += 1

        version = self.ledger.create_version(proposal)
        report.versions_created.append(version.version)

        impl = self.implementer.implement(proposal, version)
        item: dict[str, Any] = {
            "issue": issue.description,
            "proposal_id": proposal.id,
            "version": version.version,
            "implementation_id": impl.id,
            "file": impl.file,
        }

        if impl.success:
            self.ledger.update_status(version.id, VersionStatus.IMPLEMENTED)
            proposal.status = ProposalStatus.IMPLEMENTED
            report.implemented += 1
            if impl.git_commit and impl.git_commit != NO_COMMIT:
                report.commits.append(impl.git_commit)
            await self.notifier.finding(
                f"Self-improvement v{version.version} implemented",
                f"{solution.description}\nFile: {impl.file}\nCommit: {impl.git_commit}",
            )
            item.update({"status": "implemented", "git_commit": impl.git_commit})
        else:
            proposal.status = ProposalStatus.REJECTED
            report.failed += 1
            await self.notifier.alert(f"Implementation of v{version.version} failed", impl.error)
            item.update({"status": impl.stage.value, "error": impl.error})
        return item

    async def rollback(self, implementation_id: str) -> bool:
        impl = self.implementer.get(implementation_id)
        if not self.implementer.rollback(implementation_id):
            await self.notifier.alert(f"Rollback of {implementation_id} failed")
            return False

        if impl is not None:
            version = self.ledger.find_by_version(impl.version)
            if version is not None:
                self.ledger.update_status(version.id, VersionStatus.REVERTED)
        await self.notifier.finding(
            f"Rolled back {implementation_id}",
            f"Restored {impl.file if impl else 'target'} from backup",
        )
        return True

    # Patch and update cycles

    async def run_patch_cycle(self) -> dict[str, int]:
        run_id = str(uuid.uuid4())[:8]
        self.telemetry.log(run_id, "cycle_started", {"kind": "patch"})
        counts = self.patcher.apply_all()
        self.telemetry.log(run_id, "cycle_completed", {"kind": "patch", "status": "success", **counts})
        if counts["failed"]:
            await self.notifier.alert(f"{counts['failed']} hot patch(es) failed to apply")
        return counts

    async def run_update_cycle(self) -> UpdateResult:
        run_id = str(uuid.uuid4())[:8]
        self.telemetry.log(run_id, "cycle_started", {"kind": "update"})

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self.updater.run_full_update)

        status = "skipped" if result.skipped else ("error" if result.error else "success")
        self.telemetry.log(run_id, "cycle_completed", {"kind": "update", "status": status, **result.to_dict()})

        if result.error:
            await self.notifier.alert("Self-update failed", result.error)
        elif result.updated:
            await self.notifier.finding(
                f"Updated {result.previous_revision} -> {result.new_revision}",
                f"{len(result.changes)} file(s) changed; reinstalled={result.reinstalled} "
                f"rebuilt={result.rebuilt} restarted={result.restarted}",
            )
        return result

    async def run_once(
        self,
        *,
        improve: bool = True,
        patches: bool = True,
        update: bool = False,
    ) -> dict[str, Any]:
        """Run each selected concern once, in order, and return their results."""
        results: dict[str, Any] = {}
        if improve:
            results["improvement"] = await self.run_improvement_cycle()
        if patches:
            results["patches"] = await self.run_patch_cycle()
        if update:
            results["update"] = await self.run_update_cycle()
        return results

    # Daemon loop

    def _request_patch_cycle(self) -> None:
        ledger_file = self.patcher.ledger_file
        try:
            mtime = ledger_file.stat().st_mtime_ns
        except OSError:
            return
        # Our own saves also fire the watcher.
        if mtime == self.patcher.last_saved_mtime_ns:
            return
        if self._patch_requested is not None:
            self._patch_requested.set()

    async def start(self) -> None:
        """Run the timer loop until SIGINT/SIGTERM or stop()."""
        self._running = True
        self._patch_requested = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: setattr(self, "_running", False))
            except (NotImplementedError, RuntimeError):
                # Not supported on some platforms / event loops.
                pass

        if self.telemetry.enabled:
            prune_telemetry_file(self.telemetry.path, self.config.telemetry.retention_days)

        observer: Any | None = None
        if self.config.hot_patch.watch:
            self.patches_dir.mkdir(parents=True, exist_ok=True)
            observer = Observer()
            handler = PatchLedgerHandler(
                self.patcher.ledger_file,
                loop=loop,
                on_change=self._request_patch_cycle,
                debounce_seconds=self.config.hot_patch.debounce_seconds,
            )
            observer.schedule(handler, str(self.patches_dir), recursive=False)
            observer.start()

        sched = self.config.schedule
        intervals = {
            "improvement": sched.improvement_interval_seconds,
            "patch": sched.patch_interval_seconds,
            "update": sched.update_interval_seconds,
        }
        runners = {
            "improvement": self.run_improvement_cycle,
            "patch": self.run_patch_cycle,
            "update": self.run_update_cycle,
        }
        # Everything enabled runs once at startup.
        next_due = {name: 0.0 for name, every in intervals.items() if every > 0}

        try:
            while self._running:
                now = time.monotonic()
                for name in list(next_due):
                    if not self._running:
                        break
                    if now >= next_due[name]:
                        await self._run_guarded(name, runners[name])
                        next_due[name] = time.monotonic() + intervals[name]

                if self._patch_requested.is_set():
                    self._patch_requested.clear()
                    await self._run_guarded("patch", self.run_patch_cycle)

                await asyncio.sleep(1.0)
        finally:
            if observer is not None:
                observer.stop()
                observer.join()

    async def _run_guarded(self, name: str, runner: Callable[[], Any]) -> None:
        try:
            await runner()
        except Exception as e:
            err = redact_text(str(e), max_len=200)
            self.telemetry.log("daemon", "cycle_completed", {"kind": name, "status": "error", "error": err})
            await self.notifier.alert(f"{name} cycle crashed", err)

    async def stop(self) -> None:
        self._running = False
