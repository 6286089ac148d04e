"""Self-updater: pull upstream changes, reinstall/rebuild, restart.

Pulls hold the cycle lock shared with the improvement cycle. A caller that
finds the lock held gets a skipped result and nothing is touched. There is no
retry loop; the next scheduled check is the retry.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Protocol

from .git_ops import GitClient, GitError
from .lock import CycleLock
from .security.filter import redact_text
from .supervisor import ProcessSupervisor
from .telemetry import TelemetrySink
from .types import UpdateCheck, UpdateResult


class Restarter(Protocol):
    def restart(self, name: str) -> bool: ...


class SelfUpdater:
    def __init__(
        self,
        root: Path | str,
        lock: CycleLock,
        git: GitClient | None = None,
        supervisor: Restarter | None = None,
        remote: str = "origin",
        branch: str = "main",
        manifest_files: list[str] | None = None,
        build_config_files: list[str] | None = None,
        source_prefixes: list[str] | None = None,
        install_argv: list[str] | None = None,
        build_argv: list[str] | None = None,
        command_timeout_seconds: int = 900,
        process_name: str = "autoevolve",
        telemetry: TelemetrySink | None = None,
    ):
        self.root = Path(root)
        self.lock = lock
        self.git = git or GitClient(self.root)
        self.supervisor = supervisor or ProcessSupervisor(
            ["pm2", "restart", "{name}", "--update-env"], cwd=self.root
        )
        self.remote = remote
        self.branch = branch
        self.manifest_files = manifest_files if manifest_files is not None else ["pyproject.toml", "requirements.txt"]
        self.build_config_files = (
            build_config_files if build_config_files is not None else ["pyproject.toml", "setup.cfg"]
        )
        self.source_prefixes = source_prefixes if source_prefixes is not None else ["src/"]
        self.install_argv = install_argv or ["python", "-m", "pip", "install", "-e", "."]
        self.build_argv = build_argv or ["python", "-m", "compileall", "-q", "src"]
        self.command_timeout_seconds = command_timeout_seconds
        self.process_name = process_name
        self.telemetry = telemetry or TelemetrySink.disabled()

    @property
    def upstream(self) -> str:
        return f"{self.remote}/{self.branch}"

    def check_for_updates(self) -> UpdateCheck:
        """Fetch and report how far HEAD is behind the upstream branch."""
        try:
            self.git.fetch(self.remote)
            behind = self.git.rev_list_count(f"HEAD..{self.upstream}")
            commits = self.git.log_oneline(f"HEAD..{self.upstream}") if behind > 0 else []
        except GitError as e:
            err = redact_text(str(e), max_len=300)
            self.telemetry.log("updater", "update_check", {"error": err})
            return UpdateCheck(has_updates=False, error=err)

        self.telemetry.log("updater", "update_check", {"behind": behind, "commits": commits[:20]})
        return UpdateCheck(has_updates=behind > 0, behind=behind, commits=commits)

    def pull_and_rebuild(self) -> UpdateResult:
        with self.lock.hold() as acquired:
            if not acquired:
                self.telemetry.log("updater", "update_skipped", {"reason": "lock_held", "holder": self.lock.holder()})
                return UpdateResult(updated=False, skipped=True, error="Update already in progress")
            return self._pull_and_rebuild()

    def _pull_and_rebuild(self) -> UpdateResult:
        result = UpdateResult(updated=False)
        try:
            result.previous_revision = self.git.short_head()
            # Best effort: a failed stash still lets the pull report its own conflict.
            self.git.stash()
            self.git.pull(self.remote, self.branch)
            result.new_revision = self.git.short_head()
        except GitError as e:
            result.error = redact_text(str(e), max_len=300)
            self.telemetry.log("updater", "update_failed", result.to_dict())
            return result

        if result.new_revision == result.previous_revision:
            self.telemetry.log("updater", "update_applied", result.to_dict())
            return result

        result.updated = True
        try:
            result.changes = self.git.last_commit_files()
        except GitError as e:
            result.error = redact_text(str(e), max_len=300)

        if self._touches(result.changes, self.manifest_files):
            ok, err = self._run_command(self.install_argv)
            result.reinstalled = ok
            if err:
                result.error = err

        if self._touches_source(result.changes) or self._touches(result.changes, self.build_config_files):
            ok, err = self._run_command(self.build_argv)
            result.rebuilt = ok
            if err:
                result.error = err

        event = "update_failed" if result.error else "update_applied"
        self.telemetry.log("updater", event, result.to_dict())
        return result

    def _touches(self, changes: list[str], names: list[str]) -> bool:
        return any(c in names or Path(c).name in names for c in changes)

    def _touches_source(self, changes: list[str]) -> bool:
        return any(c.startswith(p) for c in changes for p in self.source_prefixes)

    def _run_command(self, argv: list[str]) -> tuple[bool, str | None]:
        try:
            res = subprocess.run(
                argv,
                cwd=str(self.root),
                text=True,
                capture_output=True,
                timeout=self.command_timeout_seconds,
            )
        except FileNotFoundError:
            return False, f"{argv[0]} not found on PATH"
        except subprocess.TimeoutExpired:
            return False, f"{' '.join(argv[:3])} timed out after {self.command_timeout_seconds}s"
        if res.returncode != 0:
            detail = redact_text((res.stderr or res.stdout).strip(), max_len=300)
            return False, f"{' '.join(argv[:3])} exited {res.returncode}: {detail}"
        return True, None

    def restart(self) -> bool:
        ok = self.supervisor.restart(self.process_name)
        self.telemetry.log("updater", "restart_requested", {"process": self.process_name, "ok": ok})
        return ok

    def run_full_update(self) -> UpdateResult:
        """Check, then pull/rebuild only when behind; restart only when source changed."""
        check = self.check_for_updates()
        if check.error:
            return UpdateResult(updated=False, error=check.error)
        if not check.has_updates:
            return UpdateResult(updated=False)

        result = self.pull_and_rebuild()
        if result.updated and not result.error and self._touches_source(result.changes):
            result.restarted = self.restart()
        return result

    def get_status(self) -> str:
        check = self.check_for_updates()
        if check.error:
            return f"Update check failed: {check.error}\n"
        if not check.has_updates:
            return f"Up to date with {self.upstream}.\n"
        out = f"{check.behind} commit(s) behind {self.upstream}:\n"
        out += "".join(f"  {c}\n" for c in check.commits[:10])
        if len(check.commits) > 10:
            out += f"  ... and {len(check.commits) - 10} more\n"
        return out
