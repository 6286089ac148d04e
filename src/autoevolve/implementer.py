"""Auto-implementer: validate, back up, write, commit and record generated code.

Each attempt moves through these stages and records the furthest one reached:

    PROPOSED -> VALIDATED -> (BACKED_UP) -> WRITTEN -> COMMITTED | NO_COMMIT

An attempt stopped by the code-safety scan or the sandbox is recorded as
REJECTED before anything in the tree is touched. Filesystem faults after
validation are recorded as FAILED.
"""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Any, Protocol

from . import provenance
from .git_ops import GitError
from .records import (
    NO_COMMIT,
    Implementation,
    ImplementationHistory,
    Version,
    atomic_write,
    load_document,
    save_document,
)
from .security.filter import ContentFilter, redact_text
from .security.sandbox import SandboxGuard
from .telemetry import TelemetrySink
from .types import (
    ImplementationAction,
    ImplementationStage,
    Proposal,
    new_id,
    utc_now_iso,
)

DEFAULT_AREA_DIRS = {
    "decision_making": "agent",
    "learning": "evolution",
    "efficiency": "utils",
    "memory": "memory",
    "engagement": "agent",
    "optimization": "utils",
}


class VersionControl(Protocol):
    """The git primitives the implementer needs."""

    def add(self, paths: list[str]) -> None: ...

    def commit(self, message: str, paths: list[str] | None = None) -> None: ...

    def short_head(self) -> str: ...


class AutoImplementer:
    """Writes sanitized solutions into the source tree and keeps an audit history."""

    def __init__(
        self,
        sandbox: SandboxGuard,
        content_filter: ContentFilter,
        source_dir: Path | str,
        history_file: Path | str,
        backup_dir: Path | str,
        git: VersionControl | None = None,
        area_dirs: dict[str, str] | None = None,
        default_dir: str = "improvements",
        commit_enabled: bool = True,
        telemetry: TelemetrySink | None = None,
    ):
        self.sandbox = sandbox
        self.content_filter = content_filter
        self.source_dir = Path(source_dir)
        self.history_file = Path(history_file)
        self.backup_dir = Path(backup_dir)
        self.git = git
        self.area_dirs = dict(area_dirs if area_dirs is not None else DEFAULT_AREA_DIRS)
        self.default_dir = default_dir
        self.commit_enabled = commit_enabled
        self.telemetry = telemetry or TelemetrySink.disabled()

        self.history = load_document(self.history_file, ImplementationHistory)

    # Paths

    def target_for(self, proposal: Proposal) -> Path:
        subdir = self.area_dirs.get(proposal.issue.area.value, self.default_dir)
        return self.source_dir / subdir / proposal.solution.filename

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.sandbox.root).as_posix()
        except ValueError:
            return str(path)

    # Implement

    def implement(self, proposal: Proposal, version: Version) -> Implementation:
        """Run one implementation attempt and append it to the history."""
        solution = proposal.solution
        target = self.target_for(proposal)
        record = Implementation(
            id=new_id("impl"),
            timestamp=utc_now_iso(),
            proposal_id=proposal.id,
            version=version.version,
            file=str(target),
            target=str(target),
        )

        safety = self.content_filter.is_code_safe(solution.code)
        if not safety.safe:
            self.telemetry.log(
                "implementer",
                "security_rejection",
                {"proposal_id": proposal.id, "issues": safety.issues, "file": solution.filename},
            )
            return self._finish(
                record,
                ImplementationStage.REJECTED,
                error="Security check failed: " + "; ".join(safety.issues),
            )

        sanitized = self.content_filter.sanitize_code(solution.code, solution.language)

        resolved = self.sandbox.resolve_path(target)
        if resolved is None:
            return self._finish(
                record,
                ImplementationStage.REJECTED,
                error=f"Target path not allowed by sandbox: {target}",
            )
        record.file = self._relative(resolved)
        record.target = str(resolved)
        record.stage = ImplementationStage.VALIDATED

        try:
            if resolved.exists():
                record.action = ImplementationAction.MODIFIED
                record.backup_path = str(self._backup(resolved, version.version))
                record.stage = ImplementationStage.BACKED_UP

            content = provenance.wrap(self._header(proposal, version), solution.language, sanitized)
            resolved.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(resolved, content)
            record.stage = ImplementationStage.WRITTEN
        except OSError as e:
            return self._finish(record, ImplementationStage.FAILED, error=str(e))

        record.git_commit = self._commit(resolved, self._commit_message(proposal, version, record.file))
        stage = ImplementationStage.NO_COMMIT if record.git_commit == NO_COMMIT else ImplementationStage.COMMITTED
        return self._finish(record, stage, success=True)

    def _finish(
        self,
        record: Implementation,
        stage: ImplementationStage,
        *,
        success: bool = False,
        error: str | None = None,
    ) -> Implementation:
        record.stage = stage
        record.success = success
        record.error = error

        self.history.implementations.append(record)
        if success:
            self.history.total_implemented += 1
        else:
            self.history.total_failed += 1
        self.history.last_implementation = record.timestamp
        save_document(self.history_file, self.history)

        event = "implementation_succeeded" if success else "implementation_failed"
        self.telemetry.log(
            "implementer",
            event,
            {
                "implementation_id": record.id,
                "version": record.version,
                "file": record.file,
                "stage": stage.value,
                "git_commit": record.git_commit,
                "error": redact_text(error or "", max_len=200) or None,
            },
        )
        return record

    def _backup(self, path: Path, version: str) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        backup = self.backup_dir / f"{version}-{int(time.time() * 1000)}-{path.name}"
        shutil.copyfile(path, backup)
        return backup

    @staticmethod
    def _header(proposal: Proposal, version: Version) -> list[str]:
        issue = proposal.issue
        solution = proposal.solution
        return [
            "Self-Generated Improvement",
            f"Version: {version.version}",
            f"Generated: {utc_now_iso()}",
            f"Proposal: {proposal.id}",
            "",
            f"Issue: {issue.description}",
            f"Area: {issue.area.value} | Severity: {issue.severity.value}",
            "",
            f"Solution: {solution.description}",
            f"Approach: {solution.approach}",
            f"Expected impact: {solution.estimated_impact}",
            "",
            "This file was written automatically. It is backed up before",
            "modification and can be rolled back from the implementation history.",
        ]

    @staticmethod
    def _commit_message(proposal: Proposal, version: Version, rel_file: str) -> str:
        return (
            f"autoevolve v{version.version}: {proposal.solution.description}\n\n"
            f"Type: {version.type.value}\n"
            f"Area: {proposal.issue.area.value}\n"
            f"Severity: {proposal.issue.severity.value}\n"
            f"Issue: {proposal.issue.description}\n"
            f"File: {rel_file}\n"
            f"Proposal: {proposal.id}\n"
        )

    def _commit(self, path: Path, message: str) -> str:
        """Stage and commit one file. Returns the short hash, or the no-commit sentinel."""
        if not self.commit_enabled or self.git is None:
            return NO_COMMIT
        try:
            self.git.add([str(path)])
            self.git.commit(message, [str(path)])
            return self.git.short_head()
        except GitError as e:
            self.telemetry.log(
                "implementer",
                "commit_failed",
                {"file": self._relative(path), "error": redact_text(str(e), max_len=200)},
            )
            return NO_COMMIT

    # Rollback

    def rollback(self, implementation_id: str) -> bool:
        """Restore the pre-implementation content of a modified file.

        Returns False without touching the tree when the record is unknown,
        has no backup, the backup is gone, or the target is no longer allowed.
        """
        original = self.get(implementation_id)
        if original is None:
            return self._rollback_failed(implementation_id, "Implementation not found")
        if not original.backup_path:
            return self._rollback_failed(implementation_id, "No backup recorded")

        backup = Path(original.backup_path)
        if not backup.is_file():
            return self._rollback_failed(implementation_id, f"Backup missing: {backup}")

        target = self.sandbox.resolve_path(original.target or original.file)
        if target is None:
            return self._rollback_failed(implementation_id, "Target path not allowed by sandbox")

        try:
            atomic_write(target, backup.read_bytes())
        except OSError as e:
            return self._rollback_failed(implementation_id, str(e))

        rel = self._relative(target)
        commit = self._commit(
            target,
            f"autoevolve rollback: restore {rel}\n\n"
            f"Rolled back implementation: {original.id}\n"
            f"Version: {original.version}\n"
            f"Backup: {backup.name}\n",
        )

        record = Implementation(
            id=new_id("rollback"),
            timestamp=utc_now_iso(),
            proposal_id=original.proposal_id,
            version=original.version,
            file=rel,
            target=str(target),
            action=ImplementationAction.ROLLED_BACK,
            stage=ImplementationStage.NO_COMMIT if commit == NO_COMMIT else ImplementationStage.COMMITTED,
            backup_path=str(backup),
            git_commit=commit,
            success=True,
            rollback_of=original.id,
        )
        self.history.implementations.append(record)
        self.history.last_implementation = record.timestamp
        save_document(self.history_file, self.history)

        self.telemetry.log(
            "implementer",
            "rollback_succeeded",
            {"implementation_id": original.id, "rollback_id": record.id, "file": rel, "git_commit": commit},
        )
        return True

    def _rollback_failed(self, implementation_id: str, reason: str) -> bool:
        self.telemetry.log(
            "implementer",
            "rollback_failed",
            {"implementation_id": implementation_id, "error": reason},
        )
        return False

    # Queries

    def get_history(self) -> list[Implementation]:
        return list(self.history.implementations)

    def get_recent(self, limit: int = 10) -> list[Implementation]:
        if limit <= 0:
            return []
        return list(reversed(self.history.implementations[-limit:]))

    def get(self, implementation_id: str) -> Implementation | None:
        return next((i for i in self.history.implementations if i.id == implementation_id), None)

    def stats(self) -> dict[str, Any]:
        attempts = self.history.total_implemented + self.history.total_failed
        return {
            "total_implemented": self.history.total_implemented,
            "total_failed": self.history.total_failed,
            "success_rate": (self.history.total_implemented / attempts) if attempts else 0.0,
            "rollbacks": sum(
                1 for i in self.history.implementations if i.action is ImplementationAction.ROLLED_BACK
            ),
            "last_implementation": self.history.last_implementation,
        }

    def get_summary(self) -> str:
        s = self.stats()
        lines = [
            "Auto-Implementation",
            f"  Implemented:  {s['total_implemented']}",
            f"  Failed:       {s['total_failed']}",
            f"  Success rate: {s['success_rate']:.0%}",
            f"  Rollbacks:    {s['rollbacks']}",
            f"  Last:         {s['last_implementation'] or 'never'}",
        ]
        recent = self.get_recent(5)
        if recent:
            lines.append("  Recent:")
            lines.extend(f"    {'ok  ' if i.success else 'fail'} v{i.version} {i.file}" for i in recent)
        return "\n".join(lines) + "\n"

    @staticmethod
    def format_implementation(impl: Implementation) -> str:
        out = (
            f"{'OK' if impl.success else 'FAILED'} {impl.id}\n"
            f"  Version:  {impl.version}\n"
            f"  File:     {impl.file}\n"
            f"  Action:   {impl.action.value}\n"
            f"  Stage:    {impl.stage.value}\n"
            f"  Time:     {impl.timestamp}\n"
        )
        if impl.git_commit:
            out += f"  Commit:   {impl.git_commit}\n"
        if impl.backup_path:
            out += f"  Backup:   {impl.backup_path}\n"
        if impl.rollback_of:
            out += f"  Reverts:  {impl.rollback_of}\n"
        if impl.error:
            out += f"  Error:    {impl.error}\n"
        return out
