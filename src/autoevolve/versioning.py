"""Version ledger: semantic version assignment, changelog and code snapshots.

Each proposal that reaches implementation gets a Version record. Records are
append-only; only their status and metrics change afterwards. CHANGELOG.md is
rendered from the records on every save and is never parsed back.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from . import provenance
from .records import ChangeEntry, Version, VersionMetrics, VersionStore, load_document, save_document
from .security.filter import ContentFilter
from .telemetry import TelemetrySink
from .types import ChangeAction, Proposal, Severity, VersionStatus, VersionType, utc_now_iso

CHANGELOG_INTRO = """All notable self-improvements and changes are documented here.

The format is based on [Keep a Changelog](https://keepachangelog.com/).
"""


def parse_semver(version: str) -> tuple[int, int, int]:
    parts = version.strip().lstrip("v").split(".")
    if len(parts) != 3:
        raise ValueError(f"Not a MAJOR.MINOR.PATCH version: {version!r}")
    major, minor, patch = (int(p) for p in parts)
    return major, minor, patch


def bump(version: str, vtype: VersionType) -> str:
    major, minor, patch = parse_semver(version)
    if vtype is VersionType.FEATURE:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


def determine_type(proposal: Proposal) -> VersionType:
    """Classify a proposal from its issue's area, description and severity."""
    area = proposal.issue.area.value
    desc = proposal.issue.description.lower()

    if "efficiency" in area or "faster" in desc or "performance" in desc or "efficiency" in desc:
        return VersionType.OPTIMIZATION
    if "bug" in area or "bug" in desc or "fix" in desc or "error" in desc:
        return VersionType.BUGFIX
    if proposal.issue.severity is Severity.HIGH:
        return VersionType.FEATURE
    return VersionType.IMPROVEMENT


class VersionLedger:
    """Persists Version records under `versions_dir`.

    Layout:
        versions.json           ledger document
        CHANGELOG.md            rendered changelog, newest first
        code/v<ver>/<file>      immutable code snapshot
        code/v<ver>/meta.json   snapshot metadata
    """

    def __init__(
        self,
        versions_dir: Path | str,
        initial_version: str = "1.0.0",
        changelog_title: str = "Changelog",
        telemetry: TelemetrySink | None = None,
        content_filter: ContentFilter | None = None,
    ):
        self.versions_dir = Path(versions_dir)
        self.versions_file = self.versions_dir / "versions.json"
        self.changelog_file = self.versions_dir / "CHANGELOG.md"
        self.code_dir = self.versions_dir / "code"
        self.changelog_title = changelog_title
        self.telemetry = telemetry or TelemetrySink.disabled()
        self.content_filter = content_filter

        self.versions_dir.mkdir(parents=True, exist_ok=True)
        fresh = not self.versions_file.exists()
        self.store = load_document(self.versions_file, VersionStore)
        if fresh:
            self.store.current_version = initial_version
        if not self.changelog_file.exists():
            self._write_changelog()

    def _save(self) -> None:
        save_document(self.versions_file, self.store)
        self._write_changelog()

    def _snapshot_versions(self) -> list[str]:
        if not self.code_dir.is_dir():
            return []
        found = []
        for entry in self.code_dir.iterdir():
            if not entry.is_dir() or not entry.name.startswith("v"):
                continue
            try:
                parse_semver(entry.name)
            except ValueError:
                continue
            found.append(entry.name[1:])
        return found

    def _base_version(self) -> str:
        """Highest of the recorded current version, every ledger entry and every snapshot.

        Guards monotonicity when versions.json has been hand-edited or removed
        while the code snapshots are still on disk.
        """
        candidates = [self.store.current_version] + [v.version for v in self.store.versions]
        candidates += self._snapshot_versions()
        return max(candidates, key=parse_semver)

    def next_version(self, vtype: VersionType) -> str:
        return bump(self._base_version(), vtype)

    def create_version(self, proposal: Proposal) -> Version:
        vtype = determine_type(proposal)
        version = self.next_version(vtype)
        now = utc_now_iso()

        changes = [
            ChangeEntry(
                file=proposal.solution.filename,
                action=ChangeAction.ADD,
                description=proposal.solution.description,
                lines_added=len(proposal.solution.code.split("\n")),
            )
        ]

        code_file = self._save_snapshot(version, proposal, now)
        record = Version(
            id=f"v{version}-{int(datetime.fromisoformat(now).timestamp() * 1000)}",
            version=version,
            created_at=now,
            proposal_id=proposal.id,
            type=vtype,
            summary=proposal.solution.description,
            changes=changes,
            status=VersionStatus.PROPOSED,
            code_file=str(code_file),
        )

        self.store.versions.append(record)
        self.store.current_version = version
        self.store.total_changes += 1
        self.store.last_update = now
        self._save()

        self.telemetry.log(
            "versioning",
            "version_created",
            {"version": version, "type": vtype.value, "proposal_id": proposal.id},
        )
        return record

    def _save_snapshot(self, version: str, proposal: Proposal, created_at: str) -> Path:
        snapshot_dir = self.code_dir / f"v{version}"
        snapshot_dir.mkdir(parents=True, exist_ok=True)
        filepath = snapshot_dir / Path(proposal.solution.filename).name

        issue = proposal.issue
        solution = proposal.solution
        header = [
            "Self-Generated Code",
            "===================",
            f"Version: {version}",
            f"Generated: {created_at}",
            f"Proposal ID: {proposal.id}",
            "",
            "Issue Addressed:",
            f"Area: {issue.area.value}",
            f"Severity: {issue.severity.value}",
            issue.description,
            "",
            "Solution Description:",
            solution.description,
            "",
            "Approach:",
            solution.approach,
            "",
            "Expected Impact:",
            solution.estimated_impact,
        ]
        code = solution.code
        if self.content_filter is not None:
            code = self.content_filter.sanitize_code(code, solution.language)
        content = provenance.wrap(header, solution.language, code)

        # Snapshots are immutable: mode "x" refuses to overwrite.
        with open(filepath, "x", encoding="utf-8") as f:
            f.write(content)

        meta = {
            "version": version,
            "proposal": proposal.id,
            "issue": issue.to_dict(),
            "solution": {
                "description": solution.description,
                "approach": solution.approach,
                "impact": solution.estimated_impact,
                "filename": solution.filename,
                "language": solution.language,
            },
            "created_at": created_at,
        }
        with open(snapshot_dir / "meta.json", "x", encoding="utf-8") as f:
            f.write(json.dumps(meta, indent=2) + "\n")

        return filepath

    def update_status(
        self,
        version_id: str,
        status: VersionStatus,
        metrics: dict[str, Any] | VersionMetrics | None = None,
    ) -> bool:
        record = self.get(version_id)
        if record is None:
            return False

        record.status = VersionStatus(status)
        if metrics is not None:
            record.metrics = metrics if isinstance(metrics, VersionMetrics) else VersionMetrics(**metrics)
        self.store.last_update = utc_now_iso()
        self._save()

        self.telemetry.log(
            "versioning",
            "version_status_updated",
            {"version_id": version_id, "status": record.status.value},
        )
        return True

    def get(self, version_id: str) -> Version | None:
        return next((v for v in self.store.versions if v.id == version_id), None)

    def find_by_version(self, version: str) -> Version | None:
        return next((v for v in self.store.versions if v.version == version.lstrip("v")), None)

    def get_all(self) -> list[Version]:
        return list(self.store.versions)

    def get_recent(self, limit: int = 10) -> list[Version]:
        if limit <= 0:
            return []
        return list(reversed(self.store.versions[-limit:]))

    def get_by_status(self, status: VersionStatus) -> list[Version]:
        status = VersionStatus(status)
        return [v for v in self.store.versions if v.status is status]

    def get_current_version(self) -> str:
        return self.store.current_version

    def get_changelog(self) -> str:
        if self.changelog_file.exists():
            return self.changelog_file.read_text(encoding="utf-8")
        return "No changelog yet."

    # Rendering

    def render_changelog(self) -> str:
        parts = [f"# {self.changelog_title}\n", "\n", CHANGELOG_INTRO, "\n---\n"]
        for record in reversed(self.store.versions):
            parts.append("\n")
            parts.append(self._changelog_entry(record))
        return "".join(parts)

    @staticmethod
    def _changelog_entry(v: Version) -> str:
        date = v.created_at.split("T", 1)[0]
        changes = "\n".join(
            f"- `{c.file}`: {c.description} (+{c.lines_added} lines)" for c in v.changes
        )
        return (
            f"## [{v.version}] - {date}\n\n"
            f"**{v.type.value.upper()}**: {v.summary}\n\n"
            f"### Changes\n{changes}\n\n"
            f"### Details\n"
            f"- **Proposal ID**: `{v.proposal_id}`\n"
            f"- **Status**: {v.status.value}\n"
            f"- **Code**: `{v.code_file}`\n\n"
            f"---\n"
        )

    def _write_changelog(self) -> None:
        self.changelog_file.write_text(self.render_changelog(), encoding="utf-8")

    def get_summary(self) -> str:
        proposed = len(self.get_by_status(VersionStatus.PROPOSED))
        implemented = len(self.get_by_status(VersionStatus.IMPLEMENTED))
        reverted = len(self.get_by_status(VersionStatus.REVERTED))
        return (
            "Version Control\n"
            f"  Current version: {self.store.current_version}\n"
            f"  Total changes:   {self.store.total_changes}\n"
            f"  Last update:     {self.store.last_update or 'never'}\n"
            f"  Proposed: {proposed}  Implemented: {implemented}  Reverted: {reverted}\n"
        )

    @staticmethod
    def format_version(v: Version) -> str:
        changes = "\n".join(f"  - {c.file}: {c.description}" for c in v.changes)
        return (
            f"Version {v.version} [{v.type.value}]\n"
            f"ID: {v.id}\n"
            f"Status: {v.status.value}\n"
            f"Created: {v.created_at}\n"
            f"\nSummary:\n  {v.summary}\n"
            f"\nChanges:\n{changes}\n"
            f"\nCode Location:\n  {v.code_file}\n"
        )

    def get_diff(self, version_a: str, version_b: str) -> str:
        """Files introduced in `version_b` that `version_a` does not have, plus b's summary."""
        a = self.find_by_version(version_a)
        b = self.find_by_version(version_b)
        if a is None or b is None:
            return "Version not found"

        a_files = {c.file for c in a.changes}
        new_changes = [c for c in b.changes if c.file not in a_files]

        out = f"Diff: {a.version} -> {b.version}\n\n"
        if new_changes:
            out += "New files:\n"
            for c in new_changes:
                out += f"+ {c.file}: {c.description}\n"
        out += f"\nVersion {b.version} details:\n"
        out += f"Type: {b.type.value}\n"
        out += f"Summary: {b.summary}\n"
        return out
