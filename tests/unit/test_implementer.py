"""Unit tests for the auto-implementer."""

from __future__ import annotations

import json
import os

import pytest
from conftest import git

from autoevolve.git_ops import GitClient, GitError
from autoevolve.implementer import AutoImplementer
from autoevolve.records import NO_COMMIT
from autoevolve.security.filter import ContentFilter
from autoevolve.security.sandbox import SandboxGuard
from autoevolve.telemetry import TelemetrySink, read_events
from autoevolve.types import ImplementationAction, ImplementationStage, ViolationReason
from autoevolve.versioning import VersionLedger

UNSAFE_CODE = 'data = open("/etc/passwd").read()\n'


def commit_count(repo) -> int:
    return int(git(repo, "rev-list", "--count", "HEAD").strip())


@pytest.fixture
def telemetry(tmp_path):
    return TelemetrySink(enabled=True, path=tmp_path / "state" / "telemetry.jsonl")


@pytest.fixture
def ledger(tmp_path):
    return VersionLedger(tmp_path / "state" / "versions")


@pytest.fixture
def make_implementer(git_repo, tmp_path, telemetry):
    def _make(git_client="real", commit_enabled=True):
        sandbox = SandboxGuard(git_repo, telemetry=telemetry)
        client = GitClient(git_repo) if git_client == "real" else git_client
        return AutoImplementer(
            sandbox,
            ContentFilter(git_repo),
            source_dir=git_repo / "src",
            history_file=tmp_path / "state" / "implementations.json",
            backup_dir=tmp_path / "state" / "backups",
            git=client,
            commit_enabled=commit_enabled,
            telemetry=telemetry,
        )

    return _make


class FailingGit:
    def add(self, paths):
        raise GitError("git add failed: index.lock exists")

    def commit(self, message, paths=None):
        raise AssertionError("commit must not be reached")

    def short_head(self):
        raise AssertionError("short_head must not be reached")


class TestImplement:
    def test_creates_and_commits(self, make_implementer, ledger, make_proposal, git_repo):
        implementer = make_implementer()
        proposal = make_proposal()
        version = ledger.create_version(proposal)

        impl = implementer.implement(proposal, version)

        assert impl.success is True
        assert impl.stage == ImplementationStage.COMMITTED
        assert impl.action == ImplementationAction.CREATED
        assert impl.file == "src/utils/cache_utility.py"
        assert impl.git_commit == git(git_repo, "rev-parse", "--short", "HEAD").strip()

        written = (git_repo / "src" / "utils" / "cache_utility.py").read_text()
        assert written.startswith("# Self-Generated Improvement\n")
        assert "# Version: 1.0.1" in written
        assert written.endswith(proposal.solution.code)

        subject = git(git_repo, "log", "-1", "--format=%s").strip()
        assert subject == "autoevolve v1.0.1: Memoize feed lookups"
        assert git(git_repo, "status", "--porcelain").strip() == ""

    def test_commit_leaves_unrelated_staged_files_alone(self, make_implementer, ledger, make_proposal, git_repo):
        (git_repo / "operator.txt").write_text("work in progress\n")
        git(git_repo, "add", "operator.txt")

        proposal = make_proposal()
        impl = make_implementer().implement(proposal, ledger.create_version(proposal))

        assert impl.stage == ImplementationStage.COMMITTED
        assert git(git_repo, "show", "--name-only", "--format=", "HEAD").split() == ["src/utils/cache_utility.py"]
        assert git(git_repo, "diff", "--cached", "--name-only").split() == ["operator.txt"]

    def test_area_mapping_and_default_dir(self, make_implementer, make_proposal):
        implementer = make_implementer()
        assert implementer.target_for(make_proposal(area="learning")).parent.name == "evolution"
        implementer.area_dirs.pop("memory")
        assert implementer.target_for(make_proposal(area="memory")).parent.name == "improvements"

    def test_unsafe_code_is_rejected(self, make_implementer, ledger, make_proposal, git_repo, telemetry):
        implementer = make_implementer()
        proposal = make_proposal(code=UNSAFE_CODE)
        before = commit_count(git_repo)

        impl = implementer.implement(proposal, ledger.create_version(proposal))

        assert impl.success is False
        assert impl.stage == ImplementationStage.REJECTED
        assert "outside sandbox" in impl.error
        assert not (git_repo / "src").exists()
        assert commit_count(git_repo) == before
        assert "security_rejection" in [e["type"] for e in read_events(telemetry.path)]

    def test_blocked_filename_is_rejected(self, make_implementer, ledger, make_proposal, git_repo):
        implementer = make_implementer()
        proposal = make_proposal(filename=".env")
        before = commit_count(git_repo)

        impl = implementer.implement(proposal, ledger.create_version(proposal))

        assert impl.stage == ImplementationStage.REJECTED
        assert "not allowed by sandbox" in impl.error
        assert not (git_repo / "src" / "utils" / ".env").exists()
        assert commit_count(git_repo) == before
        assert implementer.sandbox.violations[0].reason == ViolationReason.BLOCKED_PATH

    def test_traversal_is_rejected(self, make_implementer, ledger, make_proposal, tmp_path):
        implementer = make_implementer()
        proposal = make_proposal(filename="../../../outside.py")

        impl = implementer.implement(proposal, ledger.create_version(proposal))

        assert impl.stage == ImplementationStage.REJECTED
        assert not (tmp_path / "outside.py").exists()
        assert implementer.sandbox.violations[0].reason == ViolationReason.OUTSIDE_SANDBOX

    def test_secrets_are_sanitized_before_write(self, make_implementer, ledger, make_proposal, git_repo):
        implementer = make_implementer()
        code = 'API_TOKEN = "abcdefghijklmnopqrstuvwxyz012345"\n'
        proposal = make_proposal(code=code)

        impl = implementer.implement(proposal, ledger.create_version(proposal))

        written = (git_repo / impl.file).read_text()
        assert impl.success
        assert "abcdefghijklmnopqrstuvwxyz012345" not in written

    def test_commit_failure_still_succeeds(self, make_implementer, ledger, make_proposal, git_repo, telemetry):
        implementer = make_implementer(git_client=FailingGit())
        proposal = make_proposal()

        impl = implementer.implement(proposal, ledger.create_version(proposal))

        assert impl.success is True
        assert impl.stage == ImplementationStage.NO_COMMIT
        assert impl.git_commit == NO_COMMIT
        assert (git_repo / impl.file).exists()
        failures = [e for e in read_events(telemetry.path) if e["type"] == "commit_failed"]
        assert "index.lock" in failures[0]["data"]["error"]

    def test_commits_disabled(self, make_implementer, ledger, make_proposal, git_repo):
        implementer = make_implementer(commit_enabled=False)
        before = commit_count(git_repo)
        proposal = make_proposal()

        impl = implementer.implement(proposal, ledger.create_version(proposal))

        assert impl.git_commit == NO_COMMIT
        assert commit_count(git_repo) == before

    def test_history_is_persisted(self, make_implementer, ledger, make_proposal, tmp_path):
        implementer = make_implementer()
        ok = make_proposal()
        bad = make_proposal(code=UNSAFE_CODE, filename="bad.py")
        implementer.implement(ok, ledger.create_version(ok))
        implementer.implement(bad, ledger.create_version(bad))

        data = json.loads((tmp_path / "state" / "implementations.json").read_text())
        assert data["total_implemented"] == 1
        assert data["total_failed"] == 1
        assert [i["stage"] for i in data["implementations"]] == ["committed", "rejected"]

        reopened = make_implementer()
        stats = reopened.stats()
        assert stats["total_implemented"] == 1
        assert stats["success_rate"] == 0.5
        assert reopened.get_recent(1)[0].stage == ImplementationStage.REJECTED


class TestRollback:
    def test_modify_then_rollback_restores_bytes(self, make_implementer, ledger, make_proposal, git_repo):
        implementer = make_implementer()
        first = make_proposal()
        implementer.implement(first, ledger.create_version(first))
        target = git_repo / "src" / "utils" / "cache_utility.py"
        original = target.read_bytes()

        second = make_proposal(code="def cached(fn):\n    return fn\n")
        impl = implementer.implement(second, ledger.create_version(second))

        assert impl.action == ImplementationAction.MODIFIED
        assert impl.backup_path is not None
        assert open(impl.backup_path, "rb").read() == original
        assert target.read_bytes() != original

        assert implementer.rollback(impl.id) is True
        assert target.read_bytes() == original

        entry = implementer.get_recent(1)[0]
        assert entry.action == ImplementationAction.ROLLED_BACK
        assert entry.rollback_of == impl.id
        assert entry.id.startswith("rollback-")
        assert git(git_repo, "log", "-1", "--format=%s").startswith("autoevolve rollback: restore src/utils/")
        assert implementer.stats()["rollbacks"] == 1

    def test_rollback_of_created_file_fails(self, make_implementer, ledger, make_proposal, telemetry):
        implementer = make_implementer()
        proposal = make_proposal()
        impl = implementer.implement(proposal, ledger.create_version(proposal))

        assert implementer.rollback(impl.id) is False
        events = [e for e in read_events(telemetry.path) if e["type"] == "rollback_failed"]
        assert events[0]["data"]["error"] == "No backup recorded"

    def test_rollback_unknown_id(self, make_implementer):
        assert make_implementer().rollback("impl-0-0000") is False

    def test_rollback_with_missing_backup(self, make_implementer, ledger, make_proposal, git_repo):
        implementer = make_implementer()
        first = make_proposal()
        implementer.implement(first, ledger.create_version(first))
        second = make_proposal(code="x = 1\n")
        impl = implementer.implement(second, ledger.create_version(second))
        modified = (git_repo / impl.file).read_bytes()

        os.unlink(impl.backup_path)

        assert implementer.rollback(impl.id) is False
        assert (git_repo / impl.file).read_bytes() == modified


def test_format_and_summary(make_implementer, ledger, make_proposal):
    implementer = make_implementer(commit_enabled=False)
    proposal = make_proposal()
    impl = implementer.implement(proposal, ledger.create_version(proposal))

    text = AutoImplementer.format_implementation(impl)
    assert text.startswith(f"OK {impl.id}\n")
    assert "Stage:    no_commit" in text
    assert "Implemented:  1" in implementer.get_summary()
