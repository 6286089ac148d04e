"""Global pytest configuration and shared fixtures for hermetic test runs."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import pytest

from autoevolve.types import Issue, Proposal, Solution

SAFE_CODE = """def cached(fn):
    store = {}

    def wrapper(key):
        if key not in store:
            store[key] = fn(key)
        return store[key]

    return wrapper
"""


def pytest_sessionstart(session):  # noqa: ARG001
    # Tests must never notify a real webhook or pick up an operator's overrides.
    for key in list(os.environ):
        if key.startswith("AUTOEVOLVE_"):
            del os.environ[key]


def git(cwd: Path, *args: str) -> str:
    res = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return res.stdout


def init_repo(path: Path) -> Path:
    """Initialise a git repo on branch `main` with a test identity."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "user.name", "Test User")
    return path


def commit_all(path: Path, message: str) -> None:
    git(path, "add", ".")
    git(path, "commit", "-m", message)


@pytest.fixture
def git_repo(tmp_path):
    """Create a temporary git repository with one commit."""
    repo_path = init_repo(tmp_path / "repo")
    (repo_path / "README.md").write_text("# service\n")
    commit_all(repo_path, "Initial commit")
    return repo_path


@pytest.fixture
def make_proposal():
    """Factory for proposals with sensible defaults."""

    def _make(
        area: str = "efficiency",
        description: str = "Feed responses are slow",
        severity: str = "medium",
        code: str = SAFE_CODE,
        filename: str = "cache_utility.py",
        language: str = "python",
    ) -> Proposal:
        issue = Issue(area=area, description=description, severity=severity, metrics={"latency_ms": 900.0})
        solution = Solution(
            description="Memoize feed lookups",
            approach="Wrap the lookup in a small in-process cache",
            code=code,
            language=language,
            filename=filename,
            estimated_impact="Fewer repeated fetches",
        )
        return Proposal(issue=issue, solution=solution)

    return _make
