"""Git primitives used by the implementer and the self-updater.

Every primitive runs `git` with an argv list (no shell) inside the repository
root and raises GitError on a non-zero exit. Callers decide whether a failure
is fatal.
"""

from __future__ import annotations

import subprocess
from pathlib import Path


class GitError(RuntimeError):
    pass


def _run(root: Path, args: list[str], timeout_s: int | None = None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(args, cwd=str(root), text=True, capture_output=True, timeout=timeout_s)


def _check(root: Path, args: list[str], timeout_s: int | None = None) -> str:
    try:
        res = _run(root, args, timeout_s)
    except FileNotFoundError as e:
        raise GitError("git executable not found on PATH") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"{' '.join(args[:3])} timed out after {timeout_s}s") from e
    if res.returncode != 0:
        detail = (res.stderr or res.stdout).strip()
        raise GitError(f"{' '.join(args[:3])} failed: {detail}")
    return res.stdout


def git_add(root: Path, paths: list[str]) -> None:
    if not paths:
        raise GitError("git add requires at least one path")
    _check(root, ["git", "add", "--", *paths])


def git_commit(
    root: Path,
    message: str,
    author_name: str = "autoevolve",
    author_email: str = "autoevolve@bot.local",
    paths: list[str] | None = None,
) -> None:
    # Identity is passed per-invocation so the repository config is never touched.
    # With paths, only those files are committed; the rest of the index stays staged.
    _check(
        root,
        [
            "git",
            "-c",
            f"user.name={author_name}",
            "-c",
            f"user.email={author_email}",
            "commit",
            "-m",
            message,
            *(["--", *paths] if paths else []),
        ],
    )


def git_short_head(root: Path) -> str:
    return _check(root, ["git", "rev-parse", "--short", "HEAD"]).strip()


def git_last_commit_files(root: Path) -> list[str]:
    """Files changed by the most recent commit (`git diff HEAD~1 --name-only`)."""
    out = _check(root, ["git", "diff", "HEAD~1", "--name-only"])
    return [ln.strip() for ln in out.splitlines() if ln.strip()]


def git_fetch(root: Path, remote: str = "origin", timeout_s: int | None = 120) -> None:
    _check(root, ["git", "fetch", remote], timeout_s)


def git_pull(root: Path, remote: str = "origin", branch: str = "main", timeout_s: int | None = 300) -> str:
    return _check(root, ["git", "pull", "--ff-only", remote, branch], timeout_s)


def git_rev_list_count(root: Path, rev_range: str) -> int:
    out = _check(root, ["git", "rev-list", rev_range, "--count"]).strip()
    try:
        return int(out)
    except ValueError as e:
        raise GitError(f"unexpected rev-list output: {out!r}") from e


def git_log_oneline(root: Path, rev_range: str) -> list[str]:
    out = _check(root, ["git", "log", rev_range, "--oneline"])
    return [ln for ln in out.splitlines() if ln.strip()]


def git_stash(root: Path) -> bool:
    """Stash local changes. Returns False when nothing was stashed or stash failed."""
    try:
        out = _check(root, ["git", "stash"])
    except GitError:
        return False
    return "No local changes" not in out


class GitClient:
    """Version-control collaborator bound to one working tree.

    Anything exposing these methods can stand in for git (tests use fakes).
    """

    def __init__(
        self,
        root: Path | str,
        author_name: str = "autoevolve",
        author_email: str = "autoevolve@bot.local",
    ):
        self.root = Path(root)
        self.author_name = author_name
        self.author_email = author_email

    def add(self, paths: list[str]) -> None:
        git_add(self.root, paths)

    def commit(self, message: str, paths: list[str] | None = None) -> None:
        git_commit(self.root, message, self.author_name, self.author_email, paths)

    def short_head(self) -> str:
        return git_short_head(self.root)

    def last_commit_files(self) -> list[str]:
        return git_last_commit_files(self.root)

    def fetch(self, remote: str) -> None:
        git_fetch(self.root, remote)

    def pull(self, remote: str, branch: str) -> str:
        return git_pull(self.root, remote, branch)

    def rev_list_count(self, rev_range: str) -> int:
        return git_rev_list_count(self.root, rev_range)

    def log_oneline(self, rev_range: str) -> list[str]:
        return git_log_oneline(self.root, rev_range)

    def stash(self) -> bool:
        return git_stash(self.root)
