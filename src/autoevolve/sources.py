"""Issue/solution sources feeding the improvement cycle.

The pipeline does not decide what to fix. A source reports issues and, for each
one, may produce a candidate solution.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .records import LedgerCorruptError, atomic_write
from .types import Issue, Solution


class IssueSource(ABC):
    """Base class for issue/solution producers."""

    @abstractmethod
    async def analyze_performance(self) -> list[Issue]:
        """Return the issues detected since the last call."""

    @abstractmethod
    async def generate_improvement(self, issue: Issue) -> Solution | None:
        """Return a candidate solution for `issue`, or None to skip it."""


class StaticIssueSource(IssueSource):
    """Fixed issue/solution pairs. Useful for tests and one-off runs."""

    def __init__(self, items: list[tuple[Issue, Solution | None]]):
        self.items = list(items)
        self._solutions: dict[int, Solution | None] = {}

    async def analyze_performance(self) -> list[Issue]:
        self._solutions = {id(issue): solution for issue, solution in self.items}
        return [issue for issue, _ in self.items]

    async def generate_improvement(self, issue: Issue) -> Solution | None:
        return self._solutions.get(id(issue))


class QueuedIssueSource(IssueSource):
    """Drains a JSON queue file written by operators or other processes.

    Queue format:
        [{"issue": {area, description, severity, metrics?},
          "solution": {description, approach, code, language, filename, estimated_impact?} | null}]

    `analyze_performance` consumes the whole queue; entries that fail to parse
    are kept in the file for inspection.
    """

    def __init__(self, queue_file: Path | str):
        self.queue_file = Path(queue_file)
        self._solutions: dict[int, Solution | None] = {}

    def enqueue(self, issue: Issue, solution: Solution | None) -> None:
        entries = self._read()
        entries.append({"issue": issue.to_dict(), "solution": solution.to_dict() if solution else None})
        self._write(entries)

    def pending(self) -> int:
        return len(self._read())

    async def analyze_performance(self) -> list[Issue]:
        entries = self._read()
        if not entries:
            return []

        issues: list[Issue] = []
        rejected: list[Any] = []
        self._solutions = {}
        for entry in entries:
            try:
                issue = Issue(**entry["issue"])
                raw = entry.get("solution")
                solution = Solution(**raw) if raw else None
            except (AttributeError, KeyError, TypeError, ValueError):
                rejected.append(entry)
                continue
            self._solutions[id(issue)] = solution
            issues.append(issue)

        self._write(rejected)
        return issues

    async def generate_improvement(self, issue: Issue) -> Solution | None:
        return self._solutions.pop(id(issue), None)

    def _read(self) -> list[Any]:
        if not self.queue_file.exists():
            return []
        try:
            data = json.loads(self.queue_file.read_text(encoding="utf-8") or "[]")
        except json.JSONDecodeError as e:
            raise LedgerCorruptError(f"{self.queue_file}: {e}") from e
        if not isinstance(data, list):
            raise LedgerCorruptError(f"{self.queue_file}: expected a JSON list")
        return data

    def _write(self, entries: list[Any]) -> None:
        atomic_write(self.queue_file, json.dumps(entries, indent=2, ensure_ascii=False) + "\n")
