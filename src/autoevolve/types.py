"""Core data types for the autoevolve mutation pipeline."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class IssueArea(str, Enum):
    DECISION_MAKING = "decision_making"
    LEARNING = "learning"
    EFFICIENCY = "efficiency"
    MEMORY = "memory"
    ENGAGEMENT = "engagement"
    OPTIMIZATION = "optimization"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class ProposalStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    IMPLEMENTED = "implemented"
    REJECTED = "rejected"


class VersionType(str, Enum):
    FEATURE = "feature"
    IMPROVEMENT = "improvement"
    OPTIMIZATION = "optimization"
    BUGFIX = "bugfix"


class VersionStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    IMPLEMENTED = "implemented"
    REVERTED = "reverted"


class ChangeAction(str, Enum):
    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"


class ImplementationAction(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    ROLLED_BACK = "rolled_back"


class ImplementationStage(str, Enum):
    """Furthest point an implementation attempt reached."""

    PROPOSED = "proposed"
    VALIDATED = "validated"
    BACKED_UP = "backed_up"
    WRITTEN = "written"
    COMMITTED = "committed"
    NO_COMMIT = "no_commit"
    REJECTED = "rejected"
    FAILED = "failed"


class PatchType(str, Enum):
    CONFIG = "config"
    DATA = "data"
    BEHAVIOR = "behavior"


class PatchAction(str, Enum):
    REPLACE = "replace"
    APPEND = "append"
    MODIFY_JSON = "modify_json"


class ViolationReason(str, Enum):
    OUTSIDE_SANDBOX = "outside_sandbox"
    BLOCKED_PATH = "blocked_path"
    BLOCKED_EXTENSION = "blocked_extension"
    INVALID_PATH = "invalid_path"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    """Time-ordered id with a short random suffix, e.g. ``impl-1717000000000-3fa2``."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:4]}"


@dataclass
class Issue:
    """A detected concern produced by the issue source."""

    area: IssueArea
    description: str
    severity: Severity
    metrics: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Accept raw strings from JSON sources.
        self.area = IssueArea(self.area)
        self.severity = Severity(self.severity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "area": self.area.value,
            "description": self.description,
            "severity": self.severity.value,
            "metrics": dict(self.metrics),
        }


@dataclass
class Solution:
    """Proposed code addressing one issue."""

    description: str
    approach: str
    code: str
    language: str
    filename: str
    estimated_impact: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "approach": self.approach,
            "code": self.code,
            "language": self.language,
            "filename": self.filename,
            "estimated_impact": self.estimated_impact,
        }


@dataclass
class Proposal:
    """An issue + solution pair awaiting a version."""

    issue: Issue
    solution: Solution
    id: str = field(default_factory=lambda: new_id("improvement"))
    created_at: str = field(default_factory=utc_now_iso)
    status: ProposalStatus = ProposalStatus.PROPOSED


@dataclass
class SandboxViolation:
    path: str
    timestamp: str
    reason: ViolationReason


@dataclass
class SafetyReport:
    """Result of the heuristic code-safety scan."""

    safe: bool
    issues: list[str] = field(default_factory=list)


@dataclass
class UpdateCheck:
    """Read-only view of how far local HEAD is behind the remote."""

    has_updates: bool
    behind: int = 0
    commits: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class UpdateResult:
    """Outcome of a pull/rebuild/restart attempt."""

    updated: bool
    previous_revision: str = ""
    new_revision: str = ""
    changes: list[str] = field(default_factory=list)
    reinstalled: bool = False
    rebuilt: bool = False
    restarted: bool = False
    skipped: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "updated": self.updated,
            "previous_revision": self.previous_revision,
            "new_revision": self.new_revision,
            "changes": list(self.changes),
            "reinstalled": self.reinstalled,
            "rebuilt": self.rebuilt,
            "restarted": self.restarted,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class CycleReport:
    """Per-item outcome of one improvement cycle."""

    run_id: str
    status: str
    issues_found: int = 0
    proposals_generated: int = 0
    versions_created: list[str] = field(default_factory=list)
    implemented: int = 0
    failed: int = 0
    commits: list[str] = field(default_factory=list)
    items: list[dict[str, Any]] = field(default_factory=list)
