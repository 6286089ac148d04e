"""Persisted ledger records.

The three documents (version ledger, implementation history, patch ledger) are
flat JSON files that operators may hand-edit between runs. Models allow extra
fields so additions survive a load/save round trip.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .types import (
    ChangeAction,
    ImplementationAction,
    ImplementationStage,
    PatchAction,
    PatchType,
    VersionStatus,
    VersionType,
)

NO_COMMIT = "no-commit"


class LedgerCorruptError(RuntimeError):
    """A persisted document exists but cannot be parsed or validated."""


class Record(BaseModel):
    model_config = ConfigDict(extra="allow")


class ChangeEntry(Record):
    file: str
    action: ChangeAction
    description: str
    lines_added: int = 0
    lines_removed: int = 0


class VersionMetrics(Record):
    before: dict[str, float] | None = None
    after: dict[str, float] | None = None


class Version(Record):
    id: str
    version: str
    created_at: str
    proposal_id: str
    type: VersionType
    summary: str
    changes: list[ChangeEntry] = Field(default_factory=list)
    status: VersionStatus = VersionStatus.PROPOSED
    code_file: str = ""
    metrics: VersionMetrics | None = None


class VersionStore(Record):
    current_version: str = "1.0.0"
    versions: list[Version] = Field(default_factory=list)
    total_changes: int = 0
    last_update: str | None = None


class Implementation(Record):
    id: str
    timestamp: str
    proposal_id: str
    version: str
    file: str
    target: str = ""
    action: ImplementationAction = ImplementationAction.CREATED
    stage: ImplementationStage = ImplementationStage.PROPOSED
    backup_path: str | None = None
    git_commit: str | None = None
    success: bool = False
    error: str | None = None
    rollback_of: str | None = None


class ImplementationHistory(Record):
    implementations: list[Implementation] = Field(default_factory=list)
    total_implemented: int = 0
    total_failed: int = 0
    last_implementation: str | None = None


class Patch(Record):
    id: str
    type: PatchType
    description: str
    target: str
    action: PatchAction
    old_value: str | None = None
    new_value: str
    created_at: str | None = None
    applied_at: str | None = None
    success: bool | None = None
    last_error: str | None = None
    attempts: int = 0


class PatchLedger(Record):
    applied: list[Patch] = Field(default_factory=list)
    pending: list[Patch] = Field(default_factory=list)
    total_applied: int = 0


DocT = TypeVar("DocT", bound=Record)


def load_document(path: Path, model: type[DocT]) -> DocT:
    """Load a JSON document, or a fresh default when the file does not exist."""
    if not path.exists():
        return model()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return model.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        raise LedgerCorruptError(f"{path}: {e}") from e


def atomic_write(path: Path, data: str | bytes) -> None:
    """Write `data` to `path` via a sibling temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = data.encode("utf-8") if isinstance(data, str) else data
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        # mkstemp creates 0600; keep the mode of the file being replaced.
        mode = path.stat().st_mode if path.exists() else 0o644
        os.chmod(tmp, mode & 0o7777)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def save_document(path: Path, doc: Record) -> None:
    atomic_write(path, json.dumps(doc.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n")
