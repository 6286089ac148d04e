"""Hot patches: small runtime edits to data and config files, no rebuild.

Patches are queued in a pending list in `patches/applied.json` (by
`create_patch` or by hand) and move to the applied list once they succeed.
Nothing is ever removed from the ledger.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .records import Patch, PatchLedger, atomic_write, load_document, save_document
from .security.filter import ContentFilter, redact_text
from .security.sandbox import SandboxGuard
from .telemetry import TelemetrySink
from .types import PatchAction, PatchType, new_id, utc_now_iso


class PatchError(Exception):
    """A patch could not be applied to its target."""


def _read_text(path: Path, patch: Patch) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise PatchError(f"Target is not valid UTF-8: {patch.target}") from e


def deep_merge(target: Any, source: Any) -> Any:
    """Merge `source` into `target`: dicts recursively, everything else replaced."""
    if not isinstance(target, dict) or not isinstance(source, dict):
        return source
    merged = dict(target)
    for key, value in source.items():
        merged[key] = deep_merge(merged.get(key), value) if isinstance(value, dict) else value
    return merged


class HotPatcher:
    def __init__(
        self,
        sandbox: SandboxGuard,
        content_filter: ContentFilter,
        project_root: Path | str,
        data_dir: Path | str,
        config_dir: Path | str,
        ledger_file: Path | str,
        telemetry: TelemetrySink | None = None,
    ):
        self.sandbox = sandbox
        self.content_filter = content_filter
        self.project_root = Path(project_root)
        self.data_dir = Path(data_dir)
        self.config_dir = Path(config_dir)
        self.ledger_file = Path(ledger_file)
        self.telemetry = telemetry or TelemetrySink.disabled()
        self.last_saved_mtime_ns: int | None = None

        self.ledger = PatchLedger()
        self.reload()

    def reload(self) -> None:
        """Re-read the ledger so hand edits made since the last save are kept."""
        self.ledger = load_document(self.ledger_file, PatchLedger)

    def _save(self) -> None:
        save_document(self.ledger_file, self.ledger)
        self.last_saved_mtime_ns = self.ledger_file.stat().st_mtime_ns

    def create_patch(
        self,
        type: PatchType | str,
        description: str,
        target: str,
        action: PatchAction | str,
        new_value: str,
        old_value: str | None = None,
    ) -> Patch:
        self.reload()
        patch = Patch(
            id=new_id("patch"),
            type=PatchType(type),
            description=description,
            target=target,
            action=PatchAction(action),
            old_value=old_value,
            new_value=new_value,
            created_at=utc_now_iso(),
        )
        self.ledger.pending.append(patch)
        self._save()
        self.telemetry.log(
            "patcher",
            "patch_created",
            {"patch_id": patch.id, "target": target, "action": patch.action.value},
        )
        return patch

    def resolve_target(self, target: str) -> Path:
        """Map a namespaced target to a filesystem path (not yet sandbox-checked)."""
        normalized = target.replace("\\", "/")
        if normalized.startswith("data/"):
            return self.data_dir / normalized[len("data/") :]
        if normalized.startswith("config/"):
            return self.config_dir / normalized[len("config/") :]
        return self.project_root / normalized

    def apply(self, patch_id: str) -> bool:
        self.reload()
        patch = next((p for p in self.ledger.pending if p.id == patch_id), None)
        if patch is None:
            return False

        try:
            path = self.sandbox.resolve_path(self.resolve_target(patch.target))
            if path is None:
                raise PatchError(f"Target not allowed by sandbox: {patch.target}")

            if patch.action is PatchAction.REPLACE:
                self._apply_replace(path, patch)
            elif patch.action is PatchAction.APPEND:
                self._apply_append(path, patch)
            elif patch.action is PatchAction.MODIFY_JSON:
                self._apply_modify_json(path, patch)
            else:
                raise PatchError(f"Unknown action: {patch.action}")
        except (PatchError, OSError) as e:
            patch.success = False
            patch.attempts += 1
            patch.last_error = redact_text(str(e), max_len=300)
            self._save()
            self.telemetry.log(
                "patcher",
                "patch_failed",
                {"patch_id": patch.id, "target": patch.target, "error": patch.last_error},
            )
            return False

        patch.applied_at = utc_now_iso()
        patch.success = True
        patch.attempts += 1
        patch.last_error = None
        self.ledger.pending = [p for p in self.ledger.pending if p.id != patch.id]
        self.ledger.applied.append(patch)
        self.ledger.total_applied += 1
        self._save()
        self.telemetry.log("patcher", "patch_applied", {"patch_id": patch.id, "target": patch.target})
        return True

    def apply_all(self) -> dict[str, int]:
        self.reload()
        # Iterate over a snapshot; apply() rewrites the pending list.
        pending_ids = [p.id for p in self.ledger.pending]
        applied = failed = 0
        for patch_id in pending_ids:
            if self.apply(patch_id):
                applied += 1
            else:
                failed += 1
        return {"applied": applied, "failed": failed}

    def _apply_replace(self, path: Path, patch: Patch) -> None:
        if not path.is_file():
            raise PatchError(f"File not found: {patch.target}")
        content = _read_text(path, patch)

        if patch.old_value:
            if patch.old_value not in content:
                raise PatchError("Old value not found in file")
            content = content.replace(patch.old_value, patch.new_value, 1)
        else:
            content = patch.new_value

        atomic_write(path, self.content_filter.sanitize(content))

    def _apply_append(self, path: Path, patch: Patch) -> None:
        content = _read_text(path, patch) if path.is_file() else ""
        content += "\n" + patch.new_value
        atomic_write(path, self.content_filter.sanitize(content))

    def _apply_modify_json(self, path: Path, patch: Patch) -> None:
        if not path.is_file():
            raise PatchError(f"File not found: {patch.target}")
        try:
            current = json.loads(_read_text(path, patch))
            modification = json.loads(patch.new_value)
        except json.JSONDecodeError as e:
            raise PatchError(f"Invalid JSON: {e}") from e

        merged = deep_merge(current, modification)
        atomic_write(path, json.dumps(merged, indent=2, ensure_ascii=False) + "\n")

    def get_pending(self) -> list[Patch]:
        return list(self.ledger.pending)

    def get_applied(self) -> list[Patch]:
        return list(self.ledger.applied)

    def get_summary(self) -> str:
        out = "Hot Patches\n"
        out += f"  Pending: {len(self.ledger.pending)}\n"
        out += f"  Applied: {self.ledger.total_applied}\n"
        if self.ledger.pending:
            out += "  Pending patches:\n"
            for p in self.ledger.pending:
                note = f" (failed x{p.attempts}: {p.last_error})" if p.attempts else ""
                out += f"    {p.id}: {p.description}{note}\n"
        recent = self.ledger.applied[-3:]
        if recent:
            out += "  Recent:\n"
            for p in recent:
                out += f"    {p.id}: {p.description} [{p.applied_at}]\n"
        return out
