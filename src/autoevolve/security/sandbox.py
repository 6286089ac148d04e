"""Trust-boundary checks for every path the pipeline mutates."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from ..telemetry import TelemetrySink
from ..types import SandboxViolation, ViolationReason, utc_now_iso

# Blocked even inside the sandbox root (case-insensitive substring match).
BLOCKED_PATHS = [
    ".env",
    ".env.local",
    ".env.production",
    "credentials",
    "secrets",
    ".git/config",
    "id_rsa",
    "id_ed25519",
    ".ssh",
    ".aws",
    ".npmrc",
    ".pypirc",
]

BLOCKED_EXTENSIONS = [
    ".pem",
    ".key",
    ".p12",
    ".pfx",
    ".keystore",
]


class SandboxGuard:
    """Allow/deny decisions for paths against a sandbox root.

    Relative paths are interpreted against the root. The resolved path must stay
    inside the root, and its root-relative form must not match the blocklist.
    Checks never raise; every rejection is recorded as a violation.
    """

    def __init__(
        self,
        root: Path | str,
        blocked_paths: list[str] | None = None,
        blocked_extensions: list[str] | None = None,
        telemetry: TelemetrySink | None = None,
    ):
        # Normalize root to avoid false "escape" on platforms where `resolve()`
        # canonicalizes paths (e.g., macOS /var -> /private/var).
        self._root = Path(root).resolve()
        self.blocked_paths = [p.lower() for p in (blocked_paths if blocked_paths is not None else BLOCKED_PATHS)]
        self.blocked_extensions = [
            e.lower() for e in (blocked_extensions if blocked_extensions is not None else BLOCKED_EXTENSIONS)
        ]
        self.telemetry = telemetry or TelemetrySink.disabled()
        self._violations: list[SandboxViolation] = []

    @property
    def root(self) -> Path:
        return self._root

    @property
    def violations(self) -> list[SandboxViolation]:
        return list(self._violations)

    @property
    def violation_count(self) -> int:
        return len(self._violations)

    def _normalize(self, target_path: Path | str) -> Path:
        p = Path(os.path.expanduser(str(target_path)))
        if not p.is_absolute():
            p = self._root / p
        return p.resolve()

    def check(self, target_path: Path | str) -> ViolationReason | None:
        """Return the rejection reason for a path, or None if it is allowed."""
        try:
            normalized = self._normalize(target_path)
        except (OSError, ValueError, RuntimeError):
            return ViolationReason.INVALID_PATH

        if normalized != self._root and self._root not in normalized.parents:
            return ViolationReason.OUTSIDE_SANDBOX

        # Match on the root-relative form so the root's own location never
        # trips the blocklist.
        rel = normalized.relative_to(self._root).as_posix().lower()
        for blocked in self.blocked_paths:
            if blocked in rel:
                return ViolationReason.BLOCKED_PATH

        for ext in self.blocked_extensions:
            if rel.endswith(ext):
                return ViolationReason.BLOCKED_EXTENSION

        return None

    def is_path_allowed(self, target_path: Path | str) -> bool:
        reason = self.check(target_path)
        if reason is None:
            return True
        self._record_violation(str(target_path), reason)
        return False

    def resolve_path(self, target_path: Path | str) -> Path | None:
        """Absolute path for `target_path`, or None when it is not allowed."""
        if not self.is_path_allowed(target_path):
            return None
        return self._normalize(target_path)

    def path_exists(self, target_path: Path | str) -> bool:
        resolved = self.resolve_path(target_path)
        return resolved is not None and resolved.exists()

    def stats(self) -> dict[str, Any]:
        return {"root": str(self._root), "violations": self.violation_count}

    def _record_violation(self, path: str, reason: ViolationReason) -> None:
        violation = SandboxViolation(path=path, timestamp=utc_now_iso(), reason=reason)
        self._violations.append(violation)
        self.telemetry.log(
            "sandbox",
            "sandbox_violation",
            {"path": path, "reason": reason.value, "timestamp": violation.timestamp},
        )
