from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .telemetry import read_events


@dataclass(frozen=True)
class StatusWindow:
    seconds: float


def compute_status(telemetry_path: Path, *, window: StatusWindow | None = None) -> dict[str, Any]:
    """Compute pipeline metrics from telemetry.jsonl (best-effort)."""
    window = window or StatusWindow(seconds=86400.0)
    now = time.time()
    cutoff = now - float(window.seconds)

    events = read_events(telemetry_path)
    recent = [e for e in events if float(e.get("timestamp", 0.0) or 0.0) >= cutoff]

    def _count(event_type: str) -> int:
        return sum(1 for e in recent if e.get("type") == event_type)

    impl_ok = _count("implementation_succeeded")
    impl_fail = _count("implementation_failed")
    patch_ok = _count("patch_applied")
    patch_fail = _count("patch_failed")
    update_ok = _count("update_applied")
    update_fail = _count("update_failed")

    # Cycle latencies from start->completed (match by run_id).
    starts: dict[str, float] = {}
    latencies: list[float] = []
    for e in recent:
        rid = str(e.get("run_id") or "")
        ts = float(e.get("timestamp", 0.0) or 0.0)
        if e.get("type") == "cycle_started":
            starts[rid] = ts
        elif e.get("type") == "cycle_completed" and rid in starts:
            latencies.append(max(0.0, ts - starts[rid]))

    def _p(values: list[float], pct: float) -> float | None:
        if not values:
            return None
        s = sorted(values)
        idx = int(round((pct / 100.0) * (len(s) - 1)))
        return float(s[max(0, min(len(s) - 1, idx))])

    def _rate(ok_count: int, fail_count: int) -> float | None:
        denom = ok_count + fail_count
        return (ok_count / denom) if denom else None

    last_cycle = next((e for e in reversed(events) if e.get("type") == "cycle_completed"), None)
    last_update = next(
        (e for e in reversed(events) if e.get("type") in {"update_applied", "update_failed", "update_skipped"}),
        None,
    )

    return {
        "window_seconds": window.seconds,
        "telemetry_path": str(telemetry_path),
        "implementations": impl_ok + impl_fail,
        "implementation_success_rate": _rate(impl_ok, impl_fail),
        "security_rejections": _count("security_rejection"),
        "sandbox_violations": _count("sandbox_violation"),
        "commit_failures": _count("commit_failed"),
        "rollbacks": _count("rollback_succeeded"),
        "versions_created": _count("version_created"),
        "patch_success_rate": _rate(patch_ok, patch_fail),
        "update_success_rate": _rate(update_ok, update_fail),
        "cycle_latency_s_p50": _p(latencies, 50.0),
        "cycle_latency_s_p95": _p(latencies, 95.0),
        "last_cycle": last_cycle,
        "last_update": last_update,
    }
