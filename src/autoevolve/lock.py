"""External lock file shared by the update and improvement cycles.

The lock is a plain file created with O_EXCL. A second invocation that finds it
present skips its cycle instead of waiting. A lock left behind by a crash is not
cleared automatically; remove it with `autoevolve unlock`.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .types import utc_now_iso


class CycleLock:
    def __init__(self, path: Path | str):
        self.path = Path(path)

    def is_held(self) -> bool:
        return self.path.exists()

    def try_acquire(self) -> bool:
        """Create the lock file atomically. False if it already exists."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(f"{utc_now_iso()} pid={os.getpid()}\n")
        return True

    def release(self) -> None:
        self.path.unlink(missing_ok=True)

    def holder(self) -> str | None:
        """Contents of the lock file (timestamp and pid), if held."""
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None

    @contextmanager
    def hold(self) -> Iterator[bool]:
        """Yield whether the lock was acquired; release on exit only if it was."""
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
