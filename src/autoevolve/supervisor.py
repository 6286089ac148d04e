"""Detached restarts through an external process supervisor (pm2 by default)."""

from __future__ import annotations

import subprocess
from pathlib import Path


class ProcessSupervisor:
    def __init__(self, restart_argv: list[str], cwd: Path | str | None = None):
        self.restart_argv = list(restart_argv)
        self.cwd = Path(cwd) if cwd is not None else None

    def command_for(self, name: str) -> list[str]:
        return [arg.replace("{name}", name) for arg in self.restart_argv]

    def restart(self, name: str) -> bool:
        """Fire the restart command in its own session and return immediately.

        The supervisor will stop this process, so nothing waits on the child.
        """
        try:
            subprocess.Popen(
                self.command_for(name),
                cwd=str(self.cwd) if self.cwd else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError:
            return False
        return True
