"""Platform pty backends behind one narrow interface.

pexpect on POSIX, pywinpty (ConPTY) on Windows. ``read`` blocks until data
is available and returns ``b""`` once the process side is gone; the session
runs it in the default executor.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import time
from typing import Protocol

logger = logging.getLogger(__name__)

WINPTY_IDLE_SLEEP_SECONDS = 0.01


class PtyBackend(Protocol):
    pid: int | None

    def read(self, size: int) -> bytes: ...
    def write(self, data: bytes) -> None: ...
    def resize(self, cols: int, rows: int) -> None: ...
    def terminate(self) -> None: ...
    def close(self) -> None: ...

    @property
    def exit_code(self) -> int | None: ...


class PexpectBackend:
    def __init__(self, argv: list[str], cwd: str, env: dict[str, str], cols: int, rows: int) -> None:
        import pexpect

        self._pexpect = pexpect
        self._proc = pexpect.spawn(
            argv[0],
            argv[1:],
            cwd=cwd,
            env=env,
            dimensions=(rows, cols),
        )
        self.pid = self._proc.pid

    def read(self, size: int) -> bytes:
        try:
            return self._proc.read_nonblocking(size=size, timeout=None)
        except self._pexpect.EOF:
            return b""

    def write(self, data: bytes) -> None:
        self._proc.send(data)

    def resize(self, cols: int, rows: int) -> None:
        self._proc.setwinsize(rows, cols)

    def terminate(self) -> None:
        # The child leads its own session, so its pid is the group id
        if self._proc.isalive():
            try:
                os.killpg(self._proc.pid, signal.SIGHUP)
            except ProcessLookupError:
                pass
            self._proc.terminate(force=True)

    def close(self) -> None:
        self._proc.close(force=True)

    @property
    def exit_code(self) -> int | None:
        # isalive() reaps the child and fills in the status fields
        if self._proc.isalive():
            return None
        if self._proc.exitstatus is not None:
            return self._proc.exitstatus
        if self._proc.signalstatus is not None:
            return -self._proc.signalstatus
        return None


class WinptyBackend:
    def __init__(self, argv: list[str], cwd: str, env: dict[str, str], cols: int, rows: int) -> None:
        from winpty import PtyProcess

        self._proc = PtyProcess.spawn(argv, cwd=cwd, env=env, dimensions=(rows, cols))
        self.pid = self._proc.pid

    def read(self, size: int) -> bytes:
        while True:
            try:
                data = self._proc.read(size)
            except EOFError:
                return b""
            if data:
                return data.encode("utf-8", errors="replace")
            if not self._proc.isalive():
                return b""
            time.sleep(WINPTY_IDLE_SLEEP_SECONDS)

    def write(self, data: bytes) -> None:
        self._proc.write(data.decode("utf-8", errors="replace"))

    def resize(self, cols: int, rows: int) -> None:
        self._proc.setwinsize(rows, cols)

    def terminate(self) -> None:
        if self._proc.isalive():
            self._proc.terminate(force=True)

    def close(self) -> None:
        self._proc.close(force=True)

    @property
    def exit_code(self) -> int | None:
        return self._proc.exitstatus


def open_backend(argv: list[str], cwd: str, env: dict[str, str], cols: int, rows: int) -> PtyBackend:
    """Spawn ``argv`` in a pty with the platform's backend."""
    if sys.platform == "win32":
        return WinptyBackend(argv, cwd, env, cols, rows)
    return PexpectBackend(argv, cwd, env, cols, rows)
