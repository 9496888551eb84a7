"""PtySession and TerminalService — pty-backed shell sessions keyed by pane id.

Each session owns one backend, one read-loop task and one reader thread. The
loop blocks on ``backend.read`` in that thread, tracks the shell's cwd from
OSC 7 sequences and queues ``data`` events; on EOF or a read error it queues a
single ``exit`` event, leaves the registry and stops. Sessions never restart.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from flowdesk.config import Settings, settings as default_settings
from flowdesk.registry import SessionRegistry
from flowdesk.terminal.backends import PtyBackend, open_backend
from flowdesk.terminal.constants import (
    DEFAULT_COLS,
    DEFAULT_ROWS,
    POSIX_FALLBACK_SHELL,
    READ_CHUNK_SIZE,
    SPAWN_ERROR_TEMPLATE,
    SPAWN_FAILED_EXIT_CODE,
    TERM_NAME,
    WINDOWS_FALLBACK_SHELL,
)
from flowdesk.terminal.osc import get_cwd

logger = logging.getLogger(__name__)

BackendFactory = Callable[[list, str, dict, int, int], PtyBackend]


@dataclass(frozen=True)
class TerminalDataEvent:
    type: str
    data: bytes = b""
    exit_code: int | None = None

    @classmethod
    def output(cls, data: bytes) -> TerminalDataEvent:
        return cls(type="data", data=data)

    @classmethod
    def exited(cls, exit_code: int | None) -> TerminalDataEvent:
        return cls(type="exit", exit_code=exit_code)


class PtySession:
    def __init__(
        self,
        pane_id: str,
        workspace_id: str,
        cwd: str,
        backend: PtyBackend | None,
        on_exit: Callable[[PtySession], object] | None = None,
    ) -> None:
        self.pane_id = pane_id
        self.workspace_id = workspace_id
        self.cwd = cwd
        self.backend = backend
        self.connected = backend is not None
        self.detached = False
        self.exit_code: int | None = None
        self.on_exit = on_exit
        self._queue: asyncio.Queue[TerminalDataEvent] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._reader: ThreadPoolExecutor | None = None
        self._exited = False

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self) -> None:
        # Dedicated reader thread; the loop's default executor stays free
        self._reader = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"pty-read-{self.pane_id}")
        self._task = asyncio.create_task(self._read_loop(), name=f"pty-read-{self.pane_id}")
        # Runs even when the task is cancelled before its first step
        self._task.add_done_callback(self._on_read_loop_done)

    def fail(self, error: str) -> None:
        """Mark the session dead and queue an inline error line plus ``exit``."""
        self.connected = False
        self._queue.put_nowait(
            TerminalDataEvent.output(SPAWN_ERROR_TEMPLATE.format(error=error).encode())
        )
        self._finish(SPAWN_FAILED_EXIT_CODE)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def close_reader(self) -> None:
        if self._reader is not None:
            self._reader.shutdown(wait=False)

    async def events(self) -> AsyncIterator[TerminalDataEvent]:
        """Yield queued events until the ``exit`` event."""
        while True:
            event = await self._queue.get()
            yield event
            if event.type == "exit":
                return

    def _emit(self, event: TerminalDataEvent) -> None:
        if self.detached:
            return
        self._queue.put_nowait(event)

    def _finish(self, exit_code: int | None) -> None:
        if self._exited:
            return
        self._exited = True
        self.connected = False
        self.exit_code = exit_code
        self._emit(TerminalDataEvent.exited(exit_code))

    async def _read_loop(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                try:
                    chunk = await loop.run_in_executor(self._reader, self.backend.read, READ_CHUNK_SIZE)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.info("Terminal %s read failed: %s", self.pane_id, e)
                    break
                if not chunk:
                    break

                cwd = get_cwd(chunk)
                if cwd is not None:
                    self.cwd = cwd
                self._emit(TerminalDataEvent.output(chunk))
        finally:
            logger.info("Terminal %s read loop stopped", self.pane_id)

    def _on_read_loop_done(self, _task: asyncio.Task) -> None:
        self._finish(self._backend_exit_code())
        self.close_reader()
        if self.on_exit is not None:
            self.on_exit(self)

    def _backend_exit_code(self) -> int | None:
        try:
            return self.backend.exit_code
        except Exception:
            logger.debug("Terminal %s: exit code unavailable", self.pane_id, exc_info=True)
            return None


class TerminalService:
    def __init__(
        self,
        backend_factory: BackendFactory = open_backend,
        registry: SessionRegistry[PtySession] | None = None,
        *,
        config: Settings | None = None,
    ) -> None:
        self.backend_factory = backend_factory
        self.registry: SessionRegistry[PtySession] = registry or SessionRegistry("terminals")
        self.config = config or default_settings

    # ── Process setup ───────────────────────────────────────────

    def resolve_shell(self) -> list[str]:
        if self.config.TERMINAL_SHELL:
            return [self.config.TERMINAL_SHELL]
        if sys.platform == "win32":
            return [os.environ.get("COMSPEC") or WINDOWS_FALLBACK_SHELL]
        shell = os.environ.get("SHELL")
        if shell and os.path.exists(shell):
            return [shell]
        return [POSIX_FALLBACK_SHELL]

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["TERM"] = TERM_NAME
        return env

    # ── Lifecycle ───────────────────────────────────────────────

    def create_session(
        self,
        pane_id: str,
        workspace_id: str,
        cwd: str,
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ) -> PtySession:
        """Spawn a shell for the pane and start streaming its output.

        Never raises on spawn failure: the returned session is disconnected,
        unregistered, and its events are an error line followed by ``exit``.
        """
        if pane_id in self.registry:
            logger.info("Terminal %s already exists, replacing it", pane_id)
            self.kill(pane_id)

        argv = self.resolve_shell()
        try:
            backend = self.backend_factory(argv, cwd, self.build_env(), cols, rows)
        except Exception as e:
            logger.error("Terminal %s: failed to spawn %s in %s: %s", pane_id, argv, cwd, e)
            session = PtySession(pane_id, workspace_id, cwd, backend=None)
            session.fail(str(e))
            return session

        session = PtySession(pane_id, workspace_id, cwd, backend, on_exit=self._release)
        self.registry.add(pane_id, session)
        session.start()
        logger.info(
            "Terminal %s started (workspace=%s, pid=%s, shell=%s)",
            pane_id,
            workspace_id,
            getattr(backend, "pid", None),
            argv[0],
        )
        return session

    def get(self, pane_id: str) -> PtySession | None:
        return self.registry.get(pane_id)

    def write(self, pane_id: str, data: bytes | str) -> bool:
        session = self.registry.get(pane_id)
        if session is None or not session.connected:
            return False
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            session.backend.write(data)
        except Exception as e:
            logger.warning("Terminal %s write failed: %s", pane_id, e)
            return False
        return True

    def resize(self, pane_id: str, cols: int, rows: int) -> bool:
        if cols <= 0 or rows <= 0:
            return False
        session = self.registry.get(pane_id)
        if session is None or not session.connected:
            return False
        try:
            session.backend.resize(cols, rows)
        except Exception as e:
            logger.warning("Terminal %s resize failed: %s", pane_id, e)
            return False
        return True

    def detach(self, pane_id: str) -> bool:
        """Stop delivering events; the process and read loop keep running."""
        session = self.registry.get(pane_id)
        if session is None:
            return False
        session.detached = True
        return True

    def attach(self, pane_id: str) -> PtySession | None:
        session = self.registry.get(pane_id)
        if session is None:
            return None
        session.detached = False
        if not session.connected:
            session._emit(TerminalDataEvent.exited(session.exit_code))
        return session

    def kill(self, pane_id: str) -> bool:
        """Tear the session down. A second kill of the same pane is a no-op."""
        session = self.registry.pop(pane_id)
        if session is None:
            return False
        self._teardown(session)
        logger.info("Terminal %s killed", pane_id)
        return True

    async def shutdown(self) -> None:
        sessions = [session for _, session in self.registry.drain()]
        for session in sessions:
            self._teardown(session)
        tasks = [s.task for s in sessions if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Terminal service shut down (%d sessions)", len(sessions))

    @staticmethod
    def get_cwd(chunk: bytes | str | None) -> str | None:
        return get_cwd(chunk)

    def _release(self, session: PtySession) -> None:
        if self.registry.discard(session.pane_id, session):
            logger.info("Terminal %s exited (code=%s)", session.pane_id, session.exit_code)

    def _teardown(self, session: PtySession) -> None:
        backend = session.backend
        try:
            backend.terminate()
        except Exception as e:
            logger.warning("Terminal %s: terminate failed: %s", session.pane_id, e)
        try:
            backend.close()
        except Exception as e:
            logger.warning("Terminal %s: close failed: %s", session.pane_id, e)
        try:
            session.cancel()
        except Exception as e:
            logger.warning("Terminal %s: cancelling read loop failed: %s", session.pane_id, e)
        session.close_reader()
        session.connected = False
