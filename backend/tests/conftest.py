from __future__ import annotations

import json
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def sse_body(*payloads) -> bytes:
    """Frame payloads as ``data:`` lines. Strings are sent verbatim."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def text_delta(text: str) -> dict:
    return {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}}


def json_delta(partial: str) -> dict:
    return {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": partial}}


class FakeBackend:
    """In-memory pty backend: ``feed`` queues output, ``finish`` ends the stream."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.written: list[bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self._chunks: list[bytes] = []
        self._cond = threading.Condition()
        self._closed = False
        self._exit_code: int | None = None

    def feed(self, data: bytes) -> None:
        with self._cond:
            self._chunks.append(data)
            self._cond.notify_all()

    def finish(self, exit_code: int = 0) -> None:
        with self._cond:
            self._exit_code = exit_code
            self._closed = True
            self._cond.notify_all()

    def read(self, size: int) -> bytes:
        with self._cond:
            while not self._chunks and not self._closed:
                self._cond.wait(timeout=5)
            if self._chunks:
                return self._chunks.pop(0)[:size]
            return b""

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.sizes.append((cols, rows))

    def terminate(self) -> None:
        self.calls.append("terminate")
        if "terminate" in self.fail_on:
            raise OSError("terminate failed")
        if self._exit_code is None:
            self._exit_code = -15

    def close(self) -> None:
        self.calls.append("close")
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        if "close" in self.fail_on:
            raise OSError("close failed")

    @property
    def exit_code(self) -> int | None:
        return self._exit_code


class FakeBackendFactory:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.backends: list[FakeBackend] = []
        self.spawns: list[dict] = []

    def __call__(self, argv, cwd, env, cols, rows) -> FakeBackend:
        self.spawns.append({"argv": argv, "cwd": cwd, "env": env, "cols": cols, "rows": rows})
        if self.error is not None:
            raise self.error
        backend = FakeBackend(pid=1000 + len(self.backends))
        self.backends.append(backend)
        return backend


@pytest.fixture
def backend_factory() -> FakeBackendFactory:
    return FakeBackendFactory()
