"""Tests for TerminalService with an in-memory backend, plus a real pty smoke test."""

from __future__ import annotations

import asyncio
import os
import shutil
import sys

import pytest

from conftest import FakeBackendFactory
from flowdesk.config import Settings
from flowdesk.terminal.session import TerminalService


def make_service(factory: FakeBackendFactory, **settings) -> TerminalService:
    return TerminalService(factory, config=Settings(**settings))


async def next_event(session, timeout: float = 5):
    events = session.events()
    try:
        return await asyncio.wait_for(events.__anext__(), timeout)
    finally:
        await events.aclose()


async def drain(session, timeout: float = 5) -> list:
    async def collect():
        return [event async for event in session.events()]

    return await asyncio.wait_for(collect(), timeout)


# ── Creation ────────────────────────────────────────────────────


def test_create_session_spawns_configured_shell(backend_factory):
    service = make_service(backend_factory, TERMINAL_SHELL="/bin/zsh")

    async def scenario():
        session = service.create_session("p1", "ws", "/tmp", cols=100, rows=30)
        await service.shutdown()
        return session

    session = asyncio.run(scenario())
    spawn = backend_factory.spawns[0]
    assert spawn["argv"] == ["/bin/zsh"]
    assert spawn["cwd"] == "/tmp"
    assert (spawn["cols"], spawn["rows"]) == (100, 30)
    assert spawn["env"]["TERM"] == "xterm-256color"
    assert session.pane_id == "p1"


def test_output_events_and_cwd_tracking(backend_factory):
    service = make_service(backend_factory)

    async def scenario():
        session = service.create_session("p1", "ws", "/start")
        backend = backend_factory.backends[0]
        backend.feed(b"hello\r\n\x1b]7;file://host/home/u/proj\x07$ ")
        first = await next_event(session)
        backend.finish(exit_code=3)
        rest = await drain(session)
        return session, first, rest

    session, first, rest = asyncio.run(scenario())
    assert first.type == "data"
    assert first.data.startswith(b"hello")
    assert session.cwd == "/home/u/proj"
    assert [e.type for e in rest] == ["exit"]
    assert rest[0].exit_code == 3
    assert session.connected is False
    assert service.get("p1") is None


def test_natural_exit_while_detached_releases_pane(backend_factory):
    service = make_service(backend_factory)

    async def scenario():
        session = service.create_session("p1", "ws", "/tmp")
        service.detach("p1")
        backend_factory.backends[0].finish(exit_code=0)
        await asyncio.gather(session.task, return_exceptions=True)
        killed = service.kill("p1")
        return session, killed

    session, killed = asyncio.run(scenario())
    assert session.exit_code == 0
    assert service.get("p1") is None
    assert service.attach("p1") is None
    assert killed is False
    assert backend_factory.backends[0].calls == []


def test_many_sessions_do_not_starve_each_other(backend_factory):
    service = make_service(backend_factory)
    count = min(32, (os.cpu_count() or 1) + 4) + 2

    async def scenario():
        loop = asyncio.get_running_loop()
        sessions = [service.create_session(f"p{i}", "ws", "/tmp") for i in range(count)]
        await asyncio.sleep(0.1)
        try:
            backend_factory.backends[-1].feed(b"hello")
            event = await next_event(sessions[-1], timeout=3)
            shared = await asyncio.wait_for(loop.run_in_executor(None, lambda: "free"), 3)
        finally:
            await service.shutdown()
        return event, shared

    event, shared = asyncio.run(scenario())
    assert event.data == b"hello"
    assert shared == "free"


def test_write_and_resize(backend_factory):
    service = make_service(backend_factory)

    async def scenario():
        service.create_session("p1", "ws", "/tmp")
        results = (
            service.write("p1", "ls\r"),
            service.write("p1", b"\x03"),
            service.resize("p1", 120, 40),
            service.resize("p1", 0, 40),
            service.write("missing", "x"),
        )
        await service.shutdown()
        return results

    results = asyncio.run(scenario())
    backend = backend_factory.backends[0]
    assert results == (True, True, True, False, False)
    assert backend.written == [b"ls\r", b"\x03"]
    assert backend.sizes == [(120, 40)]


def test_spawn_failure_returns_disconnected_session():
    factory = FakeBackendFactory(error=OSError("no such shell"))
    service = make_service(factory)

    async def scenario():
        session = service.create_session("p1", "ws", "/nowhere")
        return session, await drain(session)

    session, events = asyncio.run(scenario())
    assert session.connected is False
    assert service.get("p1") is None
    assert [e.type for e in events] == ["data", "exit"]
    assert b"\x1b[31m" in events[0].data
    assert b"no such shell" in events[0].data
    assert events[1].exit_code == -1


# ── Teardown ────────────────────────────────────────────────────


def test_kill_releases_registry_and_is_idempotent(backend_factory):
    service = make_service(backend_factory)

    async def scenario():
        session = service.create_session("p1", "ws", "/tmp")
        first = service.kill("p1")
        second = service.kill("p1")
        events = await drain(session)
        return session, first, second, events

    session, first, second, events = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert service.get("p1") is None
    assert backend_factory.backends[0].calls == ["terminate", "close"]
    assert session.task.done()
    assert events[-1].type == "exit"


def test_kill_runs_every_step_when_one_fails(backend_factory):
    service = make_service(backend_factory)

    async def scenario():
        session = service.create_session("p1", "ws", "/tmp")
        backend_factory.backends[0].fail_on = {"terminate", "close"}
        assert service.kill("p1") is True
        await asyncio.gather(session.task, return_exceptions=True)
        return session

    session = asyncio.run(scenario())
    assert backend_factory.backends[0].calls == ["terminate", "close"]
    assert session.task.done()
    assert session.connected is False
    assert service.get("p1") is None


def test_detach_drops_events_without_killing(backend_factory):
    service = make_service(backend_factory)

    async def scenario():
        session = service.create_session("p1", "ws", "/tmp")
        backend = backend_factory.backends[0]
        assert service.detach("p1") is True
        backend.feed(b"while detached")
        await asyncio.sleep(0.1)
        dropped = session._queue.empty()

        assert service.attach("p1") is session
        backend.feed(b"after attach")
        event = await next_event(session)
        calls_before_shutdown = list(backend.calls)
        await service.shutdown()
        return dropped, event, calls_before_shutdown

    dropped, event, calls_before_shutdown = asyncio.run(scenario())
    assert dropped is True
    assert event.data == b"after attach"
    assert calls_before_shutdown == []


def test_shutdown_kills_everything(backend_factory):
    service = make_service(backend_factory)

    async def scenario():
        service.create_session("p1", "ws", "/tmp")
        service.create_session("p2", "ws", "/tmp")
        await service.shutdown()

    asyncio.run(scenario())
    assert len(service.registry) == 0
    assert all(b.calls == ["terminate", "close"] for b in backend_factory.backends)


def test_recreating_a_pane_replaces_the_old_session(backend_factory):
    service = make_service(backend_factory)

    async def scenario():
        old = service.create_session("p1", "ws", "/tmp")
        new = service.create_session("p1", "ws", "/tmp")
        await asyncio.gather(old.task, return_exceptions=True)
        current = service.get("p1")
        await service.shutdown()
        return old, new, current

    old, new, current = asyncio.run(scenario())
    assert current is new
    assert old is not new
    assert backend_factory.backends[0].calls == ["terminate", "close"]


def test_shell_fallback_when_shell_env_missing(backend_factory, monkeypatch):
    monkeypatch.setenv("SHELL", "/definitely/not/a/shell")
    service = make_service(backend_factory)
    if sys.platform == "win32":
        assert service.resolve_shell()[0].lower().endswith("cmd.exe")
    else:
        assert service.resolve_shell() == ["/bin/bash"]


# ── Real pty ────────────────────────────────────────────────────


@pytest.mark.skipif(sys.platform == "win32" or shutil.which("sh") is None, reason="POSIX pty only")
def test_real_shell_round_trip(tmp_path):
    service = TerminalService(config=Settings(TERMINAL_SHELL=shutil.which("sh")))

    async def scenario():
        session = service.create_session("real", "ws", str(tmp_path))
        assert session.connected
        service.write("real", "echo flowdesk-$((40+2))\n")
        output = b""
        events = session.events()
        try:
            while b"flowdesk-42" not in output:
                event = await asyncio.wait_for(events.__anext__(), 10)
                if event.type == "exit":
                    break
                output += event.data
        finally:
            await events.aclose()
        service.kill("real")
        await asyncio.gather(session.task, return_exceptions=True)
        return output

    output = asyncio.run(scenario())
    assert b"flowdesk-42" in output
    assert service.get("real") is None
