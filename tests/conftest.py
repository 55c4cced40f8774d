"""Shared test fixtures for devrun tests."""

from __future__ import annotations

import io
import logging
import sys
from typing import Any, Callable, Optional, Sequence

import pytest
import pytest_asyncio
import structlog

from devrun.config import DevConfig, parse_config
from devrun.errors import CommandFailed
from devrun.process_manager import ProcessManager
from devrun.settings import DevrunSettings

PYTHON = sys.executable

# Small grace window keeps kill/cleanup tests fast
TEST_GRACE_PERIOD = 0.3


def python_command(code: str) -> list[str]:
    """argv running a Python snippet with the test interpreter."""
    return [PYTHON, "-c", code]


def make_config(data: dict) -> DevConfig:
    return parse_config(data, source="<test>")


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by setup_logging; they hold captured streams and files."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
            handler.close()


@pytest.fixture
def settings() -> DevrunSettings:
    return DevrunSettings(
        grace_period_ms=int(TEST_GRACE_PERIOD * 1000),
        health_check_attempts=3,
        health_check_delay_ms=0,
    )


@pytest.fixture
def api_db_config() -> DevConfig:
    """api runs a node server and needs the db container."""
    return make_config(
        {
            "services": {
                "db": {"type": "docker", "service": "postgres"},
                "api": {
                    "type": "cmd",
                    "commands": ["node", "server.js"],
                    "dependencies": ["db"],
                },
            },
            "presets": {"default": {"services": ["api"]}},
        }
    )


@pytest_asyncio.fixture
async def process_manager():
    """ProcessManager writing managed output to in-memory streams."""
    manager = ProcessManager(
        grace_period=TEST_GRACE_PERIOD,
        stdout=io.StringIO(),
        stderr=io.StringIO(),
    )
    yield manager
    await manager.cleanup_managed_processes()


class FakeProcessManager:
    """Records run_* calls and answers them from a responder.

    The responder receives the full argv and returns stdout, or raises
    CommandFailed.
    """

    def __init__(self, responder: Optional[Callable[[list[str]], str]] = None) -> None:
        self.responder = responder or (lambda argv: "")
        self.calls: list[tuple[str, list[str]]] = []
        self.cleanup_in_progress = False

    def _run(self, kind: str, command: str, args: Sequence[str]) -> str:
        argv = [command, *args]
        self.calls.append((kind, argv))
        return self.responder(argv)

    def run_sync(self, command: str, args: Sequence[str] = (), cwd: Any = None, capture: bool = True) -> str:
        return self._run("sync", command, args)

    async def run_captured(self, command: str, args: Sequence[str] = (), cwd: Any = None) -> str:
        return self._run("captured", command, args)

    async def run_inherited(self, command: str, args: Sequence[str] = (), cwd: Any = None) -> None:
        self._run("inherited", command, args)

    async def cleanup_managed_processes(self) -> None:
        self.cleanup_in_progress = True

    def argv_calls(self, kind: str) -> list[list[str]]:
        return [argv for call_kind, argv in self.calls if call_kind == kind]


class FakeCompose:
    """Scripted answers for the compose and container commands of one service.

    Args:
        running: Compose services reported by ``ps --services`` before ``up``.
        started: Services that ``up`` brings to life.
        status: Container status reported by inspect.
        health: Successive health states reported by inspect (last one repeats).
    """

    def __init__(
        self,
        running: Sequence[str] = (),
        started: Sequence[str] = (),
        status: str = "exited",
        health: Sequence[str] = ("healthy",),
        container_id: str = "abc123",
    ) -> None:
        self.running = list(running)
        self.started = list(started)
        self.status = status
        self.health = list(health)
        self.container_id = container_id
        self.fail_up = False
        self.fail_listing = False

    def __call__(self, argv: list[str]) -> str:
        if "up" in argv:
            if self.fail_up:
                raise CommandFailed(" ".join(argv), 1)
            self.running += [service for service in self.started if service not in self.running]
            self.status = "running"
            return ""
        if "--services" in argv:
            if self.fail_listing:
                raise CommandFailed(" ".join(argv), 1)
            return "\n".join(self.running)
        if "-q" in argv:
            return self.container_id
        if "inspect" in argv:
            template = argv[-2]
            if "Health" in template:
                if len(self.health) > 1:
                    return self.health.pop(0)
                return self.health[0]
            return self.status
        return ""


@pytest.fixture
def fake_compose() -> FakeCompose:
    return FakeCompose(started=["postgres"])


@pytest.fixture
def fake_process_manager(fake_compose: FakeCompose) -> FakeProcessManager:
    return FakeProcessManager(fake_compose)
