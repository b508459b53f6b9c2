from __future__ import annotations

import asyncio
import contextlib
import socket
import sys
import time
from typing import Callable, List, Tuple

from starlette.config import Config

from respawn.build import BuildResult
from respawn.settings import Settings, WorkerSpec, load_settings
from respawn.source import PullResult

SLEEP_FOREVER = "import time\nwhile True: time.sleep(0.1)"


def python_worker(name: str, code: str, port: int) -> WorkerSpec:
    return WorkerSpec(name=name, entrypoint=(sys.executable, "-c", code), port=port)


def free_ports(count: int) -> List[int]:
    with contextlib.ExitStack() as stack:
        sockets = [stack.enter_context(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) for _ in range(count)]
        for s in sockets:
            s.bind(("127.0.0.1", 0))
        return [int(s.getsockname()[1]) for s in sockets]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


def make_settings(**environ: str) -> Settings:
    app_port, webhook_port, server_port = free_ports(3)
    base = {
        "APP_COMMAND": f"{sys.executable} -c pass",
        "WEBHOOK_COMMAND": f"{sys.executable} -c pass",
        "WEBHOOK_SECRET": "It's a Secret to Everybody",
        "RESTART_TOKEN": "restart-me",
        "APP_PORT": str(app_port),
        "WEBHOOK_PORT": str(webhook_port),
        "SERVER_PORT": str(server_port),
    }
    base.update(environ)
    return load_settings(Config(environ=base))


class FakeUpdater:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.calls: List[Tuple[str, str, str]] = []

    async def pull(self, workdir: str, remote: str, branch_ref: str) -> PullResult:
        self.calls.append((workdir, remote, branch_ref))
        return PullResult(ok=self.ok, detail="" if self.ok else "merge conflict")


class FakeBuilder:
    def __init__(self, success: bool = True) -> None:
        self.success = success
        self.calls: List[Tuple[str, str]] = []

    async def build(self, project_root: str, mode: str) -> BuildResult:
        self.calls.append((project_root, mode))
        if self.success:
            return BuildResult(success=True)
        return BuildResult(success=False, diagnostics=["ERROR in ./src/app.ts"])


class FakeSupervisor:
    def __init__(self) -> None:
        self.restarts = 0
        self.release = asyncio.Event()
        self.release.set()

    async def restart_all(self) -> None:
        self.restarts += 1
        await self.release.wait()
