"""
Worker process supervisor

- spawns one OS process per configured worker and forwards its output to our logs
- watches every worker for exit and respawns crashed workers
- restarts all workers as one coordinated, single-flight operation

Deliberate stops are told apart from crashes with a restart epoch. Every
coordinated stop bumps the epoch and stamps it onto the handles it stops; an
exit is deliberate iff the handle's stamp matches the current epoch.

Crashes are not respawned from the exit watcher directly. They are pushed onto
a queue and a single respawn task drains it, so crash loops show up in one
place and can be slowed down with `crash_backoff`.
"""

from __future__ import annotations

import asyncio
import enum
import os
from typing import Any, Coroutine, Dict, NamedTuple, Optional, Sequence, Set

import structlog

from respawn.errors import ConfigurationError, ProcessError
from respawn.settings import WorkerSpec

log = structlog.get_logger()

# after SIGKILL the kernel reaps quickly; anything longer means we lost the child
KILL_WAIT_SECONDS = 5.0
STREAM_LIMIT = 2 ** 20


class WorkerState(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


class WorkerHandle:
    def __init__(self, spec: WorkerSpec) -> None:
        self.spec = spec
        self.process: Optional[asyncio.subprocess.Process] = None
        self.state = WorkerState.STOPPED
        # crash respawns only; deliberate restarts don't count
        self.restart_count = 0
        self.start_count = 0
        self.stop_epoch: Optional[int] = None
        self.watcher: Optional[asyncio.Task[int]] = None
        # serializes stop/start of this worker so two instances never coexist
        self.lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "pid": self.pid if self.alive else None,
            "port": self.spec.port,
            "restart_count": self.restart_count,
        }


class CrashEvent(NamedTuple):
    worker: str
    process: asyncio.subprocess.Process
    returncode: int


class ProcessSupervisor:
    def __init__(
        self,
        specs: Sequence[WorkerSpec],
        *,
        stop_grace_period: float = 10,
        crash_backoff: float = 0,
        crash_backoff_max: float = 30,
        epoch: int = 0,
    ) -> None:
        names = [spec.name for spec in specs]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"duplicate worker names: {names}")
        self.handles: Dict[str, WorkerHandle] = {spec.name: WorkerHandle(spec) for spec in specs}
        self.stop_grace_period = stop_grace_period
        self.crash_backoff = crash_backoff
        self.crash_backoff_max = crash_backoff_max
        self.epoch = epoch
        self._restarting = False
        self._closed = False
        self._restart_lock = asyncio.Lock()
        self._restart_task: Optional[asyncio.Task[None]] = None
        self._crashes: "asyncio.Queue[CrashEvent]" = asyncio.Queue()
        self._respawner: Optional[asyncio.Task[None]] = None
        self._tasks: Set[asyncio.Task[Any]] = set()

    def _background(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def restarting(self) -> bool:
        return self._restarting

    def status(self) -> Dict[str, Any]:
        return {
            "epoch": self.epoch,
            "restarting": self._restarting,
            "workers": {name: handle.status() for name, handle in self.handles.items()},
        }

    async def start_all(self) -> None:
        self._closed = False
        if self._respawner is None or self._respawner.done():
            self._respawner = asyncio.create_task(self._respawn_crashed())
        await asyncio.gather(*(self._start_if_stopped(h) for h in self.handles.values()))

    async def _start_if_stopped(self, handle: WorkerHandle) -> None:
        async with handle.lock:
            if not handle.alive:
                await self._start(handle)

    async def _spawn(self, spec: WorkerSpec) -> asyncio.subprocess.Process:
        env = {**os.environ, **spec.env, "PORT": str(spec.port)}
        try:
            return await asyncio.create_subprocess_exec(
                *spec.entrypoint,
                cwd=spec.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessError(spec.name, f"could not spawn {spec.entrypoint[0]!r}: {e}") from e

    async def _start(self, handle: WorkerHandle) -> None:
        """
        Spawn a worker. Must be called with `handle.lock` held.
        """
        handle.state = WorkerState.STARTING
        handle.stop_epoch = None
        try:
            proc = await self._spawn(handle.spec)
        except ProcessError as e:
            log.error("worker failed to start", worker=handle.name, error=str(e))
            handle.state = WorkerState.STOPPED
            return
        handle.process = proc
        handle.start_count += 1
        handle.state = WorkerState.RUNNING
        handle.watcher = asyncio.create_task(self._watch(handle, proc))
        log.info(
            "worker started",
            worker=handle.name,
            pid=proc.pid,
            port=handle.spec.port,
            epoch=self.epoch,
        )

    async def _forward(self, worker: str, stream: str, reader: Optional[asyncio.StreamReader]) -> None:
        if reader is None:
            return
        while True:
            try:
                line = await reader.readline()
            except ValueError:
                log.warning("worker output line too long; dropped", worker=worker, stream=stream)
                continue
            if not line:
                return
            log.info("worker output", worker=worker, stream=stream, line=line.decode(errors="replace").rstrip())

    async def _watch(self, handle: WorkerHandle, proc: asyncio.subprocess.Process) -> int:
        # forwarders end on their own at EOF; a grandchild holding the pipe open
        # must not delay exit handling
        self._background(self._forward(handle.name, "stdout", proc.stdout))
        self._background(self._forward(handle.name, "stderr", proc.stderr))
        returncode = await proc.wait()
        self._on_exit(handle, proc, returncode)
        return returncode

    def _on_exit(self, handle: WorkerHandle, proc: asyncio.subprocess.Process, returncode: int) -> None:
        if handle.process is not proc:
            return
        if handle.stop_epoch is not None and handle.stop_epoch == self.epoch:
            log.info("worker exited", worker=handle.name, returncode=returncode, epoch=self.epoch)
            return
        if returncode == 0:
            log.info("worker exited cleanly; not restarting", worker=handle.name)
            handle.state = WorkerState.STOPPED
            return
        if self._closed:
            log.warning("worker exited during shutdown", worker=handle.name, returncode=returncode)
            handle.state = WorkerState.STOPPED
            return
        if handle.lock.locked():
            # this worker's own stop/start cycle is running and will start it again
            log.warning(
                "worker exited during restart",
                worker=handle.name,
                returncode=returncode,
                epoch=self.epoch,
            )
            handle.state = WorkerState.STOPPED
            return
        log.error("worker crashed", worker=handle.name, pid=proc.pid, returncode=returncode)
        handle.state = WorkerState.CRASHED
        self._crashes.put_nowait(CrashEvent(handle.name, proc, returncode))

    def _backoff_delay(self, restart_count: int) -> float:
        if self.crash_backoff <= 0:
            return 0.0
        return float(min(self.crash_backoff_max, self.crash_backoff * 2 ** (restart_count - 1)))

    def _is_pending(self, handle: WorkerHandle, event: CrashEvent) -> bool:
        return (
            handle.process is event.process
            and handle.state is WorkerState.CRASHED
            and not self._closed
        )

    async def _respawn_crashed(self) -> None:
        while True:
            event = await self._crashes.get()
            handle = self.handles[event.worker]
            if not self._is_pending(handle, event):
                log.debug("crash already handled", worker=event.worker)
                continue
            handle.restart_count += 1
            delay = self._backoff_delay(handle.restart_count)
            if delay:
                log.info("delaying crash restart", worker=handle.name, delay=delay)
                await asyncio.sleep(delay)
            async with handle.lock:
                if not self._is_pending(handle, event):
                    log.info("crash restart superseded", worker=handle.name)
                    continue
                log.info(
                    "restarting crashed worker",
                    worker=handle.name,
                    returncode=event.returncode,
                    restart_count=handle.restart_count,
                )
                await self._start(handle)

    async def _stop(self, handle: WorkerHandle, epoch: int) -> None:
        """
        Terminate a worker and wait for it to exit, escalating to SIGKILL after
        the grace period. Must be called with `handle.lock` held.
        """
        proc = handle.process
        if proc is None:
            return
        handle.stop_epoch = epoch
        if proc.returncode is not None:
            handle.state = WorkerState.STOPPED
            return
        handle.state = WorkerState.STOPPING
        log.info("stopping worker", worker=handle.name, pid=proc.pid, epoch=epoch)
        try:
            proc.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.stop_grace_period)
        except asyncio.TimeoutError:
            log.warning(
                "worker did not stop in time; killing",
                worker=handle.name,
                pid=proc.pid,
                grace_period=self.stop_grace_period,
            )
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=KILL_WAIT_SECONDS)
            except asyncio.TimeoutError as e:
                raise ProcessError(handle.name, f"pid {proc.pid} survived SIGKILL") from e
        handle.state = WorkerState.STOPPED
        log.info("worker stopped", worker=handle.name, returncode=proc.returncode, epoch=epoch)

    async def _cycle(self, handle: WorkerHandle, epoch: int) -> None:
        async with handle.lock:
            try:
                await self._stop(handle, epoch)
            except ProcessError as e:
                log.error("could not stop worker; not respawning it", worker=handle.name, error=str(e))
                return
            if not self._closed:
                await self._start(handle)

    async def restart_all(self) -> None:
        """
        Stop every worker and start it again.

        Single-flight: callers arriving while a restart is running wait for
        that restart instead of starting another one.
        """
        if self._restart_task is not None and not self._restart_task.done():
            log.info("restart already in progress; waiting for it", epoch=self.epoch)
            await asyncio.shield(self._restart_task)
            return
        self._restart_task = asyncio.create_task(self._restart_all())
        await asyncio.shield(self._restart_task)

    async def _restart_all(self) -> None:
        async with self._restart_lock:
            self._restarting = True
            self.epoch += 1
            epoch = self.epoch
            log.info("restarting workers", epoch=epoch)
            try:
                await asyncio.gather(*(self._cycle(h, epoch) for h in self.handles.values()))
            finally:
                self._restarting = False
            log.info("workers restarted", epoch=epoch, workers=self.status()["workers"])

    async def _stop_one(self, handle: WorkerHandle, epoch: int) -> None:
        async with handle.lock:
            try:
                await self._stop(handle, epoch)
            except ProcessError as e:
                log.error("could not stop worker", worker=handle.name, error=str(e))

    async def _stop_all(self) -> None:
        async with self._restart_lock:
            self.epoch += 1
            epoch = self.epoch
            log.info("stopping workers", epoch=epoch)
            await asyncio.gather(*(self._stop_one(h, epoch) for h in self.handles.values()))

    def _kill_remaining(self) -> None:
        for handle in self.handles.values():
            proc = handle.process
            if proc is None or proc.returncode is not None:
                continue
            log.error("killing worker", worker=handle.name, pid=proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def stop_all(self, timeout: Optional[float] = None) -> None:
        """
        Stop every worker without respawning. Used at shutdown; after `timeout`
        any worker still alive is killed outright.
        """
        self._closed = True
        try:
            await asyncio.wait_for(self._stop_all(), timeout=timeout)
        except asyncio.TimeoutError:
            log.error("worker shutdown timed out", timeout=timeout)
            self._kill_remaining()
        finally:
            if self._respawner is not None:
                self._respawner.cancel()
                try:
                    await self._respawner
                except asyncio.CancelledError:
                    pass
                self._respawner = None
