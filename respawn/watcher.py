"""
Development file watcher.

Polls the watched paths for modification-time changes and feeds each batch of
changes to the orchestrator as a dev-change trigger, the same restart path a
manual restart token takes.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Set

import structlog

log = structlog.get_logger()

IGNORED_DIRECTORIES = frozenset({".git", "node_modules", "__pycache__", ".venv", "dist", "build"})

Snapshot = Dict[str, float]


def snapshot(paths: Iterable[Path]) -> Snapshot:
    files: Snapshot = {}
    for root in paths:
        if root.is_file():
            try:
                files[str(root)] = root.stat().st_mtime
            except OSError:
                continue
            continue
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if d not in IGNORED_DIRECTORIES]
            for filename in filenames:
                path = os.path.join(dirpath, filename)
                try:
                    files[path] = os.stat(path).st_mtime
                except OSError:
                    # removed between listing and stat
                    continue
    return files


def changed_paths(before: Snapshot, after: Snapshot) -> Set[str]:
    changed = {p for p in after if before.get(p) != after[p]}
    changed |= set(before) - set(after)
    return changed


class DevFileWatcher:
    def __init__(
        self,
        paths: Iterable[str],
        on_change: Callable[[Set[str]], object],
        *,
        base: str = ".",
        interval: float = 1.0,
    ) -> None:
        self.paths = [Path(base, p) for p in paths]
        self.on_change = on_change
        self.interval = interval
        self._snapshot: Snapshot = {}
        self._task: Optional[asyncio.Task[None]] = None

    def poll(self) -> Set[str]:
        """
        Take a new snapshot and return the paths changed since the previous one.
        """
        current = snapshot(self.paths)
        changed = changed_paths(self._snapshot, current)
        self._snapshot = current
        return changed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            changed = await asyncio.to_thread(self.poll)
            if changed:
                log.info("file changes detected", count=len(changed), paths=sorted(changed)[:10])
                self.on_change(changed)

    def start(self) -> None:
        missing = [str(p) for p in self.paths if not p.exists()]
        if missing:
            log.warning("watch paths do not exist", paths=missing)
        self._snapshot = snapshot(self.paths)
        self._task = asyncio.create_task(self._run())
        log.info("watching for file changes", paths=[str(p) for p in self.paths], interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
