"""
Pull the tracked branch into the working directory.

Pulls are fast-forward only, so a pull either moves HEAD to the remote commit
or leaves the checkout alone. Local edits that would be overwritten, a diverged
history, an unreachable remote or a rejected credential all fail the pull.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog
from pydantic import BaseModel

from respawn import commands
from respawn.errors import UpdateError

log = structlog.get_logger()

BRANCH_REF_PREFIX = "refs/heads/"

# never prompt for credentials; an auth failure must fail the pull
GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


class PullResult(BaseModel):
    ok: bool
    detail: str = ""
    before: Optional[str] = None
    after: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.ok and self.before != self.after


def branch_name(ref: str) -> str:
    if ref.startswith(BRANCH_REF_PREFIX):
        return ref[len(BRANCH_REF_PREFIX) :]
    return ref


class SourceUpdater:
    def __init__(self, *, git: str = "git", timeout: float = 120) -> None:
        self.git = git
        self.timeout = timeout

    async def _git(self, workdir: str, *args: str) -> str:
        argv = [self.git, *args]
        try:
            result = await commands.run(argv, cwd=workdir, env=GIT_ENV, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise UpdateError(f"git {args[0]} timed out after {self.timeout}s") from e
        except OSError as e:
            raise UpdateError(f"could not run git: {e}") from e
        if not result.ok:
            raise UpdateError(
                f"git {args[0]} exited with {result.returncode}: {result.output.strip()}"
            )
        return result.output.strip()

    async def _head(self, workdir: str) -> str:
        return await self._git(workdir, "rev-parse", "HEAD")

    async def pull(self, workdir: str, remote: str, branch_ref: str) -> PullResult:
        branch = branch_name(branch_ref)
        try:
            before = await self._head(workdir)
        except UpdateError as e:
            log.error("pull failed", stage="pull", workdir=workdir, error=str(e))
            return PullResult(ok=False, detail=str(e))

        try:
            await self._git(workdir, "pull", "--ff-only", remote, branch)
        except UpdateError as e:
            log.error(
                "pull failed", stage="pull", workdir=workdir, remote=remote, branch=branch, error=str(e)
            )
            await self._restore(workdir, before)
            return PullResult(ok=False, detail=str(e), before=before, after=before)

        try:
            after: Optional[str] = await self._head(workdir)
        except UpdateError as e:
            log.warning("could not read HEAD after pull", stage="pull", error=str(e))
            after = None
        log.info("pull finished", stage="pull", remote=remote, branch=branch, before=before, after=after)
        return PullResult(ok=True, before=before, after=after)

    async def _restore(self, workdir: str, before: str) -> None:
        try:
            current = await self._head(workdir)
            if current != before:
                log.warning("resetting working directory", stage="pull", head=current, target=before)
                await self._git(workdir, "reset", "--keep", before)
        except UpdateError as e:
            log.error("could not restore working directory", stage="pull", target=before, error=str(e))
