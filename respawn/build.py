"""
Run the project's build step and report its outcome as data.

Success is derived from diagnostics, not from the exit code alone: bundlers
are known to print errors and still exit 0.
"""

from __future__ import annotations

import asyncio
import re
from typing import List, Sequence

import structlog
from pydantic import BaseModel

from respawn import commands
from respawn.errors import BuildError
from respawn.settings import DEFAULT_BUILD_ERROR_PATTERN

log = structlog.get_logger()

OUTPUT_TAIL_LINES = 20


class BuildResult(BaseModel):
    success: bool
    diagnostics: List[str] = []
    output: str = ""


def _tail(output: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(output.strip().splitlines()[-lines:])


class BuildRunner:
    def __init__(
        self,
        command: Sequence[str],
        *,
        error_pattern: str = DEFAULT_BUILD_ERROR_PATTERN,
        timeout: float = 600,
    ) -> None:
        self.command = tuple(command)
        self.error_pattern = re.compile(error_pattern)
        self.timeout = timeout

    def diagnostics(self, output: str) -> List[str]:
        return [m.group(0).strip() for m in self.error_pattern.finditer(output)]

    async def _run(self, project_root: str, mode: str) -> commands.CommandResult:
        try:
            return await commands.run(
                self.command,
                cwd=project_root,
                env={"BUILD_MODE": mode, "NODE_ENV": mode},
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise BuildError([f"build timed out after {self.timeout}s"]) from e
        except OSError as e:
            raise BuildError([f"could not run build command {self.command[0]!r}: {e}"]) from e

    async def build(self, project_root: str, mode: str) -> BuildResult:
        if not self.command:
            log.info("no build command configured; skipping build", stage="build")
            return BuildResult(success=True)

        try:
            result = await self._run(project_root, mode)
        except BuildError as e:
            log.error("build failed", stage="build", diagnostics=e.diagnostics)
            return BuildResult(success=False, diagnostics=e.diagnostics)

        diagnostics = self.diagnostics(result.output)
        if not result.ok and not diagnostics:
            diagnostics = [f"build exited with code {result.returncode}:\n{_tail(result.output)}"]

        if diagnostics:
            log.error(
                "build failed",
                stage="build",
                mode=mode,
                returncode=result.returncode,
                diagnostics=diagnostics,
            )
            return BuildResult(success=False, diagnostics=diagnostics, output=result.output)

        log.info("build finished", stage="build", mode=mode)
        log.debug("build output", output=result.output)
        return BuildResult(success=True, output=result.output)
