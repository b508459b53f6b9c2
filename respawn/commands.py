from __future__ import annotations

import asyncio
import os
from typing import Dict, Optional, Sequence

from pydantic import BaseModel


class CommandResult(BaseModel):
    argv: Sequence[str]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run(
    argv: Sequence[str],
    *,
    cwd: str,
    timeout: float,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run `argv` to completion, capturing stdout and stderr together.

    Raises `asyncio.TimeoutError` after killing the process if it outlives
    `timeout`, and `OSError` if it can't be started at all.
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env={**os.environ, **(env or {})},
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    # communicate() has already reaped the process
    returncode = await proc.wait()
    return CommandResult(
        argv=list(argv),
        returncode=returncode,
        output=stdout.decode(errors="replace"),
    )
