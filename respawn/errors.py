from __future__ import annotations

from starlette import status
from starlette.exceptions import HTTPException


class HTTPForbidden(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class RespawnError(Exception):
    pass


class ConfigurationError(RespawnError):
    """
    Fatal at startup: missing settings, duplicate ports, bad patterns.
    """


class AuthenticationError(RespawnError):
    pass


class UpdateError(RespawnError):
    """
    Pulling the tracked branch failed. The working directory is left as it
    was before the pull.
    """


class BuildError(RespawnError):
    def __init__(self, diagnostics: list[str]) -> None:
        super().__init__("; ".join(diagnostics) or "build failed")
        self.diagnostics = diagnostics


class ProcessError(RespawnError):
    def __init__(self, worker: str, message: str) -> None:
        super().__init__(f"{worker}: {message}")
        self.worker = worker


class ProxyError(RespawnError):
    pass
