"""
Supervisor configuration.

Values come from the environment (or a `.env` file) and are validated into an
immutable `Settings` model. Startup fails fast with `ConfigurationError` on
anything that would otherwise surface later as a port conflict or an
unauthenticated deploy endpoint.
"""

from __future__ import annotations

import re
import shlex
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from starlette.config import Config

from respawn.errors import ConfigurationError

config = Config(".env")

DEVELOPMENT = "development"
PRODUCTION = "production"

APP_WORKER = "app"
WEBHOOK_WORKER = "webhook"

# webpack "ERROR in ...", tsc "error TS2304: ...", generic "error: ..."
DEFAULT_BUILD_ERROR_PATTERN = r"(?m)^.*(?:\bERROR\b|\berror(?: TS\d+)?:).*$"


class WorkerSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    entrypoint: Tuple[str, ...]
    port: int
    env: Dict[str, str] = {}
    cwd: Optional[str] = None

    @field_validator("entrypoint")
    @classmethod
    def entrypoint_not_empty(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        if not v:
            raise ValueError("entrypoint must not be empty")
        return v


class ProxyRoute(BaseModel):
    model_config = ConfigDict(frozen=True)

    prefix: str
    worker: str


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    environment: str = PRODUCTION
    logging_level: str = "INFO"
    server_host: str = "0.0.0.0"
    server_port: int = 3000
    workers: Tuple[WorkerSpec, ...]
    routes: Tuple[ProxyRoute, ...]
    webhook_secret: str = ""
    restart_token: str = ""
    repository_path: str = "."
    repository_remote: str = "origin"
    branch: str = "refs/heads/main"
    build_command: Tuple[str, ...] = ()
    build_error_pattern: str = DEFAULT_BUILD_ERROR_PATTERN
    build_timeout: float = 600
    pull_timeout: float = 120
    stop_grace_period: float = 10
    shutdown_timeout: float = 30
    crash_backoff: float = 0
    crash_backoff_max: float = 30
    deploy_webhook_path: str = "/_deploy/webhook"
    watch_paths: Tuple[str, ...] = ("src",)
    watch_interval: float = 1.0

    @property
    def is_development(self) -> bool:
        return self.environment == DEVELOPMENT

    @property
    def build_mode(self) -> str:
        return DEVELOPMENT if self.is_development else PRODUCTION

    @field_validator("environment")
    @classmethod
    def known_environment(cls, v: str) -> str:
        if v not in (DEVELOPMENT, PRODUCTION):
            raise ValueError(f"must be {DEVELOPMENT!r} or {PRODUCTION!r}")
        return v

    @field_validator("build_error_pattern")
    @classmethod
    def compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regular expression: {e}") from e
        return v

    @field_validator("deploy_webhook_path")
    @classmethod
    def absolute_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("must start with '/'")
        return v

    @model_validator(mode="after")
    def check_consistency(self) -> "Settings":
        ports: Dict[int, str] = {self.server_port: "server"}
        for worker in self.workers:
            if worker.port in ports:
                raise ValueError(
                    f"port {worker.port} used by both {ports[worker.port]!r} and {worker.name!r}"
                )
            ports[worker.port] = worker.name
        names = {w.name for w in self.workers}
        for route in self.routes:
            if route.worker not in names:
                raise ValueError(f"route {route.prefix!r} targets unknown worker {route.worker!r}")
        if not self.is_development and not self.webhook_secret:
            raise ValueError("WEBHOOK_SECRET is required in production")
        return self


def _split(value: str) -> Tuple[str, ...]:
    return tuple(shlex.split(value))


def _csv(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def load_settings(config: Config = config) -> Settings:
    """
    Build `Settings` from a starlette `Config`.

    Raises `ConfigurationError` for anything missing or inconsistent.
    """
    try:
        environment = config("ENVIRONMENT", default=PRODUCTION)
        app_port = config("APP_PORT", cast=int, default=3001)
        webhook_port = config("WEBHOOK_PORT", cast=int, default=3002)
        worker_env = {"ENVIRONMENT": environment}
        workers: List[WorkerSpec] = [
            WorkerSpec(
                name=APP_WORKER,
                entrypoint=_split(config("APP_COMMAND")),
                port=app_port,
                env=worker_env,
            ),
            WorkerSpec(
                name=WEBHOOK_WORKER,
                entrypoint=_split(config("WEBHOOK_COMMAND")),
                port=webhook_port,
                env=worker_env,
            ),
        ]
        return Settings(
            environment=environment,
            logging_level=config("LOGGING_LEVEL", default="INFO"),
            server_host=config("SERVER_HOST", default="0.0.0.0"),
            server_port=config("SERVER_PORT", cast=int, default=3000),
            workers=tuple(workers),
            routes=(
                ProxyRoute(prefix="/webhook", worker=WEBHOOK_WORKER),
                ProxyRoute(prefix="/", worker=APP_WORKER),
            ),
            webhook_secret=config("WEBHOOK_SECRET", default=""),
            restart_token=config("RESTART_TOKEN", default=""),
            repository_path=config("REPOSITORY_PATH", default="."),
            repository_remote=config("REPOSITORY_REMOTE", default="origin"),
            branch=config("BRANCH", default="refs/heads/main"),
            build_command=_split(config("BUILD_COMMAND", default="")),
            build_error_pattern=config("BUILD_ERROR_PATTERN", default=DEFAULT_BUILD_ERROR_PATTERN),
            build_timeout=config("BUILD_TIMEOUT", cast=float, default=600),
            pull_timeout=config("PULL_TIMEOUT", cast=float, default=120),
            stop_grace_period=config("STOP_GRACE_PERIOD", cast=float, default=10),
            shutdown_timeout=config("SHUTDOWN_TIMEOUT", cast=float, default=30),
            crash_backoff=config("CRASH_BACKOFF", cast=float, default=0),
            crash_backoff_max=config("CRASH_BACKOFF_MAX", cast=float, default=30),
            deploy_webhook_path=config("DEPLOY_WEBHOOK_PATH", default="/_deploy/webhook"),
            watch_paths=_csv(config("WATCH_PATHS", default="src")),
            watch_interval=config("WATCH_INTERVAL", cast=float, default=1.0),
        )
    except KeyError as e:
        raise ConfigurationError(str(e.args[0])) from e
    except (ValueError, ValidationError) as e:
        raise ConfigurationError(str(e)) from e
