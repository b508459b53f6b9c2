"""
An http server that fronts the worker processes.

Ordinary requests are proxied to a worker by path prefix. The deploy endpoint
accepts GitHub push webhooks (and a manual restart token), pulls and builds the
tracked branch and restarts the workers, while this process keeps serving.
"""

from __future__ import annotations

import contextlib
from typing import AsyncIterator, Optional

import structlog
from fastapi import FastAPI, Header
from sentry_sdk.integrations.asgi import SentryAsgiMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from respawn.build import BuildRunner
from respawn.errors import HTTPForbidden
from respawn.orchestrator import Outcome, TriggerKind, WebhookOrchestrator
from respawn.proxy import ReverseProxyRouter
from respawn.settings import Settings
from respawn.source import SourceUpdater
from respawn.supervisor import ProcessSupervisor
from respawn.watcher import DevFileWatcher

log = structlog.get_logger()

HEALTH_PATH = "/_deploy/health"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

OUTCOME_MESSAGES = {
    Outcome.SUCCESS: "Success",
    Outcome.SKIPPED: "Skipped",
    Outcome.PULL_FAILED: "Error",
    Outcome.BUILD_FAILED: "Error",
}


def create_supervisor(settings: Settings) -> ProcessSupervisor:
    return ProcessSupervisor(
        settings.workers,
        stop_grace_period=settings.stop_grace_period,
        crash_backoff=settings.crash_backoff,
        crash_backoff_max=settings.crash_backoff_max,
    )


def create_orchestrator(settings: Settings, supervisor: ProcessSupervisor) -> WebhookOrchestrator:
    return WebhookOrchestrator(
        updater=SourceUpdater(timeout=settings.pull_timeout),
        builder=BuildRunner(
            settings.build_command,
            error_pattern=settings.build_error_pattern,
            timeout=settings.build_timeout,
        ),
        supervisor=supervisor,
        secret=settings.webhook_secret,
        restart_token=settings.restart_token,
        repository_path=settings.repository_path,
        remote=settings.repository_remote,
        branch=settings.branch,
        build_mode=settings.build_mode,
        development=settings.is_development,
    )


def create_app(
    settings: Settings,
    *,
    supervisor: Optional[ProcessSupervisor] = None,
    orchestrator: Optional[WebhookOrchestrator] = None,
    router: Optional[ReverseProxyRouter] = None,
) -> FastAPI:
    supervisor = supervisor or create_supervisor(settings)
    orchestrator = orchestrator or create_orchestrator(settings, supervisor)
    router = router or ReverseProxyRouter(
        settings.routes, {w.name: w.port for w in settings.workers}
    )
    watcher: Optional[DevFileWatcher] = None
    if settings.is_development:
        watcher = DevFileWatcher(
            settings.watch_paths,
            lambda changed: orchestrator.trigger_restart(TriggerKind.DEV_CHANGE),
            base=settings.repository_path,
            interval=settings.watch_interval,
        )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("starting workers", environment=settings.environment)
        await supervisor.start_all()
        if watcher is not None:
            watcher.start()
        try:
            yield
        finally:
            log.info("graceful shutdown initiated")
            if watcher is not None:
                await watcher.stop()
            await supervisor.stop_all(timeout=settings.shutdown_timeout)
            await router.aclose()
            log.info("shutdown complete")

    # docs routes would shadow worker paths behind the catch-all proxy
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(SentryAsgiMiddleware)
    app.state.supervisor = supervisor
    app.state.orchestrator = orchestrator
    app.state.router = router

    @app.get(HEALTH_PATH)
    async def health() -> Response:
        return JSONResponse({"state": orchestrator.state.value, **supervisor.status()})

    @app.post(settings.deploy_webhook_path)
    async def deploy_webhook(
        *,
        request: Request,
        x_github_event: Optional[str] = Header(None),
        x_hub_signature_256: Optional[str] = Header(None),
    ) -> Response:
        """
        Entrypoint for deploy webhooks.

        The body is read raw, before any parsing, so the signature is checked
        against exactly the bytes that were signed.
        """
        body = await request.body()
        if x_github_event == "ping":
            return PlainTextResponse("pong")

        attempt = await orchestrator.handle_webhook(
            body,
            x_hub_signature_256,
            event=x_github_event,
            content_type=request.headers.get("content-type"),
        )
        if attempt.outcome is Outcome.SIGNATURE_INVALID:
            raise HTTPForbidden("Invalid signature")
        return PlainTextResponse(OUTCOME_MESSAGES[attempt.outcome], status_code=attempt.status_code)

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request) -> Response:
        return await router.route(request)

    return app
