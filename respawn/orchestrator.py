"""
Deploy orchestration

Every deploy trigger goes through one state machine:

    Idle -> Verifying -> Pulling -> Building -> Restarting -> Idle

- push events are verified, then pulled and built when they target the
  tracked branch
- a manual restart token and local file changes (development mode) enter
  directly at Restarting
- a trigger that arrives while the machine is not Idle is rejected, never
  queued, so two deploys never share the working directory

The HTTP status for a deploy is decided once the restart decision is final.
The restart itself runs in the background so the webhook sender doesn't time
out waiting on workers; the machine stays in Restarting until it completes.
"""

from __future__ import annotations

import asyncio
import enum
import hmac
import json
from typing import Any, Dict, Optional, Protocol
from urllib.parse import parse_qs

import structlog
from pydantic import BaseModel
from starlette import status

from respawn.build import BuildResult
from respawn.errors import AuthenticationError
from respawn.signature import check_signature
from respawn.source import PullResult

log = structlog.get_logger()


class State(str, enum.Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    PULLING = "pulling"
    BUILDING = "building"
    RESTARTING = "restarting"


class TriggerKind(str, enum.Enum):
    PUSH = "push"
    MANUAL_TOKEN = "manual-token"
    DEV_CHANGE = "dev-change"


class Outcome(str, enum.Enum):
    SKIPPED = "skipped"
    SIGNATURE_INVALID = "signature_invalid"
    PULL_FAILED = "pull_failed"
    BUILD_FAILED = "build_failed"
    SUCCESS = "success"


OUTCOME_STATUS = {
    Outcome.SKIPPED: status.HTTP_200_OK,
    Outcome.SUCCESS: status.HTTP_200_OK,
    Outcome.SIGNATURE_INVALID: status.HTTP_403_FORBIDDEN,
    Outcome.PULL_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    Outcome.BUILD_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class DeploymentAttempt(BaseModel):
    trigger: TriggerKind
    branch: Optional[str] = None
    outcome: Outcome
    detail: str = ""

    @property
    def status_code(self) -> int:
        return OUTCOME_STATUS[self.outcome]


class Updater(Protocol):
    async def pull(self, workdir: str, remote: str, branch_ref: str) -> PullResult:
        ...


class Builder(Protocol):
    async def build(self, project_root: str, mode: str) -> BuildResult:
        ...


class Restarter(Protocol):
    async def restart_all(self) -> None:
        ...


def parse_payload(body: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
    """
    Decode a webhook body as JSON, or as a urlencoded form. Anything
    undecodable is an empty payload.
    """
    if content_type and content_type.startswith("application/x-www-form-urlencoded"):
        form = parse_qs(body.decode(errors="replace"))
        return {k: v[-1] for k, v in form.items()}
    try:
        payload = json.loads(body)
    except ValueError:
        return {}
    if not isinstance(payload, dict):
        return {}
    return payload


class WebhookOrchestrator:
    def __init__(
        self,
        *,
        updater: Updater,
        builder: Builder,
        supervisor: Restarter,
        secret: str,
        restart_token: str,
        repository_path: str,
        remote: str,
        branch: str,
        build_mode: str,
        development: bool = False,
    ) -> None:
        self.updater = updater
        self.builder = builder
        self.supervisor = supervisor
        self.secret = secret
        self.restart_token = restart_token
        self.repository_path = repository_path
        self.remote = remote
        self.branch = branch
        self.build_mode = build_mode
        self.development = development
        self.state = State.IDLE
        self.restart_task: Optional[asyncio.Task[None]] = None

    def is_restart_token(self, payload: Dict[str, Any]) -> bool:
        token = payload.get("token")
        if not self.restart_token or not isinstance(token, str):
            return False
        return hmac.compare_digest(token.encode(), self.restart_token.encode())

    def _busy(self, trigger: TriggerKind, branch: Optional[str] = None) -> DeploymentAttempt:
        return self._finish(
            DeploymentAttempt(trigger=trigger, branch=branch, outcome=Outcome.SKIPPED, detail="busy"),
        )

    def _finish(self, attempt: DeploymentAttempt) -> DeploymentAttempt:
        if attempt.outcome in (Outcome.SKIPPED, Outcome.SUCCESS):
            log.info("deployment attempt", **attempt.model_dump(mode="json"))
        else:
            log.error("deployment attempt", **attempt.model_dump(mode="json"))
        return attempt

    async def handle_webhook(
        self,
        body: bytes,
        signature: Optional[str],
        *,
        event: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> DeploymentAttempt:
        """
        Entry point for the deploy endpoint. `body` must be the raw request
        body as received.
        """
        payload = parse_payload(body, content_type)
        if self.is_restart_token(payload):
            log.info("received restart token")
            return self.trigger_restart(TriggerKind.MANUAL_TOKEN)
        if event is not None and event != "push":
            return self._finish(
                DeploymentAttempt(
                    trigger=TriggerKind.PUSH, outcome=Outcome.SKIPPED, detail=f"ignored event: {event}"
                )
            )
        if self.development:
            log.info("push event ignored in development mode")
            return self._finish(
                DeploymentAttempt(
                    trigger=TriggerKind.PUSH, outcome=Outcome.SKIPPED, detail="development mode"
                )
            )
        return await self.handle_push(body, signature, payload)

    async def handle_push(
        self, body: bytes, signature: Optional[str], payload: Optional[Dict[str, Any]] = None
    ) -> DeploymentAttempt:
        if self.state is not State.IDLE:
            return self._busy(TriggerKind.PUSH)
        self.state = State.VERIFYING
        try:
            try:
                check_signature(body, signature, self.secret)
            except AuthenticationError as e:
                return self._finish(
                    DeploymentAttempt(
                        trigger=TriggerKind.PUSH, outcome=Outcome.SIGNATURE_INVALID, detail=str(e)
                    )
                )

            if payload is None:
                payload = parse_payload(body)
            ref = payload.get("ref")
            branch = ref if isinstance(ref, str) else None
            if branch != self.branch:
                return self._finish(
                    DeploymentAttempt(
                        trigger=TriggerKind.PUSH,
                        branch=branch,
                        outcome=Outcome.SKIPPED,
                        detail=f"untracked branch; tracking {self.branch}",
                    )
                )

            log.info("received push event", branch=branch)
            self.state = State.PULLING
            pulled = await self.updater.pull(self.repository_path, self.remote, self.branch)
            if not pulled.ok:
                return self._finish(
                    DeploymentAttempt(
                        trigger=TriggerKind.PUSH,
                        branch=branch,
                        outcome=Outcome.PULL_FAILED,
                        detail=pulled.detail,
                    )
                )

            self.state = State.BUILDING
            built = await self.builder.build(self.repository_path, self.build_mode)
            if not built.success:
                return self._finish(
                    DeploymentAttempt(
                        trigger=TriggerKind.PUSH,
                        branch=branch,
                        outcome=Outcome.BUILD_FAILED,
                        detail="\n".join(built.diagnostics),
                    )
                )

            self._restart_in_background()
            return self._finish(
                DeploymentAttempt(trigger=TriggerKind.PUSH, branch=branch, outcome=Outcome.SUCCESS)
            )
        finally:
            if self.state is not State.RESTARTING:
                self.state = State.IDLE

    def trigger_restart(self, trigger: TriggerKind) -> DeploymentAttempt:
        """
        Enter directly at Restarting. Used by the manual token and by the
        development file watcher.
        """
        if self.state is not State.IDLE:
            return self._busy(trigger)
        self._restart_in_background()
        return self._finish(DeploymentAttempt(trigger=trigger, outcome=Outcome.SUCCESS))

    def _restart_in_background(self) -> None:
        self.state = State.RESTARTING
        self.restart_task = asyncio.create_task(self._restart())

    async def _restart(self) -> None:
        try:
            await self.supervisor.restart_all()
        except Exception:
            log.exception("restart failed", stage="restart")
        finally:
            self.state = State.IDLE

    async def wait_idle(self) -> None:
        if self.restart_task is not None:
            await asyncio.shield(self.restart_task)
