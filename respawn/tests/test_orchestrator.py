from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

import pytest

from respawn.orchestrator import (
    DeploymentAttempt,
    Outcome,
    State,
    TriggerKind,
    WebhookOrchestrator,
    parse_payload,
)
from respawn.signature import sign
from respawn.source import PullResult
from respawn.tests.utils import FakeBuilder, FakeSupervisor, FakeUpdater

SECRET = "webhook-secret"
TOKEN = "restart-me"
TRACKED = "refs/heads/main"


def make_orchestrator(
    *,
    pull_ok: bool = True,
    build_ok: bool = True,
    development: bool = False,
) -> tuple[WebhookOrchestrator, FakeUpdater, FakeBuilder, FakeSupervisor]:
    updater = FakeUpdater(pull_ok)
    builder = FakeBuilder(build_ok)
    supervisor = FakeSupervisor()
    orchestrator = WebhookOrchestrator(
        updater=updater,
        builder=builder,
        supervisor=supervisor,
        secret=SECRET,
        restart_token=TOKEN,
        repository_path="/srv/app",
        remote="origin",
        branch=TRACKED,
        build_mode="production",
        development=development,
    )
    return orchestrator, updater, builder, supervisor


def push_body(ref: str = TRACKED) -> bytes:
    return json.dumps({"ref": ref, "after": "d6fde92930d4715a2b49857d24b940956b26d2d3"}).encode()


async def push(orchestrator: WebhookOrchestrator, body: bytes, signature: Optional[str] = None) -> DeploymentAttempt:
    return await orchestrator.handle_webhook(
        body, signature if signature is not None else sign(body, SECRET), event="push"
    )


@pytest.mark.asyncio
async def test_tracked_push_pulls_builds_and_restarts() -> None:
    orchestrator, updater, builder, supervisor = make_orchestrator()

    attempt = await push(orchestrator, push_body())

    assert attempt.outcome is Outcome.SUCCESS
    assert attempt.status_code == 200
    assert attempt.trigger is TriggerKind.PUSH
    assert attempt.branch == TRACKED
    assert updater.calls == [("/srv/app", "origin", TRACKED)]
    assert builder.calls == [("/srv/app", "production")]
    await orchestrator.wait_idle()
    assert supervisor.restarts == 1
    assert orchestrator.state is State.IDLE


@pytest.mark.asyncio
async def test_untracked_branch_is_skipped() -> None:
    orchestrator, updater, builder, supervisor = make_orchestrator()

    attempt = await push(orchestrator, push_body("refs/heads/feature"))

    assert attempt.outcome is Outcome.SKIPPED
    assert attempt.status_code == 200
    assert updater.calls == []
    assert builder.calls == []
    assert supervisor.restarts == 0
    assert orchestrator.state is State.IDLE


@pytest.mark.asyncio
async def test_tampered_signature_is_rejected() -> None:
    orchestrator, updater, builder, supervisor = make_orchestrator()
    body = push_body()
    signature = sign(body, SECRET)
    tampered = signature[:-1] + ("0" if signature[-1] != "0" else "1")

    attempt = await push(orchestrator, body, tampered)

    assert attempt.outcome is Outcome.SIGNATURE_INVALID
    assert attempt.status_code == 403
    assert updater.calls == []
    assert supervisor.restarts == 0
    assert orchestrator.state is State.IDLE


@pytest.mark.asyncio
async def test_missing_signature_is_rejected() -> None:
    orchestrator, updater, _, _ = make_orchestrator()
    attempt = await orchestrator.handle_webhook(push_body(), None)
    assert attempt.outcome is Outcome.SIGNATURE_INVALID
    assert updater.calls == []


@pytest.mark.asyncio
async def test_manual_token_restarts_without_pull_or_build() -> None:
    orchestrator, updater, builder, supervisor = make_orchestrator()

    attempt = await orchestrator.handle_webhook(json.dumps({"token": TOKEN}).encode(), None)

    assert attempt.outcome is Outcome.SUCCESS
    assert attempt.trigger is TriggerKind.MANUAL_TOKEN
    await orchestrator.wait_idle()
    assert supervisor.restarts == 1
    assert updater.calls == []
    assert builder.calls == []


@pytest.mark.asyncio
async def test_manual_token_as_form() -> None:
    orchestrator, _, _, supervisor = make_orchestrator()
    attempt = await orchestrator.handle_webhook(
        f"token={TOKEN}".encode(), None, content_type="application/x-www-form-urlencoded"
    )
    assert attempt.trigger is TriggerKind.MANUAL_TOKEN
    await orchestrator.wait_idle()
    assert supervisor.restarts == 1


@pytest.mark.asyncio
async def test_wrong_token_falls_through_to_signature_check() -> None:
    orchestrator, _, _, supervisor = make_orchestrator()
    attempt = await orchestrator.handle_webhook(json.dumps({"token": "guess"}).encode(), None)
    assert attempt.outcome is Outcome.SIGNATURE_INVALID
    assert supervisor.restarts == 0


@pytest.mark.asyncio
async def test_pull_failure_leaves_workers_alone() -> None:
    orchestrator, _, builder, supervisor = make_orchestrator(pull_ok=False)

    attempt = await push(orchestrator, push_body())

    assert attempt.outcome is Outcome.PULL_FAILED
    assert attempt.status_code == 500
    assert attempt.detail == "merge conflict"
    assert builder.calls == []
    assert supervisor.restarts == 0
    assert orchestrator.state is State.IDLE


@pytest.mark.asyncio
async def test_build_failure_never_restarts() -> None:
    orchestrator, updater, _, supervisor = make_orchestrator(build_ok=False)

    attempt = await push(orchestrator, push_body())

    assert attempt.outcome is Outcome.BUILD_FAILED
    assert attempt.status_code == 500
    assert "ERROR in ./src/app.ts" in attempt.detail
    assert len(updater.calls) == 1
    assert supervisor.restarts == 0
    assert orchestrator.restart_task is None
    assert orchestrator.state is State.IDLE


@pytest.mark.asyncio
async def test_trigger_while_restarting_is_rejected() -> None:
    orchestrator, updater, _, supervisor = make_orchestrator()
    supervisor.release.clear()

    first = orchestrator.trigger_restart(TriggerKind.DEV_CHANGE)
    await asyncio.sleep(0)
    assert orchestrator.state is State.RESTARTING

    second = await push(orchestrator, push_body())
    third = orchestrator.trigger_restart(TriggerKind.MANUAL_TOKEN)

    assert first.outcome is Outcome.SUCCESS
    assert second.outcome is Outcome.SKIPPED
    assert second.detail == "busy"
    assert third.outcome is Outcome.SKIPPED
    assert updater.calls == []

    supervisor.release.set()
    await orchestrator.wait_idle()
    assert supervisor.restarts == 1
    assert orchestrator.state is State.IDLE


@pytest.mark.asyncio
async def test_trigger_while_pulling_is_rejected() -> None:
    orchestrator, updater, _, supervisor = make_orchestrator()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_pull(workdir: str, remote: str, branch_ref: str) -> PullResult:
        entered.set()
        await release.wait()
        return PullResult(ok=True)

    updater.pull = slow_pull  # type: ignore[method-assign]
    first = asyncio.create_task(push(orchestrator, push_body()))
    await entered.wait()
    assert orchestrator.state is State.PULLING

    second = await push(orchestrator, push_body())
    assert second.outcome is Outcome.SKIPPED

    release.set()
    assert (await first).outcome is Outcome.SUCCESS
    await orchestrator.wait_idle()
    assert supervisor.restarts == 1


@pytest.mark.asyncio
async def test_development_mode_ignores_push() -> None:
    orchestrator, updater, _, supervisor = make_orchestrator(development=True)
    attempt = await push(orchestrator, push_body())
    assert attempt.outcome is Outcome.SKIPPED
    assert updater.calls == []
    assert supervisor.restarts == 0


@pytest.mark.asyncio
async def test_non_push_event_is_ignored() -> None:
    orchestrator, updater, _, _ = make_orchestrator()
    body = b'{"action": "opened"}'
    attempt = await orchestrator.handle_webhook(body, sign(body, SECRET), event="issues")
    assert attempt.outcome is Outcome.SKIPPED
    assert updater.calls == []


@pytest.mark.asyncio
async def test_failed_restart_returns_to_idle() -> None:
    orchestrator, _, _, supervisor = make_orchestrator()

    async def broken_restart() -> None:
        raise RuntimeError("boom")

    supervisor.restart_all = broken_restart  # type: ignore[method-assign]
    orchestrator.trigger_restart(TriggerKind.MANUAL_TOKEN)
    await orchestrator.wait_idle()
    assert orchestrator.state is State.IDLE


@pytest.mark.parametrize(
    "body,content_type,expected",
    [
        (b'{"ref": "refs/heads/main"}', "application/json", {"ref": "refs/heads/main"}),
        (b"token=abc&x=1", "application/x-www-form-urlencoded", {"token": "abc", "x": "1"}),
        (b"not json", None, {}),
        (b"[1, 2]", None, {}),
    ],
)
def test_parse_payload(body: bytes, content_type: Optional[str], expected: Dict[str, Any]) -> None:
    assert parse_payload(body, content_type) == expected
