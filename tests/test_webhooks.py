from __future__ import annotations

from typing import List

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import CommandError, NotFoundError, PreconditionError
from app.schemas.credentials import CredentialCreate
from app.schemas.services import ServiceCreate
from app.services import credentials, lifecycle, webhooks
from app.services.auth import Actor
from tests.conftest import FakeScheduler


class FakeGitHub:
    def __init__(self) -> None:
        self.created: List[tuple[str, str, str]] = []
        self.deleted: List[str] = []
        self.fail = False

    async def create_webhook(self, token: str, repo_url: str, callback_url: str) -> str:
        if self.fail:
            raise CommandError("github.create_webhook", "Repository not found or token lacks admin:repo_hook")
        self.created.append((token, repo_url, callback_url))
        return "4242"

    async def delete_webhook(self, token: str, repo_url: str, hook_id: str) -> None:
        self.deleted.append(hook_id)


@pytest_asyncio.fixture
async def service(session: AsyncSession, alice: Actor):
    credential = await credentials.create_credential(
        session, alice, CredentialCreate(name="ci", token="ghp_secret")
    )
    payload = ServiceCreate(
        name="shop",
        repository_url="https://github.com/acme/shop.git",
        branch="main",
        script="server.js",
        credential_id=credential.id,
    )
    return await lifecycle.create_service(session, alice, payload)


@pytest_asyncio.fixture
async def hooked_service(session: AsyncSession, alice: Actor, service):
    await webhooks.enable(session, alice, service.id, github=FakeGitHub())
    return await lifecycle.get_service(session, service.id)


def test_branch_from_ref() -> None:
    assert webhooks.branch_from_ref("refs/heads/main") == "main"
    assert webhooks.branch_from_ref("refs/heads/feature/login") == "feature/login"
    assert webhooks.branch_from_ref("refs/tags/v1.0.0") is None
    assert webhooks.branch_from_ref(None) is None


async def test_enable_registers_hook_with_decrypted_token(
    session: AsyncSession, alice: Actor, service
) -> None:
    github = FakeGitHub()

    url = await webhooks.enable(session, alice, service.id, github=github)

    refreshed = await lifecycle.get_service(session, service.id)
    assert refreshed.webhook_enabled
    assert refreshed.webhook_id == "4242"
    assert url == f"https://deploy.example.com/webhook/{refreshed.deploy_key}"
    assert github.created == [("ghp_secret", "https://github.com/acme/shop.git", url)]


async def test_enable_failure_persists_nothing(session: AsyncSession, alice: Actor, service) -> None:
    github = FakeGitHub()
    github.fail = True

    with pytest.raises(CommandError):
        await webhooks.enable(session, alice, service.id, github=github)

    refreshed = await lifecycle.get_service(session, service.id)
    assert not refreshed.webhook_enabled
    assert refreshed.deploy_key is None


async def test_enable_requires_token(session: AsyncSession, alice: Actor) -> None:
    service = await lifecycle.create_service(
        session,
        alice,
        ServiceCreate(name="tokenless", repository_url="https://github.com/acme/x.git", script="a.js"),
    )
    with pytest.raises(PreconditionError):
        await webhooks.enable(session, alice, service.id, github=FakeGitHub())


async def test_push_to_configured_branch_queues_reload(
    session: AsyncSession, hooked_service, scheduler: FakeScheduler
) -> None:
    result = await webhooks.handle_delivery(
        session,
        hooked_service.deploy_key,
        {"ref": "refs/heads/main", "repository": {"full_name": "acme/shop"}},
        scheduler=scheduler,
    )

    assert result.success
    assert result.triggered
    assert result.message == "Deployment triggered for service shop"
    assert scheduler.submitted == [(hooked_service.id, "reload", "webhook")]


async def test_push_to_other_branch_is_ignored(
    session: AsyncSession, hooked_service, scheduler: FakeScheduler
) -> None:
    result = await webhooks.handle_delivery(
        session, hooked_service.deploy_key, {"ref": "refs/heads/dev"}, scheduler=scheduler
    )

    assert result.success
    assert not result.triggered
    assert result.message == "Push to dev ignored (service configured for main)"
    assert scheduler.submitted == []


async def test_push_without_branch(session: AsyncSession, hooked_service, scheduler: FakeScheduler) -> None:
    result = await webhooks.handle_delivery(
        session, hooked_service.deploy_key, {"ref": "refs/tags/v2"}, scheduler=scheduler
    )

    assert not result.success
    assert result.message == "Could not determine pushed branch"


async def test_unknown_deploy_key(session: AsyncSession, hooked_service, scheduler: FakeScheduler) -> None:
    with pytest.raises(NotFoundError):
        await webhooks.handle_delivery(session, "nope", {"ref": "refs/heads/main"}, scheduler=scheduler)


async def test_disabled_hook_rejects_old_key(
    session: AsyncSession, alice: Actor, hooked_service, scheduler: FakeScheduler
) -> None:
    key = hooked_service.deploy_key
    github = FakeGitHub()
    await webhooks.disable(session, alice, hooked_service.id, github=github)

    assert github.deleted == ["4242"]
    with pytest.raises(NotFoundError):
        await webhooks.handle_delivery(session, key, {"ref": "refs/heads/main"}, scheduler=scheduler)


async def test_webhook_route(
    sessionmaker, hooked_service, scheduler: FakeScheduler
) -> None:
    from app.deploy_queue import get_deploy_queue
    from app.dependencies import get_db_session
    from app.main import app

    async def override_session():
        async with sessionmaker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_deploy_queue] = lambda: scheduler
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            ping = await client.post(
                f"/webhook/{hooked_service.deploy_key}",
                json={"zen": "Keep it simple."},
                headers={"X-GitHub-Event": "ping"},
            )
            push = await client.post(
                f"/webhook/{hooked_service.deploy_key}",
                json={"ref": "refs/heads/main"},
                headers={"X-GitHub-Event": "push"},
            )
            unknown = await client.post(
                "/webhook/not-a-key",
                json={"ref": "refs/heads/main"},
                headers={"X-GitHub-Event": "push"},
            )
    finally:
        app.dependency_overrides.clear()

    assert ping.status_code == 200
    assert ping.json() == {"success": True, "message": "Event ping ignored"}
    assert push.json()["message"] == "Deployment triggered for service shop"
    assert unknown.status_code == 404
    assert unknown.json()["detail"] == "Invalid deploy key"
    assert scheduler.submitted == [(hooked_service.id, "reload", "webhook")]
