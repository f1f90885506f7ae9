from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import CommandError, PermissionDeniedError, ValidationError
from app.schemas.credentials import CredentialCreate
from app.security import create_session_token, decode_session_token
from app.services import credentials
from app.services.auth import Actor
from app.services.github import GitHubClient, parse_owner_repo


async def test_token_is_encrypted_at_rest(session: AsyncSession, alice: Actor) -> None:
    record = await credentials.create_credential(
        session, alice, CredentialCreate(name="ci", token="ghp_plaintext")
    )

    assert "ghp_plaintext" not in record.token_encrypted
    assert await credentials.resolve_token(session, record.id, username="alice") == "ghp_plaintext"
    assert record.last_used_at is not None


async def test_private_token_hidden_from_other_members(
    session: AsyncSession, alice: Actor, bob: Actor, admin: Actor
) -> None:
    private = await credentials.create_credential(session, alice, CredentialCreate(name="p", token="t1"))
    shared = await credentials.create_credential(
        session, alice, CredentialCreate(name="s", token="t2", visibility="public")
    )

    assert [c.id for c in await credentials.list_credentials(session, bob)] == [shared.id]
    assert len(await credentials.list_credentials(session, admin)) == 2
    assert await credentials.resolve_token(session, shared.id, username="bob") == "t2"
    with pytest.raises(PermissionDeniedError):
        await credentials.resolve_token(session, private.id, username="bob")
    with pytest.raises(PermissionDeniedError):
        await credentials.delete_credential(session, bob, shared.id)


async def test_rotated_key_cannot_decrypt(
    session: AsyncSession, alice: Actor, monkeypatch: pytest.MonkeyPatch
) -> None:
    from app.config import get_settings

    record = await credentials.create_credential(session, alice, CredentialCreate(name="ci", token="t"))
    monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", "a-completely-different-key")
    get_settings.cache_clear()

    with pytest.raises(ValidationError):
        await credentials.resolve_token(session, record.id, username="alice")


def test_session_token_round_trip_and_tamper() -> None:
    token = create_session_token("alice", "secret", ttl_seconds=60, now=1000)

    assert decode_session_token(token, "secret", now=1030) == "alice"
    assert decode_session_token(token, "secret", now=1061) is None
    assert decode_session_token(token, "other-secret", now=1030) is None


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://github.com/acme/shop.git", ("acme", "shop")),
        ("https://github.com/acme/shop", ("acme", "shop")),
        ("git@github.com:acme/shop.git", ("acme", "shop")),
    ],
)
def test_parse_owner_repo(url: str, expected: tuple[str, str]) -> None:
    assert parse_owner_repo(url) == expected


async def test_create_webhook_posts_push_hook() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"id": 99})

    client = GitHubClient(api_url="https://api.github.test", transport=httpx.MockTransport(handler))

    hook_id = await client.create_webhook(
        "tok", "https://github.com/acme/shop.git", "https://deploy.example.com/webhook/k"
    )

    assert hook_id == "99"
    request = seen[0]
    assert request.url.path == "/repos/acme/shop/hooks"
    assert request.headers["Authorization"] == "Bearer tok"
    body = json.loads(request.content)
    assert body["events"] == ["push"]
    assert body["config"] == {"url": "https://deploy.example.com/webhook/k", "content_type": "json"}


async def test_create_webhook_permission_error() -> None:
    client = GitHubClient(
        api_url="https://api.github.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(404, json={})),
    )

    with pytest.raises(CommandError) as excinfo:
        await client.create_webhook("tok", "https://github.com/acme/shop.git", "https://x/webhook/k")
    assert "permissions" in str(excinfo.value)


async def test_delete_missing_webhook_is_not_an_error() -> None:
    client = GitHubClient(
        api_url="https://api.github.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(404)),
    )

    await client.delete_webhook("tok", "https://github.com/acme/shop.git", "12")


async def test_list_branches() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/acme/shop/branches"
        return httpx.Response(200, json=[{"name": "main"}, {"name": "dev"}])

    client = GitHubClient(api_url="https://api.github.test", transport=httpx.MockTransport(handler))

    assert await client.list_branches("tok", "https://github.com/acme/shop.git") == ["main", "dev"]


async def test_validate_token_checks_authenticated_user() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["Authorization"] == "Bearer good":
            return httpx.Response(200, json={"login": "alice"})
        return httpx.Response(401, json={"message": "Bad credentials"})

    client = GitHubClient(api_url="https://api.github.test", transport=httpx.MockTransport(handler))

    assert await client.validate_token("good") is True
    assert await client.validate_token("bad") is False
