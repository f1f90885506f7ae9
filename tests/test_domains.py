from __future__ import annotations

from typing import List

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import CommandError, EntityBusyError, PreconditionError, ValidationError
from app.locks import domain_locks
from app.models.domain import DOMAIN_ACTIVE, DOMAIN_ERROR, DOMAIN_PENDING, DOMAIN_VERIFIED, Domain
from app.schemas.services import ServiceCreate
from app.services import certbot, commands, domains, lifecycle, nginx
from app.services.auth import Actor
from tests.conftest import SERVER_IP, CommandRecorder

_remove_site = nginx.remove_site


def _resolver(*addresses: str):
    async def resolve(hostname: str) -> List[str]:
        return list(addresses)

    return resolve


@pytest_asyncio.fixture
async def service(session: AsyncSession, alice: Actor):
    payload = ServiceCreate(
        name="shop",
        repository_url="https://github.com/acme/shop.git",
        script="server.js",
    )
    return await lifecycle.create_service(session, alice, payload)


async def _register(session: AsyncSession, actor: Actor, service_id: str, name: str = "App.Example.com"):
    return await domains.create_domain(session, actor, service_id=service_id, domain=name, port=3000)


async def test_domain_names_are_normalized_and_unique(
    session: AsyncSession, alice: Actor, service
) -> None:
    record = await _register(session, alice, service.id)
    assert record.domain == "app.example.com"
    assert record.status == DOMAIN_PENDING

    with pytest.raises(ValidationError):
        await _register(session, alice, service.id, "APP.example.COM")


@pytest.mark.parametrize("name", ["localhost", "-bad.example.com", "exa mple.com"])
def test_invalid_domain_names(name: str) -> None:
    with pytest.raises(ValidationError):
        domains.normalize_domain(name)


async def test_skip_verification_marks_verified(session: AsyncSession, alice: Actor, service) -> None:
    record = await _register(session, alice, service.id)

    result = await domains.verify(session, record.id, skip_verification=True, actor=alice)

    assert result.verified
    assert result.domain.status == DOMAIN_VERIFIED
    assert result.domain.last_checked_at is not None


async def test_matching_dns_verifies(session: AsyncSession, alice: Actor, service) -> None:
    record = await _register(session, alice, service.id)

    result = await domains.verify(session, record.id, actor=alice, resolver=_resolver(SERVER_IP))

    assert result.verified
    assert result.resolved_ips == [SERVER_IP]
    assert result.domain.status == DOMAIN_VERIFIED


async def test_cloudflare_answer_stays_pending(session: AsyncSession, alice: Actor, service) -> None:
    record = await _register(session, alice, service.id)

    result = await domains.verify(session, record.id, actor=alice, resolver=_resolver("104.21.3.4"))

    assert not result.verified
    assert result.is_cloudflare
    assert result.domain.status == DOMAIN_PENDING
    assert "skip_verification" in result.message


async def test_mismatched_dns_stays_pending(session: AsyncSession, alice: Actor, service) -> None:
    record = await _register(session, alice, service.id)

    result = await domains.verify(session, record.id, actor=alice, resolver=_resolver("198.51.100.9"))

    assert not result.verified
    assert not result.is_cloudflare
    assert SERVER_IP in result.domain.error_message


async def test_verify_without_server_ip(
    session: AsyncSession, alice: Actor, service, monkeypatch: pytest.MonkeyPatch
) -> None:
    from app.config import get_settings

    record = await _register(session, alice, service.id)
    monkeypatch.setenv("SERVER_IP", "")
    get_settings.cache_clear()

    with pytest.raises(PreconditionError):
        await domains.verify(session, record.id, actor=alice, resolver=_resolver(SERVER_IP))


async def test_activate_requires_verified(
    session: AsyncSession, alice: Actor, service, host_commands: List[str]
) -> None:
    record = await _register(session, alice, service.id)

    with pytest.raises(PreconditionError):
        await domains.activate(session, record.id, actor=alice)
    assert host_commands == []


async def test_activate_runs_host_steps_in_order(
    session: AsyncSession, alice: Actor, service, host_commands: List[str]
) -> None:
    record = await _register(session, alice, service.id)
    await domains.verify(session, record.id, skip_verification=True, actor=alice)

    result = await domains.activate(session, record.id, actor=alice)

    assert result.success
    assert host_commands == [
        "install:app.example.com:3000",
        "enable:app.example.com",
        "reload",
        "certbot:app.example.com",
    ]
    assert result.domain.status == DOMAIN_ACTIVE
    assert result.domain.ssl_enabled
    assert result.domain.config_path == "/etc/nginx/sites-available/app.example.com.conf"


async def test_certbot_failure_marks_error(
    session: AsyncSession,
    alice: Actor,
    service,
    host_commands: List[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def failing_certbot(domain: str) -> None:
        raise CommandError("certbot.issue", "rate limited")

    monkeypatch.setattr(certbot, "issue_certificate", failing_certbot)
    record = await _register(session, alice, service.id)
    await domains.verify(session, record.id, skip_verification=True, actor=alice)

    result = await domains.activate(session, record.id, actor=alice)

    assert not result.success
    assert result.failed_step == "certbot"
    assert result.domain.status == DOMAIN_ERROR
    assert "rate limited" in result.domain.error_message

    with pytest.raises(PreconditionError):
        await domains.activate(session, record.id, actor=alice)

    warnings = await domains.delete_domain(session, record.id, actor=alice)
    assert warnings == []
    assert host_commands[-1] == "remove:app.example.com"


async def test_delete_pending_domain_skips_nginx(
    session: AsyncSession, alice: Actor, service, host_commands: List[str]
) -> None:
    record = await _register(session, alice, service.id)

    await domains.delete_domain(session, record.id, actor=alice)

    assert host_commands == []
    assert await domains.list_for_service(session, alice, service.id) == []


async def _activate(session: AsyncSession, actor: Actor, service_id: str, name: str = "App.Example.com"):
    record = await _register(session, actor, service_id, name)
    await domains.verify(session, record.id, skip_verification=True, actor=actor)
    result = await domains.activate(session, record.id, actor=actor)
    assert result.success, result.message
    return result.domain


async def test_skip_verification_keeps_active_domain(
    session: AsyncSession, alice: Actor, service, host_commands: List[str]
) -> None:
    record = await _activate(session, alice, service.id)

    result = await domains.verify(session, record.id, skip_verification=True, actor=alice)

    assert result.verified
    assert result.domain.status == DOMAIN_ACTIVE
    assert result.domain.ssl_enabled
    assert result.domain.config_path == "/etc/nginx/sites-available/app.example.com.conf"


async def test_delete_active_domain_reports_cleanup_warnings(
    session: AsyncSession,
    alice: Actor,
    service,
    host_commands: List[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    record = await _activate(session, alice, service.id)
    recorder = CommandRecorder(fail_actions=["nginx.disable"])
    monkeypatch.setattr(nginx, "remove_site", _remove_site)
    monkeypatch.setattr(commands, "run_checked", recorder)

    warnings = await domains.delete_domain(session, record.id, actor=alice)

    assert recorder.actions() == ["nginx.disable", "nginx.remove", "nginx.reload"]
    assert recorder.calls[0][1][-1].endswith("sites-enabled/app.example.com.conf")
    assert recorder.calls[1][1][-1].endswith("sites-available/app.example.com.conf")
    assert len(warnings) == 1
    assert "sites-enabled/app.example.com.conf" in warnings[0]
    assert await domains.list_for_service(session, alice, service.id) == []


async def test_delete_all_for_service_leaves_commit_to_caller(
    session: AsyncSession, alice: Actor, service, host_commands: List[str]
) -> None:
    await _activate(session, alice, service.id, "live.example.com")
    await _register(session, alice, service.id, "pending.example.com")
    service_id = service.id
    host_commands.clear()

    warnings = await domains.delete_all_for_service(session, service_id)

    assert warnings == []
    assert host_commands == ["remove:live.example.com"]
    assert await domains.list_for_service(session, alice, service_id) == []

    await session.rollback()
    remaining = await domains.list_for_service(session, alice, service_id)
    assert sorted(record.domain for record in remaining) == ["live.example.com", "pending.example.com"]


async def test_delete_all_for_service_rejects_busy_domain(
    session: AsyncSession, alice: Actor, service, host_commands: List[str]
) -> None:
    record = await _activate(session, alice, service.id)
    host_commands.clear()

    async with domain_locks.hold(record.id, action="activate"):
        with pytest.raises(EntityBusyError):
            await domains.delete_all_for_service(session, service.id)

    assert host_commands == []
    result = await session.execute(select(Domain).where(Domain.service_id == service.id))
    assert [row.id for row in result.scalars()] == [record.id]
