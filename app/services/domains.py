from __future__ import annotations

import re
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional
from uuid import uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import NotFoundError, PreconditionError, ValidationError
from app.locks import domain_locks
from app.logger import get_logger
from app.models.domain import (
    DOMAIN_ACTIVE,
    DOMAIN_ERROR,
    DOMAIN_PENDING,
    DOMAIN_VERIFIED,
    Domain,
)
from app.models.service import Service
from app.pipeline import PipelineStep, run_pipeline
from app.services import certbot, dns, nginx
from app.services.auth import Actor, check_access
from app.services.events import record_event
from app.utils import utcnow

_logger = get_logger("services.domains")

_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)


@dataclass
class VerificationResult:
    verified: bool
    message: str
    domain: Domain
    resolved_ips: List[str] = field(default_factory=list)
    is_cloudflare: bool = False


@dataclass
class ActivationResult:
    success: bool
    message: str
    domain: Domain
    failed_step: Optional[str] = None


def normalize_domain(raw: str) -> str:
    value = raw.strip().lower().rstrip(".")
    if not _DOMAIN_RE.match(value):
        raise ValidationError(f"Invalid domain name: {raw}")
    return value


def server_ip() -> str:
    return get_settings().server_ip


async def _service_for(session: AsyncSession, service_id: str) -> Service:
    service = await session.get(Service, service_id)
    if service is None:
        raise NotFoundError(f"Service {service_id} not found")
    return service


async def _check_service_access(
    session: AsyncSession, actor: Actor, service_id: str, *, write: bool
) -> Service:
    service = await _service_for(session, service_id)
    check_access(
        actor,
        owner=service.owner,
        visibility=service.visibility,
        write=write,
        subject="service",
    )
    return service


async def get_domain(session: AsyncSession, domain_id: str) -> Domain:
    domain = await session.get(Domain, domain_id)
    if domain is None:
        raise NotFoundError(f"Domain {domain_id} not found")
    return domain


async def get_visible_domain(
    session: AsyncSession, actor: Actor, domain_id: str, *, write: bool = False
) -> Domain:
    domain = await get_domain(session, domain_id)
    await _check_service_access(session, actor, domain.service_id, write=write)
    return domain


async def list_for_service(session: AsyncSession, actor: Actor, service_id: str) -> List[Domain]:
    await _check_service_access(session, actor, service_id, write=False)
    result = await session.execute(
        select(Domain).where(Domain.service_id == service_id).order_by(Domain.created_at)
    )
    return list(result.scalars().all())


async def create_domain(
    session: AsyncSession,
    actor: Actor,
    *,
    service_id: str,
    domain: str,
    port: int,
) -> Domain:
    await _check_service_access(session, actor, service_id, write=True)
    name = normalize_domain(domain)
    existing = await session.execute(select(Domain.id).where(func.lower(Domain.domain) == name))
    if existing.scalar_one_or_none() is not None:
        raise ValidationError(f"Domain {name} is already registered")
    record = Domain(
        id=str(uuid4()),
        domain=name,
        port=port,
        service_id=service_id,
        created_by=actor.username,
        status=DOMAIN_PENDING,
        ssl_enabled=False,
        error_message="",
    )
    session.add(record)
    await record_event(
        session,
        category="domains",
        name="domain.create",
        subject_id=record.id,
        fields={"domain": name, "service_id": service_id, "port": port},
    )
    await session.commit()
    await session.refresh(record)
    _logger.info("domain.create", "Registered domain", domain=name, service_id=service_id, port=port)
    return record


async def verify(
    session: AsyncSession,
    domain_id: str,
    *,
    skip_verification: bool = False,
    actor: Optional[Actor] = None,
    resolver: Optional[dns.Resolver] = None,
) -> VerificationResult:
    """Check that the domain's A records point at this host.

    ``skip_verification`` marks the domain verified without a lookup, for
    domains fronted by a proxy or CDN where the answer never matches.
    """
    domain = await get_domain(session, domain_id)
    if actor is not None:
        await _check_service_access(session, actor, domain.service_id, write=True)

    async with domain_locks.hold(domain.id, action="verify"):
        domain.last_checked_at = utcnow()
        # A fresh verify is the only way back out of ``error``; an active domain keeps its status.
        if skip_verification:
            if domain.status != DOMAIN_ACTIVE:
                domain.status = DOMAIN_VERIFIED
            domain.error_message = ""
            await session.commit()
            await session.refresh(domain)
            _logger.info("domain.verify.skip", "Marked domain verified without DNS check", domain=domain.domain)
            return VerificationResult(
                verified=True,
                message="Domain marked as verified (DNS check skipped)",
                domain=domain,
            )

        expected_ip = server_ip()
        if not expected_ip:
            raise PreconditionError(
                "SERVER_IP is not configured; set it or verify with skip_verification"
            )
        check = await dns.check_domain(
            domain.domain,
            expected_ip,
            timeout_seconds=get_settings().dns_timeout_seconds,
            resolver=resolver,
        )
        if check.matches:
            if domain.status != DOMAIN_ACTIVE:
                domain.status = DOMAIN_VERIFIED
            domain.error_message = ""
            message = f"DNS verified: {domain.domain} points to {expected_ip}"
            verified = True
        elif check.error is not None:
            if domain.status != DOMAIN_ACTIVE:
                domain.status = DOMAIN_PENDING
            domain.error_message = f"DNS lookup failed: {check.error}"
            message = f"Could not resolve {domain.domain}: {check.error}"
            verified = False
        elif check.is_cloudflare:
            if domain.status != DOMAIN_ACTIVE:
                domain.status = DOMAIN_PENDING
            domain.error_message = (
                "Domain resolves to Cloudflare proxy IPs; retry with skip_verification "
                "if Cloudflare forwards to this server"
            )
            message = (
                f"{domain.domain} is behind the Cloudflare proxy "
                f"({', '.join(check.resolved_ips)}); DNS cannot confirm the origin. "
                "Retry with skip_verification once the origin is configured."
            )
            verified = False
        else:
            if domain.status != DOMAIN_ACTIVE:
                domain.status = DOMAIN_PENDING
            domain.error_message = (
                f"Domain resolves to {', '.join(check.resolved_ips)}, expected {expected_ip}"
            )
            message = domain.error_message
            verified = False

        await record_event(
            session,
            category="domains",
            name="domain.verify",
            level="INFO" if verified else "WARNING",
            subject_id=domain.id,
            fields={
                "domain": domain.domain,
                "verified": verified,
                "resolved_ips": check.resolved_ips,
                "is_cloudflare": check.is_cloudflare,
            },
        )
        await session.commit()
        await session.refresh(domain)
        _logger.info(
            "domain.verify",
            "Checked domain DNS",
            domain=domain.domain,
            verified=verified,
            cloudflare=check.is_cloudflare,
            resolved=",".join(check.resolved_ips),
        )
        return VerificationResult(
            verified=verified,
            message=message,
            domain=domain,
            resolved_ips=check.resolved_ips,
            is_cloudflare=check.is_cloudflare,
        )


async def activate(
    session: AsyncSession,
    domain_id: str,
    *,
    actor: Optional[Actor] = None,
) -> ActivationResult:
    """Install the nginx site, reload nginx and obtain a certificate.

    Only a ``verified`` domain can be activated. A failed step leaves the
    already-installed config and symlink in place for diagnosis.
    """
    domain = await get_domain(session, domain_id)
    if actor is not None:
        await _check_service_access(session, actor, domain.service_id, write=True)

    async with domain_locks.hold(domain.id, action="activate"):
        if domain.status != DOMAIN_VERIFIED:
            raise PreconditionError(
                f"Domain {domain.domain} must be verified before activation (status: {domain.status})"
            )
        settings = get_settings()
        name = domain.domain
        port = domain.port
        installed: dict[str, str] = {}

        async def _install() -> str:
            installed["config_path"] = await nginx.install_site(domain=name, port=port)
            return f"Installed {installed['config_path']}"

        async def _enable() -> str:
            return f"Enabled {await nginx.enable_site(name)}"

        async def _reload() -> str:
            await nginx.test_and_reload()
            return "nginx config test passed and nginx reloaded"

        async def _certificate() -> str:
            await certbot.issue_certificate(name)
            return "Certificate issued"

        result = await run_pipeline(
            "domain.activate",
            [
                PipelineStep("nginx_config", _install, settings.nginx_timeout_seconds),
                PipelineStep("nginx_enable", _enable, settings.nginx_timeout_seconds),
                PipelineStep("nginx_reload", _reload, settings.nginx_timeout_seconds * 2),
                PipelineStep("certbot", _certificate, settings.certbot_timeout_seconds),
            ],
            domain_id=domain.id,
            domain=name,
            port=port,
        )

        if result.ok:
            domain.status = DOMAIN_ACTIVE
            domain.ssl_enabled = True
            domain.config_path = installed["config_path"]
            domain.activated_at = utcnow()
            domain.error_message = ""
            message = f"Domain {name} is active with SSL"
        else:
            domain.status = DOMAIN_ERROR
            if "config_path" in installed:
                domain.config_path = installed["config_path"]
            domain.error_message = f"{result.failed_step}: {result.error}"
            message = f"Activation failed at step {result.failed_step}: {result.error}"
        await record_event(
            session,
            category="domains",
            name="domain.activate",
            level="INFO" if result.ok else "ERROR",
            subject_id=domain.id,
            fields=result.as_dict(),
        )
        await session.commit()
        await session.refresh(domain)
        return ActivationResult(
            success=result.ok,
            message=message,
            domain=domain,
            failed_step=result.failed_step,
        )


async def _cleanup(domain: Domain) -> List[str]:
    if domain.status != DOMAIN_ACTIVE and not domain.config_path:
        return []
    return await nginx.remove_site(domain.domain)


async def delete_domain(
    session: AsyncSession,
    domain_id: str,
    *,
    actor: Optional[Actor] = None,
) -> List[str]:
    """Delete the record; nginx cleanup failures come back as warnings."""
    domain = await get_domain(session, domain_id)
    if actor is not None:
        await _check_service_access(session, actor, domain.service_id, write=True)
    async with domain_locks.hold(domain.id, action="delete"):
        warnings = await _cleanup(domain)
        await session.delete(domain)
        await record_event(
            session,
            category="domains",
            name="domain.delete",
            level="WARNING" if warnings else "INFO",
            subject_id=domain_id,
            fields={"domain": domain.domain, "warnings": warnings},
        )
        await session.commit()
    _logger.info("domain.delete", "Deleted domain", domain=domain.domain, warnings=len(warnings))
    return warnings


@asynccontextmanager
async def hold_service_domains(
    session: AsyncSession, service_id: str, *, action: str
) -> AsyncIterator[List[Domain]]:
    """Lock every domain of a service; one busy domain rejects the whole set."""
    result = await session.execute(select(Domain).where(Domain.service_id == service_id))
    records = list(result.scalars().all())
    async with AsyncExitStack() as stack:
        for domain in records:
            await stack.enter_async_context(domain_locks.hold(domain.id, action=action))
        yield records


async def delete_all_for_service(
    session: AsyncSession,
    service_id: str,
    *,
    records: Optional[List[Domain]] = None,
) -> List[str]:
    """Clean up and delete every domain of a service without committing.

    Pass ``records`` from ``hold_service_domains`` when their locks are already held.
    """
    if records is None:
        async with hold_service_domains(session, service_id, action="delete") as held:
            return await delete_all_for_service(session, service_id, records=held)

    warnings: List[str] = []
    for domain in records:
        warnings.extend(await _cleanup(domain))
    await session.execute(delete(Domain).where(Domain.service_id == service_id))
    await session.flush()
    if records:
        _logger.info(
            "domain.delete_all",
            "Deleted service domains",
            service_id=service_id,
            domains=len(records),
            warnings=len(warnings),
        )
    return warnings
