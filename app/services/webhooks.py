from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import CommandError, NotFoundError, PreconditionError
from app.logger import get_logger
from app.models.service import Service
from app.security import generate_deploy_key
from app.services import credentials
from app.services.auth import Actor, check_access
from app.services.events import record_event
from app.services.github import GitHubClient, get_github_client

_logger = get_logger("services.webhooks")

BRANCH_REF_PREFIX = "refs/heads/"


class ReloadScheduler(Protocol):
    def submit(self, service_id: str, *, action: str, source: str) -> Any: ...


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message: str
    triggered: bool = False


def callback_url(deploy_key: str) -> str:
    return f"{get_settings().public_base_url.rstrip('/')}/webhook/{deploy_key}"


def branch_from_ref(ref: Any) -> Optional[str]:
    if not isinstance(ref, str) or not ref:
        return None
    if ref.startswith(BRANCH_REF_PREFIX):
        return ref[len(BRANCH_REF_PREFIX):] or None
    return None


async def _owned_service(session: AsyncSession, actor: Actor, service_id: str) -> Service:
    service = await session.get(Service, service_id)
    if service is None:
        raise NotFoundError(f"Service {service_id} not found")
    check_access(
        actor,
        owner=service.owner,
        visibility=service.visibility,
        write=True,
        subject="service",
    )
    return service


async def _service_token(session: AsyncSession, service: Service) -> str:
    if not service.credential_id:
        raise PreconditionError("Service has no GitHub token; attach one before enabling webhooks")
    if not service.owner:
        raise PreconditionError("Service has no owner; cannot resolve its GitHub token")
    return await credentials.resolve_token(session, service.credential_id, username=service.owner)


async def enable(
    session: AsyncSession,
    actor: Actor,
    service_id: str,
    *,
    github: GitHubClient,
) -> str:
    """Register a push webhook on GitHub and return its public callback URL.

    Nothing is persisted unless GitHub accepted the registration.
    """
    service = await _owned_service(session, actor, service_id)
    if service.webhook_enabled:
        raise PreconditionError("Webhook is already enabled for this service")
    token = await _service_token(session, service)
    deploy_key = generate_deploy_key()
    url = callback_url(deploy_key)
    hook_id = await github.create_webhook(token, service.repository_url, url)

    service.deploy_key = deploy_key
    service.webhook_enabled = True
    service.webhook_id = hook_id
    await record_event(
        session,
        category="webhooks",
        name="webhook.enable",
        subject_id=service.id,
        fields={"webhook_id": hook_id},
    )
    await session.commit()
    _logger.info("webhook.enable", "Enabled push webhook", service_id=service.id, webhook_id=hook_id)
    return url


async def disable(
    session: AsyncSession,
    actor: Actor,
    service_id: str,
    *,
    github: GitHubClient,
) -> None:
    service = await _owned_service(session, actor, service_id)
    if not service.webhook_enabled:
        raise PreconditionError("Webhook is not enabled for this service")
    if service.webhook_id:
        token = await _service_token(session, service)
        await github.delete_webhook(token, service.repository_url, service.webhook_id)
    _clear(service)
    await record_event(session, category="webhooks", name="webhook.disable", subject_id=service.id)
    await session.commit()
    _logger.info("webhook.disable", "Disabled push webhook", service_id=service.id)


def _clear(service: Service) -> None:
    service.deploy_key = None
    service.webhook_enabled = False
    service.webhook_id = None


async def remove_external_hook(
    session: AsyncSession,
    service: Service,
    *,
    github: Optional[GitHubClient] = None,
) -> List[str]:
    """Best-effort removal used when the service itself is being deleted."""
    client = github or get_github_client()
    warnings: List[str] = []
    if service.webhook_id:
        try:
            token = await _service_token(session, service)
            await client.delete_webhook(token, service.repository_url, service.webhook_id)
        except (CommandError, NotFoundError, PreconditionError) as exc:
            warnings.append(f"Failed to delete GitHub webhook {service.webhook_id}: {exc}")
    _clear(service)
    return warnings


async def status(session: AsyncSession, actor: Actor, service_id: str) -> dict[str, Any]:
    service = await session.get(Service, service_id)
    if service is None:
        raise NotFoundError(f"Service {service_id} not found")
    check_access(
        actor,
        owner=service.owner,
        visibility=service.visibility,
        write=False,
        subject="service",
    )
    enabled = bool(service.webhook_enabled and service.deploy_key)
    return {
        "enabled": enabled,
        "webhook_url": callback_url(service.deploy_key) if enabled and service.deploy_key else None,
    }


async def handle_delivery(
    session: AsyncSession,
    deploy_key: str,
    payload: Mapping[str, Any],
    *,
    scheduler: ReloadScheduler,
) -> DeliveryResult:
    """Map a push delivery to its service and queue a reload when the branch matches.

    The reload runs later on the deploy queue; its outcome never reaches this
    response.
    """
    result = await session.execute(
        select(Service).where(Service.deploy_key == deploy_key, Service.webhook_enabled.is_(True))
    )
    service = result.scalar_one_or_none()
    if service is None:
        raise NotFoundError("Invalid deploy key")

    repository = payload.get("repository") if isinstance(payload.get("repository"), Mapping) else {}
    pusher = payload.get("pusher") if isinstance(payload.get("pusher"), Mapping) else {}
    branch = branch_from_ref(payload.get("ref"))
    fields = {
        "service_id": service.id,
        "repository": str(repository.get("full_name") or ""),
        "pusher": str(pusher.get("name") or ""),
        "ref": str(payload.get("ref") or ""),
    }
    if branch is None:
        _logger.warning("webhook.delivery.no_branch", "Push delivery without a branch ref", **fields)
        return DeliveryResult(success=False, message="Could not determine pushed branch")
    if branch != service.branch:
        _logger.info("webhook.delivery.ignored", "Push to another branch ignored", branch=branch, **fields)
        return DeliveryResult(
            success=True,
            message=f"Push to {branch} ignored (service configured for {service.branch})",
        )

    job = scheduler.submit(service.id, action="reload", source="webhook")
    await record_event(
        session,
        category="webhooks",
        name="webhook.delivery",
        subject_id=service.id,
        fields={**fields, "branch": branch, "job_id": getattr(job, "id", None)},
    )
    await session.commit()
    _logger.info("webhook.delivery.triggered", "Queued reload from push", branch=branch, **fields)
    return DeliveryResult(
        success=True,
        message=f"Deployment triggered for service {service.name}",
        triggered=True,
    )
