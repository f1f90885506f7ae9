from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.deploy_queue import DeployQueue, get_deploy_queue
from app.dependencies import get_db_session
from app.errors import NotFoundError
from app.logger import get_logger
from app.schemas.services import WebhookDeliveryOut
from app.services import webhooks

router = APIRouter(prefix="/webhook", tags=["webhook"])
_logger = get_logger("api.webhook")


@router.post("/{deploy_key}", response_model=WebhookDeliveryOut)
async def receive_delivery(
    deploy_key: str,
    payload: Dict[str, Any] = Body(default_factory=dict),
    x_github_event: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_db_session),
    queue: DeployQueue = Depends(get_deploy_queue),
) -> WebhookDeliveryOut:
    if x_github_event != "push":
        _logger.info("delivery.ignored", "Ignored non-push delivery", github_event=x_github_event or "")
        return WebhookDeliveryOut(
            success=True,
            message=f"Event {x_github_event or 'unknown'} ignored",
        )
    try:
        result = await webhooks.handle_delivery(session, deploy_key, payload, scheduler=queue)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=exc.detail) from exc
    return WebhookDeliveryOut(success=result.success, message=result.message)
