from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_current_actor, get_db_session, raise_http_error
from app.errors import ProcyardError
from app.schemas.events import EventOut
from app.services import events as event_service
from app.services import lifecycle
from app.services.auth import Actor

router = APIRouter(prefix="/events", tags=["events"])


@router.get("", response_model=List[EventOut])
async def list_events(
    limit: int = 200,
    category: Optional[str] = None,
    subject_id: Optional[str] = None,
    session: AsyncSession = Depends(get_db_session),
    actor: Actor = Depends(get_current_actor),
) -> List[EventOut]:
    if subject_id:
        try:
            await lifecycle.get_visible_service(session, actor, subject_id)
        except ProcyardError as exc:
            raise_http_error(exc)
    elif not actor.is_admin:
        raise HTTPException(status_code=403, detail="Filter by subject_id to list events")
    bounded_limit = max(1, min(limit, 1000))
    events = await event_service.list_events(
        session, limit=bounded_limit, category=category, subject_id=subject_id
    )
    return [EventOut.model_validate(event) for event in events]
