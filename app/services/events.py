from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.logger import get_logger
from app.models.event import Event

_logger = get_logger("services.events")


async def list_events(
    session: AsyncSession,
    limit: int = 200,
    category: Optional[str] = None,
    subject_id: Optional[str] = None,
) -> List[Event]:
    query = select(Event).order_by(Event.created_at.desc())
    if category:
        query = query.where(Event.category == category)
    if subject_id:
        query = query.where(Event.subject_id == subject_id)
    query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def record_event(
    session: AsyncSession,
    *,
    category: str,
    name: str,
    level: str = "INFO",
    subject_id: Optional[str] = None,
    fields: Optional[Dict[str, Any]] = None,
) -> Event:
    """Stage an audit event on ``session``; the caller owns the commit."""
    event = Event(
        id=str(uuid4()),
        category=category,
        name=name,
        level=level,
        subject_id=subject_id,
        fields=fields or {},
    )
    session.add(event)
    _logger.debug(
        "events.record",
        "Recorded event",
        event_id=event.id,
        category=category,
        name=name,
        level=level,
        subject_id=subject_id,
    )
    return event
