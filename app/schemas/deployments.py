from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class DeployJobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    service_id: str
    action: str
    source: str
    status: str
    attempts: int
    error: Optional[str]
    failed_step: Optional[str]
    enqueued_at: datetime
    finished_at: Optional[datetime]
