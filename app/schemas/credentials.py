from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CredentialCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    token: str = Field(min_length=1)
    visibility: Literal["private", "public"] = "private"


class CredentialOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    owner: str
    visibility: str
    last_used_at: Optional[datetime]
    created_at: datetime


class RepositoryOut(BaseModel):
    id: str
    name: str
    full_name: str
    url: str
    description: Optional[str] = None


class BranchesOut(BaseModel):
    repository_url: str
    branches: List[str]
