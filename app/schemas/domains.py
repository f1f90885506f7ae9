from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DomainCreate(BaseModel):
    service_id: str
    domain: str = Field(min_length=1, max_length=253)
    port: int = Field(ge=1, le=65535)


class DomainVerify(BaseModel):
    skip_verification: bool = False


class DomainOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    domain: str
    port: int
    service_id: str
    created_by: str
    status: str
    ssl_enabled: bool
    error_message: str
    config_path: Optional[str]
    last_checked_at: Optional[datetime]
    activated_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class VerificationOut(BaseModel):
    verified: bool
    message: str
    resolved_ips: List[str] = Field(default_factory=list)
    is_cloudflare: bool = False
    domain: DomainOut


class ActivationOut(BaseModel):
    success: bool
    message: str
    failed_step: Optional[str] = None
    domain: DomainOut


class DomainDeleteOut(BaseModel):
    success: bool
    warnings: List[str] = Field(default_factory=list)


class ServerIpOut(BaseModel):
    server_ip: str
