from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Visibility = Literal["private", "public"]


class EnvironmentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)


class EnvironmentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    description: Optional[str] = None
    variables: Optional[Dict[str, str]] = None


class EnvironmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    description: Optional[str]
    variables: Dict[str, str]
    created_at: datetime
    updated_at: datetime


class ServiceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    repository_url: str = Field(min_length=1)
    branch: str = Field(default="main", min_length=1)
    source_directory: Optional[str] = None
    script: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    use_package_manager: bool = False
    package_script: Optional[str] = None
    package_args: List[str] = Field(default_factory=list)
    visibility: Visibility = "private"
    credential_id: Optional[str] = None
    runtime_version: Optional[str] = None
    cluster_instances: Optional[int] = Field(default=None, ge=1, le=64)
    autostart: bool = False
    environments: List[EnvironmentCreate] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    repository_url: Optional[str] = None
    branch: Optional[str] = None
    source_directory: Optional[str] = None
    script: Optional[str] = None
    args: Optional[List[str]] = None
    use_package_manager: Optional[bool] = None
    package_script: Optional[str] = None
    package_args: Optional[List[str]] = None
    visibility: Optional[Visibility] = None
    credential_id: Optional[str] = None
    runtime_version: Optional[str] = None
    cluster_instances: Optional[int] = Field(default=None, ge=1, le=64)
    autostart: Optional[bool] = None


class ServiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    repository_url: str
    branch: str
    source_directory: Optional[str]
    script: Optional[str]
    args: List[str]
    use_package_manager: bool
    package_script: Optional[str]
    package_args: List[str]
    active_environment: Optional[str]
    status: str
    process_handle: Optional[str]
    visibility: str
    owner: str
    credential_id: Optional[str]
    runtime_version: Optional[str]
    cluster_instances: Optional[int]
    autostart: bool
    webhook_enabled: bool
    environments: List[EnvironmentOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class LifecycleOut(BaseModel):
    success: bool
    message: str
    failed_step: Optional[str] = None
    service: ServiceOut


class ProcessOut(BaseModel):
    pid: Optional[int]
    status: str
    cpu: float
    memory: int
    uptime_ms: int
    restarts: int


class ServiceMetricsOut(BaseModel):
    cpu: float
    memory: int
    uptime_ms: int
    restarts: int
    instances: int
    processes: List[ProcessOut]


class MemoryUsageOut(BaseModel):
    total: int
    free: int
    used: int
    usage_percentage: float


class CpuCoreOut(BaseModel):
    speed_mhz: float
    usage: float


class CpuUsageOut(BaseModel):
    cores: int
    usage: List[CpuCoreOut]


class SystemMetricsOut(BaseModel):
    memory: MemoryUsageOut
    cpu: CpuUsageOut


class ServiceLogsOut(BaseModel):
    service_id: str
    lines: int
    logs: str


class WebhookStatusOut(BaseModel):
    enabled: bool
    webhook_url: Optional[str] = None


class WebhookDeliveryOut(BaseModel):
    success: bool
    message: str
