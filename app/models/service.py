from __future__ import annotations

from typing import List, Optional

from sqlalchemy import JSON, Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin

STATUS_STOPPED = "stopped"
STATUS_BUILDING = "building"
STATUS_ONLINE = "online"
STATUS_ERRORED = "errored"
SERVICE_STATUSES = frozenset({STATUS_STOPPED, STATUS_BUILDING, STATUS_ONLINE, STATUS_ERRORED})

VISIBILITY_PRIVATE = "private"
VISIBILITY_PUBLIC = "public"


class Service(TimestampMixin, Base):
    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    repository_url: Mapped[str] = mapped_column(String(512))
    branch: Mapped[str] = mapped_column(String(255))
    source_directory: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    script: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    args: Mapped[List[str]] = mapped_column(JSON, default=list)
    use_package_manager: Mapped[bool] = mapped_column(Boolean, default=False)
    package_script: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    package_args: Mapped[List[str]] = mapped_column(JSON, default=list)

    active_environment: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_STOPPED)
    process_handle: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    visibility: Mapped[str] = mapped_column(String(16), default=VISIBILITY_PRIVATE)
    owner: Mapped[str] = mapped_column(String(128), index=True)
    credential_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    runtime_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    cluster_instances: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    autostart: Mapped[bool] = mapped_column(Boolean, default=False)
    repo_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    deploy_key: Mapped[Optional[str]] = mapped_column(
        String(128), unique=True, index=True, nullable=True
    )
    webhook_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    webhook_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
