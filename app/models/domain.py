from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin

DOMAIN_PENDING = "pending"
DOMAIN_VERIFIED = "verified"
DOMAIN_ACTIVE = "active"
DOMAIN_ERROR = "error"


class Domain(TimestampMixin, Base):
    __tablename__ = "domains"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    domain: Mapped[str] = mapped_column(String(253), unique=True, index=True)
    port: Mapped[int] = mapped_column(Integer)
    service_id: Mapped[str] = mapped_column(String(64), ForeignKey("services.id"), index=True)
    created_by: Mapped[str] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(16), default=DOMAIN_PENDING)
    ssl_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[str] = mapped_column(Text, default="")
    config_path: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
