from __future__ import annotations

from typing import Dict, Optional

from sqlalchemy import JSON, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin


class ServiceEnvironment(TimestampMixin, Base):
    __tablename__ = "service_environments"
    __table_args__ = (UniqueConstraint("service_id", "name", name="uq_service_environment_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("services.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(128))
    description: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    variables: Mapped[Dict[str, str]] = mapped_column(JSON, default=dict)
