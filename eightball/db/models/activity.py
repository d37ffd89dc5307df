from __future__ import annotations
from sqlalchemy import String, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column
from eightball.db.base import Base
from eightball.db.models.common import HasId, HasCreatedAt

class ActivityLog(Base, HasId, HasCreatedAt):
    """Append-only audit trail."""
    __tablename__ = "activity_logs"
    organization_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

Index("ix_activity_logs_org_created", ActivityLog.organization_id, ActivityLog.created_at)
