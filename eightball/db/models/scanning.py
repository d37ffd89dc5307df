from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, DateTime, JSON, Integer, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column
from eightball.db.base import Base
from eightball.db.models.common import HasOrganization

class ScanSessionRecord(Base, HasOrganization):
    """Audit summary of a confirmed scan session. The id is the client session id."""
    __tablename__ = "scan_sessions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    location_id: Mapped[str] = mapped_column(ForeignKey("locations.id"), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    bottle_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

Index("ix_scan_sessions_org_started", ScanSessionRecord.organization_id, ScanSessionRecord.started_at)
