from __future__ import annotations
from sqlalchemy import String, JSON, Boolean, Text, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from eightball.db.base import Base
from eightball.db.models.common import HasId, HasCreatedAt, HasUpdatedAt

class Organization(Base, HasId, HasCreatedAt, HasUpdatedAt):
    __tablename__ = "organizations"
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    tier: Mapped[str] = mapped_column(String(16), default="trial", nullable=False)  # trial|basic|premium|enterprise
    status: Mapped[str] = mapped_column(String(16), default="trial", nullable=False)  # trial|active|suspended|cancelled
    settings: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

class Profile(Base, HasCreatedAt, HasUpdatedAt):
    """User profile. The id is the auth provider's user id (JWT ``sub``)."""
    __tablename__ = "profiles"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(254), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(24), default="staff", nullable=False)  # super_admin|company_admin|manager|staff
    organization_id: Mapped[str | None] = mapped_column(ForeignKey("organizations.id"), nullable=True, index=True)
    first_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
