from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, DateTime, JSON, Boolean, Integer, Numeric, ForeignKey, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from eightball.db.base import Base
from eightball.db.models.common import HasId, HasCreatedAt, HasUpdatedAt, HasOrganization

BOTTLE_STATUSES = ("active", "depleted", "missing", "damaged")
BOTTLE_TYPES = ("vodka", "whiskey", "rum", "gin", "tequila", "brandy", "liqueur", "wine", "beer", "other")
BOTTLE_TIERS = ("premium", "mid_tier", "well", "wine", "beer")
MAX_BOTTLE_QUANTITY = 10

class Location(Base, HasId, HasCreatedAt, HasUpdatedAt, HasOrganization):
    __tablename__ = "locations"
    __table_args__ = (UniqueConstraint("organization_id", "code", name="uq_locations_org_code"),)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(String(20), nullable=False)
    settings: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

class Bottle(Base, HasId, HasCreatedAt, HasUpdatedAt, HasOrganization):
    __tablename__ = "bottles"
    __table_args__ = (
        UniqueConstraint("organization_id", "rfid_tag", name="uq_bottles_org_rfid_tag"),
        CheckConstraint(f"current_quantity >= 0 AND current_quantity <= {MAX_BOTTLE_QUANTITY}", name="ck_bottles_quantity_range"),
    )
    location_id: Mapped[str | None] = mapped_column(ForeignKey("locations.id"), nullable=True, index=True)
    rfid_tag: Mapped[str] = mapped_column(String(100), nullable=False)
    brand: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    product: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)  # see BOTTLE_TYPES
    tier: Mapped[str | None] = mapped_column(String(16), nullable=True)  # see BOTTLE_TIERS
    size: Mapped[str] = mapped_column(String(20), nullable=False)  # e.g. "750ml", "1L"
    size_ml: Mapped[int] = mapped_column(Integer, default=750, nullable=False)
    cost_price: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=True)
    retail_price: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=True)
    # Fractional fill level in bottle-equivalents
    current_quantity: Mapped[float] = mapped_column(Numeric(5, 2, asdecimal=False), default=1.0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False, index=True)  # see BOTTLE_STATUSES
    last_scanned: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)

    location: Mapped[Location | None] = relationship(lazy="joined")

Index("ix_bottles_org_status_quantity", Bottle.organization_id, Bottle.status, Bottle.current_quantity)
