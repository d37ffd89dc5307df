from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from eightball.core.audit import audit
from eightball.core.errors import ValidationError
from eightball.db.models.activity import ActivityLog
from eightball.db.models.inventory import Bottle, Location
from eightball.db.models.organization import Organization, Profile
from eightball.db.models.scanning import ScanSessionRecord
from eightball.events.outbox import OutboxEvent
from eightball.events.subscriptions import EventSubscription

logger = logging.getLogger(__name__)

SLUG_PATTERN = r"^[a-z0-9-]+$"

OrganizationTier = Literal["trial", "basic", "premium", "enterprise"]
OrganizationStatus = Literal["trial", "active", "suspended", "cancelled"]


# ---- Schemas ----
class OrganizationIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=50, pattern=SLUG_PATTERN)
    description: str | None = Field(default=None, max_length=500)
    website: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    tier: OrganizationTier = "trial"
    status: OrganizationStatus = "trial"
    settings: dict = Field(default_factory=dict)


class OrganizationUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=100)
    slug: str | None = Field(default=None, min_length=1, max_length=50, pattern=SLUG_PATTERN)
    description: str | None = Field(default=None, max_length=500)
    website: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    tier: OrganizationTier | None = None
    status: OrganizationStatus | None = None
    settings: dict | None = None


def organization_to_dict(o: Organization) -> dict:
    return {
        "id": o.id,
        "name": o.name,
        "slug": o.slug,
        "description": o.description,
        "website": o.website,
        "phone": o.phone,
        "tier": o.tier,
        "status": o.status,
        "settings": o.settings or {},
        "created_at": o.created_at.isoformat() if o.created_at else None,
    }


def _counts(db: Session, column) -> dict[str, int]:
    return dict(db.query(column, func.count()).group_by(column).all())


def list_organizations(db: Session) -> list[dict]:
    """All organizations with user, location and bottle counts."""
    users = _counts(db, Profile.organization_id)
    locations = _counts(db, Location.organization_id)
    bottles = _counts(db, Bottle.organization_id)
    rows = db.query(Organization).order_by(Organization.name.asc()).all()
    return [
        {
            **organization_to_dict(o),
            "user_count": users.get(o.id, 0),
            "location_count": locations.get(o.id, 0),
            "bottle_count": bottles.get(o.id, 0),
        }
        for o in rows
    ]


def get_organization(db: Session, organization_id: str) -> Organization | None:
    return db.query(Organization).filter(Organization.id == organization_id).first()


def _check_slug(db: Session, slug: str, exclude_id: str | None = None) -> None:
    q = db.query(Organization.id).filter(Organization.slug == slug)
    if exclude_id:
        q = q.filter(Organization.id != exclude_id)
    if q.first():
        raise ValidationError(
            f"Organization slug already exists: {slug}",
            [{"field": "slug", "message": f"{slug} already exists"}],
        )


def create_organization(db: Session, data: OrganizationIn, *, user_id: str | None = None) -> Organization:
    _check_slug(db, data.slug)
    o = Organization(**data.model_dump())
    db.add(o)
    db.flush()
    audit(
        db,
        action="organization_created",
        resource_type="organization",
        resource_id=o.id,
        user_id=user_id,
        organization_id=o.id,
        metadata={"slug": o.slug, "tier": o.tier},
        commit=False,
    )
    db.commit()
    db.refresh(o)
    return o


def update_organization(
    db: Session,
    organization_id: str,
    data: OrganizationUpdate,
    *,
    user_id: str | None = None,
) -> Organization | None:
    o = get_organization(db, organization_id)
    if not o:
        return None
    changes = data.model_dump(exclude_unset=True)
    if changes.get("slug"):
        _check_slug(db, changes["slug"], exclude_id=o.id)
    for k, v in changes.items():
        if v is not None or k in ("description", "website", "phone"):
            setattr(o, k, v)
    audit(
        db,
        action="organization_updated",
        resource_type="organization",
        resource_id=o.id,
        user_id=user_id,
        organization_id=o.id,
        metadata={"fields": sorted(changes)},
        commit=False,
    )
    db.commit()
    db.refresh(o)
    return o


def delete_organization(db: Session, organization_id: str, *, user_id: str | None = None) -> bool:
    """Delete an organization and every row scoped to it. Profiles are detached, not deleted."""
    o = get_organization(db, organization_id)
    if not o:
        return False

    for model in (Bottle, ScanSessionRecord, Location, OutboxEvent, EventSubscription, ActivityLog):
        db.query(model).filter(model.organization_id == organization_id).delete(synchronize_session=False)
    db.query(Profile).filter(Profile.organization_id == organization_id).update(
        {Profile.organization_id: None}, synchronize_session=False
    )
    db.delete(o)
    audit(
        db,
        action="organization_deleted",
        resource_type="organization",
        resource_id=organization_id,
        user_id=user_id,
        metadata={"slug": o.slug, "organization_id": organization_id},
        commit=False,
    )
    db.commit()
    logger.info("Deleted organization %s (%s)", organization_id, o.slug)
    return True
