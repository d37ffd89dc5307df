from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from eightball.core.security import require_organization, require_role
from eightball.db.session import get_db
from eightball.events.subscriptions import EventSubscription

router = APIRouter(
    prefix="/events",
    tags=["events"],
    dependencies=[Depends(require_role("company_admin"))],
)


class SubscriptionIn(BaseModel):
    name: str = Field(default="subscription", max_length=128)
    topic_pattern: str = Field(..., min_length=1, max_length=128)
    target_url: str = Field(..., min_length=1)
    headers: dict = Field(default_factory=dict)
    is_active: bool = True


@router.get("/subscriptions")
def list_subscriptions(db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    subs = (
        db.query(EventSubscription)
        .filter(EventSubscription.organization_id == org_id)
        .order_by(EventSubscription.created_at.desc())
        .all()
    )
    return [
        {
            "id": s.id,
            "name": s.name,
            "topic_pattern": s.topic_pattern,
            "target_url": s.target_url,
            "headers": s.headers or {},
            "is_active": bool(s.is_active),
            "failure_count": int(s.failure_count or 0),
            "last_error": s.last_error,
            "last_delivered_at": s.last_delivered_at.isoformat() if s.last_delivered_at else None,
            "created_at": s.created_at.isoformat() if s.created_at else None,
        }
        for s in subs
    ]


@router.post("/subscriptions", status_code=201)
def create_subscription(payload: SubscriptionIn, db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    s = EventSubscription(
        organization_id=org_id,
        name=payload.name,
        topic_pattern=payload.topic_pattern,
        target_url=payload.target_url,
        headers=payload.headers,
        is_active=payload.is_active,
        failure_count=0,
    )
    db.add(s)
    db.commit()
    db.refresh(s)
    return {"ok": True, "id": s.id}


def _get(db: Session, org_id: str, sub_id: str) -> EventSubscription | None:
    return (
        db.query(EventSubscription)
        .filter(EventSubscription.organization_id == org_id, EventSubscription.id == sub_id)
        .first()
    )


@router.post("/subscriptions/{sub_id}/toggle")
def toggle_subscription(
    sub_id: str,
    payload: dict | None = None,
    db: Session = Depends(get_db),
    org_id: str = Depends(require_organization),
):
    s = _get(db, org_id, sub_id)
    if not s:
        raise HTTPException(404, "Unknown subscription")
    s.is_active = bool((payload or {}).get("is_active", not bool(s.is_active)))
    if s.is_active:
        s.failure_count = 0
        s.last_error = None
    db.commit()
    return {"ok": True, "id": s.id, "is_active": bool(s.is_active)}


@router.delete("/subscriptions/{sub_id}")
def delete_subscription(sub_id: str, db: Session = Depends(get_db), org_id: str = Depends(require_organization)):
    s = _get(db, org_id, sub_id)
    if not s:
        return {"ok": True, "deleted": False}
    db.delete(s)
    db.commit()
    return {"ok": True, "deleted": True}
