from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from eightball.core.security import Principal, require_role
from eightball.db.session import get_db
from eightball.services.organizations.service import (
    OrganizationIn,
    OrganizationUpdate,
    create_organization,
    delete_organization,
    get_organization,
    list_organizations,
    organization_to_dict,
    update_organization,
)

router = APIRouter(prefix="/organizations", tags=["organizations"])

super_admin = require_role("super_admin")


@router.get("")
def list_(db: Session = Depends(get_db), p: Principal = Depends(super_admin)):
    return list_organizations(db)


@router.get("/{organization_id}")
def get(organization_id: str, db: Session = Depends(get_db), p: Principal = Depends(super_admin)):
    o = get_organization(db, organization_id)
    if not o:
        raise HTTPException(404, "Organization not found")
    return organization_to_dict(o)


@router.post("", status_code=201)
def create(payload: OrganizationIn, db: Session = Depends(get_db), p: Principal = Depends(super_admin)):
    return organization_to_dict(create_organization(db, payload, user_id=p.user_id))


@router.patch("/{organization_id}")
def update(
    organization_id: str,
    payload: OrganizationUpdate,
    db: Session = Depends(get_db),
    p: Principal = Depends(super_admin),
):
    o = update_organization(db, organization_id, payload, user_id=p.user_id)
    if not o:
        raise HTTPException(404, "Organization not found")
    return organization_to_dict(o)


@router.delete("/{organization_id}")
def delete(organization_id: str, db: Session = Depends(get_db), p: Principal = Depends(super_admin)):
    if not delete_organization(db, organization_id, user_id=p.user_id):
        raise HTTPException(404, "Organization not found")
    return {"ok": True}
