from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from eightball.db.session import get_db
from eightball.db.models.organization import Profile

bearer = HTTPBearer(auto_error=False)

ORGANIZATION_HEADER = "X-Organization-Id"

# Tokens are issued by the hosted auth provider and signed with its shared secret.
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "authenticated")
JWT_TTL_MIN = int(os.getenv("JWT_TTL_MIN", "60"))

# Highest privilege first
ROLES = ("super_admin", "company_admin", "manager", "staff")


@dataclass
class Principal:
    user_id: str | None = None
    email: str = "anonymous"
    role: str | None = None
    organization_id: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_super_admin(self) -> bool:
        return self.role == "super_admin"

    def has_role(self, role: str) -> bool:
        """True when the principal holds ``role`` or anything above it."""
        if self.role not in ROLES or role not in ROLES:
            return False
        return ROLES.index(self.role) <= ROLES.index(role)


ANONYMOUS = Principal()


def create_access_token(user_id: str, email: str | None = None, ttl_minutes: int | None = None) -> str:
    """Mint a token shaped like the auth provider's. Used by local tooling and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "aud": JWT_AUDIENCE,
        "role": "authenticated",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes or JWT_TTL_MIN)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def get_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> Principal:
    if not creds or not creds.credentials:
        return ANONYMOUS

    try:
        payload = jwt.decode(creds.credentials, JWT_SECRET, algorithms=[JWT_ALG], audience=JWT_AUDIENCE)
    except JWTError:
        return ANONYMOUS

    user_id = payload.get("sub")
    if not user_id:
        return ANONYMOUS
    profile = db.query(Profile).filter(Profile.id == user_id).first()
    if not profile or not profile.is_active:
        return ANONYMOUS
    return Principal(
        user_id=profile.id,
        email=profile.email or payload.get("email") or "unknown",
        role=profile.role,
        organization_id=profile.organization_id,
    )


def require_user(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_authenticated:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return principal


def require_role(role: str) -> Callable:
    def _dep(principal: Principal = Depends(require_user)) -> Principal:
        if not principal.has_role(role):
            raise HTTPException(status_code=403, detail={"error": "missing_role", "required": role})
        return principal

    return _dep


def require_organization(request: Request, principal: Principal = Depends(require_user)) -> str:
    """Resolve the organization every query must be scoped by.

    Members are pinned to their own organization. Super admins act on the
    organization named in the X-Organization-Id header.
    """
    header_org = request.headers.get(ORGANIZATION_HEADER)
    if principal.is_super_admin:
        org_id = header_org or principal.organization_id
    else:
        org_id = principal.organization_id
        if header_org and header_org != org_id:
            raise HTTPException(status_code=403, detail="Organization mismatch")
    if not org_id:
        raise HTTPException(status_code=400, detail="Organization required")
    return org_id
