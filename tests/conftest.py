from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from eightball.db import models  # noqa: F401
from eightball.db import session as db_session
from eightball.db.base import Base
from eightball.db.models.inventory import Bottle, Location
from eightball.db.models.organization import Organization, Profile


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    # Code that opens its own sessions (audit middleware, gateway) uses this too
    monkeypatch.setattr(db_session, "SessionLocal", factory)
    return factory


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def org(db):
    o = Organization(name="Demo Bar", slug="demo-bar", tier="basic", status="active")
    db.add(o)
    db.commit()
    db.refresh(o)
    return o


@pytest.fixture
def other_org(db):
    o = Organization(name="Other Pub", slug="other-pub")
    db.add(o)
    db.commit()
    db.refresh(o)
    return o


@pytest.fixture
def location(db, org):
    loc = Location(organization_id=org.id, name="Main Bar", code="MAIN")
    db.add(loc)
    db.commit()
    db.refresh(loc)
    return loc


@pytest.fixture
def make_bottle(db):
    def _make(organization_id: str, rfid_tag: str, **kw) -> Bottle:
        values = {
            "brand": "Acme",
            "product": "Vodka",
            "type": "vodka",
            "size": "750ml",
            "size_ml": 750,
            "current_quantity": 1.0,
            "status": "active",
        }
        values.update(kw)
        b = Bottle(organization_id=organization_id, rfid_tag=rfid_tag, **values)
        db.add(b)
        db.commit()
        db.refresh(b)
        return b

    return _make


@pytest.fixture
def make_profile(db):
    def _make(user_id: str, role: str = "staff", organization_id: str | None = None) -> Profile:
        p = Profile(id=user_id, email=f"{user_id}@example.com", role=role, organization_id=organization_id)
        db.add(p)
        db.commit()
        return p

    return _make
