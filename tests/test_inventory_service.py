from typing import get_args

import pytest
from pydantic import ValidationError as PydanticValidationError

from eightball.core.errors import DuplicateRfidTag, ValidationError
from eightball.db.models.inventory import BOTTLE_STATUSES, BOTTLE_TIERS, BOTTLE_TYPES
from eightball.db.models.activity import ActivityLog
from eightball.events.outbox import OutboxEvent
from eightball.services.inventory import service
from eightball.services.inventory.schemas import (
    BottleCreate,
    BottleFilters,
    BottleStatus,
    BottleTier,
    BottleType,
    BottleUpdate,
    Pagination,
    ProductDetails,
)


def _new(tag, **kw):
    values = {"rfid_tag": tag, "brand": "Acme", "product": "Vodka", "type": "vodka"}
    values.update(kw)
    return BottleCreate(**values)


@pytest.mark.parametrize(
    "text, ml",
    [("750ml", 750), ("1L", 1000), ("1.75 l", 1750), ("70cl", 700), ("25.4oz", 751), ("huge", 750), (None, 750)],
)
def test_parse_size(text, ml):
    assert service.parse_size(text) == ml


class TestSchemas:
    def test_literals_match_stored_values(self):
        assert get_args(BottleType) == BOTTLE_TYPES
        assert get_args(BottleTier) == BOTTLE_TIERS
        assert get_args(BottleStatus) == BOTTLE_STATUSES

    def test_tag_charset(self):
        with pytest.raises(PydanticValidationError):
            _new("tag with spaces")

    def test_quantity_bounds(self):
        with pytest.raises(PydanticValidationError):
            _new("T1", current_quantity=11)

    def test_size_format(self):
        assert _new("T1", size="1.5L").size == "1.5L"
        with pytest.raises(PydanticValidationError):
            _new("T1", size="a bottle")

    def test_whitespace_is_stripped(self):
        d = ProductDetails(brand="  Acme ", product="Vodka")
        assert d.brand == "Acme"
        assert d.type == "other"
        assert d.size == "750ml"

    def test_pagination_offset(self):
        assert Pagination(page=3, limit=10).offset == 20
        with pytest.raises(PydanticValidationError):
            Pagination(limit=500)


class TestCreate:
    def test_create_sets_size_and_publishes(self, db, org, location):
        b = service.create_bottle(db, org.id, _new("T-1", size="1L", location_id=location.id), user_id="u1")
        assert b.size_ml == 1000
        assert service.bottle_to_dict(b)["location_name"] == "Main Bar"
        topics = [e.topic for e in db.query(OutboxEvent).all()]
        assert topics == ["bottles.created"]

    def test_tag_unique_per_organization(self, db, org, other_org):
        service.create_bottle(db, org.id, _new("T-1"))
        with pytest.raises(DuplicateRfidTag):
            service.create_bottle(db, org.id, _new("T-1"))
        # Same tag in another organization is fine
        service.create_bottle(db, other_org.id, _new("T-1"))

    def test_unknown_location(self, db, org):
        with pytest.raises(ValidationError):
            service.create_bottle(db, org.id, _new("T-1", location_id="nope"))

    def test_is_rfid_tag_unique(self, db, org, make_bottle):
        b = make_bottle(org.id, "T-1")
        assert service.is_rfid_tag_unique(db, org.id, "T-1") is False
        assert service.is_rfid_tag_unique(db, org.id, "T-1", exclude_id=b.id) is True
        assert service.is_rfid_tag_unique(db, org.id, "T-2") is True


class TestBulk:
    def test_bulk_creates_audits_and_publishes(self, db, org, location):
        rows = service.create_bottles_bulk(
            db, org.id, [_new("T-1", location_id=location.id), _new("T-2", location_id=location.id)], user_id="u1"
        )
        assert {b.rfid_tag for b in rows} == {"T-1", "T-2"}
        log = db.query(ActivityLog).filter(ActivityLog.action == "bulk_inventory_processing").one()
        assert log.meta["bottle_count"] == 2
        assert log.user_id == "u1"
        assert db.query(OutboxEvent).filter(OutboxEvent.topic == "bottles.created").count() == 1

    def test_repeated_tag_in_batch_writes_nothing(self, db, org):
        with pytest.raises(DuplicateRfidTag) as exc:
            service.create_bottles_bulk(db, org.id, [_new("T-1"), _new("T-1")])
        assert exc.value.rfid_tags == ["T-1"]
        assert service.list_known_bottles(db, org.id) == []

    def test_existing_tag_writes_nothing(self, db, org, make_bottle):
        make_bottle(org.id, "T-2")
        with pytest.raises(DuplicateRfidTag):
            service.create_bottles_bulk(db, org.id, [_new("T-1"), _new("T-2")])
        assert [b.rfid_tag for b in service.list_known_bottles(db, org.id)] == ["T-2"]

    def test_empty_batch(self, db, org):
        assert service.create_bottles_bulk(db, org.id, []) == []


class TestList:
    @pytest.fixture
    def stocked(self, org, location, make_bottle):
        make_bottle(org.id, "T-1", brand="Absolut", location_id=location.id)
        make_bottle(org.id, "T-2", brand="Bacardi", type="rum", product="Carta Blanca")
        make_bottle(org.id, "T-3", brand="Campari", type="liqueur", status="depleted", location_id=location.id)
        return location

    def test_search_matches_brand_product_or_tag(self, db, org, stocked):
        rows, total = service.list_bottles(db, org.id, BottleFilters(search="carta"))
        assert total == 1 and rows[0].rfid_tag == "T-2"
        rows, total = service.list_bottles(db, org.id, BottleFilters(search="T-3"))
        assert [b.brand for b in rows] == ["Campari"]

    def test_filters(self, db, org, stocked):
        _, total = service.list_bottles(db, org.id, BottleFilters(status="depleted"))
        assert total == 1
        _, total = service.list_bottles(db, org.id, BottleFilters(location_id=stocked.id))
        assert total == 2
        rows, _ = service.list_bottles(db, org.id, BottleFilters(location_id="unassigned"))
        assert [b.rfid_tag for b in rows] == ["T-2"]

    def test_sort_and_paginate(self, db, org, stocked):
        f = BottleFilters(sort_by="brand", sort_order="asc")
        rows, total = service.list_bottles(db, org.id, f, Pagination(page=2, limit=2))
        assert total == 3
        assert [b.brand for b in rows] == ["Campari"]

    def test_scoped_to_organization(self, db, org, other_org, stocked):
        rows, total = service.list_bottles(db, other_org.id)
        assert (rows, total) == ([], 0)

    def test_stats(self, db, org, stocked):
        assert service.inventory_stats(db, org.id) == {
            "total": 3,
            "active": 2,
            "depleted": 1,
            "missing": 0,
            "damaged": 0,
        }


class TestUpdateDelete:
    def test_update_fields_and_size(self, db, org, make_bottle):
        b = make_bottle(org.id, "T-1", meta={"a": 1})
        out = service.update_bottle(db, org.id, b.id, BottleUpdate(size="1L", status="missing", metadata={"b": 2}))
        assert out.size_ml == 1000
        assert out.status == "missing"
        assert out.meta == {"a": 1, "b": 2}

    def test_update_tag_must_stay_unique(self, db, org, make_bottle):
        make_bottle(org.id, "T-1")
        b = make_bottle(org.id, "T-2")
        with pytest.raises(DuplicateRfidTag):
            service.update_bottle(db, org.id, b.id, BottleUpdate(rfid_tag="T-1"))
        # Keeping its own tag is allowed
        assert service.update_bottle(db, org.id, b.id, BottleUpdate(rfid_tag="T-2")).rfid_tag == "T-2"

    def test_update_other_organization_is_not_found(self, db, org, other_org, make_bottle):
        b = make_bottle(org.id, "T-1")
        assert service.update_bottle(db, other_org.id, b.id, BottleUpdate(brand="X")) is None

    def test_delete(self, db, org, make_bottle):
        b = make_bottle(org.id, "T-1")
        assert service.delete_bottle(db, org.id, b.id) is True
        assert service.delete_bottle(db, org.id, b.id) is False
        assert db.query(OutboxEvent).filter(OutboxEvent.topic == "bottles.deleted").count() == 1
