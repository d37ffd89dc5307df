from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

RFID_TAG_PATTERN = r"^[A-Za-z0-9_-]+$"
SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(ml|l|oz|cl)$", re.IGNORECASE)

BottleType = Literal["vodka", "whiskey", "rum", "gin", "tequila", "brandy", "liqueur", "wine", "beer", "other"]
BottleTier = Literal["premium", "mid_tier", "well", "wine", "beer"]
BottleStatus = Literal["active", "depleted", "missing", "damaged"]
SortField = Literal["created_at", "updated_at", "brand", "product", "type", "current_quantity", "last_scanned"]


def _check_size(v: str) -> str:
    if not SIZE_RE.match(v):
        raise ValueError("Size must be a number followed by ml, l, oz or cl (e.g. 750ml, 1L)")
    return v


SizeText = Annotated[str, AfterValidator(_check_size)]


class BottleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    rfid_tag: str = Field(..., min_length=1, max_length=100, pattern=RFID_TAG_PATTERN)
    brand: str = Field(..., min_length=1, max_length=100)
    product: str = Field(..., min_length=1, max_length=200)
    type: BottleType
    tier: BottleTier | None = None
    size: SizeText = "750ml"
    cost_price: float | None = Field(default=None, ge=0, le=10000)
    retail_price: float | None = Field(default=None, ge=0, le=10000)
    current_quantity: float = Field(default=1.0, ge=0, le=10)
    status: BottleStatus = "active"
    location_id: str | None = None
    metadata: dict = Field(default_factory=dict)


class BottleUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    rfid_tag: str | None = Field(default=None, min_length=1, max_length=100, pattern=RFID_TAG_PATTERN)
    brand: str | None = Field(default=None, min_length=1, max_length=100)
    product: str | None = Field(default=None, min_length=1, max_length=200)
    type: BottleType | None = None
    tier: BottleTier | None = None
    size: SizeText | None = None
    cost_price: float | None = Field(default=None, ge=0, le=10000)
    retail_price: float | None = Field(default=None, ge=0, le=10000)
    current_quantity: float | None = Field(default=None, ge=0, le=10)
    status: BottleStatus | None = None
    location_id: str | None = None
    metadata: dict | None = None


class BottleFilters(BaseModel):
    search: str | None = None
    type: BottleType | None = None
    status: BottleStatus | None = None
    location_id: str | None = None  # a location id, or "unassigned"
    sort_by: SortField = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class Pagination(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class ProductDetails(BaseModel):
    """Product data an operator supplies for tags that matched no bottle."""

    model_config = ConfigDict(str_strip_whitespace=True)

    brand: str = Field(..., min_length=1, max_length=100)
    product: str = Field(..., min_length=1, max_length=200)
    type: BottleType = "other"
    tier: BottleTier | None = None
    size: SizeText = "750ml"
    cost_price: float | None = Field(default=None, ge=0, le=10000)
    retail_price: float | None = Field(default=None, ge=0, le=10000)
    current_quantity: float = Field(default=1.0, ge=0, le=10)
    notes: str | None = Field(default=None, max_length=500)
