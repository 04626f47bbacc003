from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Occupancy(BaseModel):
    adults: int = Field(ge=1, le=10)
    children_ages: List[int] = Field(default_factory=list)


class HotelSearchRequest(BaseModel):
    """Search criteria forwarded to the supplier (unknown keys pass through)."""

    model_config = ConfigDict(extra="allow")

    check_in_date: date
    check_out_date: date
    occupancies: List[Occupancy] = Field(min_length=1)
    city_code: Optional[str] = None
    city_name: Optional[str] = None
    nationality: str = "IN"
    currency: str = "INR"
    transaction_identifier: Optional[str] = None

    @model_validator(mode="after")
    def _check_dates(self) -> "HotelSearchRequest":
        if self.check_out_date <= self.check_in_date:
            raise ValueError("check_out_date must be after check_in_date")
        return self

    def to_supplier(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class HotelSearchByIdsRequest(HotelSearchRequest):
    hotel_ids: List[str] = Field(min_length=1)

    def to_supplier(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True, exclude={"hotel_ids"})


class AutosuggestRequest(BaseModel):
    query: str = Field(min_length=2, max_length=100)
    locale: str = "en-US"


class HotelSearchResponse(BaseModel):
    hotels: List[Dict[str, Any]]
    transaction_identifier: Optional[str] = None
    cache_hit: bool = False


class HotelSearchByIdsResponse(BaseModel):
    hotels: List[Dict[str, Any]]
    batches: int
    transaction_identifier: Optional[str] = None


class AutosuggestResponse(BaseModel):
    results: List[Dict[str, Any]]
    cache_hit: bool = False
