from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


class StaySearch(BaseModel):
    model_config = ConfigDict(extra="allow")

    check_in_date: date
    check_out_date: date
    occupancies: List[Dict[str, Any]] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_dates(self) -> "StaySearch":
        if self.check_out_date <= self.check_in_date:
            raise ValueError("check_out_date must be after check_in_date")
        return self


class HotelRef(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    name: Optional[str] = None


class BookingPolicyRequest(BaseModel):
    search: StaySearch
    hotel: HotelRef
    package: Dict[str, Any]
    transaction_identifier: str = Field(min_length=1)

    @field_validator("package")
    @classmethod
    def _package_has_key(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v.get("booking_key"):
            raise ValueError("package.booking_key is required")
        return v


class BookingPolicyResponse(BaseModel):
    policy_id: str
    booking_policy_id: str
    package: Dict[str, Any]
    cancellation_policy: Optional[Any] = None
    expires_in_minutes: int


class Guest(BaseModel):
    title: Optional[str] = None
    first_name: str = Field(min_length=1, max_length=60)
    last_name: str = Field(min_length=1, max_length=60)
    type: Literal["adult", "child"] = "adult"
    age: Optional[int] = Field(default=None, ge=0, le=120)
    room_index: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _child_needs_age(self) -> "Guest":
        if self.type == "child" and self.age is None:
            raise ValueError("child guests require an age")
        return self


class ContactDetail(BaseModel):
    first_name: str = Field(min_length=1, max_length=60)
    last_name: str = Field(min_length=1, max_length=60)
    email: EmailStr
    mobile: str = Field(pattern=r"^\+?[0-9]{7,15}$")
    country_code: Optional[str] = None


class HoldRequest(BaseModel):
    policy_id: str = Field(min_length=1)
    guests: List[Guest] = Field(min_length=1)
    contact: ContactDetail


class TransactionRef(BaseModel):
    transaction_id: str = Field(min_length=1)


class WalletEligibilityRequest(BaseModel):
    transaction_id: Optional[str] = None
    amount: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _one_of(self) -> "WalletEligibilityRequest":
        if not self.transaction_id and self.amount is None:
            raise ValueError("transaction_id or amount is required")
        return self


class TransactionOut(BaseModel):
    """Client view of a transaction; internal bookkeeping is not exposed."""

    id: str
    status: int
    status_label: str
    owner: Dict[str, Any]
    hotel: Optional[Dict[str, Any]] = None
    search: Optional[Dict[str, Any]] = None
    pricing: Optional[Dict[str, Any]] = None
    hold: Optional[Dict[str, Any]] = None
    payment: Optional[Dict[str, Any]] = None
    confirmation: Optional[Dict[str, Any]] = None
    compensation: Optional[Dict[str, Any]] = None
    created_at: str
    expires_at: str
    outcome: Dict[str, Any]


class GatewayRedirectForm(BaseModel):
    transaction_id: str
    action: str
    method: str
    fields: Dict[str, str]
