from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

MarkupType = Literal["percentage", "fixed"]


class MarkupUpsertRequest(BaseModel):
    type: MarkupType
    value: float = Field(ge=0)
    is_active: bool = True


class MarkupToggleRequest(BaseModel):
    is_active: bool


class MarkupOut(BaseModel):
    agency_id: str
    type: Optional[MarkupType] = None
    value: float = 0.0
    is_active: bool = False
    updated_at: Optional[datetime] = None
