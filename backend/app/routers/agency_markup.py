from __future__ import annotations

from fastapi import APIRouter, Depends

from app.auth import Principal, get_current_principal, resolve_owner
from app.db import get_db
from app.errors import AppError
from app.schemas_markup import MarkupOut, MarkupToggleRequest, MarkupUpsertRequest
from app.services.pricing_engine import PricingEngine

router = APIRouter(prefix="/api/agency", tags=["agency-markup"])


def _markup_out(agency_id: str, doc) -> MarkupOut:
    if not doc:
        return MarkupOut(agency_id=agency_id)
    return MarkupOut(
        agency_id=agency_id,
        type=doc.get("type"),
        value=float(doc.get("value") or 0.0),
        is_active=bool(doc.get("is_active")),
        updated_at=doc.get("updated_at"),
    )


async def _agency_owner_id(db, principal: Principal) -> str:
    owner = await resolve_owner(db, principal)
    if principal.type != "agency":
        raise AppError(403, "forbidden", "Only the agency account can manage markup", {})
    return owner.agency_id


@router.get("/markup", response_model=MarkupOut)
async def get_markup(principal: Principal = Depends(get_current_principal), db=Depends(get_db)):
    owner = await resolve_owner(db, principal)
    doc = await PricingEngine(db).get_markup(owner.agency_id)
    return _markup_out(owner.agency_id, doc)


@router.put("/markup", response_model=MarkupOut)
async def put_markup(
    payload: MarkupUpsertRequest,
    principal: Principal = Depends(get_current_principal),
    db=Depends(get_db),
):
    agency_id = await _agency_owner_id(db, principal)
    doc = await PricingEngine(db).set_markup(
        agency_id, type=payload.type, value=payload.value, is_active=payload.is_active
    )
    return _markup_out(agency_id, doc)


@router.patch("/markup/toggle", response_model=MarkupOut)
async def toggle_markup(
    payload: MarkupToggleRequest,
    principal: Principal = Depends(get_current_principal),
    db=Depends(get_db),
):
    agency_id = await _agency_owner_id(db, principal)
    doc = await PricingEngine(db).toggle_markup(agency_id, payload.is_active)
    if doc is None:
        raise AppError(404, "markup_not_found", "No markup rule configured for this agency", {})
    return _markup_out(agency_id, doc)
