from __future__ import annotations

from fastapi import APIRouter, Depends

from app.auth import Principal, get_current_principal, resolve_owner
from app.db import get_db
from app.schemas_hotels import (
    AutosuggestRequest,
    AutosuggestResponse,
    HotelSearchByIdsRequest,
    HotelSearchByIdsResponse,
    HotelSearchRequest,
    HotelSearchResponse,
)
from app.services.hotel_search import HotelSearchService
from app.services.suppliers.hotel_supplier_client import HotelSupplierClient, get_supplier_client

router = APIRouter(prefix="/api/hotels", tags=["hotels-search"])


def get_search_service(db=Depends(get_db), supplier: HotelSupplierClient = Depends(get_supplier_client)) -> HotelSearchService:
    return HotelSearchService(db, supplier)


@router.post("/search", response_model=HotelSearchResponse)
async def search_hotels(
    payload: HotelSearchRequest,
    principal: Principal = Depends(get_current_principal),
    db=Depends(get_db),
    service: HotelSearchService = Depends(get_search_service),
):
    owner = await resolve_owner(db, principal)
    return await service.search(payload.to_supplier(), owner.agency_id)


@router.post("/search-by-ids", response_model=HotelSearchByIdsResponse)
async def search_hotels_by_ids(
    payload: HotelSearchByIdsRequest,
    principal: Principal = Depends(get_current_principal),
    db=Depends(get_db),
    service: HotelSearchService = Depends(get_search_service),
):
    owner = await resolve_owner(db, principal)
    return await service.search_by_ids(payload.to_supplier(), payload.hotel_ids, owner.agency_id)


@router.post("/autosuggest", response_model=AutosuggestResponse)
async def autosuggest(
    payload: AutosuggestRequest,
    principal: Principal = Depends(get_current_principal),
    service: HotelSearchService = Depends(get_search_service),
):
    return await service.autosuggest(payload.query, locale=payload.locale)
