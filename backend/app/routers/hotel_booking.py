from __future__ import annotations

from fastapi import APIRouter, Depends, Form

from app.auth import Principal, get_current_principal
from app.db import get_db
from app.schemas_booking import (
    BookingPolicyRequest,
    BookingPolicyResponse,
    GatewayRedirectForm,
    HoldRequest,
    TransactionOut,
    TransactionRef,
)
from app.services.booking_orchestrator import BookingOrchestrator
from app.services.suppliers.hotel_supplier_client import HotelSupplierClient, get_supplier_client

router = APIRouter(prefix="/api/hotels", tags=["hotel-booking"])


def get_booking_orchestrator(
    db=Depends(get_db),
    supplier: HotelSupplierClient = Depends(get_supplier_client),
) -> BookingOrchestrator:
    return BookingOrchestrator(db, supplier)


@router.post("/bookingpolicy", response_model=BookingPolicyResponse)
async def booking_policy(
    payload: BookingPolicyRequest,
    principal: Principal = Depends(get_current_principal),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return await orchestrator.fetch_policy(principal, payload)


@router.post("/prebook", response_model=TransactionOut, status_code=201)
async def prebook(
    payload: HoldRequest,
    principal: Principal = Depends(get_current_principal),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return await orchestrator.hold(principal, payload)


@router.post("/process-payment/{transaction_id}", response_model=GatewayRedirectForm)
async def process_payment(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return await orchestrator.initiate_gateway_payment(principal, transaction_id)


@router.post("/payment-response-handler", response_model=TransactionOut)
async def payment_response_handler(
    orderNo: str = Form(...),
    encResp: str = Form(...),
    signature: str = Form(...),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    """Gateway server-to-server callback; authenticated by its signature only."""
    return await orchestrator.handle_gateway_callback(orderNo, encResp, signature)


@router.post("/confirm-booking", response_model=TransactionOut)
async def confirm_booking(
    payload: TransactionRef,
    principal: Principal = Depends(get_current_principal),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return await orchestrator.confirm_booking(principal, payload.transaction_id)


@router.get("/transactions/{transaction_id}", response_model=TransactionOut)
async def get_transaction(
    transaction_id: str,
    principal: Principal = Depends(get_current_principal),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return await orchestrator.get_transaction(principal, transaction_id)
