from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from app.auth import Principal, get_current_principal
from app.routers.hotel_booking import get_booking_orchestrator
from app.schemas_booking import TransactionOut, TransactionRef, WalletEligibilityRequest
from app.services.booking_orchestrator import BookingOrchestrator

router = APIRouter(prefix="/api/hotels/wallet", tags=["hotel-wallet"])


@router.get("/balance")
async def wallet_balance(
    principal: Principal = Depends(get_current_principal),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.wallet_balance(principal)


@router.post("/check-eligibility")
async def check_eligibility(
    payload: WalletEligibilityRequest,
    principal: Principal = Depends(get_current_principal),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.check_wallet_eligibility(
        principal, transaction_id=payload.transaction_id, amount=payload.amount
    )


@router.post("/payment", response_model=TransactionOut)
async def wallet_payment(
    payload: TransactionRef,
    principal: Principal = Depends(get_current_principal),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return await orchestrator.pay_with_wallet(principal, payload.transaction_id)
