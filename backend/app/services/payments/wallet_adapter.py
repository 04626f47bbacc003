from __future__ import annotations

from typing import Any, Dict

from app.services.payments.base import REFUND_REFUNDED, RefundResult
from app.services.wallet_ledger import WalletLedger
from app.utils import now_utc


class WalletPaymentAdapter:
    """Pays a held transaction from the owning agency's prepaid wallet."""

    method = "wallet"

    def __init__(self, ledger: WalletLedger) -> None:
        self.ledger = ledger

    async def debit(self, agency_id: str, amount: float, reference: str) -> Dict[str, Any]:
        entry = await self.ledger.debit(agency_id, amount, reference, reason="hotel_booking")
        return {
            "method": self.method,
            "entry_id": entry["_id"],
            "amount": entry["amount"],
            "balance_after": entry.get("balance_after"),
            "captured_at": now_utc(),
        }

    async def credit(self, agency_id: str, amount: float, reason: str, reference: str) -> Dict[str, Any]:
        return await self.ledger.credit(agency_id, amount, reason, reference)

    async def refund(self, transaction: Dict[str, Any], reason: str) -> RefundResult:
        record = transaction.get("payment_record") or {}
        entry = await self.credit(
            transaction["owner"]["agency_id"],
            record.get("amount") or transaction["pricing"]["total_chargeable_amount"],
            reason,
            transaction["_id"],
        )
        return RefundResult(
            ok=True,
            method=self.method,
            outcome=REFUND_REFUNDED,
            reference=entry["_id"],
            reason=reason,
            raw={"balance_after": entry.get("balance_after")},
        )
