from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

# How a failed booking's money is (or is not) returned to the payer.
REFUND_AUTOMATIC = "automatic"
REFUND_REFUNDED = "refunded"
REFUND_MANUAL_REVIEW = "manual_review"
REFUND_NOT_APPLICABLE = "not_applicable"


@dataclass
class RefundResult:
    ok: bool
    method: str
    outcome: str
    reference: Optional[str] = None
    reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "method": self.method,
            "outcome": self.outcome,
            "reference": self.reference,
            "reason": self.reason,
            "raw": self.raw,
        }


class PaymentAdapter(Protocol):
    """What the orchestrator needs from a payment method after capture.

    Capture itself differs per method (synchronous wallet debit vs redirect and
    callback), so only the compensating side is shared.
    """

    method: str

    async def refund(self, transaction: Dict[str, Any], reason: str) -> RefundResult:  # pragma: no cover - interface
        ...
