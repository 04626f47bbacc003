from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from app.domain.booking_state_machine import TransactionStatus
from app.services.payments.base import (
    REFUND_AUTOMATIC,
    REFUND_MANUAL_REVIEW,
    REFUND_NOT_APPLICABLE,
    REFUND_REFUNDED,
)
from app.utils import as_utc, serialize_doc

_REFUND_MESSAGES = {
    REFUND_REFUNDED: "The amount has been credited back to your wallet.",
    REFUND_AUTOMATIC: "A refund has been requested and will be returned to your original payment method.",
    REFUND_MANUAL_REVIEW: "The refund could not be completed automatically; our team will review it and return the amount.",
}


def resolve_outcome(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Explain where a transaction stands and what happened to the money."""

    status = TransactionStatus(doc["status"])
    money_taken = bool(doc.get("payment_record"))
    compensation = doc.get("compensation_record") or {}

    if status == TransactionStatus.CONFIRMED:
        return {"status": status.label, "money_taken": True, "refund": REFUND_NOT_APPLICABLE, "message": "Booking confirmed."}

    if status == TransactionStatus.PAYMENT_FAILED:
        return {
            "status": status.label,
            "money_taken": False,
            "refund": REFUND_NOT_APPLICABLE,
            "message": "Payment was not completed. No money was taken.",
        }

    if status == TransactionStatus.BOOKING_FAILED:
        if not money_taken:
            return {
                "status": status.label,
                "money_taken": False,
                "refund": REFUND_NOT_APPLICABLE,
                "message": "Booking failed before payment. No money was taken.",
            }
        refund = compensation.get("outcome") or REFUND_MANUAL_REVIEW
        return {
            "status": status.label,
            "money_taken": True,
            "refund": refund,
            "message": f"Booking failed after payment. {_REFUND_MESSAGES.get(refund, '')}".strip(),
        }

    return {
        "status": status.label,
        "money_taken": money_taken,
        "refund": REFUND_NOT_APPLICABLE,
        "message": "Booking in progress.",
    }


def _slot(doc: Dict[str, Any], name: str, drop: tuple = ("raw",)) -> Optional[Dict[str, Any]]:
    value = doc.get(name)
    if not isinstance(value, dict):
        return None
    return serialize_doc({k: v for k, v in value.items() if k not in drop})


def transaction_view(doc: Dict[str, Any], session_ttl: timedelta) -> Dict[str, Any]:
    created_at: datetime = as_utc(doc["created_at"])
    status = TransactionStatus(doc["status"])
    return {
        "id": doc["_id"],
        "status": int(status),
        "status_label": status.label,
        "owner": doc.get("owner") or {},
        "hotel": serialize_doc(doc.get("hotel_snapshot")),
        "search": serialize_doc(doc.get("search_snapshot")),
        "pricing": serialize_doc(doc.get("pricing")),
        "hold": _slot(doc, "hold_response"),
        "payment": _slot(doc, "payment_record"),
        "confirmation": _slot(doc, "confirmation_response"),
        "compensation": _slot(doc, "compensation_record"),
        "created_at": created_at.isoformat(),
        "expires_at": (created_at + session_ttl).isoformat(),
        "outcome": resolve_outcome(doc),
    }
