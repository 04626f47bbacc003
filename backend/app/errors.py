from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class AppError(Exception):
    status_code: int
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details or {},
        }
        if self.retryable is not None:
            payload["retryable"] = self.retryable
        return {"error": payload}


# ---------------------------------------------------------------------------
# Booking pipeline taxonomy
# ---------------------------------------------------------------------------


@dataclass
class ValidationError(AppError):
    """Malformed caller input. Never retried."""

    status_code: int = 422
    code: str = "validation_error"
    message: str = "Request validation failed"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = False


@dataclass
class SupplierUnavailable(AppError):
    """Supplier timeout / connection failure. Retry is the caller's call."""

    status_code: int = 503
    code: str = "supplier_unavailable"
    message: str = "Hotel supplier is temporarily unavailable"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = True


@dataclass
class SupplierRejected(AppError):
    """Business-level decline from the supplier (no inventory, bad key...)."""

    status_code: int = 409
    code: str = "supplier_rejected"
    message: str = "Hotel supplier rejected the request"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = False


@dataclass
class InsufficientBalance(AppError):
    status_code: int = 402
    code: str = "insufficient_balance"
    message: str = "Insufficient wallet balance"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = False

    @property
    def shortfall(self) -> float:
        return float((self.details or {}).get("shortfall", 0))


@dataclass
class PaymentVerificationFailed(AppError):
    status_code: int = 400
    code: str = "payment_verification_failed"
    message: str = "Payment callback could not be verified"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = False


@dataclass
class SessionExpired(AppError):
    status_code: int = 410
    code: str = "session_expired"
    message: str = "Booking session expired. Please try again."
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = False


@dataclass
class TransactionNotFound(AppError):
    status_code: int = 404
    code: str = "transaction_not_found"
    message: str = "Transaction not found"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = False


@dataclass
class InvalidTransition(AppError):
    status_code: int = 409
    code: str = "invalid_state_transition"
    message: str = "Transaction cannot move to the requested state"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = False


@dataclass
class DuplicateBookingIntent(AppError):
    status_code: int = 409
    code: str = "duplicate_booking_intent"
    message: str = "Another booking for the same hotel, package and dates is already in progress"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = False


@dataclass
class LedgerUnavailable(AppError):
    status_code: int = 503
    code: str = "ledger_unavailable"
    message: str = "Wallet ledger is temporarily unavailable"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = True


@dataclass
class AgencyNotResolved(AppError):
    status_code: int = 403
    code: str = "agency_not_resolved"
    message: str = "Owning agency could not be resolved for this account"
    details: Optional[Dict[str, Any]] = None
    retryable: Optional[bool] = False


def error_response(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        }
    }
