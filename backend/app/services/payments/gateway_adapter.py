"""Redirect payment gateway (card / UPI).

Flow:
  1. ``initiate`` builds the auto-submit form the browser posts to the gateway:
     ``encRequest`` (URL-safe base64 JSON order) + ``access_code`` + signature.
  2. The gateway posts back ``orderNo`` / ``encResp`` / ``signature`` to
     ``/api/hotels/payment-response-handler``.
  3. ``verify_callback`` checks the HMAC-SHA256 signature over the raw
     ``encResp`` with the merchant working key before decoding anything.
  4. ``check_matches`` compares the verified order against the stored
     transaction (reference, amount, currency).

Refunds are requested over HTTP; the gateway settles them asynchronously.
"""
from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from hashlib import sha256
from typing import Any, Dict, Optional, Tuple

import httpx

from app import config
from app.errors import PaymentVerificationFailed
from app.services.payments.base import REFUND_AUTOMATIC, RefundResult

logger = logging.getLogger("payment_gateway")

APPROVED_STATUSES = frozenset({"success"})


class GatewayRefundError(Exception):
    """Refund request could not be delivered or was refused by the gateway."""


@dataclass
class GatewayVerdict:
    order_id: str
    amount: Decimal
    currency: str
    order_status: str
    tracking_id: Optional[str] = None
    failure_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.order_status.strip().lower() in APPROVED_STATUSES

    def to_record(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "order_status": self.order_status,
            "tracking_id": self.tracking_id,
            "failure_message": self.failure_message,
        }


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _utf8(value: str) -> bytes:
    # Callback fields are untrusted; lone surrogates must not raise.
    return value.encode("utf-8", "surrogatepass")


def encode_payload(payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_payload(encoded: str) -> Dict[str, Any]:
    try:
        data = json.loads(base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise PaymentVerificationFailed(message="Malformed gateway payload", details={"reason": "malformed"}) from exc
    if not isinstance(data, dict):
        raise PaymentVerificationFailed(message="Malformed gateway payload", details={"reason": "malformed"})
    return data


def compute_signature(working_key: str, encoded: str) -> str:
    return hmac.new(working_key.encode("utf-8"), _utf8(encoded), sha256).hexdigest()


class GatewayAdapter:
    method = "gateway"

    def __init__(
        self,
        *,
        working_key: Optional[str] = None,
        merchant_id: Optional[str] = None,
        access_code: Optional[str] = None,
        payment_url: Optional[str] = None,
        refund_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.working_key = working_key or config.GATEWAY_WORKING_KEY
        self.merchant_id = merchant_id if merchant_id is not None else config.GATEWAY_MERCHANT_ID
        self.access_code = access_code if access_code is not None else config.GATEWAY_ACCESS_CODE
        self.payment_url = payment_url or config.GATEWAY_PAYMENT_URL
        self.refund_url = refund_url or config.GATEWAY_REFUND_URL
        self.timeout = float(timeout_seconds or config.GATEWAY_TIMEOUT_SECONDS)
        self._transport = transport

    def sign(self, payload: Dict[str, Any]) -> Tuple[str, str]:
        encoded = encode_payload(payload)
        return encoded, compute_signature(self.working_key, encoded)

    def initiate(self, transaction: Dict[str, Any]) -> Dict[str, Any]:
        """Build the redirect form for a held transaction."""

        pricing = transaction["pricing"]
        callback_url = f"{config.PUBLIC_BASE_URL.rstrip('/')}{config.API_PREFIX}/hotels/payment-response-handler"
        contact = transaction.get("contact_detail") or {}
        order = {
            "merchant_id": self.merchant_id,
            "order_id": transaction["_id"],
            "amount": str(_money(pricing["total_chargeable_amount"])),
            "currency": pricing.get("currency") or config.WALLET_DEFAULT_CURRENCY,
            "redirect_url": callback_url,
            "cancel_url": callback_url,
            "billing_email": contact.get("email"),
            "billing_tel": contact.get("mobile"),
        }
        enc_request, signature = self.sign(order)
        return {
            "action": self.payment_url,
            "method": "POST",
            "fields": {
                "encRequest": enc_request,
                "access_code": self.access_code,
                "signature": signature,
            },
        }

    def verify_callback(self, order_no: str, enc_resp: str, signature: str) -> GatewayVerdict:
        """Authenticate a gateway callback. Raises PaymentVerificationFailed."""

        if not enc_resp or not signature:
            raise PaymentVerificationFailed(details={"reason": "missing_fields", "order_no": order_no})

        expected = compute_signature(self.working_key, enc_resp)
        if not hmac.compare_digest(_utf8(signature), expected.encode("ascii")):
            raise PaymentVerificationFailed(details={"reason": "signature_mismatch", "order_no": order_no})

        data = decode_payload(enc_resp)
        order_id = str(data.get("order_id") or "")
        if order_id != order_no:
            raise PaymentVerificationFailed(details={"reason": "reference_mismatch", "order_no": order_no})

        try:
            amount = _money(data.get("amount"))
        except ArithmeticError as exc:
            raise PaymentVerificationFailed(details={"reason": "malformed_amount", "order_no": order_no}) from exc

        return GatewayVerdict(
            order_id=order_id,
            amount=amount,
            currency=str(data.get("currency") or ""),
            order_status=str(data.get("order_status") or ""),
            tracking_id=data.get("tracking_id"),
            failure_message=data.get("failure_message") or data.get("status_message"),
            raw=data,
        )

    def check_matches(self, verdict: GatewayVerdict, transaction: Dict[str, Any]) -> None:
        """Reject a verified callback that does not describe this transaction."""

        pricing = transaction["pricing"]
        if verdict.order_id != transaction["_id"]:
            raise PaymentVerificationFailed(details={"reason": "reference_mismatch", "order_no": verdict.order_id})
        if verdict.amount != _money(pricing["total_chargeable_amount"]):
            raise PaymentVerificationFailed(
                details={
                    "reason": "amount_mismatch",
                    "order_no": verdict.order_id,
                    "expected": str(_money(pricing["total_chargeable_amount"])),
                    "received": str(verdict.amount),
                }
            )
        expected_currency = pricing.get("currency") or config.WALLET_DEFAULT_CURRENCY
        if verdict.currency and verdict.currency.upper() != str(expected_currency).upper():
            raise PaymentVerificationFailed(details={"reason": "currency_mismatch", "order_no": verdict.order_id})

    async def request_refund(self, transaction: Dict[str, Any], reason: str) -> Dict[str, Any]:
        record = transaction.get("payment_record") or {}
        body = {
            "merchant_id": self.merchant_id,
            "order_id": transaction["_id"],
            "reference_no": record.get("tracking_id"),
            "refund_amount": str(_money(transaction["pricing"]["total_chargeable_amount"])),
            "refund_ref_no": f"rf_{transaction['_id']}",
            "reason": reason,
        }
        enc_request, signature = self.sign(body)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    self.refund_url,
                    data={"encRequest": enc_request, "access_code": self.access_code, "signature": signature},
                )
        except httpx.HTTPError as exc:
            raise GatewayRefundError(f"refund request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise GatewayRefundError(f"refund request rejected with HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and str(data.get("refund_status", "0")) not in ("0", "success"):
            raise GatewayRefundError(f"refund refused: {data.get('reason') or data.get('refund_status')}")

        logger.info("gateway refund requested txn=%s amount=%s", transaction["_id"], body["refund_amount"])
        return data if isinstance(data, dict) else {}

    async def refund(self, transaction: Dict[str, Any], reason: str) -> RefundResult:
        data = await self.request_refund(transaction, reason)
        return RefundResult(
            ok=True,
            method=self.method,
            outcome=REFUND_AUTOMATIC,
            reference=f"rf_{transaction['_id']}",
            reason=reason,
            raw=data,
        )
