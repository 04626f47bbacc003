"""Hotel booking pipeline: policy -> hold -> payment -> confirmation.

Each step re-reads the transaction from the store and advances it with a
compare-and-set transition, so concurrent or repeated calls cannot move a
transaction twice. Steps 3 and 4 are only allowed inside the session window
(SESSION_TTL_MINUTES from creation). Any failure after money was captured runs
compensation (wallet credit or gateway refund) before the error is returned.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from pymongo.errors import PyMongoError

from app import config
from app.auth import Owner, Principal, resolve_owner
from app.domain.booking_state_machine import TERMINAL_STATUSES, TransactionStatus
from app.errors import (
    AppError,
    InvalidTransition,
    PaymentVerificationFailed,
    SessionExpired,
    SupplierRejected,
    SupplierUnavailable,
    TransactionNotFound,
    ValidationError,
)
from app.repositories.booking_policy_repository import BookingPolicyRepository
from app.repositories.transaction_repository import TransactionRepository, build_intent_key
from app.schemas_booking import BookingPolicyRequest, HoldRequest
from app.services.booking_outcomes import transaction_view
from app.services.notifications import BookingNotifier
from app.services.payments.base import (
    REFUND_MANUAL_REVIEW,
    REFUND_NOT_APPLICABLE,
    PaymentAdapter,
    RefundResult,
)
from app.services.payments.gateway_adapter import GatewayAdapter, GatewayVerdict
from app.services.payments.wallet_adapter import WalletPaymentAdapter
from app.services.pricing_engine import PricingEngine, compute_breakdown
from app.services.suppliers.hotel_supplier_client import HotelSupplierClient
from app.services.wallet_ledger import WalletLedger
from app.utils import as_utc, new_id, now_utc

logger = logging.getLogger("booking_orchestrator")

_HOLD_OPEN_STATUSES = (TransactionStatus.CREATED, TransactionStatus.POLICY_FETCHED, TransactionStatus.HELD)


def _supplier_data(resp: Dict[str, Any]) -> Dict[str, Any]:
    data = resp.get("data")
    return data if isinstance(data, dict) else resp


def _guest_capacity(search: Dict[str, Any]) -> Optional[int]:
    total = 0
    for occ in search.get("occupancies") or []:
        if not isinstance(occ, dict) or "adults" not in occ:
            return None
        total += int(occ.get("adults") or 0) + len(occ.get("children_ages") or [])
    return total or None


class BookingOrchestrator:
    def __init__(
        self,
        db,
        supplier: HotelSupplierClient,
        *,
        gateway: Optional[GatewayAdapter] = None,
        notifier: Optional[BookingNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        retry_delay_seconds: Optional[float] = None,
    ) -> None:
        self.db = db
        self.supplier = supplier
        self.transactions = TransactionRepository(db)
        self.policies = BookingPolicyRepository(db)
        self.pricing = PricingEngine(db)
        self.ledger = WalletLedger(db)
        self.wallet = WalletPaymentAdapter(self.ledger)
        self.gateway = gateway or GatewayAdapter()
        self.notifier = notifier or BookingNotifier()
        self.now = clock or now_utc
        self.session_ttl = timedelta(minutes=config.SESSION_TTL_MINUTES)
        # httpx applies the supplier timeout per phase, so one `book` call can outlast it.
        self.confirm_lease = 2 * config.SUPPLIER_TIMEOUT_SECONDS
        self.retry_delay = (
            retry_delay_seconds if retry_delay_seconds is not None else config.COMPENSATION_RETRY_DELAY_SECONDS
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _is_expired(self, txn: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        now = now or self.now()
        return now - as_utc(txn["created_at"]) > self.session_ttl

    def view(self, txn: Dict[str, Any]) -> Dict[str, Any]:
        return transaction_view(txn, self.session_ttl)

    async def _load_owned(self, principal: Principal, transaction_id: str) -> Tuple[Owner, Dict[str, Any]]:
        owner = await resolve_owner(self.db, principal)
        txn = await self.transactions.get(transaction_id)
        if not txn or (txn.get("owner") or {}).get("agency_id") != owner.agency_id:
            raise TransactionNotFound(details={"transaction_id": transaction_id})
        return owner, txn

    async def _reload(self, transaction_id: str) -> Dict[str, Any]:
        txn = await self.transactions.get(transaction_id)
        if not txn:
            raise TransactionNotFound(details={"transaction_id": transaction_id})
        return txn

    def _invalid(self, txn: Dict[str, Any], action: str) -> InvalidTransition:
        return InvalidTransition(
            message=f"Transaction is {TransactionStatus(txn['status']).label}; cannot {action}",
            details={"transaction_id": txn["_id"], "status": TransactionStatus(txn["status"]).label},
        )

    async def _expire_unpaid(self, txn: Dict[str, Any]) -> SessionExpired:
        """Close an unpaid transaction whose session ran out."""

        status = TransactionStatus(txn["status"])
        if status not in TERMINAL_STATUSES:
            await self.transactions.transition(
                txn["_id"],
                expected=status,
                target=TransactionStatus.BOOKING_FAILED,
                reason="session_expired",
                now=self.now(),
            )
        return SessionExpired(
            details={"transaction_id": txn["_id"], "money_taken": False, "refund": REFUND_NOT_APPLICABLE}
        )

    async def _fail_captured(self, txn: Dict[str, Any], reason: str, failure: Optional[Dict[str, Any]] = None) -> RefundResult:
        """Mark a paid transaction booking_failed and compensate."""

        failed = await self.transactions.transition(
            txn["_id"],
            expected=TransactionStatus(txn["status"]),
            target=TransactionStatus.BOOKING_FAILED,
            reason=reason,
            set_fields={"failure": failure or {"reason": reason}},
            now=self.now(),
        )
        return await self.compensate(failed or await self._reload(txn["_id"]), reason)

    async def _fail_confirm(self, txn: Dict[str, Any], exc: AppError) -> None:
        refund = await self._fail_captured(
            txn, "supplier_confirm_failed", failure={"code": exc.code, "message": exc.message}
        )
        exc.details = {
            **(exc.details or {}),
            "transaction_id": txn["_id"],
            "money_taken": True,
            "refund": refund.outcome,
        }

    async def _fail_prebook(self, txn: Dict[str, Any], exc: AppError) -> None:
        await self.transactions.transition(
            txn["_id"],
            expected=TransactionStatus.POLICY_FETCHED,
            target=TransactionStatus.BOOKING_FAILED,
            reason="prebook_failed",
            set_fields={"failure": {"code": exc.code, "message": exc.message}},
        )
        exc.details = {
            **(exc.details or {}),
            "transaction_id": txn["_id"],
            "money_taken": False,
            "refund": REFUND_NOT_APPLICABLE,
        }

    def _adapter_for(self, txn: Dict[str, Any]) -> PaymentAdapter:
        method = (txn.get("payment_record") or {}).get("method")
        return self.wallet if method == "wallet" else self.gateway

    async def compensate(self, txn: Dict[str, Any], reason: str) -> RefundResult:
        """Return captured money for a failed booking, retrying a few times.

        A refund that still fails is logged as critical and recorded for manual
        review; it never raises.
        """

        if not txn.get("payment_record"):
            return RefundResult(ok=False, method="none", outcome=REFUND_NOT_APPLICABLE, reason=reason)
        if txn.get("compensation_record"):
            rec = txn["compensation_record"]
            return RefundResult(ok=bool(rec.get("ok")), method=rec.get("method", ""), outcome=rec.get("outcome", ""), reference=rec.get("reference"), reason=rec.get("reason"))

        adapter = self._adapter_for(txn)
        last_error: Optional[Exception] = None
        for attempt in range(1, config.COMPENSATION_MAX_ATTEMPTS + 1):
            try:
                result = await adapter.refund(txn, reason)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "compensation attempt %d/%d failed txn=%s method=%s: %s",
                    attempt,
                    config.COMPENSATION_MAX_ATTEMPTS,
                    txn["_id"],
                    adapter.method,
                    exc,
                )
                if attempt < config.COMPENSATION_MAX_ATTEMPTS:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue

            record = {**result.to_record(), "attempts": attempt, "at": self.now()}
            await self.transactions.write_slot(txn["_id"], "compensation_record", record)
            logger.info("compensation done txn=%s method=%s outcome=%s", txn["_id"], result.method, result.outcome)
            return result

        amount = (txn.get("pricing") or {}).get("total_chargeable_amount")
        logger.critical(
            "COMPENSATION FAILED txn=%s agency=%s method=%s amount=%s reason=%s error=%s",
            txn["_id"],
            (txn.get("owner") or {}).get("agency_id"),
            adapter.method,
            amount,
            reason,
            last_error,
        )
        result = RefundResult(ok=False, method=adapter.method, outcome=REFUND_MANUAL_REVIEW, reason=reason)
        await self.transactions.write_slot(
            txn["_id"],
            "compensation_record",
            {**result.to_record(), "attempts": config.COMPENSATION_MAX_ATTEMPTS, "error": str(last_error), "at": self.now()},
        )
        return result

    async def _record_security_event(self, order_no: Optional[str], exc: PaymentVerificationFailed) -> None:
        details = exc.details or {}
        logger.warning("payment callback rejected order=%s reason=%s", order_no, details.get("reason"))
        try:
            await self.db.payment_security_events.insert_one(
                {
                    "_id": new_id("pse"),
                    "order_no": order_no,
                    "reason": details.get("reason"),
                    "details": details,
                    "created_at": self.now(),
                }
            )
        except PyMongoError as db_exc:
            logger.error("could not persist payment security event order=%s: %s", order_no, db_exc)

    async def _release_stale_intent(self, intent_key: str) -> None:
        existing = await self.transactions.find_active_by_intent(intent_key)
        if existing is None or not self._is_expired(existing):
            return
        status = TransactionStatus(existing["status"])
        if status in _HOLD_OPEN_STATUSES or status == TransactionStatus.PAYMENT_PENDING:
            await self.transactions.transition(
                existing["_id"],
                expected=status,
                target=TransactionStatus.BOOKING_FAILED,
                reason="session_expired",
                now=self.now(),
            )
            logger.info("released stale booking intent txn=%s", existing["_id"])

    # ------------------------------------------------------------------
    # Step 1: booking policy
    # ------------------------------------------------------------------
    async def fetch_policy(self, principal: Principal, req: BookingPolicyRequest) -> Dict[str, Any]:
        owner = await resolve_owner(self.db, principal)
        search = req.search.model_dump(mode="json")
        hotel = req.hotel.model_dump(mode="json")

        resp = await self.supplier.bookingpolicy(req.package, search, req.transaction_identifier)
        data = _supplier_data(resp)
        booking_policy_id = data.get("booking_policy_id")
        if not booking_policy_id:
            raise SupplierRejected(
                message="Hotel supplier did not return a booking policy",
                details={"operation": "bookingpolicy"},
            )

        supplier_package = data.get("package") or req.package
        try:
            priced = await self.pricing.apply_markup(supplier_package, owner.agency_id)
        except ValueError as exc:
            raise SupplierRejected(
                message="Hotel supplier returned a package without a price",
                details={"operation": "bookingpolicy"},
            ) from exc

        record = await self.policies.insert(
            {
                "owner": owner.to_doc(),
                "booking_policy_id": booking_policy_id,
                "transaction_identifier": req.transaction_identifier,
                "search_snapshot": search,
                "hotel_snapshot": hotel,
                "supplier_package": supplier_package,
                "package": priced,
                "cancellation_policy": data.get("cancellation_policy"),
            }
        )
        logger.info("booking policy stored policy=%s agency=%s hotel=%s", record["_id"], owner.agency_id, hotel.get("id"))
        return {
            "policy_id": record["_id"],
            "booking_policy_id": booking_policy_id,
            "package": priced,
            "cancellation_policy": data.get("cancellation_policy"),
            "expires_in_minutes": config.SESSION_TTL_MINUTES,
        }

    # ------------------------------------------------------------------
    # Step 2: hold (prebook)
    # ------------------------------------------------------------------
    async def hold(self, principal: Principal, req: HoldRequest) -> Dict[str, Any]:
        owner = await resolve_owner(self.db, principal)
        policy = await self.policies.get(req.policy_id)
        if not policy or (policy.get("owner") or {}).get("agency_id") != owner.agency_id:
            raise ValidationError(message="Unknown booking policy", details={"field": "policy_id"})
        if not policy.get("booking_policy_id"):
            raise ValidationError(message="Booking policy has no supplier policy id", details={"field": "policy_id"})

        search = policy.get("search_snapshot") or {}
        capacity = _guest_capacity(search)
        if capacity is not None and capacity != len(req.guests):
            raise ValidationError(
                message=f"Guest list has {len(req.guests)} guests but the search was for {capacity}",
                details={"field": "guests"},
            )

        rule = await self.pricing.get_active_rule(owner.agency_id)
        try:
            breakdown = compute_breakdown(policy["supplier_package"], rule)
        except ValueError as exc:
            raise ValidationError(message="Booking policy package has no price", details={"field": "policy_id"}) from exc

        hotel = policy.get("hotel_snapshot") or {}
        package = policy.get("package") or {}
        intent_key = build_intent_key(
            owner.agency_id,
            hotel.get("id", ""),
            package.get("booking_key", ""),
            search.get("check_in_date", ""),
            search.get("check_out_date", ""),
        )
        await self._release_stale_intent(intent_key)

        now = self.now()
        txn = await self.transactions.create(
            {
                "_id": new_id("txn"),
                "status": int(TransactionStatus.CREATED),
                "status_label": TransactionStatus.CREATED.label,
                "owner": owner.to_doc(),
                "intent_key": intent_key,
                "search_snapshot": search,
                "hotel_snapshot": hotel,
                "selected_package": package,
                "pricing": {
                    "base_amount": breakdown.base_amount,
                    "discount": breakdown.discount,
                    "service_component": breakdown.service_component,
                    "tax": breakdown.tax,
                    "markup_amount": breakdown.markup_amount,
                    "markup": {"type": rule.type, "value": rule.value} if rule else None,
                    "total_chargeable_amount": breakdown.chargeable_rate,
                    "currency": breakdown.currency or config.WALLET_DEFAULT_CURRENCY,
                },
                "contact_detail": req.contact.model_dump(mode="json"),
                "guest_list": [g.model_dump(mode="json") for g in req.guests],
                "transaction_identifier": policy.get("transaction_identifier"),
                "created_at": now,
            }
        )
        txn = await self.transactions.transition(
            txn["_id"],
            expected=TransactionStatus.CREATED,
            target=TransactionStatus.POLICY_FETCHED,
            reason="policy_attached",
            append_slots={"policy_id": policy["_id"]},
            set_fields={"booking_policy_id": policy["booking_policy_id"]},
            now=now,
        )

        try:
            resp = await self.supplier.prebook(
                policy["booking_policy_id"],
                txn["guest_list"],
                txn["contact_detail"],
                transaction_identifier=policy.get("transaction_identifier"),
            )
            data = _supplier_data(resp)
            if not data.get("booking_id"):
                raise SupplierRejected(message="Hotel supplier did not return a hold id", details={"operation": "prebook"})
        except AppError as exc:
            await self._fail_prebook(txn, exc)
            raise
        except Exception as exc:
            logger.exception("prebook crashed txn=%s", txn["_id"])
            err = SupplierUnavailable(details={"operation": "prebook", "reason": str(exc)})
            await self._fail_prebook(txn, err)
            raise err from exc

        held = await self.transactions.transition(
            txn["_id"],
            expected=TransactionStatus.POLICY_FETCHED,
            target=TransactionStatus.HELD,
            reason="supplier_hold",
            append_slots={"hold_response": {"booking_id": data["booking_id"], "held_at": self.now(), "raw": data}},
        )
        if held is None:
            raise self._invalid(await self._reload(txn["_id"]), "record the hold")
        logger.info("hold placed txn=%s agency=%s amount=%s", held["_id"], owner.agency_id, held["pricing"]["total_chargeable_amount"])
        return self.view(held)

    # ------------------------------------------------------------------
    # Step 3a: wallet payment
    # ------------------------------------------------------------------
    async def pay_with_wallet(self, principal: Principal, transaction_id: str) -> Dict[str, Any]:
        owner, txn = await self._load_owned(principal, transaction_id)
        status = TransactionStatus(txn["status"])

        if status == TransactionStatus.CONFIRMED:
            return self.view(txn)
        if status == TransactionStatus.PAYMENT_CONFIRMED:
            return await self._confirm(txn)
        if status != TransactionStatus.HELD:
            raise self._invalid(txn, "pay from wallet")
        if self._is_expired(txn):
            raise await self._expire_unpaid(txn)

        amount = txn["pricing"]["total_chargeable_amount"]
        receipt = await self.wallet.debit(owner.agency_id, amount, reference=txn["_id"])

        if self._is_expired(txn):
            # The window closed while the debit was in flight.
            failed = await self.transactions.transition(
                txn["_id"],
                expected=TransactionStatus.HELD,
                target=TransactionStatus.BOOKING_FAILED,
                reason="session_expired",
                append_slots={"payment_record": receipt},
                now=self.now(),
            )
            if failed is None:
                return await self._after_lost_payment_race(txn["_id"], receipt, owner)
            refund = await self.compensate(failed, "session_expired")
            raise SessionExpired(details={"transaction_id": txn["_id"], "money_taken": True, "refund": refund.outcome})

        paid = await self.transactions.transition(
            txn["_id"],
            expected=TransactionStatus.HELD,
            target=TransactionStatus.PAYMENT_CONFIRMED,
            reason="wallet_debit",
            append_slots={"payment_record": receipt},
            set_fields={"payment_method": "wallet"},
        )
        if paid is None:
            return await self._after_lost_payment_race(txn["_id"], receipt, owner)
        return await self._confirm(paid)

    async def _after_lost_payment_race(self, transaction_id: str, receipt: Dict[str, Any], owner: Owner) -> Dict[str, Any]:
        """Another request moved the transaction first; reconcile our debit."""

        current = await self._reload(transaction_id)
        stored = current.get("payment_record") or {}
        if stored.get("entry_id") == receipt["entry_id"]:
            if TransactionStatus(current["status"]) == TransactionStatus.PAYMENT_CONFIRMED:
                return await self._confirm(current)
            return self.view(current)

        await self.wallet.credit(owner.agency_id, receipt["amount"], "orphaned_debit", transaction_id)
        raise self._invalid(current, "pay from wallet")

    # ------------------------------------------------------------------
    # Step 3b: gateway payment
    # ------------------------------------------------------------------
    async def initiate_gateway_payment(self, principal: Principal, transaction_id: str) -> Dict[str, Any]:
        _, txn = await self._load_owned(principal, transaction_id)
        status = TransactionStatus(txn["status"])
        if status not in (TransactionStatus.HELD, TransactionStatus.PAYMENT_PENDING):
            raise self._invalid(txn, "start a gateway payment")
        if self._is_expired(txn):
            raise await self._expire_unpaid(txn)

        form = self.gateway.initiate(txn)
        if status == TransactionStatus.HELD:
            moved = await self.transactions.transition(
                txn["_id"],
                expected=TransactionStatus.HELD,
                target=TransactionStatus.PAYMENT_PENDING,
                reason="gateway_redirect",
                set_fields={"payment_method": "gateway"},
            )
            if moved is None:
                current = await self._reload(txn["_id"])
                if TransactionStatus(current["status"]) != TransactionStatus.PAYMENT_PENDING:
                    raise self._invalid(current, "start a gateway payment")
        return {"transaction_id": txn["_id"], **form}

    async def handle_gateway_callback(self, order_no: str, enc_resp: str, signature: str) -> Dict[str, Any]:
        """Apply a gateway callback. Verification happens before any state change."""

        try:
            verdict = self.gateway.verify_callback(order_no, enc_resp, signature)
        except PaymentVerificationFailed as exc:
            await self._record_security_event(order_no, exc)
            raise

        txn = await self.transactions.get(verdict.order_id)
        if not txn:
            exc = PaymentVerificationFailed(details={"reason": "unknown_transaction", "order_no": order_no})
            await self._record_security_event(order_no, exc)
            raise exc

        try:
            self.gateway.check_matches(verdict, txn)
        except PaymentVerificationFailed as exc:
            await self._record_security_event(order_no, exc)
            raise

        status = TransactionStatus(txn["status"])
        if status == TransactionStatus.PAYMENT_CONFIRMED:
            return await self._confirm(txn)
        if status in TERMINAL_STATUSES:
            if verdict.approved and not txn.get("payment_record"):
                return await self._late_capture(txn, verdict)
            return self.view(txn)
        if status != TransactionStatus.PAYMENT_PENDING:
            raise self._invalid(txn, "accept a gateway callback")

        callback_record = {**verdict.to_record(), "received_at": self.now()}
        payment_record = {
            "method": "gateway",
            "tracking_id": verdict.tracking_id,
            "amount": float(verdict.amount),
            "currency": verdict.currency,
            "captured_at": self.now(),
        }

        if self._is_expired(txn):
            if verdict.approved:
                failed = await self.transactions.transition(
                    txn["_id"],
                    expected=TransactionStatus.PAYMENT_PENDING,
                    target=TransactionStatus.BOOKING_FAILED,
                    reason="session_expired",
                    append_slots={"gateway_callback": callback_record, "payment_record": payment_record},
                )
                refund = await self.compensate(failed or await self._reload(txn["_id"]), "session_expired")
                raise SessionExpired(details={"transaction_id": txn["_id"], "money_taken": True, "refund": refund.outcome})
            await self.transactions.transition(
                txn["_id"],
                expected=TransactionStatus.PAYMENT_PENDING,
                target=TransactionStatus.PAYMENT_FAILED,
                reason="session_expired",
                append_slots={"gateway_callback": callback_record},
            )
            raise SessionExpired(details={"transaction_id": txn["_id"], "money_taken": False, "refund": REFUND_NOT_APPLICABLE})

        if not verdict.approved:
            failed = await self.transactions.transition(
                txn["_id"],
                expected=TransactionStatus.PAYMENT_PENDING,
                target=TransactionStatus.PAYMENT_FAILED,
                reason="gateway_declined",
                append_slots={"gateway_callback": callback_record},
                set_fields={"failure": {"reason": "gateway_declined", "message": verdict.failure_message}},
            )
            logger.info("gateway payment declined txn=%s status=%s", txn["_id"], verdict.order_status)
            return self.view(failed or await self._reload(txn["_id"]))

        paid = await self.transactions.transition(
            txn["_id"],
            expected=TransactionStatus.PAYMENT_PENDING,
            target=TransactionStatus.PAYMENT_CONFIRMED,
            reason="gateway_captured",
            append_slots={"gateway_callback": callback_record, "payment_record": payment_record},
        )
        if paid is None:
            current = await self._reload(txn["_id"])
            if TransactionStatus(current["status"]) == TransactionStatus.PAYMENT_CONFIRMED:
                return await self._confirm(current)
            return self.view(current)
        return await self._confirm(paid)

    async def _late_capture(self, txn: Dict[str, Any], verdict: GatewayVerdict) -> Dict[str, Any]:
        """Money arrived for a transaction that was already closed: refund it."""

        written = await self.transactions.write_slot(
            txn["_id"],
            "payment_record",
            {
                "method": "gateway",
                "tracking_id": verdict.tracking_id,
                "amount": float(verdict.amount),
                "currency": verdict.currency,
                "captured_at": self.now(),
                "late": True,
            },
        )
        current = await self._reload(txn["_id"])
        if written:
            await self.transactions.write_slot(txn["_id"], "gateway_callback", {**verdict.to_record(), "received_at": self.now()})
            refund = await self.compensate(current, "late_capture")
            raise SessionExpired(details={"transaction_id": txn["_id"], "money_taken": True, "refund": refund.outcome})
        return self.view(current)

    # ------------------------------------------------------------------
    # Step 4: supplier confirmation
    # ------------------------------------------------------------------
    async def confirm_booking(self, principal: Principal, transaction_id: str) -> Dict[str, Any]:
        _, txn = await self._load_owned(principal, transaction_id)
        status = TransactionStatus(txn["status"])
        if status == TransactionStatus.CONFIRMED:
            return self.view(txn)
        if status != TransactionStatus.PAYMENT_CONFIRMED:
            raise self._invalid(txn, "confirm the booking")
        return await self._confirm(txn)

    async def _confirm(self, txn: Dict[str, Any]) -> Dict[str, Any]:
        if TransactionStatus(txn["status"]) == TransactionStatus.CONFIRMED:
            return self.view(txn)

        if self._is_expired(txn):
            # A claim whose lease ran out belongs to a `book` call that never
            # finished; take it over so the captured money is returned.
            claimed = await self.transactions.claim_confirmation(
                txn["_id"], lease_seconds=self.confirm_lease, take_over_stale=True
            )
            if not claimed:
                return self.view(await self._reload(txn["_id"]))
            refund = await self._fail_captured(txn, "session_expired")
            raise SessionExpired(details={"transaction_id": txn["_id"], "money_taken": True, "refund": refund.outcome})

        if not await self.transactions.claim_confirmation(txn["_id"], lease_seconds=self.confirm_lease):
            # Another request owns the supplier call; report what is stored.
            return self.view(await self._reload(txn["_id"]))

        hold_id = (txn.get("hold_response") or {}).get("booking_id")
        try:
            resp = await self.supplier.book(hold_id)
        except AppError as exc:
            logger.error("supplier confirmation failed txn=%s: %s", txn["_id"], exc)
            await self._fail_confirm(txn, exc)
            raise
        except Exception as exc:
            logger.exception("supplier confirmation crashed txn=%s", txn["_id"])
            err = SupplierUnavailable(details={"operation": "book", "reason": str(exc)})
            await self._fail_confirm(txn, err)
            raise err from exc

        data = _supplier_data(resp)
        confirmation = {
            "booking_reference": data.get("booking_reference") or data.get("booking_id") or hold_id,
            "supplier_status": data.get("status"),
            "confirmed_at": self.now(),
            "raw": data,
        }
        confirmed = await self.transactions.transition(
            txn["_id"],
            expected=TransactionStatus.PAYMENT_CONFIRMED,
            target=TransactionStatus.CONFIRMED,
            reason="supplier_confirmed",
            append_slots={"confirmation_response": confirmation},
        )
        if confirmed is None:
            return self.view(await self._reload(txn["_id"]))

        logger.info("booking confirmed txn=%s ref=%s", confirmed["_id"], confirmation["booking_reference"])
        self.notifier.schedule_booking_confirmed(confirmed, confirmation)
        return self.view(confirmed)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_transaction(self, principal: Principal, transaction_id: str) -> Dict[str, Any]:
        _, txn = await self._load_owned(principal, transaction_id)
        return self.view(txn)

    async def wallet_balance(self, principal: Principal) -> Dict[str, Any]:
        owner = await resolve_owner(self.db, principal)
        return await self.ledger.get_balance(owner.agency_id)

    async def check_wallet_eligibility(
        self,
        principal: Principal,
        *,
        transaction_id: Optional[str] = None,
        amount: Optional[float] = None,
    ) -> Dict[str, Any]:
        if not transaction_id and amount is None:
            raise ValidationError(message="transaction_id or amount is required", details={"field": "amount"})
        if not transaction_id and amount <= 0:
            raise ValidationError(message="amount must be positive", details={"field": "amount"})
        if transaction_id:
            owner, txn = await self._load_owned(principal, transaction_id)
            required = txn["pricing"]["total_chargeable_amount"]
        else:
            owner = await resolve_owner(self.db, principal)
            required = float(amount)
        result = await self.ledger.check_eligibility(owner.agency_id, required)
        if transaction_id:
            result["transaction_id"] = transaction_id
        return result
