from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from app.auth import Principal
from app.domain.booking_state_machine import TransactionStatus
from app.errors import (
    AgencyNotResolved,
    DuplicateBookingIntent,
    InsufficientBalance,
    InvalidTransition,
    SessionExpired,
    SupplierRejected,
    SupplierUnavailable,
    TransactionNotFound,
    ValidationError,
)
from app.schemas_booking import BookingPolicyRequest, HoldRequest
from app.services.booking_orchestrator import BookingOrchestrator
from app.services.wallet_ledger import WalletLedger
from app.utils import now_utc

from conftest import FakeSupplier, make_package, search_payload, seed_agency, seed_employee

AGENCY = Principal(id="agency_1", type="agency")


class _SilentNotifier:
    def __init__(self):
        self.sent = []

    def schedule_booking_confirmed(self, transaction, confirmation):
        self.sent.append((transaction["_id"], confirmation["booking_reference"]))


def _orchestrator(db, supplier, **kwargs):
    kwargs.setdefault("notifier", _SilentNotifier())
    kwargs.setdefault("retry_delay_seconds", 0)
    return BookingOrchestrator(db, supplier, **kwargs)


def _policy_request(package=None):
    return BookingPolicyRequest(
        search=search_payload(),
        hotel={"id": "hotel_42", "name": "Sea View Mumbai"},
        package=package or make_package(),
        transaction_identifier="tid_1",
    )


def _hold_request(policy_id):
    return HoldRequest(
        policy_id=policy_id,
        guests=[
            {"first_name": "Asha", "last_name": "Rao"},
            {"first_name": "Vik", "last_name": "Rao"},
        ],
        contact={"first_name": "Asha", "last_name": "Rao", "email": "asha@example.com", "mobile": "9876543210"},
    )


async def _held_transaction(orch, principal=AGENCY):
    policy = await orch.fetch_policy(principal, _policy_request())
    return await orch.hold(principal, _hold_request(policy["policy_id"]))


async def _age(db, txn_id, minutes=21):
    await db.hotel_transactions.update_one(
        {"_id": txn_id}, {"$set": {"created_at": now_utc() - timedelta(minutes=minutes)}}
    )


@pytest.mark.anyio
async def test_wallet_happy_path_confirms_and_notifies(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    notifier = _SilentNotifier()
    orch = _orchestrator(test_db, supplier, notifier=notifier)

    held = await _held_transaction(orch)
    assert held["status"] == int(TransactionStatus.HELD)
    assert held["pricing"]["total_chargeable_amount"] == 4200

    result = await orch.pay_with_wallet(AGENCY, held["id"])

    assert result["status_label"] == "confirmed"
    assert result["confirmation"]["booking_reference"] == "CNF-555"
    assert result["outcome"]["money_taken"] is True
    assert (await WalletLedger(test_db).get_balance("agency_1"))["balance"] == 800
    assert supplier.calls == ["bookingpolicy", "prebook", "book"]
    assert notifier.sent == [(held["id"], "CNF-555")]

    stored = await test_db.hotel_transactions.find_one({"_id": held["id"]})
    assert [h["to"] for h in stored["history"]] == [7, 8, 4, 1]
    assert "active_intent_key" not in stored


@pytest.mark.anyio
async def test_supplier_confirm_failure_refunds_wallet(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    supplier.book_error = SupplierRejected(message="Rate no longer available")
    orch = _orchestrator(test_db, supplier)

    held = await _held_transaction(orch)
    with pytest.raises(SupplierRejected) as exc:
        await orch.pay_with_wallet(AGENCY, held["id"])

    assert exc.value.details["money_taken"] is True
    assert exc.value.details["refund"] == "refunded"
    assert (await WalletLedger(test_db).get_balance("agency_1"))["balance"] == 5000

    view = await orch.get_transaction(AGENCY, held["id"])
    assert view["status_label"] == "booking_failed"
    assert view["outcome"]["refund"] == "refunded"


@pytest.mark.anyio
async def test_confirm_twice_returns_stored_result_without_second_book(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    orch = _orchestrator(test_db, supplier)

    held = await _held_transaction(orch)
    first = await orch.pay_with_wallet(AGENCY, held["id"])
    second = await orch.confirm_booking(AGENCY, held["id"])
    third = await orch.pay_with_wallet(AGENCY, held["id"])

    assert supplier.calls.count("book") == 1
    assert second["confirmation"] == first["confirmation"]
    assert third["status_label"] == "confirmed"
    assert (await WalletLedger(test_db).get_balance("agency_1"))["balance"] == 800


@pytest.mark.anyio
async def test_insufficient_balance_has_no_side_effect(test_db):
    await seed_agency(test_db, "agency_1", balance=1000)
    supplier = FakeSupplier()
    orch = _orchestrator(test_db, supplier)

    held = await _held_transaction(orch)
    with pytest.raises(InsufficientBalance) as exc:
        await orch.pay_with_wallet(AGENCY, held["id"])

    assert exc.value.shortfall == 3200
    view = await orch.get_transaction(AGENCY, held["id"])
    assert view["status_label"] == "held"
    assert "book" not in supplier.calls


@pytest.mark.anyio
async def test_expired_session_rejects_wallet_payment(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    orch = _orchestrator(test_db, FakeSupplier())

    held = await _held_transaction(orch)
    await _age(test_db, held["id"])

    with pytest.raises(SessionExpired) as exc:
        await orch.pay_with_wallet(AGENCY, held["id"])

    assert exc.value.details["money_taken"] is False
    assert (await WalletLedger(test_db).get_balance("agency_1"))["balance"] == 5000
    assert (await orch.get_transaction(AGENCY, held["id"]))["status_label"] == "booking_failed"


@pytest.mark.anyio
async def test_supplier_timeout_on_confirm_refunds_and_blocks_retry(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    supplier.book_error = SupplierUnavailable()
    orch = _orchestrator(test_db, supplier)

    held = await _held_transaction(orch)
    with pytest.raises(SupplierUnavailable):
        await orch.pay_with_wallet(AGENCY, held["id"])

    # Already failed and refunded; a late confirm does nothing further.
    with pytest.raises(InvalidTransition):
        await orch.confirm_booking(AGENCY, held["id"])
    assert (await WalletLedger(test_db).get_balance("agency_1"))["balance"] == 5000


@pytest.mark.anyio
async def test_duplicate_in_flight_intent_is_rejected(test_db):
    await seed_agency(test_db, "agency_1", balance=50000)
    orch = _orchestrator(test_db, FakeSupplier())

    first = await _held_transaction(orch)
    with pytest.raises(DuplicateBookingIntent) as exc:
        await _held_transaction(orch)
    assert exc.value.details["transaction_id"] == first["id"]

    # Once the first one is terminal the same intent may be booked again.
    await orch.pay_with_wallet(AGENCY, first["id"])
    again = await _held_transaction(orch)
    assert again["id"] != first["id"]


@pytest.mark.anyio
async def test_stale_intent_is_released_after_expiry(test_db):
    await seed_agency(test_db, "agency_1", balance=50000)
    orch = _orchestrator(test_db, FakeSupplier())

    first = await _held_transaction(orch)
    await _age(test_db, first["id"])

    second = await _held_transaction(orch)
    assert second["status_label"] == "held"
    assert (await orch.get_transaction(AGENCY, first["id"]))["status_label"] == "booking_failed"


@pytest.mark.anyio
async def test_prebook_failure_marks_booking_failed(test_db):
    await seed_agency(test_db, "agency_1")
    supplier = FakeSupplier()
    supplier.prebook_error = SupplierRejected(message="Sold out")
    orch = _orchestrator(test_db, supplier)

    policy = await orch.fetch_policy(AGENCY, _policy_request())
    with pytest.raises(SupplierRejected) as exc:
        await orch.hold(AGENCY, _hold_request(policy["policy_id"]))

    txn_id = exc.value.details["transaction_id"]
    assert exc.value.details["money_taken"] is False
    assert (await orch.get_transaction(AGENCY, txn_id))["status_label"] == "booking_failed"


@pytest.mark.anyio
async def test_markup_is_frozen_into_hold_price(test_db):
    await seed_agency(test_db, "agency_1", balance=10000)
    await test_db.markup_rules.insert_one(
        {"_id": "mkp_agency_1", "agency_id": "agency_1", "type": "percentage", "value": 10.0, "is_active": True}
    )
    orch = _orchestrator(test_db, FakeSupplier())

    policy = await orch.fetch_policy(AGENCY, _policy_request())
    assert policy["package"]["chargeable_rate"] == 4620

    held = await orch.hold(AGENCY, _hold_request(policy["policy_id"]))
    assert held["pricing"]["total_chargeable_amount"] == 4620
    assert held["pricing"]["markup"] == {"type": "percentage", "value": 10.0}


@pytest.mark.anyio
async def test_employee_books_for_their_agency(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    await seed_employee(test_db, "emp_1", "agency_1")
    orch = _orchestrator(test_db, FakeSupplier())
    employee = Principal(id="emp_1", type="employee")

    held = await _held_transaction(orch, principal=employee)
    assert held["owner"] == {"type": "employee", "id": "emp_1", "agency_id": "agency_1"}

    # Visible to the agency account, debited from the agency wallet.
    result = await orch.pay_with_wallet(AGENCY, held["id"])
    assert result["status_label"] == "confirmed"


@pytest.mark.anyio
async def test_unresolvable_owner_fails_closed(test_db):
    await seed_agency(test_db, "agency_off", is_active=False)
    orch = _orchestrator(test_db, FakeSupplier())

    with pytest.raises(AgencyNotResolved):
        await orch.fetch_policy(Principal(id="agency_off", type="agency"), _policy_request())
    with pytest.raises(AgencyNotResolved):
        await orch.fetch_policy(Principal(id="ghost", type="employee"), _policy_request())


@pytest.mark.anyio
async def test_other_agency_cannot_see_transaction(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    await seed_agency(test_db, "agency_2", balance=5000)
    orch = _orchestrator(test_db, FakeSupplier())

    held = await _held_transaction(orch)
    with pytest.raises(TransactionNotFound):
        await orch.pay_with_wallet(Principal(id="agency_2", type="agency"), held["id"])


@pytest.mark.anyio
async def test_failed_refund_is_logged_critical_for_manual_review(test_db, caplog, monkeypatch):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    supplier.book_error = SupplierRejected()
    orch = _orchestrator(test_db, supplier)

    async def broken_refund(transaction, reason):
        raise RuntimeError("ledger offline")

    monkeypatch.setattr(orch.wallet, "refund", broken_refund)
    held = await _held_transaction(orch)

    with caplog.at_level(logging.CRITICAL, logger="booking_orchestrator"):
        with pytest.raises(SupplierRejected) as exc:
            await orch.pay_with_wallet(AGENCY, held["id"])

    assert exc.value.details["refund"] == "manual_review"
    assert any(r.levelno == logging.CRITICAL and held["id"] in r.getMessage() for r in caplog.records)
    view = await orch.get_transaction(AGENCY, held["id"])
    assert view["outcome"]["refund"] == "manual_review"


@pytest.mark.anyio
async def test_captured_money_past_expiry_is_returned_without_booking(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    orch = _orchestrator(test_db, supplier)
    held = await _held_transaction(orch)

    # Money captured, supplier confirmation not yet attempted.
    receipt = await orch.wallet.debit("agency_1", 4200, held["id"])
    await orch.transactions.transition(
        held["id"],
        expected=TransactionStatus.HELD,
        target=TransactionStatus.PAYMENT_CONFIRMED,
        reason="wallet_debit",
        append_slots={"payment_record": receipt},
    )
    await _age(test_db, held["id"])

    with pytest.raises(SessionExpired) as exc:
        await orch.confirm_booking(AGENCY, held["id"])

    assert exc.value.details == {"transaction_id": held["id"], "money_taken": True, "refund": "refunded"}
    assert "book" not in supplier.calls
    assert (await WalletLedger(test_db).get_balance("agency_1"))["balance"] == 5000


@pytest.mark.anyio
async def test_unexpected_book_error_refunds_wallet(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    supplier.book_error = RuntimeError("connection reset by peer")
    orch = _orchestrator(test_db, supplier)

    held = await _held_transaction(orch)
    with pytest.raises(SupplierUnavailable) as exc:
        await orch.pay_with_wallet(AGENCY, held["id"])

    assert exc.value.details["operation"] == "book"
    assert exc.value.details["money_taken"] is True
    assert exc.value.details["refund"] == "refunded"
    assert (await WalletLedger(test_db).get_balance("agency_1"))["balance"] == 5000
    assert (await orch.get_transaction(AGENCY, held["id"]))["status_label"] == "booking_failed"


async def _paid_and_claimed(orch, db, *, lease_until):
    held = await _held_transaction(orch)
    receipt = await orch.wallet.debit("agency_1", 4200, held["id"])
    await orch.transactions.transition(
        held["id"],
        expected=TransactionStatus.HELD,
        target=TransactionStatus.PAYMENT_CONFIRMED,
        reason="wallet_debit",
        append_slots={"payment_record": receipt},
    )
    # A confirm worker claimed the `book` call and then died.
    await db.hotel_transactions.update_one(
        {"_id": held["id"]},
        {"$set": {"confirm_claimed_at": now_utc(), "confirm_lease_until": lease_until}},
    )
    return held


@pytest.mark.anyio
async def test_expired_session_takes_over_abandoned_confirm_claim(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    orch = _orchestrator(test_db, supplier)
    held = await _paid_and_claimed(orch, test_db, lease_until=now_utc().timestamp() - 5)
    await _age(test_db, held["id"])

    with pytest.raises(SessionExpired) as exc:
        await orch.confirm_booking(AGENCY, held["id"])

    assert exc.value.details["refund"] == "refunded"
    assert "book" not in supplier.calls
    assert (await WalletLedger(test_db).get_balance("agency_1"))["balance"] == 5000
    assert (await orch.get_transaction(AGENCY, held["id"]))["status_label"] == "booking_failed"


@pytest.mark.anyio
async def test_live_confirm_claim_is_not_taken_over(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    orch = _orchestrator(test_db, supplier)
    held = await _paid_and_claimed(orch, test_db, lease_until=now_utc().timestamp() + 60)
    await _age(test_db, held["id"])

    view = await orch.confirm_booking(AGENCY, held["id"])

    assert view["status_label"] == "payment_confirmed"
    assert (await WalletLedger(test_db).get_balance("agency_1"))["balance"] == 800


@pytest.mark.anyio
async def test_unexpected_prebook_error_releases_intent(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    supplier = FakeSupplier()
    supplier.prebook_error = ValueError("unexpected payload")
    orch = _orchestrator(test_db, supplier)

    policy = await orch.fetch_policy(AGENCY, _policy_request())
    with pytest.raises(SupplierUnavailable) as exc:
        await orch.hold(AGENCY, _hold_request(policy["policy_id"]))

    assert exc.value.details["operation"] == "prebook"
    assert exc.value.details["money_taken"] is False
    failed_id = exc.value.details["transaction_id"]
    assert (await orch.get_transaction(AGENCY, failed_id))["status_label"] == "booking_failed"

    supplier.prebook_error = None
    retried = await _held_transaction(orch)
    assert retried["status_label"] == "held"


@pytest.mark.anyio
async def test_eligibility_requires_transaction_or_amount(test_db):
    await seed_agency(test_db, "agency_1", balance=5000)
    orch = _orchestrator(test_db, FakeSupplier())

    with pytest.raises(ValidationError):
        await orch.check_wallet_eligibility(AGENCY)
    with pytest.raises(ValidationError):
        await orch.check_wallet_eligibility(AGENCY, amount=0)

    result = await orch.check_wallet_eligibility(AGENCY, amount=6000)
    assert result["eligible"] is False
    assert result["shortfall"] == 1000
