from __future__ import annotations

import pytest
import respx

from app.errors import PaymentVerificationFailed, SessionExpired
from app.services.payments.gateway_adapter import GatewayAdapter, decode_payload

from conftest import FakeSupplier, seed_agency
from test_booking_orchestrator import AGENCY, _age, _held_transaction, _orchestrator

REFUND_URL = "https://gateway.test/refund"


def _gateway():
    return GatewayAdapter(working_key="wk_test", access_code="AC", payment_url="https://gateway.test/pay", refund_url=REFUND_URL)


async def _pending(test_db, supplier=None):
    await seed_agency(test_db, "agency_1")
    gateway = _gateway()
    orch = _orchestrator(test_db, supplier or FakeSupplier(), gateway=gateway)
    held = await _held_transaction(orch)
    form = await orch.initiate_gateway_payment(AGENCY, held["id"])
    return orch, gateway, held, form


def _callback(gateway, txn_id, *, amount="4200.00", status="Success"):
    enc, sig = gateway.sign(
        {"order_id": txn_id, "amount": amount, "currency": "INR", "order_status": status, "tracking_id": "TRK1"}
    )
    return txn_id, enc, sig


@pytest.mark.anyio
async def test_initiate_moves_to_payment_pending_and_is_repeatable(test_db):
    orch, _, held, form = await _pending(test_db)

    assert decode_payload(form["fields"]["encRequest"])["amount"] == "4200.00"
    assert (await orch.get_transaction(AGENCY, held["id"]))["status_label"] == "payment_pending"

    again = await orch.initiate_gateway_payment(AGENCY, held["id"])
    assert again["fields"]["encRequest"] == form["fields"]["encRequest"]


@pytest.mark.anyio
async def test_approved_callback_confirms_booking(test_db):
    supplier = FakeSupplier()
    orch, gateway, held, _ = await _pending(test_db, supplier)

    result = await orch.handle_gateway_callback(*_callback(gateway, held["id"]))

    assert result["status_label"] == "confirmed"
    assert result["payment"]["method"] == "gateway"
    assert supplier.calls.count("book") == 1

    # Gateway retries the same callback: stored result, no second booking.
    repeat = await orch.handle_gateway_callback(*_callback(gateway, held["id"]))
    assert repeat["confirmation"] == result["confirmation"]
    assert supplier.calls.count("book") == 1


@pytest.mark.anyio
async def test_tampered_amount_is_rejected_without_transition(test_db):
    orch, gateway, held, _ = await _pending(test_db)
    order_no, _, sig = _callback(gateway, held["id"])
    _, forged_enc, _ = _callback(gateway, held["id"], amount="1.00")

    with pytest.raises(PaymentVerificationFailed):
        await orch.handle_gateway_callback(order_no, forged_enc, sig)

    view = await orch.get_transaction(AGENCY, held["id"])
    assert view["status_label"] == "payment_pending"
    stored = await test_db.hotel_transactions.find_one({"_id": held["id"]})
    assert "gateway_callback" not in stored
    assert await test_db.payment_security_events.count_documents({"order_no": held["id"]}) == 1


@pytest.mark.anyio
async def test_correctly_signed_wrong_amount_is_rejected(test_db):
    orch, gateway, held, _ = await _pending(test_db)

    with pytest.raises(PaymentVerificationFailed) as exc:
        await orch.handle_gateway_callback(*_callback(gateway, held["id"], amount="4100.00"))

    assert exc.value.details["reason"] == "amount_mismatch"
    assert (await orch.get_transaction(AGENCY, held["id"]))["status_label"] == "payment_pending"


@pytest.mark.anyio
async def test_reference_swap_is_rejected(test_db):
    orch, gateway, held, _ = await _pending(test_db)
    _, enc, sig = _callback(gateway, held["id"])

    with pytest.raises(PaymentVerificationFailed):
        await orch.handle_gateway_callback("txn_someone_else", enc, sig)
    assert (await orch.get_transaction(AGENCY, held["id"]))["status_label"] == "payment_pending"


@pytest.mark.anyio
async def test_declined_callback_marks_payment_failed(test_db):
    supplier = FakeSupplier()
    orch, gateway, held, _ = await _pending(test_db, supplier)

    result = await orch.handle_gateway_callback(*_callback(gateway, held["id"], status="Failure"))

    assert result["status_label"] == "payment_failed"
    assert result["outcome"]["money_taken"] is False
    assert "book" not in supplier.calls


@pytest.mark.anyio
async def test_approved_callback_after_expiry_requests_refund(test_db):
    supplier = FakeSupplier()
    orch, gateway, held, _ = await _pending(test_db, supplier)
    await _age(test_db, held["id"])

    with respx.mock() as mock:
        refund_route = mock.post(REFUND_URL).respond(200, json={"refund_status": 0})
        with pytest.raises(SessionExpired) as exc:
            await orch.handle_gateway_callback(*_callback(gateway, held["id"]))

    assert refund_route.called
    assert exc.value.details["money_taken"] is True
    assert exc.value.details["refund"] == "automatic"
    assert "book" not in supplier.calls
    assert (await orch.get_transaction(AGENCY, held["id"]))["status_label"] == "booking_failed"


@pytest.mark.anyio
async def test_confirm_failure_after_gateway_capture_requests_refund(test_db):
    from app.errors import SupplierRejected

    supplier = FakeSupplier()
    supplier.book_error = SupplierRejected(message="Hotel closed")
    orch, gateway, held, _ = await _pending(test_db, supplier)

    with respx.mock() as mock:
        mock.post(REFUND_URL).respond(200, json={"refund_status": 0})
        with pytest.raises(SupplierRejected) as exc:
            await orch.handle_gateway_callback(*_callback(gateway, held["id"]))

    assert exc.value.details["refund"] == "automatic"
    view = await orch.get_transaction(AGENCY, held["id"])
    assert view["status_label"] == "booking_failed"
    assert view["compensation"]["method"] == "gateway"


@pytest.mark.anyio
async def test_non_ascii_callback_is_recorded_as_security_event(test_db):
    orch, _, held, _ = await _pending(test_db)

    with pytest.raises(PaymentVerificationFailed):
        await orch.handle_gateway_callback(held["id"], "eyJ9", "sigé")
    with pytest.raises(PaymentVerificationFailed):
        await orch.handle_gateway_callback(held["id"], "énc", "abc")

    assert await test_db.payment_security_events.count_documents({"order_no": held["id"]}) == 2
    assert (await orch.get_transaction(AGENCY, held["id"]))["status_label"] == "payment_pending"
