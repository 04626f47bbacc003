from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.domain.booking_state_machine import (
    BookingStateTransitionError,
    TransactionStatus,
    is_terminal,
    validate_transition,
)
from app.errors import DuplicateBookingIntent, InvalidTransition
from app.repositories.base_repository import get_collection, unset_slot_filter
from app.utils import now_utc

APPEND_ONLY_SLOTS = (
    "policy_id",
    "hold_response",
    "payment_record",
    "confirmation_response",
    "compensation_record",
    "gateway_callback",
)


def build_intent_key(owner_id: str, hotel_id: str, booking_key: str, check_in: str, check_out: str) -> str:
    return "|".join(str(part) for part in (owner_id, hotel_id, booking_key, check_in, check_out))


class TransactionRepository:
    """Persistence for booking transactions (collection ``hotel_transactions``).

    Status changes go through :meth:`transition`, a compare-and-set on the
    current status. Slots in ``APPEND_ONLY_SLOTS`` can be written once and never
    overwritten; every transition appends to ``history``.
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, "hotel_transactions")

    async def get(self, transaction_id: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"_id": transaction_id})

    async def find_active_by_intent(self, intent_key: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"active_intent_key": intent_key})

    async def create(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new transaction holding the in-flight slot for its intent.

        Raises DuplicateBookingIntent when another non-terminal transaction
        already holds the same intent key.
        """

        intent_key = doc["intent_key"]
        existing = await self.find_active_by_intent(intent_key)
        if existing is not None:
            raise DuplicateBookingIntent(details={"transaction_id": existing["_id"]})

        now = doc.get("created_at") or now_utc()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        doc["active_intent_key"] = intent_key
        doc.setdefault("history", [])
        try:
            await self._col.insert_one(doc)
        except DuplicateKeyError:
            holder = await self.find_active_by_intent(intent_key)
            raise DuplicateBookingIntent(details={"transaction_id": holder["_id"] if holder else None})
        return doc

    async def transition(
        self,
        transaction_id: str,
        *,
        expected: TransactionStatus,
        target: TransactionStatus,
        reason: str,
        set_fields: Optional[Dict[str, Any]] = None,
        append_slots: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """Move a transaction from ``expected`` to ``target`` atomically.

        Returns the updated document, or None when the stored status is no
        longer ``expected`` (or an append-only slot is already written).
        Raises InvalidTransition for edges the state machine does not allow.
        """

        try:
            validate_transition(expected, target)
        except BookingStateTransitionError as exc:
            raise InvalidTransition(
                details={"transaction_id": transaction_id, "from": expected.label, "to": target.label}
            ) from exc

        append_slots = append_slots or {}
        _check_slots(append_slots.keys())
        now = now or now_utc()

        query: Dict[str, Any] = {"_id": transaction_id, "status": int(expected)}
        query.update(unset_slot_filter(append_slots.keys()))

        set_doc: Dict[str, Any] = {"status": int(target), "status_label": target.label, "updated_at": now}
        set_doc.update(set_fields or {})
        set_doc.update(append_slots)

        update: Dict[str, Any] = {
            "$set": set_doc,
            "$push": {
                "history": {"from": int(expected), "to": int(target), "at": now, "reason": reason},
            },
        }
        if is_terminal(target):
            update["$unset"] = {"active_intent_key": ""}

        return await self._col.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)

    async def write_slot(self, transaction_id: str, slot: str, value: Any) -> bool:
        """Write an append-only slot without changing status. False if already set."""

        _check_slots([slot])
        res = await self._col.update_one(
            {"_id": transaction_id, slot: {"$exists": False}},
            {"$set": {slot: value, "updated_at": now_utc()}},
        )
        return res.modified_count == 1

    async def claim_confirmation(self, transaction_id: str, *, lease_seconds: float, take_over_stale: bool = False) -> bool:
        """Claim the single supplier `book` call for a paid transaction.

        A claim is leased for ``lease_seconds``. With ``take_over_stale`` an
        expired lease (its holder crashed or never finished) can be claimed
        again; the normal confirm path never does that, so `book` is not
        repeated.
        """

        now = now_utc()
        unclaimed: Dict[str, Any] = {"confirm_claimed_at": {"$exists": False}}
        query: Dict[str, Any] = {"_id": transaction_id, "status": int(TransactionStatus.PAYMENT_CONFIRMED)}
        if take_over_stale:
            query["$or"] = [unclaimed, {"confirm_lease_until": {"$lt": now.timestamp()}}]
        else:
            query.update(unclaimed)

        res = await self._col.update_one(
            query,
            {"$set": {"confirm_claimed_at": now, "confirm_lease_until": now.timestamp() + lease_seconds}},
        )
        return res.modified_count == 1


def _check_slots(slots: Iterable[str]) -> None:
    unknown = [s for s in slots if s not in APPEND_ONLY_SLOTS]
    if unknown:
        raise ValueError(f"not an append-only slot: {', '.join(unknown)}")
