"""Prepaid agency wallet ledger.

Balances live in ``wallets`` (one document per agency) and every movement is
receipted in ``wallet_entries``. A debit is a single conditional ``$inc``
(``balance >= amount``), so it can never overdraw even across processes; in
process it additionally runs under a per-agency asyncio.Lock so concurrent
debits for one agency are serialized.

Entries are unique on ``(reference, kind)``: debiting or refunding the same
transaction twice returns the first receipt instead of moving money again.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app import config
from app.errors import InsufficientBalance, LedgerUnavailable, ValidationError
from app.utils import new_id, now_utc

logger = logging.getLogger("wallet_ledger")

T = TypeVar("T")

# loop -> agency_id -> [lock, number of holders and waiters]
_locks_by_loop: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, List[Any]]]" = (
    weakref.WeakKeyDictionary()
)


@asynccontextmanager
async def agency_lock(agency_id: str) -> AsyncIterator[None]:
    """Serialize in-process wallet writes for one agency.

    The entry is dropped once nobody holds or waits for it, so the table only
    covers agencies with a debit in flight.
    """
    loop = asyncio.get_running_loop()
    locks = _locks_by_loop.setdefault(loop, {})
    slot = locks.get(agency_id)
    if slot is None:
        slot = locks[agency_id] = [asyncio.Lock(), 0]
    slot[1] += 1
    try:
        async with slot[0]:
            yield
    finally:
        slot[1] -= 1
        if slot[1] == 0 and locks.get(agency_id) is slot:
            del locks[agency_id]


class WalletLedger:
    def __init__(self, db: AsyncIOMotorDatabase, *, timeout_seconds: Optional[float] = None) -> None:
        self.wallets = db.wallets
        self.entries = db.wallet_entries
        self.timeout = timeout_seconds if timeout_seconds is not None else config.LEDGER_TIMEOUT_SECONDS

    async def _call(self, aw: Awaitable[T], op: str) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.error("wallet ledger %s timed out after %ss", op, self.timeout)
            raise LedgerUnavailable(details={"operation": op, "reason": "timeout"}) from exc
        except DuplicateKeyError:
            raise
        except PyMongoError as exc:
            logger.error("wallet ledger %s failed: %s", op, exc)
            raise LedgerUnavailable(details={"operation": op, "reason": str(exc)}) from exc

    async def get_balance(self, agency_id: str) -> Dict[str, Any]:
        doc = await self._call(self.wallets.find_one({"_id": agency_id}), "balance")
        return {
            "agency_id": agency_id,
            "balance": float((doc or {}).get("balance") or 0.0),
            "currency": (doc or {}).get("currency") or config.WALLET_DEFAULT_CURRENCY,
        }

    async def check_eligibility(self, agency_id: str, required_amount: float) -> Dict[str, Any]:
        wallet = await self.get_balance(agency_id)
        balance = wallet["balance"]
        shortfall = max(0.0, float(required_amount) - balance)
        return {
            "agency_id": agency_id,
            "eligible": shortfall == 0.0,
            "balance": balance,
            "required_amount": float(required_amount),
            "shortfall": shortfall,
            "currency": wallet["currency"],
        }

    async def _existing_entry(self, reference: str, kind: str) -> Optional[Dict[str, Any]]:
        return await self._call(self.entries.find_one({"reference": reference, "kind": kind}), "entry_lookup")

    async def _record_entry(self, *, agency_id: str, kind: str, amount: float, reason: str, reference: str, balance_after: float) -> Dict[str, Any]:
        entry = {
            "_id": new_id("wle"),
            "agency_id": agency_id,
            "kind": kind,
            "amount": amount,
            "reason": reason,
            "reference": reference,
            "balance_after": balance_after,
            "created_at": now_utc(),
        }
        await self._call(self.entries.insert_one(entry), "entry_insert")
        return entry

    async def debit(self, agency_id: str, amount: float, reference: str, *, reason: str = "hotel_booking") -> Dict[str, Any]:
        """Atomically take ``amount`` from the agency wallet.

        Raises InsufficientBalance (with ``shortfall``) and changes nothing when
        the balance does not cover the amount.
        """

        amount = _positive_amount(amount)
        async with agency_lock(agency_id):
            existing = await self._existing_entry(reference, "debit")
            if existing is not None:
                logger.info("wallet debit replay agency=%s reference=%s", agency_id, reference)
                return existing

            wallet = await self._call(
                self.wallets.find_one_and_update(
                    {"_id": agency_id, "balance": {"$gte": amount}},
                    {"$inc": {"balance": -amount}, "$set": {"updated_at": now_utc()}},
                    return_document=ReturnDocument.AFTER,
                ),
                "debit",
            )
            if wallet is None:
                current = await self.get_balance(agency_id)
                shortfall = amount - current["balance"]
                logger.info(
                    "wallet debit refused agency=%s amount=%s balance=%s",
                    agency_id,
                    amount,
                    current["balance"],
                )
                raise InsufficientBalance(
                    message=f"Insufficient wallet balance. Required: {amount}, available: {current['balance']}",
                    details={
                        "required_amount": amount,
                        "balance": current["balance"],
                        "shortfall": shortfall,
                        "currency": current["currency"],
                    },
                )

            try:
                entry = await self._record_entry(
                    agency_id=agency_id,
                    kind="debit",
                    amount=amount,
                    reason=reason,
                    reference=reference,
                    balance_after=float(wallet["balance"]),
                )
            except DuplicateKeyError:
                # Another process receipted this reference first; undo ours.
                await self._call(self.wallets.update_one({"_id": agency_id}, {"$inc": {"balance": amount}}), "debit_revert")
                return await self._existing_entry(reference, "debit")

        logger.info("wallet debit agency=%s amount=%s reference=%s balance_after=%s", agency_id, amount, reference, entry["balance_after"])
        return entry

    async def credit(self, agency_id: str, amount: float, reason: str, reference: str) -> Dict[str, Any]:
        """Add ``amount`` to the agency wallet (refund or top-up)."""

        amount = _positive_amount(amount)
        existing = await self._existing_entry(reference, "credit")
        if existing is not None:
            logger.info("wallet credit replay agency=%s reference=%s", agency_id, reference)
            return existing

        wallet = await self._call(
            self.wallets.find_one_and_update(
                {"_id": agency_id},
                {
                    "$inc": {"balance": amount},
                    "$set": {"updated_at": now_utc()},
                    "$setOnInsert": {"currency": config.WALLET_DEFAULT_CURRENCY},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            ),
            "credit",
        )
        try:
            entry = await self._record_entry(
                agency_id=agency_id,
                kind="credit",
                amount=amount,
                reason=reason,
                reference=reference,
                balance_after=float(wallet["balance"]),
            )
        except DuplicateKeyError:
            await self._call(self.wallets.update_one({"_id": agency_id}, {"$inc": {"balance": -amount}}), "credit_revert")
            return await self._existing_entry(reference, "credit")

        logger.info("wallet credit agency=%s amount=%s reason=%s reference=%s", agency_id, amount, reason, reference)
        return entry


def _positive_amount(amount: Any) -> float:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError(message="Amount must be a number", details={"field": "amount"})
    if value <= 0:
        raise ValidationError(message="Amount must be greater than zero", details={"field": "amount"})
    return value
