from __future__ import annotations

import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


async def ensure_booking_indexes(db):
    async def _safe_create(collection, *args, **kwargs):
        try:
            await collection.create_index(*args, **kwargs)
        except PyMongoError as exc:
            logger.warning("index %s on %s not created: %s", kwargs.get("name"), collection.name, exc)

    # At most one in-flight transaction per booking intent.
    await _safe_create(
        db.hotel_transactions,
        [("active_intent_key", ASCENDING)],
        name="hotel_txn_active_intent_uniq",
        unique=True,
        sparse=True,
    )
    await _safe_create(
        db.hotel_transactions,
        [("owner.agency_id", ASCENDING), ("created_at", DESCENDING)],
        name="hotel_txn_by_agency_created",
    )

    await _safe_create(
        db.booking_policies,
        [("owner.agency_id", ASCENDING), ("created_at", DESCENDING)],
        name="booking_policies_by_agency_created",
    )

    await _safe_create(db.markup_rules, [("agency_id", ASCENDING)], name="markup_rules_agency_uniq", unique=True)

    await _safe_create(
        db.wallet_entries,
        [("reference", ASCENDING), ("kind", ASCENDING)],
        name="wallet_entries_reference_kind_uniq",
        unique=True,
    )
    await _safe_create(
        db.wallet_entries,
        [("agency_id", ASCENDING), ("created_at", DESCENDING)],
        name="wallet_entries_by_agency_created",
    )

    await _safe_create(db.app_cache, [("key", ASCENDING)], name="app_cache_key_uniq", unique=True)
    await _safe_create(db.app_cache, [("expires_at", ASCENDING)], name="app_cache_ttl", expireAfterSeconds=0)

    await _safe_create(
        db.payment_security_events,
        [("order_no", ASCENDING), ("created_at", DESCENDING)],
        name="payment_security_events_by_order",
    )
