from __future__ import annotations

from typing import Any, Dict, Iterable

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase


def get_collection(db: AsyncIOMotorDatabase, name: str) -> AsyncIOMotorCollection:
    """Return a Motor collection from the given database.

    This is the only place where repositories should obtain collections.
    """

    return db[name]


def unset_slot_filter(slots: Iterable[str]) -> Dict[str, Any]:
    """Mongo filter requiring every given field to be absent.

    Append-only slots are written with this guard so a second writer can never
    overwrite a value that is already set.
    """

    return {slot: {"$exists": False} for slot in slots}
