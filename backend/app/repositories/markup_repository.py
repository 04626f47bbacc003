from __future__ import annotations

from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.repositories.base_repository import get_collection
from app.utils import now_utc


class MarkupRepository:
    """One markup rule per agency, keyed by agency_id (toggled, never duplicated)."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, "markup_rules")

    async def get(self, agency_id: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"agency_id": agency_id})

    async def get_active(self, agency_id: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"agency_id": agency_id, "is_active": True})

    async def upsert(self, agency_id: str, *, type: str, value: float, is_active: bool) -> Dict[str, Any]:
        now = now_utc()
        return await self._col.find_one_and_update(
            {"agency_id": agency_id},
            {
                "$set": {"type": type, "value": float(value), "is_active": bool(is_active), "updated_at": now},
                "$setOnInsert": {"_id": f"mkp_{agency_id}", "created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    async def set_active(self, agency_id: str, is_active: bool) -> Optional[Dict[str, Any]]:
        return await self._col.find_one_and_update(
            {"agency_id": agency_id},
            {"$set": {"is_active": bool(is_active), "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
