from __future__ import annotations

from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.repositories.base_repository import get_collection
from app.utils import new_id, now_utc


class BookingPolicyRepository:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._col = get_collection(db, "booking_policies")

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        doc.setdefault("_id", new_id("pol"))
        doc.setdefault("created_at", now_utc())
        await self._col.insert_one(doc)
        return doc

    async def get(self, policy_id: str) -> Optional[Dict[str, Any]]:
        return await self._col.find_one({"_id": policy_id})
