from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from app import config
from app.services.pricing_engine import PricingEngine
from app.services.result_cache import ResultCache, build_key
from app.services.suppliers.hotel_supplier_client import HotelSupplierClient
from app.utils import chunk

logger = logging.getLogger("hotel_search")


def _hotels_of(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    data = response.get("data") or {}
    hotels = data.get("hotels") if isinstance(data, dict) else None
    return list(hotels or [])


def flatten_suggestions(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten supplier autosuggest groups (city / hotel / poi) into one list."""

    data = response.get("data") or {}
    transaction_identifier = response.get("transaction_identifier") or data.get("transaction_identifier")
    out: List[Dict[str, Any]] = []
    for group in ("city", "hotel", "poi"):
        for item in (data.get(group) or {}).get("results") or []:
            entry = dict(item)
            entry["type"] = group
            entry["transaction_identifier"] = transaction_identifier
            out.append(entry)
    return out


class HotelSearchService:
    """Search façade: cache → supplier → per-agency pricing.

    Raw supplier responses are cached (they do not depend on the agency);
    markup is applied on every read so a changed rule takes effect at once.
    """

    def __init__(self, db, supplier: HotelSupplierClient) -> None:
        self.cache = ResultCache(db)
        self.pricing = PricingEngine(db)
        self.supplier = supplier

    async def _price_hotels(self, hotels: List[Dict[str, Any]], agency_id: Optional[str]) -> List[Dict[str, Any]]:
        priced: List[Dict[str, Any]] = []
        for hotel in hotels:
            hotel = dict(hotel)
            packages = hotel.get("packages")
            if isinstance(packages, list):
                hotel["packages"] = await self.pricing.apply_markup_many(packages, agency_id)
            priced.append(hotel)
        return priced

    async def search(self, criteria: Dict[str, Any], agency_id: Optional[str]) -> Dict[str, Any]:
        key = build_key("hotel_search", criteria)
        raw, cache_hit = await self.cache.cached(
            key,
            lambda: self.supplier.search(criteria, transaction_identifier=criteria.get("transaction_identifier")),
            config.SEARCH_CACHE_TTL_SECONDS,
        )
        hotels = await self._price_hotels(_hotels_of(raw), agency_id)
        logger.info("hotel search hotels=%d cache_hit=%s agency=%s", len(hotels), cache_hit, agency_id)
        return {
            "hotels": hotels,
            "transaction_identifier": (raw.get("data") or {}).get("transaction_identifier") or raw.get("transaction_identifier"),
            "cache_hit": cache_hit,
        }

    async def search_by_ids(self, criteria: Dict[str, Any], hotel_ids: List[str], agency_id: Optional[str]) -> Dict[str, Any]:
        """Search a long hotel-id list in supplier-sized batches, concurrently."""

        batches = list(chunk(hotel_ids, config.HOTEL_ID_BATCH_SIZE))

        async def _one(ids: List[str]) -> Dict[str, Any]:
            return await self.search({**criteria, "hotel_ids": ids}, agency_id)

        results = await asyncio.gather(*(_one(ids) for ids in batches))
        hotels: List[Dict[str, Any]] = []
        for res in results:
            hotels.extend(res["hotels"])
        return {
            "hotels": hotels,
            "batches": len(batches),
            "transaction_identifier": next((r["transaction_identifier"] for r in results if r["transaction_identifier"]), None),
        }

    async def autosuggest(self, query: str, *, locale: str = "en-US") -> Dict[str, Any]:
        key = build_key("hotel_autosuggest", {"query": query.strip().lower(), "locale": locale})
        raw, cache_hit = await self.cache.cached(
            key,
            lambda: self.supplier.autosuggest(query, locale=locale),
            config.AUTOSUGGEST_CACHE_TTL_SECONDS,
        )
        return {"results": flatten_suggestions(raw), "cache_hit": cache_hit}
