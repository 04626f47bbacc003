from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from app import config
from app.errors import SupplierRejected, SupplierUnavailable
from app.services.suppliers.contracts import SupplierContext, run_with_deadline

logger = logging.getLogger("supplier_client")


class HotelSupplierClient:
    """Bounded-timeout client for the hotel inventory API.

    Every operation is a JSON POST to ``{base_url}/{operation}`` with the
    authorization key injected into the body. Failures are normalized:

    - timeouts                    -> SupplierUnavailable(code="supplier_timeout")
    - connection errors, 5xx, 429 -> SupplierUnavailable
    - other 4xx, errorCode/errorMsg in body -> SupplierRejected
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or config.SUPPLIER_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.SUPPLIER_API_KEY
        self.timeout = float(timeout_seconds or config.SUPPLIER_TIMEOUT_SECONDS)
        self._transport = transport

    async def _post(self, operation: str, body: Dict[str, Any], *, transaction_identifier: Optional[str] = None) -> Dict[str, Any]:
        ctx = SupplierContext(
            operation=operation,
            transaction_identifier=transaction_identifier,
            timeout_ms=int(self.timeout * 1000),
        )
        payload = dict(body)
        payload["authentication"] = {"authorization_key": self.api_key}
        url = f"{self.base_url}/{operation}"

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await run_with_deadline(
                    client.post(url, json=payload, headers={"Accept": "application/json"}),
                    ctx,
                )
        except httpx.TimeoutException as exc:
            logger.warning("supplier %s timed out after %.0fms", operation, (time.monotonic() - started) * 1000)
            raise SupplierUnavailable(
                code="supplier_timeout",
                message="Hotel supplier timed out",
                details={"operation": operation},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("supplier %s transport error: %s", operation, exc)
            raise SupplierUnavailable(details={"operation": operation, "reason": str(exc)}) from exc

        latency_ms = round((time.monotonic() - started) * 1000, 2)
        logger.info("supplier %s status=%s latency_ms=%s txn=%s", operation, resp.status_code, latency_ms, transaction_identifier)

        if resp.status_code >= 500 or resp.status_code == 429:
            raise SupplierUnavailable(details={"operation": operation, "upstream_status": resp.status_code})

        try:
            data = resp.json()
        except ValueError as exc:
            raise SupplierUnavailable(
                message="Hotel supplier returned a malformed response",
                details={"operation": operation, "upstream_status": resp.status_code},
            ) from exc

        if resp.status_code >= 400:
            raise SupplierRejected(
                message=_error_message(data) or "Hotel supplier rejected the request",
                details={"operation": operation, "upstream_status": resp.status_code, "error_code": _error_code(data)},
            )

        if isinstance(data, dict) and (data.get("errorCode") or data.get("errorMsg")):
            raise SupplierRejected(
                message=_error_message(data) or "Hotel supplier rejected the request",
                details={"operation": operation, "error_code": data.get("errorCode")},
            )

        if not isinstance(data, dict):
            raise SupplierUnavailable(
                message="Hotel supplier returned a malformed response",
                details={"operation": operation},
            )
        return data

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def search(self, criteria: Dict[str, Any], *, transaction_identifier: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"search": criteria}
        if transaction_identifier:
            body["transaction_identifier"] = transaction_identifier
        return await self._post("search", body, transaction_identifier=transaction_identifier)

    async def autosuggest(self, query: str, *, locale: str = "en-US") -> Dict[str, Any]:
        return await self._post("autosuggest", {"autosuggest": {"query": query, "locale": locale}})

    async def bookingpolicy(
        self,
        package: Dict[str, Any],
        search: Dict[str, Any],
        transaction_identifier: str,
    ) -> Dict[str, Any]:
        body = {
            "bookingpolicy": {"package": package, "search": search},
            "transaction_identifier": transaction_identifier,
        }
        return await self._post("bookingpolicy", body, transaction_identifier=transaction_identifier)

    async def prebook(
        self,
        booking_policy_id: str,
        guests: List[Dict[str, Any]],
        contact: Dict[str, Any],
        *,
        transaction_identifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "prebook": {
                "booking_policy_id": booking_policy_id,
                "contact_detail": contact,
                "guest": guests,
            }
        }
        if transaction_identifier:
            body["transaction_identifier"] = transaction_identifier
        return await self._post("prebook", body, transaction_identifier=transaction_identifier)

    async def book(self, hold_id: str) -> Dict[str, Any]:
        return await self._post("book", {"book": {"booking_id": hold_id}})


def _error_code(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        code = data.get("errorCode")
        return str(code) if code is not None else None
    return None


def _error_message(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        msg = data.get("errorMsg") or data.get("message")
        return str(msg) if msg else None
    return None


def get_supplier_client() -> HotelSupplierClient:
    """FastAPI dependency; overridden in tests."""
    return HotelSupplierClient()
