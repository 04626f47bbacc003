"""Shared test configuration and fixtures for backend tests.

Key principles:
- All HTTP calls go through the local ASGI app (httpx ASGITransport).
- Each test gets its own in-memory Motor-compatible database (mongomock-motor),
  wired into the app through dependency overrides.
- Supplier and gateway HTTP traffic is mocked with respx.
- AnyIO is the single async runner via pytest-anyio (@pytest.mark.anyio).
"""

from typing import Any, AsyncGenerator, Dict, List, Optional

import sys
import uuid
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport
from mongomock_motor import AsyncMongoMockClient

# Ensure backend root is on sys.path so that `server` module is importable
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from server import app  # noqa: E402
from app.auth import create_access_token  # noqa: E402
from app.db import get_db  # noqa: E402
from app.services.suppliers.hotel_supplier_client import HotelSupplierClient, get_supplier_client  # noqa: E402
from app.utils import now_utc  # noqa: E402

SUPPLIER_URL = "https://supplier.test/api"
SUPPLIER_KEY = "test-supplier-key"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


@pytest.fixture(scope="function")
def test_db() -> Any:
    """Function-scoped isolated in-memory database."""

    client = AsyncMongoMockClient()
    return client[f"hotel_test_{uuid.uuid4().hex}"]


@pytest.fixture
def supplier_client() -> HotelSupplierClient:
    return HotelSupplierClient(base_url=SUPPLIER_URL, api_key=SUPPLIER_KEY, timeout_seconds=2.0)


@pytest.fixture(scope="function")
async def app_with_overrides(test_db, supplier_client) -> AsyncGenerator[Any, None]:
    """FastAPI app whose db and supplier dependencies point at test doubles."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_supplier_client] = lambda: supplier_client
    try:
        yield app
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def async_client(app_with_overrides) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = ASGITransport(app=app_with_overrides)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=30.0) as client:
        yield client


async def seed_agency(db, agency_id: str = "agency_1", *, balance: Optional[float] = None, is_active: bool = True) -> str:
    await db.agencies.insert_one({"_id": agency_id, "name": f"Agency {agency_id}", "is_active": is_active, "created_at": now_utc()})
    if balance is not None:
        await db.wallets.insert_one({"_id": agency_id, "balance": float(balance), "currency": "INR", "updated_at": now_utc()})
    return agency_id


async def seed_employee(db, employee_id: str, agency_id: str) -> str:
    await db.agency_employees.insert_one({"_id": employee_id, "agency_id": agency_id, "is_active": True})
    return employee_id


def auth_headers(subject: str, principal_type: str = "agency") -> Dict[str, str]:
    token = create_access_token(subject=subject, principal_type=principal_type)
    return {"Authorization": f"Bearer {token}"}


def make_package(base: float = 4200.0, **extra: Any) -> Dict[str, Any]:
    pkg: Dict[str, Any] = {
        "booking_key": "bk_deluxe_1",
        "room_rate": base,
        "base_amount": base,
        "chargeable_rate": base,
        "chargeable_rate_currency": "INR",
        "room_details": {"description": "Deluxe Room"},
    }
    pkg.update(extra)
    return pkg


def search_payload(**extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "check_in_date": "2026-12-10",
        "check_out_date": "2026-12-12",
        "occupancies": [{"adults": 2, "children_ages": []}],
        "city_name": "Mumbai",
    }
    payload.update(extra)
    return payload


class FakeSupplier:
    """In-process stand-in for HotelSupplierClient used by orchestrator tests."""

    def __init__(self, *, package: Optional[Dict[str, Any]] = None) -> None:
        self.package = package or make_package()
        self.calls: List[str] = []
        self.book_error: Optional[Exception] = None
        self.prebook_error: Optional[Exception] = None

    async def bookingpolicy(self, package, search, transaction_identifier):
        self.calls.append("bookingpolicy")
        return {"data": {"booking_policy_id": "bp_123", "package": dict(self.package), "cancellation_policy": {"refundable": True}}}

    async def prebook(self, booking_policy_id, guests, contact, *, transaction_identifier=None):
        self.calls.append("prebook")
        if self.prebook_error is not None:
            raise self.prebook_error
        return {"data": {"booking_id": "hold_987", "status": "held"}}

    async def book(self, hold_id):
        self.calls.append("book")
        if self.book_error is not None:
            raise self.book_error
        return {"data": {"booking_id": hold_id, "booking_reference": "CNF-555", "status": "confirmed"}}
