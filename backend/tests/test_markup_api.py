from __future__ import annotations

import pytest

from conftest import auth_headers, seed_agency, seed_employee


@pytest.mark.anyio
async def test_markup_defaults_to_none(async_client, test_db):
    await seed_agency(test_db, "agency_1")

    resp = await async_client.get("/api/agency/markup", headers=auth_headers("agency_1"))

    assert resp.status_code == 200
    assert resp.json() == {"agency_id": "agency_1", "type": None, "value": 0.0, "is_active": False, "updated_at": None}


@pytest.mark.anyio
async def test_put_then_toggle_markup(async_client, test_db):
    await seed_agency(test_db, "agency_1")
    headers = auth_headers("agency_1")

    put = await async_client.put("/api/agency/markup", json={"type": "fixed", "value": 250}, headers=headers)
    assert put.status_code == 200, put.text
    assert put.json()["type"] == "fixed"
    assert put.json()["value"] == 250
    assert put.json()["is_active"] is True

    off = await async_client.patch("/api/agency/markup/toggle", json={"is_active": False}, headers=headers)
    assert off.status_code == 200
    assert off.json()["is_active"] is False

    got = await async_client.get("/api/agency/markup", headers=headers)
    assert got.json()["value"] == 250
    assert got.json()["is_active"] is False

    assert await test_db.markup_rules.count_documents({}) == 1


@pytest.mark.anyio
async def test_toggle_without_rule_is_404(async_client, test_db):
    await seed_agency(test_db, "agency_1")

    resp = await async_client.patch("/api/agency/markup/toggle", json={"is_active": True}, headers=auth_headers("agency_1"))

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "markup_not_found"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body",
    [
        {"type": "percentage", "value": -5},
        {"type": "percentage", "value": 150},
        {"type": "bonus", "value": 5},
    ],
)
async def test_invalid_markup_is_rejected(async_client, test_db, body):
    await seed_agency(test_db, "agency_1")

    resp = await async_client.put("/api/agency/markup", json=body, headers=auth_headers("agency_1"))

    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


@pytest.mark.anyio
async def test_employee_can_read_but_not_change_markup(async_client, test_db):
    await seed_agency(test_db, "agency_1")
    await seed_employee(test_db, "emp_7", "agency_1")
    headers = auth_headers("emp_7", "employee")

    read = await async_client.get("/api/agency/markup", headers=headers)
    assert read.status_code == 200
    assert read.json()["agency_id"] == "agency_1"

    write = await async_client.put("/api/agency/markup", json={"type": "fixed", "value": 10}, headers=headers)
    assert write.status_code == 403
    assert write.json()["error"]["code"] == "forbidden"
