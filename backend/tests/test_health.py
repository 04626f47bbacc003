from __future__ import annotations

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from app.db import get_db


class _PingDb:
    def __init__(self, error=None):
        self.error = error

    async def command(self, name):
        if self.error is not None:
            raise self.error
        return {"ok": 1.0}


@pytest.mark.anyio
@pytest.mark.parametrize("error,expected", [(None, True), (ServerSelectionTimeoutError("no primary"), False)])
async def test_health_reports_database_ping(async_client, app_with_overrides, error, expected):
    app_with_overrides.dependency_overrides[get_db] = lambda: _PingDb(error)

    resp = await async_client.get("/api/health")

    assert resp.status_code == 200
    assert resp.json()["ok"] is expected
    assert resp.headers["X-Correlation-Id"]
