from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pymongo.errors import PyMongoError

from app import config
from app.db import get_db

router = APIRouter(prefix="/api", tags=["health"])
logger = logging.getLogger(__name__)


@router.get("/health")
async def health(db=Depends(get_db)) -> dict[str, Any]:
    """Health check with database ping"""
    try:
        await db.command("ping")
        ok = True
    except PyMongoError as exc:
        logger.warning("health ping failed: %s", exc)
        ok = False
    return {"ok": ok, "service": config.APP_NAME, "version": config.APP_VERSION}
