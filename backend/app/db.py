from __future__ import annotations

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app import config

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def connect_mongo() -> AsyncIOMotorDatabase:
    """Open the shared client once per process (tz-aware so created_at compares as UTC)."""
    global _client, _db

    if _db is None:
        _client = AsyncIOMotorClient(
            config.MONGO_URL,
            serverSelectionTimeoutMS=config.MONGO_SERVER_SELECTION_TIMEOUT_MS,
            tz_aware=True,
        )
        _db = _client[config.DB_NAME]
        logger.info("Connected to MongoDB database %s", config.DB_NAME)
    return _db


async def close_mongo() -> None:
    global _client, _db

    if _client is not None:
        _client.close()
        logger.info("MongoDB client closed")
    _client = None
    _db = None


async def get_db() -> AsyncIOMotorDatabase:
    """FastAPI dependency; tests override it with an in-memory database."""
    return _db if _db is not None else await connect_mongo()
