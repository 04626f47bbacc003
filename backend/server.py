from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent

# Load .env only if exists (development fallback)
# Production injects env vars directly
env_path = ROOT_DIR / ".env"
if env_path.exists():
    load_dotenv(env_path)

from fastapi import FastAPI  # noqa: E402
from starlette.middleware.cors import CORSMiddleware  # noqa: E402

from app import config  # noqa: E402
from app.db import close_mongo, connect_mongo, get_db  # noqa: E402
from app.exception_handlers import register_exception_handlers  # noqa: E402
from app.indexes.booking_indexes import ensure_booking_indexes  # noqa: E402
from app.middleware.correlation_id import CorrelationIdMiddleware  # noqa: E402
from app.middleware.structured_logging_middleware import StructuredLoggingMiddleware  # noqa: E402
from app.routers.agency_markup import router as agency_markup_router  # noqa: E402
from app.routers.health import router as health_router  # noqa: E402
from app.routers.hotel_booking import router as hotel_booking_router  # noqa: E402
from app.routers.hotel_wallet import router as hotel_wallet_router  # noqa: E402
from app.routers.hotels_search import router as hotels_search_router  # noqa: E402

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("hotel-booking")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_mongo()
    await ensure_booking_indexes(await get_db())
    logger.info("Startup complete (env=%s)", config.APP_ENV)
    yield
    await close_mongo()
    logger.info("Shutdown complete")


app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(StructuredLoggingMiddleware)
# Added last so it runs first and the access log sees the correlation id.
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

# Routers (/api prefix is on each router)
app.include_router(health_router)
app.include_router(hotels_search_router)
app.include_router(hotel_wallet_router)
app.include_router(hotel_booking_router)
app.include_router(agency_markup_router)
