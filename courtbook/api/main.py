"""
Court Booking API Server

FastAPI server for court slot booking, payments and gateway reconciliation.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from courtbook.api.routes import router, limiter as routes_limiter
from courtbook.database import db
from courtbook.services.connection_registry import ConnectionRegistry
from courtbook.services.reservation_reaper import ReservationReaper

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

RESERVATION_REAPER_ENABLED = os.getenv("RESERVATION_REAPER_ENABLED", "true").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    logger.info("Starting up Court Booking API...")

    # Tables normally come from alembic migrations; create any that are missing
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    app.state.connection_registry = ConnectionRegistry()
    app.state.reservation_reaper = ReservationReaper()

    if RESERVATION_REAPER_ENABLED:
        try:
            app.state.reservation_reaper.start()
        except Exception as e:
            logger.error(f"Failed to start reservation reaper: {e}", exc_info=True)

    yield  # App is running

    logger.info("Shutting down Court Booking API...")
    try:
        app.state.reservation_reaper.stop()
    except Exception as e:
        logger.error(f"Error stopping reservation reaper: {e}", exc_info=True)


app = FastAPI(
    title="Court Booking API",
    description="Court slot booking, stored-credit and gateway payment reconciliation",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware - origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
