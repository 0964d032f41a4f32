"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter) lives here; every sub-router imports what it
needs from this package.
"""

import os

from fastapi import APIRouter, Depends
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.db import get_db_session

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=get_remote_address)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=get_remote_address)

# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from courtbook.api.routes.bookings import router as bookings_router  # noqa: E402
from courtbook.api.routes.payments import router as payments_router  # noqa: E402
from courtbook.api.routes.webhooks import router as webhooks_router  # noqa: E402
from courtbook.api.routes.admin import router as admin_router  # noqa: E402
from courtbook.api.routes.notifications import router as notifications_router  # noqa: E402

router = APIRouter()
router.include_router(bookings_router)
router.include_router(payments_router)
router.include_router(webhooks_router)
router.include_router(admin_router)
router.include_router(notifications_router)


@router.get("/api/health")
async def health_check(session: AsyncSession = Depends(get_db_session)):
    """
    Health check endpoint.

    Returns:
        dict: Service status
    """
    try:
        await session.execute(text("SELECT 1"))
        return {"status": "healthy", "message": "API is running"}
    except Exception as e:
        return {"status": "unhealthy", "message": f"Error: {str(e)}"}
