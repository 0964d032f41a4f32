"""Payment initiation and credit route handlers."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.db import get_db_session
from courtbook.services import credit_service, payment_service
from courtbook.services.connection_registry import ConnectionRegistry
from courtbook.services.exceptions import BookingError
from courtbook.services.notification_service import commit_and_deliver
from courtbook.api.auth_dependencies import get_connection_registry, require_user
from courtbook.api.routes import limiter
from courtbook.models.schemas import CreditSummaryResponse, PaymentCreate, TransactionResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/payments", response_model=TransactionResponse, status_code=201)
@limiter.limit("20/minute")
async def initiate_payment(
    request: Request,
    payload: PaymentCreate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
    registry: Optional[ConnectionRegistry] = Depends(get_connection_registry),
):
    """
    Start paying for pending bookings.

    Gateway and combined payments return the gateway order to complete on the
    client; credit payments are settled before the response.
    """
    try:
        result = await payment_service.initiate_payment(
            session,
            user["id"],
            payload.booking_ids,
            payload.method,
            credit_amount=payload.credit_amount,
        )
        await commit_and_deliver(session, registry)
        return result
    except BookingError as e:
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"Error initiating payment: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error initiating payment: {str(e)}")


@router.get("/api/credits", response_model=CreditSummaryResponse)
async def get_credits(
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Stored-credit balance, outstanding holds and spendable amount."""
    try:
        return await credit_service.get_summary(session, user["id"])
    except Exception as e:
        logger.error(f"Error fetching credits: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error fetching credits: {str(e)}")
