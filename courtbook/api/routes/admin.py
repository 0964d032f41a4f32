"""Administrator route handlers: cancellation, in-person payments, reaper."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.db import get_db_session
from courtbook.services import cancellation_service, payment_service
from courtbook.services.connection_registry import ConnectionRegistry
from courtbook.services.exceptions import BookingError
from courtbook.services.notification_service import commit_and_deliver
from courtbook.services.reservation_reaper import ReservationReaper
from courtbook.api.auth_dependencies import get_connection_registry, require_admin
from courtbook.models.schemas import (
    CancelBookingRequest,
    CancelBookingResponse,
    ReaperRunResponse,
    TransactionResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/admin/bookings/{booking_id}/cancel", response_model=CancelBookingResponse)
async def cancel_booking(
    booking_id: int,
    payload: CancelBookingRequest,
    admin: dict = Depends(require_admin),
    registry: Optional[ConnectionRegistry] = Depends(get_connection_registry),
):
    """Cancel a booking and credit its payers by percentage."""
    try:
        result = await cancellation_service.cancel_booking(
            booking_id, payload.refund_percentage, payload.reason, registry=registry
        )
        logger.info(f"Admin {admin['id']} cancelled booking {booking_id}")
        return result
    except BookingError as e:
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"Error cancelling booking {booking_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error cancelling booking: {str(e)}")


@router.post("/api/admin/transactions/{transaction_id}/in-person", response_model=TransactionResponse)
async def record_in_person_payment(
    transaction_id: int,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    registry: Optional[ConnectionRegistry] = Depends(get_connection_registry),
):
    """Settle an in-person transaction after the money was received."""
    try:
        result = await payment_service.record_in_person_payment(session, transaction_id)
        await commit_and_deliver(session, registry)
        logger.info(f"Admin {admin['id']} recorded in-person payment {transaction_id}")
        return result
    except BookingError as e:
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"Error recording in-person payment {transaction_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error recording payment: {str(e)}")


@router.post("/api/admin/reaper/run", response_model=ReaperRunResponse)
async def run_reaper(request: Request, admin: dict = Depends(require_admin)):
    """Run one reservation-reaper sweep now."""
    reaper = getattr(request.app.state, "reservation_reaper", None) or ReservationReaper()
    try:
        return await reaper.sweep()
    except Exception as e:
        logger.error(f"Error running reservation reaper: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error running reaper: {str(e)}")
