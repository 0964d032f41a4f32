"""Booking and join-request route handlers."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.db import get_db_session
from courtbook.services import booking_request_service, booking_service, payment_service
from courtbook.services.connection_registry import ConnectionRegistry
from courtbook.services.exceptions import BookingError
from courtbook.services.notification_service import commit_and_deliver
from courtbook.api.auth_dependencies import get_connection_registry, require_user
from courtbook.api.routes import limiter
from courtbook.models.schemas import (
    BookingCreate,
    BookingResponse,
    JoinRequestCreate,
    JoinRequestPayment,
    JoinRequestRespond,
    JoinRequestResponse,
    TransactionResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/bookings", response_model=BookingResponse, status_code=201)
@limiter.limit("30/minute")
async def create_booking(
    request: Request,
    payload: BookingCreate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Create a pending (unpaid) booking."""
    try:
        booking = await booking_service.create_booking(
            session,
            owner_user_id=user["id"],
            venue_id=payload.venue_id,
            court_id=payload.court_id,
            booking_date=payload.date,
            slots=payload.slots,
            team1=payload.team1,
            team2=payload.team2,
            game_type=payload.game_type,
            ask_to_join=payload.ask_to_join,
            is_competitive=payload.is_competitive,
            skill_required=payload.skill_required,
        )
        await session.commit()
        return booking_service.booking_to_dict(booking)
    except BookingError as e:
        raise e.to_http_exception()
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating booking: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error creating booking: {str(e)}")


@router.get("/api/bookings", response_model=List[BookingResponse])
async def list_my_bookings(
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Bookings the caller owns or plays in."""
    try:
        bookings = await booking_service.list_user_bookings(session, user["id"])
        return [booking_service.booking_to_dict(b) for b in bookings]
    except Exception as e:
        logger.error(f"Error listing bookings: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error listing bookings: {str(e)}")


@router.get("/api/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a booking with its slots and roster."""
    try:
        booking = await booking_service.get_booking(session, booking_id)
        return booking_service.booking_to_dict(booking)
    except BookingError as e:
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"Error fetching booking {booking_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error fetching booking: {str(e)}")


@router.post(
    "/api/bookings/{booking_id}/join-requests",
    response_model=JoinRequestResponse,
    status_code=201,
)
async def create_join_request(
    booking_id: int,
    payload: JoinRequestCreate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
    registry: Optional[ConnectionRegistry] = Depends(get_connection_registry),
):
    """Ask to join an open seat of a public booking."""
    try:
        join_request = await booking_request_service.create_request(
            session,
            user["id"],
            booking_id,
            payload.requested_team,
            payload.requested_position,
            rented_rackets=payload.rented_rackets,
            rented_balls=payload.rented_balls,
        )
        result = booking_request_service.request_to_dict(join_request)
        await commit_and_deliver(session, registry)
        return result
    except BookingError as e:
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"Error creating join request for booking {booking_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error creating join request: {str(e)}")


@router.post("/api/join-requests/{request_id}/respond", response_model=JoinRequestResponse)
async def respond_to_join_request(
    request_id: int,
    payload: JoinRequestRespond,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
    registry: Optional[ConnectionRegistry] = Depends(get_connection_registry),
):
    """Booking owner accepts or rejects a pending join request."""
    try:
        join_request = await booking_request_service.respond_to_request(
            session, user["id"], request_id, payload.accept
        )
        result = booking_request_service.request_to_dict(join_request)
        await commit_and_deliver(session, registry)
        return result
    except BookingError as e:
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"Error responding to join request {request_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error responding to join request: {str(e)}")


@router.post("/api/join-requests/{request_id}/pay", response_model=TransactionResponse)
@limiter.limit("20/minute")
async def pay_join_request(
    request: Request,
    request_id: int,
    payload: JoinRequestPayment,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
    registry: Optional[ConnectionRegistry] = Depends(get_connection_registry),
):
    """Open the payment for an accepted join request."""
    try:
        txn = await booking_request_service.pay_request(
            session, user["id"], request_id, payload.method, credit_amount=payload.credit_amount
        )
        result = payment_service.transaction_to_dict(txn)
        await commit_and_deliver(session, registry)
        return result
    except BookingError as e:
        raise e.to_http_exception()
    except Exception as e:
        logger.error(f"Error paying join request {request_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error paying join request: {str(e)}")
