"""
Join requests for open seats of public bookings.

A request targets one (team, position) seat. Owners of ``ask_to_join``
bookings accept or reject requests; otherwise a request is payable right
away. Paying opens a transaction whose notes carry the seat, and the
joining player is seated when that transaction succeeds.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.models import (
    Booking,
    BookingKind,
    BookingRequest,
    BookingRequestStatus,
    GameType,
    NotificationType,
    PaidBy,
    PlayerPaymentStatus,
    Transaction,
)
from courtbook.services import roster
from courtbook.services.exceptions import NotFoundError, ValidationError
from courtbook.services.gateway import PaymentGateway
from courtbook.services.notification_service import notify
from courtbook.utils.constants import BALL_RENT_PRICE, MAX_TOTAL_PLAYERS, RACKET_RENT_PRICE

logger = logging.getLogger(__name__)

OPEN_STATUSES = (BookingRequestStatus.PENDING.value, BookingRequestStatus.ACCEPTED.value)


def player_share(booking: Booking, rackets: int = 0, balls: int = 0) -> int:
    """Seat price for a joining player: an even share of the court plus rentals."""
    return booking.amount // MAX_TOTAL_PLAYERS + rackets * RACKET_RENT_PRICE + balls * BALL_RENT_PRICE


async def get_request(session: AsyncSession, request_id: int) -> BookingRequest:
    request = await session.get(BookingRequest, request_id)
    if request is None:
        raise NotFoundError(f"Join request {request_id} not found", details={"request_id": request_id})
    return request


async def _get_booking(session: AsyncSession, booking_id: int) -> Booking:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", details={"booking_id": booking_id})
    return booking


def _ensure_joinable(booking: Booking, user_id: int, seat: roster.TeamSlot) -> None:
    if booking.kind == BookingKind.CANCELLED.value:
        raise ValidationError("Cannot join a cancelled booking")
    if booking.game_type != GameType.PUBLIC.value:
        raise ValidationError("Cannot join private bookings")
    if not booking.is_paid:
        raise ValidationError("Cannot join a booking that is not confirmed yet")
    if user_id == booking.owner_user_id or user_id in roster.player_ids(booking):
        raise ValidationError("You are already part of this booking")
    if roster.seat_is_taken(booking, seat):
        raise ValidationError(
            "Position already taken", details={"team": seat.team, "position": seat.position}
        )


async def create_request(
    session: AsyncSession,
    user_id: int,
    booking_id: int,
    team,
    position: str,
    rented_rackets: int = 0,
    rented_balls: int = 0,
) -> BookingRequest:
    """
    Ask to join a seat.

    Raises:
        NotFoundError: Unknown booking
        ValidationError: Booking not joinable, seat taken, or an open request exists
    """
    if rented_rackets < 0 or rented_balls < 0:
        raise ValidationError("Rental counts cannot be negative")
    seat = roster.team_slot(team, position)
    booking = await _get_booking(session, booking_id)
    _ensure_joinable(booking, user_id, seat)

    result = await session.execute(
        select(BookingRequest).where(
            and_(
                BookingRequest.booking_id == booking.id,
                BookingRequest.requested_by == user_id,
                BookingRequest.requested_position == seat.position,
            )
        )
    )
    request = result.scalar_one_or_none()
    if request is not None and request.status in OPEN_STATUSES:
        raise ValidationError("You have already requested this position")

    status = (
        BookingRequestStatus.PENDING.value if booking.ask_to_join else BookingRequestStatus.ACCEPTED.value
    )
    if request is None:
        request = BookingRequest(booking_id=booking.id, requested_by=user_id)
        session.add(request)
    request.requested_team = seat.team
    request.requested_position = seat.position
    request.rented_rackets = rented_rackets
    request.rented_balls = rented_balls
    request.player_payment = player_share(booking, rented_rackets, rented_balls)
    request.status = status
    request.transaction_id = None
    await session.flush()

    notify(
        session,
        booking.owner_user_id,
        NotificationType.JOIN_REQUEST.value,
        "New Join Request",
        f"A player asked to join booking #{booking.id} as {seat.position}.",
        data={"booking_id": booking.id, "request_id": request.id},
        link_url=f"/bookings/{booking.id}",
    )
    logger.info(
        f"User {user_id} requested {seat.team}/{seat.position} on booking {booking.id} ({status})"
    )
    return request


async def respond_to_request(
    session: AsyncSession, owner_user_id: int, request_id: int, accept: bool
) -> BookingRequest:
    """
    Owner accepts or rejects a pending request.

    Raises:
        NotFoundError: Unknown request
        ValidationError: Caller is not the owner or the request is not pending
    """
    request = await get_request(session, request_id)
    booking = await _get_booking(session, request.booking_id)
    if booking.owner_user_id != owner_user_id:
        raise ValidationError("Only the booking owner can respond to join requests")
    if request.status != BookingRequestStatus.PENDING.value:
        raise ValidationError(f"Join request is already {request.status}")

    if accept:
        request.status = BookingRequestStatus.ACCEPTED.value
        notify(
            session,
            request.requested_by,
            NotificationType.JOIN_REQUEST_ACCEPTED.value,
            "Join Request Accepted",
            f"Your request to join booking #{booking.id} was accepted. Complete the payment to take your seat.",
            data={"booking_id": booking.id, "request_id": request.id},
        )
    else:
        request.status = BookingRequestStatus.REJECTED.value
        notify(
            session,
            request.requested_by,
            NotificationType.JOIN_REQUEST_REJECTED.value,
            "Join Request Rejected",
            f"Your request to join booking #{booking.id} was rejected.",
            data={"booking_id": booking.id, "request_id": request.id},
        )
    await session.flush()
    return request


async def pay_request(
    session: AsyncSession,
    user_id: int,
    request_id: int,
    method: str,
    credit_amount: Optional[int] = None,
    gateway: Optional[PaymentGateway] = None,
) -> Transaction:
    """Open the payment for an accepted join request."""
    from courtbook.services.payment_service import open_transaction

    request = await get_request(session, request_id)
    if request.requested_by != user_id:
        raise ValidationError("This join request belongs to another user")
    if request.status != BookingRequestStatus.ACCEPTED.value:
        raise ValidationError(f"Join request is {request.status}, not accepted")
    booking = await _get_booking(session, request.booking_id)
    seat = roster.team_slot(request.requested_team, request.requested_position)
    _ensure_joinable(booking, user_id, seat)

    txn = await open_transaction(
        session,
        user_id,
        [booking],
        request.player_payment,
        method,
        credit_amount=credit_amount,
        paid_for=[user_id],
        notes={
            "booking_request_id": request.id,
            "requested_team": seat.team,
            "requested_position": seat.position,
            "rented_rackets": request.rented_rackets,
            "rented_balls": request.rented_balls,
        },
        gateway=gateway,
    )
    # Points at the latest attempt; earlier open attempts were superseded
    request.transaction_id = txn.id
    await session.flush()
    return txn


async def _find_open_request(session: AsyncSession, booking_id: int, txn: Transaction) -> Optional[BookingRequest]:
    notes = txn.notes or {}
    request_id = notes.get("booking_request_id")
    if request_id:
        request = await session.get(BookingRequest, int(request_id))
        if request is not None and request.status in OPEN_STATUSES:
            return request
    result = await session.execute(
        select(BookingRequest).where(
            and_(
                BookingRequest.booking_id == booking_id,
                BookingRequest.requested_by == txn.user_id,
                BookingRequest.requested_position == notes.get("requested_position"),
                BookingRequest.status.in_(OPEN_STATUSES),
            )
        )
    )
    return result.scalars().first()


async def complete_join_for_transaction(session: AsyncSession, txn: Transaction) -> List[int]:
    """
    Seat the joining player of a successful join payment.

    Does nothing unless the transaction notes name a team and position. The
    player is upserted into that exact seat, replacing a placeholder.

    Returns:
        Ids of the bookings the player was seated in
    """
    notes = txn.notes or {}
    if not notes.get("requested_team") or not notes.get("requested_position"):
        return []
    seat = roster.team_slot(notes["requested_team"], notes["requested_position"])

    seated = []
    for booking_id in txn.booking_ids:
        booking = await session.get(Booking, booking_id)
        if booking is None:
            continue
        occupant = roster.find_seat(booking, seat)
        if occupant is not None and occupant.player_id not in (None, txn.user_id):
            logger.warning(
                f"Seat {seat.team}/{seat.position} of booking {booking.id} is held by "
                f"player {occupant.player_id}; not seating user {txn.user_id}"
            )
            continue

        request = await _find_open_request(session, booking.id, txn)
        if request is not None:
            request.status = BookingRequestStatus.COMPLETED.value
            request.transaction_id = txn.id
        else:
            logger.warning(f"No open join request for transaction {txn.id} on booking {booking.id}")

        roster.upsert_seat(
            booking,
            seat,
            txn.user_id,
            payment_status=PlayerPaymentStatus.PAID.value,
            paid_by=PaidBy.SELF.value,
            player_payment=txn.amount,
            transaction_id=txn.id,
            rackets=int(notes.get("rented_rackets") or 0),
            balls=int(notes.get("rented_balls") or 0),
        )
        seated.append(booking.id)

        notify(
            session,
            txn.user_id,
            NotificationType.JOIN_COMPLETED.value,
            "You're In",
            f"You joined booking #{booking.id} as {seat.position}.",
            data={"booking_id": booking.id, "transaction_id": txn.id},
            link_url=f"/bookings/{booking.id}",
        )
        notify(
            session,
            booking.owner_user_id,
            NotificationType.PLAYER_JOINED.value,
            "Player Joined",
            f"A player joined booking #{booking.id} as {seat.position}.",
            data={"booking_id": booking.id, "player_id": txn.user_id},
            link_url=f"/bookings/{booking.id}",
        )
        logger.info(f"Seated user {txn.user_id} at {seat.team}/{seat.position} of booking {booking.id}")

    await session.flush()
    return seated


def request_to_dict(request: BookingRequest) -> Dict:
    return {
        "id": request.id,
        "booking_id": request.booking_id,
        "requested_by": request.requested_by,
        "requested_team": request.requested_team,
        "requested_position": request.requested_position,
        "status": request.status,
        "rented_rackets": request.rented_rackets,
        "rented_balls": request.rented_balls,
        "player_payment": request.player_payment,
        "transaction_id": request.transaction_id,
    }
