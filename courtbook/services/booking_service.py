"""
Slot ledger: validates and creates pending bookings.

A booking holds one or two slots of a venue's daily schedule on one court and
date. It is created unpaid; its slots become confirmed only when a payment
succeeds (see transaction_state.confirm_booking), and the partial unique index
on confirmed slots guarantees no two confirmed bookings overlap.
"""

import logging
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.models import (
    Booking,
    BookingKind,
    BookingPlayer,
    BookingSlot,
    Court,
    GameType,
    PaidBy,
    PlayerPaymentStatus,
    Venue,
)
from courtbook.services import pricing_service, roster
from courtbook.services.exceptions import (
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from courtbook.utils.constants import (
    MAX_PLAYERS_PER_TEAM,
    MAX_SLOTS_PER_BOOKING,
    MAX_TOTAL_PLAYERS,
    MIN_TOTAL_PLAYERS,
    VENUE_TIME_SLOTS,
)
from courtbook.utils.datetime_utils import parse_slot_time, venue_local_now

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_venue(session: AsyncSession, venue_id: int) -> Optional[Venue]:
    return await session.get(Venue, venue_id)


async def get_court(session: AsyncSession, court_id: int) -> Optional[Court]:
    return await session.get(Court, court_id)


def venue_schedule(venue: Optional[Venue]) -> List[str]:
    """The venue's configured daily slots, or the default schedule."""
    if venue is not None and venue.time_slots:
        return list(venue.time_slots)
    return list(VENUE_TIME_SLOTS)


async def get_confirmed_slots(
    session: AsyncSession, court_id: int, day: date, slots: Sequence[str]
) -> List[str]:
    """Requested slots already held by a paid, non-cancelled booking."""
    result = await session.execute(
        select(BookingSlot.slot)
        .join(Booking, Booking.id == BookingSlot.booking_id)
        .where(
            BookingSlot.court_id == court_id,
            BookingSlot.slot_date == day,
            BookingSlot.slot.in_(list(slots)),
            BookingSlot.is_confirmed == True,  # noqa: E712
            Booking.is_paid == True,  # noqa: E712
            Booking.kind != BookingKind.CANCELLED.value,
        )
    )
    return sorted(set(result.scalars().all()))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _validate_date_and_times(day: date, slots: Sequence[str], local_now: datetime) -> None:
    today = local_now.date()
    if day < today:
        raise ValidationError(
            f"Cannot book a date in the past ({day.isoformat()})",
            details={"date": day.isoformat(), "today": today.isoformat()},
        )
    if day == today:
        current = local_now.time().replace(tzinfo=None)
        past = []
        for slot in slots:
            try:
                start = parse_slot_time(slot)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid slot: {slot!r}")
            if start <= current:
                past.append(slot)
        if past:
            raise ValidationError(
                f"Slot(s) already started: {', '.join(sorted(past))}",
                details={"slots": sorted(past)},
            )


def _validate_slot_set(slots: Sequence[str], schedule: Sequence[str]) -> None:
    if len(set(slots)) != len(slots):
        raise ValidationError("Duplicate slots in request")
    if len(slots) > MAX_SLOTS_PER_BOOKING:
        raise ValidationError(f"At most {MAX_SLOTS_PER_BOOKING} slots can be booked at once")
    invalid = [s for s in slots if s not in schedule]
    if invalid:
        raise ValidationError(
            f"Slot(s) not in the venue schedule: {', '.join(invalid)}",
            details={"slots": invalid, "allowed": list(schedule)},
        )


def _validate_teams(team1: Sequence[Optional[int]], team2: Sequence[Optional[int]]) -> None:
    if len(team1) > MAX_PLAYERS_PER_TEAM or len(team2) > MAX_PLAYERS_PER_TEAM:
        raise ValidationError(f"Each team can have at most {MAX_PLAYERS_PER_TEAM} players")
    total = len(team1) + len(team2)
    if total < MIN_TOTAL_PLAYERS or total > MAX_TOTAL_PLAYERS:
        raise ValidationError(
            f"A booking needs between {MIN_TOTAL_PLAYERS} and {MAX_TOTAL_PLAYERS} players",
            details={"players": total},
        )
    real = [p for p in list(team1) + list(team2) if p is not None]
    if len(set(real)) != len(real):
        raise ValidationError("A player can only hold one position")


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


async def create_booking(
    session: AsyncSession,
    owner_user_id: int,
    venue_id: int,
    court_id: int,
    booking_date: date,
    slots: Sequence[str],
    team1: Sequence[Optional[int]],
    team2: Sequence[Optional[int]] = (),
    game_type: str = GameType.PRIVATE.value,
    ask_to_join: bool = False,
    is_competitive: bool = False,
    skill_required: int = 0,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Validate a booking request and persist it as pending (unpaid).

    Checks run in this order and all complete before anything is written:
    required fields; date not in the past (venue-local); same-day slots start
    after the current local time; slots unique and at most two; slots in the
    venue schedule; venue active; court active and at the venue; no confirmed
    booking overlaps; team sizes.

    ``None`` entries in a team are placeholder seats that a join request can
    later fill.

    Raises:
        ValidationError: Bad input
        NotFoundError: Venue or court missing/inactive
        SlotUnavailableError: A confirmed booking already holds a slot
    """
    if not owner_user_id:
        raise ValidationError("owner_user_id is required")
    if not venue_id or not court_id:
        raise ValidationError("venue_id and court_id are required")
    if booking_date is None:
        raise ValidationError("date is required")
    if not slots:
        raise ValidationError("At least one slot is required")
    if game_type not in (GameType.PUBLIC.value, GameType.PRIVATE.value):
        raise ValidationError(f"Invalid game type: {game_type!r}")
    slots = list(slots)
    team1 = list(team1 or [])
    team2 = list(team2 or [])

    # The venue calendar decides "today"; existence is reported further down
    venue = await get_venue(session, venue_id)
    local_now = venue_local_now(venue.timezone if venue else None, now)
    _validate_date_and_times(booking_date, slots, local_now)
    _validate_slot_set(slots, venue_schedule(venue))

    if venue is None or not venue.is_active:
        raise NotFoundError(f"Venue {venue_id} not found", details={"venue_id": venue_id})

    court = await get_court(session, court_id)
    if court is None or not court.is_active:
        raise NotFoundError(f"Court {court_id} not found", details={"court_id": court_id})
    if court.venue_id != venue.id:
        raise NotFoundError(
            f"Court {court_id} does not belong to venue {venue_id}",
            details={"court_id": court_id, "venue_id": venue_id},
        )

    taken = await get_confirmed_slots(session, court.id, booking_date, slots)
    if taken:
        raise SlotUnavailableError(taken)

    _validate_teams(team1, team2)

    pricing = await pricing_service.get_booking_price(session, court, booking_date, slots)
    amount = pricing["total"]
    share = amount // MAX_TOTAL_PLAYERS

    booking = Booking(
        owner_user_id=owner_user_id,
        venue_id=venue.id,
        court_id=court.id,
        booking_date=booking_date,
        game_type=game_type,
        ask_to_join=ask_to_join,
        is_competitive=is_competitive,
        skill_required=skill_required or 0,
        kind=BookingKind.BOOKING.value,
        is_paid=False,
        amount=amount,
        refunded_amount=0,
        slots=[
            BookingSlot(court_id=court.id, slot_date=booking_date, slot=slot, is_confirmed=False)
            for slot in sorted(slots)
        ],
        players=[],
    )
    for team, members in ((1, team1), (2, team2)):
        for seat in roster.seats_for_team(team, members):
            booking.players.append(
                BookingPlayer(
                    team=seat["team"],
                    position=seat["position"],
                    player_id=seat["player_id"],
                    payment_status=PlayerPaymentStatus.PENDING.value,
                    paid_by=PaidBy.SELF.value
                    if seat["player_id"] == owner_user_id
                    else PaidBy.USER.value,
                    player_payment=share,
                )
            )

    session.add(booking)
    await session.flush()
    logger.info(
        f"Created pending booking {booking.id} on court {court.id} {booking_date} "
        f"slots {sorted(slots)} for user {owner_user_id} (amount {amount})"
    )
    return booking


async def get_booking(session: AsyncSession, booking_id: int) -> Booking:
    """
    Raises:
        NotFoundError: If the booking does not exist
    """
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", details={"booking_id": booking_id})
    return booking


async def list_user_bookings(session: AsyncSession, user_id: int) -> List[Booking]:
    """Bookings the user owns or plays in, newest date first."""
    in_roster = select(BookingPlayer.booking_id).where(BookingPlayer.player_id == user_id)
    result = await session.execute(
        select(Booking)
        .where(or_(Booking.owner_user_id == user_id, Booking.id.in_(in_roster)))
        .order_by(Booking.booking_date.desc(), Booking.id.desc())
    )
    return list(result.scalars().all())


def booking_to_dict(booking: Booking) -> Dict:
    return {
        "id": booking.id,
        "owner_user_id": booking.owner_user_id,
        "venue_id": booking.venue_id,
        "court_id": booking.court_id,
        "date": booking.booking_date.isoformat(),
        "slots": [s.slot for s in booking.slots],
        "game_type": booking.game_type,
        "ask_to_join": booking.ask_to_join,
        "is_competitive": booking.is_competitive,
        "skill_required": booking.skill_required,
        "kind": booking.kind,
        "is_paid": booking.is_paid,
        "amount": booking.amount,
        "invoice_number": booking.invoice_number,
        "cancellation_reason": booking.cancellation_reason,
        "refunded_amount": booking.refunded_amount,
        "players": [
            {
                "team": p.team,
                "position": p.position,
                "player_id": p.player_id,
                "payment_status": p.payment_status,
                "paid_by": p.paid_by,
                "player_payment": p.player_payment,
                "transaction_id": p.transaction_id,
                "rackets": p.rackets,
                "balls": p.balls,
            }
            for p in sorted(booking.players, key=lambda p: (p.team, p.position))
        ],
    }
