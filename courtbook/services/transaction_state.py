"""
Transaction lifecycle and the effects of entering each state.

    created ──> authorized ──> captured
       │            │             │
       │            └─────┬───────┘
       │                  v
       ├──> failed     refunded
       └──> abandoned

``created`` is the only entry state. Status is only changed from here, by the
webhook reconciler, the payment settlement paths, the cancellation workflow and
the reservation reaper; API callers never set it directly.

Success effects run once, on the first entry into a success state; a later
``authorized -> captured`` upgrade (or an out-of-order ``authorized`` after
``captured``) does not repeat them.
"""

import logging
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.models import (
    Booking,
    BookingKind,
    BookingSlot,
    NotificationType,
    PlayerPaymentStatus,
    Transaction,
    TransactionStatus,
)
from courtbook.services import chat_service, credit_service, invoice_service, roster
from courtbook.services.exceptions import (
    BookingCancelledError,
    DuplicatePaymentError,
    InvalidTransitionError,
    SeatTakenError,
    SlotUnavailableError,
)
from courtbook.services.notification_service import notify, notify_many
from courtbook.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

CREATED = TransactionStatus.CREATED.value
AUTHORIZED = TransactionStatus.AUTHORIZED.value
CAPTURED = TransactionStatus.CAPTURED.value
FAILED = TransactionStatus.FAILED.value
REFUNDED = TransactionStatus.REFUNDED.value
ABANDONED = TransactionStatus.ABANDONED.value

SUCCESS_STATES: FrozenSet[str] = frozenset({AUTHORIZED, CAPTURED})
TERMINAL_STATES: FrozenSet[str] = frozenset({FAILED, REFUNDED, ABANDONED})

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    CREATED: frozenset({AUTHORIZED, CAPTURED, FAILED, ABANDONED}),
    AUTHORIZED: frozenset({CAPTURED, REFUNDED}),
    CAPTURED: frozenset({REFUNDED}),
    FAILED: frozenset(),
    REFUNDED: frozenset(),
    ABANDONED: frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(txn: Transaction, new_status: str) -> str:
    """
    Move a transaction to ``new_status``.

    Returns:
        The previous status

    Raises:
        InvalidTransitionError: If the move is not in ALLOWED_TRANSITIONS
    """
    previous = txn.status
    if not can_transition(previous, new_status):
        raise InvalidTransitionError(
            f"Transaction {txn.id} cannot move from {previous} to {new_status}",
            details={"transaction_id": txn.id, "from": previous, "to": new_status},
        )
    txn.status = new_status
    logger.info(f"Transaction {txn.id}: {previous} -> {new_status}")
    return previous


async def load_linked_bookings(session: AsyncSession, txn: Transaction) -> List[Booking]:
    booking_ids = txn.booking_ids
    if not booking_ids:
        return []
    result = await session.execute(
        select(Booking).where(Booking.id.in_(booking_ids)).order_by(Booking.id)
    )
    return list(result.scalars().all())


def is_join_payment(txn: Transaction) -> bool:
    """A join payment seats a player into a booking that is already paid."""
    return bool(txn.notes and txn.notes.get("booking_request_id"))


def check_applicable(txn: Transaction, bookings: List[Booking]) -> None:
    """
    Raises:
        BookingCancelledError: If a linked booking was cancelled
        DuplicatePaymentError: If a linked booking is already paid and this
            is not a join payment, or the joining player already paid the seat
        SeatTakenError: If another player holds the seat a join payment is for
    """
    join = is_join_payment(txn)
    notes = txn.notes or {}
    seat = None
    if join and notes.get("requested_team") and notes.get("requested_position"):
        seat = roster.team_slot(notes["requested_team"], notes["requested_position"])
    for booking in bookings:
        if booking.kind == BookingKind.CANCELLED.value:
            raise BookingCancelledError(booking.id)
        if booking.is_paid and not join:
            raise DuplicatePaymentError(booking.id)
        if seat is None:
            continue
        occupant = roster.find_seat(booking, seat)
        if occupant is None or occupant.player_id is None:
            continue
        if occupant.player_id != txn.user_id:
            raise SeatTakenError(
                f"Seat {seat.team}/{seat.position} of booking {booking.id} was taken by another player",
                details={"booking_id": booking.id},
            )
        if occupant.payment_status == PlayerPaymentStatus.PAID.value and occupant.transaction_id != txn.id:
            raise DuplicatePaymentError(booking.id)


async def find_confirmed_conflicts(session: AsyncSession, booking: Booking) -> List[str]:
    """Slots of ``booking`` already confirmed by another booking."""
    wanted = [s.slot for s in booking.slots]
    if not wanted:
        return []
    result = await session.execute(
        select(BookingSlot.slot).where(
            BookingSlot.court_id == booking.court_id,
            BookingSlot.slot_date == booking.booking_date,
            BookingSlot.slot.in_(wanted),
            BookingSlot.is_confirmed == True,  # noqa: E712
            BookingSlot.booking_id != booking.id,
        )
    )
    return sorted(set(result.scalars().all()))


async def confirm_booking(session: AsyncSession, booking: Booking) -> bool:
    """
    Mark a booking paid and confirm its slots.

    The pre-check turns the common conflict into a readable error; the partial
    unique index on confirmed slots still decides races at flush time.

    Returns:
        True if the booking became paid now, False if it already was

    Raises:
        SlotUnavailableError: If another confirmed booking holds one of its slots
    """
    if booking.is_paid:
        return False
    conflicts = await find_confirmed_conflicts(session, booking)
    if conflicts:
        raise SlotUnavailableError(conflicts)

    booking.is_paid = True
    booking.paid_at = utcnow()
    for slot in booking.slots:
        slot.is_confirmed = True
    await invoice_service.assign_invoice_number(session, booking)
    # Surface the unique-index conflict here rather than at commit
    await session.flush()
    logger.info(f"Booking {booking.id} confirmed ({booking.invoice_number})")
    return True


async def apply_success(
    session: AsyncSession,
    txn: Transaction,
    new_status: str = CAPTURED,
    extra_member_ids: Optional[List[int]] = None,
) -> bool:
    """
    Enter a success state and apply its effects.

    Effects (first entry only): deduct held credit, confirm every linked
    booking and assign its invoice, mark paid-for roster entries Paid, ensure
    the booking chat group, notify the booking owner.

    Returns:
        True if effects were applied, False if the transaction was already
        in a success state (status may still be upgraded to captured)

    Raises:
        PaymentNotApplicableError: If a linked booking was cancelled or is
            already paid by another transaction, or the held credit can no
            longer be deducted
        SlotUnavailableError: If another booking confirmed one of the slots
    """
    if txn.status in SUCCESS_STATES:
        if txn.status == AUTHORIZED and new_status == CAPTURED:
            transition(txn, CAPTURED)
        return False

    bookings = await load_linked_bookings(session, txn)
    check_applicable(txn, bookings)

    transition(txn, new_status)
    txn.paid_at = txn.paid_at or utcnow()

    await credit_service.deduct(session, txn)

    for booking in bookings:
        await confirm_booking(session, booking)
        roster.mark_paid(booking, txn.paid_for, txn.id)

    await session.flush()

    for booking in bookings:
        try:
            await chat_service.ensure_booking_group(session, booking, extra_member_ids or ())
        except Exception as e:
            logger.warning(f"Failed to update chat group for booking {booking.id}: {e}")
        notify(
            session,
            booking.owner_user_id,
            NotificationType.PAYMENT_SUCCESS.value,
            "Payment Successful",
            f"Your payment of {txn.amount} {txn.currency} for booking #{booking.id} was successful.",
            data={"booking_id": booking.id, "transaction_id": txn.id},
            link_url=f"/bookings/{booking.id}",
        )
    return True


async def apply_failure(session: AsyncSession, txn: Transaction, reason: Optional[str]) -> bool:
    """
    Record a failed payment and notify the booking owner(s).

    The credit hold is left for the reservation reaper.

    Returns:
        False if the transaction already failed (nothing done)
    """
    if txn.status == FAILED:
        return False
    transition(txn, FAILED)
    txn.failure_reason = reason or "Payment failed"

    bookings = await load_linked_bookings(session, txn)
    owners = [b.owner_user_id for b in bookings] or [txn.user_id]
    notify_many(
        session,
        owners,
        NotificationType.PAYMENT_FAILED.value,
        "Payment Failed",
        f"Your payment of {txn.amount} {txn.currency} failed: {txn.failure_reason}",
        data={"transaction_id": txn.id, "booking_ids": txn.booking_ids},
    )
    return True


async def apply_refund(
    session: AsyncSession, txn: Transaction, refund_id: Optional[str], amount: int
) -> bool:
    """
    Mark a successful payment refunded and notify the booking owner(s).

    Does not reopen slots or change booking kind.

    Returns:
        False if the transaction is already refunded
    """
    if txn.status == REFUNDED:
        return False
    transition(txn, REFUNDED)
    if refund_id:
        txn.refund_id = refund_id
    txn.refunded_amount = amount

    bookings = await load_linked_bookings(session, txn)
    owners = [b.owner_user_id for b in bookings] or [txn.user_id]
    notify_many(
        session,
        owners,
        NotificationType.REFUND_COMPLETED.value,
        "Refund Completed",
        f"Your refund of {amount} {txn.currency} has been processed successfully.",
        data={"transaction_id": txn.id, "refund_id": refund_id},
    )
    return True
