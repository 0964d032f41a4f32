"""
Administrative booking cancellation with percentage credit compensation.

Every distinct transaction that funded a seat of the booking is compensated
with ``floor(amount * p / 100)`` stored credit, recorded as a ``refunded``
ledger transaction pointing at the original. All compensations and the
booking update commit together; on a write conflict the whole unit is rolled
back and recomputed from fresh state, so a retry never pays twice.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from courtbook.database import db
from courtbook.database.models import (
    Booking,
    BookingKind,
    NotificationType,
    PaymentMethod,
    PlayerPaymentStatus,
    Transaction,
    TransactionBooking,
    TransactionStatus,
)
from courtbook.services import credit_service, roster, transaction_state
from courtbook.services.connection_registry import ConnectionRegistry
from courtbook.services.exceptions import ConflictError, NotFoundError, ValidationError
from courtbook.services.notification_service import (
    deliver_pending_pushes,
    discard_pending_pushes,
    notify,
    notify_many,
)
from courtbook.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


def prorate(amount: int, percentage: int) -> int:
    """floor(amount * percentage / 100) on integers."""
    return (amount or 0) * percentage // 100


def _validate(booking_id, refund_percentage, reason) -> None:
    if not booking_id:
        raise ValidationError("booking_id is required")
    if refund_percentage is None:
        raise ValidationError("refund_percentage is required")
    if isinstance(refund_percentage, bool) or not isinstance(refund_percentage, int):
        raise ValidationError("refund_percentage must be an integer")
    if refund_percentage < 0 or refund_percentage > 100:
        raise ValidationError("refund_percentage must be between 0 and 100")
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required")


async def _compensate(
    session: AsyncSession, booking: Booking, txn: Transaction, percentage: int, reason: str
) -> int:
    refund = prorate(txn.amount, percentage)
    await credit_service.credit(session, txn.user_id, refund)

    session.add(
        Transaction(
            user_id=txn.user_id,
            parent_transaction_id=txn.id,
            paid_for=list(txn.paid_for or []),
            amount=refund,
            currency=txn.currency,
            status=TransactionStatus.REFUNDED.value,
            method=PaymentMethod.CREDIT.value,
            credit_used=prorate(txn.credit_used, percentage),
            refunded_amount=refund,
            notes={"booking_id": booking.id, "refund_percentage": percentage, "reason": reason},
            booking_links=[TransactionBooking(booking_id=booking.id)],
        )
    )

    txn.refunded_amount = (txn.refunded_amount or 0) + refund
    if refund > 0 and transaction_state.can_transition(txn.status, transaction_state.REFUNDED):
        transaction_state.transition(txn, transaction_state.REFUNDED)

    notify(
        session,
        txn.user_id,
        NotificationType.BOOKING_CANCELLED.value,
        "Booking Cancelled",
        f"Booking #{booking.id} was cancelled: {reason}. {percentage}% ({refund} credits) "
        f"has been added to your balance.",
        data={
            "booking_id": booking.id,
            "transaction_id": txn.id,
            "refund_percentage": percentage,
            "refund": refund,
        },
    )
    return refund


async def _close_open_transactions(session: AsyncSession, booking: Booking) -> List[int]:
    """
    Fail payments still awaiting the gateway for a booking being cancelled.

    Their credit holds are released; a capture that arrives later is refunded
    by the webhook reconciler.
    """
    result = await session.execute(
        select(Transaction)
        .join(TransactionBooking, TransactionBooking.transaction_id == Transaction.id)
        .where(
            TransactionBooking.booking_id == booking.id,
            Transaction.status == transaction_state.CREATED,
        )
        .order_by(Transaction.id)
    )
    closed = []
    for txn in result.scalars().all():
        credit_service.release(txn)
        transaction_state.transition(txn, transaction_state.FAILED)
        txn.failure_reason = "Booking cancelled"
        closed.append(txn.id)
    if closed:
        logger.info(f"Closed open transaction(s) {closed} of cancelled booking {booking.id}")
    return closed


async def _cancel_once(
    session: AsyncSession, booking_id: int, percentage: int, reason: str
) -> Dict:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found", details={"booking_id": booking_id})
    if booking.kind == BookingKind.CANCELLED.value:
        raise ValidationError(f"Booking {booking_id} is already cancelled")

    credited: List[Dict] = []
    payers = []
    total = 0
    for transaction_id in roster.funding_transaction_ids(booking):
        txn = await session.get(Transaction, transaction_id)
        if txn is None:
            logger.warning(f"Funding transaction {transaction_id} of booking {booking_id} is missing")
            continue
        refund = await _compensate(session, booking, txn, percentage, reason)
        credited.append({"transaction_id": txn.id, "user_id": txn.user_id, "refund": refund})
        payers.append(txn.user_id)
        total += refund

    await _close_open_transactions(session, booking)

    for entry in booking.players:
        if entry.payment_status == PlayerPaymentStatus.PAID.value:
            entry.payment_status = PlayerPaymentStatus.REFUNDED.value
        else:
            entry.payment_status = PlayerPaymentStatus.CANCELLED.value
    for slot in booking.slots:
        slot.is_confirmed = False

    booking.kind = BookingKind.CANCELLED.value
    booking.cancellation_reason = reason
    booking.refunded_amount = total
    booking.cancelled_at = utcnow()

    others = [uid for uid in [booking.owner_user_id] + roster.player_ids(booking) if uid not in payers]
    notify_many(
        session,
        others,
        NotificationType.BOOKING_CANCELLED.value,
        "Booking Cancelled",
        f"Booking #{booking.id} was cancelled: {reason}.",
        data={"booking_id": booking.id},
    )
    await session.flush()
    return {
        "booking_id": booking.id,
        "kind": booking.kind,
        "refund_percentage": percentage,
        "reason": reason,
        "refunded_amount": total,
        "refunds": credited,
    }


async def cancel_booking(
    booking_id: int,
    refund_percentage: int,
    reason: str,
    registry: Optional[ConnectionRegistry] = None,
    max_attempts: int = MAX_ATTEMPTS,
) -> Dict:
    """
    Cancel a booking and credit every funding transaction pro rata.

    Runs in its own unit of work and retries it on a write conflict.

    Raises:
        ValidationError: Missing/invalid input or booking already cancelled
        NotFoundError: Unknown booking
        ConflictError: Still conflicting after max_attempts
    """
    _validate(booking_id, refund_percentage, reason)
    reason = str(reason).strip()

    session_factory = db.get_session_factory()
    for attempt in range(1, max_attempts + 1):
        async with session_factory() as session:
            try:
                result = await _cancel_once(session, booking_id, refund_percentage, reason)
                await session.commit()
            except (StaleDataError, IntegrityError) as e:
                await session.rollback()
                discard_pending_pushes(session)
                logger.warning(
                    f"Conflict cancelling booking {booking_id} (attempt {attempt}/{max_attempts}): {e}"
                )
                continue
            except Exception:
                await session.rollback()
                discard_pending_pushes(session)
                raise
            await deliver_pending_pushes(session, registry)
            logger.info(
                f"Cancelled booking {booking_id} at {refund_percentage}%: "
                f"credited {result['refunded_amount']} across {len(result['refunds'])} transaction(s)"
            )
            return result

    raise ConflictError(
        f"Booking {booking_id} changed concurrently; cancellation not applied",
        details={"booking_id": booking_id},
    )
