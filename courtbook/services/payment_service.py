"""
Payment initiation and local settlement.

A payment always starts as a ``created`` transaction. The credit portion is
held through credit_service.reserve in the same unit of work; the remainder,
if any, is charged through a gateway order and settled later by the webhook
reconciler. Credit-only payments have no external leg and settle
immediately; in-person payments settle when an administrator records them.
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.models import (
    Booking,
    BookingKind,
    PaymentMethod,
    Transaction,
    TransactionBooking,
    TransactionStatus,
)
from courtbook.services import credit_service, roster, transaction_state
from courtbook.services.booking_request_service import complete_join_for_transaction
from courtbook.services.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from courtbook.services.gateway import GATEWAY_KEY_ID, PaymentGateway, get_gateway
from courtbook.utils.constants import DEFAULT_CURRENCY, MINOR_UNITS_PER_MAJOR

logger = logging.getLogger(__name__)

VALID_METHODS = {m.value for m in PaymentMethod}


def split_amount(method: str, total: int, credit_amount: Optional[int]) -> int:
    """
    Credit portion of a payment for a method.

    Raises:
        ValidationError: Unknown method or an impossible split
    """
    if method not in VALID_METHODS:
        raise ValidationError(
            f"Invalid payment method: {method!r}", details={"allowed": sorted(VALID_METHODS)}
        )
    if total <= 0:
        raise ValidationError("Nothing to pay")
    if method == PaymentMethod.CREDIT.value:
        return total
    if method == PaymentMethod.COMBINED.value:
        if credit_amount is None or credit_amount <= 0 or credit_amount >= total:
            raise ValidationError(
                "A combined payment needs a credit amount between 1 and the total minus 1",
                details={"total": total, "credit_amount": credit_amount},
            )
        return credit_amount
    return 0


SUPERSEDED_REASON = "Superseded by a new payment attempt"


async def supersede_open_transactions(
    session: AsyncSession, user_id: int, bookings: List[Booking], notes: Optional[Dict] = None
) -> List[int]:
    """
    Fail the user's earlier ``created`` attempts at the same payment.

    A booking payment supersedes open booking payments for any of the same
    bookings; a join payment supersedes open payments for the same join
    request. Released holds free the credit for the new attempt, and a capture
    that still arrives for a superseded order is refunded by the webhook
    reconciler.

    Returns:
        Ids of the transactions failed
    """
    if not bookings:
        return []
    request_id = (notes or {}).get("booking_request_id")
    result = await session.execute(
        select(Transaction)
        .join(TransactionBooking, TransactionBooking.transaction_id == Transaction.id)
        .where(
            Transaction.user_id == user_id,
            Transaction.status == TransactionStatus.CREATED.value,
            TransactionBooking.booking_id.in_([b.id for b in bookings]),
        )
        .order_by(Transaction.id)
    )
    superseded = []
    for txn in dict.fromkeys(result.scalars().all()):
        if (txn.notes or {}).get("booking_request_id") != request_id:
            continue
        credit_service.release(txn)
        transaction_state.transition(txn, transaction_state.FAILED)
        txn.failure_reason = SUPERSEDED_REASON
        superseded.append(txn.id)
    if superseded:
        logger.info(f"Superseded open transaction(s) {superseded} of user {user_id}")
    return superseded


async def open_transaction(
    session: AsyncSession,
    user_id: int,
    bookings: List[Booking],
    amount: int,
    method: str,
    credit_amount: Optional[int] = None,
    paid_for: Optional[Iterable[int]] = None,
    notes: Optional[Dict] = None,
    gateway: Optional[PaymentGateway] = None,
) -> Transaction:
    """
    Create a ``created`` transaction, hold its credit and open the gateway
    order for the remainder. Credit-only payments are settled before return.

    Raises:
        ValidationError / InsufficientCreditError: Bad split or not enough credit
        GatewayError: The gateway refused the order
        SlotUnavailableError: A credit-only payment lost its slot
    """
    credit_used = split_amount(method, amount, credit_amount)
    await supersede_open_transactions(session, user_id, bookings, notes)

    txn = Transaction(
        user_id=user_id,
        amount=amount,
        currency=DEFAULT_CURRENCY,
        status=TransactionStatus.CREATED.value,
        method=method,
        credit_used=0,
        credit_reserved=False,
        credit_deducted=False,
        paid_for=list(dict.fromkeys(paid_for or [])),
        notes=dict(notes or {}),
        booking_links=[TransactionBooking(booking_id=b.id) for b in bookings],
    )
    session.add(txn)
    await session.flush()

    await credit_service.reserve(session, txn, credit_used)

    remainder = amount - credit_used
    if method in (PaymentMethod.GATEWAY.value, PaymentMethod.COMBINED.value):
        gateway = gateway or get_gateway()
        order = await gateway.create_order(
            remainder * MINOR_UNITS_PER_MAJOR,
            receipt=f"txn_{txn.id}",
            notes={"transaction_id": txn.id, **txn.notes},
        )
        txn.gateway_order_id = order["id"]

    await session.flush()
    logger.info(
        f"Opened {method} transaction {txn.id} for user {user_id}: amount {amount}, "
        f"credit {credit_used}, bookings {[b.id for b in bookings]}"
    )

    if method == PaymentMethod.CREDIT.value:
        await settle_transaction(session, txn)
    return txn


async def _load_payable_bookings(
    session: AsyncSession, user_id: int, booking_ids: List[int]
) -> List[Booking]:
    if not booking_ids:
        raise ValidationError("At least one booking is required")
    unique_ids = list(dict.fromkeys(booking_ids))
    result = await session.execute(select(Booking).where(Booking.id.in_(unique_ids)))
    bookings = {b.id: b for b in result.scalars().all()}

    missing = [bid for bid in unique_ids if bid not in bookings]
    if missing:
        raise NotFoundError(f"Booking(s) not found: {missing}", details={"booking_ids": missing})
    ordered = [bookings[bid] for bid in unique_ids]
    for booking in ordered:
        if booking.owner_user_id != user_id:
            raise ValidationError(f"Booking {booking.id} does not belong to you")
        if booking.kind == BookingKind.CANCELLED.value:
            raise ValidationError(f"Booking {booking.id} is cancelled")
        if booking.is_paid:
            raise ValidationError(f"Booking {booking.id} is already paid")
    return ordered


async def initiate_payment(
    session: AsyncSession,
    user_id: int,
    booking_ids: List[int],
    method: str,
    credit_amount: Optional[int] = None,
    gateway: Optional[PaymentGateway] = None,
) -> Dict:
    """
    Start paying for the caller's pending bookings.

    The transaction covers every real player on the rosters.
    """
    bookings = await _load_payable_bookings(session, user_id, booking_ids)
    total = sum(b.amount for b in bookings)
    paid_for = [pid for b in bookings for pid in roster.player_ids(b)]
    txn = await open_transaction(
        session,
        user_id,
        bookings,
        total,
        method,
        credit_amount=credit_amount,
        paid_for=paid_for,
        gateway=gateway,
    )
    return transaction_to_dict(txn)


async def settle_transaction(
    session: AsyncSession, txn: Transaction, new_status: str = transaction_state.CAPTURED
) -> bool:
    """
    Success path shared by webhooks, credit-only and in-person payments.

    Returns:
        True if the success effects were applied by this call
    """
    join_member = [txn.user_id] if transaction_state.is_join_payment(txn) else None
    applied = await transaction_state.apply_success(
        session, txn, new_status, extra_member_ids=join_member
    )
    if applied:
        await complete_join_for_transaction(session, txn)
    return applied


async def get_transaction(session: AsyncSession, transaction_id: int) -> Transaction:
    txn = await session.get(Transaction, transaction_id)
    if txn is None:
        raise NotFoundError(
            f"Transaction {transaction_id} not found", details={"transaction_id": transaction_id}
        )
    return txn


async def record_in_person_payment(session: AsyncSession, transaction_id: int) -> Dict:
    """
    Settle an in-person transaction once an administrator received the money.

    Raises:
        NotFoundError: Unknown transaction
        ValidationError: Not an in-person transaction
        InvalidTransitionError: Not in ``created``
    """
    txn = await get_transaction(session, transaction_id)
    if txn.method != PaymentMethod.IN_PERSON.value:
        raise ValidationError(f"Transaction {transaction_id} is not an in-person payment")
    if txn.status != TransactionStatus.CREATED.value:
        raise InvalidTransitionError(
            f"Transaction {transaction_id} is already {txn.status}",
            details={"transaction_id": transaction_id, "status": txn.status},
        )
    await settle_transaction(session, txn)
    return transaction_to_dict(txn)


def transaction_to_dict(txn: Transaction) -> Dict:
    remainder = txn.amount - (txn.credit_used or 0)
    return {
        "id": txn.id,
        "user_id": txn.user_id,
        "booking_ids": txn.booking_ids,
        "paid_for": txn.paid_for or [],
        "amount": txn.amount,
        "currency": txn.currency,
        "status": txn.status,
        "method": txn.method,
        "credit_used": txn.credit_used,
        "credit_reserved": txn.credit_reserved,
        "credit_deducted": txn.credit_deducted,
        "gateway_order_id": txn.gateway_order_id,
        "gateway_payment_id": txn.gateway_payment_id,
        "gateway_amount_minor": remainder * MINOR_UNITS_PER_MAJOR if txn.gateway_order_id else 0,
        "gateway_key_id": GATEWAY_KEY_ID if txn.gateway_order_id else None,
        "refunded_amount": txn.refunded_amount,
        "failure_reason": txn.failure_reason,
        "notes": txn.notes or {},
    }
