"""
Gateway webhook reconciler.

Every delivery is authenticated with an HMAC-SHA256 of the raw body, parsed
into one event type, and applied in its own unit of work. Deliveries are
at-least-once and may be duplicated or reordered, so:

- a transaction already verified with the same payment id is acknowledged
  without reapplying anything;
- unknown orders/payments are acknowledged so the gateway stops retrying;
- a write conflict with a concurrent delivery rolls back this delivery and is
  acknowledged, since the other delivery produced the effect.

A capture that cannot be honored is marked failed with the cause as its
reason and its credit hold is released; the owner is notified and a gateway
refund of the captured amount is requested. That covers a slot meanwhile
confirmed by another booking, a booking cancelled or already paid by another
transaction, and a capture arriving after its transaction failed or was
abandoned.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from courtbook.database import db
from courtbook.database.models import NotificationType, Transaction
from courtbook.services import credit_service, transaction_state
from courtbook.services.connection_registry import ConnectionRegistry
from courtbook.services.exceptions import (
    AuthenticationError,
    InvalidTransitionError,
    PaymentNotApplicableError,
    SlotUnavailableError,
    ValidationError,
)
from courtbook.services.gateway import PaymentGateway, get_gateway, verify_signature
from courtbook.services.notification_service import (
    commit_and_deliver,
    discard_pending_pushes,
    notify_many,
)
from courtbook.services.payment_service import settle_transaction
from courtbook.utils.constants import MINOR_UNITS_PER_MAJOR
from courtbook.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS_EVENTS = {"payment.captured": "captured", "payment.authorized": "authorized"}
PAYMENT_FAILED_EVENT = "payment.failed"
REFUND_EVENTS = {"refund.created", "refund.processed", "refund.failed"}


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentSucceeded:
    event: str
    order_id: str
    payment_id: str
    amount_minor: int

    @property
    def status(self) -> str:
        return PAYMENT_SUCCESS_EVENTS[self.event]


@dataclass(frozen=True)
class PaymentFailed:
    order_id: str
    payment_id: Optional[str]
    amount_minor: int
    error_description: Optional[str]


@dataclass(frozen=True)
class RefundEvent:
    event: str
    refund_id: str
    payment_id: str
    amount_minor: int


@dataclass(frozen=True)
class UnknownEvent:
    event: str


WebhookEvent = Union[PaymentSucceeded, PaymentFailed, RefundEvent, UnknownEvent]


@dataclass
class WebhookResult:
    success: bool
    message: str
    details: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {"success": self.success, "message": self.message}


def _entity(payload: Dict, name: str) -> Dict:
    try:
        entity = payload["payload"][name]["entity"]
    except (KeyError, TypeError):
        raise ValidationError(f"Webhook payload is missing the {name} entity")
    if not isinstance(entity, dict):
        raise ValidationError(f"Webhook {name} entity must be an object")
    return entity


def parse_event(payload: Dict) -> WebhookEvent:
    """
    Turn a decoded webhook body into an event.

    Raises:
        ValidationError: Recognized event with a malformed entity
    """
    if not isinstance(payload, dict) or not payload.get("event"):
        raise ValidationError("Webhook body has no event name")
    name = payload["event"]

    if name in PAYMENT_SUCCESS_EVENTS or name == PAYMENT_FAILED_EVENT:
        entity = _entity(payload, "payment")
        if not entity.get("order_id"):
            raise ValidationError("Payment entity has no order_id")
        if name == PAYMENT_FAILED_EVENT:
            return PaymentFailed(
                order_id=entity["order_id"],
                payment_id=entity.get("id"),
                amount_minor=int(entity.get("amount") or 0),
                error_description=entity.get("error_description"),
            )
        if not entity.get("id"):
            raise ValidationError("Payment entity has no id")
        return PaymentSucceeded(
            event=name,
            order_id=entity["order_id"],
            payment_id=entity["id"],
            amount_minor=int(entity.get("amount") or 0),
        )

    if name in REFUND_EVENTS:
        entity = _entity(payload, "refund")
        if not entity.get("id") or not entity.get("payment_id"):
            raise ValidationError("Refund entity needs id and payment_id")
        return RefundEvent(
            event=name,
            refund_id=entity["id"],
            payment_id=entity["payment_id"],
            amount_minor=int(entity.get("amount") or 0),
        )

    return UnknownEvent(event=name)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def process_webhook(
    raw_body: bytes,
    signature: Optional[str],
    registry: Optional[ConnectionRegistry] = None,
    secret: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
) -> WebhookResult:
    """
    Authenticate, parse and apply one webhook delivery.

    A signed body that is not a well-formed event is acknowledged with
    ``success=False`` so the gateway does not keep redelivering it.

    Raises:
        AuthenticationError: Signature mismatch (nothing else is looked at)
    """
    if not verify_signature(raw_body, signature, secret):
        logger.warning("Rejected webhook with invalid signature")
        raise AuthenticationError("Invalid signature")

    try:
        try:
            payload = json.loads(raw_body)
        except (TypeError, ValueError):
            raise ValidationError("Webhook body is not valid JSON")
        event = parse_event(payload)
    except ValidationError as e:
        logger.warning(f"Acknowledging malformed webhook: {e.message}")
        return WebhookResult(False, f"Malformed webhook ignored: {e.message}")

    if isinstance(event, PaymentSucceeded):
        return await handle_payment_succeeded(event, signature, registry, gateway)
    if isinstance(event, PaymentFailed):
        return await handle_payment_failed(event, registry)
    if isinstance(event, RefundEvent):
        return await handle_refund(event, registry)
    logger.info(f"Ignoring webhook event {event.event}")
    return WebhookResult(True, f"Webhook received for event: {event.event}")


async def _find_by_order(session: AsyncSession, order_id: str) -> Optional[Transaction]:
    result = await session.execute(
        select(Transaction).where(Transaction.gateway_order_id == order_id)
    )
    return result.scalar_one_or_none()


async def _find_by_payment(session: AsyncSession, payment_id: str) -> Optional[Transaction]:
    result = await session.execute(
        select(Transaction)
        .where(Transaction.gateway_payment_id == payment_id)
        .order_by(Transaction.id)
    )
    return result.scalars().first()


# ---------------------------------------------------------------------------
# payment.captured / payment.authorized
# ---------------------------------------------------------------------------


async def handle_payment_succeeded(
    event: PaymentSucceeded,
    signature: Optional[str],
    registry: Optional[ConnectionRegistry] = None,
    gateway: Optional[PaymentGateway] = None,
    retry: bool = True,
) -> WebhookResult:
    transaction_id = None
    session_factory = db.get_session_factory()
    async with session_factory() as session:
        try:
            txn = await _find_by_order(session, event.order_id)
            if txn is None:
                logger.warning(f"No transaction for order {event.order_id}; acknowledging {event.event}")
                return WebhookResult(True, "Transaction not found, but acknowledging webhook")

            if txn.webhook_verified and txn.gateway_payment_id == event.payment_id:
                if txn.status == transaction_state.AUTHORIZED and event.status == transaction_state.CAPTURED:
                    transaction_state.transition(txn, transaction_state.CAPTURED)
                    await session.commit()
                logger.info(f"Duplicate {event.event} for order {event.order_id}; already processed")
                return WebhookResult(True, "Payment already processed")

            if (
                txn.status in (transaction_state.FAILED, transaction_state.ABANDONED)
                and event.status == transaction_state.CAPTURED
            ):
                return await _refund_late_capture(session, txn, event, signature, registry, gateway)

            if txn.status != transaction_state.CREATED and txn.status not in transaction_state.SUCCESS_STATES:
                logger.error(
                    f"{event.event} for order {event.order_id} but transaction {txn.id} is {txn.status}; "
                    f"payment {event.payment_id} needs manual review"
                )
                return WebhookResult(True, f"Transaction is {txn.status}; event ignored")

            txn.gateway_payment_id = txn.gateway_payment_id or event.payment_id
            txn.gateway_signature = signature
            txn.webhook_verified = True
            txn.paid_at = txn.paid_at or utcnow()
            transaction_id = txn.id

            await settle_transaction(session, txn, event.status)
            await commit_and_deliver(session, registry)
            logger.info(f"Applied {event.event} for order {event.order_id} (transaction {txn.id})")
            return WebhookResult(True, f"Payment {event.status} successfully")

        except SlotUnavailableError as e:
            await session.rollback()
            discard_pending_pushes(session)
            return await _handle_slot_lost(event, signature, transaction_id, e.slots, registry, gateway)
        except PaymentNotApplicableError as e:
            await session.rollback()
            discard_pending_pushes(session)
            return await _reject_payment(
                event,
                signature,
                transaction_id,
                e.message,
                registry,
                gateway,
                refund_reason=e.reason_code,
            )
        except StaleDataError:
            await session.rollback()
            discard_pending_pushes(session)
            logger.warning(f"Concurrent update on order {event.order_id}")
            return await _resolve_write_conflict(event, signature, registry, gateway, retry)
        except IntegrityError as e:
            await session.rollback()
            discard_pending_pushes(session)
            logger.warning(f"Write conflict applying {event.event} for order {event.order_id}: {e.orig}")
            return await _resolve_write_conflict(event, signature, registry, gateway, retry)


async def _resolve_write_conflict(
    event: PaymentSucceeded,
    signature: Optional[str],
    registry: Optional[ConnectionRegistry],
    gateway: Optional[PaymentGateway],
    retry: bool,
) -> WebhookResult:
    """
    Work out what a concurrent writer did to this delivery's transaction.

    A duplicate delivery that already verified the transaction is
    acknowledged. A lost slot, a cancelled booking or a booking paid by
    another transaction fails this payment and refunds it. Anything else was
    a plain write race and the delivery is applied once more.
    """
    session_factory = db.get_session_factory()
    async with session_factory() as session:
        txn = await _find_by_order(session, event.order_id)
        if txn is None or txn.webhook_verified:
            return WebhookResult(True, "Payment already processed")
        transaction_id = txn.id
        bookings = await transaction_state.load_linked_bookings(session, txn)
        lost = set()
        for booking in bookings:
            lost.update(await transaction_state.find_confirmed_conflicts(session, booking))
        not_applicable = None
        if not lost:
            try:
                transaction_state.check_applicable(txn, bookings)
            except PaymentNotApplicableError as e:
                not_applicable = e
    if lost:
        return await _handle_slot_lost(event, signature, transaction_id, lost, registry, gateway)
    if not_applicable is not None:
        return await _reject_payment(
            event,
            signature,
            transaction_id,
            not_applicable.message,
            registry,
            gateway,
            refund_reason=not_applicable.reason_code,
        )
    if retry:
        return await handle_payment_succeeded(event, signature, registry, gateway, retry=False)
    logger.error(
        f"{event.event} for order {event.order_id} kept conflicting; "
        f"payment {event.payment_id} needs manual review"
    )
    return WebhookResult(False, "Payment not applied after a write conflict")


async def _handle_slot_lost(
    event: PaymentSucceeded,
    signature: Optional[str],
    transaction_id: int,
    slots,
    registry: Optional[ConnectionRegistry],
    gateway: Optional[PaymentGateway],
) -> WebhookResult:
    """Fail a transaction whose slot went to another booking and refund it."""
    slots = sorted(slots)
    return await _reject_payment(
        event,
        signature,
        transaction_id,
        f"Slot(s) {', '.join(slots)} already booked by another payment",
        registry,
        gateway,
        title="Slot No Longer Available",
        refund_reason="slot_conflict",
        result_message="Slot already booked; payment marked for refund",
        data={"slots": slots},
    )


async def _reject_payment(
    event: PaymentSucceeded,
    signature: Optional[str],
    transaction_id: int,
    reason: str,
    registry: Optional[ConnectionRegistry],
    gateway: Optional[PaymentGateway],
    title: str = "Payment Not Applied",
    refund_reason: str = "not_applicable",
    result_message: str = "Payment could not be applied; marked for refund",
    data: Optional[Dict] = None,
) -> WebhookResult:
    """
    Fail a successful payment that cannot be honored and refund it.

    The credit hold is released, the owner(s) are told the payment will be
    refunded, and a captured amount is refunded through the gateway.
    """
    session_factory = db.get_session_factory()
    async with session_factory() as session:
        try:
            txn = await session.get(Transaction, transaction_id)
            if txn is None or txn.webhook_verified:
                return WebhookResult(True, "Payment already processed")
            txn.gateway_payment_id = event.payment_id
            txn.gateway_signature = signature
            txn.webhook_verified = True
            credit_service.release(txn)
            # Superseded, cancelled or reaped meanwhile
            if transaction_state.can_transition(txn.status, transaction_state.FAILED):
                await transaction_state.apply_failure(session, txn, reason)
            bookings = await transaction_state.load_linked_bookings(session, txn)
            notify_many(
                session,
                [b.owner_user_id for b in bookings] or [txn.user_id],
                NotificationType.PAYMENT_CONFLICT.value,
                title,
                f"{reason}. Your payment will be refunded.",
                data={"transaction_id": txn.id, **(data or {})},
            )
            await commit_and_deliver(session, registry)
        except (StaleDataError, IntegrityError):
            await session.rollback()
            discard_pending_pushes(session)
            return WebhookResult(True, "Payment already processed")
    logger.warning(f"Transaction {transaction_id} not applied ({reason}); marked failed")

    if event.status == transaction_state.CAPTURED and event.amount_minor > 0:
        await _request_refund(transaction_id, event.payment_id, event.amount_minor, gateway, refund_reason)
    return WebhookResult(True, result_message)


async def _refund_late_capture(
    session: AsyncSession,
    txn: Transaction,
    event: PaymentSucceeded,
    signature: Optional[str],
    registry: Optional[ConnectionRegistry],
    gateway: Optional[PaymentGateway],
) -> WebhookResult:
    """Refund money captured for a transaction that already failed or was abandoned."""
    transaction_id = txn.id
    txn.gateway_payment_id = event.payment_id
    txn.gateway_signature = signature
    txn.webhook_verified = True
    notify_many(
        session,
        [txn.user_id],
        NotificationType.PAYMENT_CONFLICT.value,
        "Payment Not Applied",
        f"A payment of {event.amount_minor // MINOR_UNITS_PER_MAJOR} {txn.currency} arrived after "
        f"transaction #{txn.id} was {txn.status}. Your payment will be refunded.",
        data={"transaction_id": txn.id, "payment_id": event.payment_id},
    )
    try:
        await commit_and_deliver(session, registry)
    except StaleDataError:
        await session.rollback()
        discard_pending_pushes(session)
        return WebhookResult(True, "Payment already processed")
    logger.warning(
        f"{event.event} for order {event.order_id} arrived after transaction {transaction_id} "
        f"was {txn.status}; refunding payment {event.payment_id}"
    )
    if event.amount_minor > 0:
        await _request_refund(transaction_id, event.payment_id, event.amount_minor, gateway, "late_capture")
    return WebhookResult(True, "Transaction no longer payable; payment marked for refund")


async def _request_refund(
    transaction_id: int,
    payment_id: str,
    amount_minor: int,
    gateway: Optional[PaymentGateway],
    reason: str = "slot_conflict",
) -> None:
    """Best-effort gateway refund; failures are logged for manual follow-up."""
    try:
        refund = await (gateway or get_gateway()).issue_refund(
            payment_id, amount_minor, notes={"transaction_id": transaction_id, "reason": reason}
        )
    except Exception as e:
        logger.error(f"Gateway refund for transaction {transaction_id} failed: {e}", exc_info=True)
        return
    session_factory = db.get_session_factory()
    async with session_factory() as session:
        txn = await session.get(Transaction, transaction_id)
        if txn is not None and not txn.refund_id:
            txn.refund_id = refund.get("id")
            await session.commit()


# ---------------------------------------------------------------------------
# payment.failed
# ---------------------------------------------------------------------------


async def handle_payment_failed(
    event: PaymentFailed, registry: Optional[ConnectionRegistry] = None
) -> WebhookResult:
    session_factory = db.get_session_factory()
    async with session_factory() as session:
        try:
            txn = await _find_by_order(session, event.order_id)
            if txn is None:
                logger.warning(f"No transaction for order {event.order_id}; acknowledging payment.failed")
                return WebhookResult(True, "Transaction not found, but acknowledging webhook")
            if txn.status != transaction_state.CREATED:
                logger.info(f"payment.failed for order {event.order_id} ignored; transaction is {txn.status}")
                return WebhookResult(True, "Payment failure already recorded")

            if event.payment_id and not txn.gateway_payment_id:
                txn.gateway_payment_id = event.payment_id
            await transaction_state.apply_failure(session, txn, event.error_description)
            await commit_and_deliver(session, registry)
            logger.info(f"Recorded payment failure for transaction {txn.id}: {txn.failure_reason}")
            return WebhookResult(True, "Payment failure recorded")
        except StaleDataError:
            await session.rollback()
            discard_pending_pushes(session)
            logger.warning(f"Concurrent update on order {event.order_id}; failure acknowledged")
            return WebhookResult(True, "Payment failure already recorded")


# ---------------------------------------------------------------------------
# refund.*
# ---------------------------------------------------------------------------


async def handle_refund(event: RefundEvent, registry: Optional[ConnectionRegistry] = None) -> WebhookResult:
    amount = event.amount_minor // MINOR_UNITS_PER_MAJOR
    session_factory = db.get_session_factory()
    async with session_factory() as session:
        try:
            txn = await _find_by_payment(session, event.payment_id)
            if txn is None:
                logger.warning(f"No transaction for payment {event.payment_id}; acknowledging {event.event}")
                return WebhookResult(True, "Transaction not found, but acknowledging webhook")

            if event.event == "refund.created":
                txn.refund_id = txn.refund_id or event.refund_id
                await session.commit()
                return WebhookResult(True, "Refund created recorded successfully")

            if event.event == "refund.failed":
                txn.refund_id = event.refund_id
                bookings = await transaction_state.load_linked_bookings(session, txn)
                notify_many(
                    session,
                    [b.owner_user_id for b in bookings] or [txn.user_id],
                    NotificationType.REFUND_FAILED.value,
                    "Refund Failed",
                    f"Your refund of {amount} {txn.currency} has failed. Please contact support for assistance.",
                    data={"transaction_id": txn.id, "refund_id": event.refund_id},
                )
                await commit_and_deliver(session, registry)
                logger.warning(f"Refund {event.refund_id} failed for transaction {txn.id}")
                return WebhookResult(True, "Refund failed recorded successfully")

            # refund.processed
            if txn.status == transaction_state.REFUNDED and txn.refund_id == event.refund_id:
                return WebhookResult(True, "Refund already processed")
            if transaction_state.can_transition(txn.status, transaction_state.REFUNDED):
                await transaction_state.apply_refund(session, txn, event.refund_id, amount)
            else:
                # Refund of a payment that never succeeded here (lost slot) or was already
                # compensated by a cancellation
                txn.refund_id = event.refund_id
                txn.refunded_amount = max(txn.refunded_amount or 0, amount)
                bookings = await transaction_state.load_linked_bookings(session, txn)
                notify_many(
                    session,
                    [b.owner_user_id for b in bookings] or [txn.user_id],
                    NotificationType.REFUND_COMPLETED.value,
                    "Refund Completed",
                    f"Your refund of {amount} {txn.currency} has been processed successfully.",
                    data={"transaction_id": txn.id, "refund_id": event.refund_id},
                )
            await commit_and_deliver(session, registry)
            logger.info(f"Refund {event.refund_id} processed for transaction {txn.id}")
            return WebhookResult(True, "Refund processed recorded successfully")
        except (StaleDataError, InvalidTransitionError) as e:
            await session.rollback()
            discard_pending_pushes(session)
            logger.warning(f"Refund {event.refund_id} for payment {event.payment_id} not applied: {e}")
            return WebhookResult(True, "Refund already processed")
