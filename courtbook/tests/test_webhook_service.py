"""
Tests for the gateway webhook reconciler.

Covers signature checks, event parsing, idempotent capture handling,
failures, refunds, lost slot races and join-request seating.
"""

import asyncio
import json
import pytest
from unittest.mock import AsyncMock
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from courtbook.database import db
from courtbook.database.models import (
    Booking,
    BookingKind,
    BookingRequest,
    BookingRequestStatus,
    GameType,
    Notification,
    NotificationType,
    PaymentMethod,
    PlayerPaymentStatus,
    Transaction,
    TransactionBooking,
    TransactionStatus,
)
from courtbook.services import (
    booking_request_service,
    cancellation_service,
    chat_service,
    credit_service,
    gateway,
    payment_service,
    webhook_service,
)
from courtbook.services.connection_registry import ConnectionRegistry
from courtbook.services.exceptions import AuthenticationError, ValidationError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _payment_event(event, order_id, payment_id="pay_001", amount=50000, **extra):
    entity = {"id": payment_id, "order_id": order_id, "amount": amount, **extra}
    return {"event": event, "payload": {"payment": {"entity": entity}}}


def _refund_event(event, refund_id, payment_id, amount=50000):
    entity = {"id": refund_id, "payment_id": payment_id, "amount": amount}
    return {"event": event, "payload": {"refund": {"entity": entity}}}


def _sign(payload, secret):
    body = json.dumps(payload).encode("utf-8")
    return body, gateway.compute_signature(secret, body)


async def _deliver(payload, secret, **kwargs):
    body, signature = _sign(payload, secret)
    return await webhook_service.process_webhook(body, signature, **kwargs)


async def _load(model, pk):
    async with db.AsyncSessionLocal() as session:
        return await session.get(model, pk)


async def _notifications(user_id, type):
    async with db.AsyncSessionLocal() as session:
        result = await session.execute(
            select(Notification).where(Notification.user_id == user_id, Notification.type == type)
        )
        return result.scalars().all()


async def _balance(user_id):
    async with db.AsyncSessionLocal() as session:
        return await credit_service.get_balance(session, user_id)


async def _open(session, user_id, booking, method=PaymentMethod.GATEWAY.value, credit_amount=None):
    result = await payment_service.initiate_payment(
        session, user_id, [booking.id], method, credit_amount=credit_amount
    )
    await session.commit()
    return result


# ============================================================================
# Signature and parsing
# ============================================================================


def test_signature_round_trip():
    body = b'{"event": "payment.captured"}'
    signature = gateway.compute_signature("s3cret", body)

    assert gateway.verify_signature(body, signature, "s3cret") is True
    assert gateway.verify_signature(body + b" ", signature, "s3cret") is False
    assert gateway.verify_signature(body, signature, "other") is False
    assert gateway.verify_signature(body, None, "s3cret") is False
    assert gateway.verify_signature(body, signature, "") is False


@pytest.mark.asyncio
async def test_rejects_bad_signature(webhook_secret):
    body = json.dumps(_payment_event("payment.captured", "order_x")).encode("utf-8")

    with pytest.raises(AuthenticationError):
        await webhook_service.process_webhook(body, "deadbeef")
    with pytest.raises(AuthenticationError):
        await webhook_service.process_webhook(body, None)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b"[]",
        json.dumps({"event": "payment.captured", "payload": {}}).encode("utf-8"),
    ],
)
async def test_signed_garbage_is_acknowledged(webhook_secret, body):
    signature = gateway.compute_signature(webhook_secret, body)

    result = await webhook_service.process_webhook(body, signature)

    assert result.success is False
    assert result.message.startswith("Malformed webhook ignored")


def test_parse_payment_events():
    captured = webhook_service.parse_event(_payment_event("payment.captured", "order_1"))
    authorized = webhook_service.parse_event(_payment_event("payment.authorized", "order_1"))
    failed = webhook_service.parse_event(
        _payment_event("payment.failed", "order_1", error_description="Card declined")
    )

    assert isinstance(captured, webhook_service.PaymentSucceeded)
    assert captured.status == TransactionStatus.CAPTURED.value
    assert captured.amount_minor == 50000
    assert authorized.status == TransactionStatus.AUTHORIZED.value
    assert isinstance(failed, webhook_service.PaymentFailed)
    assert failed.error_description == "Card declined"


def test_parse_refund_and_unknown_events():
    refund = webhook_service.parse_event(_refund_event("refund.processed", "rfnd_1", "pay_1"))
    unknown = webhook_service.parse_event({"event": "order.paid", "payload": {}})

    assert isinstance(refund, webhook_service.RefundEvent)
    assert refund.refund_id == "rfnd_1"
    assert refund.payment_id == "pay_1"
    assert unknown == webhook_service.UnknownEvent(event="order.paid")


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"event": "payment.captured"},
        {"event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_1"}}}},
        {"event": "payment.captured", "payload": {"payment": {"entity": {"order_id": "order_1"}}}},
        {"event": "refund.processed", "payload": {"refund": {"entity": {"id": "rfnd_1"}}}},
    ],
)
def test_parse_rejects_malformed_events(payload):
    with pytest.raises(ValidationError):
        webhook_service.parse_event(payload)


@pytest.mark.asyncio
async def test_unknown_event_is_acknowledged(webhook_secret):
    result = await _deliver({"event": "order.paid", "payload": {}}, webhook_secret)

    assert result.success is True
    assert "order.paid" in result.message


# ============================================================================
# payment.captured / payment.authorized
# ============================================================================


@pytest.mark.asyncio
async def test_capture_confirms_booking_and_pushes(
    db_session, users, make_booking, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking)
    registry = ConnectionRegistry()
    websocket = AsyncMock()
    await registry.register(owner.id, websocket)

    result = await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_abc"),
        webhook_secret,
        registry=registry,
    )

    assert result.success is True
    assert result.message == "Payment captured successfully"

    txn = await _load(Transaction, opened["id"])
    assert txn.status == TransactionStatus.CAPTURED.value
    assert txn.webhook_verified is True
    assert txn.gateway_payment_id == "pay_abc"
    assert txn.paid_at is not None

    paid = await _load(Booking, booking.id)
    assert paid.is_paid is True
    assert paid.invoice_number is not None
    assert all(s.is_confirmed for s in paid.slots)

    websocket.send_text.assert_awaited()
    pushed = json.loads(websocket.send_text.await_args.args[0])
    assert pushed["notification"]["type"] == NotificationType.PAYMENT_SUCCESS.value


@pytest.mark.asyncio
async def test_duplicate_capture_deducts_credit_once(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    await fund_credit(owner.id, 300)
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(
        db_session, owner.id, booking, PaymentMethod.COMBINED.value, credit_amount=200
    )
    event = _payment_event("payment.captured", opened["gateway_order_id"], "pay_dup", amount=30000)

    first = await _deliver(event, webhook_secret)
    second = await _deliver(event, webhook_secret)

    assert first.message == "Payment captured successfully"
    assert second.message == "Payment already processed"
    assert await _balance(owner.id) == 100

    txn = await _load(Transaction, opened["id"])
    assert txn.credit_deducted is True
    assert len(await _notifications(owner.id, NotificationType.PAYMENT_SUCCESS.value)) == 1


@pytest.mark.asyncio
async def test_authorized_then_captured(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    await fund_credit(owner.id, 300)
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(
        db_session, owner.id, booking, PaymentMethod.COMBINED.value, credit_amount=100
    )
    order_id = opened["gateway_order_id"]

    await _deliver(_payment_event("payment.authorized", order_id, "pay_auth", 40000), webhook_secret)
    txn = await _load(Transaction, opened["id"])
    assert txn.status == TransactionStatus.AUTHORIZED.value
    assert (await _load(Booking, booking.id)).is_paid is True
    invoice = (await _load(Booking, booking.id)).invoice_number

    await _deliver(_payment_event("payment.captured", order_id, "pay_auth", 40000), webhook_secret)
    txn = await _load(Transaction, opened["id"])
    assert txn.status == TransactionStatus.CAPTURED.value
    assert (await _load(Booking, booking.id)).invoice_number == invoice
    assert await _balance(owner.id) == 200


@pytest.mark.asyncio
async def test_capture_for_unknown_order_is_acknowledged(test_engine, webhook_secret):
    result = await _deliver(_payment_event("payment.captured", "order_missing"), webhook_secret)

    assert result.success is True
    assert result.message == "Transaction not found, but acknowledging webhook"


# ============================================================================
# payment.failed
# ============================================================================


@pytest.mark.asyncio
async def test_failure_keeps_credit_hold(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    await fund_credit(owner.id, 300)
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(
        db_session, owner.id, booking, PaymentMethod.COMBINED.value, credit_amount=200
    )

    result = await _deliver(
        _payment_event(
            "payment.failed", opened["gateway_order_id"], "pay_fail", error_description="Card declined"
        ),
        webhook_secret,
    )

    assert result.message == "Payment failure recorded"
    txn = await _load(Transaction, opened["id"])
    assert txn.status == TransactionStatus.FAILED.value
    assert txn.failure_reason == "Card declined"
    assert txn.credit_reserved is True
    assert (await _load(Booking, booking.id)).is_paid is False
    assert len(await _notifications(owner.id, NotificationType.PAYMENT_FAILED.value)) == 1

    async with db.AsyncSessionLocal() as session:
        assert await credit_service.get_available(session, owner.id) == 100


@pytest.mark.asyncio
async def test_capture_after_failure_is_refunded(
    db_session, users, make_booking, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking)
    order_id = opened["gateway_order_id"]

    await _deliver(_payment_event("payment.failed", order_id, "pay_1"), webhook_secret)
    result = await _deliver(_payment_event("payment.captured", order_id, "pay_2"), webhook_secret)

    assert result.success is True
    assert result.message == "Transaction no longer payable; payment marked for refund"
    txn = await _load(Transaction, opened["id"])
    assert txn.status == TransactionStatus.FAILED.value
    assert txn.gateway_payment_id == "pay_2"
    assert txn.refund_id == fake_gateway.refunds[0]["id"]
    assert fake_gateway.refunds[0]["payment_id"] == "pay_2"
    assert fake_gateway.refunds[0]["amount"] == 50000
    assert fake_gateway.refunds[0]["notes"]["reason"] == "late_capture"
    assert (await _load(Booking, booking.id)).is_paid is False

    again = await _deliver(_payment_event("payment.captured", order_id, "pay_2"), webhook_secret)
    assert again.message == "Payment already processed"
    assert len(fake_gateway.refunds) == 1


@pytest.mark.asyncio
async def test_authorization_after_failure_is_ignored(
    db_session, users, make_booking, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking)
    order_id = opened["gateway_order_id"]

    await _deliver(_payment_event("payment.failed", order_id, "pay_1"), webhook_secret)
    result = await _deliver(_payment_event("payment.authorized", order_id, "pay_2"), webhook_secret)

    assert "ignored" in result.message
    assert fake_gateway.refunds == []
    assert (await _load(Transaction, opened["id"])).status == TransactionStatus.FAILED.value


@pytest.mark.asyncio
async def test_failure_after_capture_is_ignored(
    db_session, users, make_booking, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking)
    order_id = opened["gateway_order_id"]

    await _deliver(_payment_event("payment.captured", order_id, "pay_1"), webhook_secret)
    result = await _deliver(_payment_event("payment.failed", order_id, "pay_1"), webhook_secret)

    assert result.message == "Payment failure already recorded"
    assert (await _load(Transaction, opened["id"])).status == TransactionStatus.CAPTURED.value


# ============================================================================
# Lost slot race
# ============================================================================


@pytest.mark.asyncio
async def test_second_capture_for_same_slot_is_refunded(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, rival, _ = users
    await fund_credit(rival.id, 300)
    winner = await make_booking(owner.id, team1=[owner.id, partner.id])
    loser = await make_booking(rival.id, team1=[rival.id, None])
    winner_txn = await _open(db_session, owner.id, winner)
    loser_txn = await _open(
        db_session, rival.id, loser, PaymentMethod.COMBINED.value, credit_amount=100
    )

    await _deliver(
        _payment_event("payment.captured", winner_txn["gateway_order_id"], "pay_w"), webhook_secret
    )
    result = await _deliver(
        _payment_event("payment.captured", loser_txn["gateway_order_id"], "pay_l", amount=40000),
        webhook_secret,
    )

    assert result.success is True
    assert result.message == "Slot already booked; payment marked for refund"

    txn = await _load(Transaction, loser_txn["id"])
    assert txn.status == TransactionStatus.FAILED.value
    assert "18:00" in txn.failure_reason
    assert txn.gateway_payment_id == "pay_l"
    assert txn.credit_reserved is False
    assert txn.credit_deducted is False
    assert txn.refund_id == fake_gateway.refunds[0]["id"]

    assert fake_gateway.refunds[0]["payment_id"] == "pay_l"
    assert fake_gateway.refunds[0]["amount"] == 40000
    assert (await _load(Booking, loser.id)).is_paid is False
    assert (await _load(Booking, winner.id)).is_paid is True
    assert await _balance(rival.id) == 300
    assert len(await _notifications(rival.id, NotificationType.PAYMENT_CONFLICT.value)) == 1

    # Redelivery of the losing capture changes nothing
    again = await _deliver(
        _payment_event("payment.captured", loser_txn["gateway_order_id"], "pay_l", amount=40000),
        webhook_secret,
    )
    assert again.message == "Payment already processed"
    assert len(fake_gateway.refunds) == 1


@pytest.mark.asyncio
async def test_refund_request_failure_is_not_fatal(
    db_session, users, make_booking, fake_gateway, webhook_secret
):
    owner, partner, rival, _ = users
    winner = await make_booking(owner.id, team1=[owner.id, partner.id])
    loser = await make_booking(rival.id, team1=[rival.id, None])
    winner_txn = await _open(db_session, owner.id, winner)
    loser_txn = await _open(db_session, rival.id, loser)
    fake_gateway.issue_refund = AsyncMock(side_effect=RuntimeError("gateway down"))

    await _deliver(
        _payment_event("payment.captured", winner_txn["gateway_order_id"], "pay_w"), webhook_secret
    )
    result = await _deliver(
        _payment_event("payment.captured", loser_txn["gateway_order_id"], "pay_l"), webhook_secret
    )

    assert result.success is True
    txn = await _load(Transaction, loser_txn["id"])
    assert txn.status == TransactionStatus.FAILED.value
    assert txn.refund_id is None


# ============================================================================
# refund.*
# ============================================================================


@pytest.mark.asyncio
async def test_refund_lifecycle(db_session, users, make_booking, fake_gateway, webhook_secret):
    owner, partner, _, _ = users
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking)
    await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_r"), webhook_secret
    )

    created = await _deliver(_refund_event("refund.created", "rfnd_9", "pay_r"), webhook_secret)
    txn = await _load(Transaction, opened["id"])
    assert created.message == "Refund created recorded successfully"
    assert txn.refund_id == "rfnd_9"
    assert txn.status == TransactionStatus.CAPTURED.value

    processed = await _deliver(_refund_event("refund.processed", "rfnd_9", "pay_r"), webhook_secret)
    txn = await _load(Transaction, opened["id"])
    assert processed.message == "Refund processed recorded successfully"
    assert txn.status == TransactionStatus.REFUNDED.value
    assert txn.refunded_amount == 500
    assert len(await _notifications(owner.id, NotificationType.REFUND_COMPLETED.value)) == 1

    duplicate = await _deliver(_refund_event("refund.processed", "rfnd_9", "pay_r"), webhook_secret)
    assert duplicate.message == "Refund already processed"
    assert len(await _notifications(owner.id, NotificationType.REFUND_COMPLETED.value)) == 1


@pytest.mark.asyncio
async def test_refund_failed_notifies_owner(db_session, users, make_booking, fake_gateway, webhook_secret):
    owner, partner, _, _ = users
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking)
    await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_rf"), webhook_secret
    )

    result = await _deliver(_refund_event("refund.failed", "rfnd_x", "pay_rf"), webhook_secret)

    assert result.message == "Refund failed recorded successfully"
    assert (await _load(Transaction, opened["id"])).status == TransactionStatus.CAPTURED.value
    assert len(await _notifications(owner.id, NotificationType.REFUND_FAILED.value)) == 1


@pytest.mark.asyncio
async def test_refund_for_unknown_payment_is_acknowledged(test_engine, webhook_secret):
    result = await _deliver(_refund_event("refund.processed", "rfnd_1", "pay_missing"), webhook_secret)

    assert result.success is True
    assert result.message == "Transaction not found, but acknowledging webhook"


# ============================================================================
# Join requests
# ============================================================================


@pytest.mark.asyncio
async def test_join_payment_seats_player_in_requested_position(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, rival, joiner = users
    await fund_credit(owner.id, 500)
    booking = await make_booking(
        owner.id,
        team1=[owner.id, partner.id],
        team2=[rival.id, None],
        game_type=GameType.PUBLIC.value,
    )
    await _open(db_session, owner.id, booking, PaymentMethod.CREDIT.value)
    invoice = booking.invoice_number

    request = await booking_request_service.create_request(
        db_session, joiner.id, booking.id, 2, "player4", rented_rackets=1
    )
    await db_session.commit()
    assert request.status == BookingRequestStatus.ACCEPTED.value
    assert request.player_payment == 125 + 100

    txn = await booking_request_service.pay_request(
        db_session, joiner.id, request.id, PaymentMethod.GATEWAY.value
    )
    await db_session.commit()
    assert fake_gateway.orders[-1]["amount"] == 22500
    assert fake_gateway.orders[-1]["notes"]["requested_position"] == "player4"

    result = await _deliver(
        _payment_event("payment.captured", txn.gateway_order_id, "pay_join", amount=22500),
        webhook_secret,
    )
    assert result.message == "Payment captured successfully"

    seated = await _load(Booking, booking.id)
    seat = next(p for p in seated.players if (p.team, p.position) == (2, "player4"))
    assert seat.player_id == joiner.id
    assert seat.payment_status == PlayerPaymentStatus.PAID.value
    assert seat.transaction_id == txn.id
    assert seat.player_payment == 225
    assert seat.rackets == 1
    assert len(seated.players) == 4
    assert seated.invoice_number == invoice

    completed = await _load(BookingRequest, request.id)
    assert completed.status == BookingRequestStatus.COMPLETED.value
    assert completed.transaction_id == txn.id

    async with db.AsyncSessionLocal() as session:
        group = await chat_service.get_booking_group(session, booking.id)
        assert joiner.id in {m.user_id for m in group.members}

    assert len(await _notifications(joiner.id, NotificationType.JOIN_COMPLETED.value)) == 1
    assert len(await _notifications(owner.id, NotificationType.PLAYER_JOINED.value)) == 1


@pytest.mark.asyncio
async def test_join_capture_after_booking_cancelled_is_refunded(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, rival, joiner = users
    await fund_credit(owner.id, 500)
    booking = await make_booking(
        owner.id,
        team1=[owner.id, partner.id],
        team2=[rival.id, None],
        game_type=GameType.PUBLIC.value,
    )
    await _open(db_session, owner.id, booking, PaymentMethod.CREDIT.value)
    request = await booking_request_service.create_request(db_session, joiner.id, booking.id, 2, "player4")
    await db_session.commit()
    txn = await booking_request_service.pay_request(
        db_session, joiner.id, request.id, PaymentMethod.GATEWAY.value
    )
    await db_session.commit()

    await cancellation_service.cancel_booking(booking.id, 100, "Court flooded")
    result = await _deliver(
        _payment_event("payment.captured", txn.gateway_order_id, "pay_late_join", amount=12500),
        webhook_secret,
    )

    assert result.message == "Transaction no longer payable; payment marked for refund"
    assert fake_gateway.refunds[-1]["payment_id"] == "pay_late_join"
    closed = await _load(Transaction, txn.id)
    assert closed.status == TransactionStatus.FAILED.value
    assert closed.failure_reason == "Booking cancelled"

    cancelled = await _load(Booking, booking.id)
    assert joiner.id not in {p.player_id for p in cancelled.players}
    assert (await _load(BookingRequest, request.id)).status != BookingRequestStatus.COMPLETED.value


# ============================================================================
# Payments that can no longer be applied
# ============================================================================


@pytest.mark.asyncio
async def test_capture_after_cancellation_is_refunded(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, rival, _ = users
    await fund_credit(owner.id, 300)
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking, PaymentMethod.COMBINED.value, credit_amount=200)

    await cancellation_service.cancel_booking(booking.id, 100, "Court closed")
    closed = await _load(Transaction, opened["id"])
    assert closed.status == TransactionStatus.FAILED.value
    assert closed.failure_reason == "Booking cancelled"
    assert closed.credit_reserved is False

    result = await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_late", amount=30000),
        webhook_secret,
    )

    assert result.success is True
    assert result.message == "Transaction no longer payable; payment marked for refund"
    assert fake_gateway.refunds[0]["payment_id"] == "pay_late"
    assert fake_gateway.refunds[0]["amount"] == 30000

    cancelled = await _load(Booking, booking.id)
    assert cancelled.kind == BookingKind.CANCELLED.value
    assert cancelled.is_paid is False
    assert not any(s.is_confirmed for s in cancelled.slots)
    assert await _balance(owner.id) == 300

    # The slot is free for someone else
    other = await make_booking(rival.id, team1=[rival.id, None])
    other_txn = await _open(db_session, rival.id, other)
    taken = await _deliver(
        _payment_event("payment.captured", other_txn["gateway_order_id"], "pay_rival"), webhook_secret
    )
    assert taken.message == "Payment captured successfully"


@pytest.mark.asyncio
async def test_capture_for_cancelled_booking_is_refunded(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    await fund_credit(owner.id, 300)
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking, PaymentMethod.COMBINED.value, credit_amount=200)
    # Cancelled while the transaction was still open
    booking.kind = BookingKind.CANCELLED.value
    await db_session.commit()

    result = await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_c", amount=30000),
        webhook_secret,
    )

    assert result.message == "Payment could not be applied; marked for refund"
    txn = await _load(Transaction, opened["id"])
    assert txn.status == TransactionStatus.FAILED.value
    assert "cancelled" in txn.failure_reason
    assert txn.credit_reserved is False
    assert txn.credit_deducted is False
    assert fake_gateway.refunds[0]["notes"]["reason"] == "booking_cancelled"

    unpaid = await _load(Booking, booking.id)
    assert unpaid.is_paid is False
    assert not any(s.is_confirmed for s in unpaid.slots)
    assert await _balance(owner.id) == 300
    assert len(await _notifications(owner.id, NotificationType.PAYMENT_CONFLICT.value)) == 1


@pytest.mark.asyncio
async def test_second_payment_for_paid_booking_is_refunded(
    db_session, users, make_booking, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    first = await _open(db_session, owner.id, booking)
    # A second open attempt on the same booking, e.g. from another device
    stray = Transaction(
        user_id=owner.id,
        amount=500,
        status=TransactionStatus.CREATED.value,
        method=PaymentMethod.GATEWAY.value,
        paid_for=[owner.id, partner.id],
        notes={},
        gateway_order_id="order_stray",
        booking_links=[TransactionBooking(booking_id=booking.id)],
    )
    db_session.add(stray)
    await db_session.commit()

    await _deliver(_payment_event("payment.captured", first["gateway_order_id"], "pay_a"), webhook_secret)
    result = await _deliver(_payment_event("payment.captured", "order_stray", "pay_b"), webhook_secret)

    assert result.message == "Payment could not be applied; marked for refund"
    duplicate = await _load(Transaction, stray.id)
    assert duplicate.status == TransactionStatus.FAILED.value
    assert "already paid" in duplicate.failure_reason
    assert fake_gateway.refunds[0]["payment_id"] == "pay_b"
    assert fake_gateway.refunds[0]["notes"]["reason"] == "duplicate_payment"

    paid = await _load(Booking, booking.id)
    assert {p.transaction_id for p in paid.players if p.player_id is not None} == {first["id"]}

    cancelled = await cancellation_service.cancel_booking(booking.id, 100, "Court closed")
    assert [r["transaction_id"] for r in cancelled["refunds"]] == [first["id"]]


@pytest.mark.asyncio
async def test_capture_of_superseded_attempt_is_refunded(
    db_session, users, make_booking, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    first = await _open(db_session, owner.id, booking)
    second = await _open(db_session, owner.id, booking)

    late = await _deliver(_payment_event("payment.captured", first["gateway_order_id"], "pay_1"), webhook_secret)
    current = await _deliver(
        _payment_event("payment.captured", second["gateway_order_id"], "pay_2"), webhook_secret
    )

    assert late.message == "Transaction no longer payable; payment marked for refund"
    assert current.message == "Payment captured successfully"
    assert [r["payment_id"] for r in fake_gateway.refunds] == ["pay_1"]
    assert (await _load(Transaction, first["id"])).failure_reason == payment_service.SUPERSEDED_REASON
    assert (await _load(Booking, booking.id)).is_paid is True


@pytest.mark.asyncio
async def test_capture_with_drained_credit_is_refunded(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    await fund_credit(owner.id, 300)
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking, PaymentMethod.COMBINED.value, credit_amount=200)
    # Balance lowered behind the hold's back
    await fund_credit(owner.id, 50)

    result = await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_short", amount=30000),
        webhook_secret,
    )

    assert result.success is True
    assert result.message == "Payment could not be applied; marked for refund"
    txn = await _load(Transaction, opened["id"])
    assert txn.status == TransactionStatus.FAILED.value
    assert txn.credit_reserved is False
    assert txn.credit_deducted is False
    assert fake_gateway.refunds[0]["notes"]["reason"] == "credit_shortfall"
    assert fake_gateway.refunds[0]["amount"] == 30000
    assert (await _load(Booking, booking.id)).is_paid is False
    assert await _balance(owner.id) == 50


# ============================================================================
# Write conflicts between deliveries
# ============================================================================


def _settled_elsewhere(real_settle, payment_id, error):
    """Apply the payment through another session, then fail this one with ``error``."""

    async def settle(session, txn, new_status):
        async with db.AsyncSessionLocal() as other:
            other_txn = await other.get(Transaction, txn.id)
            other_txn.gateway_payment_id = payment_id
            other_txn.webhook_verified = True
            await real_settle(other, other_txn, new_status)
            await other.commit()
        raise error

    return settle


async def _open_combined(db_session, fund_credit, make_booking, owner, partner):
    await fund_credit(owner.id, 300)
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    return await _open(db_session, owner.id, booking, PaymentMethod.COMBINED.value, credit_amount=200)


@pytest.mark.asyncio
async def test_stale_write_after_concurrent_delivery_is_acknowledged(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret, monkeypatch
):
    owner, partner, _, _ = users
    opened = await _open_combined(db_session, fund_credit, make_booking, owner, partner)
    monkeypatch.setattr(
        webhook_service,
        "settle_transaction",
        _settled_elsewhere(payment_service.settle_transaction, "pay_s", StaleDataError("version mismatch")),
    )

    result = await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_s", amount=30000),
        webhook_secret,
    )

    assert result.success is True
    assert result.message == "Payment already processed"
    assert (await _load(Transaction, opened["id"])).status == TransactionStatus.CAPTURED.value
    assert await _balance(owner.id) == 100
    assert len(await _notifications(owner.id, NotificationType.PAYMENT_SUCCESS.value)) == 1
    assert fake_gateway.refunds == []


@pytest.mark.asyncio
async def test_integrity_error_after_concurrent_delivery_is_acknowledged(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret, monkeypatch
):
    owner, partner, _, _ = users
    opened = await _open_combined(db_session, fund_credit, make_booking, owner, partner)
    monkeypatch.setattr(
        webhook_service,
        "settle_transaction",
        _settled_elsewhere(
            payment_service.settle_transaction,
            "pay_i",
            IntegrityError("UPDATE booking_slots", {}, Exception("duplicate key value")),
        ),
    )

    result = await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_i", amount=30000),
        webhook_secret,
    )

    assert result.message == "Payment already processed"
    assert (await _load(Transaction, opened["id"])).status == TransactionStatus.CAPTURED.value
    assert await _balance(owner.id) == 100
    assert fake_gateway.refunds == []


@pytest.mark.asyncio
async def test_stale_write_without_other_writer_is_applied_on_retry(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret, monkeypatch
):
    owner, partner, _, _ = users
    opened = await _open_combined(db_session, fund_credit, make_booking, owner, partner)
    real_settle = payment_service.settle_transaction
    calls = []

    async def stale_once(session, txn, new_status):
        calls.append(txn.id)
        if len(calls) == 1:
            raise StaleDataError("version mismatch")
        return await real_settle(session, txn, new_status)

    monkeypatch.setattr(webhook_service, "settle_transaction", stale_once)

    result = await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_r", amount=30000),
        webhook_secret,
    )

    assert result.message == "Payment captured successfully"
    assert len(calls) == 2
    assert await _balance(owner.id) == 100


@pytest.mark.asyncio
async def test_persistent_write_conflict_is_left_for_review(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret, monkeypatch
):
    owner, partner, _, _ = users
    opened = await _open_combined(db_session, fund_credit, make_booking, owner, partner)

    async def always_conflicts(session, txn, new_status):
        raise IntegrityError("UPDATE booking_slots", {}, Exception("duplicate key value"))

    monkeypatch.setattr(webhook_service, "settle_transaction", always_conflicts)

    result = await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_x", amount=30000),
        webhook_secret,
    )

    assert result.success is False
    assert result.message == "Payment not applied after a write conflict"
    txn = await _load(Transaction, opened["id"])
    assert txn.status == TransactionStatus.CREATED.value
    assert txn.webhook_verified is False
    assert fake_gateway.refunds == []


@pytest.mark.asyncio
async def test_concurrent_duplicate_captures_apply_once(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    opened = await _open_combined(db_session, fund_credit, make_booking, owner, partner)
    event = _payment_event("payment.captured", opened["gateway_order_id"], "pay_cc", amount=30000)

    results = await asyncio.gather(
        _deliver(event, webhook_secret), _deliver(event, webhook_secret), return_exceptions=True
    )
    # A delivery that errored is redelivered by the gateway
    if any(isinstance(r, Exception) for r in results):
        results = [r for r in results if not isinstance(r, Exception)]
        results.append(await _deliver(event, webhook_secret))

    messages = sorted(r.message for r in results)
    assert messages.count("Payment captured successfully") == 1
    assert all(
        m in ("Payment captured successfully", "Payment already processed") for m in messages
    )
    txn = await _load(Transaction, opened["id"])
    assert txn.status == TransactionStatus.CAPTURED.value
    assert txn.credit_deducted is True
    assert await _balance(owner.id) == 100
    assert len(await _notifications(owner.id, NotificationType.PAYMENT_SUCCESS.value)) == 1
    assert fake_gateway.refunds == []


# ============================================================================
# Full round trip
# ============================================================================


@pytest.mark.asyncio
async def test_book_pay_capture_cancel_round_trip(
    db_session, users, make_booking, fund_credit, fake_gateway, webhook_secret
):
    owner, partner, _, _ = users
    await fund_credit(owner.id, 300)
    booking = await make_booking(owner.id, team1=[owner.id, partner.id])
    opened = await _open(db_session, owner.id, booking, PaymentMethod.COMBINED.value, credit_amount=200)
    assert fake_gateway.orders[-1]["amount"] == 30000

    captured = await _deliver(
        _payment_event("payment.captured", opened["gateway_order_id"], "pay_trip", amount=30000),
        webhook_secret,
    )
    assert captured.message == "Payment captured successfully"
    paid = await _load(Booking, booking.id)
    assert paid.is_paid is True
    assert all(s.is_confirmed for s in paid.slots)
    assert await _balance(owner.id) == 100

    result = await cancellation_service.cancel_booking(booking.id, 100, "Venue closed")

    assert result["refunded_amount"] == 500
    assert result["refunds"] == [{"transaction_id": opened["id"], "user_id": owner.id, "refund": 500}]
    assert await _balance(owner.id) == 600
    assert (await _load(Transaction, opened["id"])).status == TransactionStatus.REFUNDED.value

    cancelled = await _load(Booking, booking.id)
    assert cancelled.kind == BookingKind.CANCELLED.value
    assert not any(s.is_confirmed for s in cancelled.slots)
    assert {
        p.payment_status for p in cancelled.players if p.player_id is not None
    } == {PlayerPaymentStatus.REFUNDED.value}
    assert fake_gateway.refunds == []
