"""
SQLAlchemy ORM models for the court booking and payment engine.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Date,
    DateTime,
    JSON,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from courtbook.database.db import Base
from courtbook.utils.constants import (
    DEFAULT_CURRENCY,
    DEFAULT_COURT_HOURLY_RATE,
    DEFAULT_VENUE_TIMEZONE,
)
from courtbook.utils.datetime_utils import utcnow


class BookingKind(str, enum.Enum):
    """Booking kind enum."""

    BOOKING = "Booking"
    COMPLETE = "Complete"
    CANCELLED = "Cancelled"


class GameType(str, enum.Enum):
    """Booking visibility."""

    PUBLIC = "Public"
    PRIVATE = "Private"


class PlayerPaymentStatus(str, enum.Enum):
    """Per-roster-entry payment sub-status."""

    PENDING = "Pending"
    PAID = "Paid"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"


class PaidBy(str, enum.Enum):
    """Who pays for a roster entry."""

    SELF = "Self"
    USER = "User"


class TransactionStatus(str, enum.Enum):
    """Transaction lifecycle status."""

    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    ABANDONED = "abandoned"


class PaymentMethod(str, enum.Enum):
    """How a transaction is funded."""

    CREDIT = "credit"
    GATEWAY = "gateway"
    COMBINED = "combined"
    IN_PERSON = "in_person"


class BookingRequestStatus(str, enum.Enum):
    """Join request status enum."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"


class DayType(str, enum.Enum):
    """Day type used by slot price lists."""

    WEEKDAY = "weekday"
    WEEKEND = "weekend"


class NotificationType(str, enum.Enum):
    """Notification type enum."""

    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CONFLICT = "payment_conflict"
    GAME_BOOKED = "game_booked"
    PLAYER_JOINED = "player_joined"
    JOIN_REQUEST = "join_request"
    JOIN_REQUEST_ACCEPTED = "join_request_accepted"
    JOIN_REQUEST_REJECTED = "join_request_rejected"
    JOIN_COMPLETED = "join_completed"
    REFUND_COMPLETED = "refund_completed"
    REFUND_FAILED = "refund_failed"
    BOOKING_CANCELLED = "booking_cancelled"


class User(Base):
    """User accounts (players and booking owners)."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone_number = Column(String, nullable=True, unique=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    credit_account = relationship("CreditAccount", back_populates="user", uselist=False)

    __table_args__ = (Index("idx_users_phone", "phone_number"),)


class CreditAccount(Base):
    """Stored-credit balance per user (one-to-one)."""

    __tablename__ = "credit_accounts"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="credit_account")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
    )


class Venue(Base):
    """Venues hosting one or more courts."""

    __tablename__ = "venues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    address = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    image = Column(String, nullable=True)
    timezone = Column(String, nullable=False, default=DEFAULT_VENUE_TIMEZONE)
    time_slots = Column(JSON, nullable=True)  # Configured daily schedule; None means the default schedule
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    courts = relationship("Court", back_populates="venue")

    __table_args__ = (Index("idx_venues_is_active", "is_active"),)


class Court(Base):
    """Bookable courts belonging to a venue."""

    __tablename__ = "courts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    venue_id = Column(Integer, ForeignKey("venues.id"), nullable=False)
    name = Column(String, nullable=False)
    sport = Column(String(50), nullable=True)  # 'Padel', 'Pickleball'
    hourly_rate = Column(Integer, nullable=False, default=DEFAULT_COURT_HOURLY_RATE)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    venue = relationship("Venue", back_populates="courts")

    __table_args__ = (
        UniqueConstraint("venue_id", "name", name="uq_courts_venue_name"),
        Index("idx_courts_venue_active", "venue_id", "is_active"),
    )


class DayTypePrice(Base):
    """Slot price list per day type (weekday/weekend)."""

    __tablename__ = "day_type_prices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    day_type = Column(String(20), nullable=False)  # DayType enum value
    slot = Column(String(5), nullable=False)
    price = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("day_type", "slot", name="uq_day_type_prices_day_slot"),
        CheckConstraint("price >= 0", name="ck_day_type_prices_price"),
    )


class DynamicPrice(Base):
    """Per-date price override for a court slot."""

    __tablename__ = "dynamic_prices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    court_id = Column(Integer, ForeignKey("courts.id", ondelete="CASCADE"), nullable=False)
    price_date = Column(Date, nullable=False)
    slot = Column(String(5), nullable=False)
    price = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("court_id", "price_date", "slot", name="uq_dynamic_prices_court_date_slot"),
        CheckConstraint("price >= 0", name="ck_dynamic_prices_price"),
    )


class Booking(Base):
    """A court reservation for one or two slots on a date."""

    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    venue_id = Column(Integer, ForeignKey("venues.id"), nullable=False)
    court_id = Column(Integer, ForeignKey("courts.id"), nullable=False)
    booking_date = Column(Date, nullable=False)
    game_type = Column(String(20), nullable=False, default=GameType.PRIVATE.value)
    ask_to_join = Column(Boolean, default=False, nullable=False)
    is_competitive = Column(Boolean, default=False, nullable=False)
    skill_required = Column(Integer, default=0, nullable=False)
    kind = Column(String(20), nullable=False, default=BookingKind.BOOKING.value)
    is_paid = Column(Boolean, default=False, nullable=False)
    amount = Column(Integer, nullable=False, default=0)
    invoice_number = Column(String(32), nullable=True, unique=True)
    cancellation_reason = Column(Text, nullable=True)
    refunded_amount = Column(Integer, nullable=False, default=0)  # Total credited on cancellation
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    owner = relationship("User", foreign_keys=[owner_user_id])
    venue = relationship("Venue")
    court = relationship("Court")
    slots = relationship(
        "BookingSlot",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingSlot.slot",
        lazy="selectin",
    )
    players = relationship(
        "BookingPlayer",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingPlayer.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint(
            "kind IN ('Booking', 'Complete', 'Cancelled')", name="ck_bookings_kind"
        ),
        Index("idx_bookings_court_date", "court_id", "booking_date"),
        Index("idx_bookings_owner_date", "owner_user_id", "booking_date"),
    )


class BookingSlot(Base):
    """
    One row per (booking, slot).

    ``is_confirmed`` is set when the booking is paid and cleared when it is
    cancelled. The partial unique index makes the database the final arbiter
    of "one confirmed booking per court/date/slot".
    """

    __tablename__ = "booking_slots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    court_id = Column(Integer, ForeignKey("courts.id"), nullable=False)
    slot_date = Column(Date, nullable=False)
    slot = Column(String(5), nullable=False)
    is_confirmed = Column(Boolean, default=False, nullable=False)

    # Relationships
    booking = relationship("Booking", back_populates="slots")

    __table_args__ = (
        UniqueConstraint("booking_id", "slot", name="uq_booking_slots_booking_slot"),
        Index(
            "uq_booking_slots_confirmed",
            "court_id",
            "slot_date",
            "slot",
            unique=True,
            postgresql_where=text("is_confirmed"),
            sqlite_where=text("is_confirmed = 1"),
        ),
        Index("idx_booking_slots_court_date", "court_id", "slot_date"),
    )


class BookingPlayer(Base):
    """Roster entry addressed by (booking, team, position)."""

    __tablename__ = "booking_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    team = Column(Integer, nullable=False)  # 1 or 2
    position = Column(String(10), nullable=False)  # player1..player4
    player_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # None = open/placeholder seat
    payment_status = Column(String(20), nullable=False, default=PlayerPaymentStatus.PENDING.value)
    paid_by = Column(String(10), nullable=False, default=PaidBy.SELF.value)
    player_payment = Column(Integer, nullable=False, default=0)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    rackets = Column(Integer, nullable=False, default=0)
    balls = Column(Integer, nullable=False, default=0)

    # Relationships
    booking = relationship("Booking", back_populates="players")
    player = relationship("User", foreign_keys=[player_id])

    __table_args__ = (
        UniqueConstraint("booking_id", "team", "position", name="uq_booking_players_seat"),
        CheckConstraint("team IN (1, 2)", name="ck_booking_players_team"),
        Index("idx_booking_players_player", "player_id", "payment_status"),
        Index("idx_booking_players_transaction", "transaction_id"),
    )


class Transaction(Base):
    """Payment intent and ledger entry."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    parent_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    paid_for = Column(JSON, nullable=False, default=list)  # User ids covered by this payment
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default=DEFAULT_CURRENCY)
    status = Column(String(20), nullable=False, default=TransactionStatus.CREATED.value)
    method = Column(String(20), nullable=False)
    credit_used = Column(Integer, nullable=False, default=0)
    credit_reserved = Column(Boolean, nullable=False, default=False)
    credit_deducted = Column(Boolean, nullable=False, default=False)
    gateway_order_id = Column(String(64), nullable=True, unique=True)
    gateway_payment_id = Column(String(64), nullable=True)
    gateway_signature = Column(String(128), nullable=True)
    webhook_verified = Column(Boolean, nullable=False, default=False)
    notes = Column(JSON, nullable=False, default=dict)  # Join-request correlation etc.
    refunded_amount = Column(Integer, nullable=False, default=0)
    refund_id = Column(String(64), nullable=True)
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", foreign_keys=[user_id])
    booking_links = relationship(
        "TransactionBooking", back_populates="transaction", cascade="all, delete-orphan", lazy="selectin"
    )
    parent = relationship("Transaction", remote_side="Transaction.id")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'authorized', 'captured', 'failed', 'refunded', 'abandoned')",
            name="ck_transactions_status",
        ),
        CheckConstraint(
            "method IN ('credit', 'gateway', 'combined', 'in_person')",
            name="ck_transactions_method",
        ),
        CheckConstraint("credit_used >= 0", name="ck_transactions_credit_used"),
        Index("idx_transactions_user", "user_id"),
        Index("idx_transactions_payment", "gateway_payment_id"),
        Index("idx_transactions_status_method_created", "status", "method", "created_at"),
    )

    @property
    def booking_ids(self):
        return [link.booking_id for link in self.booking_links]


class TransactionBooking(Base):
    """Link between a transaction and the bookings it pays for."""

    __tablename__ = "transaction_bookings"

    transaction_id = Column(
        Integer, ForeignKey("transactions.id", ondelete="CASCADE"), primary_key=True
    )
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True)

    # Relationships
    transaction = relationship("Transaction", back_populates="booking_links")
    booking = relationship("Booking")

    __table_args__ = (Index("idx_transaction_bookings_booking", "booking_id"),)


class BookingRequest(Base):
    """Request by a user to join an open seat of a booking."""

    __tablename__ = "booking_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    requested_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    requested_team = Column(Integer, nullable=False)
    requested_position = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default=BookingRequestStatus.PENDING.value)
    rented_rackets = Column(Integer, nullable=False, default=0)
    rented_balls = Column(Integer, nullable=False, default=0)
    player_payment = Column(Integer, nullable=False, default=0)
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    booking = relationship("Booking")
    requester = relationship("User", foreign_keys=[requested_by])

    __table_args__ = (
        UniqueConstraint(
            "booking_id", "requested_by", "requested_position", name="uq_booking_requests_seat"
        ),
        CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected', 'completed')",
            name="ck_booking_requests_status",
        ),
        Index("idx_booking_requests_booking", "booking_id", "status"),
    )


class InvoiceCounter(Base):
    """Monotonic invoice sequence per calendar year."""

    __tablename__ = "invoice_counters"

    year = Column(Integer, primary_key=True)
    seq = Column(Integer, nullable=False, default=0)


class ChatGroup(Base):
    """Group chat attached to a paid booking."""

    __tablename__ = "chat_groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True)
    name = Column(String, nullable=False)
    image = Column(String, nullable=True)
    admin_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    members = relationship(
        "ChatMember", back_populates="group", cascade="all, delete-orphan", lazy="selectin"
    )


class ChatMember(Base):
    """Membership of a user in a chat group."""

    __tablename__ = "chat_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(Integer, ForeignKey("chat_groups.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    group = relationship("ChatGroup", back_populates="members")

    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_chat_members_group_user"),)


class Notification(Base):
    """User notifications for in-app messaging."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    type = Column(String, nullable=False)  # NotificationType enum value
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(
        Text, nullable=True
    )  # JSON string for flexible metadata (booking_id, transaction_id, etc.)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    link_url = Column(String(500), nullable=True)  # Navigation target
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # Relationships
    user = relationship("User", backref="notifications")

    __table_args__ = (
        Index("idx_notifications_user_unread", "user_id", "is_read", "created_at"),
        Index("idx_notifications_user_created", "user_id", "created_at"),
    )
