"""
Shared pytest configuration for courtbook tests.

Defaults to a throwaway SQLite file through aiosqlite; point TEST_DATABASE_URL
at PostgreSQL to run against the production dialect.

SAFETY: This module REFUSES to run against any database whose name does not
contain the substring "test".  This prevents accidental drop of the
development or production database when environment variables are missing
or misconfigured.
"""

import os

os.environ.setdefault("ENV", "test")

import asyncio
import uuid
from datetime import date, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from courtbook.database.db import Base
from courtbook.database.models import CreditAccount, Court, User, Venue
from courtbook.services import booking_service, gateway

WEBHOOK_SECRET = "test-webhook-secret"


def _resolve_test_database_url() -> str:
    """Build the test database URL with safety checks.

    Raises ``RuntimeError`` if the resolved URL does not point to a database
    whose name contains "test".
    """
    url = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///./courtbook_test.db")

    # ── Safety gate: database name MUST contain "test" ──────────────────
    db_name = url.rsplit("/", 1)[-1].split("?")[0]  # strip query params
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Resolved URL: {url}\n\n"
            f"  Fix: set TEST_DATABASE_URL to a test database, e.g.:\n"
            f"    export TEST_DATABASE_URL=postgresql+asyncpg://.../{db_name}_test\n"
            f"{'=' * 70}"
        )

    return url


# Validated at import time so pytest fails immediately with a clear message
TEST_DATABASE_URL = _resolve_test_database_url()


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Fresh schema per test on its own engine."""
    # NullPool avoids connection reuse across event loops
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Services that own their unit of work (webhooks, cancellation, reaper)
    # open sessions through db.AsyncSessionLocal; point it at the test engine
    from courtbook.database import db

    test_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = test_session_maker

    yield engine

    db.AsyncSessionLocal = original_async_session_local

    try:
        await asyncio.sleep(0.05)  # Let connections finish
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
        except Exception:
            pass  # Ignore errors during cleanup
        await engine.dispose(close=True)
    except Exception:
        pass  # Ignore cleanup errors


@pytest_asyncio.fixture
async def db_session(test_engine):
    """
    Test database session.

    Commit fixture data before calling a service that opens its own session.
    """
    async_session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            try:
                await session.rollback()
            except Exception:
                pass
            try:
                await session.close()
            except Exception:
                pass


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


def _unique_phone():
    """Generate a unique phone number to avoid collisions between tests."""
    return f"+9199{uuid.uuid4().hex[:8]}"


@pytest_asyncio.fixture
async def users(db_session):
    """Owner, partner, rival and joiner accounts."""
    people = [
        User(full_name=name, phone_number=_unique_phone(), email=f"{name.lower()}@example.com")
        for name in ("Owner", "Partner", "Rival", "Joiner")
    ]
    db_session.add_all(people)
    await db_session.commit()
    return people


@pytest_asyncio.fixture
async def court(db_session):
    """An active court (hourly rate 500) at an active venue."""
    venue = Venue(name="Test Arena", city="Pune", timezone="Asia/Kolkata", is_active=True)
    db_session.add(venue)
    await db_session.flush()
    court = Court(venue_id=venue.id, name="Court 1", sport="Padel", hourly_rate=500)
    db_session.add(court)
    await db_session.commit()
    return court


@pytest.fixture
def booking_day():
    """A date comfortably in the future at any venue timezone."""
    return date.today() + timedelta(days=7)


@pytest_asyncio.fixture
async def fund_credit(db_session):
    """Give a user a stored-credit balance."""

    async def _fund(user_id: int, balance: int) -> CreditAccount:
        account = await db_session.get(CreditAccount, user_id)
        if account is None:
            account = CreditAccount(user_id=user_id, balance=balance)
            db_session.add(account)
        else:
            account.balance = balance
        await db_session.commit()
        return account

    return _fund


@pytest_asyncio.fixture
async def make_booking(db_session, court, booking_day):
    """Create and commit a pending booking on the test court."""

    async def _make(owner_id, slots=("18:00",), team1=None, team2=(), day=None, **kwargs):
        booking = await booking_service.create_booking(
            db_session,
            owner_user_id=owner_id,
            venue_id=court.venue_id,
            court_id=court.id,
            booking_date=day or booking_day,
            slots=list(slots),
            team1=team1 if team1 is not None else [owner_id, None],
            team2=team2,
            **kwargs,
        )
        await db_session.commit()
        return booking

    return _make


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class FakeGateway:
    """In-memory gateway recording orders and refunds."""

    def __init__(self):
        self.orders = []
        self.refunds = []

    async def create_order(self, amount_minor, receipt, notes=None, currency="INR"):
        order = {
            "id": f"order_{uuid.uuid4().hex[:12]}",
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": dict(notes or {}),
        }
        self.orders.append(order)
        return order

    async def issue_refund(self, payment_id, amount_minor=None, notes=None):
        refund = {
            "id": f"rfnd_{uuid.uuid4().hex[:12]}",
            "payment_id": payment_id,
            "amount": amount_minor,
            "notes": dict(notes or {}),
        }
        self.refunds.append(refund)
        return refund


@pytest.fixture
def fake_gateway():
    """Install a FakeGateway as the process-wide gateway."""
    fake = FakeGateway()
    gateway.set_gateway(fake)
    yield fake
    gateway.set_gateway(None)


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(gateway, "GATEWAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET
