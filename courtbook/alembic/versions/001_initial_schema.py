"""001_initial_schema

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00.000000

Creates the booking and payment schema from the current models:
- Accounts: users, credit_accounts
- Venues: venues, courts, day_type_prices, dynamic_prices
- Bookings: bookings, booking_slots (partial unique index on confirmed slots),
  booking_players, booking_requests, invoice_counters
- Payments: transactions, transaction_bookings
- Collaborators: chat_groups, chat_members, notifications
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from scratch."""
    # Import models to register them with Base.metadata
    from courtbook.database.db import Base
    from courtbook.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.create_all(bind=bind, checkfirst=True)


def downgrade() -> None:
    """Drop all tables."""
    from courtbook.database.db import Base
    from courtbook.database import models  # noqa: F401

    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind, checkfirst=True)
