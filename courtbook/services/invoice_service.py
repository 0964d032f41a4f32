"""
Invoice numbering: INV-<year>-<seq>, monotonic per calendar year.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.models import Booking, InvoiceCounter
from courtbook.utils.constants import INVOICE_PREFIX
from courtbook.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


def format_invoice_number(year: int, seq: int) -> str:
    return f"{INVOICE_PREFIX}-{year}-{seq:05d}"


async def next_invoice_number(session: AsyncSession, year: Optional[int] = None) -> str:
    """
    Allocate the next invoice number for a year.

    The counter row is locked for the rest of the caller's transaction so two
    payments confirming at once cannot draw the same number.
    """
    year = year or utcnow().year
    result = await session.execute(
        select(InvoiceCounter).where(InvoiceCounter.year == year).with_for_update()
    )
    counter = result.scalar_one_or_none()
    if counter is None:
        counter = InvoiceCounter(year=year, seq=0)
        session.add(counter)
    counter.seq += 1
    await session.flush()
    return format_invoice_number(year, counter.seq)


async def assign_invoice_number(session: AsyncSession, booking: Booking) -> bool:
    """Assign an invoice number to a booking unless it already has one."""
    if booking.invoice_number:
        return False
    booking.invoice_number = await next_invoice_number(session)
    logger.info(f"Assigned invoice {booking.invoice_number} to booking {booking.id}")
    return True
