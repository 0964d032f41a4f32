"""
Slot pricing lookup.

Precedence for a (court, date, slot): an active per-date dynamic override,
then the active day-type (weekday/weekend) slot price, then the court's
base hourly rate.
"""

import logging
from datetime import date
from typing import Dict, Iterable

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.models import Court, DayType, DayTypePrice, DynamicPrice
from courtbook.utils.datetime_utils import is_weekend

logger = logging.getLogger(__name__)


def day_type_for(day: date) -> str:
    return DayType.WEEKEND.value if is_weekend(day) else DayType.WEEKDAY.value


async def get_slot_price(session: AsyncSession, court: Court, day: date, slot: str) -> int:
    """
    Price of one slot on a court for a date.

    Args:
        session: Database session
        court: Court ORM object (its hourly_rate is the last fallback)
        day: Booking date
        slot: Slot label ("HH:MM")

    Returns:
        Price in major currency units
    """
    dynamic = await session.execute(
        select(DynamicPrice.price).where(
            and_(
                DynamicPrice.court_id == court.id,
                DynamicPrice.price_date == day,
                DynamicPrice.slot == slot,
                DynamicPrice.is_active == True,  # noqa: E712
            )
        )
    )
    price = dynamic.scalar_one_or_none()
    if price is not None:
        return price

    by_day_type = await session.execute(
        select(DayTypePrice.price).where(
            and_(
                DayTypePrice.day_type == day_type_for(day),
                DayTypePrice.slot == slot,
                DayTypePrice.is_active == True,  # noqa: E712
            )
        )
    )
    price = by_day_type.scalar_one_or_none()
    if price is not None:
        return price

    return court.hourly_rate


async def get_booking_price(
    session: AsyncSession, court: Court, day: date, slots: Iterable[str]
) -> Dict:
    """
    Total price for a set of slots.

    Returns:
        Dict with ``slot_prices`` (slot -> price) and ``total``
    """
    slot_prices = {}
    for slot in slots:
        slot_prices[slot] = await get_slot_price(session, court, day, slot)
    total = sum(slot_prices.values())
    logger.debug(f"Priced court {court.id} on {day} slots {list(slot_prices)}: {total}")
    return {"slot_prices": slot_prices, "total": total}
