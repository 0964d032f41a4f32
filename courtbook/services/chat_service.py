"""
Group chat membership for paid bookings.

Only membership is managed here; message transport lives elsewhere.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courtbook.database.models import Booking, ChatGroup, ChatMember

logger = logging.getLogger(__name__)


async def get_booking_group(session: AsyncSession, booking_id: int) -> Optional[ChatGroup]:
    result = await session.execute(select(ChatGroup).where(ChatGroup.booking_id == booking_id))
    return result.scalar_one_or_none()


def add_member(group: ChatGroup, user_id: Optional[int]) -> bool:
    """Add a user to a group if absent. Returns True when a member was added."""
    if not user_id:
        return False
    if any(member.user_id == user_id for member in group.members):
        return False
    group.members.append(ChatMember(user_id=user_id))
    return True


async def ensure_booking_group(
    session: AsyncSession, booking: Booking, member_ids: Iterable[int] = ()
) -> ChatGroup:
    """
    Make sure the booking has a chat group holding its owner, every roster
    player and any extra ``member_ids``.
    """
    group = await get_booking_group(session, booking.id)
    if group is None:
        group = ChatGroup(
            booking_id=booking.id,
            name=f"Game #{booking.id} on {booking.booking_date.isoformat()}",
            admin_user_id=booking.owner_user_id,
            members=[],
        )
        session.add(group)
        logger.info(f"Created chat group for booking {booking.id}")

    wanted = [booking.owner_user_id]
    wanted.extend(player.player_id for player in booking.players)
    wanted.extend(member_ids)
    for user_id in dict.fromkeys(wanted):
        add_member(group, user_id)
    await session.flush()
    return group
