"""
Roster seats addressed by (team, position).

Both teams live in one arena of ``BookingPlayer`` rows; nothing in the
engine keeps parallel per-team lists.
"""

from typing import Dict, Iterable, List, NamedTuple, Optional

from courtbook.database.models import (
    Booking,
    BookingPlayer,
    PaidBy,
    PlayerPaymentStatus,
)
from courtbook.services.exceptions import ValidationError
from courtbook.utils.constants import TEAM_POSITIONS


class TeamSlot(NamedTuple):
    team: int
    position: str


def team_slot(team, position) -> TeamSlot:
    """
    Build a validated seat address.

    Raises:
        ValidationError: If the team is not 1/2 or the position does not belong to it
    """
    try:
        team = int(team)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid team: {team!r}")
    if team not in TEAM_POSITIONS:
        raise ValidationError(f"Invalid team: {team}")
    if position not in TEAM_POSITIONS[team]:
        raise ValidationError(
            f"Position {position!r} does not belong to team {team}",
            details={"allowed": list(TEAM_POSITIONS[team])},
        )
    return TeamSlot(team, position)


def seats_for_team(team: int, player_ids: List[Optional[int]]) -> List[Dict]:
    """Assign positions in order to a team's submitted player list."""
    positions = TEAM_POSITIONS[team]
    return [
        {"team": team, "position": positions[index], "player_id": player_id}
        for index, player_id in enumerate(player_ids)
    ]


def find_seat(booking: Booking, seat: TeamSlot) -> Optional[BookingPlayer]:
    for player in booking.players:
        if player.team == seat.team and player.position == seat.position:
            return player
    return None


def seat_is_taken(booking: Booking, seat: TeamSlot) -> bool:
    """A seat is taken when a real player (not a placeholder) holds it."""
    occupant = find_seat(booking, seat)
    return occupant is not None and occupant.player_id is not None


def upsert_seat(booking: Booking, seat: TeamSlot, player_id: int, **fields) -> BookingPlayer:
    """
    Put a player into an exact seat.

    Replaces the current occupant (placeholder or otherwise) when the seat
    exists; inserts a new roster entry otherwise.
    """
    entry = find_seat(booking, seat)
    if entry is None:
        entry = BookingPlayer(team=seat.team, position=seat.position)
        booking.players.append(entry)
    entry.player_id = player_id
    entry.payment_status = fields.get("payment_status", PlayerPaymentStatus.PENDING.value)
    entry.paid_by = fields.get("paid_by", PaidBy.SELF.value)
    entry.player_payment = fields.get("player_payment", 0)
    entry.transaction_id = fields.get("transaction_id")
    entry.rackets = fields.get("rackets", 0)
    entry.balls = fields.get("balls", 0)
    return entry


def player_ids(booking: Booking) -> List[int]:
    return [p.player_id for p in booking.players if p.player_id is not None]


def team_players(booking: Booking, team: int) -> List[BookingPlayer]:
    return [p for p in booking.players if p.team == team]


def funding_transaction_ids(booking: Booking) -> List[int]:
    """Distinct funding transaction ids across both teams, in seat order."""
    return list(dict.fromkeys(p.transaction_id for p in booking.players if p.transaction_id))


def mark_paid(booking: Booking, paid_for: Iterable[int], transaction_id: int) -> int:
    """
    Mark roster entries of the paid-for players as Paid by a transaction.

    Returns:
        Number of entries updated
    """
    paid_for = set(paid_for or ())
    updated = 0
    for entry in booking.players:
        if entry.player_id is not None and entry.player_id in paid_for:
            entry.payment_status = PlayerPaymentStatus.PAID.value
            entry.transaction_id = transaction_id
            updated += 1
    return updated
