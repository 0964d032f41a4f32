"""
Constants used across the booking and payment engine.
"""

# Daily schedule offered by a venue unless it configures its own
VENUE_TIME_SLOTS = [
    "06:00",
    "07:00",
    "08:00",
    "09:00",
    "10:00",
    "11:00",
    "12:00",
    "13:00",
    "14:00",
    "15:00",
    "16:00",
    "17:00",
    "18:00",
    "19:00",
    "20:00",
    "21:00",
    "22:00",
]

MAX_SLOTS_PER_BOOKING = 2
MAX_PLAYERS_PER_TEAM = 2
MIN_TOTAL_PLAYERS = 2
MAX_TOTAL_PLAYERS = 4

# Roster positions per team (team 1 holds player1/player2, team 2 holds player3/player4)
TEAM_POSITIONS = {
    1: ("player1", "player2"),
    2: ("player3", "player4"),
}

DEFAULT_CURRENCY = "INR"
DEFAULT_VENUE_TIMEZONE = "Asia/Kolkata"
DEFAULT_COURT_HOURLY_RATE = 1200

# Gateway amounts are in minor units (paise)
MINOR_UNITS_PER_MAJOR = 100

# Join-flow equipment rental
RACKET_RENT_PRICE = 100
BALL_RENT_PRICE = 50

INVOICE_PREFIX = "INV"
