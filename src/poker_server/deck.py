# src/poker_server/deck.py
from typing import List

from .models import RoomSettings, VoteValue

FIBONACCI_VALUES: List[VoteValue] = [0, 1, 2, 3, 5, 8, 13, 21]

UNKNOWN_CARD = "?"
COFFEE_CARD = "☕"


def build_deck(settings: RoomSettings) -> List[VoteValue]:
    """
    Returns the cards available in a room, in display order.

    Args:
        settings: The room's current settings.

    Returns:
        The numeric Fibonacci cards followed by whichever sentinel cards
        the room has enabled.
    """
    deck: List[VoteValue] = list(FIBONACCI_VALUES)
    if settings.include_question_mark:
        deck.append(UNKNOWN_CARD)
    if settings.include_coffee:
        deck.append(COFFEE_CARD)
    return deck


def is_numeric(value: VoteValue) -> bool:
    """Numeric cards count toward the summary; sentinels only toward turnout."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_valid_card(settings: RoomSettings, value: VoteValue) -> bool:
    if is_numeric(value):
        return value in FIBONACCI_VALUES
    return value in build_deck(settings)
