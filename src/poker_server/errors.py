# src/poker_server/errors.py
"""
Exceptions raised by the room registry and surfaced by the gateway.

Every error carries a client-safe message. NotFound, NotAuthorized and
validation failures are reported to the originating connection; InvalidState
is a benign race (e.g. a vote arriving just after the round locked) and is
only logged.
"""


class PokerError(Exception):
    """Base class for all planning poker errors."""
    http_status = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ============ NotFound ============

class NotFound(PokerError):
    """A room, user or story reference does not resolve."""
    http_status = 404


class RoomNotFound(NotFound):
    def __init__(self, room_code: str):
        self.room_code = room_code
        super().__init__("Room not found")


class UserNotFound(NotFound):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("User not found")


class StoryNotFound(NotFound):
    def __init__(self, story_id: str):
        self.story_id = story_id
        super().__init__("Story not found")


# ============ Authorization ============

class NotAuthorized(PokerError):
    """A non-host attempted a host-only command."""
    http_status = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


# ============ State ============

class InvalidState(PokerError):
    """The command is not legal for the room's current round state."""
    http_status = 409


# ============ Validation ============

class CommandValidationError(PokerError):
    """Missing or malformed command fields (empty name, blank title, bad card)."""
    http_status = 400
