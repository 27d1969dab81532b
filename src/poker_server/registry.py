# src/poker_server/registry.py
import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from .config import PokerSettings
from .deck import build_deck, is_numeric, is_valid_card
from .errors import (
    CommandValidationError,
    InvalidState,
    NotAuthorized,
    RoomNotFound,
    StoryNotFound,
    UserNotFound,
)
from .logger import logger
from .models import (
    JoinCommand,
    JoinExisting,
    RevealResult,
    Room,
    RoomSettings,
    RoomSnapshot,
    Round,
    SettingsUpdate,
    Story,
    StoryDraft,
    User,
    VoteValue,
    utcnow,
)
from .persistence import RoomStore
from .round_controller import RoundController, TimerTicket, mark_estimating

DEFAULT_HOST_AVATAR = "sparky"
DEFAULT_PARTICIPANT_AVATAR = "blazey"


def normalize_code(room_code: str) -> str:
    """Room codes are case-insensitive; they are stored upper-case."""
    return (room_code or "").strip().upper()


@dataclass
class JoinResult:
    room: Room
    user: User
    reconnected: bool


class RoomRegistry:
    """
    Owns every room held in memory and is the only writer of room state.

    Methods are synchronous and assume the caller holds the room's lock
    (see lock_for()) for the whole read-check-write. Each accepted mutation
    is written through to the durable store.
    """

    def __init__(
        self,
        store: RoomStore,
        defaults: Optional[PokerSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: Durable backend every accepted mutation is written to.
            defaults: Deck and countdown defaults for new rooms.
            clock: Source of timestamps, injectable for tests.
        """
        self._rooms: Dict[str, Room] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._store = store
        self._defaults = defaults or PokerSettings()
        self._clock = clock

    # -------------------------- Lookup & locking --------------------------

    def lock_for(self, room_code: str) -> asyncio.Lock:
        """The mutex serializing every command against one room."""
        return self._locks.setdefault(normalize_code(room_code), asyncio.Lock())

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def find_room(self, room_code: str) -> Optional[Room]:
        """
        Retrieves a room from memory, falling back to the durable store.

        A room loaded from the store has every user marked disconnected until
        they reconnect.
        """
        code = normalize_code(room_code)
        if code in self._rooms:
            return self._rooms[code]

        loaded = self._store.load_room(code)
        if loaded:
            for user in loaded.users.values():
                user.connected = False
            self._rooms[code] = loaded
        return loaded

    def get_room(self, room_code: str) -> Room:
        room = self.find_room(room_code)
        if room is None:
            raise RoomNotFound(room_code)
        return room

    def controller(self, room: Room) -> RoundController:
        return RoundController(room, clock=self._clock)

    def _commit(self, room: Room):
        room.updated_at = self._clock()
        self._store.save_room(room)

    def _generate_code(self) -> str:
        length = self._defaults.room_code_length
        code = uuid.uuid4().hex[:length].upper()
        while self.find_room(code):
            logger.warning(f"Room code collision detected, regenerating: {code}")
            code = uuid.uuid4().hex[:length].upper()
        return code

    @staticmethod
    def _require_member(room: Room, user_id: str) -> User:
        user = room.users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    @staticmethod
    def _require_host(room: Room, user_id: str):
        if user_id != room.host_id:
            logger.warning(f"User '{user_id}' attempted a host command in room '{room.code}'.")
            raise NotAuthorized()

    def _require_active_host(self, room_code: str, user_id: str) -> Room:
        room = self.get_room(room_code)
        self._require_host(room, user_id)
        if not room.is_active:
            raise InvalidState(f"Room {room.code} has ended")
        return room

    @staticmethod
    def _require_story(room: Room, story_id: str) -> Story:
        story = room.get_story(story_id)
        if story is None:
            raise StoryNotFound(story_id)
        return story

    @staticmethod
    def _clean_name(name: Optional[str], field: str) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise CommandValidationError(f"{field} is required")
        return cleaned

    # -------------------------- Membership --------------------------

    def create_room(
        self, host_name: str, room_name: Optional[str] = None, avatar_id: Optional[str] = None
    ) -> Tuple[Room, User]:
        """
        Creates a room together with its host.

        Args:
            host_name: Display name of the host. Required.
            room_name: Optional display name; defaults to "Room <CODE>".
            avatar_id: Optional avatar for the host.

        Returns:
            The new Room and its host User.
        """
        display_name = self._clean_name(host_name, "Host name")
        code = self._generate_code()
        host = User(
            id=str(uuid.uuid4()),
            room_code=code,
            display_name=display_name,
            avatar_id=avatar_id or DEFAULT_HOST_AVATAR,
            role="host",
        )
        now = self._clock()
        room = Room(
            code=code,
            name=(room_name or "").strip() or f"Room {code}",
            host_id=host.id,
            settings=RoomSettings(
                deck_type=self._defaults.deck_type,
                include_question_mark=self._defaults.include_question_mark,
                include_coffee=self._defaults.include_coffee,
                countdown_seconds=self._defaults.countdown_seconds,
            ),
            users={host.id: host},
            created_at=now,
            updated_at=now,
        )
        self._rooms[code] = room
        self._commit(room)
        logger.info(f"Created room '{code}' hosted by '{display_name}'.")
        return room, host

    def join(self, command: JoinCommand) -> JoinResult:
        """Dispatches the two join variants."""
        if isinstance(command, JoinExisting):
            room, user = self.reconnect_user(command.room_code, command.user_id)
            return JoinResult(room=room, user=user, reconnected=True)
        room, user = self.join_room(command.room_code, command.display_name, command.avatar_id)
        return JoinResult(room=room, user=user, reconnected=False)

    def join_room(
        self, room_code: str, display_name: str, avatar_id: Optional[str] = None
    ) -> Tuple[Room, User]:
        """Adds a new participant to an active room."""
        room = self.find_room(room_code)
        if room is None or not room.is_active:
            raise RoomNotFound(room_code)
        name = self._clean_name(display_name, "Display name")

        user = User(
            id=str(uuid.uuid4()),
            room_code=room.code,
            display_name=name,
            avatar_id=avatar_id or DEFAULT_PARTICIPANT_AVATAR,
            role="participant",
        )
        room.users[user.id] = user
        self._commit(room)
        logger.info(f"'{name}' ({user.id}) joined room '{room.code}'.")
        return room, user

    def reconnect_user(self, room_code: str, user_id: str) -> Tuple[Room, User]:
        """Marks a known user connected again."""
        room = self.get_room(room_code)
        user = self._require_member(room, user_id)
        user.connected = True
        self._commit(room)
        logger.info(f"'{user.display_name}' reconnected to room '{room.code}'.")
        return room, user

    def disconnect_user(self, room_code: str, user_id: str) -> Optional[User]:
        """Marks a user disconnected. Unknown rooms or users are ignored."""
        room = self.find_room(room_code)
        if room is None or user_id not in room.users:
            return None
        user = room.users[user_id]
        user.connected = False
        self._commit(room)
        logger.info(f"'{user.display_name}' disconnected from room '{room.code}'.")
        return user

    def snapshot(self, room_code: str, user_id: str) -> RoomSnapshot:
        """Full room state as seen by user_id. Votes stay hidden."""
        room = self.get_room(room_code)
        return RoomSnapshot(
            room=room.public_view(),
            users=list(room.users.values()),
            user_id=user_id,
            voting_status=self.controller(room).voting_status(),
            current_round=room.current_round,
            deck=build_deck(room.settings),
        )

    def change_avatar(self, room_code: str, user_id: str, avatar_id: str) -> User:
        room = self.get_room(room_code)
        user = self._require_member(room, user_id)
        user.avatar_id = self._clean_name(avatar_id, "Avatar")
        self._commit(room)
        return user

    # -------------------------- Host commands --------------------------

    def update_settings(self, room_code: str, user_id: str, update: SettingsUpdate) -> RoomSettings:
        """Merges a partial settings update. A running countdown keeps its deadline."""
        room = self._require_active_host(room_code, user_id)
        room.settings = room.settings.model_copy(update=update.model_dump(exclude_none=True))
        self._commit(room)
        logger.info(f"Settings updated in room '{room.code}': {room.settings.model_dump()}")
        return room.settings

    def add_story(self, room_code: str, user_id: str, draft: StoryDraft) -> Story:
        room = self._require_active_host(room_code, user_id)
        story = Story(
            id=str(uuid.uuid4()),
            title=self._clean_name(draft.title, "Story title"),
            description=draft.description.strip(),
            link=draft.link.strip(),
            created_at=self._clock(),
        )
        room.stories.append(story)
        room.votes[story.id] = {}
        self._commit(room)
        logger.info(f"Story '{story.title}' added to room '{room.code}'.")
        return story

    def set_current_story(self, room_code: str, user_id: str, story_id: str) -> Story:
        """
        Selects the story under discussion and marks it estimating.

        This does not start a round; the host sends start_round separately.
        """
        room = self._require_active_host(room_code, user_id)
        story = self._require_story(room, story_id)
        room.current_story_id = story.id
        mark_estimating(room, story)
        self._commit(room)
        return story

    def start_round(self, room_code: str, user_id: str, story_id: str) -> Round:
        """Starts a fresh round for story_id, which also becomes the current story."""
        room = self._require_active_host(room_code, user_id)
        self._require_story(room, story_id)
        new_round = self.controller(room).start_round(story_id)
        if new_round is None:
            raise InvalidState("Cannot start a round now")
        room.current_story_id = story_id
        self._commit(room)
        logger.info(f"Round {new_round.generation} started in room '{room.code}' for story {story_id}.")
        return new_round

    def start_timer(self, room_code: str, user_id: str) -> TimerTicket:
        room = self._require_active_host(room_code, user_id)
        ticket = self.controller(room).start_timer()
        if ticket is None:
            raise InvalidState("No open round to time")
        self._commit(room)
        logger.info(f"Timer started in room '{room.code}': {ticket.countdown_seconds}s.")
        return ticket

    def stop_timer(self, room_code: str, user_id: str) -> Round:
        room = self._require_active_host(room_code, user_id)
        if not self.controller(room).stop_timer():
            raise InvalidState("No running timer")
        self._commit(room)
        return room.current_round

    def auto_lock(self, ticket: TimerTicket) -> Optional[str]:
        """
        Applies an elapsed countdown if its ticket is still current.

        Returns:
            The story id of the locked round, or None for a stale ticket.
        """
        room = self.find_room(ticket.room_code)
        if room is None or not room.is_active:
            return None
        story_id = self.controller(room).auto_lock(ticket)
        if story_id is None:
            logger.debug(f"Ignored stale auto-lock for room '{room.code}'.")
            return None
        self._commit(room)
        logger.info(f"Timer elapsed; round locked in room '{room.code}'.")
        return story_id

    def reveal_votes(self, room_code: str, user_id: str, story_id: Optional[str] = None) -> RevealResult:
        room = self._require_active_host(room_code, user_id)
        result = self.controller(room).reveal(story_id)
        if result is None:
            raise InvalidState("No round to reveal")
        self._commit(room)
        logger.info(f"Votes revealed in room '{room.code}' for story {result.story_id}.")
        return result

    def select_final_estimate(
        self, room_code: str, user_id: str, story_id: str, value: VoteValue
    ) -> Story:
        room = self._require_active_host(room_code, user_id)
        self._require_story(room, story_id)
        if not (is_numeric(value) and value >= 0) and not is_valid_card(room.settings, value):
            raise CommandValidationError(f"Invalid estimate: {value}")
        story = self.controller(room).set_final_estimate(story_id, value)
        self._commit(room)
        logger.info(f"Final estimate {value} recorded for '{story.title}' in room '{room.code}'.")
        return story

    def end_session(self, room_code: str, user_id: str) -> Room:
        room = self._require_active_host(room_code, user_id)
        room.status = "ended"
        self._commit(room)
        logger.info(f"Session ended in room '{room.code}'.")
        return room

    # -------------------------- Member commands --------------------------

    def cast_vote(self, room_code: str, user_id: str, story_id: str, value: VoteValue) -> Dict[str, bool]:
        """
        Records a hidden vote.

        Returns:
            The per-user has-voted projection for the round.
        """
        room = self.get_room(room_code)
        self._require_member(room, user_id)
        if not is_valid_card(room.settings, value):
            raise CommandValidationError(f"Invalid card: {value}")
        status = self.controller(room).cast_vote(user_id, story_id, value)
        if status is None:
            raise InvalidState("Voting is closed")
        self._commit(room)
        return status

    # -------------------------- Retention --------------------------

    def sweep_idle_rooms(self, max_age: timedelta) -> List[str]:
        """
        Removes rooms idle for longer than max_age from memory and the store.
        Rooms whose lock is held are left for the next sweep.

        Returns:
            The codes of the removed rooms.
        """
        cutoff = self._clock() - max_age
        stale = {code for code, room in self._rooms.items() if room.updated_at < cutoff}
        stale.update(self._store.list_idle_rooms(cutoff))
        busy = {code for code in stale if code in self._locks and self._locks[code].locked()}
        if busy:
            logger.debug(f"Skipping busy room(s) in sweep: {sorted(busy)}")
        stale -= busy
        for code in stale:
            self._rooms.pop(code, None)
            self._locks.pop(code, None)
            self._store.delete_room(code)
        if stale:
            logger.info(f"Swept {len(stale)} idle room(s): {sorted(stale)}")
        return sorted(stale)
