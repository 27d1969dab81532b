# src/poker_server/models.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model that speaks camelCase on the wire and snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self, **kwargs) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", **kwargs)


# A card value: a number, or a sentinel symbol such as "?" or "☕".
VoteValue = Union[StrictInt, StrictFloat, StrictStr]

UserRole = Literal["host", "participant"]
StoryStatus = Literal["pending", "estimating", "estimated"]
RoomStatus = Literal["active", "ended"]

# ===================================================================
# Core Room State Models
# ===================================================================
# The Room owns its users, stories, current round and hidden votes.
# The whole Room is what gets written to the durable store.

class RoomSettings(CamelModel):
    deck_type: Literal["fibonacci"] = "fibonacci"
    include_question_mark: bool = True
    include_coffee: bool = True
    countdown_seconds: int = Field(60, ge=1, le=3600)


class User(CamelModel):
    id: str
    room_code: str
    display_name: str
    avatar_id: str
    role: UserRole = "participant"
    connected: bool = True


class Story(CamelModel):
    id: str
    title: str
    description: str = ""
    link: str = ""
    status: StoryStatus = "pending"
    final_estimate: Optional[VoteValue] = None
    created_at: datetime = Field(default_factory=utcnow)


class Round(CamelModel):
    """
    One estimation attempt for one story. A new Round replaces the old one
    wholesale; `generation` identifies it for deferred timer callbacks and
    `timer_generation` identifies the latest start/stop of its countdown.
    """
    story_id: str
    generation: int
    started_at: datetime = Field(default_factory=utcnow)
    timer_started_at: Optional[datetime] = None
    timer_ends_at: Optional[datetime] = None
    timer_generation: int = 0
    revealed: bool = False
    locked: bool = False


class Vote(CamelModel):
    value: VoteValue
    timestamp: datetime = Field(default_factory=utcnow)


class Room(CamelModel):
    code: str
    name: str
    host_id: str
    settings: RoomSettings = Field(default_factory=RoomSettings)
    users: Dict[str, User] = Field(default_factory=dict)
    stories: List[Story] = Field(default_factory=list)
    current_story_id: Optional[str] = None
    current_round: Optional[Round] = None
    round_generation: int = 0
    votes: Dict[str, Dict[str, Vote]] = Field(default_factory=dict)
    status: RoomStatus = "active"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def get_story(self, story_id: str) -> Optional[Story]:
        return next((s for s in self.stories if s.id == story_id), None)

    def public_view(self) -> Dict[str, Any]:
        """The room as clients may see it: no hidden votes, no membership."""
        return self.to_wire(exclude={"votes", "users", "round_generation"})


# ===================================================================
# Reveal Results
# ===================================================================

class VoteSummary(CamelModel):
    min: Optional[Union[StrictInt, StrictFloat]] = None
    max: Optional[Union[StrictInt, StrictFloat]] = None
    average: Optional[float] = None
    mode: Optional[Union[StrictInt, StrictFloat]] = None
    consensus: bool = False


class RevealResult(CamelModel):
    story_id: str
    votes: Dict[str, VoteValue]
    summary: VoteSummary


class RoomSnapshot(CamelModel):
    """Full state sent to a connection when it joins or reconnects."""
    room: Dict[str, Any]
    users: List[User]
    user_id: str
    voting_status: Dict[str, bool]
    current_round: Optional[Round]
    deck: List[VoteValue]


# ===================================================================
# Command Payloads
# ===================================================================
# Payloads carried inside WSIncomingMessage.payload, one model per command.

class JoinNew(CamelModel):
    """First-time join: the server allocates a new participant."""
    variant: Literal["new"] = "new"
    room_code: str
    display_name: str
    avatar_id: Optional[str] = None


class JoinExisting(CamelModel):
    """Reconnect with an id the client already holds (host or participant)."""
    variant: Literal["existing"] = "existing"
    room_code: str
    user_id: str = Field(validation_alias=AliasChoices("userId", "hostUserId", "user_id"))


JoinCommand = Union[JoinNew, JoinExisting]


class RoomCommand(CamelModel):
    room_code: str


class ChangeAvatarCommand(RoomCommand):
    avatar_id: str


class SettingsUpdate(CamelModel):
    deck_type: Optional[Literal["fibonacci"]] = None
    include_question_mark: Optional[bool] = None
    include_coffee: Optional[bool] = None
    countdown_seconds: Optional[int] = Field(None, ge=1, le=3600)


class UpdateSettingsCommand(RoomCommand):
    settings: SettingsUpdate


class StoryDraft(CamelModel):
    title: str = ""
    description: str = ""
    link: str = ""


class AddStoryCommand(RoomCommand):
    story: StoryDraft


class StoryCommand(RoomCommand):
    story_id: str


class RevealCommand(RoomCommand):
    story_id: Optional[str] = None


class CastVoteCommand(RoomCommand):
    story_id: str
    value: VoteValue


class SelectFinalEstimateCommand(RoomCommand):
    story_id: str
    value: VoteValue


# ===================================================================
# HTTP Models
# ===================================================================

class CreateRoomRequest(CamelModel):
    host_name: str
    room_name: Optional[str] = None
    avatar_id: Optional[str] = None


# ===================================================================
# WebSocket Protocol Models
# ===================================================================
# These models define the contract for messages sent between the
# server and the clients over the WebSocket connection.

class WSIncomingMessage(BaseModel):
    """A message received from a client."""
    kind: Literal[
        "join_room",
        "host_join_room",
        "rejoin_room",
        "change_avatar",
        "update_room_settings",
        "add_story",
        "set_current_story",
        "start_round",
        "start_timer",
        "stop_timer",
        "cast_vote",
        "reveal_votes",
        "select_final_estimate",
        "end_session",
    ]
    payload: Dict[str, Any] = Field(default_factory=dict)


class WSOutgoingMessage(BaseModel):
    """A message sent from the server to clients."""
    kind: Literal[
        "room_state",
        "user_joined",
        "user_disconnected",
        "user_reconnected",
        "user_updated",
        "room_settings_updated",
        "story_added",
        "current_story_changed",
        "round_started",
        "timer_started",
        "timer_stopped",
        "voting_status_updated",
        "vote_confirmed",
        "round_locked",
        "votes_revealed",
        "final_estimate_selected",
        "session_ended",
        "error",
    ]
    payload: Dict[str, Any] = Field(default_factory=dict)
