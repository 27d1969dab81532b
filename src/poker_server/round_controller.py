# src/poker_server/round_controller.py
"""
Round state machine for a single room.

    NoRound -> Voting -> Locked -> Revealed

A new round may start from any state and always replaces the current one.
Transitions attempted from the wrong state return None (or False) and leave
the room untouched; the registry decides what, if anything, to tell the
client.

The countdown auto-lock is the one transition that is not driven by a
command. start_timer() hands back a TimerTicket naming the round generation
and timer generation it was issued for; auto_lock() only applies a ticket
that still names the current round and its latest timer. Starting a new
round, restarting or stopping the timer, or revealing all make older tickets
inert, so cancelling the scheduled callback is best-effort only.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from .models import RevealResult, Room, Round, Story, VoteValue, utcnow
from .vote_ledger import VoteLedger


class RoundState(str, Enum):
    NO_ROUND = "no_round"
    VOTING = "voting"
    LOCKED = "locked"
    REVEALED = "revealed"


@dataclass(frozen=True)
class TimerTicket:
    """Identifies one scheduled auto-lock."""
    room_code: str
    round_generation: int
    timer_generation: int
    started_at: datetime
    ends_at: datetime
    countdown_seconds: int


class RoundController:
    """Applies round transitions to a Room the caller has locked."""

    def __init__(self, room: Room, clock: Callable[[], datetime] = utcnow):
        self.room = room
        self.ledger = VoteLedger(room.votes)
        self._clock = clock

    @property
    def state(self) -> RoundState:
        current = self.room.current_round
        if current is None:
            return RoundState.NO_ROUND
        if current.revealed:
            return RoundState.REVEALED
        if current.locked:
            return RoundState.LOCKED
        return RoundState.VOTING

    def voting_status(self) -> Dict[str, bool]:
        """Who has voted in the current round. Empty when there is no round."""
        current = self.room.current_round
        if current is None:
            return {}
        return self.ledger.voting_status(current.story_id, self.room.users.keys())

    # -------------------------- Transitions --------------------------

    def start_round(self, story_id: str) -> Optional[Round]:
        """Supersedes any round in progress with a fresh one for story_id."""
        story = self.room.get_story(story_id)
        if not self.room.is_active or story is None:
            return None

        self.ledger.clear(story_id)
        self.room.round_generation += 1
        self.room.current_round = Round(
            story_id=story_id,
            generation=self.room.round_generation,
            started_at=self._clock(),
        )
        mark_estimating(self.room, story)
        return self.room.current_round

    def start_timer(self) -> Optional[TimerTicket]:
        """Sets the countdown deadline; calling again replaces the deadline."""
        if not self.room.is_active or self.state != RoundState.VOTING:
            return None

        current = self.room.current_round
        countdown = self.room.settings.countdown_seconds
        now = self._clock()
        current.timer_started_at = now
        current.timer_ends_at = now + timedelta(seconds=countdown)
        current.timer_generation += 1
        return TimerTicket(
            room_code=self.room.code,
            round_generation=current.generation,
            timer_generation=current.timer_generation,
            started_at=now,
            ends_at=current.timer_ends_at,
            countdown_seconds=countdown,
        )

    def stop_timer(self) -> bool:
        """Clears a running countdown. Returns False when none was running."""
        if not self.room.is_active or self.state != RoundState.VOTING:
            return False

        current = self.room.current_round
        if current.timer_ends_at is None:
            return False
        current.timer_started_at = None
        current.timer_ends_at = None
        current.timer_generation += 1
        return True

    def auto_lock(self, ticket: TimerTicket) -> Optional[str]:
        """
        Applies an elapsed countdown.

        Returns:
            The locked story id, or None when the ticket is stale (the round
            was superseded, revealed, already locked, or its timer was stopped
            or restarted).
        """
        current = self.room.current_round
        if (
            current is None
            or current.generation != ticket.round_generation
            or current.timer_generation != ticket.timer_generation
            or current.timer_ends_at is None
            or self.state != RoundState.VOTING
        ):
            return None
        current.locked = True
        return current.story_id

    def cast_vote(self, user_id: str, story_id: str, value: VoteValue) -> Optional[Dict[str, bool]]:
        """Records a vote while the round for story_id is open."""
        current = self.room.current_round
        if (
            not self.room.is_active
            or self.state != RoundState.VOTING
            or current.story_id != story_id
        ):
            return None
        self.ledger.record(story_id, user_id, value)
        return self.voting_status()

    def reveal(self, story_id: Optional[str] = None) -> Optional[RevealResult]:
        """Freezes the round and exposes its votes."""
        current = self.room.current_round
        if self.state not in (RoundState.VOTING, RoundState.LOCKED):
            return None
        if story_id is not None and current.story_id != story_id:
            return None
        current.locked = True
        current.revealed = True
        return self.ledger.reveal(current.story_id)

    def set_final_estimate(self, story_id: str, value: VoteValue) -> Optional[Story]:
        """Records the agreed estimate. Re-estimation is a new round later on."""
        story = self.room.get_story(story_id)
        if not self.room.is_active or story is None:
            return None
        story.final_estimate = value
        story.status = "estimated"
        return story


def mark_estimating(room: Room, story: Story):
    """Puts story under estimation; any other story being estimated goes back to pending."""
    for other in room.stories:
        if other.status == "estimating" and other.id != story.id:
            other.status = "pending"
    story.status = "estimating"
