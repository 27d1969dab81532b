"""
Tests for the round state machine.

Tests:
- State progression NoRound -> Voting -> Locked -> Revealed
- Starting a round clears votes and supersedes the previous round
- Timer start/stop and the generation guard on auto-lock
- Transitions from the wrong state are rejected without side effects
"""
import pytest

from poker_server.models import Room, Story, User
from poker_server.round_controller import RoundController, RoundState


@pytest.fixture
def room():
    room = Room(code="ABCD1234", name="Room", host_id="host")
    room.users = {
        "host": User(id="host", room_code="ABCD1234", display_name="Alice", avatar_id="a", role="host"),
        "bob": User(id="bob", room_code="ABCD1234", display_name="Bob", avatar_id="b"),
    }
    room.stories = [Story(id="s1", title="Login flow"), Story(id="s2", title="Signup")]
    return room


@pytest.fixture
def controller(room, clock):
    return RoundController(room, clock=clock)


class TestRoundLifecycle:

    def test_initial_state(self, controller):
        assert controller.state == RoundState.NO_ROUND
        assert controller.voting_status() == {}

    def test_start_round(self, controller, room):
        new_round = controller.start_round("s1")

        assert controller.state == RoundState.VOTING
        assert new_round.story_id == "s1"
        assert new_round.generation == 1
        assert new_round.timer_ends_at is None
        assert room.get_story("s1").status == "estimating"

    def test_start_round_for_unknown_story(self, controller):
        assert controller.start_round("missing") is None
        assert controller.state == RoundState.NO_ROUND

    def test_full_progression(self, controller):
        controller.start_round("s1")
        controller.cast_vote("bob", "s1", 5)
        ticket = controller.start_timer()

        assert controller.auto_lock(ticket) == "s1"
        assert controller.state == RoundState.LOCKED

        result = controller.reveal()
        assert controller.state == RoundState.REVEALED
        assert result.votes == {"bob": 5}

    def test_revealed_implies_locked(self, controller, room):
        controller.start_round("s1")
        controller.reveal()

        assert room.current_round.revealed
        assert room.current_round.locked

    def test_start_round_twice_clears_votes(self, controller):
        controller.start_round("s1")
        controller.cast_vote("bob", "s1", 8)
        controller.start_round("s1")

        assert controller.voting_status() == {"host": False, "bob": False}
        assert controller.reveal().votes == {}

    def test_new_round_replaces_round_wholesale(self, controller, room):
        first = controller.start_round("s1")
        controller.reveal()
        second = controller.start_round("s2")

        assert second is not first
        assert second.generation == first.generation + 1
        assert controller.state == RoundState.VOTING
        assert room.get_story("s1").status == "pending"
        assert room.get_story("s2").status == "estimating"

    def test_at_most_one_story_estimating(self, controller, room):
        controller.start_round("s1")
        controller.start_round("s2")

        assert [s.id for s in room.stories if s.status == "estimating"] == ["s2"]


class TestVoting:

    def test_vote_returns_projection(self, controller):
        controller.start_round("s1")
        assert controller.cast_vote("bob", "s1", 3) == {"host": False, "bob": True}

    def test_vote_without_round(self, controller):
        assert controller.cast_vote("bob", "s1", 3) is None

    def test_vote_for_other_story(self, controller):
        controller.start_round("s1")
        assert controller.cast_vote("bob", "s2", 3) is None

    def test_vote_after_lock_is_rejected(self, controller):
        controller.start_round("s1")
        controller.auto_lock(controller.start_timer())

        assert controller.cast_vote("bob", "s1", 3) is None
        assert controller.reveal().votes == {}

    def test_vote_after_reveal_is_rejected(self, controller):
        controller.start_round("s1")
        controller.reveal()
        assert controller.cast_vote("bob", "s1", 3) is None


class TestTimer:

    def test_start_timer_sets_deadline(self, controller, room, clock):
        controller.start_round("s1")
        ticket = controller.start_timer()

        assert ticket.countdown_seconds == room.settings.countdown_seconds
        assert ticket.started_at == clock.now
        assert (ticket.ends_at - ticket.started_at).total_seconds() == 60
        assert room.current_round.timer_ends_at == ticket.ends_at

    def test_start_timer_without_round(self, controller):
        assert controller.start_timer() is None

    def test_start_timer_after_lock(self, controller):
        controller.start_round("s1")
        controller.auto_lock(controller.start_timer())
        assert controller.start_timer() is None

    def test_stop_timer(self, controller, room):
        controller.start_round("s1")
        controller.start_timer()

        assert controller.stop_timer() is True
        assert room.current_round.timer_started_at is None
        assert room.current_round.timer_ends_at is None

    def test_stop_timer_when_none_running_is_noop(self, controller, room):
        controller.start_round("s1")
        before = room.current_round.model_copy()

        assert controller.stop_timer() is False
        assert room.current_round == before

    def test_auto_lock_after_stop_is_noop(self, controller):
        controller.start_round("s1")
        ticket = controller.start_timer()
        controller.stop_timer()

        assert controller.auto_lock(ticket) is None
        assert controller.state == RoundState.VOTING

    def test_auto_lock_after_restart_uses_latest_ticket(self, controller):
        controller.start_round("s1")
        stale = controller.start_timer()
        fresh = controller.start_timer()

        assert controller.auto_lock(stale) is None
        assert controller.state == RoundState.VOTING
        assert controller.auto_lock(fresh) == "s1"

    def test_auto_lock_after_reveal_is_noop(self, controller, room):
        controller.start_round("s1")
        ticket = controller.start_timer()
        controller.reveal()

        assert controller.auto_lock(ticket) is None
        assert room.current_round.revealed

    def test_auto_lock_after_new_round_is_noop(self, controller):
        controller.start_round("s1")
        ticket = controller.start_timer()
        controller.start_round("s1")

        assert controller.auto_lock(ticket) is None
        assert controller.state == RoundState.VOTING


class TestFinalEstimate:

    def test_set_final_estimate(self, controller, room):
        controller.start_round("s1")
        controller.reveal()

        story = controller.set_final_estimate("s1", 5)

        assert story.status == "estimated"
        assert story.final_estimate == 5

    def test_re_estimation_starts_a_new_round(self, controller, room):
        controller.set_final_estimate("s1", 5)
        controller.start_round("s1")

        assert room.get_story("s1").status == "estimating"
        assert controller.state == RoundState.VOTING

    def test_ended_room_rejects_transitions(self, controller, room):
        room.status = "ended"

        assert controller.start_round("s1") is None
        assert controller.set_final_estimate("s1", 5) is None
