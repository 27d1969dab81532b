# src/poker_server/vote_ledger.py
import math
from collections import Counter
from typing import Dict, Iterable, List, Union

from .deck import is_numeric
from .models import RevealResult, Vote, VoteSummary, VoteValue, utcnow

CONSENSUS_THRESHOLD = 0.8


def summarize(values: Iterable[VoteValue]) -> VoteSummary:
    """
    Computes the reveal summary over the numeric votes only.

    Sentinel cards ("?", "☕") are ignored here. The average is rounded to one
    decimal place, halves rounding up. The mode is the most frequent value;
    on a tie the smallest tied value wins. Consensus means the mode was chosen
    by at least 80% of the numeric voters.
    """
    numeric: List[Union[int, float]] = [v for v in values if is_numeric(v)]
    if not numeric:
        return VoteSummary()

    counts = Counter(numeric)
    top = max(counts.values())
    mode = min(v for v, c in counts.items() if c == top)
    average = math.floor(sum(numeric) / len(numeric) * 10 + 0.5) / 10

    return VoteSummary(
        min=min(numeric),
        max=max(numeric),
        average=average,
        mode=mode,
        consensus=top >= len(numeric) * CONSENSUS_THRESHOLD,
    )


class VoteLedger:
    """
    Hidden vote storage for the stories of one room.

    The ledger works directly on the room's vote map (story id -> user id ->
    Vote) so there is never a second copy of the votes. It does not check
    round eligibility; the RoundController does that before calling record().
    """

    def __init__(self, votes: Dict[str, Dict[str, Vote]]):
        self._votes = votes

    def record(self, story_id: str, user_id: str, value: VoteValue):
        """Inserts or overwrites a user's vote for a story."""
        self._votes.setdefault(story_id, {})[user_id] = Vote(value=value, timestamp=utcnow())

    def voting_status(self, story_id: str, user_ids: Iterable[str]) -> Dict[str, bool]:
        """
        Reports who has voted without exposing any value.

        Args:
            story_id: The story being estimated.
            user_ids: Every known member of the room.

        Returns:
            A mapping of user id to whether that user has a vote recorded.
        """
        story_votes = self._votes.get(story_id, {})
        return {user_id: user_id in story_votes for user_id in user_ids}

    def reveal(self, story_id: str) -> RevealResult:
        """Returns every vote for the story together with its summary."""
        story_votes = self._votes.get(story_id, {})
        votes = {user_id: vote.value for user_id, vote in story_votes.items()}
        return RevealResult(story_id=story_id, votes=votes, summary=summarize(votes.values()))

    def clear(self, story_id: str):
        """Discards all votes for a story, ready for a fresh round."""
        self._votes[story_id] = {}
