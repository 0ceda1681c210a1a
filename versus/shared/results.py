"""
Ranked, percentage-annotated leaderboards for a test.

Two read paths share one ranking rule: from the option tally, or from the
final winners of completed sessions. Ranks are positions after a stable
descending sort, so tied options keep storage order and distinct ranks.
"""

import math
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping

from .models import CustomField, LocalizedText, Test


class ResultSource(str, Enum):
    """Where vote counts for a leaderboard come from."""
    TALLY = "tally"
    SESSIONS = "sessions"


@dataclass
class RankedOption:
    """One leaderboard row."""
    rank: int
    option_id: str
    title: LocalizedText
    image: str
    votes: int
    percentage: float
    win_rate: float
    custom_fields: List[CustomField] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "option_id": self.option_id,
            "title": self.title.to_dict(),
            "image": self.image,
            "custom_fields": [cf.to_dict() for cf in self.custom_fields],
            "votes": self.votes,
            "percentage": self.percentage,
            "win_rate": self.win_rate,
        }


def round_percentage(votes: int, total: int) -> float:
    """Percentage of ``total`` rounded half-up to one decimal."""
    if total <= 0:
        return 0.0
    return math.floor(votes / total * 1000 + 0.5) / 10


def _rank(test: Test, counts: Mapping[str, int]) -> List[RankedOption]:
    total = sum(counts.get(option.id, 0) for option in test.options)
    ordered = sorted(test.options, key=lambda option: -counts.get(option.id, 0))
    return [
        RankedOption(
            rank=index,
            option_id=option.id,
            title=option.title,
            image=option.image,
            custom_fields=list(option.custom_fields),
            votes=counts.get(option.id, 0),
            percentage=round_percentage(counts.get(option.id, 0), total),
            win_rate=option.win_rate,
        )
        for index, option in enumerate(ordered, start=1)
    ]


def session_counts(test: Test) -> Counter:
    """Final-winner occurrences across completed sessions."""
    return Counter(
        session.final_winner
        for session in test.vote_sessions
        if session.is_complete and session.final_winner
    )


def rank_from_tally(test: Test) -> List[RankedOption]:
    """Leaderboard from the option vote counts."""
    return _rank(test, {option.id: option.votes for option in test.options})


def rank_from_sessions(test: Test) -> List[RankedOption]:
    """Leaderboard from the winners of completed sessions."""
    return _rank(test, session_counts(test))


def rank(test: Test, source: ResultSource = ResultSource.TALLY) -> List[RankedOption]:
    if ResultSource(source) is ResultSource.SESSIONS:
        return rank_from_sessions(test)
    return rank_from_tally(test)


def session_statistics(test: Test) -> Dict[str, int]:
    """Session counts broken down by completion and participant kind."""
    sessions = test.vote_sessions
    return {
        "total_sessions": len(sessions),
        "completed_sessions": sum(1 for s in sessions if s.is_complete),
        "guest_sessions": sum(1 for s in sessions if s.is_guest),
        "user_sessions": sum(1 for s in sessions if not s.is_guest),
    }
