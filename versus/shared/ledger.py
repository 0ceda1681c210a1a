"""
Option ledger: per-option vote counts and the test-level aggregate.

Every function here mutates a Test in memory only. Callers persist the
test afterwards as one read-modify-write so ``total_votes`` always equals
the sum of option votes once a mutation settles.
"""

from datetime import datetime
from typing import Optional

from .errors import InactiveError, NotFoundError
from .models import Option, Test, Voter, utc_now


def recompute(test: Test) -> Test:
    """
    Recompute totals, win rates and statistics from the option votes.

    The most popular option is the first one in storage order holding the
    maximum vote count.

    Args:
        test: Test to update in place

    Returns:
        Test: The same test, for chaining
    """
    total = sum(option.votes for option in test.options)
    test.total_votes = total

    most_popular = None
    for option in test.options:
        option.win_rate = (option.votes / total * 100) if total > 0 else 0.0
        if most_popular is None or option.votes > most_popular.votes:
            most_popular = option

    test.stats.most_popular_option = most_popular.id if most_popular else None
    test.stats.average_votes_per_option = (
        total / len(test.options) if test.options else 0.0
    )
    return test


def increment(test: Test, option_id: str) -> Option:
    """
    Add one vote to an option and recompute the aggregate.

    Raises:
        NotFoundError: If the option does not belong to the test
    """
    option = test.find_option(option_id)
    if option is None:
        raise NotFoundError(
            f"Option {option_id} not found in test {test.id}",
            {"test_id": test.id, "option_id": option_id},
        )
    option.votes += 1
    recompute(test)
    return option


def apply_direct_vote(
    test: Test,
    option_id: str,
    participant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Option:
    """
    Apply a flat, session-less vote.

    There is no duplicate-vote check: one call is one increment. An
    authenticated caller's vote is also recorded in ``test.voters``.

    Args:
        test: Test receiving the vote
        option_id: Chosen option
        participant_id: Authenticated voter, or None for a guest
        now: Clock override

    Returns:
        Option: The incremented option

    Raises:
        InactiveError: If the test is not accepting votes
        NotFoundError: If the option does not belong to the test
    """
    now = now or utc_now()
    if not test.accepts_votes(now):
        raise InactiveError(f"Test {test.id} is not active", {"test_id": test.id})

    option = increment(test, option_id)
    test.stats.total_comparisons += 1
    if participant_id:
        test.voters.append(Voter(participant_id=participant_id, option_id=option_id, voted_at=now))
    test.updated_at = now
    return option


def reset_votes(test: Test, now: Optional[datetime] = None) -> Test:
    """
    Zero every tally and clear the voter record.

    Vote session history is kept. Calling this twice leaves the same state
    as calling it once.
    """
    for option in test.options:
        option.votes = 0
        option.win_rate = 0.0
    test.total_votes = 0
    test.voters = []
    test.stats.total_comparisons = 0
    test.stats.average_votes_per_option = 0.0
    test.stats.most_popular_option = None
    test.updated_at = now or utc_now()
    return test
