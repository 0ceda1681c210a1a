"""
Vote session state machine.

A session runs a single-elimination chain over a test's options:

    not_started --pick--> in_progress --pick--> ... --final pick--> complete

The first pair is placed at start, so a new session is usable right away.
Each pick keeps the chosen option and brings in the next unseen option as
its opponent. When no unseen options remain, the pick decides the final
winner, which receives exactly one vote in the test's tally. A session is
append-only: rounds are never replayed or undone, and a complete session
is never reopened.
"""

import logging
from datetime import datetime
from typing import List, Optional

from . import ledger
from .errors import ConflictError, InactiveError, InvalidChoiceError, NotFoundError, UnauthorizedError, ValidationError
from .models import Test, VoteSession, bracket_key, utc_now

logger = logging.getLogger(__name__)


def bracket_order(test: Test) -> List[str]:
    """
    Deterministic order in which a test's options enter the bracket.

    Sorted by the SHA-256 of test id and option id, ties by option id.
    """
    return sorted(
        (option.id for option in test.options),
        key=lambda option_id: (bracket_key(test.id, option_id), option_id),
    )


def _materialize(test: Test, session: VoteSession) -> None:
    order = bracket_order(test)
    session.current_pair = order[:2]
    session.remaining_options = order[2:]


def start_session(
    test: Test,
    session_id: str,
    participant_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> VoteSession:
    """
    Create a session and place its first pair.

    Args:
        test: Test to vote on
        session_id: Caller-chosen identity key, unique within the test
        participant_id: Owning user, or None for a guest
        now: Clock override

    Returns:
        VoteSession: The new session, already appended to the test

    Raises:
        InactiveError: If the test is not accepting votes
        ConflictError: If the session id is already used on this test
        ValidationError: If the test has fewer than two options
    """
    now = now or utc_now()
    if not test.accepts_votes(now):
        raise InactiveError(f"Test {test.id} is not active", {"test_id": test.id})
    if test.find_session(session_id) is not None:
        raise ConflictError(
            f"Vote session {session_id} already exists",
            {"test_id": test.id, "session_id": session_id},
        )
    if len(test.options) < 2:
        raise ValidationError(f"Test {test.id} needs at least 2 options")

    session = VoteSession(
        session_id=session_id,
        participant_id=participant_id,
        started_at=now,
    )
    _materialize(test, session)
    test.vote_sessions.append(session)
    test.updated_at = now
    return session


def get_session(test: Test, session_id: str) -> VoteSession:
    """
    Look up a session.

    Raises:
        NotFoundError: If the test has no such session
    """
    session = test.find_session(session_id)
    if session is None:
        raise NotFoundError(
            f"Vote session {session_id} not found",
            {"test_id": test.id, "session_id": session_id},
        )
    return session


def advance_session(
    test: Test,
    session_id: str,
    chosen_option_id: str,
    now: Optional[datetime] = None,
) -> VoteSession:
    """
    Record the participant's pick for the current pair.

    Exactly one of two things happens: the session moves on to a new pair
    (the winner against the next unseen option), or the session completes
    with ``chosen_option_id`` as its final winner and that option gains one
    vote.

    Args:
        test: Test owning the session
        session_id: Session to advance
        chosen_option_id: Option picked from the current pair
        now: Clock override

    Returns:
        VoteSession: The updated session

    Raises:
        InactiveError: If the test is not accepting votes
        NotFoundError: If the session does not exist
        InvalidChoiceError: If the session is complete or the option is not
            in the current pair
    """
    now = now or utc_now()
    if not test.accepts_votes(now):
        raise InactiveError(f"Test {test.id} is not active", {"test_id": test.id})

    session = get_session(test, session_id)
    if session.is_complete:
        raise InvalidChoiceError(
            f"Vote session {session_id} is already complete",
            {"session_id": session_id, "final_winner": session.final_winner},
        )
    if not session.current_pair:
        _materialize(test, session)
    if chosen_option_id not in session.current_pair:
        raise InvalidChoiceError(
            f"Option {chosen_option_id} is not in the current pair",
            {"session_id": session_id, "current_pair": list(session.current_pair)},
        )

    session.winners.append(chosen_option_id)
    test.stats.total_comparisons += 1

    if session.remaining_options:
        opponent = session.remaining_options.pop(0)
        session.current_pair = [chosen_option_id, opponent]
    else:
        session.current_pair = []
        session.final_winner = chosen_option_id
        session.is_complete = True
        session.completed_at = now
        ledger.increment(test, chosen_option_id)
        logger.debug(f"Session {session_id} complete: winner={chosen_option_id}")

    test.updated_at = now
    return session


def delete_session(
    test: Test,
    session_id: str,
    caller_participant_id: Optional[str] = None,
) -> VoteSession:
    """
    Remove a session record entirely.

    A caller presenting a participant id may only delete their own or a
    guest session. Deleting a completed session does not take back the
    vote it already added to the tally.

    Raises:
        NotFoundError: If the session does not exist
        UnauthorizedError: If the caller does not own the session
    """
    session = get_session(test, session_id)
    if (
        caller_participant_id
        and session.participant_id
        and session.participant_id != caller_participant_id
    ):
        raise UnauthorizedError(
            f"Not allowed to delete vote session {session_id}",
            {"session_id": session_id},
        )
    test.vote_sessions = [s for s in test.vote_sessions if s.session_id != session_id]
    return session
