"""
Voting service: applies votes, sessions and admin actions to stored tests.

Every mutation is one read-modify-write of the whole test document saved
with compare-and-swap. A save that loses the race, or hits a transient
storage error, is retried from a fresh read up to ``max_retries`` times.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from prometheus_client import Counter

from ..shared import bracket, ledger, results
from ..shared.errors import (
    ConflictError,
    InactiveError,
    NotFoundError,
    StorageUnavailable,
    UnauthorizedError,
    UnavailableError,
    ValidationError,
    VersionConflict,
)
from ..shared.models import (
    SiteSettings,
    Test,
    VoteSession,
    Voter,
    build_option,
    localized_text,
    new_test,
    parse_timestamp,
    utc_now,
)
from ..shared.results import RankedOption, ResultSource
from .identity import Identity
from .publisher import VOTE_COMPLETED

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Prometheus metrics
votes_submitted = Counter(
    "votes_submitted_total",
    "Total number of votes added to a test tally",
    ["source"]
)
vote_sessions = Counter(
    "vote_sessions_total",
    "Vote session lifecycle events",
    ["event"]
)
storage_conflicts = Counter(
    "storage_conflicts_total",
    "Read-modify-write cycles that lost a compare-and-swap race"
)
notification_failures = Counter(
    "notification_failures_total",
    "Vote completion notifications that could not be enqueued"
)

UPDATABLE_FIELDS = (
    "category", "cover_image", "is_active", "end_date", "trend", "popular",
)
LOCALIZED_FIELDS = ("title", "description", "header_text", "footer_text")
NON_NULLABLE_FIELDS = ("category", "is_active", "trend", "popular")
FEATURE_FLAGS = ("trend", "popular")


class VotingService:
    """Coordinates the voting core with storage and notifications."""

    def __init__(
        self,
        repository,
        publisher,
        site: Optional[SiteSettings] = None,
        max_retries: int = 5,
        retry_delay: float = 0.05,
    ):
        self.repository = repository
        self.publisher = publisher
        self.site = site or SiteSettings()
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self._notifications: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # storage helpers
    # ------------------------------------------------------------------

    async def _mutate(
        self,
        test_id: str,
        mutation: Callable[[Test], T],
        operation: str,
    ) -> Tuple[Test, T]:
        """
        Load, mutate and save a test atomically.

        ``mutation`` runs against a fresh copy on every attempt and may
        raise a VotingError to abort without saving anything.

        Raises:
            ConflictError: If every attempt lost the compare-and-swap race
            UnavailableError: If storage stayed unreachable
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                test, version = await self.repository.load(test_id)
                result = mutation(test)
                await self.repository.save(test, version)
                return test, result

            except VersionConflict as e:
                storage_conflicts.inc()
                last_error = e
                logger.warning(
                    f"{operation} on test {test_id} lost a write race "
                    f"(attempt {attempt}/{self.max_retries})"
                )
            except StorageUnavailable as e:
                last_error = e
                logger.warning(
                    f"{operation} on test {test_id} hit a storage error "
                    f"(attempt {attempt}/{self.max_retries}): {e}"
                )

            if attempt < self.max_retries:
                await asyncio.sleep(self.retry_delay * attempt)

        logger.error(f"{operation} on test {test_id} failed after {self.max_retries} attempts")
        if isinstance(last_error, VersionConflict):
            raise ConflictError(
                f"Test {test_id} is being modified concurrently, try again",
                {"test_id": test_id},
            )
        raise UnavailableError("Storage is unavailable, try again later")

    async def _read(self, test_id: str) -> Test:
        """Sweep expired tests, then load one."""
        try:
            await self.repository.expire_tests()
            test, _ = await self.repository.load(test_id)
            return test
        except StorageUnavailable as e:
            raise UnavailableError("Storage is unavailable, try again later") from e

    @staticmethod
    def _require_admin(identity: Identity) -> None:
        if not identity.is_admin:
            raise UnauthorizedError("Administrator privileges required")

    # ------------------------------------------------------------------
    # test administration
    # ------------------------------------------------------------------

    async def create_test(self, data: Dict[str, Any], identity: Identity) -> Test:
        self._require_admin(identity)
        test = new_test(data, self.site, created_by=identity.participant_id)
        try:
            await self.repository.insert(test)
        except StorageUnavailable as e:
            raise UnavailableError("Storage is unavailable, try again later") from e
        logger.info(f"Test created: id={test.id}, slug={test.slug}")
        return test

    async def get_test(self, test_id: str, identity: Identity) -> Test:
        test = await self._read(test_id)
        if not test.is_active and not identity.is_admin:
            raise InactiveError(f"Test {test_id} is not active", {"test_id": test_id})
        return test

    async def list_tests(
        self,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        descending: bool = True,
        trend: Optional[bool] = None,
        popular: Optional[bool] = None,
    ) -> Tuple[List[Test], int]:
        try:
            await self.repository.expire_tests()
            return await self.repository.list_tests(
                category=category,
                is_active=is_active,
                trend=trend,
                popular=popular,
                page=page,
                limit=limit,
                sort_by=sort_by,
                descending=descending,
            )
        except StorageUnavailable as e:
            raise UnavailableError("Storage is unavailable, try again later") from e

    async def featured_tests(self, flag: str, limit: int = 5) -> List[Test]:
        """
        Active tests carrying the ``trend`` or ``popular`` flag, most voted first.

        Raises:
            ValidationError: If ``flag`` is not a feature flag
        """
        if flag not in FEATURE_FLAGS:
            raise ValidationError(f"Unknown feature flag: {flag}", {"flag": flag})
        tests, _ = await self.list_tests(
            is_active=True,
            limit=limit,
            sort_by="total_votes",
            descending=True,
            **{flag: True},
        )
        return tests

    async def resolve_slug(self, slug: str) -> str:
        """
        Map a test slug to its id.

        Raises:
            NotFoundError: If no test has this slug
        """
        try:
            test_id = await self.repository.find_id_by_slug(slug)
        except StorageUnavailable as e:
            raise UnavailableError("Storage is unavailable, try again later") from e
        if test_id is None:
            raise NotFoundError(f"Test with slug {slug} not found", {"slug": slug})
        return test_id

    async def update_test(
        self, test_id: str, changes: Dict[str, Any], identity: Identity
    ) -> Test:
        """
        Apply an admin edit. Only keys present in ``changes`` are touched.

        Options are edited by id (title, image, custom fields); their votes
        are preserved and the option set itself is fixed after creation,
        since sessions reference options by id.
        """
        self._require_admin(identity)

        def mutation(test: Test) -> None:
            now = utc_now()
            for name in LOCALIZED_FIELDS:
                if name in changes:
                    setattr(test, name, localized_text(changes[name], self.site, name))
            if not test.title.has(self.site.default_language):
                raise ValidationError(
                    f"A '{self.site.default_language.value}' title is required"
                )
            for name in UPDATABLE_FIELDS:
                if name in changes:
                    value = changes[name]
                    if name in NON_NULLABLE_FIELDS and value is None:
                        raise ValidationError(
                            f"{name} cannot be null", {"field": name}
                        )
                    if name == "end_date":
                        value = parse_timestamp(value)
                    elif name == "category" and not value.strip():
                        raise ValidationError("Category cannot be empty", {"field": name})
                    setattr(test, name, value)
            for option_changes in changes.get("options") or []:
                self._update_option(test, option_changes)
            test.expire(now)
            ledger.recompute(test)
            test.updated_at = now

        test, _ = await self._mutate(test_id, mutation, "update_test")
        logger.info(f"Test updated: id={test_id}, fields={sorted(changes)}")
        return test

    def _update_option(self, test: Test, changes: Dict[str, Any]) -> None:
        option = test.find_option(changes.get("id", ""))
        if option is None:
            raise NotFoundError(
                f"Option {changes.get('id')} not found in test {test.id}",
                {"test_id": test.id, "option_id": changes.get("id")},
            )
        merged = option.to_dict()
        merged.update({k: v for k, v in changes.items() if v is not None})
        rebuilt = build_option(merged, self.site, option_id=option.id)
        option.title = rebuilt.title
        option.image = rebuilt.image
        option.custom_fields = rebuilt.custom_fields

    async def delete_test(self, test_id: str, identity: Identity) -> None:
        self._require_admin(identity)
        try:
            deleted = await self.repository.delete(test_id)
        except StorageUnavailable as e:
            raise UnavailableError("Storage is unavailable, try again later") from e
        if not deleted:
            raise NotFoundError(f"Test {test_id} not found", {"test_id": test_id})
        logger.info(f"Test deleted: id={test_id}")

    # ------------------------------------------------------------------
    # direct votes and the ledger
    # ------------------------------------------------------------------

    async def direct_vote(self, test_id: str, option_id: str, identity: Identity) -> Test:
        def mutation(test: Test):
            return ledger.apply_direct_vote(test, option_id, identity.participant_id)

        test, option = await self._mutate(test_id, mutation, "direct_vote")
        votes_submitted.labels(source="direct").inc()
        logger.info(
            f"Direct vote: test={test_id}, option={option.id}, "
            f"votes={option.votes}, total={test.total_votes}"
        )
        return test

    async def reset_votes(self, test_id: str, identity: Identity) -> Test:
        self._require_admin(identity)
        test, _ = await self._mutate(test_id, ledger.reset_votes, "reset_votes")
        logger.info(f"Votes reset: test={test_id}, sessions kept={len(test.vote_sessions)}")
        return test

    async def get_results(
        self, test_id: str, source: ResultSource = ResultSource.TALLY
    ) -> Tuple[Test, List[RankedOption], Dict[str, int]]:
        test = await self._read(test_id)
        return test, results.rank(test, source), results.session_statistics(test)

    # ------------------------------------------------------------------
    # vote sessions
    # ------------------------------------------------------------------

    async def start_session(
        self,
        test_id: str,
        identity: Identity,
        session_id: Optional[str] = None,
    ) -> Tuple[Test, VoteSession]:
        session_id = session_id or str(uuid.uuid4())

        def mutation(test: Test) -> VoteSession:
            return bracket.start_session(test, session_id, identity.participant_id)

        test, session = await self._mutate(test_id, mutation, "start_session")
        vote_sessions.labels(event="started").inc()
        logger.info(
            f"Vote session started: test={test_id}, session={session_id}, "
            f"guest={session.is_guest}"
        )
        return test, session

    async def get_session(self, test_id: str, session_id: str) -> Tuple[Test, VoteSession]:
        test = await self._read(test_id)
        return test, bracket.get_session(test, session_id)

    async def advance_session(
        self,
        test_id: str,
        session_id: str,
        option_id: str,
        expected_round: Optional[int] = None,
    ) -> Tuple[Test, VoteSession]:
        """
        Apply one pick to a session.

        The round number seen on the first attempt is pinned: if a retry
        after a lost race finds the session at a different round, another
        pick for this session won, and this one fails with ConflictError
        instead of being applied to the next pair.
        """
        pinned: Dict[str, int] = {}
        if expected_round is not None:
            pinned["round"] = expected_round

        def mutation(test: Test) -> VoteSession:
            session = bracket.get_session(test, session_id)
            played = pinned.setdefault("round", session.rounds_played)
            if session.rounds_played != played:
                raise ConflictError(
                    f"Vote session {session_id} already moved past round {played}",
                    {"session_id": session_id, "round": session.rounds_played},
                )
            return bracket.advance_session(test, session_id, option_id)

        test, session = await self._mutate(test_id, mutation, "advance_session")

        if session.is_complete:
            vote_sessions.labels(event="completed").inc()
            votes_submitted.labels(source="session").inc()
            logger.info(
                f"Vote session complete: test={test_id}, session={session_id}, "
                f"winner={session.final_winner}"
            )
            self._schedule_notification(test, session)
        return test, session

    async def delete_session(self, test_id: str, session_id: str, identity: Identity) -> None:
        def mutation(test: Test) -> VoteSession:
            return bracket.delete_session(test, session_id, identity.participant_id)

        await self._mutate(test_id, mutation, "delete_session")
        vote_sessions.labels(event="deleted").inc()
        logger.info(f"Vote session deleted: test={test_id}, session={session_id}")

    async def participant_sessions(
        self, identity: Identity, test_id: Optional[str] = None
    ) -> List[Tuple[Test, VoteSession]]:
        if identity.is_guest:
            raise UnauthorizedError("Sign in to list your vote sessions")
        try:
            tests = await self.repository.list_participant_tests(identity.participant_id, test_id)
        except StorageUnavailable as e:
            raise UnavailableError("Storage is unavailable, try again later") from e
        return [
            (test, session)
            for test in tests
            for session in test.vote_sessions
            if session.participant_id == identity.participant_id
        ]

    async def participant_votes(self, identity: Identity) -> List[Tuple[Test, Voter]]:
        """Direct votes cast by the caller, newest first."""
        if identity.is_guest:
            raise UnauthorizedError("Sign in to list your votes")
        try:
            tests = await self.repository.list_voter_tests(identity.participant_id)
        except StorageUnavailable as e:
            raise UnavailableError("Storage is unavailable, try again later") from e
        votes = [
            (test, voter)
            for test in tests
            for voter in test.voters
            if voter.participant_id == identity.participant_id
        ]
        votes.sort(key=lambda item: item[1].voted_at, reverse=True)
        return votes

    async def expire_tests(self) -> int:
        """Deactivate every test past its end date. Safe to run repeatedly."""
        try:
            return await self.repository.expire_tests()
        except StorageUnavailable as e:
            raise UnavailableError("Storage is unavailable, try again later") from e

    # ------------------------------------------------------------------
    # notifications
    # ------------------------------------------------------------------

    async def _category_name(self, category_id: str) -> str:
        try:
            name = await self.repository.get_category_name(category_id, self.site.default_language)
        except Exception as e:
            logger.warning(f"Category lookup failed for {category_id}: {e}")
            name = None
        return name or self.site.unknown_category_label

    def _schedule_notification(self, test: Test, session: VoteSession) -> None:
        """Publish the completion notification in the background."""
        if session.is_guest:
            return
        task = asyncio.create_task(self._notify_completion(test, session))
        self._notifications.add(task)
        task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Task) -> None:
        self._notifications.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Vote notification task failed: {error}")
            notification_failures.inc()

    async def drain_notifications(self) -> None:
        """Wait until every scheduled notification has been handled."""
        while self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    async def _notify_completion(self, test: Test, session: VoteSession) -> None:
        """Enqueue the completion notification. Failures are only logged."""
        payload = {
            "test_id": test.id,
            "test_title": test.title.to_dict(),
            "test_slug": test.slug,
            "category_id": test.category,
            "category_name": await self._category_name(test.category),
            "session_id": session.session_id,
            "final_winner": session.final_winner,
        }
        try:
            published = await self.publisher.publish(session.participant_id, VOTE_COMPLETED, payload)
        except Exception as e:
            logger.error(f"Error sending vote notification: {e}")
            published = False
        if not published:
            notification_failures.inc()
