"""Integration tests for VotingService against the in-memory repository.

Covers the read-modify-write retry loop, races between concurrent votes,
expiry, resets and completion notifications.
"""

import asyncio
from datetime import timedelta

import pytest

from versus.shared.errors import (
    ConflictError,
    InactiveError,
    InvalidChoiceError,
    NotFoundError,
    StorageUnavailable,
    UnauthorizedError,
    UnavailableError,
    ValidationError,
    VersionConflict,
)
from versus.shared.models import Language, SiteSettings, utc_now
from versus.shared.results import ResultSource
from versus.voting_api.database import InMemoryTestRepository
from versus.voting_api.identity import GUEST
from versus.voting_api.orchestrator import VotingService
from versus.voting_api.publisher import VOTE_COMPLETED

from tests.doubles import ADMIN, ALICE, BOB, RecordingPublisher


class FlakyRepository(InMemoryTestRepository):
    """In-memory repository whose first saves or loads fail."""

    def __init__(self, save_conflicts=0, load_outages=0):
        super().__init__()
        self.save_conflicts = save_conflicts
        self.load_outages = load_outages
        self.saves = 0

    async def load(self, test_id):
        if self.load_outages:
            self.load_outages -= 1
            raise StorageUnavailable("connection reset")
        return await super().load(test_id)

    async def save(self, test, expected_version):
        self.saves += 1
        if self.save_conflicts:
            self.save_conflicts -= 1
            raise VersionConflict("lost race")
        return await super().save(test, expected_version)


class GatedPublisher(RecordingPublisher):
    """Publisher that holds every publish until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def publish(self, participant_id, kind, payload):
        await self.release.wait()
        return await super().publish(participant_id, kind, payload)


async def play_session(service, test_id, session_id, identity=GUEST, pick=0):
    _, session = await service.start_session(test_id, identity, session_id)
    while not session.is_complete:
        _, session = await service.advance_session(test_id, session_id, session.current_pair[pick])
    return session


@pytest.mark.asyncio
class TestSessions:
    """Session lifecycle through the service."""

    async def test_start_generates_session_id(self, service, stored_test):
        _, session = await service.start_session(stored_test.id, GUEST)

        assert session.session_id
        assert len(session.current_pair) == 2

        _, fetched = await service.get_session(stored_test.id, session.session_id)
        assert fetched.current_pair == session.current_pair

    async def test_duplicate_start_conflicts(self, service, stored_test):
        await service.start_session(stored_test.id, GUEST, "s1")

        with pytest.raises(ConflictError):
            await service.start_session(stored_test.id, GUEST, "s1")

    async def test_completion_increments_tally_once(self, service, stored_test):
        session = await play_session(service, stored_test.id, "s1", ALICE)

        test, ranked, stats = await service.get_results(stored_test.id)

        assert test.total_votes == 1
        assert test.find_option(session.final_winner).votes == 1
        assert ranked[0].option_id == session.final_winner
        assert stats["completed_sessions"] == 1
        assert stats["user_sessions"] == 1

    async def test_unknown_test(self, service):
        with pytest.raises(NotFoundError):
            await service.start_session("missing", GUEST)

    async def test_delete_session_ownership(self, service, stored_test):
        await service.start_session(stored_test.id, ALICE, "s1")

        with pytest.raises(UnauthorizedError):
            await service.delete_session(stored_test.id, "s1", BOB)

        await service.delete_session(stored_test.id, "s1", ALICE)
        with pytest.raises(NotFoundError):
            await service.get_session(stored_test.id, "s1")

    async def test_participant_history(self, service, stored_test):
        await service.start_session(stored_test.id, ALICE, "a1")
        await play_session(service, stored_test.id, "a2", ALICE)
        await service.start_session(stored_test.id, BOB, "b1")
        await service.start_session(stored_test.id, GUEST, "g1")

        owned = await service.participant_sessions(ALICE)

        assert sorted(session.session_id for _, session in owned) == ["a1", "a2"]
        assert all(test.id == stored_test.id for test, _ in owned)

    async def test_guest_has_no_history(self, service):
        with pytest.raises(UnauthorizedError):
            await service.participant_sessions(GUEST)


@pytest.mark.asyncio
class TestConcurrency:
    """Races between concurrent mutations of one test."""

    async def test_racing_picks_on_one_session(self, service, stored_test):
        _, session = await service.start_session(stored_test.id, GUEST, "s1")
        left, right = session.current_pair

        outcomes = await asyncio.gather(
            service.advance_session(stored_test.id, "s1", left),
            service.advance_session(stored_test.id, "s1", right),
            return_exceptions=True,
        )

        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], (ConflictError, InvalidChoiceError))

        _, stored = await service.get_session(stored_test.id, "s1")
        assert stored.rounds_played == 1

    async def test_racing_final_picks_complete_once(self, service, stored_test, publisher):
        _, session = await service.start_session(stored_test.id, ALICE, "s1")
        _, session = await service.advance_session(stored_test.id, "s1", session.current_pair[0])
        left, right = session.current_pair

        outcomes = await asyncio.gather(
            service.advance_session(stored_test.id, "s1", left),
            service.advance_session(stored_test.id, "s1", right),
            return_exceptions=True,
        )

        assert sum(1 for o in outcomes if isinstance(o, Exception)) == 1
        test, _, _ = await service.get_results(stored_test.id)
        assert test.total_votes == 1
        await service.drain_notifications()
        assert len(publisher.events) == 1

    async def test_stale_round_is_rejected(self, service, stored_test):
        _, session = await service.start_session(stored_test.id, GUEST, "s1")
        pair = list(session.current_pair)
        await service.advance_session(stored_test.id, "s1", pair[0], expected_round=0)

        with pytest.raises(ConflictError):
            await service.advance_session(stored_test.id, "s1", pair[0], expected_round=0)

    async def test_concurrent_direct_votes_lose_nothing(self, service, stored_test):
        option_ids = [option.id for option in stored_test.options]

        for _ in range(10):
            await asyncio.gather(*[
                service.direct_vote(stored_test.id, option_id, GUEST)
                for option_id in option_ids
            ])

        test, _, _ = await service.get_results(stored_test.id)
        assert test.total_votes == 30
        assert [o.votes for o in test.options] == [10, 10, 10]


@pytest.mark.asyncio
class TestRetries:
    """Bounded retries around the read-modify-write cycle."""

    async def test_conflicts_are_retried(self, site, test_data):
        repository = FlakyRepository(save_conflicts=2)
        service = VotingService(repository, RecordingPublisher(), site=site, retry_delay=0)
        test = await service.create_test(test_data, ADMIN)

        await service.direct_vote(test.id, test.options[0].id, GUEST)

        stored, _ = await repository.load(test.id)
        assert stored.total_votes == 1
        assert repository.saves == 3

    async def test_exhausted_conflicts_surface_as_conflict(self, site, test_data):
        repository = FlakyRepository(save_conflicts=10)
        service = VotingService(repository, RecordingPublisher(), site=site, max_retries=3, retry_delay=0)
        test = await service.create_test(test_data, ADMIN)

        with pytest.raises(ConflictError):
            await service.direct_vote(test.id, test.options[0].id, GUEST)

        stored, _ = await repository.load(test.id)
        assert stored.total_votes == 0

    async def test_exhausted_outages_surface_as_unavailable(self, site, test_data):
        repository = FlakyRepository()
        service = VotingService(repository, RecordingPublisher(), site=site, max_retries=2, retry_delay=0)
        test = await service.create_test(test_data, ADMIN)
        repository.load_outages = 5

        with pytest.raises(UnavailableError):
            await service.direct_vote(test.id, test.options[0].id, GUEST)

    async def test_domain_errors_are_not_retried(self, site, test_data):
        repository = FlakyRepository()
        service = VotingService(repository, RecordingPublisher(), site=site, retry_delay=0)
        test = await service.create_test(test_data, ADMIN)

        with pytest.raises(NotFoundError):
            await service.direct_vote(test.id, "missing", GUEST)

        assert repository.saves == 0


@pytest.mark.asyncio
class TestNotifications:
    """Completion notifications through the outbox."""

    async def test_completion_notifies_once(self, service, stored_test, publisher):
        session = await play_session(service, stored_test.id, "s1", ALICE)
        await service.drain_notifications()

        assert len(publisher.events) == 1
        event = publisher.events[0]
        assert event["participant_id"] == ALICE.participant_id
        assert event["kind"] == VOTE_COMPLETED
        assert event["payload"]["test_id"] == stored_test.id
        assert event["payload"]["test_slug"] == stored_test.slug
        assert event["payload"]["test_title"]["tr"] == "En İyi Kahve"
        assert event["payload"]["category_name"] == "Yemek"
        assert event["payload"]["final_winner"] == session.final_winner

    async def test_guest_completion_is_silent(self, service, stored_test, publisher):
        await play_session(service, stored_test.id, "s1", GUEST)
        await service.drain_notifications()

        assert publisher.events == []

    async def test_unknown_category_uses_placeholder(self, service, publisher, test_data, site):
        test_data["category"] = "unlisted"
        test = await service.create_test(test_data, ADMIN)

        await play_session(service, test.id, "s1", ALICE)
        await service.drain_notifications()

        assert publisher.events[0]["payload"]["category_name"] == site.unknown_category_label

    @pytest.mark.parametrize(
        "failing",
        [RecordingPublisher(succeed=False), RecordingPublisher(error=RuntimeError("broker down"))],
    )
    async def test_failed_notification_keeps_the_vote(self, repository, site, test_data, failing):
        service = VotingService(repository, failing, site=site, retry_delay=0)
        test = await service.create_test(test_data, ADMIN)

        session = await play_session(service, test.id, "s1", ALICE)
        await service.drain_notifications()

        assert session.is_complete
        stored, _, _ = await service.get_results(test.id)
        assert stored.total_votes == 1

    async def test_slow_outbox_does_not_hold_the_vote(self, repository, site, test_data):
        publisher = GatedPublisher()
        service = VotingService(repository, publisher, site=site, retry_delay=0)
        test = await service.create_test(test_data, ADMIN)

        session = await asyncio.wait_for(play_session(service, test.id, "s1", ALICE), timeout=1)

        assert session.is_complete
        assert publisher.events == []

        publisher.release.set()
        await service.drain_notifications()

        assert len(publisher.events) == 1
        assert publisher.events[0]["payload"]["final_winner"] == session.final_winner


@pytest.mark.asyncio
class TestTestLifecycle:
    """Administration, expiry and resets."""

    async def test_only_admins_create(self, service, test_data):
        with pytest.raises(UnauthorizedError):
            await service.create_test(test_data, ALICE)

    async def test_invalid_test_is_rejected(self, service, test_data):
        test_data["options"] = test_data["options"][:1]

        with pytest.raises(ValidationError):
            await service.create_test(test_data, ADMIN)

    async def test_expired_test_is_swept_before_reads(self, service, test_data):
        test_data["end_date"] = (utc_now() - timedelta(days=1)).isoformat()
        test = await service.create_test(test_data, ADMIN)
        assert test.is_active

        refreshed, _, _ = await service.get_results(test.id)
        assert refreshed.is_active is False

        with pytest.raises(InactiveError):
            await service.direct_vote(test.id, test.options[0].id, GUEST)

    async def test_inactive_detail_is_admin_only(self, service, stored_test):
        await service.update_test(stored_test.id, {"is_active": False}, ADMIN)

        with pytest.raises(InactiveError):
            await service.get_test(stored_test.id, ALICE)
        assert (await service.get_test(stored_test.id, ADMIN)).is_active is False

    async def test_reset_keeps_session_history(self, service, stored_test):
        session = await play_session(service, stored_test.id, "s1", ALICE)
        for index in range(99):
            await service.direct_vote(stored_test.id, stored_test.options[index % 3].id, ALICE)

        test = await service.reset_votes(stored_test.id, ADMIN)

        assert test.total_votes == 0
        assert all(o.votes == 0 and o.win_rate == 0 for o in test.options)
        _, kept = await service.get_session(stored_test.id, "s1")
        assert kept.final_winner == session.final_winner
        _, ranked, _ = await service.get_results(stored_test.id, ResultSource.SESSIONS)
        assert ranked[0].votes == 1

    async def test_reset_is_admin_only(self, service, stored_test):
        with pytest.raises(UnauthorizedError):
            await service.reset_votes(stored_test.id, ALICE)

    async def test_update_preserves_votes(self, service, stored_test):
        option = stored_test.options[0]
        await service.direct_vote(stored_test.id, option.id, GUEST)

        test = await service.update_test(
            stored_test.id,
            {
                "title": {"tr": "Yeni Başlık"},
                "popular": True,
                "options": [{"id": option.id, "title": {"tr": "Ristretto"}}],
            },
            ADMIN,
        )

        updated = test.find_option(option.id)
        assert updated.title.tr == "Ristretto"
        assert updated.image == option.image
        assert updated.votes == 1
        assert test.title.tr == "Yeni Başlık"
        assert test.popular is True
        assert test.slug == stored_test.slug

    async def test_update_unknown_option(self, service, stored_test):
        with pytest.raises(NotFoundError):
            await service.update_test(
                stored_test.id, {"options": [{"id": "missing", "image": "x.jpg"}]}, ADMIN
            )

    async def test_clearing_end_date_reactivates(self, service, test_data):
        test_data["end_date"] = (utc_now() - timedelta(days=1)).isoformat()
        test = await service.create_test(test_data, ADMIN)
        await service.expire_tests()

        test = await service.update_test(test.id, {"end_date": None, "is_active": True}, ADMIN)

        assert test.is_active is True
        await service.direct_vote(test.id, test.options[0].id, GUEST)

    async def test_past_end_date_cannot_be_reactivated(self, service, stored_test):
        past = (utc_now() - timedelta(hours=1)).isoformat()

        test = await service.update_test(stored_test.id, {"end_date": past, "is_active": True}, ADMIN)

        assert test.is_active is False

    async def test_delete(self, service, stored_test):
        await service.delete_test(stored_test.id, ADMIN)

        with pytest.raises(NotFoundError):
            await service.get_test(stored_test.id, ADMIN)
        with pytest.raises(NotFoundError):
            await service.delete_test(stored_test.id, ADMIN)

    async def test_list_filters_and_pages(self, service, test_data):
        for _ in range(3):
            await service.create_test(test_data, ADMIN)
        test_data["category"] = "music"
        other = await service.create_test(test_data, ADMIN)

        food, total = await service.list_tests(category="food", limit=2)
        assert total == 3
        assert len(food) == 2

        music, total = await service.list_tests(category="music")
        assert total == 1
        assert music[0].id == other.id

    @pytest.mark.parametrize("field", ["is_active", "trend", "popular", "category"])
    async def test_null_for_required_field_is_rejected(self, service, stored_test, field):
        with pytest.raises(ValidationError):
            await service.update_test(stored_test.id, {field: None}, ADMIN)

        test = await service.get_test(stored_test.id, GUEST)
        assert test.is_active is True
        assert test.category == stored_test.category

    async def test_unsupported_language_is_rejected(self, repository, publisher, test_data):
        site = SiteSettings(languages=(Language.TR, Language.EN))
        service = VotingService(repository, publisher, site=site, retry_delay=0)

        test_data["description"] = {"tr": "Açıklama", "de": "Beschreibung"}
        with pytest.raises(ValidationError):
            await service.create_test(test_data, ADMIN)

        del test_data["description"]
        test = await service.create_test(test_data, ADMIN)
        with pytest.raises(ValidationError):
            await service.update_test(test.id, {"title": {"tr": "Kahve", "fr": "Café"}}, ADMIN)

    async def test_featured_tests(self, service, test_data):
        quiet = await service.create_test({**test_data, "popular": True}, ADMIN)
        busy = await service.create_test({**test_data, "popular": True}, ADMIN)
        closed = await service.create_test({**test_data, "popular": True}, ADMIN)
        trending = await service.create_test({**test_data, "trend": True}, ADMIN)
        for _ in range(2):
            await service.direct_vote(busy.id, busy.options[0].id, GUEST)
        await service.update_test(closed.id, {"is_active": False}, ADMIN)

        popular = await service.featured_tests("popular")
        trend = await service.featured_tests("trend", limit=1)

        assert [t.id for t in popular] == [busy.id, quiet.id]
        assert [t.id for t in trend] == [trending.id]
        with pytest.raises(ValidationError):
            await service.featured_tests("is_active")

    async def test_resolve_slug(self, service, stored_test):
        assert await service.resolve_slug(stored_test.slug) == stored_test.id

        with pytest.raises(NotFoundError):
            await service.resolve_slug("no-such-slug")

    async def test_participant_votes(self, service, stored_test, test_data):
        other = await service.create_test(test_data, ADMIN)
        await service.direct_vote(stored_test.id, stored_test.options[1].id, ALICE)
        await service.direct_vote(other.id, other.options[0].id, ALICE)
        await service.direct_vote(other.id, other.options[2].id, BOB)
        await service.direct_vote(other.id, other.options[2].id, GUEST)

        votes = await service.participant_votes(ALICE)

        assert [(test.id, voter.option_id) for test, voter in votes] == [
            (other.id, other.options[0].id),
            (stored_test.id, stored_test.options[1].id),
        ]
        with pytest.raises(UnauthorizedError):
            await service.participant_votes(GUEST)
