"""Unit tests for the option ledger and direct vote tally."""

import pytest

from versus.shared import ledger
from versus.shared.errors import InactiveError, NotFoundError


def assert_consistent(test):
    total = sum(option.votes for option in test.options)
    assert test.total_votes == total
    for option in test.options:
        expected = option.votes / total * 100 if total else 0.0
        assert option.win_rate == pytest.approx(expected)


class TestDirectVote:
    """Tests for session-less votes."""

    def test_two_option_direct_vote(self, make_test):
        test = make_test(2)
        a, b = test.options

        ledger.apply_direct_vote(test, b.id)

        assert b.votes == 1
        assert test.total_votes == 1
        assert a.win_rate == 0
        assert b.win_rate == 100
        assert test.stats.most_popular_option == b.id

    def test_every_call_is_one_increment(self, make_test):
        test = make_test(3)
        target = test.options[1]

        for _ in range(4):
            ledger.apply_direct_vote(test, target.id, participant_id="user-1")

        assert target.votes == 4
        assert test.total_votes == 4
        assert test.stats.total_comparisons == 4
        assert_consistent(test)

    def test_authenticated_votes_are_recorded(self, make_test):
        test = make_test(2)
        option = test.options[0]

        ledger.apply_direct_vote(test, option.id, participant_id="user-1")
        ledger.apply_direct_vote(test, option.id)

        assert len(test.voters) == 1
        assert test.voters[0].participant_id == "user-1"
        assert test.voters[0].option_id == option.id

    def test_unknown_option(self, make_test):
        test = make_test(2)

        with pytest.raises(NotFoundError):
            ledger.apply_direct_vote(test, "missing")

        assert test.total_votes == 0
        assert test.stats.total_comparisons == 0

    def test_inactive_test_is_checked_first(self, make_test):
        test = make_test(2)
        test.is_active = False

        with pytest.raises(InactiveError):
            ledger.apply_direct_vote(test, "missing")


class TestRecompute:
    """Tests for derived totals and statistics."""

    def test_win_rates_follow_votes(self, make_test):
        test = make_test(3)
        for option, votes in zip(test.options, (5, 3, 2)):
            option.votes = votes

        ledger.recompute(test)

        assert test.total_votes == 10
        assert [o.win_rate for o in test.options] == pytest.approx([50.0, 30.0, 20.0])
        assert test.stats.average_votes_per_option == pytest.approx(10 / 3)
        assert_consistent(test)

    def test_most_popular_tie_keeps_storage_order(self, make_test):
        test = make_test(3)
        test.options[1].votes = 4
        test.options[2].votes = 4

        ledger.recompute(test)

        assert test.stats.most_popular_option == test.options[1].id

    def test_zero_votes(self, make_test):
        test = make_test(3)

        ledger.recompute(test)

        assert test.total_votes == 0
        assert all(option.win_rate == 0 for option in test.options)


class TestResetVotes:
    """Tests for zeroing a test's tally."""

    def test_reset_zeroes_tally_and_keeps_sessions(self, make_test):
        from versus.shared import bracket

        test = make_test(3)
        bracket.start_session(test, "s1", participant_id="user-1")
        for index in range(100):
            ledger.apply_direct_vote(test, test.options[index % 3].id, participant_id="user-1")

        ledger.reset_votes(test)

        assert test.total_votes == 0
        assert all(o.votes == 0 and o.win_rate == 0 for o in test.options)
        assert test.voters == []
        assert test.stats.total_comparisons == 0
        assert test.stats.most_popular_option is None
        assert [s.session_id for s in test.vote_sessions] == ["s1"]

    def test_reset_is_idempotent(self, make_test):
        test = make_test(3)
        ledger.apply_direct_vote(test, test.options[0].id)

        once = ledger.reset_votes(test).to_dict()
        twice = ledger.reset_votes(test).to_dict()

        once.pop("updated_at")
        twice.pop("updated_at")
        assert once == twice
