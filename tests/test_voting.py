"""
Unit tests for the voting engine.
"""

import asyncio

import pytest

from errors import VoteInProgressError
from models import VoteChoice, VoteKind
from voting import VoteManager, skip_vote_bypassed


def test_majority_passes_at_deadline():
    async def scenario():
        votes = VoteManager()
        session = votes.start_vote(VoteKind.MODE_TO_CUSTOM, 0.05)
        assert votes.cast_ballot(session, 1, VoteChoice.YES)
        assert votes.cast_ballot(session, 2, VoteChoice.YES)
        assert votes.cast_ballot(session, 3, VoteChoice.NO)
        return await session.wait()

    outcome = asyncio.run(scenario())
    assert outcome.passed
    assert (outcome.yes_count, outcome.no_count) == (2, 1)
    assert outcome.reason == "deadline"


def test_repeat_voter_counts_once():
    async def scenario():
        votes = VoteManager()
        session = votes.start_vote(VoteKind.SKIP_ITEM, 0.05)
        assert votes.cast_ballot(session, 7, VoteChoice.YES)
        assert not votes.cast_ballot(session, 7, VoteChoice.NO)
        assert not votes.cast_ballot(session, 7, VoteChoice.YES)
        return await session.wait()

    outcome = asyncio.run(scenario())
    assert outcome.passed
    assert (outcome.yes_count, outcome.no_count) == (1, 0)


def test_tie_and_empty_votes_fail():
    async def scenario():
        votes = VoteManager()
        empty = votes.start_vote(VoteKind.MODE_TO_CUSTOM, 0.01)
        tie = votes.start_vote(VoteKind.SKIP_ITEM, 0.01)
        votes.cast_ballot(tie, 1, VoteChoice.YES)
        votes.cast_ballot(tie, 2, VoteChoice.NO)
        return await empty.wait(), await tie.wait()

    empty, tie = asyncio.run(scenario())
    assert not empty.passed
    assert (empty.yes_count, empty.no_count) == (0, 0)
    assert not tie.passed


def test_duplicate_vote_for_same_context_rejected():
    async def scenario():
        votes = VoteManager()
        session = votes.start_vote(VoteKind.MODE_TO_CUSTOM, 5, context="chan")
        with pytest.raises(VoteInProgressError):
            votes.start_vote(VoteKind.MODE_TO_CUSTOM, 5, context="chan")
        # Different context is independent.
        other = votes.start_vote(VoteKind.MODE_TO_CUSTOM, 5, context="other")
        await votes.cancel_all()
        return session.outcome, other.outcome

    first, second = asyncio.run(scenario())
    assert first.reason == "cancelled" and not first.passed
    assert second.reason == "cancelled"


def test_end_vote_early_and_late_ballots_ignored():
    async def scenario():
        votes = VoteManager()
        resolved = []
        session = votes.start_vote(VoteKind.CONFIRM_FILE_PLAY, 5, on_resolved=resolved.append)
        votes.cast_ballot(session, 1, VoteChoice.YES)
        outcome = await votes.end_vote(session, reason="ended")
        late = votes.cast_ballot(session, 2, VoteChoice.YES)
        again = await votes.end_vote(session, reason="again", passed=False)
        return outcome, late, again, resolved, votes.find(VoteKind.CONFIRM_FILE_PLAY)

    outcome, late, again, resolved, found = asyncio.run(scenario())
    assert outcome.passed and outcome.reason == "ended"
    assert not late
    assert again is outcome
    assert resolved == [outcome]
    assert found is None


def test_tick_callback_failures_do_not_break_vote():
    async def scenario():
        votes = VoteManager(tick_interval=0.01)
        ticks = []

        def on_tick(session, remaining):
            ticks.append(remaining)
            raise RuntimeError("message deleted")

        session = votes.start_vote(VoteKind.SKIP_ITEM, 0.08, on_tick=on_tick)
        votes.cast_ballot(session, 1, VoteChoice.YES)
        return await session.wait(), ticks

    outcome, ticks = asyncio.run(scenario())
    assert outcome.passed
    assert ticks
    assert all(remaining >= 0 for remaining in ticks)


def test_skip_bypass_is_exactly_two():
    assert skip_vote_bypassed(2)
    assert not skip_vote_bypassed(1)
    assert not skip_vote_bypassed(3)
    assert not skip_vote_bypassed(0)
