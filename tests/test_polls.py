"""Тесты голосования: одиночный и множественный выбор, подсчёт, сохранение."""
import asyncio
import random

import pytest

from shared.errors import InvalidOption
from shared.polls import PollVoteTracker
from tests.conftest import make_message


@pytest.fixture
def tracker(store):
    return PollVoteTracker(store)


def single_poll(store, msg_id="p1", **fields):
    msg = make_message(msg_id, type="pollSingle", text="Куда идём?", poll_options=["A", "B"], **fields)
    store.save(msg)
    return msg


def test_single_choice_moves_vote(store, tracker):
    single_poll(store)
    tracker.ensure("p1", 2)

    async def scenario():
        assert await tracker.toggle_vote("p1", 0, "U1", "single") is True
        assert await tracker.toggle_vote("p1", 1, "U1", "single") is True

    asyncio.run(scenario())
    assert tracker.votes("p1") == {0: set(), 1: {"U1"}}


def test_multiple_choice_toggles_off(store, tracker):
    msg = make_message("p2", type="pollMultiple", text="?", poll_options=["A", "B", "C"])
    store.save(msg)
    tracker.ensure("p2", 3)

    async def scenario():
        await tracker.toggle_vote("p2", 0, "U1", "multiple")
        await tracker.toggle_vote("p2", 2, "U1", "multiple")
        assert await tracker.toggle_vote("p2", 0, "U1", "multiple") is False

    asyncio.run(scenario())
    assert tracker.votes("p2") == {0: set(), 1: set(), 2: {"U1"}}


def test_single_choice_keeps_at_most_one_vote_per_voter(store, tracker):
    store.save(make_message("p3", type="pollSingle", text="?", poll_options=["A", "B", "C", "D"]))
    tracker.ensure("p3", 4)
    rng = random.Random(7)
    voters = ["U1", "U2", "U3"]

    async def scenario():
        for _ in range(60):
            await tracker.toggle_vote("p3", rng.randrange(4), rng.choice(voters))
            votes = tracker.votes("p3")
            for voter in voters:
                assert sum(voter in v for v in votes.values()) <= 1

    asyncio.run(scenario())


def test_multiple_choice_double_toggle_is_identity(store, tracker):
    store.save(make_message("p4", type="pollMultiple", text="?", poll_options=["A", "B", "C"]))
    tracker.ensure("p4", 3)

    async def scenario():
        await tracker.toggle_vote("p4", 1, "U2")
        before = tracker.votes("p4")
        await tracker.toggle_vote("p4", 2, "U1")
        await tracker.toggle_vote("p4", 2, "U1")
        return before

    before = asyncio.run(scenario())
    assert tracker.votes("p4") == before


def test_mode_defaults_to_message_type(store, tracker):
    single_poll(store)
    tracker.ensure("p1", 2)

    async def scenario():
        await tracker.toggle_vote("p1", 0, "U1")
        await tracker.toggle_vote("p1", 1, "U1")

    asyncio.run(scenario())
    assert tracker.votes("p1") == {0: set(), 1: {"U1"}}


@pytest.mark.parametrize("index", [-1, 2, 10])
def test_out_of_range_option_is_rejected(store, tracker, index):
    single_poll(store)
    tracker.ensure("p1", 2)
    with pytest.raises(InvalidOption):
        asyncio.run(tracker.toggle_vote("p1", index, "U1"))
    assert tracker.votes("p1") == {0: set(), 1: set()}


def test_unknown_poll_is_rejected(tracker):
    with pytest.raises(InvalidOption):
        asyncio.run(tracker.toggle_vote("nope", 0, "U1"))


def test_lost_votes_are_rebuilt_for_known_poll(store, tracker):
    single_poll(store)
    assert asyncio.run(tracker.toggle_vote("p1", 1, "U1")) is True
    assert tracker.votes("p1") == {0: set(), 1: {"U1"}}


def test_ensure_does_not_destroy_votes(store, tracker):
    single_poll(store)
    tracker.ensure("p1", 2)
    asyncio.run(tracker.toggle_vote("p1", 0, "U1"))
    tracker.ensure("p1", 2)
    assert tracker.votes("p1")[0] == {"U1"}


def test_tally_lists_voters_in_vote_order(store, tracker):
    single_poll(store)
    tracker.ensure("p1", 2)

    async def scenario():
        await tracker.toggle_vote("p1", 1, "U2")
        await tracker.toggle_vote("p1", 1, "U1")

    asyncio.run(scenario())
    tallies = tracker.tally("p1")
    assert [(t.label, t.count, t.voters) for t in tallies] == [("A", 0, []), ("B", 2, ["U2", "U1"])]


def test_anonymous_tally_hides_voters(store, tracker):
    single_poll(store, anonymous=True)
    tracker.ensure("p1", 2)
    asyncio.run(tracker.toggle_vote("p1", 0, "U1"))
    tally = tracker.tally("p1")[0]
    assert tally.count == 1
    assert tally.voters == []


def test_reset_clears_all_options(store, tracker):
    single_poll(store)
    tracker.ensure("p1", 2)
    asyncio.run(tracker.toggle_vote("p1", 0, "U1"))
    tracker.reset("p1")
    assert tracker.votes("p1") == {0: set(), 1: set()}


def test_open_round_resets_only_recurring_polls(store, tracker):
    once = single_poll(store, "p_once")
    daily = single_poll(store, "p_daily", repeat="daily")
    for msg in (once, daily):
        tracker.ensure(msg.id, 2)
        asyncio.run(tracker.toggle_vote(msg.id, 0, "U1"))
        tracker.open_round(msg)

    assert tracker.votes("p_once")[0] == {"U1"}
    assert tracker.votes("p_daily")[0] == set()


def test_votes_survive_new_tracker(store, tracker):
    single_poll(store)
    tracker.ensure("p1", 2)
    asyncio.run(tracker.toggle_vote("p1", 1, "U1"))

    fresh = PollVoteTracker(store)
    assert fresh.votes("p1") == {0: set(), 1: {"U1"}}


def test_concurrent_toggles_are_serialized(store, tracker):
    store.save(make_message("p5", type="pollMultiple", text="?", poll_options=["A", "B"]))
    tracker.ensure("p5", 2)
    voters = [f"U{i}" for i in range(20)]

    async def scenario():
        await asyncio.gather(*(tracker.toggle_vote("p5", 0, v) for v in voters))

    asyncio.run(scenario())
    assert tracker.votes("p5")[0] == set(voters)
    assert len(store.get_votes("p5")[0]) == 20
