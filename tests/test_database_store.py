import asyncio
import time

import pytest

from maturador import database as db

from helpers.temp_db import seed_pair


def _run(coro):
    return asyncio.run(coro)


def test_new_pairs_start_stopped_and_inactive():
    pair = _run(seed_pair(status="stopped"))
    assert pair["status"] == "stopped"
    assert pair["active"] is False
    assert pair["turn_counter"] == 0
    assert pair["started_at"] is None


def test_duplicate_and_self_pairs_are_rejected():
    async def scenario():
        pair = await seed_pair(status="stopped")
        with pytest.raises(ValueError):
            await db.create_pair(pair["member_b"], pair["member_a"])
        with pytest.raises(ValueError):
            await db.create_pair(pair["member_a"], pair["member_a"])

    _run(scenario())


def test_commit_turn_only_applies_to_the_expected_counter():
    async def scenario():
        pair = await seed_pair(turn_counter=4)
        first = await db.commit_turn(pair["id"], 4, last_sender=pair["member_a"])
        second = await db.commit_turn(pair["id"], 4, last_sender=pair["member_a"])
        return first, second, await db.get_pair(pair["id"])

    first, second, pair = _run(scenario())
    assert first is True
    assert second is False
    assert pair["turn_counter"] == 5
    assert pair["waiting_response"] is True
    assert pair["last_activity_at"]


def test_leases_are_exclusive_until_expiry():
    async def scenario():
        pair = await seed_pair()
        now = time.time()
        got_loop = await db.acquire_pair_lease(pair["id"], "loop-1", 60, now=now)
        got_sweep = await db.acquire_pair_lease(pair["id"], "sweep-1", 60, now=now + 1)
        renewed = await db.acquire_pair_lease(pair["id"], "loop-1", 60, now=now + 2)
        after_expiry = await db.acquire_pair_lease(pair["id"], "sweep-2", 60, now=now + 120)
        released_by_stranger = await db.release_pair_lease(pair["id"], "loop-1")
        released = await db.release_pair_lease(pair["id"], "sweep-2")
        return got_loop, got_sweep, renewed, after_expiry, released_by_stranger, released

    assert _run(scenario()) == (True, False, True, True, False, True)


def test_transition_guard_and_started_at_written_once():
    async def scenario():
        pair = await seed_pair(status="stopped")
        started = await db.transition_pair_status(
            pair["id"], {"stopped", "paused"}, "running", activate=True, mark_started=True
        )
        again = await db.transition_pair_status(
            pair["id"], {"stopped", "paused"}, "running", activate=True, mark_started=True
        )
        paused = await db.transition_pair_status(pair["id"], {"running"}, "paused")
        resumed = await db.transition_pair_status(
            pair["id"], {"stopped", "paused"}, "running", mark_started=True
        )
        return started, again, paused, resumed

    started, again, paused, resumed = _run(scenario())
    assert started["status"] == "running" and started["active"] is True
    assert again is None
    assert paused["status"] == "paused"
    assert resumed["started_at"] == started["started_at"]


def test_turns_are_returned_oldest_first():
    async def scenario():
        pair = await seed_pair()
        for i in range(5):
            await db.insert_turn(pair["id"], i, pair["member_a"], pair["member_b"], f"msg {i}")
        return await db.get_turns(pair["id"], limit=3)

    turns = _run(scenario())
    assert [t["content"] for t in turns] == ["msg 2", "msg 3", "msg 4"]
    assert all(t["stale"] is False for t in turns)


def test_failures_accumulate_and_reset_on_commit():
    async def scenario():
        pair = await seed_pair()
        assert await db.record_pair_failure(pair["id"], "no address") == 1
        assert await db.record_pair_failure(pair["id"], "no address") == 2
        await db.commit_turn(pair["id"], 0, last_sender=pair["member_a"])
        return await db.get_pair(pair["id"])

    pair = _run(scenario())
    assert pair["consecutive_failures"] == 0
    assert pair["last_error"] is None
