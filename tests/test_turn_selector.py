import pytest

from maturador.turn_selector import MEMBER_A, MEMBER_B, members_for, other_member, select_speaker


def test_even_counters_pick_member_a_and_odd_pick_member_b():
    for n in range(0, 200):
        expected = MEMBER_A if n % 2 == 0 else MEMBER_B
        assert select_speaker(n) == expected


def test_consecutive_turns_always_alternate():
    for n in range(0, 200):
        assert select_speaker(n) != select_speaker(n + 1)


def test_negative_counter_is_rejected():
    with pytest.raises(ValueError):
        select_speaker(-1)


def test_members_for_resumes_from_persisted_counter():
    pair = {"id": "p1", "member_a": "ana", "member_b": "bia"}
    assert members_for(pair, 0) == ("ana", "bia")
    # A pair restarted with counter 7 continues with B, not from the top.
    assert members_for(pair, 7) == ("bia", "ana")


def test_other_member_rejects_strangers():
    pair = {"id": "p1", "member_a": "ana", "member_b": "bia"}
    assert other_member(pair, "ana") == "bia"
    assert other_member(pair, "bia") == "ana"
    with pytest.raises(ValueError):
        other_member(pair, "carla")
