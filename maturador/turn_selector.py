"""Strict alternation: the turn counter alone decides who speaks next."""

from __future__ import annotations

MEMBER_A = "A"
MEMBER_B = "B"


def select_speaker(turn_counter: int) -> str:
    """Even counters belong to member A, odd counters to member B."""
    if turn_counter < 0:
        raise ValueError(f"turn_counter must be non-negative, got {turn_counter}")
    return MEMBER_A if turn_counter % 2 == 0 else MEMBER_B


def members_for(pair: dict, turn_counter: int) -> tuple[str, str]:
    """Return ``(speaker_name, listener_name)`` for the given counter."""
    if select_speaker(turn_counter) == MEMBER_A:
        return pair["member_a"], pair["member_b"]
    return pair["member_b"], pair["member_a"]


def other_member(pair: dict, member: str) -> str:
    if member == pair["member_a"]:
        return pair["member_b"]
    if member == pair["member_b"]:
        return pair["member_a"]
    raise ValueError(f"{member!r} is not a member of pair {pair.get('id')}")
