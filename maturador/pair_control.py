"""Maturador: operator operations on pairs (start / pause / stop / history)."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from . import database as db
from . import runtime_config
from . import sweep_driver
from .errors import InvalidTransition, PairNotFound
from .loop_driver import scheduler
from .observability import emit_console_event

logger = logging.getLogger("maturador.pairs")

# Strong references so fire-and-forget sweeps are not garbage collected mid-run.
_background: set[asyncio.Task] = set()


async def _require_pair(pair_id: str) -> dict:
    pair = await db.get_pair(pair_id)
    if pair is None:
        raise PairNotFound(f"Pair not found: {pair_id}", {"pair_id": pair_id})
    return pair


def _kick(pair_id: str) -> str:
    """Trigger an immediate advance: the loop's first iteration, or a forced sweep."""
    if runtime_config.LOOP_DRIVER_ENABLED:
        scheduler.ensure_running(pair_id)
        return "loop"
    task = asyncio.create_task(sweep_driver.sweep_once(pair_id), name=f"forced-sweep-{pair_id}")
    _background.add(task)
    task.add_done_callback(_background.discard)
    return "sweep"


async def create_pair(
    member_a: str,
    member_b: str,
    *,
    scheduling_mode: str = "generated",
    script_id: Optional[str] = None,
    script_loop: bool = True,
) -> dict:
    pair = await db.create_pair(
        member_a,
        member_b,
        scheduling_mode=scheduling_mode,
        script_id=script_id,
        script_loop=script_loop,
    )
    logger.info("Pair %s created: %s <-> %s (%s)", pair["id"], member_a, member_b, scheduling_mode)
    return pair


async def start_pair(pair_id: str) -> dict:
    """stopped|paused -> running. Idempotent on a running pair."""
    pair = await _require_pair(pair_id)
    if pair["status"] == "running":
        if not pair["active"]:
            pair = await db.update_pair(pair_id, {"active": True})
        driver = _kick(pair_id) if not scheduler.is_running(pair_id) else "loop"
        return {"ok": True, "changed": False, "driver": driver, "pair": pair}

    if pair["status"] == "stopped" and pair["script_exhausted"]:
        await db.update_pair(pair_id, {"script_exhausted": False, "script_cursor": 0})

    updated = await db.transition_pair_status(
        pair_id,
        {"stopped", "paused"},
        "running",
        activate=True,
        mark_started=True,
    )
    if updated is None:
        current = await _require_pair(pair_id)
        if current["status"] != "running":
            raise InvalidTransition(
                f"Cannot start pair from {current['status']}.",
                {"pair_id": pair_id, "status": current["status"]},
            )
        updated = current

    driver = _kick(pair_id)
    await emit_console_event(
        pair_id=pair_id,
        event_type="pair_started",
        source="operator",
        message=f"Pair started from {pair['status']} at turn {updated['turn_counter']}.",
        data={"from": pair["status"], "driver": driver},
    )
    return {"ok": True, "changed": True, "driver": driver, "pair": updated}


async def pause_pair(pair_id: str) -> dict:
    """running -> paused. Pausing a paused pair is a no-op."""
    pair = await _require_pair(pair_id)
    if pair["status"] == "paused":
        return {"ok": True, "changed": False, "pair": pair}
    updated = await db.transition_pair_status(pair_id, {"running"}, "paused")
    if updated is None:
        raise InvalidTransition(
            f"Cannot pause pair from {pair['status']}.",
            {"pair_id": pair_id, "status": pair["status"]},
        )
    scheduler.stop(pair_id)
    await emit_console_event(
        pair_id=pair_id,
        event_type="pair_paused",
        source="operator",
        message=f"Pair paused at turn {updated['turn_counter']}.",
    )
    return {"ok": True, "changed": True, "pair": updated}


async def stop_pair(pair_id: str) -> dict:
    """running -> stopped. Stopping a stopped pair is a no-op; paused pairs must resume first."""
    pair = await _require_pair(pair_id)
    if pair["status"] == "stopped":
        scheduler.stop(pair_id)
        return {"ok": True, "changed": False, "pair": pair}
    updated = await db.transition_pair_status(pair_id, {"running"}, "stopped")
    if updated is None:
        raise InvalidTransition(
            f"Cannot stop pair from {pair['status']}.",
            {"pair_id": pair_id, "status": pair["status"]},
        )
    scheduler.stop(pair_id)
    await emit_console_event(
        pair_id=pair_id,
        event_type="pair_stopped",
        source="operator",
        message=f"Pair stopped at turn {updated['turn_counter']}.",
    )
    return {"ok": True, "changed": True, "pair": updated}


async def delete_pair(pair_id: str) -> dict:
    scheduler.stop(pair_id)
    if not await db.delete_pair(pair_id):
        raise PairNotFound(f"Pair not found: {pair_id}", {"pair_id": pair_id})
    logger.info("Pair %s deleted", pair_id)
    return {"ok": True, "deleted": pair_id}


async def get_turn_history(pair_id: str, limit: int = 50, before_id: Optional[int] = None) -> list[dict]:
    await _require_pair(pair_id)
    return await db.get_turns(pair_id, limit=limit, before_id=before_id)


async def resume_running_pairs() -> int:
    """Restart loops for pairs persisted as running, from their stored counters."""
    pairs = await db.list_pairs_by_status("running", active_only=True)
    for pair in pairs:
        scheduler.ensure_running(pair["id"])
    if pairs:
        logger.info("Resumed %d running pair(s)", len(pairs))
    return len(pairs)
