"""Maturador: conversation loop driver.

One supervised asyncio task per running pair, owned by a single
``LoopScheduler``. Each ``PairLoop`` moves ``idle -> active -> stopping ->
idle``. The stop token interrupts the sleep between turns; an iteration that
is already past its status check still completes, so a stop may let one more
turn through before the loop exits.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from typing import Optional

from . import database as db
from . import runtime_config
from . import turn_engine
from .observability import emit_console_event

logger = logging.getLogger("maturador.loop")

STATE_IDLE = "idle"
STATE_ACTIVE = "active"
STATE_STOPPING = "stopping"

TERMINAL_STATUSES = {"missing", "inactive", "exhausted"}
CONFIG_ERROR_KINDS = {"configuration", "fatal"}


def sample_turn_delay() -> float:
    low = runtime_config.TURN_DELAY_MIN_SECONDS
    high = max(low, runtime_config.TURN_DELAY_MAX_SECONDS)
    return random.uniform(low, high)


def sample_reply_delay() -> float:
    low = runtime_config.REPLY_DELAY_MIN_SECONDS
    high = max(low, runtime_config.REPLY_DELAY_MAX_SECONDS)
    return random.uniform(low, high)


def reply_hold(elapsed: float, delay: float) -> float:
    """Time left to wait after a reply nudge, `elapsed` seconds into a `delay` wait.

    A reply shortens the wait to the reply delay but never below the
    minimum turn delay, and never past the delay originally sampled.
    """
    floor = runtime_config.TURN_DELAY_MIN_SECONDS - elapsed
    return max(0.0, min(max(sample_reply_delay(), floor), delay - elapsed))


def retry_delay(error_kind: Optional[str], consecutive_failures: int) -> float:
    """Fixed backoff for transient errors, exponential for configuration errors."""
    base = runtime_config.RETRY_BACKOFF_SECONDS
    if error_kind in CONFIG_ERROR_KINDS:
        exponent = max(0, int(consecutive_failures) - 1)
        return min(base * (2 ** min(exponent, 16)), runtime_config.CONFIG_BACKOFF_MAX_SECONDS)
    return base


class PairLoop:
    """Per-pair task handle with its stop token and wake-up signal."""

    def __init__(self, pair_id: str, previous: Optional[asyncio.Task] = None):
        self.pair_id = pair_id
        self.state = STATE_IDLE
        self.task: Optional[asyncio.Task] = None
        self.previous = previous
        self.iterations = 0
        self.turns_sent = 0
        self.last_outcome: Optional[dict] = None
        self.next_run_at: Optional[float] = None
        self._stop = asyncio.Event()
        self._wake = asyncio.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self):
        if self.state == STATE_ACTIVE:
            self.state = STATE_STOPPING
        self._stop.set()
        self._wake.set()

    def nudge(self):
        self._wake.set()

    async def wait(self, delay: float, wake_on_nudge: bool = True) -> str:
        """Sleep up to `delay` seconds. Returns ``stop``, ``nudge`` or ``timeout``."""
        if self._stop.is_set():
            return "stop"
        if not wake_on_nudge:
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, delay))
            except asyncio.TimeoutError:
                return "timeout"
            return "stop"
        # A nudge that arrived mid-iteration is kept and ends this wait at once.
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return "timeout"
        self._wake.clear()
        return "stop" if self._stop.is_set() else "nudge"

    def snapshot(self) -> dict:
        outcome = self.last_outcome or {}
        return {
            "pair_id": self.pair_id,
            "state": self.state,
            "iterations": self.iterations,
            "turns_sent": self.turns_sent,
            "last_status": outcome.get("status"),
            "last_error": outcome.get("error"),
            "next_run_at": self.next_run_at,
        }


class LoopScheduler:
    """Registry of per-pair loops for this process."""

    def __init__(self):
        self.owner = f"loop-{uuid.uuid4().hex[:12]}"
        self._loops: dict[str, PairLoop] = {}

    def get(self, pair_id: str) -> Optional[PairLoop]:
        return self._loops.get(pair_id)

    def is_running(self, pair_id: str) -> bool:
        loop = self._loops.get(pair_id)
        return bool(loop and loop.task and not loop.task.done() and not loop.stop_requested)

    def ensure_running(self, pair_id: str) -> PairLoop:
        """Start the pair's loop unless one is already active. First iteration is immediate."""
        existing = self._loops.get(pair_id)
        if existing and existing.task and not existing.task.done():
            if not existing.stop_requested:
                return existing
            # Still winding down; the replacement waits for it to finish.
            loop = PairLoop(pair_id, previous=existing.task)
        else:
            loop = PairLoop(pair_id)
        self._loops[pair_id] = loop
        loop.state = STATE_ACTIVE
        loop.task = asyncio.create_task(self._run(loop), name=f"pair-loop-{pair_id}")
        logger.info("Loop started for pair %s", pair_id)
        return loop

    def stop(self, pair_id: str) -> bool:
        loop = self._loops.get(pair_id)
        if not loop or not loop.task or loop.task.done():
            return False
        loop.request_stop()
        logger.info("Stop requested for pair %s", pair_id)
        return True

    def nudge(self, pair_id: str) -> bool:
        loop = self._loops.get(pair_id)
        if not loop or not loop.task or loop.task.done() or loop.stop_requested:
            return False
        loop.nudge()
        return True

    async def shutdown(self):
        """Cancel every loop. Pair status is left untouched so running pairs resume on restart."""
        loops = list(self._loops.values())
        for loop in loops:
            loop.request_stop()
            if loop.task and not loop.task.done():
                loop.task.cancel()
        tasks = [loop.task for loop in loops if loop.task]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loops.clear()

    def reset(self):
        self._loops.clear()

    def status(self) -> dict:
        return {
            "owner": self.owner,
            "loop_driver_enabled": runtime_config.LOOP_DRIVER_ENABLED,
            "leases_enabled": runtime_config.PAIR_LEASES_ENABLED,
            "loops": [loop.snapshot() for loop in self._loops.values()],
        }

    async def _iterate(self, loop: PairLoop) -> dict:
        try:
            return await turn_engine.advance_pair_once(
                loop.pair_id,
                driver="loop",
                lease_owner=self.owner,
                lease_ttl=runtime_config.iteration_lease_seconds(),
                typing_delay=True,
            )
        except Exception as exc:
            logger.exception("Pair %s: unexpected loop error", loop.pair_id)
            return {
                "ok": False,
                "pair_id": loop.pair_id,
                "status": "failed",
                "error_kind": "unexpected",
                "error": str(exc) or exc.__class__.__name__,
            }

    def _next_delay(self, outcome: dict, failures: int) -> float:
        status = outcome.get("status")
        if status in {"sent", "stale"}:
            return sample_turn_delay()
        if status == "leased":
            return runtime_config.RETRY_BACKOFF_SECONDS
        return retry_delay(outcome.get("error_kind"), failures)

    async def _run(self, loop: PairLoop):
        pair_id = loop.pair_id
        failures = 0
        try:
            if loop.previous is not None:
                await asyncio.wait({loop.previous})
                loop.previous = None

            while not loop.stop_requested:
                outcome = await self._iterate(loop)
                loop.iterations += 1
                loop.last_outcome = outcome
                status = outcome.get("status")

                if status in TERMINAL_STATUSES:
                    logger.info("Loop for pair %s ending (%s)", pair_id, status)
                    break
                if status == "sent":
                    loop.turns_sent += 1
                    failures = 0
                elif status == "failed":
                    failures = int(outcome.get("consecutive_failures") or failures + 1)

                delay = self._next_delay(outcome, failures)
                if runtime_config.PAIR_LEASES_ENABLED and status != "leased":
                    await db.acquire_pair_lease(
                        pair_id,
                        self.owner,
                        delay + runtime_config.iteration_lease_seconds(),
                    )
                loop.next_run_at = time.time() + delay
                waited_from = time.monotonic()
                woke = await loop.wait(delay)
                if woke == "nudge":
                    hold = reply_hold(time.monotonic() - waited_from, delay)
                    logger.info("Pair %s nudged by inbound reply, next turn in %.1fs", pair_id, hold)
                    loop.next_run_at = time.time() + hold
                    await loop.wait(hold, wake_on_nudge=False)
        finally:
            loop.state = STATE_IDLE
            loop.next_run_at = None
            if runtime_config.PAIR_LEASES_ENABLED:
                await db.release_pair_lease(pair_id, self.owner)
            if self._loops.get(pair_id) is loop:
                del self._loops[pair_id]

        if (loop.last_outcome or {}).get("status") == "inactive":
            await emit_console_event(
                pair_id=pair_id,
                event_type="loop_stopped",
                source="loop",
                message="Loop stopped: pair is no longer running.",
            )


scheduler = LoopScheduler()
