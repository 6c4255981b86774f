"""Maturador: sweep driver. Periodic stateless pass over all running pairs."""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from . import database as db
from . import runtime_config
from . import turn_engine
from .observability import emit_console_event

logger = logging.getLogger("maturador.sweep")

_sweeper_task: Optional[asyncio.Task] = None
_sweeper_running = False
_last_report: Optional[dict] = None


def _seconds_since(stamp: Optional[str]) -> Optional[float]:
    if not stamp:
        return None
    try:
        parsed = datetime.fromisoformat(stamp)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - parsed).total_seconds()


def is_recent(pair: dict) -> bool:
    elapsed = _seconds_since(pair.get("last_activity_at"))
    return elapsed is not None and elapsed < runtime_config.SWEEP_MIN_IDLE_SECONDS


async def _sweep_pair(pair: dict, owner: str, forced: bool, semaphore: asyncio.Semaphore) -> dict:
    if not forced and is_recent(pair):
        return {"ok": False, "pair_id": pair["id"], "status": "skipped", "reason": "recent"}

    async with semaphore:
        try:
            outcome = await turn_engine.advance_pair_once(
                pair["id"],
                driver="sweep",
                lease_owner=owner,
                lease_ttl=runtime_config.SWEEP_LEASE_SECONDS,
                typing_delay=True,
                release_lease=True,
            )
        except Exception as exc:
            logger.exception("Sweep: unexpected error on pair %s", pair["id"])
            return {
                "ok": False,
                "pair_id": pair["id"],
                "status": "failed",
                "error_kind": "unexpected",
                "error": str(exc) or exc.__class__.__name__,
            }

    if outcome.get("status") in {"leased", "inactive", "missing"}:
        return {**outcome, "status": "skipped", "reason": outcome["status"]}
    return outcome


async def sweep_once(pair_id: Optional[str] = None) -> dict:
    """Advance every running pair by at most one turn.

    With `pair_id`, advance only that pair and ignore the idle gate.
    """
    global _last_report
    owner = f"sweep-{uuid.uuid4().hex[:12]}"
    forced = pair_id is not None
    if forced:
        pair = await db.get_pair(pair_id)
        candidates = [pair] if pair else []
    else:
        candidates = await db.list_pairs_by_status("running", active_only=True)

    semaphore = asyncio.Semaphore(runtime_config.SWEEP_MAX_CONCURRENCY)
    results = list(
        await asyncio.gather(*(_sweep_pair(pair, owner, forced, semaphore) for pair in candidates))
    )
    if forced and not candidates:
        results.append({"ok": False, "pair_id": pair_id, "status": "skipped", "reason": "missing"})

    skipped = sum(1 for r in results if r.get("status") == "skipped")
    succeeded = sum(1 for r in results if r.get("status") == "sent")
    processed = len(results) - skipped
    report = {
        "ok": True,
        "forced": forced,
        "processed": processed,
        "succeeded": succeeded,
        "failed": processed - succeeded,
        "skipped": skipped,
        "results": [{k: v for k, v in r.items() if k != "turn"} for r in results],
        "finished_at": db.utc_now_iso(),
    }
    _last_report = report
    if processed:
        logger.info(
            "Sweep: %d processed, %d succeeded, %d failed, %d skipped",
            processed,
            succeeded,
            report["failed"],
            skipped,
        )
    if report["failed"]:
        await emit_console_event(
            event_type="sweep_failures",
            source="sweep",
            severity="warning",
            message=f"Sweep finished with {report['failed']} failed pair(s).",
            data={"failed": [r for r in report["results"] if r.get("status") not in {"sent", "skipped"}]},
        )
    return report


async def _sweeper_loop():
    global _sweeper_running
    _sweeper_running = True
    logger.info("Sweeper started (interval: %ss)", runtime_config.SWEEP_INTERVAL_SECONDS)

    while _sweeper_running:
        try:
            await asyncio.sleep(runtime_config.SWEEP_INTERVAL_SECONDS)
            if _sweeper_running:
                await sweep_once()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Sweeper error: %s", e)
            await asyncio.sleep(runtime_config.RETRY_BACKOFF_SECONDS)

    _sweeper_running = False
    logger.info("Sweeper stopped")


def start_sweeper() -> bool:
    """Start the in-process sweep timer."""
    global _sweeper_task
    if _sweeper_task is None or _sweeper_task.done():
        _sweeper_task = asyncio.create_task(_sweeper_loop(), name="maturador-sweeper")
    return True


def stop_sweeper() -> bool:
    global _sweeper_running
    _sweeper_running = False
    if _sweeper_task and not _sweeper_task.done():
        _sweeper_task.cancel()
    return True


def get_sweeper_status() -> dict:
    return {
        "running": bool(_sweeper_task and not _sweeper_task.done()),
        "interval_seconds": runtime_config.SWEEP_INTERVAL_SECONDS,
        "min_idle_seconds": runtime_config.SWEEP_MIN_IDLE_SECONDS,
        "last_report": _last_report,
    }
