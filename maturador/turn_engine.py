"""Maturador: one turn advance, shared by the loop and sweep drivers.

An advance reads the pair, picks the speaker by counter parity, produces the
text, dispatches it, and commits ``turn_counter + 1`` conditionally on the
counter it started from. Every outcome comes back as a dict; only unexpected
exceptions escape to the calling driver.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional

from . import content_generator
from . import database as db
from . import dispatcher
from . import identity_resolver
from . import runtime_config
from .errors import (
    ChannelError,
    ChannelTransientError,
    ConfigurationError,
    GenerationFailed,
    ScriptExhausted,
)
from .observability import emit_console_event
from .turn_selector import members_for
from .websocket import manager

logger = logging.getLogger("maturador.turns")

OPERATOR_ATTENTION_KINDS = {"configuration", "fatal"}


def sample_typing_delay() -> float:
    low = runtime_config.TYPING_DELAY_MIN_SECONDS
    high = max(low, runtime_config.TYPING_DELAY_MAX_SECONDS)
    return random.uniform(low, high)


async def _produce(pair: dict, speaker, history: list[dict]) -> content_generator.GeneratedTurn:
    try:
        return await asyncio.wait_for(
            content_generator.generate(pair, speaker, history),
            timeout=runtime_config.GENERATE_TIMEOUT_SECONDS,
        )
    except (GenerationFailed, asyncio.TimeoutError) as exc:
        reason = exc.message if isinstance(exc, GenerationFailed) else "generation timed out"
        logger.warning("Pair %s: generation failed (%s), using fallback phrase", pair["id"], reason)
        return content_generator.GeneratedTurn(
            text=content_generator.fallback_phrase(),
            source="fallback",
        )


async def _dispatch(speaker, listener, text: str) -> dict:
    try:
        return await asyncio.wait_for(
            dispatcher.send(speaker, listener, text),
            timeout=runtime_config.DISPATCH_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError as exc:
        raise ChannelTransientError(
            "Dispatch timed out.",
            {"timeout_seconds": runtime_config.DISPATCH_TIMEOUT_SECONDS},
        ) from exc


async def _record_failure(pair: dict, exc, driver: str) -> dict:
    failures = await db.record_pair_failure(pair["id"], exc.message)
    logger.warning(
        "Pair %s (%s): %s error (%d in a row): %s",
        pair["id"],
        driver,
        exc.kind,
        failures,
        exc.message,
    )
    if exc.kind in OPERATOR_ATTENTION_KINDS and failures == runtime_config.FAILURE_ALERT_THRESHOLD:
        await emit_console_event(
            pair_id=pair["id"],
            event_type="operator_attention",
            source=driver,
            severity="error",
            message=f"Pair needs attention after {failures} failures: {exc.message}",
            data={"error_kind": exc.kind, "consecutive_failures": failures, **exc.details},
        )
    return {
        "ok": False,
        "pair_id": pair["id"],
        "status": "failed",
        "error_kind": exc.kind,
        "error": exc.message,
        "consecutive_failures": failures,
    }


async def _exhausted(pair: dict, exc: ScriptExhausted, driver: str) -> dict:
    await db.mark_script_exhausted(pair["id"])
    await emit_console_event(
        pair_id=pair["id"],
        event_type="script_exhausted",
        source=driver,
        severity="warning",
        message=f"Scripted conversation finished; pair stopped. {exc.message}",
        data=exc.details,
    )
    return {
        "ok": False,
        "pair_id": pair["id"],
        "status": "exhausted",
        "error_kind": exc.kind,
        "error": exc.message,
    }


async def _warn_if_same_sender(pair: dict, history: list[dict], speaker_name: str, turn_index: int):
    committed = [turn for turn in history if not turn.get("stale")]
    if committed and committed[-1].get("from_member") == speaker_name:
        logger.warning(
            "Pair %s: %s spoke twice in a row (turn %d)",
            pair["id"],
            speaker_name,
            turn_index,
        )


async def advance_pair_once(
    pair_id: str,
    *,
    driver: str,
    lease_owner: Optional[str] = None,
    lease_ttl: Optional[float] = None,
    typing_delay: bool = True,
    release_lease: bool = False,
) -> dict:
    """Advance `pair_id` by exactly one turn.

    Outcome ``status`` is one of ``sent``, ``stale``, ``failed``,
    ``exhausted``, ``missing``, ``inactive`` or ``leased``.
    """
    pair = await db.get_pair(pair_id)
    if pair is None:
        return {"ok": False, "pair_id": pair_id, "status": "missing"}
    if pair["status"] != "running" or not pair["active"]:
        return {"ok": False, "pair_id": pair_id, "status": "inactive", "pair_status": pair["status"]}

    use_lease = bool(lease_owner) and runtime_config.PAIR_LEASES_ENABLED
    if use_lease:
        ttl = lease_ttl if lease_ttl is not None else runtime_config.iteration_lease_seconds()
        if not await db.acquire_pair_lease(pair_id, lease_owner, ttl):
            return {"ok": False, "pair_id": pair_id, "status": "leased"}
        # Re-read under the lease; another driver may have committed meanwhile.
        pair = await db.get_pair(pair_id)
        if pair is None or pair["status"] != "running" or not pair["active"]:
            await db.release_pair_lease(pair_id, lease_owner)
            status = "missing" if pair is None else "inactive"
            return {"ok": False, "pair_id": pair_id, "status": status}

    try:
        return await _advance(pair, driver=driver, typing_delay=typing_delay)
    finally:
        if use_lease and release_lease:
            await db.release_pair_lease(pair_id, lease_owner)


async def _advance(pair: dict, *, driver: str, typing_delay: bool) -> dict:
    counter = int(pair["turn_counter"])
    speaker_name, listener_name = members_for(pair, counter)

    try:
        speaker = await identity_resolver.resolve(speaker_name)
        listener = await identity_resolver.resolve(listener_name)
        history = await db.get_turns(pair["id"], limit=max(1, runtime_config.HISTORY_LIMIT))
        produced = await _produce(pair, speaker, history)
        if typing_delay:
            await asyncio.sleep(sample_typing_delay())
        ack = await _dispatch(speaker, listener, produced.text)
    except ScriptExhausted as exc:
        return await _exhausted(pair, exc, driver)
    except (ConfigurationError, ChannelError) as exc:
        return await _record_failure(pair, exc, driver)

    committed = await db.commit_turn(
        pair["id"],
        counter,
        last_sender=speaker_name,
        script_cursor=produced.next_cursor,
    )
    if not committed and await db.get_pair(pair["id"]) is None:
        logger.info("Pair %s (%s): deleted while turn %d was in flight", pair["id"], driver, counter)
        return {"ok": False, "pair_id": pair["id"], "status": "missing"}

    turn = await db.insert_turn(
        pair["id"],
        counter,
        speaker_name,
        listener_name,
        produced.text,
        source=produced.source,
        model=produced.model,
        prompt_tokens=produced.usage.get("prompt_tokens", 0),
        completion_tokens=produced.usage.get("completion_tokens", 0),
        driver=driver,
        stale=not committed,
    )

    if not committed:
        await emit_console_event(
            pair_id=pair["id"],
            event_type="duplicate_turn",
            source=driver,
            severity="warning",
            message=(
                f"{speaker_name} sent turn {counter} but another driver already committed it; "
                "recorded as stale."
            ),
            data={"turn_index": counter, "speaker": speaker_name, "turn_id": turn["id"]},
        )
        return {
            "ok": False,
            "pair_id": pair["id"],
            "status": "stale",
            "turn_index": counter,
            "speaker": speaker_name,
            "turn": turn,
        }

    await _warn_if_same_sender(pair, history, speaker_name, counter)
    logger.info(
        "Pair %s (%s): turn %d %s -> %s [%s]",
        pair["id"],
        driver,
        counter,
        speaker_name,
        listener_name,
        produced.source,
    )
    await manager.broadcast(pair["id"], {"type": "turn", "turn": turn})
    return {
        "ok": True,
        "pair_id": pair["id"],
        "status": "sent",
        "turn_index": counter,
        "speaker": speaker_name,
        "source": produced.source,
        "message_id": ack.get("message_id"),
        "turn": turn,
    }
