"""Maturador: inbound reply listener.

Evolution posts ``messages.upsert`` events for every message an instance
receives. When the receiving identity is the listener of a pair that is
waiting on it, the wait flag is cleared and that pair's loop is nudged so the
reply goes out after a short human-looking pause instead of the full
inter-turn delay. Alternation itself never depends on this path.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from . import database as db
from . import identity_resolver
from .dispatcher import normalize_address
from .errors import IdentityUnresolvable
from .loop_driver import scheduler
from .turn_selector import other_member

logger = logging.getLogger("maturador.replies")

INBOUND_EVENTS = {"messages.upsert"}
PERSONAL_JID_SUFFIX = "@s.whatsapp.net"


def _event_name(event: dict) -> str:
    return str(event.get("event") or "").strip().lower().replace("_", ".")


def _message_key(data: Any) -> dict:
    if not isinstance(data, dict):
        return {}
    message = data.get("message") if isinstance(data.get("message"), dict) else None
    for candidate in (data, message):
        if candidate and isinstance(candidate.get("key"), dict):
            return candidate["key"]
    return {}


def _sender_number(remote_jid: str) -> Optional[str]:
    if not remote_jid or not remote_jid.endswith(PERSONAL_JID_SUFFIX):
        return None
    try:
        return normalize_address(remote_jid[: -len(PERSONAL_JID_SUFFIX)])
    except IdentityUnresolvable:
        return None


async def _sender_matches(expected_sender: str, sender_number: Optional[str]) -> bool:
    if not sender_number:
        return True
    identity = await db.get_identity(expected_sender)
    if not identity or not identity.get("address"):
        return True
    try:
        return normalize_address(identity["address"]) == sender_number
    except IdentityUnresolvable:
        return True


async def on_inbound_message(event: dict) -> dict:
    """Release pairs waiting on the identity that just received a message."""
    name = _event_name(event)
    if name not in INBOUND_EVENTS:
        return {"ok": True, "status": "ignored", "reason": "event", "event": name}

    key = _message_key(event.get("data"))
    if not key or key.get("fromMe"):
        return {"ok": True, "status": "ignored", "reason": "outbound"}

    instance = str(event.get("instance") or "").strip()
    receiver = await identity_resolver.resolve_by_instance(instance) if instance else None
    if receiver is None:
        logger.info("Inbound message for unknown instance %r", instance)
        return {"ok": True, "status": "ignored", "reason": "unknown_instance", "instance": instance}

    sender_number = _sender_number(str(key.get("remoteJid") or ""))
    released = []
    for pair in await db.find_waiting_pairs_for_member(receiver.name):
        expected_sender = other_member(pair, receiver.name)
        if pair.get("last_sender") != expected_sender:
            continue
        if not await _sender_matches(expected_sender, sender_number):
            continue
        if not await db.clear_waiting_response(pair["id"], expected_sender):
            continue
        nudged = pair["status"] == "running" and scheduler.nudge(pair["id"])
        logger.info(
            "Pair %s released: %s received reply from %s (nudged=%s)",
            pair["id"],
            receiver.name,
            expected_sender,
            nudged,
        )
        released.append({"pair_id": pair["id"], "nudged": bool(nudged)})

    return {
        "ok": True,
        "status": "released" if released else "ignored",
        "reason": None if released else "no_waiting_pair",
        "receiver": receiver.name,
        "released": released,
    }
