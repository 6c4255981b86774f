"""Turn content for Maturador: announcement, generated reply, or script entry."""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from . import database as db
from . import openai_client
from . import runtime_config
from .errors import GenerationFailed, MissingBehavior, ScriptExhausted
from .identity_resolver import Identity

logger = logging.getLogger("maturador.content")

_DELAY_NOTE_RE = re.compile(r"\(delay \d+s?\)", re.IGNORECASE)
_TIMESTAMP_RE = re.compile(r"\d{2}/\d{2}/\d{4}\s+\d{2}:\d{2}")
_ANNOUNCEMENT_RE = re.compile(r"🔄\s*Maturando desde:", re.IGNORECASE)
_NEXT_SPEAKER_RE = re.compile(r"\n\n|\n[A-Z][a-z]+:")
_NAME_PREFIX_RE = re.compile(r"^[A-Z][a-zà-ú]+:\s*")


@dataclass
class GeneratedTurn:
    text: str
    source: str
    model: Optional[str] = None
    usage: dict = field(default_factory=dict)
    next_cursor: Optional[int] = None


def fallback_phrase() -> str:
    return random.choice(runtime_config.FALLBACK_PHRASES)


def _display_zone():
    try:
        return ZoneInfo(runtime_config.DISPLAY_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown display timezone %r, using UTC", runtime_config.DISPLAY_TIMEZONE)
        return timezone.utc


def format_started_at(started_at: Optional[str]) -> str:
    """Render a stored UTC timestamp as local dd/mm/YYYY HH:MM."""
    zone = _display_zone()
    stamp = None
    if started_at:
        try:
            stamp = datetime.fromisoformat(started_at)
        except ValueError:
            stamp = None
    if stamp is None:
        return datetime.now(zone).strftime("%d/%m/%Y %H:%M")
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp.astimezone(zone).strftime("%d/%m/%Y %H:%M")


def announcement_text(pair: dict) -> str:
    template = runtime_config.FIRST_TURN_TEMPLATE or ""
    return template.format(started_at=format_started_at(pair.get("started_at"))).strip()


def strip_speaker_prefix(text: str, speaker_name: str = "") -> str:
    cleaned = (text or "").strip()
    if speaker_name:
        cleaned = re.sub(rf"^{re.escape(speaker_name)}:\s*", "", cleaned, flags=re.IGNORECASE)
    return _NAME_PREFIX_RE.sub("", cleaned).strip()


def truncate_reply(text: str) -> str:
    """Keep only the first speech, at most MAX_REPLY_LINES lines / MAX_REPLY_CHARS chars."""
    if not text:
        return text
    cleaned = _DELAY_NOTE_RE.sub("", text)
    cleaned = _TIMESTAMP_RE.sub("", cleaned)
    cleaned = _ANNOUNCEMENT_RE.sub("", cleaned).strip()

    first_speech = _NEXT_SPEAKER_RE.split(cleaned)[0].strip()
    lines = [line for line in first_speech.split("\n") if line.strip()]
    if len(lines) > runtime_config.MAX_REPLY_LINES:
        first_speech = "\n".join(lines[: runtime_config.MAX_REPLY_LINES])
    if len(first_speech) > runtime_config.MAX_REPLY_CHARS:
        first_speech = first_speech[: runtime_config.MAX_REPLY_CHARS].strip()
    return first_speech


def history_messages(history: list[dict], speaker_name: str) -> list[dict]:
    """Map stored turns onto chat roles from the speaker's point of view."""
    limit = runtime_config.HISTORY_LIMIT
    recent = history[-limit:] if limit > 0 else []
    return [
        {
            "role": "assistant" if turn.get("from_member") == speaker_name else "user",
            "content": turn.get("content") or "",
        }
        for turn in recent
    ]


def _script_entry_text(entry) -> str:
    if isinstance(entry, str):
        return entry.strip()
    if isinstance(entry, dict):
        return str(entry.get("text") or entry.get("texto") or "").strip()
    return ""


async def _generated(pair: dict, speaker: Identity, history: list[dict]) -> GeneratedTurn:
    if not speaker.prompt:
        raise MissingBehavior(
            f"Identity {speaker.name} has no behavior prompt.",
            {"identity": speaker.name, "pair_id": pair["id"]},
        )
    result = await openai_client.complete(
        speaker.prompt,
        history_messages(history, speaker.name),
        pair_id=pair["id"],
    )
    text = truncate_reply(strip_speaker_prefix(result["text"], speaker.name))
    if not text:
        raise GenerationFailed("Completion was empty after cleanup.", {"raw": result["text"][:200]})
    return GeneratedTurn(
        text=text,
        source="generated",
        model=result.get("model"),
        usage=result.get("usage") or {},
    )


async def _scripted(pair: dict, speaker: Identity) -> GeneratedTurn:
    script_id = pair.get("script_id") or speaker.script_id
    if not script_id:
        raise MissingBehavior(
            f"Pair {pair['id']} is scripted but has no script.",
            {"pair_id": pair["id"], "identity": speaker.name},
        )
    if pair.get("script_exhausted"):
        raise ScriptExhausted(f"Script {script_id} is exhausted.", {"script_id": script_id})

    script = await db.get_script(script_id)
    if not script or not script.get("active") or not script.get("messages"):
        raise MissingBehavior(
            f"Script {script_id} is missing, inactive, or empty.",
            {"pair_id": pair["id"], "script_id": script_id},
        )

    messages = script["messages"]
    cursor = int(pair.get("script_cursor") or 0)
    loop = bool(pair.get("script_loop"))
    if cursor >= len(messages):
        if not loop:
            raise ScriptExhausted(
                f"Script {script_id} has no entries left.",
                {"script_id": script_id, "cursor": cursor},
            )
        cursor = 0

    text = _script_entry_text(messages[cursor])
    if not text:
        raise MissingBehavior(
            f"Script {script_id} entry {cursor} is empty.",
            {"script_id": script_id, "cursor": cursor},
        )
    next_cursor = cursor + 1
    if next_cursor >= len(messages) and loop:
        next_cursor = 0
    return GeneratedTurn(text=text, source="scripted", next_cursor=next_cursor)


async def generate(pair: dict, speaker: Identity, history: list[dict]) -> GeneratedTurn:
    """Produce the text of the next turn for `speaker`.

    Raises MissingBehavior, ScriptExhausted or GenerationFailed.
    """
    if int(pair.get("turn_counter") or 0) == 0:
        announcement = announcement_text(pair)
        if announcement:
            return GeneratedTurn(text=announcement, source="announcement")

    if pair.get("scheduling_mode") == "scripted":
        return await _scripted(pair, speaker)
    return await _generated(pair, speaker, history)
