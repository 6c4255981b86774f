"""Maturador: Pair state store (SQLite via aiosqlite)."""

import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from .runtime_config import DB_PATH

PAIR_STATUSES = {"stopped", "running", "paused"}
SCHEDULING_MODES = {"generated", "scripted"}
ALLOWED_PAIR_UPDATE_FIELDS = {
    "active",
    "status",
    "scheduling_mode",
    "script_id",
    "script_cursor",
    "script_loop",
    "script_exhausted",
    "waiting_response",
    "last_sender",
    "last_activity_at",
    "started_at",
    "last_error",
}
_PAIR_BOOL_FIELDS = ("active", "script_loop", "script_exhausted", "waiting_response")

SCHEMA = """
CREATE TABLE IF NOT EXISTS identities (
    name TEXT PRIMARY KEY,
    address TEXT,
    instance_ref TEXT,
    prompt TEXT,
    script_id TEXT,
    active INTEGER DEFAULT 1,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS scripts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    messages TEXT NOT NULL DEFAULT '[]',
    active INTEGER DEFAULT 1,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS pairs (
    id TEXT PRIMARY KEY,
    member_a TEXT NOT NULL,
    member_b TEXT NOT NULL,
    active INTEGER DEFAULT 0,
    status TEXT DEFAULT 'stopped',
    turn_counter INTEGER NOT NULL DEFAULT 0,
    scheduling_mode TEXT DEFAULT 'generated',
    script_id TEXT,
    script_cursor INTEGER NOT NULL DEFAULT 0,
    script_loop INTEGER DEFAULT 1,
    script_exhausted INTEGER DEFAULT 0,
    waiting_response INTEGER DEFAULT 0,
    last_sender TEXT,
    last_activity_at TEXT,
    started_at TEXT,
    lease_owner TEXT,
    lease_expires_at REAL,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS turns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pair_id TEXT NOT NULL,
    turn_index INTEGER NOT NULL,
    from_member TEXT NOT NULL,
    to_member TEXT NOT NULL,
    content TEXT NOT NULL,
    source TEXT DEFAULT 'generated',
    model TEXT,
    prompt_tokens INTEGER DEFAULT 0,
    completion_tokens INTEGER DEFAULT 0,
    driver TEXT,
    stale INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_turns_pair ON turns (pair_id, id);

CREATE TABLE IF NOT EXISTS api_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    provider TEXT NOT NULL,
    model TEXT,
    prompt_tokens INTEGER DEFAULT 0,
    completion_tokens INTEGER DEFAULT 0,
    total_tokens INTEGER DEFAULT 0,
    estimated_cost REAL DEFAULT 0,
    pair_id TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS console_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pair_id TEXT,
    event_type TEXT NOT NULL,
    source TEXT NOT NULL,
    severity TEXT DEFAULT 'info',
    message TEXT NOT NULL,
    data TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def get_db() -> aiosqlite.Connection:
    """Get a database connection."""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(DB_PATH))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")
    return db


async def init_db():
    """Create all tables."""
    db = await get_db()
    try:
        await db.executescript(SCHEMA)
        await _run_migrations(db)
        await db.commit()
    finally:
        await db.close()


async def _run_migrations(db: aiosqlite.Connection):
    """Non-destructive schema migrations for existing local DBs."""
    await _ensure_column(db, "pairs", "consecutive_failures", "INTEGER NOT NULL DEFAULT 0")
    await _ensure_column(db, "pairs", "last_error", "TEXT")
    await _ensure_column(db, "turns", "stale", "INTEGER DEFAULT 0")


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, column_def: str):
    rows = await db.execute(f"PRAGMA table_info({table})")
    cols = {row["name"] for row in await rows.fetchall()}
    if column not in cols:
        await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_def}")


def _pair_from_row(row) -> Optional[dict]:
    if row is None:
        return None
    pair = dict(row)
    for field in _PAIR_BOOL_FIELDS:
        pair[field] = bool(pair.get(field))
    return pair


async def _fetch_pair(db: aiosqlite.Connection, pair_id: str) -> Optional[dict]:
    row = await db.execute("SELECT * FROM pairs WHERE id = ?", (pair_id,))
    return _pair_from_row(await row.fetchone())


# ── Identities ─────────────────────────────────────────────

async def upsert_identity(
    name: str,
    address: Optional[str] = None,
    instance_ref: Optional[str] = None,
    prompt: Optional[str] = None,
    script_id: Optional[str] = None,
    active: bool = True,
) -> dict:
    db = await get_db()
    try:
        await db.execute(
            """INSERT INTO identities (name, address, instance_ref, prompt, script_id, active)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(name) DO UPDATE SET
                 address = excluded.address,
                 instance_ref = excluded.instance_ref,
                 prompt = excluded.prompt,
                 script_id = excluded.script_id,
                 active = excluded.active,
                 updated_at = CURRENT_TIMESTAMP""",
            (name, address, instance_ref, prompt, script_id, 1 if active else 0),
        )
        await db.commit()
        row = await db.execute("SELECT * FROM identities WHERE name = ?", (name,))
        return dict(await row.fetchone())
    finally:
        await db.close()


async def get_identity(name: str) -> Optional[dict]:
    db = await get_db()
    try:
        row = await db.execute("SELECT * FROM identities WHERE name = ?", (name,))
        result = await row.fetchone()
        return dict(result) if result else None
    finally:
        await db.close()


async def get_identity_by_instance(instance_ref: str) -> Optional[dict]:
    db = await get_db()
    try:
        row = await db.execute(
            "SELECT * FROM identities WHERE instance_ref = ? ORDER BY name LIMIT 1",
            (instance_ref,),
        )
        result = await row.fetchone()
        return dict(result) if result else None
    finally:
        await db.close()


async def list_identities() -> list[dict]:
    db = await get_db()
    try:
        rows = await db.execute("SELECT * FROM identities ORDER BY name")
        return [dict(r) for r in await rows.fetchall()]
    finally:
        await db.close()


# ── Scripts ────────────────────────────────────────────────

async def upsert_script(script_id: str, name: str, messages: list, active: bool = True) -> dict:
    db = await get_db()
    try:
        await db.execute(
            """INSERT INTO scripts (id, name, messages, active)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 name = excluded.name,
                 messages = excluded.messages,
                 active = excluded.active,
                 updated_at = CURRENT_TIMESTAMP""",
            (script_id, name, json.dumps(messages, ensure_ascii=False), 1 if active else 0),
        )
        await db.commit()
    finally:
        await db.close()
    return await get_script(script_id)


async def get_script(script_id: str) -> Optional[dict]:
    db = await get_db()
    try:
        row = await db.execute("SELECT * FROM scripts WHERE id = ?", (script_id,))
        result = await row.fetchone()
    finally:
        await db.close()
    if not result:
        return None
    script = dict(result)
    try:
        messages = json.loads(script.get("messages") or "[]")
    except json.JSONDecodeError:
        messages = []
    script["messages"] = messages if isinstance(messages, list) else []
    script["active"] = bool(script.get("active"))
    return script


# ── Pairs ──────────────────────────────────────────────────

async def create_pair(
    member_a: str,
    member_b: str,
    *,
    pair_id: Optional[str] = None,
    scheduling_mode: str = "generated",
    script_id: Optional[str] = None,
    script_loop: bool = True,
) -> dict:
    """Insert a stopped, inactive pair. Raises ValueError on duplicates."""
    if member_a == member_b:
        raise ValueError("A pair needs two different members.")
    if scheduling_mode not in SCHEDULING_MODES:
        raise ValueError(f"Unknown scheduling mode: {scheduling_mode}")
    new_id = pair_id or uuid.uuid4().hex
    db = await get_db()
    try:
        existing = await db.execute(
            """SELECT id FROM pairs
               WHERE (member_a = ? AND member_b = ?) OR (member_a = ? AND member_b = ?)""",
            (member_a, member_b, member_b, member_a),
        )
        if await existing.fetchone():
            raise ValueError(f"Pair {member_a} <-> {member_b} already exists.")
        await db.execute(
            """INSERT INTO pairs (id, member_a, member_b, scheduling_mode, script_id, script_loop)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (new_id, member_a, member_b, scheduling_mode, script_id, 1 if script_loop else 0),
        )
        await db.commit()
        return await _fetch_pair(db, new_id)
    finally:
        await db.close()


async def get_pair(pair_id: str) -> Optional[dict]:
    db = await get_db()
    try:
        return await _fetch_pair(db, pair_id)
    finally:
        await db.close()


async def list_pairs() -> list[dict]:
    db = await get_db()
    try:
        rows = await db.execute("SELECT * FROM pairs ORDER BY created_at DESC, id")
        return [_pair_from_row(r) for r in await rows.fetchall()]
    finally:
        await db.close()


async def list_pairs_by_status(status: str, active_only: bool = True) -> list[dict]:
    db = await get_db()
    try:
        if active_only:
            rows = await db.execute(
                "SELECT * FROM pairs WHERE status = ? AND active = 1 ORDER BY id",
                (status,),
            )
        else:
            rows = await db.execute("SELECT * FROM pairs WHERE status = ? ORDER BY id", (status,))
        return [_pair_from_row(r) for r in await rows.fetchall()]
    finally:
        await db.close()


async def update_pair(pair_id: str, updates: dict) -> Optional[dict]:
    filtered = {k: v for k, v in updates.items() if k in ALLOWED_PAIR_UPDATE_FIELDS}
    if not filtered:
        return await get_pair(pair_id)

    for field in _PAIR_BOOL_FIELDS:
        if field in filtered:
            filtered[field] = 1 if filtered[field] else 0

    assignments = ", ".join(f"{field} = ?" for field in filtered.keys())
    params = list(filtered.values()) + [pair_id]

    db = await get_db()
    try:
        cursor = await db.execute(
            f"UPDATE pairs SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            params,
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await _fetch_pair(db, pair_id)
    finally:
        await db.close()


async def transition_pair_status(
    pair_id: str,
    from_statuses: set[str],
    to_status: str,
    *,
    activate: bool = False,
    mark_started: bool = False,
) -> Optional[dict]:
    """Move a pair to `to_status` only if it is currently in `from_statuses`.

    Returns the updated pair, or None when the guard did not match.
    `started_at` is only ever written once.
    """
    if to_status not in PAIR_STATUSES:
        raise ValueError(f"Unknown status: {to_status}")
    placeholders = ", ".join("?" for _ in from_statuses)
    assignments = ["status = ?", "updated_at = CURRENT_TIMESTAMP"]
    params: list[Any] = [to_status]
    if activate:
        assignments.append("active = 1")
    if mark_started:
        assignments.append("started_at = COALESCE(started_at, ?)")
        params.append(utc_now_iso())
    params.append(pair_id)
    params.extend(sorted(from_statuses))

    db = await get_db()
    try:
        cursor = await db.execute(
            f"UPDATE pairs SET {', '.join(assignments)} WHERE id = ? AND status IN ({placeholders})",
            params,
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await _fetch_pair(db, pair_id)
    finally:
        await db.close()


async def delete_pair(pair_id: str, delete_turns: bool = True) -> bool:
    db = await get_db()
    try:
        cursor = await db.execute("DELETE FROM pairs WHERE id = ?", (pair_id,))
        if delete_turns:
            await db.execute("DELETE FROM turns WHERE pair_id = ?", (pair_id,))
        await db.commit()
        return cursor.rowcount > 0
    finally:
        await db.close()


async def commit_turn(
    pair_id: str,
    expected_counter: int,
    *,
    last_sender: str,
    script_cursor: Optional[int] = None,
) -> bool:
    """Advance the counter by one iff it still equals `expected_counter`."""
    db = await get_db()
    try:
        cursor = await db.execute(
            """UPDATE pairs
               SET turn_counter = turn_counter + 1,
                   last_activity_at = ?,
                   last_sender = ?,
                   waiting_response = 1,
                   consecutive_failures = 0,
                   last_error = NULL,
                   script_cursor = COALESCE(?, script_cursor),
                   updated_at = CURRENT_TIMESTAMP
               WHERE id = ? AND turn_counter = ?""",
            (utc_now_iso(), last_sender, script_cursor, pair_id, expected_counter),
        )
        await db.commit()
        return cursor.rowcount == 1
    finally:
        await db.close()


async def record_pair_failure(pair_id: str, error: str) -> int:
    """Bump the consecutive failure count and return the new value (0 if the pair is gone)."""
    db = await get_db()
    try:
        await db.execute(
            """UPDATE pairs
               SET consecutive_failures = consecutive_failures + 1,
                   last_error = ?,
                   updated_at = CURRENT_TIMESTAMP
               WHERE id = ?""",
            ((error or "")[:500], pair_id),
        )
        await db.commit()
        row = await db.execute("SELECT consecutive_failures FROM pairs WHERE id = ?", (pair_id,))
        result = await row.fetchone()
        return int(result["consecutive_failures"]) if result else 0
    finally:
        await db.close()


async def mark_script_exhausted(pair_id: str) -> Optional[dict]:
    return await update_pair(
        pair_id,
        {"script_exhausted": True, "status": "stopped", "last_error": "Script exhausted."},
    )


async def acquire_pair_lease(
    pair_id: str,
    owner: str,
    ttl_seconds: float,
    now: Optional[float] = None,
) -> bool:
    """Take or extend the pair lease. Succeeds when free, expired, or already ours."""
    stamp = time.time() if now is None else now
    db = await get_db()
    try:
        cursor = await db.execute(
            """UPDATE pairs
               SET lease_owner = ?, lease_expires_at = ?
               WHERE id = ?
                 AND (lease_owner IS NULL OR lease_owner = ? OR COALESCE(lease_expires_at, 0) < ?)""",
            (owner, stamp + max(0.0, ttl_seconds), pair_id, owner, stamp),
        )
        await db.commit()
        return cursor.rowcount == 1
    finally:
        await db.close()


async def release_pair_lease(pair_id: str, owner: str) -> bool:
    db = await get_db()
    try:
        cursor = await db.execute(
            """UPDATE pairs SET lease_owner = NULL, lease_expires_at = NULL
               WHERE id = ? AND lease_owner = ?""",
            (pair_id, owner),
        )
        await db.commit()
        return cursor.rowcount == 1
    finally:
        await db.close()


async def find_waiting_pairs_for_member(member: str) -> list[dict]:
    db = await get_db()
    try:
        rows = await db.execute(
            """SELECT * FROM pairs
               WHERE waiting_response = 1 AND (member_a = ? OR member_b = ?)
               ORDER BY id""",
            (member, member),
        )
        return [_pair_from_row(r) for r in await rows.fetchall()]
    finally:
        await db.close()


async def clear_waiting_response(pair_id: str, expected_last_sender: str) -> bool:
    db = await get_db()
    try:
        cursor = await db.execute(
            """UPDATE pairs SET waiting_response = 0, updated_at = CURRENT_TIMESTAMP
               WHERE id = ? AND waiting_response = 1 AND last_sender = ?""",
            (pair_id, expected_last_sender),
        )
        await db.commit()
        return cursor.rowcount == 1
    finally:
        await db.close()


# ── Turns ──────────────────────────────────────────────────

async def insert_turn(
    pair_id: str,
    turn_index: int,
    from_member: str,
    to_member: str,
    content: str,
    *,
    source: str = "generated",
    model: Optional[str] = None,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    driver: Optional[str] = None,
    stale: bool = False,
) -> dict:
    db = await get_db()
    try:
        cursor = await db.execute(
            """INSERT INTO turns (
                   pair_id, turn_index, from_member, to_member, content, source, model,
                   prompt_tokens, completion_tokens, driver, stale, created_at
               ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                pair_id,
                int(turn_index),
                from_member,
                to_member,
                content,
                source,
                model,
                int(prompt_tokens or 0),
                int(completion_tokens or 0),
                driver,
                1 if stale else 0,
                utc_now_iso(),
            ),
        )
        await db.commit()
        row = await db.execute("SELECT * FROM turns WHERE id = ?", (cursor.lastrowid,))
        turn = dict(await row.fetchone())
        turn["stale"] = bool(turn["stale"])
        return turn
    finally:
        await db.close()


async def get_turns(pair_id: str, limit: int = 50, before_id: Optional[int] = None) -> list[dict]:
    """Most recent `limit` turns of a pair, oldest first."""
    db = await get_db()
    try:
        if before_id:
            rows = await db.execute(
                "SELECT * FROM turns WHERE pair_id = ? AND id < ? ORDER BY id DESC LIMIT ?",
                (pair_id, before_id, limit),
            )
        else:
            rows = await db.execute(
                "SELECT * FROM turns WHERE pair_id = ? ORDER BY id DESC LIMIT ?",
                (pair_id, limit),
            )
        results = [dict(r) for r in await rows.fetchall()]
        for turn in results:
            turn["stale"] = bool(turn["stale"])
        results.reverse()
        return results
    finally:
        await db.close()


# ── Usage, events, settings ────────────────────────────────

async def log_api_usage(
    provider: str,
    model: str,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    total_tokens: int = 0,
    estimated_cost: float = 0.0,
    pair_id: Optional[str] = None,
):
    db = await get_db()
    try:
        await db.execute(
            """INSERT INTO api_usage (
                   provider, model, prompt_tokens, completion_tokens, total_tokens,
                   estimated_cost, pair_id
               ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                provider,
                model,
                int(prompt_tokens or 0),
                int(completion_tokens or 0),
                int(total_tokens or 0),
                float(estimated_cost or 0.0),
                pair_id,
            ),
        )
        await db.commit()
    finally:
        await db.close()


async def log_console_event(
    *,
    event_type: str,
    source: str,
    message: str,
    pair_id: Optional[str] = None,
    severity: str = "info",
    data: Optional[dict] = None,
) -> dict:
    db = await get_db()
    try:
        cursor = await db.execute(
            """INSERT INTO console_events (pair_id, event_type, source, severity, message, data)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                pair_id,
                event_type,
                source,
                severity,
                message[:1000],
                json.dumps(data or {}, ensure_ascii=False, default=str),
            ),
        )
        await db.commit()
        row = await db.execute("SELECT * FROM console_events WHERE id = ?", (cursor.lastrowid,))
        event = dict(await row.fetchone())
        event["data"] = json.loads(event.get("data") or "{}")
        return event
    finally:
        await db.close()


async def get_console_events(pair_id: Optional[str] = None, limit: int = 100) -> list[dict]:
    db = await get_db()
    try:
        if pair_id:
            rows = await db.execute(
                "SELECT * FROM console_events WHERE pair_id = ? ORDER BY id DESC LIMIT ?",
                (pair_id, limit),
            )
        else:
            rows = await db.execute(
                "SELECT * FROM console_events ORDER BY id DESC LIMIT ?",
                (limit,),
            )
        events = [dict(r) for r in await rows.fetchall()]
    finally:
        await db.close()
    for event in events:
        event["data"] = json.loads(event.get("data") or "{}")
    return events


async def get_setting(key: str) -> Optional[str]:
    db = await get_db()
    try:
        row = await db.execute("SELECT value FROM settings WHERE key = ?", (key,))
        result = await row.fetchone()
        return result["value"] if result else None
    finally:
        await db.close()


async def set_setting(key: str, value: str):
    db = await get_db()
    try:
        await db.execute(
            """INSERT INTO settings (key, value, updated_at)
               VALUES (?, ?, CURRENT_TIMESTAMP)
               ON CONFLICT(key) DO UPDATE SET
                 value = excluded.value,
                 updated_at = CURRENT_TIMESTAMP""",
            (key, value),
        )
        await db.commit()
    finally:
        await db.close()
