"""Maturador REST API routes."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from . import database as db
from . import pair_control
from . import provider_config
from . import reply_listener
from . import sweep_driver
from .errors import InvalidTransition, PairNotFound
from .loop_driver import scheduler
from .models import (
    EvolutionWebhookIn,
    IdentityIn,
    IdentityOut,
    PairIn,
    PairOut,
    ProviderSettingsIn,
    ScriptIn,
    TransitionOut,
    TurnOut,
)

router = APIRouter(prefix="/api", tags=["api"])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, PairNotFound):
        return HTTPException(404, exc.message)
    if isinstance(exc, InvalidTransition):
        return HTTPException(409, exc.message)
    return HTTPException(400, str(exc))


@router.get("/health")
async def health():
    return {"status": "ok", "service": "maturador"}


# ── Pairs ──────────────────────────────────────────────────

@router.get("/pairs", response_model=list[PairOut])
async def list_pairs(status: Optional[str] = None):
    if status:
        if status not in db.PAIR_STATUSES:
            raise HTTPException(422, f"Unknown status: {status}")
        return await db.list_pairs_by_status(status, active_only=False)
    return await db.list_pairs()


@router.post("/pairs", response_model=PairOut, status_code=201)
async def create_pair(body: PairIn):
    try:
        return await pair_control.create_pair(
            body.member_a,
            body.member_b,
            scheduling_mode=body.scheduling_mode,
            script_id=body.script_id,
            script_loop=body.script_loop,
        )
    except ValueError as exc:
        raise HTTPException(409, str(exc))


@router.get("/pairs/{pair_id}", response_model=PairOut)
async def get_pair(pair_id: str):
    pair = await db.get_pair(pair_id)
    if not pair:
        raise HTTPException(404, "Pair not found")
    return pair


@router.delete("/pairs/{pair_id}")
async def delete_pair(pair_id: str):
    try:
        return await pair_control.delete_pair(pair_id)
    except PairNotFound as exc:
        raise _http_error(exc)


@router.post("/pairs/{pair_id}/start", response_model=TransitionOut)
async def start_pair(pair_id: str):
    try:
        return await pair_control.start_pair(pair_id)
    except (PairNotFound, InvalidTransition) as exc:
        raise _http_error(exc)


@router.post("/pairs/{pair_id}/pause", response_model=TransitionOut)
async def pause_pair(pair_id: str):
    try:
        return await pair_control.pause_pair(pair_id)
    except (PairNotFound, InvalidTransition) as exc:
        raise _http_error(exc)


@router.post("/pairs/{pair_id}/stop", response_model=TransitionOut)
async def stop_pair(pair_id: str):
    try:
        return await pair_control.stop_pair(pair_id)
    except (PairNotFound, InvalidTransition) as exc:
        raise _http_error(exc)


@router.get("/pairs/{pair_id}/turns", response_model=list[TurnOut])
async def get_turns(
    pair_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    before_id: Optional[int] = None,
):
    try:
        return await pair_control.get_turn_history(pair_id, limit=limit, before_id=before_id)
    except PairNotFound as exc:
        raise _http_error(exc)


# ── Drivers ────────────────────────────────────────────────

@router.post("/sweep")
async def sweep(pair_id: Optional[str] = None):
    return await sweep_driver.sweep_once(pair_id)


@router.get("/scheduler/status")
async def scheduler_status():
    return {
        "scheduler": scheduler.status(),
        "sweeper": sweep_driver.get_sweeper_status(),
    }


@router.post("/sweeper/start")
async def start_sweeper():
    sweep_driver.start_sweeper()
    return sweep_driver.get_sweeper_status()


@router.post("/sweeper/stop")
async def stop_sweeper():
    sweep_driver.stop_sweeper()
    return sweep_driver.get_sweeper_status()


# ── Identities & scripts ───────────────────────────────────

@router.get("/identities", response_model=list[IdentityOut])
async def list_identities():
    return await db.list_identities()


@router.get("/identities/{name}", response_model=IdentityOut)
async def get_identity(name: str):
    identity = await db.get_identity(name)
    if not identity:
        raise HTTPException(404, "Identity not found")
    return identity


@router.put("/identities/{name}", response_model=IdentityOut)
async def put_identity(name: str, body: IdentityIn):
    return await db.upsert_identity(name, **body.model_dump())


@router.get("/scripts/{script_id}")
async def get_script(script_id: str):
    script = await db.get_script(script_id)
    if not script:
        raise HTTPException(404, "Script not found")
    return script


@router.put("/scripts/{script_id}")
async def put_script(script_id: str, body: ScriptIn):
    messages = [item if isinstance(item, str) else item.model_dump() for item in body.messages]
    return await db.upsert_script(script_id, body.name, messages, active=body.active)


# ── Channel webhook ────────────────────────────────────────

@router.post("/webhooks/evolution")
async def evolution_webhook(body: EvolutionWebhookIn):
    return await reply_listener.on_inbound_message(body.model_dump())


# ── Events & settings ──────────────────────────────────────

@router.get("/events")
async def get_events(pair_id: Optional[str] = None, limit: int = Query(default=100, ge=1, le=1000)):
    return await db.get_console_events(pair_id=pair_id, limit=limit)


@router.get("/settings/providers")
async def get_provider_settings():
    return await provider_config.provider_settings_snapshot()


@router.put("/settings/providers/{provider}")
async def put_provider_settings(provider: str, body: ProviderSettingsIn):
    if provider not in provider_config.PROVIDERS:
        raise HTTPException(404, f"Unknown provider: {provider}")
    for field, value in body.model_dump(exclude_unset=True).items():
        await db.set_setting(f"{provider}.{field}", (value or "").strip())
    provider_config.clear_provider_cache(provider)
    return await provider_config.provider_status(provider, refresh=True)
