"""Service runtime configuration helpers.

Covers the completion service (``openai``) and the messaging gateway
(``evolution``). DB settings are preferred over env vars, with a short
in-memory TTL cache.
"""

from __future__ import annotations

import os
import time
from typing import Optional

from . import database as db
from .runtime_config import APP_ROOT

CACHE_TTL_SECONDS = max(1, int((os.environ.get("MATURADOR_PROVIDER_CACHE_SECONDS") or "10").strip() or "10"))
_CACHE: dict[str, tuple[float, dict]] = {}

PROVIDERS = {"openai", "evolution"}

_ENV_NAMES = {
    "openai": {
        "api_key": "OPENAI_API_KEY",
        "base_url": "OPENAI_BASE_URL",
        "model": "OPENAI_MODEL",
    },
    "evolution": {
        "api_key": "EVOLUTION_API_KEY",
        "base_url": "EVOLUTION_API_ENDPOINT",
        "model": "",
    },
}
_DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "evolution": "",
}
_DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "evolution": "",
}


def _mask_key(value: str) -> Optional[str]:
    key = (value or "").strip()
    if not key:
        return None
    if len(key) <= 8:
        return ("*" * max(0, len(key) - 2)) + key[-2:]
    return f"{key[:3]}...{key[-4:]}"


def _is_placeholder_secret(value: str) -> bool:
    text = (value or "").strip()
    if not text:
        return True
    upper = text.upper()
    if upper.startswith("REPLACE_WITH_"):
        return True
    return upper in {"YOUR_KEY", "YOUR_API_KEY", "CHANGE_ME"}


def _read_env_file_var(key: str) -> str:
    if (os.environ.get("MATURADOR_TESTING") or "").strip() == "1":
        return ""
    env_path = APP_ROOT / ".env"
    if not env_path.exists():
        return ""
    target = f"{key}="
    for raw in env_path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith(target):
            return line.split("=", 1)[1].strip().strip('"').strip("'")
    return ""


def _env_value(provider: str, field: str) -> str:
    env_name = _ENV_NAMES.get(provider, {}).get(field) or ""
    if not env_name:
        return ""
    value = (os.environ.get(env_name) or "").strip()
    if value:
        return value
    return _read_env_file_var(env_name)


def clear_provider_cache(provider: Optional[str] = None) -> None:
    if provider is None:
        _CACHE.clear()
        return
    _CACHE.pop((provider or "").strip().lower(), None)


def _cache_get(provider: str) -> Optional[dict]:
    item = _CACHE.get(provider)
    if not item:
        return None
    expires_at, payload = item
    if time.time() >= expires_at:
        _CACHE.pop(provider, None)
        return None
    return dict(payload)


def _cache_put(provider: str, payload: dict) -> None:
    _CACHE[provider] = (time.time() + CACHE_TTL_SECONDS, dict(payload))


async def _read_provider_runtime(provider: str) -> dict:
    settings_key = (await db.get_setting(f"{provider}.api_key") or "").strip()
    env_key = _env_value(provider, "api_key")
    if settings_key and not _is_placeholder_secret(settings_key):
        api_key = settings_key
        key_source = "settings"
    elif env_key and not _is_placeholder_secret(env_key):
        api_key = env_key
        key_source = "env"
    else:
        api_key = ""
        key_source = "none"

    base_url = (
        (await db.get_setting(f"{provider}.base_url") or "").strip()
        or _env_value(provider, "base_url")
        or _DEFAULT_BASE_URLS.get(provider, "")
    )
    model_default = (
        (await db.get_setting(f"{provider}.model_default") or "").strip()
        or _env_value(provider, "model")
        or _DEFAULT_MODELS.get(provider, "")
    )

    return {
        "provider": provider,
        "configured": bool(api_key) and bool(base_url),
        "api_key": api_key,
        "key_source": key_source,
        "key_masked": _mask_key(api_key),
        "base_url": base_url.rstrip("/") or None,
        "model_default": model_default or None,
    }


async def resolve_provider_runtime(provider: str, *, refresh: bool = False) -> dict:
    provider_name = (provider or "").strip().lower()
    if provider_name not in PROVIDERS:
        raise ValueError("provider must be one of: openai, evolution")

    if not refresh:
        cached = _cache_get(provider_name)
        if cached is not None:
            return cached

    runtime = await _read_provider_runtime(provider_name)
    _cache_put(provider_name, runtime)
    return runtime


async def provider_status(provider: str, *, refresh: bool = False) -> dict:
    runtime = await resolve_provider_runtime(provider, refresh=refresh)
    return {key: value for key, value in runtime.items() if key != "api_key"}


async def provider_settings_snapshot() -> dict:
    return {name: await provider_status(name, refresh=True) for name in sorted(PROVIDERS)}
