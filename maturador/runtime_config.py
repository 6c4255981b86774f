"""Canonical runtime configuration.

Re-exports the path helpers from `maturador.runtime_paths` and reads the
scheduler tuning knobs from the environment. Consumers read these values as
module attributes at call time (``runtime_config.TURN_DELAY_MIN_SECONDS``) so
tests and operators can adjust them without re-importing.
"""

from __future__ import annotations

import os

from .runtime_paths import (  # noqa: F401
    APP_NAME,
    APP_ROOT,
    MATURADOR_HOME,
    DB_PATH,
    LOGS_DIR,
    ensure_runtime_dirs,
)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = (os.environ.get(name) or "").strip()
    try:
        value = float(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, value)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    return int(_env_float(name, float(default), float(minimum)))


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


# Pacing (seconds)
TURN_DELAY_MIN_SECONDS = _env_float("MATURADOR_TURN_DELAY_MIN_SECONDS", 12.0)
TURN_DELAY_MAX_SECONDS = _env_float("MATURADOR_TURN_DELAY_MAX_SECONDS", 20.0)
TYPING_DELAY_MIN_SECONDS = _env_float("MATURADOR_TYPING_DELAY_MIN", 1.0)
TYPING_DELAY_MAX_SECONDS = _env_float("MATURADOR_TYPING_DELAY_MAX", 3.0)
REPLY_DELAY_MIN_SECONDS = _env_float("MATURADOR_REPLY_DELAY_MIN_SECONDS", 2.0)
REPLY_DELAY_MAX_SECONDS = _env_float("MATURADOR_REPLY_DELAY_MAX_SECONDS", 6.0)

# Failure handling
RETRY_BACKOFF_SECONDS = _env_float("MATURADOR_RETRY_BACKOFF_SECONDS", 10.0)
CONFIG_BACKOFF_MAX_SECONDS = _env_float("MATURADOR_CONFIG_BACKOFF_MAX_SECONDS", 300.0)
FAILURE_ALERT_THRESHOLD = _env_int("MATURADOR_FAILURE_ALERT_THRESHOLD", 3, minimum=1)
GENERATE_TIMEOUT_SECONDS = _env_float("MATURADOR_GENERATE_TIMEOUT_SECONDS", 45.0, minimum=0.1)
DISPATCH_TIMEOUT_SECONDS = _env_float("MATURADOR_DISPATCH_TIMEOUT_SECONDS", 30.0, minimum=0.1)

# Content
HISTORY_LIMIT = min(20, _env_int("MATURADOR_HISTORY_LIMIT", 20, minimum=0))
MAX_REPLY_LINES = _env_int("MATURADOR_MAX_REPLY_LINES", 2, minimum=1)
MAX_REPLY_CHARS = _env_int("MATURADOR_MAX_REPLY_CHARS", 150, minimum=10)
DISPLAY_TIMEZONE = os.environ.get("MATURADOR_TIMEZONE", "America/Sao_Paulo")
FIRST_TURN_TEMPLATE = os.environ.get(
    "MATURADOR_FIRST_TURN_TEMPLATE", "🔄 Maturando desde: {started_at}"
)
FALLBACK_PHRASES = (
    "kkk 😅",
    "show!",
    "entendi 🤔",
    "massa!",
    "boa! 👍",
    "legal isso",
    "interessante 😊",
)

# Drivers
LOOP_DRIVER_ENABLED = _env_flag("MATURADOR_LOOP_DRIVER", True)
PAIR_LEASES_ENABLED = _env_flag("MATURADOR_PAIR_LEASES", True)
LEASE_MARGIN_SECONDS = _env_float("MATURADOR_LEASE_MARGIN_SECONDS", 30.0)
SWEEP_LEASE_SECONDS = _env_float("MATURADOR_SWEEP_LEASE_SECONDS", 90.0, minimum=1.0)
SWEEP_MIN_IDLE_SECONDS = _env_float("MATURADOR_SWEEP_MIN_IDLE_SECONDS", 30.0)
SWEEP_INTERVAL_SECONDS = _env_float("MATURADOR_SWEEP_INTERVAL_SECONDS", 15.0, minimum=1.0)
SWEEP_MAX_CONCURRENCY = _env_int("MATURADOR_SWEEP_MAX_CONCURRENCY", 8, minimum=1)
SWEEPER_AUTOSTART = _env_flag("MATURADOR_SWEEPER_AUTOSTART", False)
RESUME_ON_STARTUP = _env_flag("MATURADOR_RESUME_ON_STARTUP", True)

# Channel
CHECK_INSTANCE_STATE = _env_flag("MATURADOR_CHECK_INSTANCE_STATE", False)


def iteration_lease_seconds() -> float:
    """Upper bound on one advance: typing delay plus both external call timeouts."""
    return (
        TYPING_DELAY_MAX_SECONDS
        + GENERATE_TIMEOUT_SECONDS
        + DISPATCH_TIMEOUT_SECONDS
        + LEASE_MARGIN_SECONDS
    )
