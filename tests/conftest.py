"""Global pytest environment isolation for Maturador.

Ensures tests never write to a real data directory and never reach the
network. Paths are set before the package is imported.
"""

from __future__ import annotations

import atexit
import asyncio
import os
import shutil
from pathlib import Path

import pytest

from helpers.temp_db import bootstrap_test_environment

TEST_PATHS = bootstrap_test_environment()
TEST_ROOT = TEST_PATHS["root"]


def _assert_test_isolation() -> None:
    db_path = Path(os.environ["MATURADOR_DB_PATH"]).resolve()
    if TEST_ROOT not in db_path.parents:
        raise RuntimeError(f"MATURADOR_DB_PATH escaped test root: {db_path}")


def _bootstrap_test_runtime() -> None:
    _assert_test_isolation()
    from maturador.database import init_db

    asyncio.run(init_db())


_bootstrap_test_runtime()


def _cleanup_test_dirs():
    shutil.rmtree(TEST_ROOT, ignore_errors=True)


atexit.register(_cleanup_test_dirs)


@pytest.fixture(autouse=True)
def _fast_scheduler(monkeypatch):
    """Shrink every pacing knob and start each test with an empty loop registry."""
    from maturador import provider_config
    from maturador import runtime_config
    from maturador.loop_driver import scheduler

    monkeypatch.setattr(runtime_config, "TURN_DELAY_MIN_SECONDS", 0.01)
    monkeypatch.setattr(runtime_config, "TURN_DELAY_MAX_SECONDS", 0.02)
    monkeypatch.setattr(runtime_config, "TYPING_DELAY_MIN_SECONDS", 0.0)
    monkeypatch.setattr(runtime_config, "TYPING_DELAY_MAX_SECONDS", 0.0)
    monkeypatch.setattr(runtime_config, "REPLY_DELAY_MIN_SECONDS", 0.0)
    monkeypatch.setattr(runtime_config, "REPLY_DELAY_MAX_SECONDS", 0.0)
    monkeypatch.setattr(runtime_config, "RETRY_BACKOFF_SECONDS", 0.01)
    monkeypatch.setattr(runtime_config, "CONFIG_BACKOFF_MAX_SECONDS", 0.05)
    monkeypatch.setattr(runtime_config, "SWEEP_MIN_IDLE_SECONDS", 0.0)
    monkeypatch.setattr(runtime_config, "CHECK_INSTANCE_STATE", False)
    monkeypatch.setattr(runtime_config, "FIRST_TURN_TEMPLATE", "")
    provider_config.clear_provider_cache()
    scheduler.reset()
    yield
    scheduler.reset()
    provider_config.clear_provider_cache()
