"""Runtime path helpers.

This module centralizes file-system locations so local runs, tests, and
deployed services share one source of truth without hardcoded machine paths.
"""

from __future__ import annotations

import os
from pathlib import Path

from platformdirs import user_data_dir

APP_NAME = "Maturador"
APP_ROOT = Path(__file__).resolve().parent.parent


def _default_home() -> Path:
    return Path(user_data_dir(APP_NAME, appauthor=False))


MATURADOR_HOME = Path(
    os.environ.get("MATURADOR_HOME", str(_default_home()))
).expanduser().resolve()
DB_PATH = Path(
    os.environ.get("MATURADOR_DB_PATH", str(MATURADOR_HOME / "data" / "maturador.db"))
).expanduser().resolve()
LOGS_DIR = Path(
    os.environ.get("MATURADOR_LOGS_DIR", str(MATURADOR_HOME / "logs"))
).expanduser().resolve()


def ensure_runtime_dirs() -> None:
    MATURADOR_HOME.mkdir(parents=True, exist_ok=True)
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
