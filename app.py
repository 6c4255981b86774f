"""Maturador service launcher."""

import logging
import os

import uvicorn

from maturador.runtime_config import ensure_runtime_dirs

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("maturador.app")

HOST = os.environ.get("MATURADOR_HOST", "127.0.0.1")
PORT = int(os.environ.get("MATURADOR_PORT", "8000"))


def main():
    ensure_runtime_dirs()
    logger.info("Starting Maturador on http://%s:%s", HOST, PORT)
    uvicorn.run("maturador.main:app", host=HOST, port=PORT, log_level="info")


if __name__ == "__main__":
    main()
