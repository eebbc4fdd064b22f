"""
jerkyrank.__main__ - Entry point for ``python -m jerkyrank``
=============================================================

Wiring:
1. Load .env (secrets).
2. Configure logging.
3. Hand over to Uvicorn; the API lifespan loads config.yaml, creates
   the pools, ensures tables exist, seeds the achievement catalogue,
   starts the classification workers and warms the caches.

Run with::

    python -m jerkyrank --port 8000
"""

from __future__ import annotations

import argparse
import logging
import os

import uvicorn
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("jerkyrank")


def main() -> None:
    """Bootstrap and serve the JerkyRank API."""
    load_dotenv()

    parser = argparse.ArgumentParser(prog="jerkyrank")
    parser.add_argument("--host", default=os.getenv("JERKYRANK_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("JERKYRANK_PORT", "8000")))
    parser.add_argument("--config", default=os.getenv("JERKYRANK_CONFIG", "config.yaml"))
    args = parser.parse_args()

    os.environ["JERKYRANK_CONFIG"] = args.config
    logger.info("Starting JerkyRank API on %s:%d (config %s)", args.host, args.port, args.config)
    uvicorn.run("jerkyrank.api.main:app", host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
