"""Executable entrypoint for the session fleet service."""

from __future__ import annotations

import logging
import os

import uvicorn


def _init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    logging.getLogger("fleetworker").setLevel(level)


def main() -> None:
    _init_logging()
    # Registry and guards are process local.
    uvicorn.run(
        "fleetworker.api:create_app",
        host=os.getenv("FLEET_HOST", "0.0.0.0"),
        port=int(os.getenv("FLEET_PORT", "8085")),
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
