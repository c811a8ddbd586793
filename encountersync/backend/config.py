"""Configuration helpers for backend runtime."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class EngineSettings:
    database_url: str | None
    data_dir: str | None
    host: str
    port: int
    log_level: str
    dice_seed: int | None


def load_settings() -> EngineSettings:
    port_raw = os.getenv("ENCOUNTERSYNC_PORT", "8000")
    seed_raw = os.getenv("ENCOUNTERSYNC_DICE_SEED")
    return EngineSettings(
        database_url=os.getenv("ENCOUNTERSYNC_DATABASE_URL"),
        data_dir=os.getenv("ENCOUNTERSYNC_DATA_DIR"),
        host=os.getenv("ENCOUNTERSYNC_HOST", "127.0.0.1"),
        port=int(port_raw),
        log_level=os.getenv("ENCOUNTERSYNC_LOG_LEVEL", "INFO").upper(),
        dice_seed=int(seed_raw) if seed_raw else None,
    )


def configure_logging(level: str) -> None:
    """Install a root handler for the service process."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
