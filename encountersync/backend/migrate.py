"""Create the character table used by the PostgreSQL character store."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from encountersync.backend.config import configure_logging, load_settings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


def apply_schema(conn: Any, schema_sql: str | None = None) -> None:
    sql = schema_sql if schema_sql is not None else SCHEMA_PATH.read_text(encoding="utf-8")
    with conn.cursor() as cur:
        cur.execute(sql)
    conn.commit()


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.database_url:
        raise RuntimeError("ENCOUNTERSYNC_DATABASE_URL is required for migration")

    import psycopg

    with psycopg.connect(settings.database_url) as conn:
        apply_schema(conn)
    logger.info("Character schema applied")


if __name__ == "__main__":
    main()
