"""Persistence interfaces and implementations for durable character records."""

from __future__ import annotations

import copy
import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from .config import EngineSettings
from .errors import NotFoundError
from .models import CharacterRecord, ResourcePool

logger = logging.getLogger(__name__)


class CharacterStore(Protocol):
    def get(self, character_id: str) -> CharacterRecord | None:
        """Return a detached copy of the record, or None when unknown."""

    def save(self, record: CharacterRecord) -> None:
        """Create or overwrite a record."""

    def transaction(self, character_id: str) -> Any:
        """Context manager yielding the record; writes on success, discards on error."""


@dataclass
class InMemoryCharacterStore:
    def __post_init__(self) -> None:
        self._records: dict[str, CharacterRecord] = {}

    def get(self, character_id: str) -> CharacterRecord | None:
        record = self._records.get(character_id)
        return copy.deepcopy(record) if record is not None else None

    def save(self, record: CharacterRecord) -> None:
        self._records[record.id] = copy.deepcopy(record)

    @contextmanager
    def transaction(self, character_id: str) -> Iterator[CharacterRecord]:
        record = self.get(character_id)
        if record is None:
            raise NotFoundError(f"Character not found: {character_id}", details={"characterId": character_id})
        yield record
        self.save(record)


@dataclass
class JsonCharacterStore:
    """One `{id}.json` file per character under `data_dir`."""

    data_dir: str

    def _path(self, character_id: str) -> Path:
        return Path(self.data_dir) / f"{character_id}.json"

    def get(self, character_id: str) -> CharacterRecord | None:
        path = self._path(character_id)
        if not path.exists():
            return None
        return CharacterRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))

    def save(self, record: CharacterRecord) -> None:
        path = self._path(record.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = record.to_dict()
        payload["updatedAt"] = datetime.now(timezone.utc).isoformat()
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    @contextmanager
    def transaction(self, character_id: str) -> Iterator[CharacterRecord]:
        record = self.get(character_id)
        if record is None:
            raise NotFoundError(f"Character not found: {character_id}", details={"characterId": character_id})
        yield record
        self.save(record)


@dataclass
class PostgresCharacterStore:
    database_url: str

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def get(self, character_id: str) -> CharacterRecord | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, name, hp, max_hp, conditions, resource_slots
                    FROM characters
                    WHERE id = %s
                    """,
                    (character_id,),
                )
                row = cur.fetchone()
        return _record_from_row(row) if row is not None else None

    def save(self, record: CharacterRecord) -> None:
        now = datetime.now(timezone.utc)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO characters (id, name, hp, max_hp, conditions, resource_slots, updated_at)
                    VALUES (%s, %s, %s, %s, %s::jsonb, %s::jsonb, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET name = EXCLUDED.name,
                        hp = EXCLUDED.hp,
                        max_hp = EXCLUDED.max_hp,
                        conditions = EXCLUDED.conditions,
                        resource_slots = EXCLUDED.resource_slots,
                        updated_at = EXCLUDED.updated_at
                    """,
                    _record_params(record) + (now,),
                )
            conn.commit()

    @contextmanager
    def transaction(self, character_id: str) -> Iterator[CharacterRecord]:
        with self._connect() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        SELECT id, name, hp, max_hp, conditions, resource_slots
                        FROM characters
                        WHERE id = %s
                        FOR UPDATE
                        """,
                        (character_id,),
                    )
                    row = cur.fetchone()
                    if row is None:
                        raise NotFoundError(
                            f"Character not found: {character_id}",
                            details={"characterId": character_id},
                        )
                    record = _record_from_row(row)
                    yield record
                    params = _record_params(record)
                    cur.execute(
                        """
                        UPDATE characters
                        SET name = %s, hp = %s, max_hp = %s, conditions = %s::jsonb,
                            resource_slots = %s::jsonb, updated_at = %s
                        WHERE id = %s
                        """,
                        params[1:] + (datetime.now(timezone.utc), record.id),
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise


def _record_params(record: CharacterRecord) -> tuple[Any, ...]:
    data = record.to_dict()
    return (
        record.id,
        record.name,
        record.hp,
        record.max_hp,
        json.dumps(data["conditions"]),
        json.dumps(data["resourceSlots"]),
    )


def _record_from_row(row: tuple[Any, ...]) -> CharacterRecord:
    character_id, name, hp, max_hp, conditions, resource_slots = row
    conditions = conditions if isinstance(conditions, list) else json.loads(conditions or "[]")
    resource_slots = resource_slots if isinstance(resource_slots, dict) else json.loads(resource_slots or "{}")
    return CharacterRecord(
        id=str(character_id),
        name=name,
        hp=int(hp),
        max_hp=int(max_hp),
        conditions=[dict(c) for c in conditions],
        resource_slots={
            str(slot): ResourcePool(current=int(pool["current"]), max=int(pool["max"]))
            for slot, pool in resource_slots.items()
        },
    )


def create_character_store(settings: EngineSettings) -> CharacterStore:
    if settings.database_url:
        logger.info("Using PostgreSQL character store")
        return PostgresCharacterStore(database_url=settings.database_url)
    if settings.data_dir:
        logger.info(f"Using JSON character store at {settings.data_dir}")
        return JsonCharacterStore(data_dir=settings.data_dir)
    return InMemoryCharacterStore()
