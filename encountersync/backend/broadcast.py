"""Subscription directory and best-effort delta fan-out to observers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from .deltas import (
    DeltaMessage,
    ErrorMessage,
    MessageError,
    PingMessage,
    PongMessage,
    SubscribedMessage,
    SubscribeMessage,
    UnsubscribedMessage,
    parse_client_message,
)
from .errors import EngineError

logger = logging.getLogger(__name__)


class Observer(Protocol):
    async def send_json(self, data: Any) -> None:
        """Deliver one JSON message."""


class SubscriptionDirectory:
    """encounter id -> observers, plus observer -> encounter ids for disconnect cleanup."""

    def __init__(self) -> None:
        self._observers: dict[str, set[Observer]] = defaultdict(set)
        self._encounters: dict[Observer, set[str]] = defaultdict(set)

    def subscribe(self, encounter_id: str, observer: Observer) -> None:
        self._observers[encounter_id].add(observer)
        self._encounters[observer].add(encounter_id)

    def unsubscribe(self, encounter_id: str, observer: Observer) -> None:
        observers = self._observers.get(encounter_id)
        if observers is not None:
            observers.discard(observer)
            if not observers:
                self._observers.pop(encounter_id, None)
        encounter_ids = self._encounters.get(observer)
        if encounter_ids is not None:
            encounter_ids.discard(encounter_id)
            if not encounter_ids:
                self._encounters.pop(observer, None)

    def unsubscribe_all(self, observer: Observer) -> None:
        for encounter_id in list(self._encounters.get(observer, set())):
            self.unsubscribe(encounter_id, observer)

    def observers_of(self, encounter_id: str) -> list[Observer]:
        return list(self._observers.get(encounter_id, set()))

    def encounter_ids_for(self, observer: Observer) -> set[str]:
        return set(self._encounters.get(observer, set()))

    def subscriber_count(self, encounter_id: str) -> int:
        return len(self._observers.get(encounter_id, set()))

    def has_entry(self, encounter_id: str) -> bool:
        return encounter_id in self._observers


class _Sequence:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class DeltaBroadcaster:
    def __init__(self, directory: SubscriptionDirectory | None = None) -> None:
        self.directory = directory if directory is not None else SubscriptionDirectory()
        self._sequences: dict[str, _Sequence] = {}

    @asynccontextmanager
    async def ordered(self, *encounter_ids: str) -> AsyncIterator[None]:
        """Hold the encounters' turn so a mutation and its fan-out finish before the next one starts."""
        entries: list[tuple[str, _Sequence]] = []
        for encounter_id in sorted(set(encounter_ids)):
            sequence = self._sequences.get(encounter_id)
            if sequence is None:
                sequence = self._sequences[encounter_id] = _Sequence()
            sequence.users += 1
            entries.append((encounter_id, sequence))
        acquired: list[_Sequence] = []
        try:
            for _, sequence in entries:
                await sequence.lock.acquire()
                acquired.append(sequence)
            yield
        finally:
            for sequence in reversed(acquired):
                sequence.lock.release()
            for encounter_id, sequence in entries:
                sequence.users -= 1
                if sequence.users == 0:
                    self._sequences.pop(encounter_id, None)

    def pending_sequences(self) -> int:
        return len(self._sequences)

    async def publish(self, encounter_id: str, deltas: list[Any]) -> int:
        """Send each delta, in order, to every subscriber; returns the number of messages delivered."""
        observers = self.directory.observers_of(encounter_id)
        if not observers or not deltas:
            return 0
        delivered = 0
        stale: list[Observer] = []
        for observer in observers:
            try:
                for delta in deltas:
                    await observer.send_json(DeltaMessage(encounter_id=encounter_id, delta=delta).to_wire())
                    delivered += 1
            except Exception as exc:
                logger.warning(f"Dropping observer of encounter {encounter_id}: {exc}")
                stale.append(observer)
        for observer in stale:
            self.directory.unsubscribe_all(observer)
        return delivered

    async def handle_client_message(
        self,
        observer: Observer,
        raw: str | None,
        load_state: Callable[[str], Awaitable[dict[str, Any]]],
    ) -> None:
        """Dispatch one inbound observer message; malformed input gets an error reply."""
        try:
            message = parse_client_message(raw)
        except MessageError as exc:
            await observer.send_json(ErrorMessage(message=str(exc)).to_wire())
            return

        if isinstance(message, PingMessage):
            await observer.send_json(PongMessage().to_wire())
            return

        if isinstance(message, SubscribeMessage):
            # the snapshot and the registration must not straddle a publish
            async with self.ordered(message.encounter_id):
                try:
                    state = await load_state(message.encounter_id)
                except EngineError as exc:
                    await observer.send_json(ErrorMessage(message=exc.message).to_wire())
                    return
                self.directory.subscribe(message.encounter_id, observer)
                await observer.send_json(SubscribedMessage(encounter_id=message.encounter_id, state=state).to_wire())
            return

        self.directory.unsubscribe(message.encounter_id, observer)
        await observer.send_json(UnsubscribedMessage(encounter_id=message.encounter_id).to_wire())

    def disconnect(self, observer: Observer) -> None:
        self.directory.unsubscribe_all(observer)
