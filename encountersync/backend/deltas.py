"""Typed deltas and observer wire messages (camelCase JSON)."""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .models import Position


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class GridPoint(WireModel):
    x: int
    y: int
    z: int = 0

    @classmethod
    def of(cls, position: Position) -> "GridPoint":
        return cls(x=position.x, y=position.y, z=position.z)


class EntityMoved(WireModel):
    type: Literal["entityMoved"] = "entityMoved"
    entity_id: str
    from_: GridPoint = Field(alias="from")
    to: GridPoint


class HpChanged(WireModel):
    type: Literal["hpChanged"] = "hpChanged"
    entity_id: str
    previous_hp: int
    current_hp: int
    max_hp: int
    damage: int | None = None
    healing: int | None = None


class ConditionAdded(WireModel):
    type: Literal["conditionAdded"] = "conditionAdded"
    entity_id: str
    condition: str
    duration: int | str | None = None


class ConditionRemoved(WireModel):
    type: Literal["conditionRemoved"] = "conditionRemoved"
    entity_id: str
    condition: str


class TurnChanged(WireModel):
    type: Literal["turnChanged"] = "turnChanged"
    previous_entity_id: str
    current_entity_id: str
    round: int


class AttackResult(WireModel):
    type: Literal["attackResult"] = "attackResult"
    attacker_id: str
    target_id: str
    hit: bool
    damage: int | None = None
    critical: bool | None = None


Delta = Annotated[
    Union[EntityMoved, HpChanged, ConditionAdded, ConditionRemoved, TurnChanged, AttackResult],
    Field(discriminator="type"),
]


class SubscribeMessage(WireModel):
    type: Literal["subscribe"]
    encounter_id: str = Field(min_length=1)


class UnsubscribeMessage(WireModel):
    type: Literal["unsubscribe"]
    encounter_id: str = Field(min_length=1)


class PingMessage(WireModel):
    type: Literal["ping"]


ClientMessage = Annotated[
    Union[SubscribeMessage, UnsubscribeMessage, PingMessage],
    Field(discriminator="type"),
]

CLIENT_MESSAGE_TYPES = frozenset({"subscribe", "unsubscribe", "ping"})

_client_message_adapter: TypeAdapter[Any] = TypeAdapter(ClientMessage)
_delta_adapter: TypeAdapter[Any] = TypeAdapter(Delta)


class SubscribedMessage(WireModel):
    type: Literal["subscribed"] = "subscribed"
    encounter_id: str
    state: dict[str, Any]


class UnsubscribedMessage(WireModel):
    type: Literal["unsubscribed"] = "unsubscribed"
    encounter_id: str


class DeltaMessage(WireModel):
    type: Literal["delta"] = "delta"
    encounter_id: str
    delta: Delta


class PongMessage(WireModel):
    type: Literal["pong"] = "pong"


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    message: str


class MessageError(ValueError):
    """Raised for observer messages that cannot be acted on."""


def parse_client_message(raw: str | None) -> SubscribeMessage | UnsubscribeMessage | PingMessage:
    if raw is None or not raw.strip():
        raise MessageError("Empty message")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MessageError(f"Could not parse message: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise MessageError("Could not parse message: expected a JSON object")
    message_type = payload.get("type")
    if message_type not in CLIENT_MESSAGE_TYPES:
        raise MessageError(f"Unknown message type: {message_type}")
    try:
        return _client_message_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in exc.errors())
        raise MessageError(f"Invalid {message_type} message: {fields}") from exc


def parse_delta(payload: dict[str, Any]) -> Any:
    return _delta_adapter.validate_python(payload)
