"""FastAPI endpoints for encounter operations and observer websocket sync."""

from __future__ import annotations

import logging
from typing import Any, Literal, Union

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from .actions import ActionRequest, ActionType
from .broadcast import DeltaBroadcaster
from .conditions import ConditionEffect, ConditionOperation
from .config import load_settings
from .dice import RandomDice, RollMode
from .engine import EncounterEngine
from .errors import EngineError
from .models import EncounterOutcome, Lighting, ParticipantInput, Position, ResourcePool, Terrain
from .store import create_character_store
from .tracker import ActionCost

logger = logging.getLogger(__name__)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PositionModel(ApiModel):
    x: int = Field(ge=0)
    y: int = Field(ge=0)
    z: int = 0

    def to_position(self) -> Position:
        return Position(x=self.x, y=self.y, z=self.z)


class ResourcePoolModel(ApiModel):
    current: int = Field(ge=0)
    max: int = Field(ge=0)


class ParticipantModel(ApiModel):
    id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=200)
    hp: int = Field(ge=0)
    max_hp: int = Field(ge=1)
    position: PositionModel
    ac: int = Field(default=10, ge=0)
    initiative_bonus: int = 0
    is_enemy: bool = False
    size: str = "medium"
    speed: int = Field(default=30, ge=0)
    character_id: str | None = None
    resistances: list[str] = Field(default_factory=list)
    immunities: list[str] = Field(default_factory=list)
    vulnerabilities: list[str] = Field(default_factory=list)
    condition_immunities: list[str] = Field(default_factory=list)
    resource_slots: dict[str, ResourcePoolModel] = Field(default_factory=dict)

    def to_input(self) -> ParticipantInput:
        return ParticipantInput(
            id=self.id,
            name=self.name,
            hp=self.hp,
            max_hp=self.max_hp,
            position=self.position.to_position(),
            ac=self.ac,
            initiative_bonus=self.initiative_bonus,
            is_enemy=self.is_enemy,
            size=self.size,
            speed=self.speed,
            character_id=self.character_id,
            resistances=list(self.resistances),
            immunities=list(self.immunities),
            vulnerabilities=list(self.vulnerabilities),
            condition_immunities=list(self.condition_immunities),
            resource_slots={
                slot: ResourcePool(current=pool.current, max=pool.max) for slot, pool in self.resource_slots.items()
            },
        )


class TerrainModel(ApiModel):
    width: int = Field(default=20, ge=1, le=200)
    height: int = Field(default=20, ge=1, le=200)
    obstacles: list[PositionModel] = Field(default_factory=list)
    difficult_terrain: list[PositionModel] = Field(default_factory=list)
    water: list[PositionModel] = Field(default_factory=list)
    hazards: list[dict[str, Any]] = Field(default_factory=list)

    def to_terrain(self) -> Terrain:
        return Terrain(
            width=self.width,
            height=self.height,
            obstacles=[p.to_position() for p in self.obstacles],
            difficult_terrain=[p.to_position() for p in self.difficult_terrain],
            water=[p.to_position() for p in self.water],
            hazards=list(self.hazards),
        )


class CreateEncounterRequest(ApiModel):
    participants: list[ParticipantModel] = Field(min_length=1)
    terrain: TerrainModel | None = None
    lighting: Lighting = Lighting.BRIGHT
    surprised: list[str] = Field(default_factory=list)
    encounter_id: str | None = Field(default=None, min_length=1, max_length=100)


class ActionRequestModel(ApiModel):
    action_type: ActionType
    actor_id: str = Field(min_length=1)
    target_id: str | None = None
    target_position: PositionModel | None = None
    cost: ActionCost | None = None
    attack_bonus: int = 0
    damage: str = Field(default="1d6", min_length=1, max_length=50)
    damage_type: str | None = None
    advantage: bool = False
    disadvantage: bool = False
    ranged: bool = False
    manual_roll: int | None = Field(default=None, ge=1, le=20)
    manual_damage: int | None = Field(default=None, ge=0)
    defender_bonus: int = 0
    manual_defender_roll: int | None = Field(default=None, ge=1, le=20)
    shove_mode: Literal["prone", "push"] = "prone"
    spell_level: int = Field(default=0, ge=0, le=9)
    use_pact_slot: bool = False
    radius: int | None = Field(default=None, ge=0)
    save_dc: int | None = Field(default=None, ge=1, alias="saveDC")
    save_ability: str | None = None
    save_modifier: int = 0
    healing: bool = False
    condition: str | None = None
    condition_duration: int | str | None = None
    opportunity_damage: str = Field(default="1d6+2", min_length=1, max_length=50)

    def to_request(self) -> ActionRequest:
        return ActionRequest(
            action_type=self.action_type,
            actor_id=self.actor_id,
            target_id=self.target_id,
            target_position=self.target_position.to_position() if self.target_position is not None else None,
            cost=self.cost,
            attack_bonus=self.attack_bonus,
            damage=self.damage,
            damage_type=self.damage_type,
            advantage=self.advantage,
            disadvantage=self.disadvantage,
            ranged=self.ranged,
            manual_roll=self.manual_roll,
            manual_damage=self.manual_damage,
            defender_bonus=self.defender_bonus,
            manual_defender_roll=self.manual_defender_roll,
            shove_mode=self.shove_mode,
            spell_level=self.spell_level,
            use_pact_slot=self.use_pact_slot,
            radius=self.radius,
            save_dc=self.save_dc,
            save_ability=self.save_ability,
            save_modifier=self.save_modifier,
            healing=self.healing,
            condition=self.condition,
            condition_duration=self.condition_duration,
            opportunity_damage=self.opportunity_damage,
        )


class ConditionOperationModel(ApiModel):
    operation: Literal["add", "remove", "query", "tick"]
    target_id: str = Field(min_length=1)
    condition: str | None = None
    encounter_id: str | None = None
    duration: int | str | None = None
    source: str | None = None
    description: str | None = Field(default=None, max_length=500)
    mechanical_effects: dict[str, Any] | None = None
    save_dc: int | None = Field(default=None, ge=1, alias="saveDC")
    save_ability: str | None = None
    exhaustion_levels: int = Field(default=1, ge=1, le=6)

    def to_operation(self) -> ConditionOperation:
        return ConditionOperation(
            operation=self.operation,
            target_id=self.target_id,
            condition=self.condition,
            encounter_id=self.encounter_id,
            duration=self.duration,
            source=self.source,
            description=self.description,
            effect=ConditionEffect.from_dict(self.mechanical_effects) if self.mechanical_effects else None,
            save_dc=self.save_dc,
            save_ability=self.save_ability,
            exhaustion_levels=self.exhaustion_levels,
        )


class ConditionBatchRequest(ApiModel):
    batch: list[ConditionOperationModel] = Field(min_length=1, max_length=20)


class DeathSaveRequest(ApiModel):
    participant_id: str = Field(min_length=1)
    modifier: int = 0
    mode: RollMode = RollMode.NORMAL
    manual_roll: int | None = Field(default=None, ge=1, le=20)
    manual_rolls: list[int] | None = Field(default=None, min_length=2, max_length=2)


class EndEncounterRequest(ApiModel):
    outcome: EncounterOutcome = EncounterOutcome.OTHER
    notes: str | None = Field(default=None, max_length=2000)
    preserve_log: bool = False


class CommitRequest(ApiModel):
    dry_run: bool = False
    character_ids: list[str] | None = None
    exclude_resource_slots: bool = False


class EncounterStateResponse(BaseModel):
    state: dict[str, Any]


def _default_engine() -> EncounterEngine:
    settings = load_settings()
    return EncounterEngine(
        character_store=create_character_store(settings),
        dice=RandomDice(seed=settings.dice_seed),
    )


def create_app(engine: EncounterEngine | None = None, broadcaster: DeltaBroadcaster | None = None) -> FastAPI:
    app = FastAPI(title="EncounterSync API", version="0.1.0")
    encounter_engine = engine if engine is not None else _default_engine()
    delta_broadcaster = broadcaster if broadcaster is not None else DeltaBroadcaster()
    app.state.engine = encounter_engine
    app.state.broadcaster = delta_broadcaster

    async def publish(encounter_id: str, deltas: list[Any]) -> None:
        await delta_broadcaster.publish(encounter_id=encounter_id, deltas=deltas)

    app.state.publish = publish

    def get_engine() -> EncounterEngine:
        return encounter_engine

    @app.exception_handler(EngineError)
    async def handle_engine_error(request: Request, exc: EngineError) -> JSONResponse:
        logger.debug(f"{request.method} {request.url.path} rejected: {exc.code.value} {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.post("/api/encounters")
    async def create_encounter(
        payload: CreateEncounterRequest,
        local_engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        created = await run_in_threadpool(
            local_engine.create,
            participants=[p.to_input() for p in payload.participants],
            terrain=payload.terrain.to_terrain() if payload.terrain is not None else None,
            lighting=payload.lighting,
            surprised=list(payload.surprised),
            encounter_id=payload.encounter_id,
        )
        return {"encounterId": created.encounter_id, "turnOrder": created.turn_order, "state": created.state}

    @app.get("/api/encounters")
    def list_encounters(local_engine: EncounterEngine = Depends(get_engine)) -> dict[str, Any]:
        return {"encounters": [summary.to_dict() for summary in local_engine.list()]}

    @app.get("/api/encounters/{encounter_id}", response_model=EncounterStateResponse)
    def get_encounter(
        encounter_id: str,
        local_engine: EncounterEngine = Depends(get_engine),
    ) -> EncounterStateResponse:
        return EncounterStateResponse(state=local_engine.get(encounter_id))

    @app.post("/api/encounters/{encounter_id}/advance")
    async def advance_turn(
        encounter_id: str,
        local_engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        async with delta_broadcaster.ordered(encounter_id):
            result = await run_in_threadpool(local_engine.advance_turn, encounter_id)
            await publish(encounter_id=encounter_id, deltas=result.deltas)
        return result.to_dict()

    @app.post("/api/encounters/{encounter_id}/actions")
    async def execute_action(
        encounter_id: str,
        payload: ActionRequestModel,
        local_engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        async with delta_broadcaster.ordered(encounter_id):
            outcome = await run_in_threadpool(local_engine.execute_action, encounter_id, payload.to_request())
            await publish(encounter_id=encounter_id, deltas=outcome.deltas)
        return outcome.to_dict()

    @app.post("/api/conditions")
    async def manage_condition(
        payload: Union[ConditionBatchRequest, ConditionOperationModel],
        local_engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        if isinstance(payload, ConditionBatchRequest):
            operations = [item.to_operation() for item in payload.batch]
            batch = True
        else:
            operations = [payload.to_operation()]
            batch = False
        # unscoped operations may bind to any active encounter
        scoped = {operation.encounter_id for operation in operations if operation.encounter_id}
        if len(scoped) < len(operations):
            scoped.update(summary.encounter_id for summary in local_engine.list())
        async with delta_broadcaster.ordered(*scoped):
            result = await run_in_threadpool(local_engine.manage_condition, operations, batch)
            for encounter_id, deltas in result.deltas.items():
                await publish(encounter_id=encounter_id, deltas=deltas)
        return result.to_dict()

    @app.post("/api/encounters/{encounter_id}/death-saves")
    async def roll_death_save(
        encounter_id: str,
        payload: DeathSaveRequest,
        local_engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        async with delta_broadcaster.ordered(encounter_id):
            result = await run_in_threadpool(
                local_engine.roll_death_save,
                encounter_id,
                payload.participant_id,
                modifier=payload.modifier,
                mode=payload.mode,
                manual_roll=payload.manual_roll,
                manual_rolls=tuple(payload.manual_rolls) if payload.manual_rolls is not None else None,
            )
            await publish(encounter_id=encounter_id, deltas=result.deltas)
        return result.to_dict()

    @app.post("/api/encounters/{encounter_id}/end")
    async def end_encounter(
        encounter_id: str,
        payload: EndEncounterRequest,
        local_engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        result = await run_in_threadpool(
            local_engine.end_encounter,
            encounter_id,
            outcome=payload.outcome,
            notes=payload.notes,
            preserve_log=payload.preserve_log,
        )
        return result.to_dict()

    @app.get("/api/encounters/{encounter_id}/diff")
    def get_diff(
        encounter_id: str,
        local_engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        return local_engine.diff(encounter_id).to_dict()

    @app.post("/api/encounters/{encounter_id}/commit")
    async def commit(
        encounter_id: str,
        payload: CommitRequest,
        local_engine: EncounterEngine = Depends(get_engine),
    ) -> dict[str, Any]:
        report = await run_in_threadpool(
            local_engine.commit,
            encounter_id,
            dry_run=payload.dry_run,
            character_ids=payload.character_ids,
            exclude_resource_slots=payload.exclude_resource_slots,
        )
        return report.to_dict()

    async def load_state(encounter_id: str) -> dict[str, Any]:
        return await run_in_threadpool(encounter_engine.get, encounter_id)

    @app.websocket("/ws")
    async def observer_ws(websocket: WebSocket) -> None:
        await websocket.accept()
        try:
            while True:
                raw = await websocket.receive_text()
                await delta_broadcaster.handle_client_message(websocket, raw, load_state=load_state)
        except WebSocketDisconnect:
            delta_broadcaster.disconnect(websocket)

    return app


app = create_app()
