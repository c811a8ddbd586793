"""Action resolver: one dispatcher keyed by action type."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .conditions import (
    ConditionEffect,
    ConditionOperation,
    ConditionStore,
    Duration,
    EffectiveStats,
    apply_condition_operation,
    compute_effective_stats,
    resolve_condition_target,
)
from .death_saves import DeathSaveStore, apply_damage_at_zero
from .deltas import AttackResult, ConditionAdded, ConditionRemoved, EntityMoved, GridPoint, HpChanged
from .dice import Dice, roll_d20_with_mode, validate_expression
from .errors import NotFoundError, StateConflictError, ValidationError
from .geometry import MELEE_REACH, Geometry, within_reach
from .models import Encounter, Participant, Position
from .tracker import ActionCost, TurnActionStore, TurnActionTracker

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    ATTACK = "attack"
    CAST_SPELL = "cast_spell"
    DASH = "dash"
    DISENGAGE = "disengage"
    DODGE = "dodge"
    HELP = "help"
    HIDE = "hide"
    READY = "ready"
    SEARCH = "search"
    USE_OBJECT = "use_object"
    USE_MAGIC_ITEM = "use_magic_item"
    USE_SPECIAL_ABILITY = "use_special_ability"
    SHOVE = "shove"
    GRAPPLE = "grapple"
    MOVE = "move"


DEFAULT_COSTS: dict[ActionType, ActionCost] = {action_type: ActionCost.ACTION for action_type in ActionType}
DEFAULT_COSTS[ActionType.MOVE] = ActionCost.MOVEMENT

DAMAGE_ACTIONS = frozenset({ActionType.ATTACK, ActionType.CAST_SPELL})
MOVING_ACTIONS = frozenset({ActionType.MOVE, ActionType.DASH, ActionType.DISENGAGE})

SPELL_SLOT_LEVELS = frozenset(str(level) for level in range(1, 10))
PACT_SLOT = "pact"

KNOCKED_PRONE = ConditionEffect(can_only_crawl=True, cannot_move=True, disadvantage_on=["attack_rolls"])


@dataclass
class ActionRequest:
    action_type: ActionType
    actor_id: str
    target_id: str | None = None
    target_position: Position | None = None
    cost: ActionCost | None = None
    attack_bonus: int = 0
    damage: str = "1d6"
    damage_type: str | None = None
    advantage: bool = False
    disadvantage: bool = False
    ranged: bool = False
    manual_roll: int | None = None
    manual_damage: int | None = None
    defender_bonus: int = 0
    manual_defender_roll: int | None = None
    shove_mode: str = "prone"
    spell_level: int = 0
    use_pact_slot: bool = False
    radius: int | None = None
    save_dc: int | None = None
    save_ability: str | None = None
    save_modifier: int = 0
    healing: bool = False
    condition: str | None = None
    condition_duration: Duration = None
    opportunity_damage: str = "1d6+2"


@dataclass
class ActionOutcome:
    action_type: ActionType
    actor_id: str
    success: bool
    message: str
    deltas: list[Any] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)
    opportunity_attacks: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "actionType": self.action_type.value,
            "actorId": self.actor_id,
            "success": self.success,
            "message": self.message,
            "details": dict(self.details),
            "opportunityAttacks": list(self.opportunity_attacks),
        }


@dataclass
class _Turn:
    encounter: Encounter
    actor: Participant
    tracker: TurnActionTracker
    request: ActionRequest
    cost: ActionCost
    stats: EffectiveStats


class ActionResolver:
    def __init__(
        self,
        conditions: ConditionStore,
        death_saves: DeathSaveStore,
        trackers: TurnActionStore,
        dice: Dice,
        geometry: Geometry,
    ) -> None:
        self._conditions = conditions
        self._death_saves = death_saves
        self._trackers = trackers
        self._dice = dice
        self._geometry = geometry
        self._handlers: dict[ActionType, Callable[[_Turn], ActionOutcome]] = {
            ActionType.ATTACK: self._attack,
            ActionType.CAST_SPELL: self._cast_spell,
            ActionType.DASH: self._dash,
            ActionType.DISENGAGE: self._disengage,
            ActionType.DODGE: self._dodge,
            ActionType.GRAPPLE: self._grapple,
            ActionType.SHOVE: self._shove,
            ActionType.MOVE: self._move,
        }

    def execute(self, encounter: Encounter, request: ActionRequest) -> ActionOutcome:
        actor = encounter.find_participant(request.actor_id)
        if actor is None:
            raise NotFoundError(f"Participant not found: {request.actor_id}", details={"actorId": request.actor_id})

        handler = self._handlers.get(request.action_type)
        if handler is None:
            return ActionOutcome(
                action_type=request.action_type,
                actor_id=actor.id,
                success=False,
                message=f"{request.action_type.value} is not yet implemented",
            )
        _validate_request(request)

        cost = request.cost or DEFAULT_COSTS[request.action_type]
        if actor.hp <= 0:
            raise StateConflictError(f"{actor.name} is at 0 hp and cannot act", details={"actorId": actor.id})
        stats = self.effective_stats(encounter, actor)
        if stats.incapacitated and cost in (ActionCost.ACTION, ActionCost.BONUS_ACTION, ActionCost.REACTION):
            raise StateConflictError(f"{actor.name} is incapacitated", details={"actorId": actor.id})

        tracker = self._trackers.get_or_create(encounter.id, actor.id)
        tracker.ensure_available(cost)
        turn = _Turn(encounter=encounter, actor=actor, tracker=tracker, request=request, cost=cost, stats=stats)
        return handler(turn)

    # shared mechanics

    def effective_stats(self, encounter: Encounter, participant: Participant) -> EffectiveStats:
        key = resolve_condition_target(participant.id, encounter)
        return compute_effective_stats(
            max_hp=participant.max_hp,
            speed=participant.speed,
            ac=participant.ac,
            conditions=self._conditions.get(key),
        )

    def is_dodging(self, encounter: Encounter, participant: Participant) -> bool:
        return self._trackers.is_dodging(encounter.id, participant.id)

    def adjust_damage(self, target: Participant, amount: int, damage_type: str | None) -> int:
        if damage_type is None:
            return amount
        if damage_type in target.immunities:
            return 0
        if damage_type in target.resistances:
            amount = amount // 2
        if damage_type in target.vulnerabilities:
            amount = amount * 2
        return amount

    def apply_damage(
        self,
        encounter: Encounter,
        target: Participant,
        amount: int,
        source: Participant | None = None,
        critical: bool = False,
    ) -> list[Any]:
        previous = target.hp
        target.stats.damage_taken += amount
        if source is not None:
            source.stats.damage_dealt += amount

        if previous <= 0:
            if amount > 0:
                record = self._death_saves.get_or_create(encounter.id, target.id)
                apply_damage_at_zero(record, critical=critical)
            return [
                HpChanged(entity_id=target.id, previous_hp=0, current_hp=0, max_hp=target.max_hp, damage=amount)
            ]

        target.hp = max(0, previous - amount)
        deltas: list[Any] = [
            HpChanged(
                entity_id=target.id,
                previous_hp=previous,
                current_hp=target.hp,
                max_hp=target.max_hp,
                damage=amount,
            )
        ]
        if target.hp == 0:
            logger.info(f"{target.name} dropped to 0 hp in encounter {encounter.id}")
            deltas.extend(self.add_condition(encounter, target, "unconscious"))
        return deltas

    def apply_healing(
        self,
        encounter: Encounter,
        target: Participant,
        amount: int,
        source: Participant | None = None,
    ) -> list[Any]:
        record = self._death_saves.get(encounter.id, target.id)
        if record is not None and record.is_dead:
            return []
        previous = target.hp
        target.hp = min(target.max_hp, previous + amount)
        healed = target.hp - previous
        if source is not None:
            source.stats.healing_done += healed
        deltas: list[Any] = [
            HpChanged(
                entity_id=target.id,
                previous_hp=previous,
                current_hp=target.hp,
                max_hp=target.max_hp,
                healing=healed,
            )
        ]
        if previous <= 0 < target.hp:
            self._death_saves.delete(encounter.id, target.id)
            key = resolve_condition_target(target.id, encounter)
            if self._conditions.remove(key, "unconscious") is not None:
                deltas.append(ConditionRemoved(entity_id=target.id, condition="unconscious"))
        return deltas

    def add_condition(
        self,
        encounter: Encounter,
        target: Participant,
        name: str,
        duration: Duration = None,
        effect: ConditionEffect | None = None,
        source: Participant | None = None,
    ) -> list[Any]:
        if name in target.condition_immunities:
            return []
        result = apply_condition_operation(
            self._conditions,
            resolve_condition_target(target.id, encounter),
            ConditionOperation(
                operation="add",
                target_id=target.id,
                condition=name,
                encounter_id=encounter.id,
                duration=duration,
                effect=effect,
                source=source.id if source is not None else None,
            ),
            participant=target,
        )
        if not result.added:
            return []
        if source is not None:
            source.stats.conditions_applied += 1
        return [ConditionAdded(entity_id=target.id, condition=name, duration=duration)]

    def _target(self, turn: _Turn) -> Participant:
        target_id = turn.request.target_id
        if not target_id:
            raise ValidationError(f"{turn.request.action_type.value} requires a target")
        target = turn.encounter.find_participant(target_id)
        if target is None:
            raise NotFoundError(f"Participant not found: {target_id}", details={"targetId": target_id})
        if target.id == turn.actor.id:
            raise ValidationError("An actor cannot target itself")
        return target

    def _require_reach(self, turn: _Turn, target: Participant) -> None:
        if not within_reach(self._geometry, turn.actor.position, target.position, MELEE_REACH):
            raise StateConflictError(
                f"{target.name} is out of reach",
                details={"distance": self._geometry.distance_between(turn.actor.position, target.position)},
            )

    def _strike(
        self,
        encounter: Encounter,
        attacker: Participant,
        target: Participant,
        attack_bonus: int,
        damage: str,
        damage_type: str | None = None,
        advantage: bool = False,
        disadvantage: bool = False,
        manual_roll: int | None = None,
        manual_damage: int | None = None,
    ) -> tuple[dict[str, Any], list[Any]]:
        attacker_stats = self.effective_stats(encounter, attacker)
        advantage = advantage or "attack_rolls" in attacker_stats.advantage_on
        disadvantage = (
            disadvantage
            or "attack_rolls" in attacker_stats.disadvantage_on
            or self.is_dodging(encounter, target)
        )
        target_ac = self.effective_stats(encounter, target).ac

        if manual_roll is not None:
            natural, rolls = manual_roll, [manual_roll]
        else:
            natural, rolls = roll_d20_with_mode(self._dice, advantage=advantage, disadvantage=disadvantage)
        total = natural + attack_bonus

        critical = natural == 20
        if critical:
            hit = True
        elif natural == 1:
            hit = False
        else:
            hit = total >= target_ac

        attacker.stats.attacks_made += 1
        details: dict[str, Any] = {
            "attackerId": attacker.id,
            "targetId": target.id,
            "rolls": rolls,
            "natural": natural,
            "total": total,
            "targetAc": target_ac,
            "hit": hit,
            "critical": critical and hit,
        }
        if not hit:
            return details, [AttackResult(attacker_id=attacker.id, target_id=target.id, hit=False)]

        attacker.stats.attacks_hit += 1
        if manual_damage is not None:
            raw = manual_damage
        else:
            raw = self._dice.roll(damage, double_dice=critical).total
        applied = self.adjust_damage(target, raw, damage_type)
        details["damage"] = applied
        deltas: list[Any] = [
            AttackResult(attacker_id=attacker.id, target_id=target.id, hit=True, damage=applied, critical=critical)
        ]
        deltas.extend(self.apply_damage(encounter, target, applied, source=attacker, critical=critical))
        return details, deltas

    # movement

    def _plan_move(self, turn: _Turn, destination: Position, dashing: bool = False) -> int:
        actor = turn.actor
        terrain = turn.encounter.terrain
        if turn.stats.cannot_move or turn.stats.speed <= 0:
            raise StateConflictError(f"{actor.name} cannot move", details={"actorId": actor.id})
        if not terrain.in_bounds(destination):
            raise StateConflictError("Destination is out of bounds", details={"to": destination.to_dict()})
        cost = self._geometry.path_cost(actor.position, destination, terrain)
        if cost is None:
            raise StateConflictError("Destination is unreachable", details={"to": destination.to_dict()})
        if turn.encounter.occupant_at(destination, exclude=actor.id) is not None:
            raise StateConflictError("Destination is occupied", details={"to": destination.to_dict()})
        if turn.stats.can_only_crawl:
            cost *= 2
        speed = turn.stats.speed
        budget = (2 * speed if dashing or turn.tracker.has_dashed else speed) - turn.tracker.movement_used
        if cost > budget:
            raise StateConflictError(
                "Not enough movement remaining",
                details={"cost": cost, "remaining": budget},
            )
        return cost

    def _perform_move(self, turn: _Turn, destination: Position, cost: int, outcome: ActionOutcome) -> None:
        encounter = turn.encounter
        mover = turn.actor
        origin = mover.position

        if not turn.tracker.disengaged_this_turn:
            for hostile in encounter.participants:
                if hostile.id == mover.id or not hostile.is_hostile_to(mover) or hostile.hp <= 0:
                    continue
                if not within_reach(self._geometry, hostile.position, origin):
                    continue
                if within_reach(self._geometry, hostile.position, destination):
                    continue
                if self.effective_stats(encounter, hostile).incapacitated:
                    continue
                reaction = self._trackers.peek(encounter.id, hostile.id)
                if reaction is not None and reaction.reaction_used:
                    continue
                self._trackers.get_or_create(encounter.id, hostile.id).reaction_used = True
                details, deltas = self._strike(
                    encounter,
                    attacker=hostile,
                    target=mover,
                    attack_bonus=0,
                    damage=turn.request.opportunity_damage,
                )
                outcome.opportunity_attacks.append(details)
                outcome.deltas.extend(deltas)
                if mover.hp <= 0:
                    break

        turn.tracker.movement_used += cost
        if mover.hp <= 0:
            outcome.message = f"{mover.name} was dropped before completing the move"
            return
        mover.position = destination
        outcome.deltas.append(EntityMoved(entity_id=mover.id, from_=GridPoint.of(origin), to=GridPoint.of(destination)))

    def _move(self, turn: _Turn) -> ActionOutcome:
        destination = turn.request.target_position
        if destination is None:
            raise ValidationError("move requires a target position")
        cost = self._plan_move(turn, destination)
        turn.tracker.spend(turn.cost)
        outcome = self._outcome(turn, f"{turn.actor.name} moves {cost} ft")
        outcome.details["movementCost"] = cost
        self._perform_move(turn, destination, cost, outcome)
        outcome.details["movementUsed"] = turn.tracker.movement_used
        return outcome

    # handlers

    def _outcome(self, turn: _Turn, message: str) -> ActionOutcome:
        return ActionOutcome(
            action_type=turn.request.action_type, actor_id=turn.actor.id, success=True, message=message
        )

    def _attack(self, turn: _Turn) -> ActionOutcome:
        request = turn.request
        target = self._target(turn)
        if not request.ranged:
            self._require_reach(turn, target)
        turn.tracker.spend(turn.cost)
        details, deltas = self._strike(
            turn.encounter,
            attacker=turn.actor,
            target=target,
            attack_bonus=request.attack_bonus,
            damage=request.damage,
            damage_type=request.damage_type,
            advantage=request.advantage,
            disadvantage=request.disadvantage,
            manual_roll=request.manual_roll,
            manual_damage=request.manual_damage,
        )
        verdict = "hits" if details["hit"] else "misses"
        outcome = self._outcome(turn, f"{turn.actor.name} {verdict} {target.name}")
        outcome.details = details
        outcome.deltas.extend(deltas)
        return outcome

    def _dash(self, turn: _Turn) -> ActionOutcome:
        destination = turn.request.target_position
        cost = self._plan_move(turn, destination, dashing=True) if destination is not None else None
        turn.tracker.spend(turn.cost)
        turn.tracker.has_dashed = True
        outcome = self._outcome(turn, f"{turn.actor.name} dashes")
        if destination is not None and cost is not None:
            self._perform_move(turn, destination, cost, outcome)
        outcome.details["movementRemaining"] = turn.tracker.movement_budget(turn.stats.speed)
        return outcome

    def _disengage(self, turn: _Turn) -> ActionOutcome:
        destination = turn.request.target_position
        cost = self._plan_move(turn, destination) if destination is not None else None
        turn.tracker.spend(turn.cost)
        turn.tracker.disengaged_this_turn = True
        outcome = self._outcome(turn, f"{turn.actor.name} disengages")
        if destination is not None and cost is not None:
            self._perform_move(turn, destination, cost, outcome)
        return outcome

    def _dodge(self, turn: _Turn) -> ActionOutcome:
        turn.tracker.spend(turn.cost)
        turn.tracker.is_dodging = True
        return self._outcome(turn, f"{turn.actor.name} takes the dodge action")

    def _contest(self, turn: _Turn) -> tuple[bool, dict[str, Any]]:
        request = turn.request
        attacker_roll = request.manual_roll if request.manual_roll is not None else self._dice.d20()
        defender_roll = (
            request.manual_defender_roll if request.manual_defender_roll is not None else self._dice.d20()
        )
        attacker_total = attacker_roll + request.attack_bonus
        defender_total = defender_roll + request.defender_bonus
        won = attacker_total > defender_total
        return won, {"attackerTotal": attacker_total, "defenderTotal": defender_total, "won": won}

    def _grapple(self, turn: _Turn) -> ActionOutcome:
        target = self._target(turn)
        self._require_reach(turn, target)
        turn.tracker.spend(turn.cost)
        won, details = self._contest(turn)
        outcome = self._outcome(turn, f"{turn.actor.name} fails to grapple {target.name}")
        outcome.details = details
        if won:
            outcome.deltas.extend(self.add_condition(turn.encounter, target, "grappled", source=turn.actor))
            outcome.message = f"{turn.actor.name} grapples {target.name}"
        return outcome

    def _shove(self, turn: _Turn) -> ActionOutcome:
        request = turn.request
        if request.shove_mode not in ("prone", "push"):
            raise ValidationError(f"Unknown shove mode: {request.shove_mode}")
        target = self._target(turn)
        self._require_reach(turn, target)
        turn.tracker.spend(turn.cost)
        won, details = self._contest(turn)
        outcome = self._outcome(turn, f"{turn.actor.name} fails to shove {target.name}")
        outcome.details = details
        if not won:
            return outcome

        if request.shove_mode == "prone":
            outcome.deltas.extend(
                self.add_condition(turn.encounter, target, "prone", effect=KNOCKED_PRONE, source=turn.actor)
            )
            outcome.message = f"{turn.actor.name} knocks {target.name} prone"
            return outcome

        dx = _sign(target.position.x - turn.actor.position.x)
        dy = _sign(target.position.y - turn.actor.position.y)
        origin = target.position
        destination = Position(x=origin.x + dx, y=origin.y + dy, z=origin.z)
        terrain = turn.encounter.terrain
        blocked = (
            not terrain.in_bounds(destination)
            or terrain.is_obstacle(destination)
            or turn.encounter.occupant_at(destination, exclude=target.id) is not None
        )
        details["pushed"] = not blocked
        if blocked:
            outcome.message = f"{target.name} cannot be pushed there"
            return outcome
        target.position = destination
        outcome.deltas.append(
            EntityMoved(entity_id=target.id, from_=GridPoint.of(origin), to=GridPoint.of(destination))
        )
        outcome.message = f"{turn.actor.name} pushes {target.name}"
        return outcome

    def _spell_slot(self, turn: _Turn) -> str | None:
        request = turn.request
        if request.use_pact_slot:
            slot = PACT_SLOT
        elif request.spell_level == 0:
            return None
        else:
            slot = str(request.spell_level)
            if slot not in SPELL_SLOT_LEVELS:
                raise ValidationError(f"Spell level must be between 0 and 9, got {request.spell_level}")
        pool = turn.actor.resource_slots.get(slot)
        if pool is None or pool.current <= 0:
            raise StateConflictError(f"No {slot} slot available", details={"slot": slot})
        return slot

    def _spell_targets(self, turn: _Turn) -> list[Participant]:
        request = turn.request
        if request.radius is None:
            return [self._target(turn)]
        if request.radius < 0:
            raise ValidationError("radius must not be negative")
        if request.target_position is not None:
            center = request.target_position
        elif request.target_id:
            center = self._target(turn).position
        else:
            raise ValidationError("An area spell needs a target position or target")
        return [
            participant
            for participant in turn.encounter.participants
            if self._geometry.distance_between(center, participant.position) <= request.radius
        ]

    def _saves(self, turn: _Turn, target: Participant) -> bool:
        request = turn.request
        ability = (request.save_ability or "")[:3].lower()
        if ability and ability in self.effective_stats(turn.encounter, target).auto_fail_saves:
            return False
        return self._dice.d20() + request.save_modifier >= int(request.save_dc or 0)

    def _cast_spell(self, turn: _Turn) -> ActionOutcome:
        request = turn.request
        slot = self._spell_slot(turn)
        targets = self._spell_targets(turn)
        amount = request.manual_damage if request.manual_damage is not None else self._dice.roll(request.damage).total
        turn.tracker.spend(turn.cost)
        if slot is not None:
            turn.actor.resource_slots[slot].current -= 1

        outcome = self._outcome(turn, f"{turn.actor.name} casts a spell")
        outcome.details = {"slot": slot, "targets": []}
        for target in targets:
            entry: dict[str, Any] = {"targetId": target.id}
            if request.healing:
                outcome.deltas.extend(self.apply_healing(turn.encounter, target, amount, source=turn.actor))
                entry["healing"] = amount
                outcome.details["targets"].append(entry)
                continue

            saved = request.save_dc is not None and self._saves(turn, target)
            raw = amount // 2 if saved else amount
            applied = self.adjust_damage(target, raw, request.damage_type)
            entry.update({"saved": saved, "damage": applied})
            outcome.deltas.extend(self.apply_damage(turn.encounter, target, applied, source=turn.actor))
            if request.condition and not saved and target.hp > 0:
                outcome.deltas.extend(
                    self.add_condition(
                        turn.encounter,
                        target,
                        request.condition.strip().lower(),
                        duration=request.condition_duration,
                        source=turn.actor,
                    )
                )
            outcome.details["targets"].append(entry)
        return outcome


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def _validate_request(request: ActionRequest) -> None:
    """Reject malformed inputs before any budget, slot or counter changes."""
    for value in (request.manual_roll, request.manual_defender_roll):
        if value is not None and not 1 <= value <= 20:
            raise ValidationError(f"A d20 roll must be between 1 and 20, got {value}")
    if request.manual_damage is not None and request.manual_damage < 0:
        raise ValidationError("manual damage must not be negative")
    if request.action_type in DAMAGE_ACTIONS and request.manual_damage is None:
        validate_expression(request.damage)
    if request.action_type in MOVING_ACTIONS:
        validate_expression(request.opportunity_damage)
