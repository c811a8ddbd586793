"""Condition catalog, per-target condition store and effective-stat folding."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .errors import StateConflictError, ValidationError
from .models import Encounter, Participant


class Condition(str, Enum):
    BLINDED = "blinded"
    CHARMED = "charmed"
    DEAFENED = "deafened"
    EXHAUSTION = "exhaustion"
    FRIGHTENED = "frightened"
    GRAPPLED = "grappled"
    INCAPACITATED = "incapacitated"
    INVISIBLE = "invisible"
    PARALYZED = "paralyzed"
    PETRIFIED = "petrified"
    POISONED = "poisoned"
    PRONE = "prone"
    RESTRAINED = "restrained"
    STUNNED = "stunned"
    UNCONSCIOUS = "unconscious"


CONDITION_DESCRIPTIONS: dict[str, str] = {
    "blinded": "Can't see, auto-fails sight checks. Attacks have disadvantage, attacks against have advantage.",
    "charmed": "Can't attack the charmer or target it with harmful effects. Charmer has advantage on social checks.",
    "deafened": "Can't hear, auto-fails hearing checks.",
    "exhaustion": "Stacking penalty with 6 levels.",
    "frightened": "Disadvantage on ability checks and attacks while the source is visible. Can't move closer to it.",
    "grappled": "Speed becomes 0. Ends if the grappler is incapacitated or moved away.",
    "incapacitated": "Can't take actions or reactions.",
    "invisible": "Impossible to see without special sense. Attacks have advantage, attacks against have disadvantage.",
    "paralyzed": "Incapacitated, can't move or speak. Auto-fails STR and DEX saves. Melee hits within 5ft are crits.",
    "petrified": "Transformed to stone, incapacitated, can't move or speak. Auto-fails STR and DEX saves.",
    "poisoned": "Disadvantage on attack rolls and ability checks.",
    "prone": "Only movement is crawling. Attacks have disadvantage. Melee attacks against have advantage.",
    "restrained": (
        "Speed becomes 0. Attacks have disadvantage, attacks against have advantage. Disadvantage on DEX saves."
    ),
    "stunned": "Incapacitated, can't move, speaks falteringly. Auto-fails STR and DEX saves.",
    "unconscious": (
        "Incapacitated, unaware, falls prone. Auto-fails STR and DEX saves. Melee hits within 5ft are crits."
    ),
}

EXHAUSTION_DESCRIPTIONS: dict[int, str] = {
    1: "Disadvantage on ability checks",
    2: "Speed halved",
    3: "Disadvantage on attack rolls and saving throws",
    4: "Hit point maximum halved",
    5: "Speed reduced to 0",
    6: "Death",
}

DURATION_SENTINELS = frozenset({"concentration", "until_dispelled", "until_rest", "save_ends"})
MAX_EXHAUSTION = 6
MAX_BATCH_SIZE = 20

Duration = Union[int, str, None]
RoundMarker = tuple[str, int]


@dataclass
class ConditionEffect:
    max_hp_multiplier: float | None = None
    max_hp_modifier: int | None = None
    speed_multiplier: float | None = None
    speed_modifier: int | None = None
    ac_modifier: int | None = None
    advantage_on: list[str] = field(default_factory=list)
    disadvantage_on: list[str] = field(default_factory=list)
    auto_fail_saves: list[str] = field(default_factory=list)
    cannot_move: bool = False
    can_only_crawl: bool = False
    incapacitated: bool = False
    custom_effects: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for key, value in (
            ("maxHpMultiplier", self.max_hp_multiplier),
            ("maxHpModifier", self.max_hp_modifier),
            ("speedMultiplier", self.speed_multiplier),
            ("speedModifier", self.speed_modifier),
            ("acModifier", self.ac_modifier),
        ):
            if value is not None:
                data[key] = value
        if self.advantage_on:
            data["advantageOn"] = list(self.advantage_on)
        if self.disadvantage_on:
            data["disadvantageOn"] = list(self.disadvantage_on)
        if self.auto_fail_saves:
            data["autoFailSaves"] = list(self.auto_fail_saves)
        if self.cannot_move:
            data["cannotMove"] = True
        if self.can_only_crawl:
            data["canOnlyCrawl"] = True
        if self.incapacitated:
            data["incapacitated"] = True
        if self.custom_effects:
            data["customEffects"] = dict(self.custom_effects)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConditionEffect":
        return cls(
            max_hp_multiplier=data.get("maxHpMultiplier"),
            max_hp_modifier=data.get("maxHpModifier"),
            speed_multiplier=data.get("speedMultiplier"),
            speed_modifier=data.get("speedModifier"),
            ac_modifier=data.get("acModifier"),
            advantage_on=list(data.get("advantageOn") or []),
            disadvantage_on=list(data.get("disadvantageOn") or []),
            auto_fail_saves=list(data.get("autoFailSaves") or []),
            cannot_move=bool(data.get("cannotMove", False)),
            can_only_crawl=bool(data.get("canOnlyCrawl", False)),
            incapacitated=bool(data.get("incapacitated", False)),
            custom_effects=dict(data.get("customEffects") or {}),
        )


@dataclass
class ActiveCondition:
    condition: str
    description: str = ""
    effect: ConditionEffect | None = None
    source: str | None = None
    duration: Duration = None
    rounds_remaining: int | None = None
    save_dc: int | None = None
    save_ability: str | None = None
    exhaustion_level: int | None = None
    last_tick_marker: RoundMarker | None = None

    @property
    def ticks(self) -> bool:
        return isinstance(self.duration, int) and self.rounds_remaining is not None

    def resolved_effect(self) -> ConditionEffect | None:
        if self.effect is not None:
            return self.effect
        return builtin_effect(self.condition, exhaustion_level=self.exhaustion_level)

    def label(self) -> str:
        if self.condition == Condition.EXHAUSTION.value:
            return f"Exhaustion {self.exhaustion_level}"
        return self.condition[:1].upper() + self.condition[1:]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"condition": self.condition, "description": self.description}
        effect = self.resolved_effect()
        if effect is not None:
            data["mechanicalEffects"] = effect.to_dict()
        if self.source is not None:
            data["source"] = self.source
        if self.duration is not None:
            data["duration"] = self.duration
        if self.rounds_remaining is not None:
            data["roundsRemaining"] = self.rounds_remaining
        if self.save_dc is not None:
            data["saveDC"] = self.save_dc
        if self.save_ability is not None:
            data["saveAbility"] = self.save_ability
        if self.exhaustion_level is not None:
            data["exhaustionLevel"] = self.exhaustion_level
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActiveCondition":
        effect_data = data.get("mechanicalEffects")
        name = str(data["condition"])
        return cls(
            condition=name,
            description=str(data.get("description") or CONDITION_DESCRIPTIONS.get(name, "")),
            effect=ConditionEffect.from_dict(effect_data) if effect_data else None,
            source=data.get("source"),
            duration=data.get("duration"),
            rounds_remaining=data.get("roundsRemaining"),
            save_dc=data.get("saveDC"),
            save_ability=data.get("saveAbility"),
            exhaustion_level=data.get("exhaustionLevel"),
        )


def is_builtin(name: str) -> bool:
    return name in CONDITION_DESCRIPTIONS


def exhaustion_effect(level: int) -> ConditionEffect:
    """Cumulative exhaustion table, levels 1 through 6."""
    effect = ConditionEffect()
    if level >= 1:
        effect.disadvantage_on = ["ability_checks"]
    if level >= 2:
        effect.speed_multiplier = 0.5
    if level >= 3:
        effect.disadvantage_on = [*effect.disadvantage_on, "attack_rolls", "saving_throws"]
    if level >= 4:
        effect.max_hp_multiplier = 0.5
    if level >= 5:
        effect.speed_multiplier = 0
        effect.cannot_move = True
    if level >= 6:
        effect.custom_effects = {"isDead": True}
    return effect


def builtin_effect(name: str, exhaustion_level: int | None = None) -> ConditionEffect | None:
    if name == Condition.EXHAUSTION.value:
        return exhaustion_effect(exhaustion_level) if exhaustion_level else None
    if name == Condition.POISONED.value:
        return ConditionEffect(disadvantage_on=["attack_rolls", "ability_checks"])
    if name == Condition.GRAPPLED.value:
        return ConditionEffect(speed_modifier=0, cannot_move=True)
    if name == Condition.RESTRAINED.value:
        return ConditionEffect(speed_modifier=0, cannot_move=True, disadvantage_on=["attack_rolls", "dex_saves"])
    if name == Condition.PRONE.value:
        return ConditionEffect(can_only_crawl=True, disadvantage_on=["attack_rolls"])
    if name in (Condition.PARALYZED.value, Condition.STUNNED.value, Condition.UNCONSCIOUS.value):
        return ConditionEffect(incapacitated=True, auto_fail_saves=["str", "dex"], cannot_move=True)
    if name == Condition.INCAPACITATED.value:
        return ConditionEffect(incapacitated=True)
    if name == Condition.PETRIFIED.value:
        return ConditionEffect(incapacitated=True, cannot_move=True, auto_fail_saves=["str", "dex"])
    return None


@dataclass
class EffectiveStats:
    max_hp: int
    speed: int
    ac: int
    cannot_move: bool = False
    can_only_crawl: bool = False
    incapacitated: bool = False
    is_dead: bool = False
    advantage_on: list[str] = field(default_factory=list)
    disadvantage_on: list[str] = field(default_factory=list)
    auto_fail_saves: list[str] = field(default_factory=list)
    effect_log: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxHp": self.max_hp,
            "speed": self.speed,
            "ac": self.ac,
            "cannotMove": self.cannot_move,
            "canOnlyCrawl": self.can_only_crawl,
            "incapacitated": self.incapacitated,
            "isDead": self.is_dead,
            "advantageOn": list(self.advantage_on),
            "disadvantageOn": list(self.disadvantage_on),
            "autoFailSaves": list(self.auto_fail_saves),
            "effects": list(self.effect_log),
        }


def _factor(value: float) -> str:
    return f"{value:g}"


def _signed(value: int) -> str:
    return f"+{value}" if value > 0 else str(value)


def compute_effective_stats(max_hp: int, speed: int, ac: int, conditions: list[ActiveCondition]) -> EffectiveStats:
    """Fold condition bundles in insertion order onto the base stats."""
    stats = EffectiveStats(max_hp=max_hp, speed=speed, ac=ac)
    for active in conditions:
        effect = active.resolved_effect()
        if effect is None:
            continue
        label = active.label()

        if effect.max_hp_multiplier is not None:
            stats.max_hp = int(stats.max_hp * effect.max_hp_multiplier)
            stats.effect_log.append(f"{label}: HP max ×{_factor(effect.max_hp_multiplier)}")
        if effect.max_hp_modifier:
            stats.max_hp += effect.max_hp_modifier
            stats.effect_log.append(f"HP max {_signed(effect.max_hp_modifier)}")

        if effect.speed_multiplier is not None:
            stats.speed = int(stats.speed * effect.speed_multiplier)
            stats.effect_log.append(f"{label}: Speed ×{_factor(effect.speed_multiplier)}")
        if effect.speed_modifier:
            stats.speed += effect.speed_modifier
            stats.effect_log.append(f"Speed {_signed(effect.speed_modifier)}")
        if effect.cannot_move:
            stats.speed = 0
            stats.cannot_move = True
        if effect.can_only_crawl:
            stats.can_only_crawl = True

        if effect.ac_modifier:
            stats.ac += effect.ac_modifier
            stats.effect_log.append(f"AC {_signed(effect.ac_modifier)}")

        for tag in effect.advantage_on:
            if tag not in stats.advantage_on:
                stats.advantage_on.append(tag)
        if effect.disadvantage_on:
            for tag in effect.disadvantage_on:
                if tag not in stats.disadvantage_on:
                    stats.disadvantage_on.append(tag)
            stats.effect_log.append(f"{label}: Disadv. on {', '.join(effect.disadvantage_on)}")
        if effect.auto_fail_saves:
            for tag in effect.auto_fail_saves:
                if tag not in stats.auto_fail_saves:
                    stats.auto_fail_saves.append(tag)
            stats.effect_log.append(f"Auto-fail {', '.join(effect.auto_fail_saves).upper()} saves")
        if effect.incapacitated:
            stats.incapacitated = True
            stats.effect_log.append("Incapacitated")
        if effect.custom_effects.get("isDead"):
            stats.is_dead = True
            stats.effect_log.append(f"{label}: Dead")

    stats.max_hp = max(0, stats.max_hp)
    stats.speed = max(0, stats.speed)
    return stats


def resolve_condition_target(target_id: str, encounter: Encounter | None) -> str:
    """Map a participant or character id to the key its conditions are stored under."""
    if encounter is None:
        return target_id
    participant = encounter.find_participant(target_id)
    if participant is not None and participant.character_id:
        return participant.character_id
    return target_id


@dataclass
class ConditionStore:
    def __post_init__(self) -> None:
        self._by_target: dict[str, list[ActiveCondition]] = {}

    def get(self, key: str) -> list[ActiveCondition]:
        return list(self._by_target.get(key, []))

    def find(self, key: str, name: str) -> ActiveCondition | None:
        for active in self._by_target.get(key, []):
            if active.condition == name:
                return active
        return None

    def has(self, key: str, name: str) -> bool:
        return self.find(key, name) is not None

    def has_entries(self, key: str) -> bool:
        return bool(self._by_target.get(key))

    def add(self, key: str, condition: ActiveCondition) -> bool:
        """Append a condition; returns False when one of the same name is already active."""
        if self.has(key, condition.condition):
            return False
        self._by_target.setdefault(key, []).append(condition)
        return True

    def remove(self, key: str, name: str) -> ActiveCondition | None:
        conditions = self._by_target.get(key)
        if not conditions:
            return None
        for index, active in enumerate(conditions):
            if active.condition == name:
                removed = conditions.pop(index)
                if not conditions:
                    self._by_target.pop(key, None)
                return removed
        return None

    def replace(self, key: str, conditions: list[ActiveCondition]) -> None:
        if conditions:
            self._by_target[key] = list(conditions)
        else:
            self._by_target.pop(key, None)

    def clear_target(self, key: str) -> list[ActiveCondition]:
        return self._by_target.pop(key, [])

    def tick(self, key: str, marker: RoundMarker | None = None) -> list[ActiveCondition]:
        """Decrement numeric durations once per marker and return the expired conditions."""
        conditions = self._by_target.get(key)
        if not conditions:
            return []
        expired: list[ActiveCondition] = []
        for active in list(conditions):
            if not active.ticks:
                continue
            if marker is not None and active.last_tick_marker == marker:
                continue
            active.rounds_remaining = int(active.rounds_remaining or 0) - 1
            if marker is not None:
                active.last_tick_marker = marker
            if active.rounds_remaining <= 0:
                conditions.remove(active)
                expired.append(active)
        if not conditions:
            self._by_target.pop(key, None)
        return expired

    def clear(self) -> None:
        self._by_target.clear()


@dataclass
class ConditionOperation:
    operation: str
    target_id: str
    condition: str | None = None
    encounter_id: str | None = None
    duration: Duration = None
    source: str | None = None
    description: str | None = None
    effect: ConditionEffect | None = None
    save_dc: int | None = None
    save_ability: str | None = None
    exhaustion_levels: int = 1


@dataclass
class ConditionOperationResult:
    operation: str
    target_id: str
    success: bool
    message: str
    condition: str | None = None
    conditions: list[ActiveCondition] = field(default_factory=list)
    effective_stats: EffectiveStats | None = None
    added: list[ActiveCondition] = field(default_factory=list)
    removed: list[ActiveCondition] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "operation": self.operation,
            "targetId": self.target_id,
            "success": self.success,
            "message": self.message,
            "conditions": [c.to_dict() for c in self.conditions],
        }
        if self.condition is not None:
            data["condition"] = self.condition
        if self.effective_stats is not None:
            data["effectiveStats"] = self.effective_stats.to_dict()
        return data


def _validate_duration(duration: Duration) -> None:
    if duration is None:
        return
    if isinstance(duration, bool):
        raise ValidationError("duration must be a round count or a duration keyword")
    if isinstance(duration, int):
        if duration < 1:
            raise ValidationError("duration must be at least 1 round")
        return
    if duration not in DURATION_SENTINELS:
        raise ValidationError(f"Unknown duration: {duration}")


def apply_condition_operation(
    store: ConditionStore,
    key: str,
    operation: ConditionOperation,
    participant: Participant | None = None,
    marker: RoundMarker | None = None,
) -> ConditionOperationResult:
    """Run one add/remove/query/tick against a resolved store key.

    Raises ValidationError or StateConflictError before touching the store.
    """
    op = operation.operation
    if op == "add":
        return _add(store, key, operation, participant)
    if op == "remove":
        return _remove(store, key, operation)
    if op == "query":
        return ConditionOperationResult(
            operation=op,
            target_id=operation.target_id,
            success=True,
            message=f"{len(store.get(key))} active condition(s)",
            conditions=store.get(key),
            effective_stats=effective_stats_for(store, key, participant),
        )
    if op == "tick":
        expired = store.tick(key, marker=marker)
        return ConditionOperationResult(
            operation=op,
            target_id=operation.target_id,
            success=True,
            message=f"{len(expired)} condition(s) expired",
            conditions=store.get(key),
            removed=expired,
        )
    raise ValidationError(f"Unknown condition operation: {op}")


def effective_stats_for(store: ConditionStore, key: str, participant: Participant | None) -> EffectiveStats | None:
    if participant is None:
        return None
    return compute_effective_stats(
        max_hp=participant.max_hp,
        speed=participant.speed,
        ac=participant.ac,
        conditions=store.get(key),
    )


def _add(
    store: ConditionStore,
    key: str,
    operation: ConditionOperation,
    participant: Participant | None,
) -> ConditionOperationResult:
    name = (operation.condition or "").strip().lower()
    if not name:
        raise ValidationError("condition is required for add operation")
    _validate_duration(operation.duration)
    if participant is not None and name in participant.condition_immunities:
        raise StateConflictError(
            f"{participant.name} is immune to {name}",
            details={"targetId": operation.target_id, "condition": name},
        )

    if name == Condition.EXHAUSTION.value:
        return _add_exhaustion(store, key, operation)

    existing = store.find(key, name)
    if existing is not None:
        return ConditionOperationResult(
            operation="add",
            target_id=operation.target_id,
            success=True,
            message=f"Already has {name}",
            condition=name,
            conditions=store.get(key),
        )

    active = ActiveCondition(
        condition=name,
        description=operation.description or CONDITION_DESCRIPTIONS.get(name, ""),
        effect=operation.effect,
        source=operation.source,
        duration=operation.duration,
        rounds_remaining=operation.duration if isinstance(operation.duration, int) else None,
        save_dc=operation.save_dc,
        save_ability=operation.save_ability,
    )
    store.add(key, active)
    return ConditionOperationResult(
        operation="add",
        target_id=operation.target_id,
        success=True,
        message=f"Added {name}",
        condition=name,
        conditions=store.get(key),
        added=[active],
    )


def _add_exhaustion(store: ConditionStore, key: str, operation: ConditionOperation) -> ConditionOperationResult:
    levels = max(1, operation.exhaustion_levels)
    existing = store.find(key, Condition.EXHAUSTION.value)
    if existing is not None:
        existing.exhaustion_level = min(MAX_EXHAUSTION, (existing.exhaustion_level or 1) + levels)
        return ConditionOperationResult(
            operation="add",
            target_id=operation.target_id,
            success=True,
            message=f"Exhaustion increased to {existing.exhaustion_level}",
            condition=Condition.EXHAUSTION.value,
            conditions=store.get(key),
        )

    active = ActiveCondition(
        condition=Condition.EXHAUSTION.value,
        description=CONDITION_DESCRIPTIONS["exhaustion"],
        effect=operation.effect,
        source=operation.source,
        duration=operation.duration,
        rounds_remaining=operation.duration if isinstance(operation.duration, int) else None,
        exhaustion_level=min(MAX_EXHAUSTION, levels),
    )
    store.add(key, active)
    return ConditionOperationResult(
        operation="add",
        target_id=operation.target_id,
        success=True,
        message=f"Exhaustion added at level {active.exhaustion_level}",
        condition=Condition.EXHAUSTION.value,
        conditions=store.get(key),
        added=[active],
    )


def _remove(store: ConditionStore, key: str, operation: ConditionOperation) -> ConditionOperationResult:
    name = (operation.condition or "").strip().lower()
    if not name:
        raise ValidationError("condition is required for remove operation")

    if name == "all":
        removed = store.clear_target(key)
        return ConditionOperationResult(
            operation="remove",
            target_id=operation.target_id,
            success=True,
            message=f"Removed {len(removed)} condition(s)",
            condition=name,
            removed=removed,
        )

    existing = store.find(key, name)
    if existing is None:
        return ConditionOperationResult(
            operation="remove",
            target_id=operation.target_id,
            success=False,
            message=f"Not affected by {name}",
            condition=name,
            conditions=store.get(key),
        )

    if name == Condition.EXHAUSTION.value:
        remaining = (existing.exhaustion_level or 1) - max(1, operation.exhaustion_levels)
        if remaining > 0:
            existing.exhaustion_level = remaining
            return ConditionOperationResult(
                operation="remove",
                target_id=operation.target_id,
                success=True,
                message=f"Exhaustion reduced to {remaining}",
                condition=name,
                conditions=store.get(key),
            )

    removed = store.remove(key, name)
    return ConditionOperationResult(
        operation="remove",
        target_id=operation.target_id,
        success=True,
        message=f"Removed {name}",
        condition=name,
        conditions=store.get(key),
        removed=[removed] if removed is not None else [],
    )
