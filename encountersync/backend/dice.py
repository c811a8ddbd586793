"""Dice collaborator used by the engine for every random roll."""

from __future__ import annotations

import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .errors import ValidationError

_TERM_PATTERN = re.compile(r"([+-]?)(\d*)d(\d+)|([+-]?)(\d+)")


class RollMode(str, Enum):
    NORMAL = "normal"
    ADVANTAGE = "advantage"
    DISADVANTAGE = "disadvantage"


@dataclass(frozen=True)
class DiceRoll:
    total: int
    rolls: list[int] = field(default_factory=list)
    modifier: int = 0


class Dice(Protocol):
    def d20(self) -> int:
        """Roll a single d20."""

    def roll(self, expression: str, double_dice: bool = False) -> DiceRoll:
        """Roll an `NdM+K` expression; critical hits double the dice, not the modifier."""


class RandomDice:
    def __init__(self, seed: int | None = None) -> None:
        self._random = random.Random(seed)

    def d20(self) -> int:
        return self._random.randint(1, 20)

    def roll(self, expression: str, double_dice: bool = False) -> DiceRoll:
        validate_expression(expression)
        rolls: list[int] = []
        modifier = 0
        for sign, count, sides, flat_sign, flat in _parse_terms(expression):
            if sides:
                multiplier = -1 if sign == "-" else 1
                dice_count = (int(count) if count else 1) * (2 if double_dice else 1)
                for _ in range(dice_count):
                    rolls.append(multiplier * self._random.randint(1, int(sides)))
            else:
                modifier += -int(flat) if flat_sign == "-" else int(flat)
        return DiceRoll(total=max(0, sum(rolls) + modifier), rolls=rolls, modifier=modifier)


def roll_d20_with_mode(dice: Dice, advantage: bool = False, disadvantage: bool = False) -> tuple[int, list[int]]:
    """Return the kept d20 plus every die rolled; advantage and disadvantage cancel."""
    if advantage and disadvantage:
        single = dice.d20()
        return single, [single]
    if advantage or disadvantage:
        first, second = dice.d20(), dice.d20()
        kept = max(first, second) if advantage else min(first, second)
        return kept, [first, second]
    single = dice.d20()
    return single, [single]


def _parse_terms(expression: str) -> list[tuple[str, str, str, str, str]]:
    compact = expression.lower().replace(" ", "")
    if not compact:
        raise ValidationError("Empty dice expression")
    terms = list(_TERM_PATTERN.finditer(compact))
    if "".join(match.group(0) for match in terms) != compact:
        raise ValidationError(f"Unsupported dice expression: {expression}")
    return [match.groups(default="") for match in terms]


def validate_expression(expression: str) -> None:
    """Raise ValidationError for an expression `RandomDice.roll` could not evaluate."""
    for _, _, sides, _, _ in _parse_terms(expression):
        if sides and int(sides) < 1:
            raise ValidationError(f"Dice need at least one side: {expression}")
