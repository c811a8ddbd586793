import pytest

from encountersync.backend.dice import DiceRoll


class ScriptedDice:
    """Dice that replay queued values, then fall back to fixed defaults."""

    def __init__(self, default_d20: int = 10, default_total: int = 4) -> None:
        self.d20s: list[int] = []
        self.totals: list[int] = []
        self.default_d20 = default_d20
        self.default_total = default_total
        self.expressions: list[tuple[str, bool]] = []

    def d20(self) -> int:
        return self.d20s.pop(0) if self.d20s else self.default_d20

    def roll(self, expression: str, double_dice: bool = False) -> DiceRoll:
        self.expressions.append((expression, double_dice))
        total = self.totals.pop(0) if self.totals else self.default_total
        return DiceRoll(total=total, rolls=[total])


@pytest.fixture
def dice() -> ScriptedDice:
    return ScriptedDice()
