"""Grid geometry collaborator: reach checks and movement cost."""

from __future__ import annotations

from typing import Protocol

from .models import Position, Terrain

FEET_PER_SQUARE = 5
MELEE_REACH = 1


class Geometry(Protocol):
    def distance_between(self, a: Position, b: Position) -> int:
        """Distance in squares."""

    def path_cost(self, a: Position, b: Position, terrain: Terrain) -> int | None:
        """Movement cost in feet, or None when the destination cannot be reached."""


class GridGeometry:
    """Chebyshev grid where a diagonal step costs the same as a straight one."""

    def distance_between(self, a: Position, b: Position) -> int:
        return max(abs(a.x - b.x), abs(a.y - b.y))

    def path_cost(self, a: Position, b: Position, terrain: Terrain) -> int | None:
        if not terrain.in_bounds(b) or terrain.is_obstacle(b):
            return None
        cost = self.distance_between(a, b) * FEET_PER_SQUARE
        if terrain.is_difficult(b):
            cost *= 2
        return cost


def within_reach(geometry: Geometry, a: Position, b: Position, reach: int = MELEE_REACH) -> bool:
    return geometry.distance_between(a, b) <= reach
