from encountersync.backend.geometry import GridGeometry, within_reach
from encountersync.backend.models import Position, Terrain


def test_distance_is_chebyshev() -> None:
    geometry = GridGeometry()

    assert geometry.distance_between(Position(0, 0), Position(3, 1)) == 3
    assert geometry.distance_between(Position(2, 2), Position(3, 3)) == 1
    assert geometry.distance_between(Position(4, 4), Position(4, 4)) == 0


def test_path_cost_is_five_feet_per_square() -> None:
    cost = GridGeometry().path_cost(Position(0, 0), Position(2, 1), Terrain())

    assert cost == 10


def test_path_cost_doubles_on_difficult_terrain() -> None:
    terrain = Terrain(difficult_terrain=[Position(2, 0)])

    assert GridGeometry().path_cost(Position(0, 0), Position(2, 0), terrain) == 20


def test_path_cost_is_none_for_obstacles_and_out_of_bounds() -> None:
    terrain = Terrain(width=5, height=5, obstacles=[Position(1, 1)])
    geometry = GridGeometry()

    assert geometry.path_cost(Position(0, 0), Position(1, 1), terrain) is None
    assert geometry.path_cost(Position(0, 0), Position(5, 0), terrain) is None


def test_within_reach_uses_one_square_by_default() -> None:
    geometry = GridGeometry()

    assert within_reach(geometry, Position(0, 0), Position(1, 1)) is True
    assert within_reach(geometry, Position(0, 0), Position(2, 0)) is False
    assert within_reach(geometry, Position(0, 0), Position(2, 0), reach=2) is True
