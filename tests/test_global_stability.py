"""Tests for global_stability module."""
import numpy as np
import pytest

from extrusion_geometry import ExtrusionLine, ExtrusionRole
from global_stability import GlobalStabilityAnalyzer, check_global_stability
from island_graph import Island, IslandConnection, LayerIslands
from raster_grids import SupportGridFilter


def _island(volume, z, connected=None, lines=()):
    return Island(
        connected_islands=dict(connected or {}),
        volume=volume,
        volume_centroid_accumulator=volume * np.array([0.0, 0.0, z]),
        external_lines=list(lines),
    )


def _weak_connection(z):
    return IslandConnection(
        area=1.0,
        centroid_accumulator=np.array([0.0, 0.0, z]),
        second_moment_of_area_accumulator=np.array([0.01, 0.01]),
    )


@pytest.fixture
def presence_grid(params):
    return SupportGridFilter((-5.0, -5.0, 5.0, 5.0), 25.0, params.min_distance_between_support_points)


@pytest.fixture
def wobbly_graph():
    """A heavy island on a thin neck high above a small floating base."""
    line = ExtrusionLine((0.0, 0.0), (1.0, 0.0), role=ExtrusionRole.EXTERNAL_PERIMETER)
    base = LayerIslands([_island(1.0, 0.1)], layer_z=0.1)
    top = LayerIslands(
        [_island(1000.0, 10.0, {0: _weak_connection(10.0)}, [line])],
        layer_z=20.0,
    )
    return [base, top]


class TestPartTracking:

    def test_new_island_starts_part_with_unbreakable_connection(self, presence_grid, params):
        analyzer = GlobalStabilityAnalyzer(presence_grid, params)
        analyzer.process_layer(LayerIslands([_island(2.0, 0.1)], layer_z=0.1))
        assert analyzer.active_object_parts.part_count == 1
        assert analyzer.island_weakest_connection[0].is_infinitely_strong()

    def test_stacked_islands_extend_one_part(self, presence_grid, params):
        analyzer = GlobalStabilityAnalyzer(presence_grid, params)
        analyzer.process_layer(LayerIslands([_island(2.0, 0.1)], layer_z=0.1))
        analyzer.process_layer(LayerIslands([_island(3.0, 0.3, {0: _weak_connection(0.3)})], layer_z=0.3))
        assert analyzer.active_object_parts.part_count == 1
        assert analyzer.active_object_parts.total_volume() == pytest.approx(5.0)
        weakest = analyzer.island_weakest_connection[0]
        assert not weakest.is_infinitely_strong()
        assert weakest.area == pytest.approx(1.0)

    def test_islands_joining_merge_parts(self, presence_grid, params):
        analyzer = GlobalStabilityAnalyzer(presence_grid, params)
        analyzer.process_layer(LayerIslands([_island(2.0, 0.1), _island(4.0, 0.1)], layer_z=0.1))
        assert analyzer.active_object_parts.part_count == 2
        joined = _island(1.0, 0.3, {0: _weak_connection(0.3), 1: _weak_connection(0.3)})
        analyzer.process_layer(LayerIslands([joined], layer_z=0.3))
        assert analyzer.active_object_parts.part_count == 1
        assert analyzer.active_object_parts.total_volume() == pytest.approx(7.0)


class TestSupportPlacement:

    def test_weak_neck_gets_support(self, presence_grid, params, wobbly_graph):
        points = check_global_stability(presence_grid, wobbly_graph, params)
        assert len(points) == 1
        point = points[0]
        np.testing.assert_allclose(point.position, [1.0, 0.0, 20.0])
        assert point.force > 0
        assert point.spot_radius == pytest.approx(params.support_points_interface_radius)
        np.testing.assert_allclose(point.direction, [1.0, 0.0, 0.0])
        assert presence_grid.position_taken(point.position)

    def test_support_strengthens_part(self, presence_grid, params, wobbly_graph):
        analyzer = GlobalStabilityAnalyzer(presence_grid, params)
        analyzer.run(wobbly_graph)
        part = analyzer.active_object_parts.access(analyzer.island_to_object_part[0])
        assert part.sticking_area == pytest.approx(params.support_spot_contact_area())
        assert analyzer.island_weakest_connection[0].area == pytest.approx(
            1.0 + params.support_spot_contact_area()
        )

    def test_taken_voxel_blocks_second_support(self, presence_grid, params, wobbly_graph):
        presence_grid.take_position((1.0, 0.0, 20.0))
        assert check_global_stability(presence_grid, wobbly_graph, params) == []

    def test_small_part_gets_small_spot(self, presence_grid, params):
        line = ExtrusionLine((0.0, 0.0), (1.0, 0.0), role=ExtrusionRole.EXTERNAL_PERIMETER)
        graph = [
            LayerIslands([_island(0.5, 0.1)], layer_z=0.1),
            LayerIslands([_island(2.0, 10.0, {0: _weak_connection(10.0)}, [line])], layer_z=20.0),
        ]
        points = check_global_stability(presence_grid, graph, params)
        assert len(points) == 1
        assert points[0].spot_radius == pytest.approx(params.small_parts_support_points_interface_radius)

    def test_zero_length_lines_never_checked(self, presence_grid, params):
        line = ExtrusionLine((0.0, 0.0), (0.0, 0.0), role=ExtrusionRole.EXTERNAL_PERIMETER)
        graph = [
            LayerIslands([_island(1.0, 0.1)], layer_z=0.1),
            LayerIslands([_island(1000.0, 10.0, {0: _weak_connection(10.0)}, [line])], layer_z=20.0),
        ]
        assert check_global_stability(presence_grid, graph, params) == []
