"""Tests for island_graph module."""
import math

import numpy as np
import pytest
from shapely.geometry import Point

from extrusion_geometry import ExtrusionLine, push_lines
from island_graph import IslandConnection, reckon_islands, split_into_extrusions
from raster_grids import PixelGrid, grid_resolution

from conftest import FLOW_WIDTH, make_layers


def _flatten(layer):
    lines = []
    for region in layer.regions:
        for path in [*region.perimeters, *region.fills]:
            push_lines(path, lines)
    return lines


def _build(layers, params):
    grid = PixelGrid.for_layers(layers, grid_resolution(layers[0].flow_width))
    graph = []
    grids = []
    for idx, layer in enumerate(layers):
        islands, grid = reckon_islands(layer, idx == 0, grid, _flatten(layer), params)
        graph.append(islands)
        grids.append(grid)
    return graph, grids


class TestIslandConnection:

    def test_add_sums_accumulators(self):
        a = IslandConnection()
        a.add_contact(np.array([1.0, 2.0, 3.0]), 2.0)
        b = IslandConnection()
        b.add_contact(np.array([3.0, 2.0, 3.0]), 2.0)
        a.add(b)
        assert a.area == pytest.approx(4.0)
        np.testing.assert_allclose(a.centroid, [2.0, 2.0, 3.0])
        np.testing.assert_allclose(a.xy_variance(), [1.0, 0.0])

    def test_infinitely_strong(self):
        sentinel = IslandConnection.infinitely_strong()
        assert sentinel.is_infinitely_strong()
        assert math.isinf(sentinel.estimate_strength(10.0))
        summed = IslandConnection()
        summed.add(sentinel)
        assert summed.is_infinitely_strong()

    def test_strength_grows_with_area(self):
        small = IslandConnection()
        large = IslandConnection()
        for x in range(3):
            small.add_contact(np.array([x, 0.0, 1.0]), 1.0)
            large.add_contact(np.array([x, 0.0, 1.0]), 5.0)
        assert large.estimate_strength(5.0) > small.estimate_strength(5.0)
        assert IslandConnection().estimate_strength(5.0) == 0.0


class TestReckonIslands:

    def test_first_layer_sticks_to_bed(self, cylinder_pair, params):
        layer = cylinder_pair[0]
        lines = _flatten(layer)
        graph, _ = _build(cylinder_pair[:1], params)
        island = graph[0].islands[0]
        assert len(graph[0].islands) == 1
        assert island.sticking_area == pytest.approx(sum(line.len for line in lines) * FLOW_WIDTH)
        assert island.volume == pytest.approx(
            sum(line.len for line in lines) * layer.height * FLOW_WIDTH * math.pi / 4.0
        )
        assert island.connected_islands == {}
        assert all(line.is_external_perimeter for line in island.external_lines)

    def test_stacked_circles_connect(self, cylinder_pair, params):
        graph, grids = _build(cylinder_pair, params)
        upper = graph[1].islands[0]
        assert list(upper.connected_islands) == [0]
        connection = upper.connected_islands[0]
        assert connection.area == pytest.approx(grids[1].occupied_area())
        np.testing.assert_allclose(connection.centroid[:2], [10.0, 10.0], atol=0.5)
        assert upper.sticking_area == 0.0

    def test_isolated_island_has_no_connections(self, params):
        layers = make_layers([[Point(10, 10).buffer(5)], [Point(40, 10).buffer(5)]])
        graph, _ = _build(layers, params)
        assert graph[1].islands[0].connected_islands == {}

    def test_two_islands_on_one_layer(self, params):
        layers = make_layers([[Point(10, 10).buffer(5), Point(40, 10).buffer(5)]])
        graph, _ = _build(layers, params)
        assert len(graph[0].islands) == 2
        assert graph[0].layer_z == pytest.approx(0.1)

    def test_extrusion_outside_slices_dropped(self, params):
        layers = make_layers([[Point(10, 10).buffer(5)]])
        stray = [ExtrusionLine((40, 40), (45, 40), origin_path_id=99)]
        grid = PixelGrid.for_layers(layers, 0.9)
        islands, _ = reckon_islands(layers[0], True, grid, _flatten(layers[0]) + stray, params)
        assert len(islands.islands) == 1

    def test_split_into_extrusions(self):
        lines = [
            ExtrusionLine((0, 0), (1, 0), origin_path_id=0),
            ExtrusionLine((1, 0), (2, 0), origin_path_id=0),
            ExtrusionLine((2, 0), (3, 0), origin_path_id=1),
        ]
        assert split_into_extrusions(lines) == [(0, 2), (2, 3)]
