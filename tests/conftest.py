"""
Shared test fixtures for support spot generation tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest
from shapely.geometry import Point, Polygon, box
from shapely.geometry.polygon import orient

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from extrusion_geometry import ExtrusionPath, ExtrusionRole, Layer, LayerRegion
from support_params import SupportSpotsParams

FLOW_WIDTH = 0.45
LAYER_HEIGHT = 0.2


def perimeter_loops(polygon: Polygon, count: int = 2, flow_width: float = FLOW_WIDTH):
    """Closed CCW perimeter loops inset into polygon, outermost first."""
    loops = []
    for i in range(count):
        inset = polygon.buffer(-(i + 0.5) * flow_width)
        if inset.is_empty or inset.geom_type != "Polygon":
            break
        loops.append(np.asarray(orient(inset, 1.0).exterior.coords, dtype=float))
    return loops


def make_layer(
    polygons,
    index: int,
    layer_height: float = LAYER_HEIGHT,
    perimeters: int = 2,
    fills=(),
) -> Layer:
    """A layer whose regions carry perimeter loops for each slice polygon.

    fills are extra (points, role) paths added to the region.
    """
    region = LayerRegion()
    path_id = 0
    for polygon in polygons:
        for loop_idx, loop in enumerate(perimeter_loops(polygon, perimeters)):
            role = ExtrusionRole.EXTERNAL_PERIMETER if loop_idx == 0 else ExtrusionRole.PERIMETER
            region.perimeters.append(ExtrusionPath(loop, role, path_id))
            path_id += 1
    for points, role in fills:
        region.fills.append(ExtrusionPath(points, role, path_id))
        path_id += 1
    print_z = (index + 1) * layer_height
    return Layer(
        slice_z=print_z - layer_height / 2.0,
        print_z=print_z,
        height=layer_height,
        regions=[region],
        slices=list(polygons),
    )


def make_layers(polygons_per_layer, **kwargs):
    return [make_layer(polygons, i, **kwargs) for i, polygons in enumerate(polygons_per_layer)]


@pytest.fixture
def params():
    """Default PLA params."""
    return SupportSpotsParams()


@pytest.fixture
def square_tower():
    """10 layers of a 20x20mm square."""
    return make_layers([[box(0, 0, 20, 20)]] * 10)


@pytest.fixture
def cylinder_pair():
    """Two stacked layers of a 5mm radius circle centred at (10, 10)."""
    circle = Point(10, 10).buffer(5)
    return make_layers([[circle], [circle]])


@pytest.fixture
def overhang_stack():
    """5 layers of a 10x10mm square topped by a 40x10mm slab sticking out in +X."""
    base = [[box(0, 0, 10, 10)]] * 5
    return make_layers(base + [[box(0, 0, 40, 10)]])
