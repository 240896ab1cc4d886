"""Support spot search: local pass + island graph, then the global pass."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from extrusion_geometry import (
    CurledLine,
    ExtrusionLine,
    ExtrusionRole,
    Layer,
    SupportPoint,
    push_lines,
)
from global_stability import check_global_stability
from island_graph import LayerIslands, reckon_islands
from lines_distancer import LinesDistancer
from local_stability import (
    check_extrusion_path_stability,
    curled_lines_of,
    malformed_lines_of,
)
from raster_grids import PixelGrid, SupportGridFilter, grid_resolution
from support_params import SupportSpotsParams

logger = logging.getLogger(__name__)

CHECKED_FILL_ROLES = (ExtrusionRole.GAP_FILL, ExtrusionRole.BRIDGE_INFILL)


@dataclass
class SupportSpotsResult:
    support_points: List[SupportPoint] = field(default_factory=list)
    curled_lines: List[List[CurledLine]] = field(default_factory=list)
    malformed_lines: List[List[ExtrusionLine]] = field(default_factory=list)
    canceled: bool = False
    islands_graph: List[LayerIslands] = field(default_factory=list)

    @property
    def curled_line_count(self) -> int:
        return sum(len(layer) for layer in self.curled_lines)

    def to_dict(self) -> dict:
        return {
            "canceled": self.canceled,
            "support_points": [p.to_dict() for p in self.support_points],
            "layers": len(self.islands_graph),
            "islands": [len(layer.islands) for layer in self.islands_graph],
            "curled_lines": [len(layer) for layer in self.curled_lines],
            "malformed_lines": [len(layer) for layer in self.malformed_lines],
        }


def _layer_lines(
    layer: Layer,
    checked: bool,
    prev_layer_lines: LinesDistancer,
    prev_layer_boundary: LinesDistancer,
    params: SupportSpotsParams,
) -> Tuple[List[ExtrusionLine], List[SupportPoint]]:
    """Flatten a layer into lines, checking the paths that can bridge."""
    layer_lines: List[ExtrusionLine] = []
    support_points: List[SupportPoint] = []
    path_idx = 0
    for region in layer.regions:
        paths = [(path, True) for path in region.perimeters]
        paths += [(path, path.role in CHECKED_FILL_ROLES) for path in region.fills]
        for path, checkable in paths:
            start = len(layer_lines)
            if checked and checkable:
                lines, points = check_extrusion_path_stability(
                    path, region, layer, prev_layer_lines, params, prev_layer_boundary
                )
                layer_lines.extend(lines)
                support_points.extend(points)
            else:
                push_lines(path, layer_lines)
            # lines of one path must share an id so they group into one extrusion
            for line in layer_lines[start:]:
                line.origin_path_id = path_idx
            path_idx += 1
    return layer_lines, support_points


def check_extrusions_and_build_graph(
    layers: Sequence[Layer],
    params: SupportSpotsParams,
    is_canceled: Optional[Callable[[], bool]] = None,
    workers: Optional[int] = None,
) -> SupportSpotsResult:
    """First pass over all layers.

    Runs the local analysis on every layer but the first and builds the
    island graph. Returns the local support points, curled and malformed lines
    per layer, and the graph. Stops between layers when is_canceled() is true.
    """
    result = SupportSpotsResult()
    if not layers:
        return result
    if workers is None:
        workers = params.rasterization_workers

    # base layers may come without regions; the grid follows the object's perimeter width
    flow_width = next((layer.flow_width for layer in layers if layer.flow_width > 0), None)
    if flow_width is None:
        logger.warning("No layer has a positive flow width, nothing to analyze")
        return result
    prev_layer_grid = PixelGrid.for_layers(layers, grid_resolution(flow_width))
    prev_layer_lines = LinesDistancer.from_lines([])

    for layer_idx, layer in enumerate(layers):
        if is_canceled is not None and is_canceled():
            logger.info("Support spot search canceled at layer %d of %d", layer_idx, len(layers))
            result.canceled = True
            return result

        first_layer = layer_idx == 0
        prev_layer_boundary = LinesDistancer.from_polygons(layers[layer_idx - 1].slices if layer_idx else [])
        layer_lines, local_points = _layer_lines(
            layer, not first_layer, prev_layer_lines, prev_layer_boundary, params
        )
        result.support_points.extend(local_points)

        layer_islands, layer_grid = reckon_islands(
            layer, first_layer, prev_layer_grid, layer_lines, params, workers=workers
        )
        result.islands_graph.append(layer_islands)

        if first_layer:
            result.curled_lines.append([])
            result.malformed_lines.append([])
        else:
            result.curled_lines.append(curled_lines_of(layer_lines, params))
            result.malformed_lines.append(malformed_lines_of(layer_lines, params))

        logger.debug(
            "Layer %d at z=%.3f: %d lines, %d local support points",
            layer_idx, layer.slice_z, len(layer_lines), len(local_points),
        )
        prev_layer_lines = LinesDistancer.from_lines(layer_lines)
        prev_layer_grid = layer_grid

    return result


def full_search(
    layers: Sequence[Layer],
    params: SupportSpotsParams,
    is_canceled: Optional[Callable[[], bool]] = None,
    workers: Optional[int] = None,
) -> SupportSpotsResult:
    """Find all support points for the sliced object.

    Global points come first, followed by the local ones. A canceled search
    returns the local points found so far without a global pass.
    """
    started = time.perf_counter()
    result = check_extrusions_and_build_graph(layers, params, is_canceled, workers)
    if result.canceled or not result.islands_graph:
        return result

    local_points = result.support_points
    presence_grid = SupportGridFilter.for_layers(layers, params.min_distance_between_support_points)
    global_points = check_global_stability(presence_grid, result.islands_graph, params)
    result.support_points = [*global_points, *local_points]

    logger.info(
        "Support spots: %d local, %d global, %d curled lines over %d layers in %.2fs",
        len(local_points),
        len(global_points),
        result.curled_line_count,
        len(layers),
        time.perf_counter() - started,
    )
    return result
