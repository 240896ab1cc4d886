"""
Local stability of extrusion paths: bridging, malformation and curling.

Each path of a layer is compared against the lines of the layer below. Long
unsupported stretches (shortened on tight turns) get a support point, and
every line gets a malformation and curl estimate that propagates upwards.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from extrusion_geometry import (
    CurledLine,
    ExtrusionLine,
    ExtrusionPath,
    ExtrusionRole,
    Layer,
    LayerRegion,
    SupportPoint,
    lines_endpoints,
    lines_middles,
    signed_angle,
    to_short_lines,
)
from lines_distancer import LinesDistancer
from support_params import SupportSpotsParams

logger = logging.getLogger(__name__)

SUPPORTED_DISTANCE_PROPAGATION = 0.85  # share of the lower line's deformation carried up
CONCAVE_RESET_ANGLE = math.radians(-20.0)
MIN_CURLING_CURVATURE = 0.01  # 1/mm


@dataclass
class ExtrusionPropertiesAccumulator:
    """Unsupported distance and the sharpest accumulated turn over it."""
    distance: float = 0.0       # accumulated distance
    curvature: float = 0.0      # accumulated signed ccw angles
    max_curvature: float = 0.0  # max absolute accumulated value

    def add_distance(self, dist: float) -> None:
        self.distance += dist

    def add_angle(self, ccw_angle: float) -> None:
        self.curvature += ccw_angle
        self.max_curvature = max(self.max_curvature, abs(self.curvature))

    def reset(self) -> None:
        self.distance = 0.0
        self.curvature = 0.0
        self.max_curvature = 0.0


def bridging_limit(max_curvature: float, params: SupportSpotsParams) -> float:
    """Unsupported length allowed before a support point, shortened by curvature."""
    return params.bridge_distance / (
        1.0 + max_curvature * params.bridge_distance_decrease_by_curvature_factor / math.pi
    )


def estimate_curled_up_height(
    distance: float,
    curvature: float,
    layer_height: float,
    flow_width: float,
    prev_line_curled_height: float,
    params: SupportSpotsParams,
) -> float:
    """Curl height of a line given its signed offset from the layer below.

    Args:
        distance: signed distance from the lower layer, positive outside.
        curvature: ccw curvature of the line (1/mm), positive on convex turns.
        layer_height: height of the current layer.
        flow_width: extrusion width of the line.
        prev_line_curled_height: curl of the nearest line below.
    """
    curled_up_height = 0.0
    if abs(distance) < 3.0 * flow_width:
        curled_up_height = SUPPORTED_DISTANCE_PROPAGATION * prev_line_curled_height

    min_dist = params.min_malformation_distance_factor * flow_width
    max_dist = params.max_malformation_distance_factor * flow_width
    if min_dist < distance < max_dist:
        # The part of the bead resting on the layer below stays anchored; the
        # floating part shrinks back towards the round nozzle profile.
        curling_section = distance
        swelling_radius = (layer_height + curling_section) / 2.0
        curled_up_height += max(0.0, (swelling_radius - layer_height) / 2.0)

        # Convex turns stretch the floating edge, which then bends upwards.
        if curvature > MIN_CURLING_CURVATURE:
            radius = 1.0 / curvature
            curling_t = math.sqrt(radius / 100.0)
            b = curling_t * flow_width
            a = curling_section
            curled_up_height += math.sqrt(max(0.0, a * a - b * b))

    return min(curled_up_height, params.max_curled_height_factor * layer_height)


def _line_curvatures(lines: Sequence[ExtrusionLine]) -> np.ndarray:
    """Mean turning angle per unit length at both ends of each line."""
    n = len(lines)
    vertex = np.zeros(n)
    for i in range(n - 1):
        span = 0.5 * (lines[i].len + lines[i + 1].len)
        if span > 0.0:
            vertex[i] = signed_angle(lines[i].b - lines[i].a, lines[i + 1].b - lines[i + 1].a) / span
    at_start = np.concatenate([[0.0], vertex[:-1]]) if n else vertex
    return 0.5 * (at_start + vertex)


def annotate_curling(
    lines: Sequence[ExtrusionLine],
    prev_layer_lines: LinesDistancer,
    prev_layer_boundary: LinesDistancer,
    layer_height: float,
    flow_width: float,
    params: SupportSpotsParams,
) -> None:
    """Set curled_up_height on each line from the layer below."""
    if not lines:
        return
    middles = lines_middles(lines)
    distances, nearest_idx, _ = prev_layer_lines.distance_from_lines_extra(middles)
    boundary_distances, _, _ = prev_layer_boundary.distance_from_lines_extra(middles)
    curvatures = _line_curvatures(lines)

    for i, line in enumerate(lines):
        # the sign of the distance to the lower extrusions comes from the lower slices
        sign = -1.0 if boundary_distances[i] + 0.5 * flow_width < 0.0 else 1.0
        prev_curl = 0.0
        if nearest_idx[i] >= 0 and prev_layer_lines.lines is not None:
            prev_curl = prev_layer_lines.get_line(int(nearest_idx[i])).curled_up_height
        line.curled_up_height = estimate_curled_up_height(
            abs(distances[i]) * sign * params.curled_distance_expansion,
            float(curvatures[i]),
            layer_height,
            flow_width,
            prev_curl,
            params,
        )


def check_extrusion_path_stability(
    path: ExtrusionPath,
    region: LayerRegion,
    layer: Layer,
    prev_layer_lines: LinesDistancer,
    params: SupportSpotsParams,
    prev_layer_boundary: Optional[LinesDistancer] = None,
) -> Tuple[List[ExtrusionLine], List[SupportPoint]]:
    """Check one extrusion path for unsupported stretches.

    Returns:
        (resampled lines with malformation/curl set, local support points)
    """
    lines = to_short_lines(path, params.bridge_distance)
    if not lines:
        return [], []

    support_points: List[SupportPoint] = []
    bridging_acc = ExtrusionPropertiesAccumulator()
    malformation_acc = ExtrusionPropertiesAccumulator()
    flow_width = region.flow_width(path.role)
    min_malformation_dist = params.min_malformation_distance_factor * flow_width
    max_malformation_dist = params.max_malformation_distance_factor * flow_width
    layer_height = layer.height
    has_prev_lines = prev_layer_lines.lines is not None

    distances, nearest_idx, _ = prev_layer_lines.distance_from_lines_extra(lines_endpoints(lines))

    for line_idx, current_line in enumerate(lines):
        # an open path ending in the air needs an anchor at its end
        if line_idx + 1 == len(lines) and not path.is_closed:
            bridging_acc.add_distance(params.bridge_distance + 1.0)

        curr_angle = 0.0
        if line_idx + 1 < len(lines):
            nxt = lines[line_idx + 1]
            curr_angle = signed_angle(current_line.b - current_line.a, nxt.b - nxt.a)
        bridging_acc.add_angle(curr_angle)
        # malformation in concave angles does not happen
        malformation_acc.add_angle(max(0.0, curr_angle))
        if curr_angle < CONCAVE_RESET_ANGLE:
            malformation_acc.reset()

        dist_from_prev_layer = float(distances[line_idx])
        nearest_line = None
        if nearest_idx[line_idx] >= 0 and has_prev_lines:
            nearest_line = prev_layer_lines.get_line(int(nearest_idx[line_idx]))

        if abs(dist_from_prev_layer) < flow_width:
            bridging_acc.reset()
        else:
            bridging_acc.add_distance(current_line.len)
            in_layer_dist_condition = bridging_acc.distance > bridging_limit(bridging_acc.max_curvature, params)
            between_layers_condition = abs(dist_from_prev_layer) > flow_width or (
                nearest_line is not None and nearest_line.malformation > 3.0 * layer_height
            )
            if in_layer_dist_condition and between_layers_condition:
                support_points.append(SupportPoint(
                    position=np.array([current_line.b[0], current_line.b[1], layer.slice_z]),
                    force=0.0,
                    spot_radius=params.support_points_interface_radius,
                    direction=np.array([0.0, 0.0, -1.0]),
                ))
                current_line.support_point_generated = True
                bridging_acc.reset()

        # malformation
        if abs(dist_from_prev_layer) < 2.0 * flow_width and nearest_line is not None:
            current_line.malformation += SUPPORTED_DISTANCE_PROPAGATION * nearest_line.malformation
        if min_malformation_dist < dist_from_prev_layer < max_malformation_dist:
            factor = abs(dist_from_prev_layer - (max_malformation_dist + min_malformation_dist) * 0.5) / (
                max_malformation_dist - min_malformation_dist
            )
            malformation_acc.add_distance(current_line.len)
            current_line.malformation += layer_height * factor * (
                2.0 + 3.0 * (malformation_acc.max_curvature / math.pi)
            )
            current_line.malformation = min(
                current_line.malformation, layer_height * params.max_malformation_factor
            )
        else:
            malformation_acc.reset()

    if prev_layer_boundary is not None:
        annotate_curling(lines, prev_layer_lines, prev_layer_boundary, layer_height, flow_width, params)

    return lines, support_points


def curled_lines_of(lines: Sequence[ExtrusionLine], params: SupportSpotsParams) -> List[CurledLine]:
    return [
        CurledLine(line.a.copy(), line.b.copy(), line.curled_up_height)
        for line in lines
        if line.curled_up_height > params.curling_tolerance_limit
    ]


def malformed_lines_of(lines: Sequence[ExtrusionLine], params: SupportSpotsParams) -> List[ExtrusionLine]:
    return [line for line in lines if line.malformation > params.malformed_line_limit]


def estimate_malformations(layers: Sequence[Layer], params: SupportSpotsParams) -> List[List[CurledLine]]:
    """Estimate curling of external perimeters on every layer.

    Standalone pass used to slow down over curled overhangs; it does not
    produce support points.

    Returns:
        Curled lines per layer, in layer order.
    """
    result: List[List[CurledLine]] = []
    prev_layer_lines = LinesDistancer.from_lines([])
    prev_slices = []
    for layer in layers:
        prev_layer_boundary = LinesDistancer.from_polygons(prev_slices)
        current_layer_lines: List[ExtrusionLine] = []
        for region in layer.regions:
            for path in region.perimeters:
                if path.role != ExtrusionRole.EXTERNAL_PERIMETER or len(path.points) < 2:
                    continue
                lines = to_short_lines(path, params.bridge_distance)
                annotate_curling(
                    lines,
                    prev_layer_lines,
                    prev_layer_boundary,
                    layer.height,
                    region.flow_width(path.role),
                    params,
                )
                current_layer_lines.extend(lines)

        curled = curled_lines_of(current_layer_lines, params)
        if curled:
            logger.debug("Layer at z=%.3f: %d curled lines", layer.slice_z, len(curled))
        result.append(curled)
        prev_layer_lines = LinesDistancer.from_lines(current_layer_lines)
        prev_slices = layer.slices
    return result
