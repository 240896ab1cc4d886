"""
Core geometry types for support spot generation.

Describes the sliced input (layers, regions, extrusion paths with roles) and
the flattened line segments the analyzers work on. Also provides the
SupportPoint and CurledLine outputs.
"""
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

import numpy as np
from shapely.geometry import Polygon


class ExtrusionRole(Enum):
    """Role of an extrusion path within a layer."""
    PERIMETER = "perimeter"
    EXTERNAL_PERIMETER = "external_perimeter"
    OVERHANG_PERIMETER = "overhang_perimeter"
    INTERNAL_INFILL = "internal_infill"
    SOLID_INFILL = "solid_infill"
    TOP_SOLID_INFILL = "top_solid_infill"
    BRIDGE_INFILL = "bridge_infill"
    GAP_FILL = "gap_fill"
    SKIRT = "skirt"
    SUPPORT_MATERIAL = "support_material"


class FlowRole(Enum):
    """Flow categories a region measures widths for."""
    EXTERNAL_PERIMETER = "external_perimeter"
    PERIMETER = "perimeter"
    INFILL = "infill"
    SOLID_INFILL = "solid_infill"
    TOP_SOLID_INFILL = "top_solid_infill"


_ROLE_TO_FLOW = {
    ExtrusionRole.BRIDGE_INFILL: FlowRole.EXTERNAL_PERIMETER,
    ExtrusionRole.EXTERNAL_PERIMETER: FlowRole.EXTERNAL_PERIMETER,
    ExtrusionRole.GAP_FILL: FlowRole.INFILL,
    ExtrusionRole.PERIMETER: FlowRole.PERIMETER,
    ExtrusionRole.SOLID_INFILL: FlowRole.SOLID_INFILL,
    ExtrusionRole.INTERNAL_INFILL: FlowRole.INFILL,
    ExtrusionRole.TOP_SOLID_INFILL: FlowRole.TOP_SOLID_INFILL,
}


@dataclass
class ExtrusionPath:
    """A single extrusion polyline with a role."""
    points: np.ndarray              # (N, 2) mm
    role: ExtrusionRole
    path_id: int = -1               # identity of the source path, unique per layer

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=float).reshape(-1, 2)

    @property
    def is_closed(self) -> bool:
        return len(self.points) > 2 and np.allclose(self.points[0], self.points[-1])


@dataclass
class LayerRegion:
    """Extrusions of one print region on one layer, with its flow widths."""
    perimeters: List[ExtrusionPath] = field(default_factory=list)
    fills: List[ExtrusionPath] = field(default_factory=list)
    flow_widths: Dict[FlowRole, float] = field(default_factory=lambda: {
        FlowRole.EXTERNAL_PERIMETER: 0.45,
        FlowRole.PERIMETER: 0.45,
        FlowRole.INFILL: 0.45,
        FlowRole.SOLID_INFILL: 0.45,
        FlowRole.TOP_SOLID_INFILL: 0.4,
    })

    def flow_width(self, role: ExtrusionRole) -> float:
        """Extrusion width used for paths of the given role."""
        flow_role = _ROLE_TO_FLOW.get(role, FlowRole.PERIMETER)
        return self.flow_widths.get(flow_role, self.flow_widths[FlowRole.PERIMETER])


@dataclass
class Layer:
    """One sliced layer, consumed read-only."""
    slice_z: float                  # middle of the layer
    print_z: float                  # top of the layer
    height: float
    regions: List[LayerRegion] = field(default_factory=list)
    slices: List[Polygon] = field(default_factory=list)

    @property
    def flow_width(self) -> float:
        """External perimeter width of the first region."""
        if not self.regions:
            return 0.0
        return self.regions[0].flow_width(ExtrusionRole.EXTERNAL_PERIMETER)


@dataclass
class ExtrusionLine:
    """A straight piece of an extrusion path.

    Geometry is fixed once emitted; the malformation, curl and support flags
    are written by the pass that computes them.
    """
    a: np.ndarray
    b: np.ndarray
    origin_path_id: int = -1
    role: Optional[ExtrusionRole] = None
    malformation: float = 0.0
    curled_up_height: float = 0.0
    support_point_generated: bool = False
    len: float = field(init=False)

    def __post_init__(self):
        self.a = np.asarray(self.a, dtype=float)
        self.b = np.asarray(self.b, dtype=float)
        self.len = float(np.linalg.norm(self.b - self.a))

    @property
    def is_external_perimeter(self) -> bool:
        return self.role == ExtrusionRole.EXTERNAL_PERIMETER

    @property
    def middle(self) -> np.ndarray:
        return (self.a + self.b) * 0.5

    def direction(self) -> np.ndarray:
        """Unit direction a -> b, zero vector for degenerate lines."""
        if self.len <= 0.0:
            return np.zeros(2)
        return (self.b - self.a) / self.len


@dataclass
class SupportPoint:
    """Proposed support anchor."""
    position: np.ndarray            # (3,) mm
    force: float                    # g*mm/s^2
    spot_radius: float              # mm
    direction: np.ndarray           # (3,)

    def to_dict(self) -> dict:
        return {
            "position": [float(v) for v in self.position],
            "force": float(self.force),
            "spot_radius": float(self.spot_radius),
            "direction": [float(v) for v in self.direction],
        }


@dataclass
class CurledLine:
    """Segment expected to curl up after deposition."""
    a: np.ndarray
    b: np.ndarray
    curled_up_height: float


# ─── Path flattening ─────────────────────────────────────────────────────────

def push_lines(path: ExtrusionPath, destination: List[ExtrusionLine]) -> None:
    """Append the path's polyline edges to destination, unchanged."""
    pts = path.points
    for i in range(len(pts) - 1):
        destination.append(ExtrusionLine(pts[i], pts[i + 1], path.path_id, path.role))


def to_short_lines(path: ExtrusionPath, length_limit: float) -> List[ExtrusionLine]:
    """Split a path into lines no longer than length_limit.

    The result starts with a zero-length line at the first point so the path
    start is also evaluated.
    """
    if length_limit <= 0:
        raise ValueError(f"length_limit must be positive, got {length_limit}")
    pts = path.points
    if len(pts) == 0:
        return []
    lines = [ExtrusionLine(pts[0], pts[0], path.path_id, path.role)]
    for i in range(len(pts) - 1):
        start = pts[i]
        v = pts[i + 1] - start
        dist_to_next = float(np.linalg.norm(v))
        if dist_to_next <= 0.0:
            continue
        v = v / dist_to_next
        lines_count = int(math.ceil(dist_to_next / length_limit))
        step_size = dist_to_next / lines_count
        for k in range(lines_count):
            a = start + v * (k * step_size)
            b = start + v * ((k + 1) * step_size)
            lines.append(ExtrusionLine(a, b, path.path_id, path.role))
    return lines


def signed_angle(v1: np.ndarray, v2: np.ndarray) -> float:
    """Counter-clockwise angle from v1 to v2 in (-pi, pi]; 0 for zero vectors."""
    cross = v1[0] * v2[1] - v1[1] * v2[0]
    dot = v1[0] * v2[0] + v1[1] * v2[1]
    return float(math.atan2(cross, dot))


def lines_endpoints(lines: Sequence[ExtrusionLine]) -> np.ndarray:
    """(N, 2) array of line end points b."""
    if not lines:
        return np.zeros((0, 2))
    return np.array([line.b for line in lines], dtype=float)


def lines_middles(lines: Sequence[ExtrusionLine]) -> np.ndarray:
    if not lines:
        return np.zeros((0, 2))
    return np.array([line.middle for line in lines], dtype=float)
