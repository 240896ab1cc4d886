"""
Layer island graph.

Segments each layer's extrusions into islands (one per slice polygon),
accumulates their mass and contact statistics, and measures how each island
rests on the islands of the previous layer by comparing rasterized images.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from extrusion_geometry import ExtrusionLine, Layer
from lines_distancer import LinesDistancer
from raster_grids import NULL_ISLAND, PixelGrid
from support_params import EPSILON, SupportSpotsParams

logger = logging.getLogger(__name__)


@dataclass
class IslandConnection:
    """Overlap statistics between an island and one island of the layer below.

    Accumulators are area-weighted sums, so connections compose by addition.
    """
    area: float = 0.0
    centroid_accumulator: np.ndarray = field(default_factory=lambda: np.zeros(3))
    second_moment_of_area_accumulator: np.ndarray = field(default_factory=lambda: np.zeros(2))
    second_moment_of_area_covariance_accumulator: float = 0.0

    @classmethod
    def infinitely_strong(cls) -> "IslandConnection":
        """Connection that never fails, used for islands with nothing below."""
        return cls(
            area=1.0,
            centroid_accumulator=np.zeros(3),
            second_moment_of_area_accumulator=np.array([math.inf, math.inf]),
        )

    def add(self, other: "IslandConnection") -> None:
        self.area += other.area
        self.centroid_accumulator = self.centroid_accumulator + other.centroid_accumulator
        self.second_moment_of_area_accumulator = (
            self.second_moment_of_area_accumulator + other.second_moment_of_area_accumulator
        )
        self.second_moment_of_area_covariance_accumulator += other.second_moment_of_area_covariance_accumulator

    def add_contact(self, position: np.ndarray, area: float) -> None:
        """Add a point contact of the given area at a 3D position."""
        position = np.asarray(position, dtype=float)
        self.area += area
        self.centroid_accumulator = self.centroid_accumulator + position * area
        self.second_moment_of_area_accumulator = (
            self.second_moment_of_area_accumulator + area * position[:2] * position[:2]
        )
        self.second_moment_of_area_covariance_accumulator += area * position[0] * position[1]

    @property
    def centroid(self) -> np.ndarray:
        return self.centroid_accumulator / self.area

    def xy_variance(self) -> np.ndarray:
        centroid = self.centroid
        return self.second_moment_of_area_accumulator / self.area - centroid[:2] * centroid[:2]

    def is_infinitely_strong(self) -> bool:
        return not np.all(np.isfinite(self.second_moment_of_area_accumulator))

    def estimate_strength(self, layer_z: float) -> float:
        """Heuristic strength used to rank connections, not a physical force.

        area * sqrt(var_x + var_y) / max(1, arm to the current layer)
        """
        if self.area < EPSILON:
            return 0.0
        if self.is_infinitely_strong():
            return math.inf
        variance = self.xy_variance()
        xy_variance = max(0.0, float(variance[0] + variance[1]))
        arm_len_estimate = max(1.0, layer_z - float(self.centroid_accumulator[2] / self.area))
        return self.area * math.sqrt(xy_variance) / arm_len_estimate


@dataclass
class Island:
    """Connected extrusions of one slice polygon on one layer."""
    connected_islands: Dict[int, IslandConnection] = field(default_factory=dict)
    volume: float = 0.0
    volume_centroid_accumulator: np.ndarray = field(default_factory=lambda: np.zeros(3))
    # contact with the bed (first layer) or with local support points
    sticking_area: float = 0.0
    sticking_centroid_accumulator: np.ndarray = field(default_factory=lambda: np.zeros(3))
    sticking_second_moment_of_area_accumulator: np.ndarray = field(default_factory=lambda: np.zeros(2))
    sticking_second_moment_of_area_covariance_accumulator: float = 0.0

    external_lines: List[ExtrusionLine] = field(default_factory=list)

    def add_sticking(self, position: np.ndarray, area: float) -> None:
        self.sticking_area += area
        self.sticking_centroid_accumulator = self.sticking_centroid_accumulator + area * position
        self.sticking_second_moment_of_area_accumulator = (
            self.sticking_second_moment_of_area_accumulator + area * position[:2] * position[:2]
        )
        self.sticking_second_moment_of_area_covariance_accumulator += area * position[0] * position[1]


@dataclass
class LayerIslands:
    islands: List[Island] = field(default_factory=list)
    layer_z: float = 0.0


def split_into_extrusions(layer_lines: Sequence[ExtrusionLine]) -> List[Tuple[int, int]]:
    """[start, end) index ranges of consecutive lines from the same path."""
    extrusions: List[Tuple[int, int]] = []
    current_path = None
    for lidx, line in enumerate(layer_lines):
        if extrusions and line.origin_path_id == current_path:
            extrusions[-1] = (extrusions[-1][0], lidx + 1)
        else:
            extrusions.append((lidx, lidx + 1))
            current_path = line.origin_path_id
    return extrusions


def _add_bed_contact(island: Island, line: ExtrusionLine, flow_width: float, layer_z: float) -> None:
    """First layer contact, with moments sampled along the line.

    Bottom infill lines can be long and aligned, so the line middle alone is
    a poor approximation of their second moment.
    """
    sticking_area = line.len * flow_width
    island.sticking_area += sticking_area
    middle = line.middle
    island.sticking_centroid_accumulator = island.sticking_centroid_accumulator + sticking_area * np.array(
        [middle[0], middle[1], layer_z]
    )
    pieces = max(1, int(math.ceil(line.len / flow_width)))
    piece_area = sticking_area / pieces
    offsets = (np.arange(pieces) + 0.5) / pieces
    piece_middles = line.a[None, :] + offsets[:, None] * (line.b - line.a)[None, :]
    island.sticking_second_moment_of_area_accumulator = island.sticking_second_moment_of_area_accumulator + (
        piece_area * np.sum(piece_middles * piece_middles, axis=0)
    )
    island.sticking_second_moment_of_area_covariance_accumulator += piece_area * float(
        np.sum(piece_middles[:, 0] * piece_middles[:, 1])
    )


def reckon_islands(
    layer: Layer,
    first_layer: bool,
    prev_layer_grid: PixelGrid,
    layer_lines: Sequence[ExtrusionLine],
    params: SupportSpotsParams,
    workers: Optional[int] = None,
) -> Tuple[LayerIslands, PixelGrid]:
    """Build the islands of a layer and connect them to the previous layer.

    Args:
        layer: the layer being processed.
        first_layer: whether extrusions stick to the bed.
        prev_layer_grid: island image of the previous layer (cleared for the first layer).
        layer_lines: all lines of the layer, grouped by source path.
        params: model constants.
        workers: rasterization threads.

    Returns:
        (LayerIslands, island image of this layer)
    """
    extrusions = split_into_extrusions(layer_lines)

    # boundary indexes decide which slice polygon an extrusion belongs to
    slice_boundaries = [LinesDistancer.from_polygon(polygon) for polygon in layer.slices]
    island_extrusions: List[List[int]] = [[] for _ in slice_boundaries]
    if extrusions and slice_boundaries:
        sample_points = np.array([layer_lines[start].b for start, _ in extrusions], dtype=float)
        inside = np.zeros((len(slice_boundaries), len(extrusions)), dtype=bool)
        for island_idx, boundary in enumerate(slice_boundaries):
            distances, _, _ = boundary.distance_from_lines_extra(sample_points)
            inside[island_idx] = distances <= 0.0
        for extrusion_idx in range(len(extrusions)):
            matches = np.flatnonzero(inside[:, extrusion_idx])
            if len(matches):
                island_extrusions[int(matches[0])].append(extrusion_idx)

    assigned = sum(len(ex) for ex in island_extrusions)
    if assigned < len(extrusions):
        logger.warning(
            "Layer at z=%.3f: %d of %d extrusions lie outside all slices",
            layer.slice_z, len(extrusions) - assigned, len(extrusions),
        )

    flow_width = layer.flow_width
    result = LayerIslands(layer_z=layer.slice_z)
    line_to_island = np.full(len(layer_lines), NULL_ISLAND, dtype=np.int64)
    for island_ex in island_extrusions:
        if not island_ex:
            continue
        island = Island()
        island_id = len(result.islands)
        for extrusion_idx in island_ex:
            start, end = extrusions[extrusion_idx]
            if layer_lines[start].is_external_perimeter:
                island.external_lines.extend(layer_lines[start:end])

            for lidx in range(start, end):
                line_to_island[lidx] = island_id
                line = layer_lines[lidx]
                volume = line.len * layer.height * flow_width * math.pi / 4.0
                island.volume += volume
                middle = line.middle
                island.volume_centroid_accumulator = island.volume_centroid_accumulator + volume * np.array(
                    [middle[0], middle[1], layer.slice_z]
                )
                if first_layer:
                    _add_bed_contact(island, line, flow_width, layer.slice_z)
                elif line.support_point_generated:
                    island.add_sticking(
                        np.array([line.b[0], line.b[1], layer.slice_z]), line.len * flow_width
                    )
        result.islands.append(island)

    current_layer_grid = prev_layer_grid.empty_like()
    current_layer_grid.rasterize(layer_lines, line_to_island, workers=workers)

    _connect_to_previous_layer(result, current_layer_grid, prev_layer_grid)

    # tiny overlaps break the graph building
    for island in result.islands:
        for prev_idx in [
            k for k, conn in island.connected_islands.items()
            if conn.area < params.connections_min_considerable_area
        ]:
            del island.connected_islands[prev_idx]

    logger.debug(
        "Layer at z=%.3f: %d islands, %d connections",
        layer.slice_z,
        len(result.islands),
        sum(len(i.connected_islands) for i in result.islands),
    )
    return result, current_layer_grid


def _connect_to_previous_layer(
    result: LayerIslands, current_grid: PixelGrid, prev_grid: PixelGrid
) -> None:
    """Accumulate one IslandConnection per overlapping (current, previous) pixel pair."""
    overlap = np.flatnonzero((current_grid.pixels != NULL_ISLAND) & (prev_grid.pixels != NULL_ISLAND))
    if len(overlap) == 0:
        return
    pixel_area = current_grid.pixel_area()
    ys, xs = np.divmod(overlap, current_grid.pixel_count[0])
    centers = current_grid.get_pixel_center(np.stack([xs, ys], axis=1))
    pairs = np.stack([current_grid.pixels[overlap], prev_grid.pixels[overlap]], axis=1)
    unique_pairs, pair_of_pixel = np.unique(pairs, axis=0, return_inverse=True)
    pair_of_pixel = pair_of_pixel.reshape(-1)

    counts = np.bincount(pair_of_pixel, minlength=len(unique_pairs))
    sum_x = np.bincount(pair_of_pixel, weights=centers[:, 0], minlength=len(unique_pairs))
    sum_y = np.bincount(pair_of_pixel, weights=centers[:, 1], minlength=len(unique_pairs))
    sum_xx = np.bincount(pair_of_pixel, weights=centers[:, 0] ** 2, minlength=len(unique_pairs))
    sum_yy = np.bincount(pair_of_pixel, weights=centers[:, 1] ** 2, minlength=len(unique_pairs))
    sum_xy = np.bincount(
        pair_of_pixel, weights=centers[:, 0] * centers[:, 1], minlength=len(unique_pairs)
    )

    for k, (current_idx, prev_idx) in enumerate(unique_pairs):
        connection = result.islands[int(current_idx)].connected_islands.setdefault(
            int(prev_idx), IslandConnection()
        )
        connection.add(IslandConnection(
            area=float(counts[k]) * pixel_area,
            centroid_accumulator=pixel_area * np.array(
                [sum_x[k], sum_y[k], counts[k] * result.layer_z]
            ),
            second_moment_of_area_accumulator=pixel_area * np.array([sum_xx[k], sum_yy[k]]),
            second_moment_of_area_covariance_accumulator=pixel_area * float(sum_xy[k]),
        ))
