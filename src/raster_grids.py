"""
Raster structures for cross-layer island correspondence and support spacing.

PixelGrid maps pixels of the object's XY footprint to the id of the island
that last touched them. Consecutive layers are compared pixel by pixel to
measure how much of each island rests on which island below.

SupportGridFilter is a voxel presence set that keeps support points at least
one voxel apart.
"""
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from extrusion_geometry import ExtrusionLine, Layer

logger = logging.getLogger(__name__)

NULL_ISLAND = -1
MIN_DISTRIBUTED_EDGE_LENGTH = 0.1  # mm
_RASTER_CHUNK = 2048


def layers_xy_bounds(layers: Iterable[Layer]) -> Tuple[float, float, float, float]:
    """(minx, miny, maxx, maxy) over all slice polygons and extrusion points."""
    mins = np.array([np.inf, np.inf])
    maxs = np.array([-np.inf, -np.inf])
    for layer in layers:
        for polygon in layer.slices:
            if polygon.is_empty:
                continue
            b = polygon.bounds
            mins = np.minimum(mins, b[:2])
            maxs = np.maximum(maxs, b[2:])
        for region in layer.regions:
            for path in [*region.perimeters, *region.fills]:
                if len(path.points):
                    mins = np.minimum(mins, path.points.min(axis=0))
                    maxs = np.maximum(maxs, path.points.max(axis=0))
    if not np.all(np.isfinite(mins)):
        return (0.0, 0.0, 0.0, 0.0)
    return (float(mins[0]), float(mins[1]), float(maxs[0]), float(maxs[1]))


class PixelGrid:
    """Island-id image of one layer.

    Rasterization writes from several threads into one shared array without
    locking. When segments of different islands hit the same pixel the last
    writer wins; this only shifts a little boundary area between islands and
    is an accepted approximation.
    """

    def __init__(self, bounds: Sequence[float], resolution: float):
        if resolution <= 0:
            raise ValueError(f"resolution must be positive, got {resolution}")
        minx, miny, maxx, maxy = bounds
        self.pixel_size = np.array([resolution, resolution], dtype=float)
        # one pixel of margin around the footprint
        self.origin = np.array([minx, miny], dtype=float) - self.pixel_size
        self.size = np.array([maxx, maxy], dtype=float) + self.pixel_size - self.origin
        self.pixel_count = (self.size / self.pixel_size).astype(np.int64) + 1
        self.pixels = np.full(int(self.pixel_count[0] * self.pixel_count[1]), NULL_ISLAND, dtype=np.int64)

    @classmethod
    def for_layers(cls, layers: Sequence[Layer], resolution: float) -> "PixelGrid":
        return cls(layers_xy_bounds(layers), resolution)

    def empty_like(self) -> "PixelGrid":
        """New cleared grid with the same geometry."""
        grid = PixelGrid.__new__(PixelGrid)
        grid.pixel_size = self.pixel_size.copy()
        grid.origin = self.origin.copy()
        grid.size = self.size.copy()
        grid.pixel_count = self.pixel_count.copy()
        grid.pixels = np.full_like(self.pixels, NULL_ISLAND)
        return grid

    def clear(self) -> None:
        self.pixels.fill(NULL_ISLAND)

    def pixel_area(self) -> float:
        return float(self.pixel_size[0] * self.pixel_size[1])

    def occupied_area(self) -> float:
        return float(np.count_nonzero(self.pixels != NULL_ISLAND)) * self.pixel_area()

    def get_pixel(self, coords: Tuple[int, int]) -> int:
        return int(self.pixels[self._to_pixel_index(np.asarray(coords)[None, :])[0]])

    def get_pixel_center(self, coords) -> np.ndarray:
        coords = np.asarray(coords, dtype=float)
        return self.origin + coords * self.pixel_size + self.pixel_size / 2.0

    def _to_pixel_coords(self, positions: np.ndarray) -> np.ndarray:
        coords = np.floor((positions - self.origin) / self.pixel_size).astype(np.int64)
        return np.clip(coords, 0, self.pixel_count - 1)

    def _to_pixel_index(self, coords: np.ndarray) -> np.ndarray:
        return coords[:, 1] * self.pixel_count[0] + coords[:, 0]

    def access_pixels(self, positions: np.ndarray) -> np.ndarray:
        """Flat pixel indices for (N, 2) positions."""
        return self._to_pixel_index(self._to_pixel_coords(np.asarray(positions, dtype=float).reshape(-1, 2)))

    # ─── Rasterization ───────────────────────────────────────────────────────

    def distribute_edge(self, p1, p2, value: int) -> None:
        """Write value at samples every half pixel along p1 -> p2 (end included)."""
        starts = np.asarray(p1, dtype=float)[None, :]
        ends = np.asarray(p2, dtype=float)[None, :]
        self._distribute_edges(starts, ends, np.array([value], dtype=np.int64))

    def _distribute_edges(self, starts: np.ndarray, ends: np.ndarray, values: np.ndarray) -> None:
        dirs = ends - starts
        lengths = np.linalg.norm(dirs, axis=1)
        keep = lengths >= MIN_DISTRIBUTED_EDGE_LENGTH
        if not np.any(keep):
            return
        starts, dirs, lengths, values = starts[keep], dirs[keep], lengths[keep], values[keep]

        step_size = self.pixel_size[0] / 2.0
        counts = np.ceil(lengths / step_size).astype(np.int64)
        owner = np.repeat(np.arange(len(lengths)), counts)
        # 1-based sample number within each edge
        first = np.cumsum(counts) - counts
        k = np.arange(len(owner)) - np.repeat(first, counts) + 1
        dist = np.minimum(lengths[owner], k * step_size)
        positions = starts[owner] + dirs[owner] * (dist / lengths[owner])[:, None]
        self.pixels[self.access_pixels(positions)] = values[owner]

    def rasterize(
        self,
        lines: Sequence[ExtrusionLine],
        island_ids: Sequence[int],
        workers: Optional[int] = None,
    ) -> None:
        """Write each line's island id into the grid, in parallel chunks."""
        if not lines:
            return
        starts = np.array([line.a for line in lines], dtype=float)
        ends = np.array([line.b for line in lines], dtype=float)
        values = np.asarray(island_ids, dtype=np.int64)
        owned = values != NULL_ISLAND
        starts, ends, values = starts[owned], ends[owned], values[owned]

        chunks = [
            slice(i, i + _RASTER_CHUNK) for i in range(0, len(values), _RASTER_CHUNK)
        ]
        logger.debug("Rasterizing %d lines in %d chunks", len(values), len(chunks))
        if workers is None or workers <= 1 or len(chunks) <= 1:
            for chunk in chunks:
                self._distribute_edges(starts[chunk], ends[chunk], values[chunk])
            return
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [
                pool.submit(self._distribute_edges, starts[c], ends[c], values[c])
                for c in chunks
            ]
            for future in futures:
                future.result()


class SupportGridFilter:
    """Voxel presence set for placed support points."""

    def __init__(self, bounds: Sequence[float], height: float, voxel_size: float):
        if voxel_size <= 0:
            raise ValueError(f"voxel_size must be positive, got {voxel_size}")
        minx, miny, maxx, maxy = bounds
        self.cell_size = np.array([voxel_size] * 3, dtype=float)
        self.origin = np.array([minx, miny, 0.0]) - self.cell_size
        top = np.array([maxx, maxy, height]) + self.cell_size
        self.cell_count = ((top - self.origin) / self.cell_size).astype(np.int64) + 1
        self._taken_cells = set()

    @classmethod
    def for_layers(cls, layers: Sequence[Layer], voxel_size: float) -> "SupportGridFilter":
        height = max((layer.print_z for layer in layers), default=0.0)
        return cls(layers_xy_bounds(layers), height, voxel_size)

    def to_cell_coords(self, position) -> Tuple[int, int, int]:
        coords = np.floor((np.asarray(position, dtype=float) - self.origin) / self.cell_size)
        return tuple(int(c) for c in coords)

    def get_cell_center(self, cell_coords) -> np.ndarray:
        return self.origin + np.asarray(cell_coords, dtype=float) * self.cell_size + self.cell_size / 2.0

    def take_position(self, position) -> None:
        self._taken_cells.add(self.to_cell_coords(position))

    def position_taken(self, position) -> bool:
        return self.to_cell_coords(position) in self._taken_cells

    def __len__(self) -> int:
        return len(self._taken_cells)


def grid_resolution(flow_width: float) -> float:
    """Pixel size for island rasterization, twice the flow width."""
    if not math.isfinite(flow_width) or flow_width <= 0:
        raise ValueError(f"flow_width must be positive, got {flow_width}")
    return 2.0 * flow_width
