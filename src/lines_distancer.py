"""
Nearest-line distance index.

Answers "how far is this point from the geometry, on which side, and which
segment is nearest" for a set of 2D segments. Built once per layer from its
extrusion lines, or from a slice polygon boundary for inside/outside tests.

Sign convention: negative means the point lies to the left of the nearest
segment's direction. With CCW contours and CW holes, negative is inside.
"""
from typing import List, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.geometry import Polygon
from shapely.geometry.polygon import orient

from extrusion_geometry import ExtrusionLine

_ENDPOINT_DECIMALS = 6
_PARAM_EPS = 1e-9


class LinesDistancer:
    """Signed distance queries against a fixed set of segments."""

    def __init__(
        self,
        starts: np.ndarray,
        ends: np.ndarray,
        lines: Optional[Sequence[ExtrusionLine]] = None,
        path_ids: Optional[np.ndarray] = None,
    ):
        starts = np.asarray(starts, dtype=float).reshape(-1, 2)
        ends = np.asarray(ends, dtype=float).reshape(-1, 2)
        if starts.shape != ends.shape:
            raise ValueError(
                f"starts and ends must match, got {starts.shape} and {ends.shape}"
            )
        self._starts = starts
        self._ends = ends
        self._lines = list(lines) if lines is not None else None
        if path_ids is None:
            if self._lines is not None:
                path_ids = [line.origin_path_id for line in self._lines]
            else:
                path_ids = np.zeros(len(starts))
        self._path_ids = np.asarray(path_ids, dtype=np.int64).reshape(-1)
        if len(self._path_ids) != len(starts):
            raise ValueError(
                f"expected {len(starts)} path ids, got {len(self._path_ids)}"
            )

        lengths = np.linalg.norm(ends - starts, axis=1)
        # zero-length segments are kept for indexing but never returned as nearest
        self._tree_to_line = np.flatnonzero(lengths > 0.0)
        if len(self._tree_to_line):
            coords = np.stack(
                [starts[self._tree_to_line], ends[self._tree_to_line]], axis=1
            )
            self._tree = shapely.STRtree(shapely.linestrings(coords))
        else:
            self._tree = None
        self._prev_line, self._next_line = self._link_neighbours()

    # ─── Construction ────────────────────────────────────────────────────────

    @classmethod
    def from_lines(cls, lines: Sequence[ExtrusionLine]) -> "LinesDistancer":
        lines = list(lines)
        if not lines:
            return cls(np.zeros((0, 2)), np.zeros((0, 2)), lines)
        starts = np.array([line.a for line in lines], dtype=float)
        ends = np.array([line.b for line in lines], dtype=float)
        return cls(starts, ends, lines)

    @classmethod
    def from_polygon(cls, polygon: Polygon) -> "LinesDistancer":
        """Index a polygon boundary, exterior CCW and holes CW."""
        return cls.from_polygons([polygon])

    @classmethod
    def from_polygons(cls, polygons: Sequence[Polygon]) -> "LinesDistancer":
        starts: List[np.ndarray] = []
        ends: List[np.ndarray] = []
        ring_ids: List[np.ndarray] = []
        for polygon in polygons:
            if polygon.is_empty:
                continue
            oriented = orient(polygon, sign=1.0)
            for ring in [oriented.exterior, *oriented.interiors]:
                coords = np.asarray(ring.coords, dtype=float)
                if len(coords) < 2:
                    continue
                starts.append(coords[:-1])
                ends.append(coords[1:])
                ring_ids.append(np.full(len(coords) - 1, len(ring_ids)))
        if not starts:
            return cls(np.zeros((0, 2)), np.zeros((0, 2)))
        return cls(np.concatenate(starts), np.concatenate(ends), path_ids=np.concatenate(ring_ids))

    def _link_neighbours(self) -> Tuple[np.ndarray, np.ndarray]:
        """For each segment, the segment of the same path ending at its start and starting at its end."""
        n = len(self._starts)
        prev_line = np.full(n, -1, dtype=np.int64)
        next_line = np.full(n, -1, dtype=np.int64)
        by_start = {}
        for i in self._tree_to_line:
            key = (int(self._path_ids[i]), *np.round(self._starts[i], _ENDPOINT_DECIMALS))
            by_start.setdefault(key, int(i))
        for i in self._tree_to_line:
            key = (int(self._path_ids[i]), *np.round(self._ends[i], _ENDPOINT_DECIMALS))
            j = by_start.get(key)
            if j is not None and j != i:
                next_line[i] = j
                prev_line[j] = i
        return prev_line, next_line

    # ─── Queries ─────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._starts)

    @property
    def lines(self) -> Optional[List[ExtrusionLine]]:
        return self._lines

    def get_line(self, idx: int) -> ExtrusionLine:
        if self._lines is None:
            raise ValueError("Index was not built from extrusion lines")
        return self._lines[idx]

    def distance_from_lines_extra(
        self, points: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Signed distance, nearest line index and nearest point for each query.

        Args:
            points: (N, 2) query points.

        Returns:
            (distances (N,), line_indices (N,), nearest_points (N, 2)).
            Without any segment, distances are +inf and indices -1.
        """
        points = np.asarray(points, dtype=float).reshape(-1, 2)
        n = len(points)
        if n == 0 or self._tree is None:
            return (
                np.full(n, np.inf),
                np.full(n, -1, dtype=np.int64),
                np.full((n, 2), np.nan),
            )

        pairs = self._tree.query_nearest(shapely.points(points), all_matches=False)
        nearest_tree_idx = np.empty(n, dtype=np.int64)
        nearest_tree_idx[pairs[0]] = pairs[1]
        line_idx = self._tree_to_line[nearest_tree_idx]

        a = self._starts[line_idx]
        b = self._ends[line_idx]
        ab = b - a
        t = np.einsum("ij,ij->i", points - a, ab) / np.einsum("ij,ij->i", ab, ab)
        t = np.clip(t, 0.0, 1.0)
        nearest = a + ab * t[:, None]
        unsigned = np.linalg.norm(points - nearest, axis=1)

        w = points - a
        left = (ab[:, 0] * w[:, 1] - ab[:, 1] * w[:, 0]) > 0.0
        at_vertex = np.flatnonzero((t <= _PARAM_EPS) | (t >= 1.0 - _PARAM_EPS))
        for k in at_vertex:
            left[k] = self._left_of_vertex(points[k], int(line_idx[k]), t[k] <= _PARAM_EPS)

        signed = np.where(left, -unsigned, unsigned)
        return signed, line_idx, nearest

    def signed_distance(self, point) -> float:
        distances, _, _ = self.distance_from_lines_extra(np.asarray(point, dtype=float)[None, :2])
        return float(distances[0])

    def _left_of_vertex(self, point: np.ndarray, line_idx: int, at_start: bool) -> bool:
        """Side test at a shared vertex using both adjacent segments."""
        if at_start:
            incoming = int(self._prev_line[line_idx])
            outgoing = line_idx
            vertex = self._starts[line_idx]
        else:
            incoming = line_idx
            outgoing = int(self._next_line[line_idx])
            vertex = self._ends[line_idx]

        w = point - vertex
        if incoming < 0 or outgoing < 0:
            d = self._ends[line_idx] - self._starts[line_idx]
            return bool(d[0] * w[1] - d[1] * w[0] > 0.0)

        d1 = self._ends[incoming] - self._starts[incoming]
        d2 = self._ends[outgoing] - self._starts[outgoing]
        left1 = d1[0] * w[1] - d1[1] * w[0] > 0.0
        left2 = d2[0] * w[1] - d2[1] * w[0] > 0.0
        convex = d1[0] * d2[1] - d1[1] * d2[0] >= 0.0
        if convex:
            return bool(left1 and left2)
        return bool(left1 or left2)
