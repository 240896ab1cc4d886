"""Debug exports: colored point clouds and JSON summaries of a search."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Sequence, Union

import numpy as np
import trimesh

from extrusion_geometry import SupportPoint
from raster_grids import NULL_ISLAND, PixelGrid
from support_params import SupportSpotsParams
from support_spots import SupportSpotsResult

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# RGBA
LOCAL_SUPPORT_COLOR = (255, 40, 40, 255)
GLOBAL_SUPPORT_COLOR = (40, 90, 255, 255)
CURL_LOW_COLOR = np.array([255, 220, 0, 255], dtype=float)
CURL_HIGH_COLOR = np.array([220, 0, 0, 255], dtype=float)


def _write_cloud(path: PathLike, vertices: np.ndarray, colors: np.ndarray) -> bool:
    if len(vertices) == 0:
        logger.info("Nothing to export to %s", path)
        return False
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    cloud = trimesh.PointCloud(np.asarray(vertices, dtype=float), colors=np.asarray(colors, dtype=np.uint8))
    cloud.export(str(out), file_type="ply")
    logger.debug("Exported %d points to %s", len(vertices), out)
    return True


def export_support_points(path: PathLike, points: Sequence[SupportPoint]) -> bool:
    """Support points as a PLY cloud, red for local anchors and blue for global ones.

    Local anchors are the ones with zero force.
    """
    vertices = np.array([p.position for p in points], dtype=float).reshape(-1, 3)
    colors = np.array(
        [LOCAL_SUPPORT_COLOR if p.force <= 0 else GLOBAL_SUPPORT_COLOR for p in points], dtype=np.uint8
    ).reshape(-1, 4)
    return _write_cloud(path, vertices, colors)


def export_curled_lines(
    path: PathLike,
    result: SupportSpotsResult,
    params: SupportSpotsParams,
    layer_heights: Sequence[float] = (),
) -> bool:
    """Curled line middles, yellow to red with growing curl height.

    layer_heights gives the z of each layer; the island graph's layer_z is
    used when omitted.
    """
    if not layer_heights:
        layer_heights = [layer.layer_z for layer in result.islands_graph]
    vertices = []
    heights = []
    for layer_idx, layer_lines in enumerate(result.curled_lines):
        z = layer_heights[layer_idx] if layer_idx < len(layer_heights) else 0.0
        for line in layer_lines:
            middle = (np.asarray(line.a) + np.asarray(line.b)) * 0.5
            vertices.append([middle[0], middle[1], z])
            heights.append(line.curled_up_height)
    if not vertices:
        return _write_cloud(path, np.zeros((0, 3)), np.zeros((0, 4)))

    heights = np.asarray(heights)
    top = max(float(heights.max()), params.curling_tolerance_limit)
    t = np.clip((heights - params.curling_tolerance_limit) / max(top - params.curling_tolerance_limit, 1e-9), 0, 1)
    colors = CURL_LOW_COLOR[None, :] * (1.0 - t[:, None]) + CURL_HIGH_COLOR[None, :] * t[:, None]
    return _write_cloud(path, np.array(vertices), colors.round())


def island_color(island_id: int) -> np.ndarray:
    """Stable pseudo-random color per island id."""
    rng = np.random.default_rng(int(island_id) + 7)
    rgb = rng.integers(40, 256, size=3)
    return np.array([*rgb, 255], dtype=np.uint8)


def export_segmentation(path: PathLike, grid: PixelGrid, z: float) -> bool:
    """Occupied pixels of an island image, colored by island id."""
    occupied = np.flatnonzero(grid.pixels != NULL_ISLAND)
    ys, xs = np.divmod(occupied, grid.pixel_count[0])
    centers = grid.get_pixel_center(np.stack([xs, ys], axis=1)).reshape(-1, 2)
    vertices = np.column_stack([centers, np.full(len(centers), z)])
    ids = grid.pixels[occupied]
    palette = {int(i): island_color(int(i)) for i in np.unique(ids)}
    colors = np.array([palette[int(i)] for i in ids], dtype=np.uint8).reshape(-1, 4)
    return _write_cloud(path, vertices, colors)


def result_to_dict(result: SupportSpotsResult) -> Dict[str, Any]:
    payload = result.to_dict()
    payload["summary"] = {
        "support_points": len(result.support_points),
        "global_support_points": sum(1 for p in result.support_points if p.force > 0),
        "curled_lines": result.curled_line_count,
    }
    return payload


def write_json(path: PathLike, payload: Dict[str, Any]) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
