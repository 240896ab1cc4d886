"""
Global stability of the growing object.

Walks the island graph layer by layer, merging islands into object parts and
tracking the weakest inter-layer connection below each island. Boundary
lines of every island are checked with the torque model; where the part would
detach from the bed or break at its weakest connection, a support point is
placed.
"""
import logging
from typing import Dict, List, Sequence

import numpy as np

from extrusion_geometry import SupportPoint
from island_graph import IslandConnection, LayerIslands
from lines_distancer import LinesDistancer
from object_parts import ActiveObjectParts, ObjectPart
from raster_grids import SupportGridFilter
from support_params import SupportSpotsParams

logger = logging.getLogger(__name__)

PIVOT_SEARCH_DISTANCE = 300.0  # mm, far point along the line used to find the extreme boundary point


class GlobalStabilityAnalyzer:
    """Second pass state: parts, island ownership and weakest connections.

    Island ids in the mappings refer to the most recently processed layer.
    """

    def __init__(self, supports_presence_grid: SupportGridFilter, params: SupportSpotsParams):
        self.params = params
        self.supports_presence_grid = supports_presence_grid
        self.active_object_parts = ActiveObjectParts()
        self.island_to_object_part: Dict[int, int] = {}
        self.island_weakest_connection: Dict[int, IslandConnection] = {}
        self.support_points: List[SupportPoint] = []

    def run(self, islands_graph: Sequence[LayerIslands]) -> List[SupportPoint]:
        for layer_islands in islands_graph:
            self.process_layer(layer_islands)
        logger.info(
            "Global stability: %d support points, %d object parts",
            len(self.support_points),
            self.active_object_parts.part_count,
        )
        return self.support_points

    def process_layer(self, layer_islands: LayerIslands) -> List[SupportPoint]:
        """Advance the parts by one layer and place its support points."""
        self._update_parts(layer_islands)
        placed: List[SupportPoint] = []
        for island_idx in range(len(layer_islands.islands)):
            placed.extend(self._check_island(layer_islands, island_idx))
        self.support_points.extend(placed)
        return placed

    def _update_parts(self, layer_islands: LayerIslands) -> None:
        layer_z = layer_islands.layer_z
        next_island_to_object_part: Dict[int, int] = {}
        next_island_weakest_connection: Dict[int, IslandConnection] = {}

        for island_idx, island in enumerate(layer_islands.islands):
            if not island.connected_islands:
                # new object part emerging
                part_id = self.active_object_parts.insert(island)
                next_island_to_object_part[island_idx] = part_id
                next_island_weakest_connection[island_idx] = IslandConnection.infinitely_strong()
                continue

            transferred_weakest_connection = IslandConnection()
            new_weakest_connection = IslandConnection()
            parts_ids = []
            for prev_idx, connection in island.connected_islands.items():
                part_id = self.active_object_parts.get_flat_id(self.island_to_object_part[prev_idx])
                if part_id not in parts_ids:
                    parts_ids.append(part_id)
                transferred_weakest_connection.add(self.island_weakest_connection[prev_idx])
                new_weakest_connection.add(connection)

            final_part_id = parts_ids[0]
            for part_id in parts_ids[1:]:
                self.active_object_parts.merge(part_id, final_part_id)

            if transferred_weakest_connection.estimate_strength(layer_z) > new_weakest_connection.estimate_strength(
                layer_z
            ):
                transferred_weakest_connection = new_weakest_connection
            next_island_weakest_connection[island_idx] = transferred_weakest_connection
            next_island_to_object_part[island_idx] = final_part_id
            self.active_object_parts.access(final_part_id).add(ObjectPart.from_island(island))

        self.island_to_object_part = next_island_to_object_part
        self.island_weakest_connection = next_island_weakest_connection

    def _check_island(self, layer_islands: LayerIslands, island_idx: int) -> List[SupportPoint]:
        params = self.params
        layer_z = layer_islands.layer_z
        island = layer_islands.islands[island_idx]
        part = self.active_object_parts.access(self.island_to_object_part[island_idx])
        weakest_conn = self.island_weakest_connection[island_idx]

        lines = island.external_lines
        if not lines:
            return []
        island_lines_dist = LinesDistancer.from_lines(lines)
        search_points = np.array(
            [line.b + line.direction() * PIVOT_SEARCH_DISTANCE for line in lines], dtype=float
        )
        _, _, target_points = island_lines_dist.distance_from_lines_extra(search_points)

        placed: List[SupportPoint] = []
        unchecked_dist = params.min_distance_between_support_points + 1.0
        for line_idx, line in enumerate(lines):
            if (
                unchecked_dist + line.len < params.min_distance_between_support_points
                and line.malformation < params.malformed_line_limit
            ) or line.len == 0:
                unchecked_dist += line.len
                continue

            unchecked_dist = line.len
            target = target_points[line_idx]
            support_point = np.array([target[0], target[1], layer_z])
            force = part.is_stable_while_extruding(weakest_conn, line, support_point, layer_z, params)
            if force <= 0 or self.supports_presence_grid.position_taken(support_point):
                continue

            contact_area = params.support_spot_contact_area()
            part.add_support_point(support_point, contact_area)
            radius = (
                params.small_parts_support_points_interface_radius
                if part.get_volume() < params.small_parts_threshold
                else params.support_points_interface_radius
            )
            direction = line.direction()
            placed.append(SupportPoint(
                position=support_point,
                force=float(force),
                spot_radius=radius,
                direction=np.array([direction[0], direction[1], 0.0]),
            ))
            self.supports_presence_grid.take_position(support_point)
            # the new support also strengthens the weakest connection for later checks
            weakest_conn.add_contact(support_point, contact_area)
        return placed


def check_global_stability(
    supports_presence_grid: SupportGridFilter,
    islands_graph: Sequence[LayerIslands],
    params: SupportSpotsParams,
) -> List[SupportPoint]:
    """Support points needed for the whole graph, in print order."""
    return GlobalStabilityAnalyzer(supports_presence_grid, params).run(islands_graph)
