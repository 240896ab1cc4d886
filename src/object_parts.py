"""
Object parts and the torque-balance stability model.

An ObjectPart accumulates mass and contact statistics of all islands that are
mechanically continuous up to the current layer. ActiveObjectParts is a
disjoint-set over part ids so parts can be merged when an island joins them.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict

import numpy as np

from extrusion_geometry import ExtrusionLine
from island_graph import Island, IslandConnection
from support_params import EPSILON, SupportSpotsParams

logger = logging.getLogger(__name__)

# returned by is_stable_while_extruding when a pivot cannot fail
STABLE = -1.0


def compute_directional_xy_variance(
    line_dir: np.ndarray,
    centroid_accumulator: np.ndarray,
    second_moment_of_area_accumulator: np.ndarray,
    second_moment_of_area_covariance_accumulator: float,
    area: float,
) -> float:
    """Variance of the contact area along line_dir.

    Var(aX + bY) = a^2 Var(X) + b^2 Var(Y) + 2ab Cov(X, Y)
    """
    centroid = centroid_accumulator / area
    variance = second_moment_of_area_accumulator / area - centroid[:2] * centroid[:2]
    if not np.all(np.isfinite(variance)):
        return math.inf
    covariance = second_moment_of_area_covariance_accumulator / area - centroid[0] * centroid[1]
    return float(
        line_dir[0] * line_dir[0] * variance[0]
        + line_dir[1] * line_dir[1] * variance[1]
        + 2.0 * line_dir[0] * line_dir[1] * covariance
    )


def compute_elastic_section_modulus(
    line_dir: np.ndarray,
    extreme_point: np.ndarray,
    centroid_accumulator: np.ndarray,
    second_moment_of_area_accumulator: np.ndarray,
    second_moment_of_area_covariance_accumulator: float,
    area: float,
) -> float:
    """Section modulus of the contact area for bending along line_dir.

    Returns 0 for (near) zero variance or a degenerate fiber distance.
    """
    directional_xy_variance = compute_directional_xy_variance(
        line_dir,
        centroid_accumulator,
        second_moment_of_area_accumulator,
        second_moment_of_area_covariance_accumulator,
        area,
    )
    if directional_xy_variance < EPSILON:
        return 0.0
    if math.isinf(directional_xy_variance):
        return math.inf
    centroid = centroid_accumulator / area
    # distance from the extreme point to the neutral axis through the centroid
    extreme_fiber_dist = abs(float(np.dot(np.asarray(extreme_point)[:2] - centroid[:2], line_dir)))
    if extreme_fiber_dist < EPSILON:
        return 0.0
    return area * directional_xy_variance / extreme_fiber_dist


@dataclass
class ObjectPart:
    """Accumulated mass and sticking statistics of merged islands."""
    volume: float = 0.0
    volume_centroid_accumulator: np.ndarray = field(default_factory=lambda: np.zeros(3))
    sticking_area: float = 0.0
    sticking_centroid_accumulator: np.ndarray = field(default_factory=lambda: np.zeros(3))
    sticking_second_moment_of_area_accumulator: np.ndarray = field(default_factory=lambda: np.zeros(2))
    sticking_second_moment_of_area_covariance_accumulator: float = 0.0

    @classmethod
    def from_island(cls, island: Island) -> "ObjectPart":
        return cls(
            volume=island.volume,
            volume_centroid_accumulator=island.volume_centroid_accumulator.copy(),
            sticking_area=island.sticking_area,
            sticking_centroid_accumulator=island.sticking_centroid_accumulator.copy(),
            sticking_second_moment_of_area_accumulator=island.sticking_second_moment_of_area_accumulator.copy(),
            sticking_second_moment_of_area_covariance_accumulator=(
                island.sticking_second_moment_of_area_covariance_accumulator
            ),
        )

    def get_volume(self) -> float:
        return self.volume

    def add(self, other: "ObjectPart") -> None:
        self.volume += other.volume
        self.volume_centroid_accumulator = self.volume_centroid_accumulator + other.volume_centroid_accumulator
        self.sticking_area += other.sticking_area
        self.sticking_centroid_accumulator = self.sticking_centroid_accumulator + other.sticking_centroid_accumulator
        self.sticking_second_moment_of_area_accumulator = (
            self.sticking_second_moment_of_area_accumulator + other.sticking_second_moment_of_area_accumulator
        )
        self.sticking_second_moment_of_area_covariance_accumulator += (
            other.sticking_second_moment_of_area_covariance_accumulator
        )

    def add_support_point(self, position: np.ndarray, sticking_area: float) -> None:
        position = np.asarray(position, dtype=float)
        self.sticking_area += sticking_area
        self.sticking_centroid_accumulator = self.sticking_centroid_accumulator + sticking_area * position
        self.sticking_second_moment_of_area_accumulator = (
            self.sticking_second_moment_of_area_accumulator + sticking_area * position[:2] * position[:2]
        )
        self.sticking_second_moment_of_area_covariance_accumulator += sticking_area * position[0] * position[1]

    def is_stable_while_extruding(
        self,
        connection: IslandConnection,
        extruded_line: ExtrusionLine,
        extreme_point: np.ndarray,
        layer_z: float,
        params: SupportSpotsParams,
    ) -> float:
        """Force a support at extreme_point must hold while extruding the line.

        Evaluates the torque balance at the bed and at the weakest connection.
        A positive value means the part would fail; zero or negative is stable.
        """
        if self.volume < EPSILON:
            return STABLE
        line_dir = extruded_line.direction()
        extreme_point = np.asarray(extreme_point, dtype=float)
        mass_centroid = self.volume_centroid_accumulator / self.volume
        mass = self.volume * params.filament_density
        weight = mass * params.gravity_constant

        movement_force = params.max_acceleration * mass
        extruder_conflict_force = params.standard_extruder_conflict_force + min(
            extruded_line.malformation, 1.0
        ) * params.malformations_additive_conflict_extruder_force

        # bed pivot
        if self.sticking_area >= EPSILON:
            bed_centroid = self.sticking_centroid_accumulator / self.sticking_area
            bed_yield_torque = -compute_elastic_section_modulus(
                line_dir,
                extreme_point,
                self.sticking_centroid_accumulator,
                self.sticking_second_moment_of_area_accumulator,
                self.sticking_second_moment_of_area_covariance_accumulator,
                self.sticking_area,
            ) * params.get_bed_adhesion_yield_strength()

            bed_weight_arm = mass_centroid[:2] - bed_centroid[:2]
            bed_weight_arm_len = float(np.linalg.norm(bed_weight_arm))
            bed_weight_dir = bed_weight_arm / bed_weight_arm_len if bed_weight_arm_len > EPSILON else np.zeros(2)
            bed_weight_dir_xy_variance = compute_directional_xy_variance(
                bed_weight_dir,
                self.sticking_centroid_accumulator,
                self.sticking_second_moment_of_area_accumulator,
                self.sticking_second_moment_of_area_covariance_accumulator,
                self.sticking_area,
            )
            # weight pulls the part down onto the bed while its centroid stays over the contact
            bed_weight_sign = (
                -1.0 if bed_weight_arm_len < 2.0 * math.sqrt(max(0.0, bed_weight_dir_xy_variance)) else 1.0
            )
            bed_weight_torque = bed_weight_sign * bed_weight_arm_len * weight

            bed_movement_arm = max(0.0, float(mass_centroid[2] - bed_centroid[2]))
            bed_movement_torque = movement_force * bed_movement_arm

            bed_conflict_torque_arm = layer_z - float(bed_centroid[2])
            bed_extruder_conflict_torque = extruder_conflict_force * bed_conflict_torque_arm

            bed_total_torque = (
                bed_movement_torque + bed_extruder_conflict_torque + bed_weight_torque + bed_yield_torque
            )
            logger.debug(
                "Bed pivot at z=%.3f: yield %.1f, weight %.1f, movement %.1f, conflict %.1f",
                layer_z, bed_yield_torque, bed_weight_torque, bed_movement_torque, bed_extruder_conflict_torque,
            )
            if bed_total_torque > 0 and bed_conflict_torque_arm > EPSILON:
                return bed_total_torque / bed_conflict_torque_arm

        # weakest connection pivot
        if connection.area < EPSILON:
            return STABLE
        conn_centroid = connection.centroid_accumulator / connection.area
        conn_conflict_torque_arm = layer_z - float(conn_centroid[2])
        if conn_conflict_torque_arm < params.min_connection_evaluation_height:
            return STABLE

        conn_yield_torque = compute_elastic_section_modulus(
            line_dir,
            extreme_point,
            connection.centroid_accumulator,
            connection.second_moment_of_area_accumulator,
            connection.second_moment_of_area_covariance_accumulator,
            connection.area,
        ) * params.material_yield_strength
        if math.isinf(conn_yield_torque):
            return STABLE

        conn_weight_arm = float(np.linalg.norm(conn_centroid[:2] - mass_centroid[:2]))
        conn_weight_torque = conn_weight_arm * weight * (float(conn_centroid[2]) / layer_z)

        conn_movement_arm = max(0.0, float(mass_centroid[2] - conn_centroid[2]))
        conn_movement_torque = movement_force * conn_movement_arm

        conn_extruder_conflict_torque = extruder_conflict_force * conn_conflict_torque_arm

        conn_total_torque = (
            conn_movement_torque + conn_extruder_conflict_torque + conn_weight_torque - conn_yield_torque
        )
        logger.debug(
            "Connection pivot at z=%.3f: yield %.1f, weight %.1f, movement %.1f, conflict %.1f",
            layer_z, conn_yield_torque, conn_weight_torque, conn_movement_torque, conn_extruder_conflict_torque,
        )
        return conn_total_torque / conn_conflict_torque_arm


class ActiveObjectParts:
    """Disjoint-set of object parts with lazy path compression."""

    def __init__(self):
        self._next_part_idx = 0
        self._parts: Dict[int, ObjectPart] = {}
        self._id_mapping: Dict[int, int] = {}

    def get_flat_id(self, part_id: int) -> int:
        index = self._id_mapping[part_id]
        while index != self._id_mapping[index]:
            index = self._id_mapping[index]
        i = part_id
        while self._id_mapping[i] != index:
            nxt = self._id_mapping[i]
            self._id_mapping[i] = index
            i = nxt
        return index

    def access(self, part_id: int) -> ObjectPart:
        return self._parts[self.get_flat_id(part_id)]

    def insert(self, island: Island) -> int:
        part_id = self._next_part_idx
        self._parts[part_id] = ObjectPart.from_island(island)
        self._id_mapping[part_id] = part_id
        self._next_part_idx += 1
        return part_id

    def merge(self, from_id: int, to_id: int) -> None:
        to_flat = self.get_flat_id(to_id)
        from_flat = self.get_flat_id(from_id)
        if to_flat == from_flat:
            return
        self._parts[to_flat].add(self._parts.pop(from_flat))
        self._id_mapping[from_flat] = to_flat
        self._id_mapping[from_id] = to_flat

    @property
    def part_count(self) -> int:
        return len(self._parts)

    def total_volume(self) -> float:
        return float(sum(part.volume for part in self._parts.values()))

    def parts(self) -> Dict[int, ObjectPart]:
        """Live parts keyed by canonical id."""
        return dict(self._parts)
