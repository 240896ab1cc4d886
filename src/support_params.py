"""
Physical and geometric constants for support spot generation.

All computations use distance [mm], mass [g], time [s] and force [g*mm/s^2].
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Sequence, Tuple

from filaments import (
    DEFAULT_FILAMENT,
    MPA_TO_FORCE_PER_AREA,
    SUPPORT_SPOT_ADHESION_MPA,
    is_known_filament,
    lookup_filament,
)

logger = logging.getLogger(__name__)

GRAVITY_CONSTANT = 9806.65  # mm/s^2, printer assumed upright
EPSILON = 1e-4


@dataclass(frozen=True)
class SupportSpotsParams:
    """Stability model configuration, supplied once per analysis run."""

    # Local bridging
    bridge_distance: float = 16.0  # mm
    bridge_distance_decrease_by_curvature_factor: float = 5.0

    # Printer / job
    max_acceleration: float = 1000.0  # mm/s^2, XY movement of the object
    raft_layers_count: int = 0
    filament_type: str = DEFAULT_FILAMENT

    # Malformations and curling
    malformation_distance_factors: Tuple[float, float] = (0.2, 1.1)
    max_malformation_factor: float = 10.0
    max_curled_height_factor: float = 10.0
    curled_distance_expansion: float = 1.0
    curling_tolerance_limit: float = 0.1
    malformed_line_limit: float = 0.3

    # Support points
    min_distance_between_support_points: float = 3.0  # mm
    support_points_interface_radius: float = 1.5  # mm
    small_parts_threshold: float = 5.0  # mm^3
    small_parts_support_points_interface_radius: float = 0.1  # mm

    # Island graph
    connections_min_considerable_area: float = 1.5  # mm^2
    min_connection_evaluation_height: float = 3.0  # mm

    # Physics
    gravity_constant: float = GRAVITY_CONSTANT
    filament_density: float = 1.25e-3  # g/mm^3
    material_yield_strength: float = 33.0 * 1e6  # 33 MPa, ABS (weakest common)
    standard_extruder_conflict_force: float = 10.0 * GRAVITY_CONSTANT
    malformations_additive_conflict_extruder_force: float = 65.0 * GRAVITY_CONSTANT

    # Rasterization
    rasterization_workers: int = field(default=4, compare=False)

    @property
    def min_malformation_distance_factor(self) -> float:
        return self.malformation_distance_factors[0]

    @property
    def max_malformation_distance_factor(self) -> float:
        return self.malformation_distance_factors[1]

    def get_support_spots_adhesion_strength(self) -> float:
        return SUPPORT_SPOT_ADHESION_MPA * MPA_TO_FORCE_PER_AREA

    def get_bed_adhesion_yield_strength(self) -> float:
        """Yield strength of the bond between the first layer and the bed."""
        if self.raft_layers_count > 0:
            return self.get_support_spots_adhesion_strength() * 2.0
        return lookup_filament(self.filament_type).bed_adhesion_yield_strength

    def support_spot_contact_area(self) -> float:
        """Contact area a placed support spot contributes to the model.

        Lowered for materials with strong bed adhesion, as that adhesion
        does not apply to support interfaces.
        """
        area = self.support_points_interface_radius ** 2 * math.pi
        return area * self.get_support_spots_adhesion_strength() / self.get_bed_adhesion_yield_strength()

    @classmethod
    def from_filament(cls, filament_type: str, **overrides) -> "SupportSpotsParams":
        if not is_known_filament(filament_type):
            logger.warning(
                "Unknown filament type %r, using %s bed adhesion", filament_type, DEFAULT_FILAMENT
            )
        return cls(filament_type=filament_type.strip().upper(), **overrides)

    @classmethod
    def from_filaments(
        cls,
        filament_types: Sequence[str],
        max_acceleration: float,
        raft_layers_count: int = 0,
        **overrides,
    ) -> "SupportSpotsParams":
        """Build params for a print job; only the first filament is used."""
        if len(filament_types) > 1:
            logger.warning(
                "Support spots generation does not handle multiple materials, only %s will be used",
                filament_types[0],
            )
        if not filament_types or not filament_types[0]:
            logger.error("Empty filament type, falling back to %s", DEFAULT_FILAMENT)
            filament_type = DEFAULT_FILAMENT
        else:
            filament_type = filament_types[0]
            logger.debug("Applying filament type: %s", filament_type)
        return cls.from_filament(
            filament_type,
            max_acceleration=max_acceleration,
            raft_layers_count=raft_layers_count,
            **overrides,
        )
