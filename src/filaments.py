"""
Filament catalog.

Bed adhesion yield strengths of common FFF filaments. Used by
support_params.py to pick the adhesion limit for the bed torque check.
"""

from dataclasses import dataclass
from typing import Tuple

MPA_TO_FORCE_PER_AREA = 1e6  # MPa -> (g*mm/s^2)/mm^2


@dataclass(frozen=True)
class Filament:
    """A filament family the stability model knows about."""

    name: str
    bed_adhesion_mpa: float  # yield strength of the bed/first-layer bond
    aliases: Tuple[str, ...] = ()

    @property
    def bed_adhesion_yield_strength(self) -> float:
        return self.bed_adhesion_mpa * MPA_TO_FORCE_PER_AREA


# PLA has the weakest bed bond of the common materials, so unknown
# filaments fall back to it.
DEFAULT_FILAMENT = "PLA"

FILAMENTS = {
    "PLA": Filament(
        name="Polylactic Acid",
        bed_adhesion_mpa=0.02,
    ),
    "PETG": Filament(
        name="Polyethylene Terephthalate Glycol",
        bed_adhesion_mpa=0.3,
        aliases=("PET",),
    ),
    "ABS": Filament(
        name="Acrylonitrile Butadiene Styrene",
        bed_adhesion_mpa=0.1,
        aliases=("ASA",),
    ),
}

# Adhesion of a support spot interface (tip of a support to the model)
SUPPORT_SPOT_ADHESION_MPA = 0.016


def lookup_filament(filament_type: str) -> Filament:
    """Find a catalog entry by key or alias, falling back to PLA."""
    key = filament_type.strip().upper()
    if key in FILAMENTS:
        return FILAMENTS[key]
    for filament in FILAMENTS.values():
        if key in filament.aliases:
            return filament
    return FILAMENTS[DEFAULT_FILAMENT]


def is_known_filament(filament_type: str) -> bool:
    key = filament_type.strip().upper()
    return key in FILAMENTS or any(key in f.aliases for f in FILAMENTS.values())
