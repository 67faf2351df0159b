"""
FDM filament catalog.

Densities and typical print settings for common filaments. Used by
geometry_validator.py for material-usage and print-time estimates.
"""

from dataclasses import dataclass

MM3_PER_CM3 = 1000.0


@dataclass
class Filament:
    """A printable filament."""

    name: str
    density: float  # g/cm³
    nozzle_temp_c: int
    bed_temp_c: int
    print_speed_mm_s: float = 50.0

    @property
    def density_g_per_mm3(self) -> float:
        return self.density / MM3_PER_CM3


FILAMENTS = {
    "pla": Filament(
        name="PLA",
        density=1.24,
        nozzle_temp_c=210,
        bed_temp_c=60,
    ),
    "petg": Filament(
        name="PETG",
        density=1.27,
        nozzle_temp_c=240,
        bed_temp_c=80,
        print_speed_mm_s=40.0,
    ),
    "abs": Filament(
        name="ABS",
        density=1.04,
        nozzle_temp_c=245,
        bed_temp_c=100,
    ),
    "tpu": Filament(
        name="TPU",
        density=1.21,
        nozzle_temp_c=225,
        bed_temp_c=50,
        print_speed_mm_s=25.0,
    ),
}


def get_filament(key: str) -> Filament:
    """Look up a filament; raises KeyError with the known keys."""
    try:
        return FILAMENTS[key]
    except KeyError:
        raise KeyError(
            f"Unknown filament '{key}'. Known: {', '.join(sorted(FILAMENTS))}"
        ) from None
