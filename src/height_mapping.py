"""
Map quantized palette colors to normalised relief heights.

Distinct palette colors are ranked by luminance and the rank is pushed
through a strategy curve. With the default ``dark_high`` direction the
darkest color becomes the tallest relief (1.0) and the lightest sits flush
with the base (0.0). Transparent pixels always get ``transparent_height``.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from colors import Color

logger = logging.getLogger(__name__)

HEIGHT_STRATEGIES = ("linear", "logarithmic", "exponential", "custom")
HEIGHT_DIRECTIONS = ("dark_high", "light_high")


@dataclass
class HeightMappingConfig:
    """How palette ranks become heights."""

    strategy: str = "linear"
    direction: str = "dark_high"
    custom_levels: Optional[List[float]] = None  # indexed by rank, darkest first
    handle_transparency: bool = True
    transparent_height: float = 0.0

    def validate(self) -> None:
        if self.strategy not in HEIGHT_STRATEGIES:
            raise ValueError(f"Unknown height strategy: {self.strategy}")
        if self.direction not in HEIGHT_DIRECTIONS:
            raise ValueError(f"Unknown height direction: {self.direction}")
        if not 0.0 <= self.transparent_height <= 1.0:
            raise ValueError("transparent_height must lie in [0, 1]")
        if self.strategy == "custom":
            if not self.custom_levels:
                raise ValueError("custom strategy needs custom_levels")
            for level in self.custom_levels:
                if not 0.0 <= float(level) <= 1.0:
                    raise ValueError(f"Custom level {level} outside [0, 1]")


def _curve(t: float, strategy: str) -> float:
    if strategy == "logarithmic":
        return float(np.log10(1.0 + 9.0 * t))
    if strategy == "exponential":
        return t * t
    return t


def calculate_height_levels(
    palette: Sequence[Color],
    config: Optional[HeightMappingConfig] = None,
) -> List[float]:
    """Height in ``[0, 1]`` for each palette entry, in palette order.

    Identical colors share a rank and therefore a height.
    """
    if config is None:
        config = HeightMappingConfig()
    config.validate()
    if not palette:
        return []

    distinct = sorted({c.rgb for c in palette}, key=lambda rgb: (
        0.299 * rgb[0] + 0.587 * rgb[1] + 0.114 * rgb[2], rgb,
    ))
    m = len(distinct)

    by_rgb: Dict[tuple, float] = {}
    for rank, rgb in enumerate(distinct):
        # rank 0 is the darkest color
        if m == 1:
            t = 0.0
        elif config.direction == "dark_high":
            t = (m - 1 - rank) / float(m - 1)
        else:
            t = rank / float(m - 1)

        if config.strategy == "custom":
            levels = config.custom_levels
            height = float(levels[min(rank, len(levels) - 1)])
        else:
            height = _curve(t, config.strategy)
        by_rgb[rgb] = float(np.clip(height, 0.0, 1.0))

    return [by_rgb[c.rgb] for c in palette]


def generate_height_map(
    labels: np.ndarray,
    palette_heights: Sequence[float],
    config: Optional[HeightMappingConfig] = None,
) -> np.ndarray:
    """Flat float64 height per pixel from palette labels (``-1`` = transparent)."""
    if config is None:
        config = HeightMappingConfig()

    heights = np.asarray(palette_heights, dtype=float)
    flat = np.asarray(labels).reshape(-1)
    out = np.full(flat.shape, float(config.transparent_height), dtype=float)
    opaque = flat >= 0
    if len(heights):
        out[opaque] = heights[flat[opaque]]
    elif np.any(opaque):
        raise ValueError("Labels reference an empty palette")

    if not config.handle_transparency and np.any(~opaque):
        # Treat transparent pixels as the lowest opaque level.
        out[~opaque] = float(heights.min()) if len(heights) else 0.0

    if len(out) and (out.min() < 0.0 or out.max() > 1.0 or not np.all(np.isfinite(out))):
        raise ValueError("Height map values must lie in [0, 1]")
    return out


def height_map_metrics(height_map: np.ndarray, width: int, height: int) -> dict:
    """Summary statistics: range, distinct levels and a smoothness index.

    Smoothness is ``1 - mean |dh|`` over horizontal and vertical neighbours,
    so a flat map scores 1.0.
    """
    values = np.asarray(height_map, dtype=float)
    if values.size == 0:
        return {
            "min_height": 0.0,
            "max_height": 0.0,
            "height_range": 0.0,
            "unique_heights": 0,
            "mean_height": 0.0,
            "smoothness_index": 1.0,
        }

    grid = values.reshape(height, width)
    diffs = []
    if width > 1:
        diffs.append(np.abs(np.diff(grid, axis=1)).reshape(-1))
    if height > 1:
        diffs.append(np.abs(np.diff(grid, axis=0)).reshape(-1))
    mean_step = float(np.concatenate(diffs).mean()) if diffs else 0.0

    return {
        "min_height": float(values.min()),
        "max_height": float(values.max()),
        "height_range": float(values.max() - values.min()),
        "unique_heights": int(len(np.unique(values))),
        "mean_height": float(values.mean()),
        "smoothness_index": 1.0 - mean_step,
    }
