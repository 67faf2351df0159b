"""
Color value type and helpers used by quantization and layer coloring.

Distances are Euclidean in RGB; alpha never contributes to distance.
Luminance is the perceived-brightness weighting 0.299R + 0.587G + 0.114B.
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class Color:
    """An RGBA color with 0-255 channels and 0-1 alpha."""

    r: int
    g: int
    b: int
    a: float = 1.0

    def __post_init__(self):
        for name in ("r", "g", "b"):
            value = getattr(self, name)
            if not 0 <= int(value) <= 255:
                raise ValueError(f"Channel {name}={value} outside 0-255")
            object.__setattr__(self, name, int(value))
        alpha = float(self.a)
        if not 0.0 <= alpha <= 1.0:
            raise ValueError(f"Alpha {alpha} outside 0-1")
        object.__setattr__(self, "a", alpha)

    @property
    def hex(self) -> str:
        return f"#{self.r:02x}{self.g:02x}{self.b:02x}"

    @property
    def rgb(self) -> Tuple[int, int, int]:
        return (self.r, self.g, self.b)

    @property
    def luminance(self) -> float:
        return 0.299 * self.r + 0.587 * self.g + 0.114 * self.b

    def to_rgba_bytes(self) -> Tuple[int, int, int, int]:
        return (self.r, self.g, self.b, int(round(self.a * 255)))

    @classmethod
    def from_rgba(cls, values: Sequence[float]) -> "Color":
        """Build from ``(r, g, b[, a])``; alpha given on the 0-1 scale."""
        r, g, b = (int(round(float(v))) for v in values[:3])
        a = float(values[3]) if len(values) > 3 else 1.0
        return cls(
            min(255, max(0, r)),
            min(255, max(0, g)),
            min(255, max(0, b)),
            min(1.0, max(0.0, a)),
        )

    @classmethod
    def from_hex(cls, text: str, alpha: float = 1.0) -> "Color":
        value = text.lstrip("#")
        if len(value) == 3:
            value = "".join(ch * 2 for ch in value)
        if len(value) != 6:
            raise ValueError(f"Invalid hex color: {text!r}")
        return cls(int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16), alpha)


BASE_COLOR = Color(128, 128, 128, 1.0)


def euclidean_distance(c1: Color, c2: Color) -> float:
    return float(np.sqrt(
        (c1.r - c2.r) ** 2 + (c1.g - c2.g) ** 2 + (c1.b - c2.b) ** 2
    ))


def is_transparent(color: Color, threshold: float = 0.1) -> bool:
    return color.a < threshold


def sort_by_luminance(colors: Sequence[Color], descending: bool = False) -> List[Color]:
    """Sort darkest-first (stable), or lightest-first with ``descending``."""
    return sorted(colors, key=lambda c: c.luminance, reverse=descending)


def dominant_color(colors: Sequence[Color], counts: Sequence[int]) -> Color:
    """Color with the highest count; first one wins ties."""
    if not colors:
        raise ValueError("dominant_color needs at least one color")
    best = int(np.argmax(np.asarray(counts)))
    return colors[best]


def count_palette_usage(labels: np.ndarray, palette_size: int) -> Dict[int, int]:
    """Pixel count per palette index, ignoring negative (transparent) labels."""
    valid = labels[labels >= 0]
    counts = np.bincount(valid, minlength=palette_size)
    return {i: int(c) for i, c in enumerate(counts)}
