"""
Pixel sampling for K-means.

Bounds clustering cost independently of image resolution by drawing at most
``max_samples`` pixels. Small images are sampled exhaustively; larger ones
with a uniform grid (deterministic) or seeded random draws.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)

SAMPLING_STRATEGIES = ("uniform", "random", "all")


@dataclass
class SamplingConfig:
    """Pixel sampling options."""

    max_samples: int = 10000
    strategy: str = "uniform"
    exclude_transparent: bool = True
    transparency_threshold: float = 0.1  # alpha (0-1) below which a pixel is skipped
    preserve_corners: bool = True


@dataclass
class PixelSamples:
    """Sampled pixels as parallel arrays."""

    colors: np.ndarray      # (n, 4) float: R, G, B in 0-255, A in 0-1
    positions: np.ndarray   # (n, 2) int: x, y
    total_pixels: int
    strategy: str

    def __len__(self) -> int:
        return int(len(self.colors))

    @property
    def sampling_ratio(self) -> float:
        if self.total_pixels == 0:
            return 0.0
        return len(self) / float(self.total_pixels)


def sample_pixels(
    image: np.ndarray,
    config: Optional[SamplingConfig] = None,
    rng: Optional[np.random.Generator] = None,
) -> PixelSamples:
    """Sample pixels from an ``(H, W, 4)`` uint8 RGBA image."""
    if config is None:
        config = SamplingConfig()
    if config.strategy not in SAMPLING_STRATEGIES:
        raise ValueError(f"Unknown sampling strategy: {config.strategy}")

    height, width = image.shape[:2]
    total = width * height
    max_samples = max(1, int(config.max_samples))

    if total <= max_samples or config.strategy == "all":
        ys, xs = np.mgrid[0:height, 0:width]
        positions = np.column_stack([xs.reshape(-1), ys.reshape(-1)])
        strategy = "all"
    elif config.strategy == "uniform":
        positions = _uniform_positions(width, height, max_samples, config.preserve_corners)
        strategy = "uniform"
    else:
        if rng is None:
            rng = np.random.default_rng()
        positions = _random_positions(width, height, max_samples, config.preserve_corners, rng)
        strategy = "random"

    rgba = image[positions[:, 1], positions[:, 0]].astype(float)
    rgba[:, 3] /= 255.0

    if config.exclude_transparent:
        keep = rgba[:, 3] >= config.transparency_threshold
        rgba = rgba[keep]
        positions = positions[keep]

    rgba = rgba[:max_samples]
    positions = positions[:max_samples]
    logger.debug(
        "Sampled %d of %d pixels (%s)", len(rgba), total, strategy,
    )
    return PixelSamples(colors=rgba, positions=positions, total_pixels=total, strategy=strategy)


def _corner_positions(width: int, height: int) -> np.ndarray:
    corners = {(0, 0), (width - 1, 0), (0, height - 1), (width - 1, height - 1)}
    return np.array(sorted(corners), dtype=int)


def _uniform_positions(
    width: int, height: int, max_samples: int, preserve_corners: bool,
) -> np.ndarray:
    step = max(1, int(np.floor(np.sqrt(width * height / float(max_samples)))))
    ys, xs = np.mgrid[0:height:step, 0:width:step]
    grid = np.column_stack([xs.reshape(-1), ys.reshape(-1)])
    corners = _corner_positions(width, height) if preserve_corners else np.zeros((0, 2), dtype=int)
    budget = max(1, max_samples - len(corners))
    if len(grid) > budget:
        # Even thinning keeps the grid spread over the whole image.
        keep = np.linspace(0, len(grid) - 1, budget).astype(int)
        grid = grid[np.unique(keep)]
    if len(corners):
        grid = np.unique(np.vstack([corners, grid]), axis=0)
    return grid[:max_samples]


def _random_positions(
    width: int,
    height: int,
    max_samples: int,
    preserve_corners: bool,
    rng: np.random.Generator,
) -> np.ndarray:
    flat = rng.choice(width * height, size=max_samples, replace=False)
    positions = np.column_stack([flat % width, flat // width])
    if preserve_corners:
        corners = _corner_positions(width, height)
        positions = np.vstack([corners, positions])[:max_samples]
    return positions
