"""
K-means color quantization with k-means++ seeding.

Reduces an RGBA image to a palette of ``k`` colors (2..8), assigns every pixel
to its nearest palette entry and derives a normalised height map from the
palette's luminance ranking. Clustering runs on a bounded pixel sample so the
cost of the iterative phase does not grow with image resolution; only the
final assignment touches every pixel, in chunks so cancellation stays prompt.

Typical use::

    quantized = quantize(rgba_image, k=4, config=QuantizerConfig(seed=7))
    quantized.color_palette   # tuple of Color, darkest relief first
    quantized.height_map      # flat float array in [0, 1]
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from colors import Color, sort_by_luminance
from errors import InvalidInputError
from height_mapping import (
    HeightMappingConfig,
    calculate_height_levels,
    generate_height_map,
)
from progress import CancelCheck, ProgressReporter, as_reporter, check_cancelled
from sampling import SamplingConfig, sample_pixels

logger = logging.getLogger(__name__)

MIN_COLORS = 2
MAX_COLORS = 8
ALPHA_OPAQUE_THRESHOLD = 0.5  # alpha (0-1) below which a pixel counts as transparent


@dataclass
class QuantizerConfig:
    """K-means quantization settings."""

    max_iterations: int = 50
    convergence_threshold: float = 1.0  # max centroid movement in RGB units
    max_samples: int = 10000
    sampling_strategy: str = "uniform"
    preserve_transparency: bool = True
    max_pixels: int = 1_000_000
    assignment_chunk_size: int = 65536
    seed: Optional[int] = None
    height_mapping: HeightMappingConfig = field(default_factory=HeightMappingConfig)


@dataclass
class KMeansResult:
    """Outcome of Lloyd iterations on the sample set."""

    centroids: np.ndarray     # (k, 4) float RGBA, alpha 0-1
    assignments: np.ndarray   # (n,) int, cluster per sample
    iterations: int
    converged: bool
    distortion: float         # sum of squared RGB distances


@dataclass(frozen=True)
class QuantizedImageData:
    """Quantized image plus its palette and per-pixel heights."""

    image_data: np.ndarray          # (H, W, 4) uint8, read-only
    color_palette: Tuple[Color, ...]
    height_map: np.ndarray          # (H*W,) float64 in [0, 1], read-only
    labels: np.ndarray              # (H*W,) int, -1 for transparent, read-only
    palette_heights: Tuple[float, ...]
    width: int
    height: int
    iterations: int = 0
    converged: bool = False

    def __post_init__(self):
        if len(self.height_map) != self.width * self.height:
            raise InvalidInputError(
                f"Height map has {len(self.height_map)} values, "
                f"expected {self.width * self.height}"
            )

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def height_grid(self) -> np.ndarray:
        """Height map reshaped to ``(H, W)``."""
        return self.height_map.reshape(self.height, self.width)

    def label_grid(self) -> np.ndarray:
        return self.labels.reshape(self.height, self.width)


def _readonly(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


# ─── Validation ──────────────────────────────────────────────────────────────


def _as_rgba(image) -> np.ndarray:
    """Validate shape and promote RGB to RGBA uint8."""
    array = np.asarray(image)
    if array.ndim != 3 or array.shape[2] not in (3, 4):
        raise InvalidInputError(
            f"Image must be an (H, W, 3|4) array, got shape {array.shape}"
        )
    height, width = array.shape[:2]
    if width <= 0 or height <= 0:
        raise InvalidInputError(f"Image dimensions must be positive, got {width}x{height}")
    if array.dtype != np.uint8:
        array = np.clip(np.rint(array.astype(float)), 0, 255).astype(np.uint8)
    if array.shape[2] == 3:
        alpha = np.full((height, width, 1), 255, dtype=np.uint8)
        array = np.concatenate([array, alpha], axis=2)
    return np.ascontiguousarray(array)


def _check_color_count(k) -> int:
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)):
        raise InvalidInputError(f"Color count must be an integer, got {k!r}")
    if not MIN_COLORS <= int(k) <= MAX_COLORS:
        raise InvalidInputError(
            f"Color count must be between {MIN_COLORS} and {MAX_COLORS}, got {k}"
        )
    return int(k)


def validate_quantization_params(image, k) -> List[str]:
    """Human-readable problems with *image* / *k*; empty when usable."""
    problems: List[str] = []
    try:
        _check_color_count(k)
    except InvalidInputError as exc:
        problems.append(str(exc))
    try:
        rgba = _as_rgba(image)
    except InvalidInputError as exc:
        problems.append(str(exc))
        return problems

    height, width = rgba.shape[:2]
    if width * height > QuantizerConfig().max_pixels:
        problems.append(
            f"Image has {width * height} pixels; at most "
            f"{QuantizerConfig().max_pixels} are supported"
        )
    opaque = rgba[..., 3] >= 0.1 * 255
    if not np.any(opaque):
        problems.append("Image is completely transparent")
    return problems


# ─── K-means ─────────────────────────────────────────────────────────────────


def _squared_distances(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """``(n, k)`` squared RGB distances; alpha is ignored."""
    diff = points[:, None, :3] - centroids[None, :, :3]
    return np.einsum("nkc,nkc->nk", diff, diff)


def kmeans_plus_plus(
    samples: np.ndarray,
    k: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Pick ``k`` initial centroids from *samples* with k-means++ weighting.

    The first centroid is uniform; each next one is drawn with probability
    proportional to the squared RGB distance to the nearest chosen centroid.
    When every sample coincides with a centroid the draw falls back to
    uniform.
    """
    n = len(samples)
    if n == 0:
        raise InvalidInputError("Cannot initialise centroids from zero samples")

    chosen = [int(rng.integers(n))]
    nearest = _squared_distances(samples, samples[chosen[0]][None, :])[:, 0]
    while len(chosen) < k:
        total = float(nearest.sum())
        if total <= 0.0:
            idx = int(rng.integers(n))
        else:
            idx = int(rng.choice(n, p=nearest / total))
        chosen.append(idx)
        d = _squared_distances(samples, samples[idx][None, :])[:, 0]
        nearest = np.minimum(nearest, d)

    return samples[chosen].astype(float).copy()


def lloyd(
    samples: np.ndarray,
    centroids: np.ndarray,
    config: Optional[QuantizerConfig] = None,
    reporter: Optional[ProgressReporter] = None,
    cancel: Optional[CancelCheck] = None,
) -> KMeansResult:
    """Refine *centroids* with Lloyd iterations on *samples*.

    Each centroid becomes the mean RGBA of its members with RGB rounded to
    integers; a centroid with no members keeps its previous value.
    """
    if config is None:
        config = QuantizerConfig()
    if reporter is None:
        reporter = ProgressReporter()

    centroids = np.asarray(centroids, dtype=float).copy()
    k = len(centroids)
    max_iter = max(1, int(config.max_iterations))
    assignments = np.zeros(len(samples), dtype=int)
    converged = False
    iterations = 0

    for iteration in range(max_iter):
        check_cancelled(cancel, "clustering")
        iterations = iteration + 1

        assignments = np.argmin(_squared_distances(samples, centroids), axis=1)
        updated = centroids.copy()
        for c in range(k):
            members = samples[assignments == c]
            if len(members) == 0:
                continue
            mean = members.mean(axis=0)
            updated[c, :3] = np.rint(mean[:3])
            updated[c, 3] = mean[3]

        movement = float(np.max(np.linalg.norm(updated[:, :3] - centroids[:, :3], axis=1)))
        centroids = updated
        logger.debug("K-means iteration %d: max movement %.3f", iterations, movement)
        reporter.report(
            "clustering",
            0.3 + 0.5 * iterations / max_iter,
            f"Iteration {iterations} of {max_iter}",
        )
        if movement < config.convergence_threshold:
            converged = True
            break

    assignments = np.argmin(_squared_distances(samples, centroids), axis=1)
    distortion = float(
        _squared_distances(samples, centroids)[np.arange(len(samples)), assignments].sum()
    )
    return KMeansResult(
        centroids=centroids,
        assignments=assignments,
        iterations=iterations,
        converged=converged,
        distortion=distortion,
    )


# ─── Assignment ──────────────────────────────────────────────────────────────


def assign_pixels(
    image: np.ndarray,
    palette: Sequence[Color],
    preserve_transparency: bool = True,
    chunk_size: int = 65536,
    reporter: Optional[ProgressReporter] = None,
    cancel: Optional[CancelCheck] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Map every pixel to its nearest palette color.

    Pixels with alpha below 0.5 are labelled ``-1`` and either copied through
    unchanged (*preserve_transparency*) or zeroed. Returns the ``(H, W, 4)``
    uint8 image and the flat label array. The result depends only on the
    inputs.
    """
    if reporter is None:
        reporter = ProgressReporter()
    rgba = _as_rgba(image)
    height, width = rgba.shape[:2]
    flat = rgba.reshape(-1, 4)
    total = len(flat)

    centers = np.array([[c.r, c.g, c.b] for c in palette], dtype=float)
    palette_bytes = np.array([c.to_rgba_bytes() for c in palette], dtype=np.uint8)
    opaque = flat[:, 3] >= ALPHA_OPAQUE_THRESHOLD * 255

    labels = np.full(total, -1, dtype=np.int64)
    out = np.empty_like(flat)
    step = max(1, int(chunk_size))

    for start in range(0, total, step):
        check_cancelled(cancel, "assignment")
        stop = min(total, start + step)
        chunk = flat[start:stop].astype(float)
        nearest = np.argmin(_squared_distances(chunk, centers), axis=1)
        mask = opaque[start:stop]
        chunk_labels = np.where(mask, nearest, -1)
        labels[start:stop] = chunk_labels

        block = palette_bytes[nearest].copy()
        block[:, 3] = 255
        if preserve_transparency:
            block[~mask] = flat[start:stop][~mask]
        else:
            block[~mask] = 0
        out[start:stop] = block

        reporter.report(
            "assignment",
            min(0.85, 0.8 + 0.05 * stop / total),
            f"Assigned {stop} of {total} pixels",
        )

    return out.reshape(height, width, 4), labels


# ─── Entry points ────────────────────────────────────────────────────────────


def quantize(
    image,
    k: int,
    config: Optional[QuantizerConfig] = None,
    progress=None,
    cancel: Optional[CancelCheck] = None,
    rng: Optional[np.random.Generator] = None,
) -> QuantizedImageData:
    """Quantize *image* to ``k`` colors and compute its height map.

    Raises:
        InvalidInputError: bad ``k``, bad image shape, too many pixels, or no
            usable (non-transparent) pixels to cluster.
        CancelledError: *cancel* fired before the result was complete.
    """
    if config is None:
        config = QuantizerConfig()
    k = _check_color_count(k)
    rgba = _as_rgba(image)
    height, width = rgba.shape[:2]
    if width * height > config.max_pixels:
        raise InvalidInputError(
            f"Image has {width * height} pixels; the limit is {config.max_pixels}"
        )
    try:
        config.height_mapping.validate()
    except ValueError as exc:
        raise InvalidInputError(str(exc)) from exc

    if rng is None:
        rng = np.random.default_rng(config.seed)
    reporter = as_reporter(progress)

    reporter.report("sampling", 0.0, "Sampling pixels")
    samples = sample_pixels(
        rgba,
        SamplingConfig(
            max_samples=config.max_samples,
            strategy=config.sampling_strategy,
        ),
        rng=rng,
    )
    points = samples.colors
    if not config.preserve_transparency:
        points = points[points[:, 3] > ALPHA_OPAQUE_THRESHOLD]
    if len(points) == 0:
        raise InvalidInputError("Image has no opaque pixels to quantize")
    check_cancelled(cancel, "sampling")

    reporter.report("initialization", 0.2, "Choosing initial centroids")
    initial = kmeans_plus_plus(points, k, rng)
    check_cancelled(cancel, "initialization")

    result = lloyd(points, initial, config, reporter=reporter, cancel=cancel)
    palette = tuple(Color.from_rgba(c) for c in result.centroids)

    data, labels = assign_pixels(
        rgba,
        palette,
        preserve_transparency=config.preserve_transparency,
        chunk_size=config.assignment_chunk_size,
        reporter=reporter,
        cancel=cancel,
    )

    reporter.report("height_mapping", 0.85, "Mapping colors to heights")
    heights = calculate_height_levels(palette, config.height_mapping)
    height_map = generate_height_map(labels, heights, config.height_mapping)
    reporter.report("complete", 1.0, "Quantization complete")

    logger.info(
        "Quantized %dx%d image to %d colours in %d iterations (converged=%s)",
        width, height, k, result.iterations, result.converged,
    )
    return QuantizedImageData(
        image_data=_readonly(data),
        color_palette=palette,
        height_map=_readonly(height_map),
        labels=_readonly(labels),
        palette_heights=tuple(heights),
        width=width,
        height=height,
        iterations=result.iterations,
        converged=result.converged,
    )


def suggest_color_count(image, max_samples: int = 10000) -> int:
    """Suggest ``k`` from the number of distinct colors in a sample."""
    rgba = _as_rgba(image)
    samples = sample_pixels(rgba, SamplingConfig(max_samples=max_samples))
    if len(samples) == 0:
        return MIN_COLORS
    distinct = len(np.unique(samples.colors[:, :3].astype(np.int64), axis=0))
    if distinct < 50:
        return 2
    if distinct < 200:
        return 3
    if distinct < 500:
        return 4
    if distinct < 1000:
        return 5
    if distinct < 2000:
        return 6
    return min(MAX_COLORS, int(math.floor(math.log2(distinct))))


def palette_by_luminance(quantized: QuantizedImageData) -> List[Color]:
    """Palette sorted darkest-first."""
    return sort_by_luminance(quantized.color_palette)
