"""
Shared test fixtures for the image-to-bookmark pipeline tests.
"""
import sys
from pathlib import Path

import numpy as np
import pytest
import trimesh

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from color_quantizer import QuantizerConfig, quantize
from geometry_generator import BookmarkParameters


def concentric_squares(size: int = 32, ring: int = 4) -> np.ndarray:
    """RGBA image of nested square rings: white border, black centre.

    Ring index is ``min(x, y, size-1-x, size-1-y) // ring``; a 32px image with
    4px rings has four gray levels (255, 170, 85, 0).
    """
    ys, xs = np.mgrid[0:size, 0:size]
    depth = np.minimum(np.minimum(xs, ys), np.minimum(size - 1 - xs, size - 1 - ys)) // ring
    levels = np.array([255, 170, 85, 0], dtype=np.uint8)
    gray = levels[np.clip(depth, 0, 3)]
    image = np.zeros((size, size, 4), dtype=np.uint8)
    image[..., 0] = gray
    image[..., 1] = gray
    image[..., 2] = gray
    image[..., 3] = 255
    return image


def concentric_discs(width: int = 100, height: int = 300, ring: int = 15) -> np.ndarray:
    """RGBA image of a centred target: black disc, two gray rings, white field.

    Rings are *ring* pixels wide, measured from pixel centres.
    """
    ys, xs = np.mgrid[0:height, 0:width]
    radius = np.hypot(xs + 0.5 - width / 2.0, ys + 0.5 - height / 2.0)
    levels = np.array([0, 85, 170, 255], dtype=np.uint8)
    gray = levels[np.clip((radius // ring).astype(int), 0, 3)]
    image = np.full((height, width, 4), 255, dtype=np.uint8)
    image[..., 0] = gray
    image[..., 1] = gray
    image[..., 2] = gray
    return image


@pytest.fixture
def target_image():
    """100x300 target; 0.5mm pixels on a 50x150mm bookmark."""
    return concentric_discs()


@pytest.fixture
def gradient_image():
    """32x32 concentric-square image with four gray levels."""
    return concentric_squares()


@pytest.fixture
def two_tone_image():
    """16x16 image: left half black, right half white."""
    image = np.full((16, 16, 4), 255, dtype=np.uint8)
    image[:, :8, :3] = 0
    return image


@pytest.fixture
def noisy_image():
    """64x48 random RGB image (seeded)."""
    rng = np.random.default_rng(42)
    return rng.integers(0, 256, size=(48, 64, 3), dtype=np.uint8)


@pytest.fixture
def bookmark_parameters():
    """30x60mm bookmark with 0.4mm relief steps."""
    return BookmarkParameters(
        width=30.0,
        height=60.0,
        layer_thickness=0.4,
        base_thickness=2.0,
        corner_radius=2.0,
        color_count=4,
    )


@pytest.fixture
def quantized_gradient(gradient_image):
    """The concentric-square image quantized to four colors."""
    return quantize(gradient_image, 4, QuantizerConfig(seed=0))


@pytest.fixture
def box_mesh():
    """A closed 10x10x2mm box sitting on z=0."""
    mesh = trimesh.creation.box(extents=[10, 10, 2])
    mesh.apply_translation([0, 0, 1])
    return mesh
