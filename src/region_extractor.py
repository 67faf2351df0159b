"""
Connected-component extraction on binary pixel masks.

Components are found with an explicit-stack flood fill in row-major scan
order, so arbitrarily large regions never hit the recursion limit. Every call
allocates its own visitation buffer; nothing is shared between calls.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

from errors import InvalidInputError
from progress import CancelCheck, check_cancelled

logger = logging.getLogger(__name__)

_NEIGHBOURS_4 = ((1, 0), (-1, 0), (0, 1), (0, -1))
_NEIGHBOURS_8 = _NEIGHBOURS_4 + ((1, 1), (1, -1), (-1, 1), (-1, -1))

# Cancellation is polled once per this many visited pixels.
_CANCEL_EVERY = 4096


@dataclass(frozen=True)
class BoundingBox2D:
    """Inclusive pixel bounds."""

    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    def contains(self, x: int, y: int) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


@dataclass(frozen=True)
class ConnectedComponent:
    """One connected set of foreground pixels."""

    id: int
    pixels: np.ndarray  # (n, 2) int (x, y), read-only
    area: int
    centroid: Tuple[float, float]
    bounding_box: BoundingBox2D

    def __post_init__(self):
        if self.area != len(self.pixels):
            raise ValueError("Component area must equal its pixel count")

    def pixel_set(self) -> set:
        return {(int(x), int(y)) for x, y in self.pixels}


@dataclass
class ExtractionOptions:
    """Connected-component extraction settings."""

    connectivity: int = 8
    min_area: int = 4
    max_components: int = 1000
    sort_by_area: bool = True
    include_holes: bool = False

    @classmethod
    def for_bookmark(cls) -> "ExtractionOptions":
        """Settings used for bookmark relief layers."""
        return cls(connectivity=8, min_area=4, max_components=500, sort_by_area=True)

    def validate(self) -> None:
        if self.connectivity not in (4, 8):
            raise InvalidInputError(f"Connectivity must be 4 or 8, got {self.connectivity}")
        if self.min_area < 0:
            raise InvalidInputError(f"min_area must be >= 0, got {self.min_area}")
        if self.max_components < 1:
            raise InvalidInputError(
                f"max_components must be >= 1, got {self.max_components}"
            )


@dataclass
class ComponentAnalysis:
    """Extraction result and summary statistics."""

    components: List[ConnectedComponent]
    total_area: int = 0
    discarded_area: int = 0
    truncated: bool = False
    holes: Dict[int, int] = field(default_factory=dict)

    @property
    def component_count(self) -> int:
        return len(self.components)

    @property
    def largest_component_size(self) -> int:
        return max((c.area for c in self.components), default=0)

    @property
    def average_area(self) -> float:
        if not self.components:
            return 0.0
        return self.total_area / float(len(self.components))


def _mask_grid(mask, width: int, height: int) -> np.ndarray:
    if width <= 0 or height <= 0:
        raise InvalidInputError(f"Mask dimensions must be positive, got {width}x{height}")
    flat = np.asarray(mask).reshape(-1)
    if flat.size != width * height:
        raise InvalidInputError(
            f"Mask has {flat.size} entries, expected {width * height}"
        )
    return flat.astype(bool).reshape(height, width)


def _flood(
    grid: np.ndarray,
    visited: np.ndarray,
    seed_x: int,
    seed_y: int,
    offsets: Sequence[Tuple[int, int]],
) -> List[Tuple[int, int]]:
    """Collect the component containing the seed; marks pixels visited."""
    height, width = grid.shape
    stack = [(seed_x, seed_y)]
    visited[seed_y, seed_x] = True
    pixels: List[Tuple[int, int]] = []
    while stack:
        x, y = stack.pop()
        pixels.append((x, y))
        for dx, dy in offsets:
            nx, ny = x + dx, y + dy
            if 0 <= nx < width and 0 <= ny < height:
                if grid[ny, nx] and not visited[ny, nx]:
                    visited[ny, nx] = True
                    stack.append((nx, ny))
    return pixels


def _build_component(component_id: int, pixels: List[Tuple[int, int]]) -> ConnectedComponent:
    # Scan order within the component: rows top to bottom, then columns.
    coords = np.array(sorted(pixels, key=lambda p: (p[1], p[0])), dtype=np.int64)
    coords.setflags(write=False)
    xs = coords[:, 0]
    ys = coords[:, 1]
    return ConnectedComponent(
        id=component_id,
        pixels=coords,
        area=len(coords),
        centroid=(float(xs.mean()), float(ys.mean())),
        bounding_box=BoundingBox2D(
            int(xs.min()), int(ys.min()), int(xs.max()), int(ys.max())
        ),
    )


def extract_components(
    mask,
    width: int,
    height: int,
    options: Optional[ExtractionOptions] = None,
    cancel: Optional[CancelCheck] = None,
) -> ComponentAnalysis:
    """Find connected components in a flat row-major boolean *mask*.

    Components smaller than ``min_area`` are dropped (their pixels still count
    as visited). Once ``max_components`` components have been kept the scan
    stops and the partial result is flagged ``truncated``.
    """
    if options is None:
        options = ExtractionOptions()
    options.validate()
    grid = _mask_grid(mask, width, height)

    offsets = _NEIGHBOURS_8 if options.connectivity == 8 else _NEIGHBOURS_4
    visited = np.zeros_like(grid, dtype=bool)
    components: List[ConnectedComponent] = []
    discarded = 0
    truncated = False
    scanned = 0

    ys, xs = np.nonzero(grid)
    for y, x in zip(ys.tolist(), xs.tolist()):
        if visited[y, x]:
            continue
        if len(components) >= options.max_components:
            truncated = True
            break
        pixels = _flood(grid, visited, x, y, offsets)
        scanned += len(pixels)
        if scanned >= _CANCEL_EVERY:
            check_cancelled(cancel, "extracting")
            scanned = 0
        if len(pixels) < options.min_area:
            discarded += len(pixels)
            continue
        components.append(_build_component(len(components), pixels))

    if truncated:
        logger.info(
            "Component limit %d reached; remaining pixels not scanned",
            options.max_components,
        )

    holes: Dict[int, int] = {}
    if options.include_holes:
        for comp in components:
            holes[comp.id] = count_holes(comp)

    if options.sort_by_area:
        # sorted() is stable, so equal areas keep scan order.
        components = sorted(components, key=lambda c: c.area, reverse=True)

    total = int(sum(c.area for c in components))
    logger.debug(
        "Extracted %d components (%d px kept, %d px discarded)",
        len(components), total, discarded,
    )
    return ComponentAnalysis(
        components=components,
        total_area=total,
        discarded_area=int(discarded),
        truncated=truncated,
        holes=holes,
    )


def extract_single_component(
    mask,
    width: int,
    height: int,
    seed_x: int,
    seed_y: int,
    connectivity: int = 8,
) -> Optional[ConnectedComponent]:
    """Component containing ``(seed_x, seed_y)``, or None on background."""
    grid = _mask_grid(mask, width, height)
    if connectivity not in (4, 8):
        raise InvalidInputError(f"Connectivity must be 4 or 8, got {connectivity}")
    if not (0 <= seed_x < width and 0 <= seed_y < height):
        return None
    if not grid[seed_y, seed_x]:
        return None
    offsets = _NEIGHBOURS_8 if connectivity == 8 else _NEIGHBOURS_4
    visited = np.zeros_like(grid, dtype=bool)
    return _build_component(0, _flood(grid, visited, seed_x, seed_y, offsets))


def count_holes(component: ConnectedComponent) -> int:
    """Background regions fully enclosed by *component*.

    Background inside the padded bounding box is flood-filled with
    4-connectivity; regions that do not reach the padding border are holes.
    """
    bbox = component.bounding_box
    w = bbox.width + 2
    h = bbox.height + 2
    grid = np.zeros((h, w), dtype=bool)
    grid[component.pixels[:, 1] - bbox.min_y + 1, component.pixels[:, 0] - bbox.min_x + 1] = True

    background = ~grid
    visited = np.zeros_like(background)
    _flood(background, visited, 0, 0, _NEIGHBOURS_4)

    holes = 0
    ys, xs = np.nonzero(background & ~visited)
    for y, x in zip(ys.tolist(), xs.tolist()):
        if visited[y, x]:
            continue
        _flood(background, visited, x, y, _NEIGHBOURS_4)
        holes += 1
    return holes


# ─── Helpers over component lists ────────────────────────────────────────────


def component_at(
    components: Iterable[ConnectedComponent], x: int, y: int,
) -> Optional[ConnectedComponent]:
    """First component containing pixel ``(x, y)``."""
    for comp in components:
        if not comp.bounding_box.contains(x, y):
            continue
        hit = (comp.pixels[:, 0] == x) & (comp.pixels[:, 1] == y)
        if np.any(hit):
            return comp
    return None


def filter_by_area(
    components: Iterable[ConnectedComponent],
    min_area: int = 0,
    max_area: Optional[int] = None,
) -> List[ConnectedComponent]:
    return [
        c for c in components
        if c.area >= min_area and (max_area is None or c.area <= max_area)
    ]


def filter_by_bounding_box(
    components: Iterable[ConnectedComponent],
    min_width: int = 1,
    min_height: int = 1,
) -> List[ConnectedComponent]:
    return [
        c for c in components
        if c.bounding_box.width >= min_width and c.bounding_box.height >= min_height
    ]


def merge_nearby_components(
    components: Sequence[ConnectedComponent],
    max_distance: float,
) -> List[ConnectedComponent]:
    """Merge components whose centroids lie within *max_distance* pixels.

    Proximity is transitive: chains of close centroids collapse into one
    component. Merged components are renumbered in input order.
    """
    if len(components) < 2 or max_distance <= 0:
        return list(components)

    centroids = np.array([c.centroid for c in components], dtype=float)
    tree = cKDTree(centroids)
    parent = list(range(len(components)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i, j in sorted(tree.query_pairs(r=float(max_distance))):
        ri, rj = find(i), find(j)
        if ri != rj:
            parent[max(ri, rj)] = min(ri, rj)

    groups: Dict[int, List[int]] = {}
    for idx in range(len(components)):
        groups.setdefault(find(idx), []).append(idx)

    merged: List[ConnectedComponent] = []
    for root in sorted(groups):
        pixels: List[Tuple[int, int]] = []
        for idx in groups[root]:
            pixels.extend((int(x), int(y)) for x, y in components[idx].pixels)
        merged.append(_build_component(len(merged), pixels))
    return merged


def component_perimeter(component: ConnectedComponent, width: int, height: int) -> int:
    """Number of pixel edges between the component and anything else."""
    bbox = component.bounding_box
    grid = np.zeros((bbox.height + 2, bbox.width + 2), dtype=bool)
    grid[component.pixels[:, 1] - bbox.min_y + 1, component.pixels[:, 0] - bbox.min_x + 1] = True
    inner = grid[1:-1, 1:-1]
    perimeter = 0
    perimeter += int(np.sum(inner & ~grid[:-2, 1:-1]))
    perimeter += int(np.sum(inner & ~grid[2:, 1:-1]))
    perimeter += int(np.sum(inner & ~grid[1:-1, :-2]))
    perimeter += int(np.sum(inner & ~grid[1:-1, 2:]))
    return perimeter


def components_to_mask(
    components: Iterable[ConnectedComponent], width: int, height: int,
) -> np.ndarray:
    """Flat boolean mask covering every pixel of *components*."""
    grid = np.zeros((height, width), dtype=bool)
    for comp in components:
        grid[comp.pixels[:, 1], comp.pixels[:, 0]] = True
    return grid.reshape(-1)
