"""
Core geometry types and builders for bookmark relief meshes.

Built on Shapely for 2D footprints and trimesh for extrusion. Provides
MeshData (the neutral triangle mesh handed between stages), pixel-to-world
mapping, footprint builders (traced pixel outline or convex hull) and the
rounded-rectangle base outline.

World frame: millimetres, bookmark centred on the origin, +Y up, build
plate at z=0. Image row 0 is the top edge of the bookmark.
"""
import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import numpy as np
import shapely
import trimesh
from shapely.geometry import MultiPoint, MultiPolygon, Polygon, box
from shapely.ops import unary_union


@dataclass(frozen=True)
class BoundingBox3D:
    """Axis-aligned box in millimetres."""
    min: Tuple[float, float, float]
    max: Tuple[float, float, float]

    @property
    def size(self) -> Tuple[float, float, float]:
        return tuple(float(b - a) for a, b in zip(self.min, self.max))

    @property
    def is_valid(self) -> bool:
        return all(s > 0 for s in self.size)


@dataclass(frozen=True)
class MeshData:
    """Indexed triangle mesh with per-vertex normals.

    Buffers are read-only once wrapped.
    """
    vertices: np.ndarray  # (n, 3) float64
    faces: np.ndarray     # (m, 3) int64
    normals: np.ndarray   # (n, 3) float64

    def __post_init__(self):
        for name in ("vertices", "faces", "normals"):
            arr = getattr(self, name)
            if arr is None:
                continue
            arr.setflags(write=False)

    @property
    def triangle_count(self) -> int:
        return 0 if self.faces is None else int(len(self.faces))

    @property
    def vertex_count(self) -> int:
        return 0 if self.vertices is None else int(len(self.vertices))

    @property
    def is_empty(self) -> bool:
        return self.vertex_count == 0 or self.triangle_count == 0

    @property
    def bounds(self) -> np.ndarray:
        """``(2, 3)`` array of min / max corners; zeros when empty."""
        if self.vertex_count == 0:
            return np.zeros((2, 3))
        return np.vstack([self.vertices.min(axis=0), self.vertices.max(axis=0)])

    @classmethod
    def empty(cls) -> "MeshData":
        return cls(
            vertices=np.zeros((0, 3), dtype=np.float64),
            faces=np.zeros((0, 3), dtype=np.int64),
            normals=np.zeros((0, 3), dtype=np.float64),
        )

    @classmethod
    def from_trimesh(cls, mesh: trimesh.Trimesh) -> "MeshData":
        vertices = np.array(mesh.vertices, dtype=np.float64)
        faces = np.array(mesh.faces, dtype=np.int64)
        if len(faces):
            normals = np.array(mesh.vertex_normals, dtype=np.float64)
        else:
            normals = np.zeros_like(vertices)
        return cls(vertices=vertices, faces=faces, normals=normals)

    def to_trimesh(self) -> trimesh.Trimesh:
        return trimesh.Trimesh(
            vertices=np.array(self.vertices),
            faces=np.array(self.faces),
            process=False,
        )

    @classmethod
    def concatenate(cls, meshes: Iterable["MeshData"]) -> "MeshData":
        """Stack meshes into one buffer, offsetting face indices.

        Vertices are not merged.
        """
        meshes = [m for m in meshes if m is not None and m.vertex_count > 0]
        if not meshes:
            return cls.empty()
        vertices = []
        faces = []
        normals = []
        offset = 0
        for m in meshes:
            vertices.append(m.vertices)
            faces.append(m.faces + offset)
            normals.append(m.normals)
            offset += m.vertex_count
        return cls(
            vertices=np.vstack(vertices).astype(np.float64),
            faces=np.vstack(faces).astype(np.int64),
            normals=np.vstack(normals).astype(np.float64),
        )


# ─── Coordinate mapping ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class PixelGrid:
    """Maps image pixels onto the physical bookmark face."""
    image_width: int
    image_height: int
    width_mm: float
    height_mm: float

    @property
    def sx(self) -> float:
        return self.width_mm / float(self.image_width)

    @property
    def sy(self) -> float:
        return self.height_mm / float(self.image_height)

    @property
    def pixel_area_mm2(self) -> float:
        return self.sx * self.sy

    def to_world(self, x: float, y: float) -> Tuple[float, float]:
        """Pixel corner ``(x, y)`` to world ``(X, Y)``."""
        return (x * self.sx - self.width_mm / 2.0, self.height_mm / 2.0 - y * self.sy)

    def pixel_rect(self, x0: int, y0: int, x1: int, y1: int) -> Polygon:
        """World rectangle covering pixels ``x0..x1`` by ``y0..y1`` inclusive."""
        left, top = self.to_world(x0, y0)
        right, bottom = self.to_world(x1 + 1, y1 + 1)
        return box(left, bottom, right, top)


# ─── Footprints ──────────────────────────────────────────────────────────────

def rounded_rectangle(
    width: float,
    height: float,
    radius: float,
    segment_length: float = 1.0,
) -> Polygon:
    """Rectangle centred on the origin with circular corners.

    The radius is clamped to ``min(width, height) / 4``; each quarter arc is
    split so its chords are roughly *segment_length* long.
    """
    r = float(np.clip(radius, 0.0, min(width, height) / 4.0))
    if r <= 1e-9:
        return box(-width / 2.0, -height / 2.0, width / 2.0, height / 2.0)
    arc_len = math.pi * r / 2.0
    quad_segs = max(1, int(arc_len // max(segment_length, 1e-6)))
    core = box(-width / 2.0 + r, -height / 2.0 + r, width / 2.0 - r, height / 2.0 - r)
    return core.buffer(r, quad_segs=quad_segs)


def _row_runs(pixels: np.ndarray) -> List[Tuple[int, int, int]]:
    """Horizontal runs ``(y, x_start, x_end)`` covering *pixels*."""
    runs: List[Tuple[int, int, int]] = []
    order = np.lexsort((pixels[:, 0], pixels[:, 1]))
    ordered = pixels[order]
    start = 0
    for i in range(1, len(ordered) + 1):
        if (
            i == len(ordered)
            or ordered[i, 1] != ordered[i - 1, 1]
            or ordered[i, 0] != ordered[i - 1, 0] + 1
        ):
            runs.append((int(ordered[start, 1]), int(ordered[start, 0]), int(ordered[i - 1, 0])))
            start = i
    return runs


def _thin_ring(coords: np.ndarray, min_edge: float) -> np.ndarray:
    """Drop ring vertices closer than *min_edge* to the previous kept one.

    *coords* is a closed ring (first == last). Returns the input unchanged
    when fewer than three vertices would survive.
    """
    points = coords[:-1]
    kept = [points[0]]
    for point in points[1:]:
        if np.hypot(*(point - kept[-1])) >= min_edge:
            kept.append(point)
    while len(kept) > 3 and np.hypot(*(kept[0] - kept[-1])) < min_edge:
        kept.pop()
    if len(kept) < 3:
        return coords
    return np.vstack(kept + [kept[0]])


def enforce_min_edge(geom: shapely.Geometry, min_edge: float) -> shapely.Geometry:
    """Remove outline vertices that would leave edges shorter than *min_edge*.

    Polygons that become invalid are returned unchanged.
    """
    if min_edge <= 0:
        return geom
    parts = []
    for poly in polygon_parts(geom):
        thinned = Polygon(
            _thin_ring(np.asarray(poly.exterior.coords), min_edge),
            [_thin_ring(np.asarray(ring.coords), min_edge) for ring in poly.interiors],
        )
        parts.append(thinned if thinned.is_valid and not thinned.is_empty else poly)
    if not parts:
        return geom
    return parts[0] if len(parts) == 1 else MultiPolygon(parts)


def trace_pixel_outline(
    pixels: np.ndarray,
    grid: PixelGrid,
    simplify_px: float = 0.5,
    inset_mm: float = 1e-3,
    min_edge_mm: float = 0.0,
) -> shapely.Geometry:
    """Exact outline of a pixel set as a (Multi)Polygon in world units.

    Row runs are unioned and simplified by *simplify_px* pixels, or by half of
    *min_edge_mm* when that is coarser, so pixel staircases do not survive at
    fine pitches. With *min_edge_mm* set, vertices closer than that are then
    dropped. Finally the outline is inset by *inset_mm* so pixels touching
    only at a corner end up as separate, non-touching parts.
    """
    if len(pixels) == 0:
        return Polygon()
    rects = [grid.pixel_rect(x0, y, x1, y) for y, x0, x1 in _row_runs(np.asarray(pixels))]
    outline = unary_union(rects)
    tol = max(simplify_px * min(grid.sx, grid.sy), min_edge_mm / 2.0)
    if tol > 0:
        outline = outline.simplify(tol, preserve_topology=True)
    if min_edge_mm > 0:
        outline = enforce_min_edge(outline, min_edge_mm)
    if inset_mm > 0:
        outline = outline.buffer(-inset_mm, join_style="mitre", mitre_limit=50.0)
    return outline


def convex_hull_outline(pixels: np.ndarray, grid: PixelGrid) -> shapely.Geometry:
    """Convex hull of every pixel corner, in world units."""
    if len(pixels) == 0:
        return Polygon()
    corners = []
    for x, y in np.asarray(pixels):
        for dx, dy in ((0, 0), (1, 0), (0, 1), (1, 1)):
            corners.append(grid.to_world(x + dx, y + dy))
    return MultiPoint(corners).convex_hull


def polygon_parts(geom: shapely.Geometry, min_area: float = 1e-9) -> List[Polygon]:
    """Non-empty polygons contained in *geom* (any geometry type)."""
    if geom is None or geom.is_empty:
        return []
    if isinstance(geom, Polygon):
        return [geom] if geom.area > min_area else []
    if isinstance(geom, MultiPolygon) or hasattr(geom, "geoms"):
        parts: List[Polygon] = []
        for sub in geom.geoms:
            parts.extend(polygon_parts(sub, min_area))
        return parts
    return []


# ─── Solids ──────────────────────────────────────────────────────────────────

COLLINEAR_TOLERANCE_MM = 1e-6


def tidy_footprint(footprint: shapely.Geometry) -> shapely.Geometry:
    """Drop repeated and (near-)collinear outline vertices.

    Such vertices make the cap triangulation emit zero-area triangles.
    """
    if footprint is None or footprint.is_empty:
        return footprint
    cleaned = shapely.remove_repeated_points(footprint, tolerance=COLLINEAR_TOLERANCE_MM)
    return cleaned.simplify(COLLINEAR_TOLERANCE_MM, preserve_topology=True)


def extrude_footprint(
    footprint: shapely.Geometry,
    z_bottom: float,
    thickness: float,
) -> MeshData:
    """Extrude every polygon of *footprint* from *z_bottom* by *thickness*.

    Raises ValueError when the footprint has no polygon area.
    """
    if thickness <= 0:
        raise ValueError(f"Extrusion thickness must be positive, got {thickness}")
    parts = polygon_parts(tidy_footprint(footprint))
    if not parts:
        raise ValueError("Footprint has no polygon area to extrude")
    meshes = []
    for poly in parts:
        solid = trimesh.creation.extrude_polygon(poly, thickness)
        solid.apply_translation([0.0, 0.0, z_bottom])
        meshes.append(MeshData.from_trimesh(solid))
    return MeshData.concatenate(meshes)


def box_solid(bounds_xy: Sequence[float], z_bottom: float, z_top: float) -> MeshData:
    """Axis-aligned box over ``(min_x, min_y, max_x, max_y)``."""
    min_x, min_y, max_x, max_y = (float(v) for v in bounds_xy)
    solid = trimesh.creation.box(
        bounds=[[min_x, min_y, z_bottom], [max_x, max_y, z_top]]
    )
    return MeshData.from_trimesh(solid)
