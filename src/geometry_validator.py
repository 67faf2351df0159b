"""
Printability validation for generated bookmark geometry.

Checks topology (manifold, watertight, self-intersection), feature size,
triangle quality, layer connectivity, FDM print constraints, stability and
complexity. Geometric defects are reported as PrintabilityIssue data;
exceptions are reserved for structurally absent input. Every check works on
per-call buffers and is deterministic.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from errors import InvalidInputError
from geometry_generator import BookmarkGeometry, BookmarkParameters, GeometryLayer
from materials import get_filament
from progress import CancelCheck, as_reporter, check_cancelled

logger = logging.getLogger(__name__)

MIN_FOOTPRINT_MM = 10.0
STABILITY_HEIGHT_MM = 10.0
STABILITY_BASE_AREA_MM2 = 100.0
ESTIMATE_LAYER_HEIGHT_MM = 0.2
ESTIMATE_INFILL = 0.15
_VERTICAL_EDGE_EPS = 1e-6


@dataclass
class ValidationConfig:
    """Printability thresholds and per-check switches."""

    check_manifold: bool = True
    check_watertight: bool = True
    check_self_intersections: bool = True
    check_feature_size: bool = True
    check_triangle_quality: bool = True
    check_connectivity: bool = True
    check_stability: bool = True
    check_print_constraints: bool = True
    min_wall_thickness: float = 0.4  # mm
    min_feature_size: float = 0.8  # mm
    max_aspect_ratio: float = 10.0
    max_vertices: int = 200000
    max_triangles: int = 100000
    min_triangle_quality: float = 0.1
    feature_error_fraction: float = 0.05
    poor_quality_fraction: float = 0.10
    max_intersection_reports: int = 5
    intersection_max_triangles: int = 20000
    max_regions_per_layer: int = 20
    max_total_height_mm: float = 20.0
    material_key: str = "pla"

    @classmethod
    def for_bookmark(cls) -> "ValidationConfig":
        """Stricter limits suited to thin, flat bookmarks."""
        return cls(
            max_aspect_ratio=8.0,
            min_triangle_quality=0.15,
            max_vertices=100000,
            max_triangles=50000,
        )

    @classmethod
    def permissive(cls) -> "ValidationConfig":
        """Topology checks only; size and quality limits relaxed."""
        return cls(
            check_self_intersections=False,
            check_feature_size=False,
            check_triangle_quality=False,
            check_stability=False,
            min_wall_thickness=0.2,
            min_feature_size=0.4,
            max_aspect_ratio=20.0,
            max_vertices=500000,
            max_triangles=250000,
            min_triangle_quality=0.05,
        )


@dataclass
class PrintabilityIssue:
    """One detected problem."""

    type: str
    severity: str  # "warning" | "error"
    description: str
    affected_faces: List[int] = field(default_factory=list)
    layer_index: Optional[int] = None


@dataclass
class PrintabilityCheck:
    """Validation outcome with estimates."""

    is_printable: bool
    issues: List[PrintabilityIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    estimated_print_time: float = 0.0  # minutes
    material_usage: float = 0.0  # grams

    @property
    def errors(self) -> List[PrintabilityIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> List[PrintabilityIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    def issues_by_severity(self) -> Dict[str, List[PrintabilityIssue]]:
        return {"error": self.errors, "warning": self.warnings}


# ─── Mesh measurements ───────────────────────────────────────────────────────


def edge_face_counts(faces: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Unique undirected edges and how many faces use each."""
    faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
    if len(faces) == 0:
        return np.zeros((0, 2), dtype=np.int64), np.zeros(0, dtype=np.int64)
    edges = np.vstack([faces[:, [0, 1]], faces[:, [1, 2]], faces[:, [2, 0]]])
    edges = np.sort(edges, axis=1)
    unique, counts = np.unique(edges, axis=0, return_counts=True)
    return unique, counts


def _faces_using_edges(faces: np.ndarray, edges: np.ndarray) -> List[int]:
    if len(edges) == 0:
        return []
    wanted = {(int(a), int(b)) for a, b in edges}
    hits = []
    for idx, (a, b, c) in enumerate(np.asarray(faces).tolist()):
        for e in ((a, b), (b, c), (c, a)):
            if (min(e), max(e)) in wanted:
                hits.append(idx)
                break
    return hits


def triangle_quality(vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """``4*sqrt(3)*A / (a² + b² + c²)`` per face; 1.0 is equilateral."""
    tri = np.asarray(vertices, dtype=float)[np.asarray(faces, dtype=np.int64)]
    if len(tri) == 0:
        return np.zeros(0)
    ab = tri[:, 1] - tri[:, 0]
    bc = tri[:, 2] - tri[:, 1]
    ca = tri[:, 0] - tri[:, 2]
    area = 0.5 * np.linalg.norm(np.cross(ab, -ca), axis=1)
    denom = (ab ** 2).sum(axis=1) + (bc ** 2).sum(axis=1) + (ca ** 2).sum(axis=1)
    quality = np.zeros(len(tri))
    ok = denom > 0
    quality[ok] = 4.0 * np.sqrt(3.0) * area[ok] / denom[ok]
    return quality


def _in_plane_edge_lengths(vertices: np.ndarray, faces: np.ndarray) -> np.ndarray:
    """``(m, 3)`` XY-projected edge lengths; NaN for edges along Z."""
    tri = np.asarray(vertices, dtype=float)[np.asarray(faces, dtype=np.int64)]
    lengths = np.empty((len(tri), 3))
    for k, (i, j) in enumerate(((0, 1), (1, 2), (2, 0))):
        d = tri[:, j, :2] - tri[:, i, :2]
        lengths[:, k] = np.linalg.norm(d, axis=1)
    lengths[lengths < _VERTICAL_EDGE_EPS] = np.nan
    return lengths


# ─── Individual checks ───────────────────────────────────────────────────────


def _check_manifold(layer: GeometryLayer, index: int) -> List[PrintabilityIssue]:
    edges, counts = edge_face_counts(layer.mesh.faces)
    bad = edges[counts > 2]
    if len(bad) == 0:
        return []
    return [PrintabilityIssue(
        type="non-manifold",
        severity="error",
        description=f"Layer {index} has {len(bad)} edges shared by more than two faces",
        affected_faces=_faces_using_edges(layer.mesh.faces, bad),
        layer_index=index,
    )]


def _check_watertight(layer: GeometryLayer, index: int) -> List[PrintabilityIssue]:
    edges, counts = edge_face_counts(layer.mesh.faces)
    open_edges = edges[counts == 1]
    if len(open_edges) == 0:
        return []
    return [PrintabilityIssue(
        type="not-watertight",
        severity="warning",
        description=f"Layer {index} has {len(open_edges)} boundary edges (holes in the surface)",
        affected_faces=_faces_using_edges(layer.mesh.faces, open_edges),
        layer_index=index,
    )]


def _check_self_intersections(
    layer: GeometryLayer, index: int, config: ValidationConfig,
) -> List[PrintabilityIssue]:
    """Strict bounding-box overlap between triangles sharing no vertex."""
    faces = np.asarray(layer.mesh.faces, dtype=np.int64)
    if len(faces) > config.intersection_max_triangles:
        logger.info(
            "Skipping self-intersection check on layer %d (%d triangles)",
            index, len(faces),
        )
        return []
    tri = np.asarray(layer.mesh.vertices, dtype=float)[faces]
    lo = tri.min(axis=1)
    hi = tri.max(axis=1)
    # Sweep along x: candidates for face i are the faces after it in lo-x
    # order whose lo-x is still below hi-x of i.
    order = np.argsort(lo[:, 0], kind="stable")
    ends = np.searchsorted(lo[order, 0], hi[order, 0], side="left")

    hits: List[Tuple[int, int]] = []
    for pos in range(len(order)):
        if ends[pos] <= pos + 1:
            continue
        i = order[pos]
        cand = order[pos + 1:ends[pos]]
        overlap = np.all(lo[cand] < hi[i], axis=1) & np.all(lo[i] < hi[cand], axis=1)
        if not overlap.any():
            continue
        cand = cand[overlap]
        shared = (faces[cand][:, :, None] == faces[i][None, None, :]).any(axis=(1, 2))
        for j in cand[~shared].tolist():
            hits.append((min(int(i), j), max(int(i), j)))
            if len(hits) >= config.max_intersection_reports:
                break
        if len(hits) >= config.max_intersection_reports:
            break

    if not hits:
        return []
    affected = sorted({f for pair in hits for f in pair})
    return [PrintabilityIssue(
        type="self-intersection",
        severity="warning",
        description=f"Layer {index} has {len(hits)} potentially intersecting triangle pairs",
        affected_faces=affected,
        layer_index=index,
    )]


def _check_feature_size(
    layer: GeometryLayer, index: int, config: ValidationConfig,
) -> List[PrintabilityIssue]:
    faces = layer.mesh.faces
    if len(faces) == 0:
        return []
    lengths = _in_plane_edge_lengths(layer.mesh.vertices, faces)
    shortest = np.where(np.isnan(lengths), np.inf, lengths).min(axis=1)
    affected = np.nonzero(shortest < config.min_feature_size)[0]
    if len(affected) == 0:
        return []
    fraction = len(affected) / float(len(faces))
    severity = "error" if fraction > config.feature_error_fraction else "warning"
    return [PrintabilityIssue(
        type="thin-feature",
        severity=severity,
        description=(
            f"Layer {index}: {len(affected)} triangles ({fraction:.1%}) have edges "
            f"shorter than {config.min_feature_size:.2f}mm"
        ),
        affected_faces=affected.tolist(),
        layer_index=index,
    )]


def _check_triangle_quality(
    layer: GeometryLayer, index: int, config: ValidationConfig,
) -> List[PrintabilityIssue]:
    faces = layer.mesh.faces
    if len(faces) == 0:
        return []
    quality = triangle_quality(layer.mesh.vertices, faces)
    poor = np.nonzero(quality < config.min_triangle_quality)[0]
    fraction = len(poor) / float(len(faces))
    if fraction <= config.poor_quality_fraction:
        return []
    return [PrintabilityIssue(
        type="poor-triangle-quality",
        severity="warning",
        description=f"Layer {index}: {fraction:.1%} of triangles are poorly shaped",
        affected_faces=poor.tolist(),
        layer_index=index,
    )]


def _xy_bounds(layer: GeometryLayer) -> np.ndarray:
    return layer.mesh.bounds[:, :2]


def _check_connectivity(geometry: BookmarkGeometry) -> List[PrintabilityIssue]:
    issues = []
    layers = geometry.layers
    for i in range(1, len(layers)):
        below, above = layers[i - 1], layers[i]
        if below.mesh.is_empty or above.mesh.is_empty:
            continue
        b = _xy_bounds(below)
        a = _xy_bounds(above)
        overlaps = np.all(a[0] < b[1]) and np.all(b[0] < a[1])
        if not overlaps:
            issues.append(PrintabilityIssue(
                type="floating-geometry",
                severity="error",
                description=f"Layer {i} does not overlap the layer beneath it",
                layer_index=i,
            ))
    return issues


def _check_print_constraints(
    geometry: BookmarkGeometry,
    parameters: BookmarkParameters,
    config: ValidationConfig,
) -> List[PrintabilityIssue]:
    issues = []
    size = geometry.bounding_box.size
    if parameters.layer_thickness < config.min_wall_thickness:
        issues.append(PrintabilityIssue(
            type="print-constraint",
            severity="warning",
            description=(
                f"Layer thickness {parameters.layer_thickness:.2f}mm is below the "
                f"minimum {config.min_wall_thickness:.2f}mm"
            ),
        ))
    if size[0] < MIN_FOOTPRINT_MM or size[1] < MIN_FOOTPRINT_MM:
        issues.append(PrintabilityIssue(
            type="print-constraint",
            severity="warning",
            description=f"Footprint {size[0]:.1f}x{size[1]:.1f}mm is very small",
        ))
    if size[2] > config.max_total_height_mm:
        issues.append(PrintabilityIssue(
            type="print-constraint",
            severity="warning",
            description=f"Total height {size[2]:.1f}mm exceeds {config.max_total_height_mm:.1f}mm",
        ))
    short = min(size[0], size[1])
    if short > 0:
        ratio = max(size[0], size[1]) / short
        if ratio > config.max_aspect_ratio:
            issues.append(PrintabilityIssue(
                type="print-constraint",
                severity="warning",
                description=f"Aspect ratio {ratio:.1f} exceeds {config.max_aspect_ratio:.1f}",
            ))
    return issues


def _check_stability(
    geometry: BookmarkGeometry, config: ValidationConfig,
) -> List[PrintabilityIssue]:
    issues = []
    size = geometry.bounding_box.size
    base_area = size[0] * size[1]
    if size[2] > STABILITY_HEIGHT_MM and base_area < STABILITY_BASE_AREA_MM2:
        issues.append(PrintabilityIssue(
            type="stability",
            severity="warning",
            description=(
                f"Model is {size[2]:.1f}mm tall on a {base_area:.0f}mm² base and may tip over"
            ),
        ))
    for index, layer in enumerate(geometry.layers):
        if len(layer.regions) > config.max_regions_per_layer:
            issues.append(PrintabilityIssue(
                type="stability",
                severity="warning",
                description=(
                    f"Layer {index} has {len(layer.regions)} separate regions; "
                    "small islands may detach"
                ),
                layer_index=index,
            ))
    return issues


def _check_complexity(
    geometry: BookmarkGeometry, config: ValidationConfig,
) -> List[PrintabilityIssue]:
    issues = []
    if geometry.vertex_count > config.max_vertices:
        issues.append(PrintabilityIssue(
            type="complexity",
            severity="warning",
            description=f"{geometry.vertex_count} vertices exceed the limit of {config.max_vertices}",
        ))
    if geometry.face_count > config.max_triangles:
        issues.append(PrintabilityIssue(
            type="complexity",
            severity="warning",
            description=f"{geometry.face_count} triangles exceed the limit of {config.max_triangles}",
        ))
    return issues


# ─── Estimates and recommendations ───────────────────────────────────────────


def estimate_print_time(
    geometry: BookmarkGeometry, config: Optional[ValidationConfig] = None,
) -> float:
    """Minutes: perimeter passes per layer plus sparse infill."""
    if config is None:
        config = ValidationConfig()
    speed = get_filament(config.material_key).print_speed_mm_s
    sx, sy, sz = geometry.bounding_box.size
    volume = sx * sy * sz
    layers = sz / ESTIMATE_LAYER_HEIGHT_MM
    perimeter = 2.0 * (sx + sy)
    perimeter_time = layers * perimeter / speed
    infill_time = volume * ESTIMATE_INFILL / (speed * ESTIMATE_LAYER_HEIGHT_MM)
    return float(round((perimeter_time + infill_time) / 60.0))


def estimate_material_usage(
    geometry: BookmarkGeometry, config: Optional[ValidationConfig] = None,
) -> float:
    """Grams of filament from the bounding volume at sparse infill."""
    if config is None:
        config = ValidationConfig()
    density = get_filament(config.material_key).density_g_per_mm3
    sx, sy, sz = geometry.bounding_box.size
    return round(sx * sy * sz * density * ESTIMATE_INFILL, 2)


_RECOMMENDATIONS = {
    "non-manifold": "Regenerate with hull contours or fewer colors to avoid shared edges",
    "not-watertight": "Enable mesh optimization to close open edges",
    "self-intersection": "Increase the minimum feature size to separate crowded regions",
    "thin-feature": "Increase the minimum feature size or reduce image detail",
    "poor-triangle-quality": "Enable mesh optimization to improve triangle shapes",
    "floating-geometry": "Check that every relief layer sits on the base",
    "print-constraint": "Adjust bookmark dimensions or layer thickness",
    "stability": "Reduce relief height or simplify the image into fewer regions",
    "complexity": "Reduce the color count or enable mesh simplification",
}


def _recommendations(issues: List[PrintabilityIssue]) -> List[str]:
    seen = []
    for issue in issues:
        text = _RECOMMENDATIONS.get(issue.type)
        if text and text not in seen:
            seen.append(text)
    return seen


# ─── Entry points ────────────────────────────────────────────────────────────


def _require_structure(geometry: BookmarkGeometry) -> None:
    if geometry is None:
        raise InvalidInputError("Geometry is required")
    if not geometry.layers:
        raise InvalidInputError("Geometry has no layers")
    for index, layer in enumerate(geometry.layers):
        mesh = layer.mesh
        if mesh is None or mesh.vertices is None or mesh.faces is None:
            raise InvalidInputError(f"Layer {index} has no vertex or face buffer")


def validate_geometry(
    geometry: BookmarkGeometry,
    parameters: Optional[BookmarkParameters] = None,
    config: Optional[ValidationConfig] = None,
    progress=None,
    cancel: Optional[CancelCheck] = None,
) -> PrintabilityCheck:
    """Run every enabled check and return the combined report.

    Raises:
        InvalidInputError: geometry, its layers or a mesh buffer is missing.
        CancelledError: *cancel* fired between checks.
    """
    if config is None:
        config = ValidationConfig()
    _require_structure(geometry)
    reporter = as_reporter(progress)

    per_layer = []
    if config.check_manifold:
        per_layer.append(lambda layer, i: _check_manifold(layer, i))
    if config.check_watertight:
        per_layer.append(lambda layer, i: _check_watertight(layer, i))
    if config.check_self_intersections:
        per_layer.append(lambda layer, i: _check_self_intersections(layer, i, config))
    if config.check_feature_size:
        per_layer.append(lambda layer, i: _check_feature_size(layer, i, config))
    if config.check_triangle_quality:
        per_layer.append(lambda layer, i: _check_triangle_quality(layer, i, config))

    global_checks = []
    if config.check_connectivity:
        global_checks.append(lambda: _check_connectivity(geometry))
    if config.check_print_constraints and parameters is not None:
        global_checks.append(lambda: _check_print_constraints(geometry, parameters, config))
    if config.check_stability:
        global_checks.append(lambda: _check_stability(geometry, config))
    global_checks.append(lambda: _check_complexity(geometry, config))

    total = len(per_layer) + len(global_checks)
    issues: List[PrintabilityIssue] = []
    step = 0
    for check in per_layer:
        check_cancelled(cancel, "validation")
        step += 1
        reporter.report("validation", step / float(total), f"Validation check {step} of {total}")
        for index, layer in enumerate(geometry.layers):
            issues.extend(check(layer, index))
    for check in global_checks:
        check_cancelled(cancel, "validation")
        step += 1
        reporter.report("validation", step / float(total), f"Validation check {step} of {total}")
        issues.extend(check())

    is_printable = not any(i.severity == "error" for i in issues)
    result = PrintabilityCheck(
        is_printable=is_printable,
        issues=issues,
        recommendations=_recommendations(issues),
    )
    if parameters is not None:
        result.estimated_print_time = estimate_print_time(geometry, config)
        result.material_usage = estimate_material_usage(geometry, config)

    reporter.report("complete", 1.0, "Validation complete")
    logger.info(
        "Validation finished: printable=%s, %d errors, %d warnings",
        is_printable, len(result.errors), len(result.warnings),
    )
    return result


def quick_validate(geometry: BookmarkGeometry) -> PrintabilityCheck:
    """Cheap structural checks only: manifold edges, connectivity, complexity."""
    config = ValidationConfig(
        check_watertight=False,
        check_self_intersections=False,
        check_feature_size=False,
        check_triangle_quality=False,
        check_stability=False,
        check_print_constraints=False,
    )
    return validate_geometry(geometry, None, config)
