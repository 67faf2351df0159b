"""
Layered relief geometry from a quantized image.

Builds one rounded-rectangle base plate plus one extruded layer per distinct
non-zero height level. Each level's pixels are split into connected
components; every component becomes a footprint polygon (traced outline or
convex hull) extruded up from the top of the base.

Example::

    geometry = generate_geometry(quantized, BookmarkParameters(width=50, height=150))
    for layer in geometry.layers:
        print(layer.id, layer.z_top, layer.triangle_count)
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from shapely.geometry import Polygon

from color_quantizer import MAX_COLORS, MIN_COLORS, QuantizedImageData
from colors import BASE_COLOR, Color, count_palette_usage, dominant_color
from errors import CancelledError, GenerationError, InvalidInputError
from geometry_primitives import (
    BoundingBox3D,
    MeshData,
    PixelGrid,
    box_solid,
    convex_hull_outline,
    extrude_footprint,
    polygon_parts,
    rounded_rectangle,
    trace_pixel_outline,
)
from mesh_cleanup import MeshCleanupConfig, optimize_layer_mesh
from progress import CancelCheck, as_reporter, check_cancelled
from region_extractor import ConnectedComponent, ExtractionOptions, extract_components

logger = logging.getLogger(__name__)

CONTOUR_MODES = ("trace", "hull")
STL_HEADER_BYTES = 84
STL_BYTES_PER_FACE = 50


@dataclass
class BookmarkParameters:
    """Physical bookmark dimensions in millimetres."""

    width: float = 50.0
    height: float = 150.0
    layer_thickness: float = 0.2
    base_thickness: float = 2.0
    corner_radius: float = 2.0
    color_count: int = 4

    def validate(self) -> None:
        """Raise InvalidInputError for unusable dimensions."""
        for name in ("width", "height", "layer_thickness", "base_thickness"):
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                raise InvalidInputError(f"{name} must be positive, got {value}")
        if not np.isfinite(self.corner_radius) or self.corner_radius < 0:
            raise InvalidInputError(
                f"corner_radius must be >= 0, got {self.corner_radius}"
            )
        if not MIN_COLORS <= int(self.color_count) <= MAX_COLORS:
            raise InvalidInputError(
                f"color_count must be between {MIN_COLORS} and {MAX_COLORS}, "
                f"got {self.color_count}"
            )


@dataclass
class GenerationOptions:
    """Mesh generation settings."""

    min_feature_size: float = 0.5  # mm; components below this squared are dropped
    contour_mode: str = "trace"
    contour_simplify_px: float = 0.5
    contour_inset_mm: float = 1e-3
    contour_min_edge_mm: float = 0.85  # above the validator's 0.8mm feature size
    height_tolerance: float = 1e-3
    enable_optimization: bool = True
    extraction: ExtractionOptions = field(default_factory=ExtractionOptions.for_bookmark)
    cleanup: MeshCleanupConfig = field(default_factory=MeshCleanupConfig)
    corner_segment_length_mm: float = 1.0
    clip_to_base: bool = True


@dataclass
class GeometryLayer:
    """One printable layer: the base plate or a single height level."""

    id: str
    color: Color
    height: float              # normalised level, 0 for the base
    mesh: MeshData
    regions: Tuple[ConnectedComponent, ...] = ()
    z_bottom: float = 0.0
    z_top: float = 0.0
    visible: bool = True
    opacity: float = 1.0
    region_colors: Tuple[Color, ...] = ()

    @property
    def triangle_count(self) -> int:
        return self.mesh.triangle_count

    @property
    def is_base(self) -> bool:
        return self.height == 0.0


@dataclass
class BookmarkGeometry:
    """All layers plus aggregate statistics."""

    layers: List[GeometryLayer]
    bounding_box: BoundingBox3D
    vertex_count: int = 0
    face_count: int = 0
    generation_stats: dict = field(default_factory=dict)

    @property
    def total_triangles(self) -> int:
        return self.face_count

    @property
    def estimated_file_size(self) -> int:
        """Bytes of a binary STL containing every layer."""
        return STL_HEADER_BYTES + STL_BYTES_PER_FACE * self.face_count

    @property
    def base_layer(self) -> GeometryLayer:
        return self.layers[0]

    def combined_mesh(self) -> MeshData:
        return MeshData.concatenate(layer.mesh for layer in self.layers)


# ─── Helpers ─────────────────────────────────────────────────────────────────


def group_height_levels(
    height_map: np.ndarray, tolerance: float = 1e-3,
) -> Tuple[List[float], np.ndarray]:
    """Merge near-equal heights into levels and label every pixel with one.

    Returns ``(levels, index)``: ascending levels above *tolerance* and, in
    the shape of *height_map*, each value's position in ``levels`` or -1 at
    or below *tolerance*. A value closer than *tolerance* to the last kept
    level joins it, so every pixel belongs to exactly one level.
    """
    heights = np.asarray(height_map, dtype=float)
    values = np.unique(heights)
    group = np.full(len(values), -1, dtype=np.int64)
    levels: List[float] = []
    for i, value in enumerate(values):
        if value <= tolerance:
            continue
        if not levels or value - levels[-1] >= tolerance:
            levels.append(float(value))
        group[i] = len(levels) - 1
    return levels, group[np.searchsorted(values, heights)]


def distinct_height_levels(height_map: np.ndarray, tolerance: float = 1e-3) -> List[float]:
    """Ascending distinct heights above *tolerance*, merging near-equal values."""
    return group_height_levels(height_map, tolerance)[0]


def _majority_color(labels: np.ndarray, palette: Tuple[Color, ...]) -> Color:
    usage = count_palette_usage(labels, len(palette))
    if sum(usage.values()) == 0:
        return BASE_COLOR
    return dominant_color(palette, [usage[i] for i in range(len(palette))])


def _component_labels(comp: ConnectedComponent, label_grid: np.ndarray) -> np.ndarray:
    return label_grid[comp.pixels[:, 1], comp.pixels[:, 0]]


def _component_footprint(
    comp: ConnectedComponent,
    grid: PixelGrid,
    options: GenerationOptions,
    base_outline: Polygon,
):
    if options.contour_mode == "hull":
        footprint = convex_hull_outline(comp.pixels, grid)
    else:
        footprint = trace_pixel_outline(
            comp.pixels,
            grid,
            simplify_px=options.contour_simplify_px,
            inset_mm=options.contour_inset_mm,
            min_edge_mm=options.contour_min_edge_mm,
        )
    if options.clip_to_base:
        footprint = footprint.intersection(base_outline)
    return footprint


def _component_bbox_world(comp: ConnectedComponent, grid: PixelGrid) -> Tuple[float, ...]:
    bb = comp.bounding_box
    rect = grid.pixel_rect(bb.min_x, bb.min_y, bb.max_x, bb.max_y)
    return rect.bounds


def _build_base(parameters: BookmarkParameters, options: GenerationOptions) -> Tuple[MeshData, Polygon]:
    outline = rounded_rectangle(
        parameters.width,
        parameters.height,
        parameters.corner_radius,
        segment_length=options.corner_segment_length_mm,
    )
    try:
        return extrude_footprint(outline, 0.0, parameters.base_thickness), outline
    except Exception as exc:
        logger.warning("Rounded base extrusion failed (%s); using a plain box", exc)
    half_w = parameters.width / 2.0
    half_h = parameters.height / 2.0
    try:
        mesh = box_solid((-half_w, -half_h, half_w, half_h), 0.0, parameters.base_thickness)
    except Exception as exc:
        raise GenerationError("Could not build base plate", stage="base") from exc
    return mesh, Polygon([(-half_w, -half_h), (half_w, -half_h), (half_w, half_h), (-half_w, half_h)])


def _validate_inputs(
    quantized: QuantizedImageData,
    parameters: BookmarkParameters,
    options: GenerationOptions,
) -> None:
    if quantized is None:
        raise InvalidInputError("Quantized image is required")
    parameters.validate()
    if quantized.width <= 0 or quantized.height <= 0:
        raise InvalidInputError(
            f"Image dimensions must be positive, got {quantized.width}x{quantized.height}"
        )
    if len(quantized.height_map) != quantized.width * quantized.height:
        raise InvalidInputError("Height map size does not match image dimensions")
    if options.contour_mode not in CONTOUR_MODES:
        raise InvalidInputError(f"Unknown contour mode: {options.contour_mode}")
    if options.min_feature_size < 0:
        raise InvalidInputError("min_feature_size must be >= 0")
    if options.contour_min_edge_mm < 0:
        raise InvalidInputError("contour_min_edge_mm must be >= 0")


# ─── Entry point ─────────────────────────────────────────────────────────────


def generate_geometry(
    quantized: QuantizedImageData,
    parameters: Optional[BookmarkParameters] = None,
    options: Optional[GenerationOptions] = None,
    progress=None,
    cancel: Optional[CancelCheck] = None,
) -> BookmarkGeometry:
    """Build the layered bookmark meshes for *quantized*.

    Raises:
        InvalidInputError: non-positive dimensions or inconsistent input.
        CancelledError: *cancel* fired between levels.
        GenerationError: any other failure while building meshes.
    """
    if parameters is None:
        parameters = BookmarkParameters()
    if options is None:
        options = GenerationOptions()
    _validate_inputs(quantized, parameters, options)
    reporter = as_reporter(progress)

    try:
        return _generate(quantized, parameters, options, reporter, cancel)
    except (InvalidInputError, CancelledError, GenerationError):
        raise
    except Exception as exc:
        logger.exception("Geometry generation failed")
        raise GenerationError(f"Geometry generation failed: {exc}") from exc


def _generate(quantized, parameters, options, reporter, cancel) -> BookmarkGeometry:
    reporter.report("analysis", 0.0, "Analysing height levels")
    levels, level_index = group_height_levels(quantized.height_map, options.height_tolerance)
    grid = PixelGrid(quantized.width, quantized.height, parameters.width, parameters.height)
    label_grid = np.asarray(quantized.labels).reshape(quantized.height, quantized.width)
    relief_steps = max(1, len(quantized.color_palette) - 1)
    min_area_mm2 = options.min_feature_size ** 2

    reporter.report("base", 0.05, "Building base plate")
    check_cancelled(cancel, "base")
    base_mesh, base_outline = _build_base(parameters, options)
    layers: List[GeometryLayer] = [
        GeometryLayer(
            id="base",
            color=BASE_COLOR,
            height=0.0,
            mesh=base_mesh,
            z_bottom=0.0,
            z_top=parameters.base_thickness,
        )
    ]

    skipped_levels = 0
    dropped_components = 0
    fallback_boxes = 0
    level_count = len(levels)
    for index, level in enumerate(levels):
        check_cancelled(cancel, "extracting")
        span = 0.1 + 0.7 * index / max(1, level_count)
        reporter.report("extracting", span, f"Layer {index + 1} of {level_count}")

        analysis = extract_components(
            level_index == index, quantized.width, quantized.height,
            options.extraction, cancel=cancel,
        )
        survivors = [
            c for c in analysis.components
            if c.area * grid.pixel_area_mm2 >= min_area_mm2
        ]
        dropped_components += analysis.component_count - len(survivors)
        if not survivors:
            logger.debug("Level %.3f has no printable components; skipped", level)
            skipped_levels += 1
            continue

        reporter.report("meshing", span + 0.35 / max(1, level_count), f"Layer {index + 1} of {level_count}")
        z_bottom = parameters.base_thickness
        thickness = level * parameters.layer_thickness * relief_steps

        meshes: List[MeshData] = []
        region_colors: List[Color] = []
        kept: List[ConnectedComponent] = []
        for comp in survivors:
            footprint = _component_footprint(comp, grid, options, base_outline)
            if not polygon_parts(footprint):
                dropped_components += 1
                continue
            try:
                mesh = extrude_footprint(footprint, z_bottom, thickness)
            except Exception as exc:
                logger.warning(
                    "Extrusion failed for component %d at level %.3f (%s); using its bounding box",
                    comp.id, level, exc,
                )
                mesh = box_solid(_component_bbox_world(comp, grid), z_bottom, z_bottom + thickness)
                fallback_boxes += 1
            meshes.append(mesh)
            kept.append(comp)
            region_colors.append(_majority_color(_component_labels(comp, label_grid), quantized.color_palette))

        if not kept:
            skipped_levels += 1
            continue

        all_labels = np.concatenate([_component_labels(c, label_grid) for c in kept])
        layers.append(
            GeometryLayer(
                id=f"layer-{len(layers)}",
                color=_majority_color(all_labels, quantized.color_palette),
                height=float(level),
                mesh=MeshData.concatenate(meshes),
                regions=tuple(kept),
                z_bottom=z_bottom,
                z_top=z_bottom + thickness,
                region_colors=tuple(region_colors),
            )
        )

    optimization = []
    if options.enable_optimization:
        reporter.report("optimizing", 0.85, "Optimizing meshes")
        check_cancelled(cancel, "optimizing")
        for layer in layers:
            layer.mesh, stats = optimize_layer_mesh(layer.mesh, options.cleanup)
            optimization.append({"layer": layer.id, **stats})

    reporter.report("assembling", 0.95, "Assembling bookmark")
    geometry = _assemble(layers, parameters)
    geometry.generation_stats = {
        "levels": level_count,
        "skipped_levels": skipped_levels,
        "dropped_components": dropped_components,
        "fallback_boxes": fallback_boxes,
        "relief_steps": relief_steps,
        "optimization": optimization,
    }
    _sanity_check(geometry)
    reporter.report("complete", 1.0, "Geometry complete")
    logger.info(
        "Generated %d layers (%d vertices, %d faces) from %d height levels",
        len(geometry.layers), geometry.vertex_count, geometry.face_count, level_count,
    )
    return geometry


def _assemble(layers: List[GeometryLayer], parameters: BookmarkParameters) -> BookmarkGeometry:
    top = max(layer.z_top for layer in layers)
    bbox = BoundingBox3D(
        min=(-parameters.width / 2.0, -parameters.height / 2.0, 0.0),
        max=(parameters.width / 2.0, parameters.height / 2.0, float(top)),
    )
    return BookmarkGeometry(
        layers=layers,
        bounding_box=bbox,
        vertex_count=sum(layer.mesh.vertex_count for layer in layers),
        face_count=sum(layer.mesh.triangle_count for layer in layers),
    )


def _sanity_check(geometry: BookmarkGeometry) -> None:
    if not geometry.layers:
        raise GenerationError("No layers generated", stage="assembling")
    if geometry.vertex_count == 0 or geometry.face_count == 0:
        raise GenerationError("Generated geometry has no vertices or faces", stage="assembling")
    if not geometry.bounding_box.is_valid:
        raise GenerationError(
            f"Invalid bounding box {geometry.bounding_box}", stage="assembling"
        )
