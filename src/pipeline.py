"""End-to-end pipeline: image -> quantize -> layered geometry -> validation -> run artifacts."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

import numpy as np
from PIL import Image

from color_quantizer import QuantizedImageData, QuantizerConfig, palette_by_luminance, quantize
from diagnosis import build_validation_summary, summarize_check
from geometry_generator import (
    BookmarkGeometry,
    BookmarkParameters,
    GenerationOptions,
    generate_geometry,
)
from geometry_validator import PrintabilityCheck, ValidationConfig, validate_geometry
from height_mapping import height_map_metrics
from progress import CancelCheck, as_reporter, check_cancelled
from run_protocol import BookmarkRun

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    runs_dir: str = "runs"
    quantizer: QuantizerConfig = field(default_factory=QuantizerConfig)
    generation: GenerationOptions = field(default_factory=GenerationOptions)
    validation: ValidationConfig = field(default_factory=ValidationConfig.for_bookmark)
    export_layers: bool = True
    export_combined: bool = True
    downscale_large_images: bool = True


@dataclass
class BookmarkResult:
    quantized: QuantizedImageData
    geometry: BookmarkGeometry
    check: PrintabilityCheck
    timings: Dict[str, float] = field(default_factory=dict)


@dataclass
class PipelineResult:
    run_id: str
    run_dir: str
    metrics_path: str
    summary_path: str
    manifest_path: str
    image_input_path: str
    layer_stl_paths: List[str] = field(default_factory=list)
    combined_stl_path: Optional[str] = None
    bookmark: Optional[BookmarkResult] = None


def run_bookmark_pipeline(
    image,
    parameters: Optional[BookmarkParameters] = None,
    config: Optional[PipelineConfig] = None,
    progress=None,
    cancel: Optional[CancelCheck] = None,
) -> BookmarkResult:
    """Quantize, generate and validate in one call.

    Progress is split 40/45/15 across the three stages; stage names from
    each module are passed through unchanged.
    """
    if parameters is None:
        parameters = BookmarkParameters()
    if config is None:
        config = PipelineConfig()
    parameters.validate()
    reporter = as_reporter(progress)
    timings: Dict[str, float] = {}

    started = time.perf_counter()
    quantized = quantize(
        image,
        parameters.color_count,
        config.quantizer,
        progress=reporter.scaled(0.0, 0.4),
        cancel=cancel,
    )
    timings["quantize_s"] = round(time.perf_counter() - started, 4)

    check_cancelled(cancel, "generation")
    started = time.perf_counter()
    geometry = generate_geometry(
        quantized,
        parameters,
        config.generation,
        progress=reporter.scaled(0.4, 0.85),
        cancel=cancel,
    )
    timings["generate_s"] = round(time.perf_counter() - started, 4)

    started = time.perf_counter()
    check = validate_geometry(
        geometry,
        parameters,
        config.validation,
        progress=reporter.scaled(0.85, 1.0),
        cancel=cancel,
    )
    timings["validate_s"] = round(time.perf_counter() - started, 4)

    return BookmarkResult(quantized=quantized, geometry=geometry, check=check, timings=timings)


def load_image(image_path: str, max_pixels: Optional[int] = None) -> np.ndarray:
    """Read *image_path* as an ``(H, W, 4)`` uint8 array.

    With *max_pixels*, larger images are downscaled (aspect preserved) so
    they fit the quantizer's pixel limit.
    """
    with Image.open(image_path) as img:
        rgba = img.convert("RGBA")
    if max_pixels and rgba.width * rgba.height > max_pixels:
        scale = (max_pixels / float(rgba.width * rgba.height)) ** 0.5
        size = (max(1, int(rgba.width * scale)), max(1, int(rgba.height * scale)))
        logger.info(
            "Downscaling %dx%d image to %dx%d", rgba.width, rgba.height, size[0], size[1],
        )
        rgba = rgba.resize(size, Image.Resampling.LANCZOS)
    return np.asarray(rgba, dtype=np.uint8)


def run_pipeline_from_image(
    image_path: str,
    design_name: str = "bookmark",
    parameters: Optional[BookmarkParameters] = None,
    config: Optional[PipelineConfig] = None,
    progress=None,
    cancel: Optional[CancelCheck] = None,
) -> PipelineResult:
    if not os.path.isfile(image_path):
        raise FileNotFoundError(f"Image file not found: {image_path}")

    if parameters is None:
        parameters = BookmarkParameters()
    if config is None:
        config = PipelineConfig()

    started = time.perf_counter()
    run = BookmarkRun.create(config.runs_dir, design_name)
    copied_image = run.store_input(image_path)

    max_pixels = config.quantizer.max_pixels if config.downscale_large_images else None
    image = load_image(str(copied_image), max_pixels=max_pixels)
    logger.info("Running bookmark pipeline for %s (%dx%d)", copied_image, image.shape[1], image.shape[0])
    bookmark = run_bookmark_pipeline(image, parameters, config, progress=progress, cancel=cancel)
    geometry = bookmark.geometry

    layer_paths: List[str] = []
    if config.export_layers:
        for index, layer in enumerate(geometry.layers):
            path = run.export_layer_stl(index, layer.id, layer.color.hex, layer.mesh)
            layer_paths.append(str(path))

    combined_path = None
    if config.export_combined:
        combined_path = str(run.export_combined_stl(geometry.combined_mesh()))

    elapsed = time.perf_counter() - started
    metrics_payload: Dict[str, object] = {
        "elapsed_s": round(elapsed, 3),
        "timings": bookmark.timings,
        "parameters": asdict(parameters),
        "palette": [c.hex for c in palette_by_luminance(bookmark.quantized)],
        "height_map": height_map_metrics(
            bookmark.quantized.height_map,
            bookmark.quantized.width,
            bookmark.quantized.height,
        ),
        "quantization": {
            "iterations": bookmark.quantized.iterations,
            "converged": bookmark.quantized.converged,
        },
        "generation": geometry.generation_stats,
        "layers": [
            {
                "id": layer.id,
                "color": layer.color.hex,
                "height": layer.height,
                "z_bottom": layer.z_bottom,
                "z_top": layer.z_top,
                "regions": len(layer.regions),
                "triangles": layer.triangle_count,
            }
            for layer in geometry.layers
        ],
        "validation": build_validation_summary(bookmark.check, geometry),
        "issues": [asdict(i) for i in bookmark.check.issues],
    }
    run.write_metrics(metrics_payload)
    run.write_summary(_build_summary(bookmark, run.run_id, elapsed))
    run.finish(bookmark.check.is_printable)

    return PipelineResult(
        run_id=run.run_id,
        run_dir=str(run.run_dir),
        metrics_path=str(run.metrics_path),
        summary_path=str(run.summary_path),
        manifest_path=str(run.manifest_path),
        image_input_path=str(copied_image),
        layer_stl_paths=layer_paths,
        combined_stl_path=combined_path,
        bookmark=bookmark,
    )


def _build_summary(bookmark: BookmarkResult, run_id: str, elapsed_s: float) -> str:
    q = bookmark.quantized
    palette = ", ".join(c.hex for c in palette_by_luminance(q))
    lines = [
        f"# Run {run_id}",
        "",
        f"- Duration: {elapsed_s:.2f}s",
        f"- Image: {q.width}x{q.height} px, {len(q.color_palette)} colors ({palette})",
        f"- K-means: {q.iterations} iterations, converged={q.converged}",
        f"- Layers: {len(bookmark.geometry.layers)}",
        f"- Estimated STL size: {bookmark.geometry.estimated_file_size} bytes",
        "",
        "## Printability",
        "",
    ]
    return "\n".join(lines) + summarize_check(bookmark.check, bookmark.geometry)
