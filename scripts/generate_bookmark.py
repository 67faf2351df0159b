#!/usr/bin/env python3
"""
Generate a multi-layer 3D-printable bookmark from an image.

Usage:
    python scripts/generate_bookmark.py --image photo.png
    python scripts/generate_bookmark.py --image logo.png --colors 3 --width 40 --height 120
    python scripts/generate_bookmark.py --image art.png --contour hull --seed 7 -v

Each run writes runs/<stamp>_<name>/ with per-layer STL files, a combined
STL, metrics.json and summary.md; runs/latest points at the newest run.
"""
import sys
import argparse
import logging
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from color_quantizer import QuantizerConfig, suggest_color_count
from diagnosis import describe_failure
from errors import BookmarkError
from geometry_generator import BookmarkParameters, GenerationOptions
from geometry_validator import ValidationConfig
from height_mapping import HEIGHT_DIRECTIONS, HEIGHT_STRATEGIES, HeightMappingConfig
from materials import FILAMENTS
from mesh_cleanup import MeshCleanupConfig
from pipeline import PipelineConfig, load_image, run_pipeline_from_image


def _print_progress(stage: str, progress: float, message: str) -> None:
    logging.getLogger("progress").debug("%5.1f%% %s %s", progress * 100.0, stage, message)


def main():
    parser = argparse.ArgumentParser(
        description="Generate a layered 3D-printable bookmark from an image"
    )
    parser.add_argument("--image", type=str, required=True, help="Path to input image")
    parser.add_argument("--name", type=str, default="bookmark", help="Design name")
    parser.add_argument("--runs-dir", type=str, default="runs", help="Run output root")

    # Bookmark dimensions
    parser.add_argument("--width", type=float, default=50.0, help="Width in mm (default: 50)")
    parser.add_argument("--height", type=float, default=150.0, help="Height in mm (default: 150)")
    parser.add_argument(
        "--layer-thickness", type=float, default=0.2,
        help="Relief step per color rank in mm (default: 0.2)",
    )
    parser.add_argument(
        "--base-thickness", type=float, default=2.0, help="Base plate thickness in mm (default: 2.0)"
    )
    parser.add_argument(
        "--corner-radius", type=float, default=2.0, help="Corner radius in mm (default: 2.0)"
    )
    parser.add_argument(
        "--colors", type=int, default=None,
        help="Palette size 2-8 (default: suggested from the image)",
    )

    # Quantization
    parser.add_argument("--seed", type=int, default=None, help="Random seed for k-means")
    parser.add_argument(
        "--height-strategy", type=str, default="linear", choices=list(HEIGHT_STRATEGIES[:3]),
        help="Color rank to height curve (default: linear)",
    )
    parser.add_argument(
        "--height-direction", type=str, default="dark_high", choices=list(HEIGHT_DIRECTIONS),
        help="Which end of the palette is raised (default: dark_high)",
    )

    # Geometry
    parser.add_argument(
        "--contour", type=str, default="trace", choices=["trace", "hull"],
        help="Region footprint: traced pixel outline or convex hull (default: trace)",
    )
    parser.add_argument(
        "--min-feature", type=float, default=0.5,
        help="Drop regions smaller than this many mm squared (default: 0.5)",
    )
    parser.add_argument("--no-optimize", action="store_true", help="Skip mesh cleanup")
    parser.add_argument("--no-simplify", action="store_true", help="Skip mesh decimation")

    # Validation
    parser.add_argument(
        "--material", type=str, default="pla", choices=list(FILAMENTS.keys()),
        help="Filament for material estimates (default: pla)",
    )
    parser.add_argument(
        "--permissive", action="store_true", help="Use relaxed validation limits",
    )
    parser.add_argument("-v", "--verbose", action="store_true")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    quantizer_config = QuantizerConfig(
        seed=args.seed,
        height_mapping=HeightMappingConfig(
            strategy=args.height_strategy,
            direction=args.height_direction,
        ),
    )

    color_count = args.colors
    if color_count is None:
        try:
            color_count = suggest_color_count(
                load_image(args.image, max_pixels=quantizer_config.max_pixels)
            )
        except (OSError, BookmarkError) as e:
            print(f"Error: {e}")
            return 1
        print(f"Using {color_count} colors (suggested)")

    parameters = BookmarkParameters(
        width=args.width,
        height=args.height,
        layer_thickness=args.layer_thickness,
        base_thickness=args.base_thickness,
        corner_radius=args.corner_radius,
        color_count=color_count,
    )

    validation = ValidationConfig.permissive() if args.permissive else ValidationConfig.for_bookmark()
    validation.material_key = args.material

    pipeline_config = PipelineConfig(
        runs_dir=args.runs_dir,
        quantizer=quantizer_config,
        generation=GenerationOptions(
            min_feature_size=args.min_feature,
            contour_mode=args.contour,
            enable_optimization=not args.no_optimize,
            cleanup=MeshCleanupConfig(simplify_enabled=not args.no_simplify),
        ),
        validation=validation,
    )

    try:
        result = run_pipeline_from_image(
            args.image, args.name, parameters, pipeline_config, progress=_print_progress,
        )
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1
    except BookmarkError as e:
        report = describe_failure(e)
        print(f"{report.status}: {report.message}")
        if report.suggestion:
            print(f"Suggestion: {report.suggestion}")
        return 1

    check = result.bookmark.check
    geometry = result.bookmark.geometry
    print(f"\nRun: {result.run_dir}")
    print(f"Layers: {len(geometry.layers)}")
    for layer in geometry.layers:
        print(
            f"  {layer.id}: {layer.color.hex} z={layer.z_bottom:.2f}-{layer.z_top:.2f} mm, "
            f"{len(layer.regions)} regions, {layer.triangle_count} triangles"
        )
    print(f"Printable: {'yes' if check.is_printable else 'no'}")
    print(f"Issues: {len(check.errors)} errors, {len(check.warnings)} warnings")
    print(f"Estimated print time: {check.estimated_print_time:.0f} min")
    print(f"Material: {check.material_usage:.2f} g")
    if result.combined_stl_path:
        print(f"STL: {result.combined_stl_path}")
    print(f"Summary: {result.summary_path}")
    return 0 if check.is_printable else 2


if __name__ == "__main__":
    sys.exit(main())
