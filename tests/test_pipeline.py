from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest
import trimesh
from PIL import Image

from errors import CancelledError, InvalidInputError
from geometry_generator import BookmarkParameters
from pipeline import PipelineConfig, load_image, run_bookmark_pipeline, run_pipeline_from_image
from color_quantizer import QuantizerConfig
from progress import CancellationToken
from run_protocol import read_latest_run, slugify


@pytest.fixture
def gradient_png(gradient_image, tmp_path: Path) -> str:
    path = tmp_path / "source" / "rings.png"
    path.parent.mkdir()
    Image.fromarray(gradient_image).save(path)
    return str(path)


def _config(tmp_path: Path) -> PipelineConfig:
    return PipelineConfig(runs_dir=str(tmp_path / "runs"), quantizer=QuantizerConfig(seed=0))


def test_bookmark_pipeline_in_memory(gradient_image, bookmark_parameters, tmp_path: Path):
    seen = []
    result = run_bookmark_pipeline(
        gradient_image,
        bookmark_parameters,
        _config(tmp_path),
        progress=lambda stage, p, msg: seen.append(p),
    )
    assert result.check.is_printable
    assert len(result.quantized.color_palette) == 4
    assert len(result.geometry.layers) >= 2
    assert set(result.timings) == {"quantize_s", "generate_s", "validate_s"}
    assert seen == sorted(seen)
    assert seen[-1] == 1.0


def test_bookmark_pipeline_rejects_bad_parameters(gradient_image):
    with pytest.raises(InvalidInputError):
        run_bookmark_pipeline(gradient_image, BookmarkParameters(width=-1.0))


def test_bookmark_pipeline_cancel(gradient_image, bookmark_parameters):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(CancelledError):
        run_bookmark_pipeline(gradient_image, bookmark_parameters, cancel=token)


def test_load_image_downscales(tmp_path: Path):
    path = tmp_path / "big.png"
    Image.new("RGB", (200, 100), (10, 20, 30)).save(path)
    image = load_image(str(path), max_pixels=5000)
    assert image.shape[2] == 4
    assert image.shape[0] * image.shape[1] <= 5000
    assert image.shape[1] > image.shape[0]
    assert np.all(image[..., 3] == 255)


def test_pipeline_creates_run_folder_structure(gradient_png, bookmark_parameters, tmp_path: Path):
    config = _config(tmp_path)
    result = run_pipeline_from_image(
        gradient_png, design_name="Ring Test", parameters=bookmark_parameters, config=config,
    )

    run_dir = Path(result.run_dir)
    assert run_dir.name.endswith(slugify("Ring Test"))
    assert (run_dir / "input" / "rings.png").exists()
    assert (run_dir / "manifest.json").exists()
    assert (run_dir / "metrics.json").exists()
    assert (run_dir / "summary.md").exists()

    assert len(result.layer_stl_paths) == len(result.bookmark.geometry.layers)
    for stl in result.layer_stl_paths:
        assert Path(stl).parent == run_dir / "artifacts" / "layers"
        assert trimesh.load(stl).is_watertight
    combined = trimesh.load(result.combined_stl_path)
    assert len(combined.faces) == result.bookmark.geometry.face_count

    metrics = json.loads((run_dir / "metrics.json").read_text(encoding="utf-8"))
    assert metrics["run_id"] == result.run_id
    assert metrics["validation"]["is_printable"] is True
    assert len(metrics["layers"]) == len(result.layer_stl_paths)
    assert metrics["palette"] == ["#000000", "#555555", "#aaaaaa", "#ffffff"]
    assert metrics["height_map"]["unique_heights"] == 4

    manifest = json.loads((run_dir / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["run_id"] == result.run_id
    assert manifest["printable"] is True
    assert "metrics.json" in manifest["artifacts"]
    assert any(a.startswith("artifacts/layers/") for a in manifest["artifacts"])

    summary = (run_dir / "summary.md").read_text(encoding="utf-8")
    assert summary.startswith(f"# Run {result.run_id}")
    assert "**Result:** printable" in summary

    assert read_latest_run(config.runs_dir) == run_dir


def test_pipeline_without_exports(gradient_png, bookmark_parameters, tmp_path: Path):
    config = _config(tmp_path)
    config.export_layers = False
    config.export_combined = False
    result = run_pipeline_from_image(gradient_png, parameters=bookmark_parameters, config=config)
    assert result.layer_stl_paths == []
    assert result.combined_stl_path is None
    assert not list((Path(result.run_dir) / "artifacts" / "layers").iterdir())


def test_missing_image(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        run_pipeline_from_image(str(tmp_path / "nope.png"), config=_config(tmp_path))
