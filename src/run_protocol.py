"""Run folders for bookmark generation.

A run lives in ``<runs_root>/<stamp>_<slug>/``::

    input/<image>                   copy of the source image
    artifacts/layers/NN_<id>_<hex>.stl
    artifacts/<run_id>.stl          every layer in one mesh
    metrics.json  summary.md  manifest.json

``<runs_root>/latest`` is a one-line text file naming the newest finished run.
Everything written through a BookmarkRun is listed in its manifest.
"""

from __future__ import annotations

import json
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from geometry_primitives import MeshData

LATEST_POINTER = "latest"


def slugify(value: str) -> str:
    value = re.sub(r"[^a-z0-9]+", "-", value.strip().lower())
    return value.strip("-") or "bookmark"


def _json_default(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


class BookmarkRun:
    """One run folder plus the list of artifacts written into it."""

    def __init__(self, runs_root: Path, run_id: str, design_name: str):
        self.runs_root = runs_root
        self.run_id = run_id
        self.design_name = design_name
        self.run_dir = runs_root / run_id
        self.input_dir = self.run_dir / "input"
        self.artifacts_dir = self.run_dir / "artifacts"
        self.layers_dir = self.artifacts_dir / "layers"
        self.input_image: Optional[Path] = None
        self.artifacts: List[Path] = []

    @classmethod
    def create(cls, runs_root: str, design_name: str) -> "BookmarkRun":
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        run = cls(Path(runs_root), f"{stamp}_{slugify(design_name)}", design_name)
        run.layers_dir.mkdir(parents=True, exist_ok=True)
        run.input_dir.mkdir(parents=True, exist_ok=True)
        return run

    @property
    def metrics_path(self) -> Path:
        return self.run_dir / "metrics.json"

    @property
    def summary_path(self) -> Path:
        return self.run_dir / "summary.md"

    @property
    def manifest_path(self) -> Path:
        return self.run_dir / "manifest.json"

    def store_input(self, image_path: str) -> Path:
        """Copy the source image under ``input/`` and remember it."""
        src = Path(image_path)
        self.input_image = self.input_dir / src.name
        shutil.copy2(src, self.input_image)
        return self.input_image

    def export_layer_stl(self, index: int, layer_id: str, color_hex: str, mesh: MeshData) -> Path:
        name = f"{index:02d}_{layer_id}_{color_hex.lstrip('#')}.stl"
        return self._export(self.layers_dir / name, mesh)

    def export_combined_stl(self, mesh: MeshData) -> Path:
        return self._export(self.artifacts_dir / f"{self.run_id}.stl", mesh)

    def _export(self, path: Path, mesh: MeshData) -> Path:
        mesh.to_trimesh().export(str(path))
        self.artifacts.append(path)
        return path

    def write_metrics(self, payload: Dict[str, Any]) -> Path:
        text = json.dumps({"run_id": self.run_id, **payload}, indent=2, default=_json_default)
        return self._write(self.metrics_path, text)

    def write_summary(self, markdown: str) -> Path:
        return self._write(self.summary_path, markdown)

    def _write(self, path: Path, text: str) -> Path:
        path.write_text(text, encoding="utf-8")
        if path not in self.artifacts:
            self.artifacts.append(path)
        return path

    def finish(self, printable: bool) -> Path:
        """Write the manifest and point ``latest`` at this run."""
        manifest = {
            "run_id": self.run_id,
            "design_name": self.design_name,
            "created_utc": datetime.now(timezone.utc).isoformat(),
            "input_image": str(self.input_image) if self.input_image else None,
            "printable": bool(printable),
            "artifacts": [p.relative_to(self.run_dir).as_posix() for p in self.artifacts],
        }
        self.manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        pointer = self.runs_root / LATEST_POINTER
        staging = pointer.with_name(f".{LATEST_POINTER}.tmp")
        staging.write_text(self.run_id, encoding="utf-8")
        staging.replace(pointer)
        return self.manifest_path


def read_latest_run(runs_root: str) -> Optional[Path]:
    """Folder of the newest finished run, or None when there is none."""
    pointer = Path(runs_root) / LATEST_POINTER
    if not pointer.is_file():
        return None
    run_dir = Path(runs_root) / pointer.read_text(encoding="utf-8").strip()
    return run_dir if run_dir.is_dir() else None
