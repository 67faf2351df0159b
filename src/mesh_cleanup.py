"""
Mesh cleanup and guarded decimation for generated layer meshes.

Optional pass run after extrusion. It can:
1. Merge coincident vertices and drop duplicate / degenerate faces.
2. Remove vertices no face references.
3. Decimate large meshes, reverting when the result drifts in size or
   loses watertightness.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import logging
import numpy as np
import trimesh

from geometry_primitives import MeshData

logger = logging.getLogger(__name__)


@dataclass
class MeshCleanupConfig:
    """Configuration for layer mesh cleanup."""

    merge_digits: int = 7
    remove_degenerate: bool = True
    simplify_enabled: bool = True
    simplify_min_faces: int = 20000
    simplify_target_reduction: float = 0.50
    simplify_max_bbox_drift_ratio: float = 0.02


def clean_mesh(
    mesh: trimesh.Trimesh,
    config: Optional[MeshCleanupConfig] = None,
) -> trimesh.Trimesh:
    """Return a topologically tidied copy of *mesh*."""
    if config is None:
        config = MeshCleanupConfig()
    out = mesh.copy()
    if len(out.faces) == 0:
        return out
    out.merge_vertices(digits_vertex=config.merge_digits)
    out.update_faces(out.unique_faces())
    if config.remove_degenerate:
        keep = out.nondegenerate_faces()
        if not keep.all():
            trimmed = out.copy()
            trimmed.update_faces(keep)
            # Zero-area slivers on a closed surface still carry edges.
            if out.is_watertight and not trimmed.is_watertight:
                logger.debug(
                    "Keeping %d degenerate faces that close the surface",
                    int((~keep).sum()),
                )
            else:
                out = trimmed
    out.remove_unreferenced_vertices()
    return out


def simplify_mesh(
    mesh: trimesh.Trimesh,
    config: Optional[MeshCleanupConfig] = None,
) -> Tuple[trimesh.Trimesh, dict]:
    """Optionally decimate *mesh* with quality guards.

    Returns:
        (mesh_after_simplification, stats_dict)
    """
    if config is None:
        config = MeshCleanupConfig()

    before_faces = int(len(mesh.faces))
    stats = {
        "enabled": bool(config.simplify_enabled),
        "before_faces": before_faces,
        "after_faces": before_faces,
        "mode": "disabled",
        "guard_reverted": False,
        "bbox_drift_ratio": 0.0,
    }

    if not config.simplify_enabled:
        return mesh, stats

    if before_faces < int(config.simplify_min_faces):
        stats["mode"] = "skip_small"
        return mesh, stats

    target_reduction = float(np.clip(config.simplify_target_reduction, 0.0, 0.95))
    if target_reduction <= 0.0:
        stats["mode"] = "target_zero"
        return mesh, stats

    target_faces = max(4, int(round(before_faces * (1.0 - target_reduction))))
    simplified, mode = _decimate(mesh, target_faces)
    if simplified is None or len(simplified.faces) == 0:
        stats["mode"] = "failed"
        return mesh, stats

    simplified = _postprocess_mesh(simplified, config)
    after_faces = int(len(simplified.faces))
    stats["after_faces"] = after_faces
    if after_faces >= before_faces:
        stats["mode"] = "no_gain"
        stats["after_faces"] = before_faces
        return mesh, stats

    bbox_drift = _bbox_drift_ratio(mesh, simplified)
    stats["bbox_drift_ratio"] = float(bbox_drift)
    stats["mode"] = mode

    if bbox_drift > float(config.simplify_max_bbox_drift_ratio):
        stats["guard_reverted"] = True
        stats["mode"] = f"{mode}_bbox_revert"
        stats["after_faces"] = before_faces
        return mesh, stats

    if mesh.is_watertight and not simplified.is_watertight:
        stats["guard_reverted"] = True
        stats["mode"] = f"{mode}_watertight_revert"
        stats["after_faces"] = before_faces
        return mesh, stats

    return simplified, stats


def optimize_layer_mesh(
    mesh: MeshData,
    config: Optional[MeshCleanupConfig] = None,
) -> Tuple[MeshData, dict]:
    """Clean and optionally decimate one layer mesh."""
    if config is None:
        config = MeshCleanupConfig()
    if mesh.is_empty:
        return mesh, {"mode": "empty", "before_faces": 0, "after_faces": 0}

    cleaned = clean_mesh(mesh.to_trimesh(), config)
    if len(cleaned.faces) == 0:
        logger.warning("Cleanup removed every face; keeping the original layer mesh")
        return mesh, {
            "mode": "cleanup_emptied",
            "before_faces": mesh.triangle_count,
            "after_faces": mesh.triangle_count,
        }
    simplified, stats = simplify_mesh(cleaned, config)
    stats["cleaned_faces"] = int(len(cleaned.faces))
    stats["before_faces"] = mesh.triangle_count
    return MeshData.from_trimesh(simplified), stats


def _decimate(mesh: trimesh.Trimesh, target_faces: int) -> Tuple[trimesh.Trimesh, str]:
    """Quadric decimation, falling back to vertex clustering on failure."""
    try:
        return mesh.simplify_quadric_decimation(face_count=target_faces), "quadric"
    except Exception as exc:
        logger.warning("Quadric simplification failed, using clustering fallback: %s", exc)
    return _simplify_by_vertex_clustering(mesh, target_faces), "clustering"


def _simplify_by_vertex_clustering(
    mesh: trimesh.Trimesh,
    target_faces: int,
) -> trimesh.Trimesh:
    """Fallback simplification via vertex quantization clustering."""
    if len(mesh.faces) <= target_faces:
        return mesh.copy()

    extents = mesh.bounds[1] - mesh.bounds[0]
    diag = float(np.linalg.norm(extents))
    if diag < 1e-6:
        return mesh.copy()

    best = mesh.copy()
    best_faces = len(best.faces)
    # Coarser grids merge more vertices.
    for divisor in [2000, 1200, 800, 500, 300, 200, 120]:
        step = diag / float(divisor)
        simplified = _quantize_mesh_vertices(mesh, step)
        fcount = len(simplified.faces)
        if fcount < best_faces:
            best = simplified
            best_faces = fcount
        if fcount <= target_faces:
            return simplified

    return best


def _quantize_mesh_vertices(mesh: trimesh.Trimesh, step: float) -> trimesh.Trimesh:
    """Snap vertices onto a 3D grid and rebuild the mesh."""
    if step <= 0.0 or len(mesh.vertices) == 0:
        return mesh.copy()

    mins = mesh.bounds[0]
    key = np.round((mesh.vertices - mins) / step).astype(np.int64)
    unique_key, inverse = np.unique(key, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    new_vertices = mins + unique_key.astype(float) * step
    new_faces = inverse[mesh.faces]

    # Drop faces collapsed by the merge.
    keep = (
        (new_faces[:, 0] != new_faces[:, 1])
        & (new_faces[:, 1] != new_faces[:, 2])
        & (new_faces[:, 0] != new_faces[:, 2])
    )
    if not np.any(keep):
        return mesh.copy()

    return trimesh.Trimesh(
        vertices=new_vertices,
        faces=new_faces[keep],
        process=False,
    )


def _postprocess_mesh(
    mesh: trimesh.Trimesh,
    config: MeshCleanupConfig,
) -> trimesh.Trimesh:
    """Normalize mesh topology after simplification."""
    out = clean_mesh(mesh, config)
    if len(out.faces):
        out.fix_normals()
    return out


def _bbox_drift_ratio(before: trimesh.Trimesh, after: trimesh.Trimesh) -> float:
    """Max relative drift of axis extents between two meshes."""
    b_ext = before.bounds[1] - before.bounds[0]
    a_ext = after.bounds[1] - after.bounds[0]
    denom = np.maximum(np.abs(b_ext), 1e-6)
    rel = np.abs(a_ext - b_ext) / denom
    return float(np.max(rel))
