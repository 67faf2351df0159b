"""Tests for printability validation."""

import time

import numpy as np
import pytest
import trimesh
from shapely.geometry import Point

from color_quantizer import QuantizerConfig, quantize
from colors import BASE_COLOR
from errors import CancelledError, InvalidInputError
from geometry_generator import (
    BookmarkGeometry,
    BookmarkParameters,
    GeometryLayer,
    generate_geometry,
)
from geometry_primitives import BoundingBox3D, MeshData, extrude_footprint
from geometry_validator import (
    ValidationConfig,
    edge_face_counts,
    estimate_material_usage,
    estimate_print_time,
    quick_validate,
    triangle_quality,
    validate_geometry,
)
from materials import FILAMENTS, get_filament
from progress import CancellationToken


def _geometry(*meshes: trimesh.Trimesh) -> BookmarkGeometry:
    """Wrap trimesh objects as base + relief layers."""
    layers = []
    for i, mesh in enumerate(meshes):
        data = MeshData.from_trimesh(mesh)
        layers.append(GeometryLayer(
            id="base" if i == 0 else f"layer-{i}",
            color=BASE_COLOR,
            height=0.0 if i == 0 else 1.0,
            mesh=data,
            z_bottom=float(data.bounds[0][2]),
            z_top=float(data.bounds[1][2]),
        ))
    stacked = np.vstack([layer.mesh.vertices for layer in layers])
    return BookmarkGeometry(
        layers=layers,
        bounding_box=BoundingBox3D(
            min=tuple(stacked.min(axis=0).tolist()),
            max=tuple(stacked.max(axis=0).tolist()),
        ),
        vertex_count=sum(l.mesh.vertex_count for l in layers),
        face_count=sum(l.mesh.triangle_count for l in layers),
    )


def _box(extents, center):
    mesh = trimesh.creation.box(extents=extents)
    mesh.apply_translation(center)
    return mesh


@pytest.fixture
def bookmark_geometry(quantized_gradient, bookmark_parameters):
    return generate_geometry(quantized_gradient, bookmark_parameters)


class TestMeasurements:
    def test_edge_face_counts_closed_box(self, box_mesh):
        edges, counts = edge_face_counts(box_mesh.faces)
        assert len(edges) == 18
        assert np.all(counts == 2)

    def test_triangle_quality_equilateral(self):
        verts = np.array([[0, 0, 0], [1, 0, 0], [0.5, np.sqrt(3) / 2, 0]])
        assert triangle_quality(verts, np.array([[0, 1, 2]]))[0] == pytest.approx(1.0)

    def test_triangle_quality_degenerate(self):
        verts = np.array([[0, 0, 0], [1, 0, 0], [2, 0, 0]])
        assert triangle_quality(verts, np.array([[0, 1, 2]]))[0] == pytest.approx(0.0)


class TestGeneratedBookmark:
    """The concentric-square bookmark should print."""

    def test_printable(self, bookmark_geometry, bookmark_parameters):
        check = validate_geometry(bookmark_geometry, bookmark_parameters, ValidationConfig.for_bookmark())
        assert check.is_printable, [i.description for i in check.errors]
        assert check.errors == []
        assert all(i.type != "non-manifold" for i in check.issues)
        assert all(i.type != "not-watertight" for i in check.issues)

    def test_printable_with_default_config(self, bookmark_geometry, bookmark_parameters):
        check = validate_geometry(bookmark_geometry, bookmark_parameters)
        assert check.is_printable, [i.description for i in check.errors]
        assert check.errors == []

    def test_deterministic(self, bookmark_geometry, bookmark_parameters):
        a = validate_geometry(bookmark_geometry, bookmark_parameters)
        b = validate_geometry(bookmark_geometry, bookmark_parameters)
        assert a == b

    def test_estimates(self, bookmark_geometry, bookmark_parameters):
        check = validate_geometry(bookmark_geometry, bookmark_parameters)
        # 30 x 60 x 3.2mm bounding volume in PLA
        assert check.material_usage == pytest.approx(1.07, abs=0.01)
        assert check.estimated_print_time == 2.0
        assert estimate_print_time(bookmark_geometry) == check.estimated_print_time
        assert estimate_material_usage(bookmark_geometry) == check.material_usage

    def test_lighter_filament_uses_less(self, bookmark_geometry):
        pla = estimate_material_usage(bookmark_geometry, ValidationConfig(material_key="pla"))
        abs_ = estimate_material_usage(bookmark_geometry, ValidationConfig(material_key="abs"))
        assert abs_ < pla

    def test_no_estimates_without_parameters(self, bookmark_geometry):
        check = validate_geometry(bookmark_geometry)
        assert check.estimated_print_time == 0.0
        assert check.material_usage == 0.0

    def test_thin_layer_warning(self, bookmark_geometry):
        params = BookmarkParameters(width=30.0, height=60.0, layer_thickness=0.2)
        check = validate_geometry(bookmark_geometry, params)
        constraints = [i for i in check.issues if i.type == "print-constraint"]
        assert constraints
        assert all(i.severity == "warning" for i in constraints)

    def test_progress_and_cancel(self, bookmark_geometry):
        seen = []
        validate_geometry(bookmark_geometry, progress=lambda s, p, m: seen.append((s, p)))
        assert seen[-1] == ("complete", 1.0)
        assert {s for s, _ in seen} == {"validation", "complete"}

        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError):
            validate_geometry(bookmark_geometry, cancel=token)

    def test_quick_validate(self, bookmark_geometry):
        check = quick_validate(bookmark_geometry)
        assert check.is_printable
        assert check.estimated_print_time == 0.0


class TestDefects:
    """Hand-built meshes with known problems."""

    def test_non_manifold_edge(self, box_mesh):
        vertices = np.vstack([box_mesh.vertices, [[0.0, 0.0, 8.0]]])
        a, b = box_mesh.faces[0][:2]
        faces = np.vstack([box_mesh.faces, [[a, b, len(vertices) - 1]]])
        broken = trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
        check = validate_geometry(_geometry(broken), config=ValidationConfig.permissive())
        issues = [i for i in check.issues if i.type == "non-manifold"]
        assert len(issues) == 1
        assert issues[0].severity == "error"
        assert len(faces) - 1 in issues[0].affected_faces
        assert not check.is_printable

    def test_open_mesh_is_warning(self, box_mesh):
        opened = trimesh.Trimesh(
            vertices=box_mesh.vertices, faces=box_mesh.faces[1:], process=False,
        )
        check = validate_geometry(_geometry(opened), config=ValidationConfig.permissive())
        issues = [i for i in check.issues if i.type == "not-watertight"]
        assert len(issues) == 1
        assert issues[0].severity == "warning"
        assert check.is_printable

    def test_floating_layer(self, box_mesh):
        floating = _box([4, 4, 1], [100, 0, 2.5])
        check = validate_geometry(_geometry(box_mesh, floating))
        issues = [i for i in check.issues if i.type == "floating-geometry"]
        assert len(issues) == 1
        assert issues[0].layer_index == 1
        assert not check.is_printable

    def test_layer_only_touching_edge_is_floating(self, box_mesh):
        touching = _box([4, 4, 1], [7, 0, 2.5])
        check = validate_geometry(_geometry(box_mesh, touching))
        issues = [i for i in check.issues if i.type == "floating-geometry"]
        assert len(issues) == 1
        assert issues[0].layer_index == 1

    def test_thin_feature(self, box_mesh):
        pin = _box([0.2, 0.2, 1.0], [0, 0, 2.5])
        check = validate_geometry(_geometry(box_mesh, pin))
        issues = [i for i in check.issues if i.type == "thin-feature"]
        assert len(issues) == 1
        assert issues[0].layer_index == 1
        assert issues[0].severity == "error"

    def test_vertical_edges_not_thin(self, box_mesh):
        # 2mm-tall walls with 10mm sides: only the short vertical edges are short
        check = validate_geometry(_geometry(box_mesh), config=ValidationConfig(min_feature_size=5.0))
        assert all(i.type != "thin-feature" for i in check.issues)

    def test_self_intersection(self):
        vertices = np.array([
            [0.0, 0.0, 0.0], [2.0, 0.0, 1.0], [0.0, 2.0, 2.0],
            [0.5, 0.5, 0.5], [3.0, 1.0, 3.0], [1.0, 3.0, 1.0],
        ])
        faces = np.array([[0, 1, 2], [3, 4, 5]])
        crossing = trimesh.Trimesh(vertices=vertices, faces=faces, process=False)
        check = validate_geometry(_geometry(crossing))
        issues = [i for i in check.issues if i.type == "self-intersection"]
        assert len(issues) == 1
        assert issues[0].affected_faces == [0, 1]
        assert issues[0].severity == "warning"

    def test_closed_box_has_no_self_intersection(self, box_mesh):
        check = validate_geometry(_geometry(box_mesh))
        assert all(i.type != "self-intersection" for i in check.issues)

    def test_sliver_heavy_layer_checked_quickly(self):
        # fine circle caps triangulate into long slivers spanning the x range
        disc = Point(0, 0).buffer(20.0, quad_segs=1000)
        mesh = extrude_footprint(disc, 0.0, 1.0)
        assert 15000 < mesh.triangle_count < 20000
        layer = GeometryLayer(id="base", color=BASE_COLOR, height=0.0, mesh=mesh, z_top=1.0)
        geometry = BookmarkGeometry(
            layers=[layer],
            bounding_box=BoundingBox3D((-20.0, -20.0, 0.0), (20.0, 20.0, 1.0)),
            vertex_count=mesh.vertex_count,
            face_count=mesh.triangle_count,
        )
        config = ValidationConfig(
            check_manifold=False,
            check_watertight=False,
            check_feature_size=False,
            check_triangle_quality=False,
        )
        started = time.perf_counter()
        check = validate_geometry(geometry, config=config)
        assert time.perf_counter() - started < 10.0
        assert all(i.type != "self-intersection" for i in check.issues)

    def test_complexity_limits(self, bookmark_geometry):
        check = validate_geometry(bookmark_geometry, config=ValidationConfig(max_triangles=10))
        assert any(i.type == "complexity" for i in check.issues)
        assert "Reduce the color count or enable mesh simplification" in check.recommendations

    def test_region_count_stability(self, bookmark_geometry):
        check = validate_geometry(bookmark_geometry, config=ValidationConfig(max_regions_per_layer=0))
        stability = [i for i in check.issues if i.type == "stability"]
        assert len(stability) == 3


class TestFinePitchBookmark:
    """Photo-like pixel pitch, default validator settings."""

    def test_target_prints(self, target_image):
        parameters = BookmarkParameters()
        quantized = quantize(target_image, 4, QuantizerConfig(seed=0))
        geometry = generate_geometry(quantized, parameters)
        check = validate_geometry(geometry, parameters)
        assert check.is_printable, [i.description for i in check.errors]
        assert all(i.type != "thin-feature" for i in check.issues)
        assert all(i.type != "not-watertight" for i in check.issues)


class TestStructure:
    def test_no_layers(self):
        empty = BookmarkGeometry(layers=[], bounding_box=BoundingBox3D((0, 0, 0), (1, 1, 1)))
        with pytest.raises(InvalidInputError):
            validate_geometry(empty)

    def test_missing_buffer(self, box_mesh):
        geometry = _geometry(box_mesh)
        layer = geometry.layers[0]
        layer.mesh = MeshData(vertices=None, faces=None, normals=None)
        with pytest.raises(InvalidInputError):
            validate_geometry(geometry)


class TestPresets:
    def test_bookmark_preset_is_stricter(self):
        default = ValidationConfig()
        strict = ValidationConfig.for_bookmark()
        assert strict.max_aspect_ratio < default.max_aspect_ratio
        assert strict.max_triangles < default.max_triangles

    def test_permissive_skips_expensive_checks(self):
        loose = ValidationConfig.permissive()
        assert not loose.check_self_intersections
        assert not loose.check_feature_size
        assert loose.check_manifold
        assert loose.max_triangles > ValidationConfig().max_triangles


class TestFilaments:
    def test_known_filament(self):
        pla = get_filament("pla")
        assert pla.density_g_per_mm3 == pytest.approx(0.00124)
        assert set(FILAMENTS) == {"pla", "petg", "abs", "tpu"}

    def test_unknown_filament(self):
        with pytest.raises(KeyError):
            get_filament("wood")
