import numpy as np
import pytest

from surface_forces.mesh_utils import (
    COMBINATORIAL,
    GAUSSIAN,
    build_edge_table,
    extract_surface,
    median_filter,
    ring_neighborhoods,
    save_mesh_with_metadata,
    smooth_point_data,
    triangle_cells,
)
from surface_forces.surface import DeformableSurface

# Unit square split into two triangles
SQUARE_POINTS = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [0.0, 1.0, 0.0]])
SQUARE_TRIANGLES = np.array([[0, 1, 2], [0, 2, 3]])


def test_edge_table():
    table = build_edge_table(SQUARE_TRIANGLES, 4)
    assert table.num_points == 4
    assert list(table.neighbors(0)) == [1, 2, 3]
    assert list(table.neighbors(1)) == [0, 2]
    assert list(table.neighbors(3)) == [0, 2]
    assert table.adjacency_matrix().nnz == 10


def test_edge_table_isolated_point():
    table = build_edge_table(SQUARE_TRIANGLES[:1], 4)
    assert len(table.neighbors(3)) == 0


def test_ring_neighborhoods():
    table = build_edge_table(SQUARE_TRIANGLES, 4)
    assert ring_neighborhoods(table, 0).nnz == 4
    ring = ring_neighborhoods(table, 1)
    assert list(ring.indices[ring.indptr[1]:ring.indptr[2]]) == [0, 1, 2]


def test_median_filter_removes_outlier():
    table = build_edge_table(SQUARE_TRIANGLES, 4)
    filtered = median_filter(np.array([0.0, 0.0, 0.0, 100.0]), table, 1)
    np.testing.assert_allclose(filtered, 0.0)
    values = np.array([1.0, 2.0, 3.0, 4.0])
    np.testing.assert_allclose(median_filter(values, table, 0), values)


@pytest.mark.parametrize("connectivity", [1, 2])
def test_median_filter_matches_neighborhood_median(sphere_surface, connectivity):
    surface = sphere_surface(8.0)
    table = surface.edge_table
    values = np.random.default_rng(3).normal(size=surface.number_of_points)
    ring = ring_neighborhoods(table, connectivity)
    expected = np.array([
        np.median(values[ring.indices[ring.indptr[i]:ring.indptr[i + 1]]])
        for i in range(surface.number_of_points)
    ])
    np.testing.assert_allclose(median_filter(values, table, connectivity), expected)


def test_median_filter_propagates_nan():
    table = build_edge_table(SQUARE_TRIANGLES[:1], 4)
    filtered = median_filter(np.array([np.nan, 1.0, 2.0, 5.0]), table, 1)
    assert np.all(np.isnan(filtered[:3]))
    assert filtered[3] == 5.0


def test_combinatorial_smoothing():
    table = build_edge_table(SQUARE_TRIANGLES, 4)
    smoothed = smooth_point_data(np.array([0.0, 0.0, 0.0, 3.0]), SQUARE_POINTS, table, 1, COMBINATORIAL)
    np.testing.assert_allclose(smoothed, [1.0, 0.0, 1.0, 0.0])


@pytest.mark.parametrize("weighting", [GAUSSIAN, COMBINATORIAL])
def test_smoothing_keeps_constant_data(weighting):
    table = build_edge_table(SQUARE_TRIANGLES, 4)
    smoothed = smooth_point_data(np.full(4, 2.5), SQUARE_POINTS, table, 5, weighting)
    np.testing.assert_allclose(smoothed, 2.5)


def test_smoothing_isolated_point_keeps_value():
    table = build_edge_table(SQUARE_TRIANGLES[:1], 4)
    smoothed = smooth_point_data(np.array([0.0, 0.0, 0.0, 7.0]), SQUARE_POINTS, table, 3)
    assert smoothed[3] == 7.0


def test_unknown_weighting():
    table = build_edge_table(SQUARE_TRIANGLES, 4)
    with pytest.raises(ValueError):
        smooth_point_data(np.zeros(4), SQUARE_POINTS, table, 1, "laplacian")


def test_surface_validation():
    with pytest.raises(ValueError):
        DeformableSurface(np.zeros((4, 2)), SQUARE_TRIANGLES)
    with pytest.raises(ValueError):
        DeformableSurface(SQUARE_POINTS, np.array([[0, 1, 4]]))
    with pytest.raises(ValueError):
        DeformableSurface(SQUARE_POINTS, SQUARE_TRIANGLES, status=np.ones(3))


def test_surface_normals_and_mtime():
    surface = DeformableSurface(SQUARE_POINTS, SQUARE_TRIANGLES, status=[1, 0, 2, 1])
    np.testing.assert_array_equal(surface.status, [1, 0, 1, 1])
    np.testing.assert_allclose(surface.normals, np.tile([0.0, 0.0, 1.0], (4, 1)))
    before = surface.mtime
    surface.displace(np.tile([0.0, 0.0, 1.0], (4, 1)))
    assert surface.mtime > before
    assert surface.points[:, 2].tolist() == [1.0] * 4


def test_sphere_normals_point_outwards(sphere_surface):
    surface = sphere_surface(8.0)
    radial = surface.points - np.array([19.5, 19.5, 19.5])
    radial /= np.linalg.norm(radial, axis=1, keepdims=True)
    assert np.all(np.sum(surface.normals * radial, axis=1) > 0.9)


def test_extract_and_save(tmp_path, radial_distance):
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    mesh = extract_surface((radial_distance < 8.0).astype(np.float64), affine)
    assert triangle_cells(mesh) is not None
    assert np.max(np.abs(mesh.points - 39.0)) < 2.0 * 9.0
    output = tmp_path / "surface.vtk"
    save_mesh_with_metadata(mesh, output, {"vertices": len(mesh.points)})
    assert output.exists()
    assert output.with_suffix(".json").exists()
    surface = DeformableSurface.read(output)
    assert surface.number_of_points == len(mesh.points)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
