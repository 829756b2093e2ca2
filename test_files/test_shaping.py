import numpy as np
import pytest

from surface_forces.shaping import (
    distance_gradient,
    edge_statistics,
    force_gradient,
    penalty,
    s_shaped_membership,
    shape_force_magnitude,
)


def test_s_shaped_membership():
    x = np.linspace(-1.0, 3.0, 41)
    m = s_shaped_membership(x, 0.0, 2.0)
    assert m[0] == 0.0
    assert m[-1] == 1.0
    assert s_shaped_membership(1.0, 0.0, 2.0) == pytest.approx(0.5)
    assert np.all(np.diff(m) >= 0.0)


def test_penalty_is_mean_absolute_distance():
    assert penalty(np.array([1.0, -2.0, 3.0, -4.0])) == pytest.approx(2.5)
    assert penalty(np.zeros(0)) == 0.0


def test_edge_statistics_active_only():
    distance = np.array([1.0, 2.0, 100.0])
    magnitude = np.array([2.0, 4.0, 100.0])
    dmax, mavg = edge_statistics(distance, magnitude, np.array([1, 1, 0]))
    assert dmax == pytest.approx(np.percentile([1.0, 2.0], 95))
    assert mavg == pytest.approx(3.0)
    assert edge_statistics(distance, magnitude, np.zeros(3)) == (0.0, 0.0)


def test_no_signal_gives_zero_magnitude():
    status = np.ones(5, dtype=np.int32)
    out = shape_force_magnitude(np.zeros(5), np.ones(5), status)
    assert np.all(out == 0.0)
    out = shape_force_magnitude(np.linspace(-1, 1, 5), np.zeros(5), status)
    assert np.all(out == 0.0)


def test_magnitude_monotonic_in_distance():
    distance = np.linspace(-5.0, 5.0, 21)
    out = shape_force_magnitude(distance, np.ones(21), np.ones(21, dtype=np.int32))
    assert np.all(np.sign(out) == np.sign(distance))
    order = np.argsort(np.abs(distance), kind="stable")
    assert np.all(np.diff(np.abs(out[order])) >= -1e-12)
    assert np.all(np.abs(out) <= 1.0)


def test_magnitude_monotonic_in_raw_magnitude():
    magnitude = np.linspace(0.0, 2.0, 21)
    out = shape_force_magnitude(np.full(21, 2.0), magnitude, np.ones(21, dtype=np.int32))
    assert out[0] == 0.0
    assert np.all(np.diff(out) >= -1e-12)
    assert out[-1] == pytest.approx(0.5)


def test_inactive_vertices_get_zero_magnitude():
    status = np.array([1, 0, 1, 0], dtype=np.int32)
    out = shape_force_magnitude(np.array([1.0, 5.0, -2.0, 3.0]), np.ones(4), status)
    assert out[1] == 0.0 and out[3] == 0.0
    assert out[0] > 0.0 and out[2] < 0.0


def test_gradients():
    normals = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    status = np.array([1, 1, 0], dtype=np.int32)
    grad = force_gradient(np.array([0.5, -1.0, 2.0]), normals, status)
    np.testing.assert_allclose(grad, [[-0.5, 0, 0], [0, 1.0, 0], [0, 0, 0]])
    grad = distance_gradient(np.array([2.0, -1.0, 3.0]), normals, status)
    np.testing.assert_allclose(grad, [[2.0, 0, 0], [0, -1.0, 0], [0, 0, 0]])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
