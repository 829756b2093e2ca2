"""
Force magnitude shaping, penalty and gradient assembly for edge forces.
"""

import logging
from typing import Tuple

import numpy as np
import taichi as ti

from .runtime import ensure_taichi_initialized

logger = logging.getLogger(__name__)


def s_shaped_membership(x, a: float, b: float):
    """Zadeh's S-function: 0 at/below a, 1 at/above b, smooth and monotonic in between."""
    x = np.asarray(x, dtype=np.float64)
    out = np.zeros_like(x)
    if b <= a:
        out[x > a] = 1.0
        return out
    mid = 0.5 * (a + b)
    width = b - a
    lower = (x > a) & (x <= mid)
    upper = (x > mid) & (x < b)
    out[lower] = 2.0 * ((x[lower] - a) / width) ** 2
    out[upper] = 1.0 - 2.0 * ((x[upper] - b) / width) ** 2
    out[x >= b] = 1.0
    return out


@ti.func
def _s_membership(x, a, b):
    m = 0.0
    if b <= a:
        if x > a:
            m = 1.0
    elif x >= b:
        m = 1.0
    elif x > a:
        t = (x - a) / (b - a)
        if x <= 0.5 * (a + b):
            m = 2.0 * t * t
        else:
            u = (x - b) / (b - a)
            m = 1.0 - 2.0 * u * u
    return m


@ti.kernel
def _shape_magnitude(
    distance: ti.types.ndarray(dtype=ti.f64, ndim=1),
    magnitude: ti.types.ndarray(dtype=ti.f64, ndim=1),
    status: ti.types.ndarray(dtype=ti.i32, ndim=1),
    distance_scale: ti.f64,
    max_magnitude: ti.f64,
    out: ti.types.ndarray(dtype=ti.f64, ndim=1),
):
    for i in range(distance.shape[0]):
        out[i] = 0.0
        if status[i] != 0:
            d = distance[i]
            m1 = _s_membership(magnitude[i], 0.0, max_magnitude)
            d2 = distance_scale * d
            d2 *= d2
            m2 = d2 / (1.0 + d2)
            if d < 0.0:
                m2 = -m2
            out[i] = m1 * m2


@ti.kernel
def _sum_abs(values: ti.types.ndarray(dtype=ti.f64, ndim=1)) -> ti.f64:
    total = 0.0
    for i in range(values.shape[0]):
        total += ti.abs(values[i])
    return total


@ti.kernel
def _negative_force(
    magnitude: ti.types.ndarray(dtype=ti.f64, ndim=1),
    normals: ti.types.ndarray(dtype=ti.f64, ndim=2),
    status: ti.types.ndarray(dtype=ti.i32, ndim=1),
    gradient: ti.types.ndarray(dtype=ti.f64, ndim=2),
):
    for i in range(magnitude.shape[0]):
        if status[i] != 0:
            for c in ti.static(range(3)):
                gradient[i, c] = -magnitude[i] * normals[i, c]


@ti.kernel
def _scaled_force(
    distance: ti.types.ndarray(dtype=ti.f64, ndim=1),
    normals: ti.types.ndarray(dtype=ti.f64, ndim=2),
    status: ti.types.ndarray(dtype=ti.i32, ndim=1),
    gradient: ti.types.ndarray(dtype=ti.f64, ndim=2),
):
    for i in range(distance.shape[0]):
        if status[i] != 0:
            for c in ti.static(range(3)):
                gradient[i, c] = distance[i] * normals[i, c]


def edge_statistics(distance: np.ndarray, magnitude: np.ndarray, status: np.ndarray) -> Tuple[float, float]:
    """95th percentile of |distance| and mean magnitude over active vertices, (0, 0) if none."""
    active = np.asarray(status) != 0
    if not active.any():
        return 0.0, 0.0
    dmax = float(np.percentile(np.abs(np.asarray(distance)[active]), 95))
    mavg = float(np.mean(np.asarray(magnitude)[active]))
    return dmax, mavg


def shape_force_magnitude(distance: np.ndarray, magnitude: np.ndarray, status: np.ndarray) -> np.ndarray:
    """
    Bounded, sign-preserving force magnitude

    m = S(raw magnitude; 0, mean) * copysign(d2 / (1 + d2), distance),
    with d2 = (distance / max(0.1, dmax))^2 and dmax the 95th percentile of
    |distance|. All zero when there is no usable edge signal.
    """
    ensure_taichi_initialized()
    distance = np.ascontiguousarray(distance, dtype=np.float64)
    magnitude = np.ascontiguousarray(magnitude, dtype=np.float64)
    status = np.ascontiguousarray(status, dtype=np.int32)
    out = np.zeros_like(distance)
    dmax, mavg = edge_statistics(distance, magnitude, status)
    if dmax > 0.0 and mavg > 0.0:
        _shape_magnitude(distance, magnitude, status, 1.0 / max(0.1, dmax), mavg, out)
    else:
        logger.debug(f"No usable edge signal (dmax={dmax:.4g}, mavg={mavg:.4g}), force magnitude set to zero")
    return out


def penalty(distance: np.ndarray) -> float:
    """Mean absolute distance over all vertices, 0 for an empty mesh."""
    distance = np.ascontiguousarray(distance, dtype=np.float64)
    if distance.size == 0:
        return 0.0
    ensure_taichi_initialized()
    return float(_sum_abs(distance)) / distance.size


def force_gradient(magnitude: np.ndarray, normals: np.ndarray, status: np.ndarray) -> np.ndarray:
    """Per-vertex -magnitude * normal, zero for inactive vertices."""
    ensure_taichi_initialized()
    magnitude = np.ascontiguousarray(magnitude, dtype=np.float64)
    gradient = np.zeros((len(magnitude), 3), dtype=np.float64)
    if len(magnitude):
        _negative_force(
            magnitude,
            np.ascontiguousarray(normals, dtype=np.float64),
            np.ascontiguousarray(status, dtype=np.int32),
            gradient,
        )
    return gradient


def distance_gradient(distance: np.ndarray, normals: np.ndarray, status: np.ndarray) -> np.ndarray:
    """Per-vertex distance * normal, zero for inactive vertices."""
    ensure_taichi_initialized()
    distance = np.ascontiguousarray(distance, dtype=np.float64)
    gradient = np.zeros((len(distance), 3), dtype=np.float64)
    if len(distance):
        _scaled_force(
            distance,
            np.ascontiguousarray(normals, dtype=np.float64),
            np.ascontiguousarray(status, dtype=np.int32),
            gradient,
        )
    return gradient
