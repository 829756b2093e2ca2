"""
Ray profile sampling along vertex normals.

For every active vertex a symmetric line of k = 2r + 1 samples is cast along
the normal, centered on the vertex, with a fixed step in voxel space:

    x_i = p + (i - r) * dp,   i = 0 .. k-1

The gradient profile holds the directional derivative of the trilinearly
interpolated image along the normalized ray direction. Samples whose nearest
voxel lies outside the image or on background are masked (valid == 0) instead
of carrying a NaN. The intensity profile is only sampled when requested.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import taichi as ti

from .image import ImageVolume
from .runtime import ensure_taichi_initialized

logger = logging.getLogger(__name__)


@ti.func
def trilinear(vol: ti.template(), x):
    """Trilinear interpolation of a 3D (scalar or vector) field with clamp-to-edge boundary handling"""
    nx, ny, nz = ti.static(vol.shape[0], vol.shape[1], vol.shape[2])
    base = ti.floor(x)
    fx = x - base
    i0 = ti.cast(base[0], ti.i32)
    j0 = ti.cast(base[1], ti.i32)
    k0 = ti.cast(base[2], ti.i32)
    ia = ti.min(ti.max(i0, 0), nx - 1)
    ib = ti.min(ti.max(i0 + 1, 0), nx - 1)
    ja = ti.min(ti.max(j0, 0), ny - 1)
    jb = ti.min(ti.max(j0 + 1, 0), ny - 1)
    ka = ti.min(ti.max(k0, 0), nz - 1)
    kb = ti.min(ti.max(k0 + 1, 0), nz - 1)

    c00 = vol[ia, ja, ka] * (1.0 - fx[0]) + vol[ib, ja, ka] * fx[0]
    c01 = vol[ia, ja, kb] * (1.0 - fx[0]) + vol[ib, ja, kb] * fx[0]
    c10 = vol[ia, jb, ka] * (1.0 - fx[0]) + vol[ib, jb, ka] * fx[0]
    c11 = vol[ia, jb, kb] * (1.0 - fx[0]) + vol[ib, jb, kb] * fx[0]
    c0 = c00 * (1.0 - fx[1]) + c10 * fx[1]
    c1 = c01 * (1.0 - fx[1]) + c11 * fx[1]
    return c0 * (1.0 - fx[2]) + c1 * fx[2]


@ti.func
def nearest_voxel_inside(mask: ti.template(), x):
    """1 if the voxel nearest to x lies inside the lattice and mask is nonzero there"""
    nx, ny, nz = ti.static(mask.shape[0], mask.shape[1], mask.shape[2])
    vi = ti.cast(ti.floor(x[0] + 0.5), ti.i32)
    vj = ti.cast(ti.floor(x[1] + 0.5), ti.i32)
    vk = ti.cast(ti.floor(x[2] + 0.5), ti.i32)
    inside = 0
    if 0 <= vi < nx and 0 <= vj < ny and 0 <= vk < nz:
        if mask[vi, vj, vk] != 0:
            inside = 1
    return inside


@ti.data_oriented
class RayProfileSampler:
    def __init__(self, image: ImageVolume):
        ensure_taichi_initialized()
        self.image = image

        self.intensity = ti.field(ti.f64, shape=image.shape)            # voxel intensities
        self.gradient = ti.Vector.field(3, ti.f64, shape=image.shape)   # d/d(i,j,k) of intensities
        self.foreground = ti.field(ti.i32, shape=image.shape)           # 1 inside image domain

        self.intensity.from_numpy(image.data)
        self.gradient.from_numpy(image.gradient)
        self.foreground.from_numpy(image.foreground)

    @ti.kernel
    def _sample(
        self,
        points: ti.types.ndarray(dtype=ti.f64, ndim=2),
        steps: ti.types.ndarray(dtype=ti.f64, ndim=2),
        status: ti.types.ndarray(dtype=ti.i32, ndim=1),
        g: ti.types.ndarray(dtype=ti.f64, ndim=2),
        valid: ti.types.ndarray(dtype=ti.i32, ndim=2),
        f: ti.types.ndarray(dtype=ti.f64, ndim=2),
        need_intensity: ti.template(),
    ):
        k = g.shape[1]
        r = (k - 1) // 2
        for v, i in ti.ndrange(g.shape[0], k):
            g[v, i] = 0.0
            valid[v, i] = 0
            if ti.static(need_intensity):
                f[v, i] = 0.0
            if status[v] != 0:
                p = ti.Vector([points[v, 0], points[v, 1], points[v, 2]])
                dp = ti.Vector([steps[v, 0], steps[v, 1], steps[v, 2]])
                x = p + ti.cast(i - r, ti.f64) * dp
                if ti.static(need_intensity):
                    f[v, i] = trilinear(self.intensity, x)
                if nearest_voxel_inside(self.foreground, x) != 0:
                    dn = dp.norm()
                    if dn > 0.0:
                        valid[v, i] = 1
                        g[v, i] = (dp / dn).dot(trilinear(self.gradient, x))

    def sample(
        self,
        points_world: np.ndarray,
        normals_world: np.ndarray,
        status: np.ndarray,
        step_length: float,
        radius: int,
        need_intensity: bool = False,
    ) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray]]:
        """
        Cast rays at every vertex along its normal

        Args:
            points_world: Vertex positions (N, 3) in world coordinates
            normals_world: Unit normals (N, 3) in world coordinates
            status: Active vertex mask (N,), inactive rows stay masked
            step_length: Step between samples in world units
            radius: Number of samples on each side of the vertex
            need_intensity: Also sample the intensity profile

        Returns:
            (g, valid, f) each of shape (N, 2*radius + 1), f is None unless requested
        """
        n = len(points_world)
        k = 2 * int(radius) + 1
        points = np.ascontiguousarray(self.image.world_to_voxel(points_world).reshape(n, 3))
        steps = np.ascontiguousarray(
            self.image.world_to_voxel_vectors(np.asarray(normals_world) * step_length).reshape(n, 3)
        )
        status = np.ascontiguousarray(status, dtype=np.int32)
        g = np.zeros((n, k), dtype=np.float64)
        valid = np.zeros((n, k), dtype=np.int32)
        f = np.zeros((n, k) if need_intensity else (1, 1), dtype=np.float64)
        if n > 0:
            self._sample(points, steps, status, g, valid, f, bool(need_intensity))
        return g, valid, (f if need_intensity else None)
