"""
Tissue intensity statistics used by the neonatal white surface edge search.

Global statistics are accumulated as (count, sum, sum of squares) moments over
independent voxel ranges and merged afterwards, so the result does not depend
on how the voxel range is split. Local statistics are computed with separable
box sums over an axis-aligned window clipped to the image bounds and fall back
to the global values where the window holds too few masked voxels.
"""

import logging
from dataclasses import dataclass
from functools import reduce
from typing import Optional, Tuple

import numpy as np
import taichi as ti

from .config import ConfigurationError
from .image import ImageVolume
from .runtime import ensure_taichi_initialized

logger = logging.getLogger(__name__)


@dataclass
class TissueMoments:
    """Split/join accumulator of masked intensity moments."""

    count: int = 0
    sum: float = 0.0
    sum2: float = 0.0

    def merge(self, other: "TissueMoments") -> "TissueMoments":
        return TissueMoments(self.count + other.count, self.sum + other.sum, self.sum2 + other.sum2)

    @property
    def mean(self) -> float:
        return self.sum / self.count if self.count else 0.0

    @property
    def variance(self) -> float:
        # Population variance, not clamped at zero
        if self.count == 0:
            return 0.0
        mean = self.mean
        return self.sum2 / self.count - mean * mean


# --------------------------------
# Kernels
# --------------------------------
@ti.kernel
def _accumulate_moments(
    image: ti.types.ndarray(dtype=ti.f64, ndim=3),
    mask: ti.types.ndarray(dtype=ti.i32, ndim=3),
    start: ti.i32,
    stop: ti.i32,
    out: ti.types.ndarray(dtype=ti.f64, ndim=1),
):
    ny = image.shape[1]
    nz = image.shape[2]
    for idx in range(start, stop):
        i = idx // (ny * nz)
        j = (idx // nz) % ny
        k = idx % nz
        if mask[i, j, k] != 0:
            v = image[i, j, k]
            ti.atomic_add(out[0], 1.0)
            ti.atomic_add(out[1], v)
            ti.atomic_add(out[2], v * v)


@ti.kernel
def _masked_moment_volumes(
    image: ti.types.ndarray(dtype=ti.f64, ndim=3),
    mask: ti.types.ndarray(dtype=ti.i32, ndim=3),
    num: ti.types.ndarray(dtype=ti.f64, ndim=3),
    sum1: ti.types.ndarray(dtype=ti.f64, ndim=3),
    sum2: ti.types.ndarray(dtype=ti.f64, ndim=3),
):
    for i, j, k in ti.ndrange(image.shape[0], image.shape[1], image.shape[2]):
        num[i, j, k] = 0.0
        sum1[i, j, k] = 0.0
        sum2[i, j, k] = 0.0
        if mask[i, j, k] != 0:
            v = image[i, j, k]
            num[i, j, k] = 1.0
            sum1[i, j, k] = v
            sum2[i, j, k] = v * v


@ti.kernel
def _box_sum_axis(
    src: ti.types.ndarray(dtype=ti.f64, ndim=3),
    dst: ti.types.ndarray(dtype=ti.f64, ndim=3),
    radius: ti.i32,
    axis: ti.template(),
):
    nx, ny, nz = src.shape[0], src.shape[1], src.shape[2]
    for i, j, k in ti.ndrange(nx, ny, nz):
        c = i
        n = nx
        if ti.static(axis == 1):
            c = j
            n = ny
        if ti.static(axis == 2):
            c = k
            n = nz
        lo = ti.max(0, c - radius)
        hi = ti.min(c + radius, n - 1)
        acc = 0.0
        for t in range(lo, hi + 1):
            if ti.static(axis == 0):
                acc += src[t, j, k]
            elif ti.static(axis == 1):
                acc += src[i, t, k]
            else:
                acc += src[i, j, t]
        dst[i, j, k] = acc


@ti.kernel
def _local_mean_variance(
    num: ti.types.ndarray(dtype=ti.f64, ndim=3),
    sum1: ti.types.ndarray(dtype=ti.f64, ndim=3),
    sum2: ti.types.ndarray(dtype=ti.f64, ndim=3),
    min_samples: ti.f64,
    global_mean: ti.f64,
    global_variance: ti.f64,
    mean_out: ti.types.ndarray(dtype=ti.f64, ndim=3),
    var_out: ti.types.ndarray(dtype=ti.f64, ndim=3),
):
    for i, j, k in ti.ndrange(num.shape[0], num.shape[1], num.shape[2]):
        n = num[i, j, k]
        if n >= min_samples and n > 0.0:
            m = sum1[i, j, k] / n
            mean_out[i, j, k] = m
            var_out[i, j, k] = sum2[i, j, k] / n - m * m
        else:
            mean_out[i, j, k] = global_mean
            var_out[i, j, k] = global_variance


# --------------------------------
# Estimators
# --------------------------------
def _as_mask(image: ImageVolume, mask) -> np.ndarray:
    if isinstance(mask, ImageVolume):
        if not mask.has_spatial_attributes_of(image):
            raise ConfigurationError("Tissue mask spatial attributes differ from the intensity image")
        mask = mask.data
    mask = np.asarray(mask)
    if mask.shape != image.shape:
        raise ConfigurationError(f"Tissue mask shape {mask.shape} doesn't match image {image.shape}")
    return np.ascontiguousarray(mask != 0, dtype=np.int32)


def accumulate_moments(image: ImageVolume, mask, start: int = 0, stop: Optional[int] = None) -> TissueMoments:
    """Moments of the masked voxels with flat (C-order) index in [start, stop)."""
    ensure_taichi_initialized()
    mask = _as_mask(image, mask)
    size = int(np.prod(image.shape))
    stop = size if stop is None else min(int(stop), size)
    start = max(0, int(start))
    out = np.zeros(3, dtype=np.float64)
    if stop > start:
        _accumulate_moments(image.data, mask, start, stop, out)
    return TissueMoments(int(round(out[0])), float(out[1]), float(out[2]))


def estimate_global(image: ImageVolume, mask, partitions: int = 1) -> Tuple[float, float]:
    """
    Global mean and (population) variance of the intensities inside a mask

    Args:
        image: Intensity image
        mask: Tissue mask array or ImageVolume with the image's lattice
        partitions: Number of voxel sub-ranges accumulated separately and merged

    Returns:
        (mean, variance), (0, 0) for an empty mask
    """
    mask = _as_mask(image, mask)
    size = int(np.prod(image.shape))
    bounds = np.linspace(0, size, max(1, int(partitions)) + 1).astype(np.int64)
    parts = [accumulate_moments(image, mask, a, b) for a, b in zip(bounds[:-1], bounds[1:])]
    moments = reduce(TissueMoments.merge, parts, TissueMoments())
    return moments.mean, moments.variance


def min_number_of_samples(shape: Tuple[int, ...], width: int) -> int:
    """5% of the largest possible window volume (integer division)."""
    max_samples = 1
    for n in shape:
        if n > 1:
            max_samples *= width
    return 5 * max_samples // 100


def estimate_local(
    image: ImageVolume,
    mask,
    width: int,
    global_mean: float = 0.0,
    global_variance: float = 0.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Local mean and variance maps over a window of the given width

    Voxels whose clipped window contains fewer masked voxels than
    min_number_of_samples() get the global mean and variance instead.
    """
    ensure_taichi_initialized()
    mask = _as_mask(image, mask)
    radius = int(width) // 2
    shape = image.shape
    num = np.empty(shape, dtype=np.float64)
    sum1 = np.empty(shape, dtype=np.float64)
    sum2 = np.empty(shape, dtype=np.float64)
    _masked_moment_volumes(image.data, mask, num, sum1, sum2)
    tmp = np.empty(shape, dtype=np.float64)
    for volume in (num, sum1, sum2):
        for axis in range(3):
            _box_sum_axis(volume, tmp, radius, axis)
            volume[...] = tmp
    mean = np.empty(shape, dtype=np.float64)
    var = np.empty(shape, dtype=np.float64)
    min_samples = min_number_of_samples(shape, int(width))
    _local_mean_variance(num, sum1, sum2, float(min_samples), float(global_mean), float(global_variance), mean, var)
    return mean, var


@dataclass
class TissueStatistics:
    """White and grey matter statistics consumed by the edge search."""

    wm_mean: float = 0.0
    wm_variance: float = 0.0
    gm_mean: float = 0.0
    gm_variance: float = 0.0
    has_wm: bool = False
    has_gm: bool = False
    wm_local_mean: Optional[np.ndarray] = None
    wm_local_variance: Optional[np.ndarray] = None
    gm_local_mean: Optional[np.ndarray] = None
    gm_local_variance: Optional[np.ndarray] = None

    @property
    def wm_sigma(self) -> float:
        return float(np.sqrt(max(self.wm_variance, 0.0)))

    @property
    def gm_sigma(self) -> float:
        return float(np.sqrt(max(self.gm_variance, 0.0)))

    @classmethod
    def compute(
        cls,
        image: ImageVolume,
        white_matter_mask=None,
        grey_matter_mask=None,
        white_matter_window_width: int = 0,
        grey_matter_window_width: int = 0,
    ) -> "TissueStatistics":
        stats = cls()
        if white_matter_mask is not None:
            stats.wm_mean, stats.wm_variance = estimate_global(image, white_matter_mask)
            stats.has_wm = True
            logger.info(f"Global white matter mean = {stats.wm_mean:.4g}, stdev = {stats.wm_sigma:.4g}")
            if stats.wm_variance <= 0.0:
                logger.warning("White matter intensity variance is zero, likelihood scoring disabled")
            if white_matter_window_width > 0:
                stats.wm_local_mean, stats.wm_local_variance = estimate_local(
                    image, white_matter_mask, white_matter_window_width, stats.wm_mean, stats.wm_variance
                )
        if grey_matter_mask is not None:
            stats.gm_mean, stats.gm_variance = estimate_global(image, grey_matter_mask)
            stats.has_gm = True
            logger.info(f"Global grey matter mean = {stats.gm_mean:.4g}, stdev = {stats.gm_sigma:.4g}")
            if stats.gm_variance <= 0.0:
                logger.warning("Grey matter intensity variance is zero, likelihood scoring disabled")
            if grey_matter_window_width > 0:
                stats.gm_local_mean, stats.gm_local_variance = estimate_local(
                    image, grey_matter_mask, grey_matter_window_width, stats.gm_mean, stats.gm_variance
                )
        return stats
