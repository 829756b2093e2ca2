"""
Edge search along sampled ray profiles.

Every policy works on one row v of the gradient profile g (length k, center
r = (k-1)/2) and its validity mask. Comparisons that involve a masked sample
are false, so scans step over masked samples only where a rule explicitly
skips them. The selected index j is mapped to

    distance  = (j - r) * step_length
    magnitude = |g[j]|   (0 when g[j] is masked)

Inactive vertices get distance = magnitude = 0 without any search.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
import taichi as ti

from .config import EdgeType, coerce_edge_type
from .runtime import ensure_taichi_initialized
from .statistics import TissueStatistics

logger = logging.getLogger(__name__)


# --------------------------------
# Masked comparisons, 1 if true
# --------------------------------
@ti.func
def _lt(g: ti.template(), valid: ti.template(), v, a, b):
    res = 0
    if valid[v, a] != 0 and valid[v, b] != 0:
        if g[v, a] < g[v, b]:
            res = 1
    return res


@ti.func
def _gt(g: ti.template(), valid: ti.template(), v, a, b):
    return _lt(g, valid, v, b, a)


@ti.func
def _ge(g: ti.template(), valid: ti.template(), v, a, b):
    res = 0
    if valid[v, a] != 0 and valid[v, b] != 0:
        if g[v, a] >= g[v, b]:
            res = 1
    return res


@ti.func
def _lt_value(g: ti.template(), valid: ti.template(), v, a, value):
    res = 0
    if valid[v, a] != 0:
        if g[v, a] < value:
            res = 1
    return res


@ti.func
def _gt_value(g: ti.template(), valid: ti.template(), v, a, value):
    res = 0
    if valid[v, a] != 0:
        if g[v, a] > value:
            res = 1
    return res


@ti.func
def _skip_masked(valid: ti.template(), v, i, di, k):
    """Step from i in direction di while the sample is masked (stops at the profile end)"""
    j = i
    if di > 0:
        while j < k - 1:
            if valid[v, j] != 0:
                break
            j += 1
    else:
        while j > 0:
            if valid[v, j] != 0:
                break
            j -= 1
    return j


@ti.func
def _pick(g: ti.template(), valid: ti.template(), v, a, b, center, prefer_lower):
    """a if g[a] is greater (lower) than g[b], else b; falls back to the valid one, then center"""
    j = center
    va = valid[v, a] != 0
    vb = valid[v, b] != 0
    if va and vb:
        j = b
        if prefer_lower != 0:
            if g[v, a] < g[v, b]:
                j = a
        else:
            if g[v, a] > g[v, b]:
                j = a
    elif va:
        j = a
    elif vb:
        j = b
    return j


# --------------------------------
# Generic policies
# --------------------------------
@ti.func
def _closest_minimum(g: ti.template(), valid: ti.template(), v, k):
    i0 = (k - 1) // 2
    i1 = _skip_masked(valid, v, i0, 1, k)
    while i1 < k - 1:
        if _gt(g, valid, v, i1, i1 + 1) == 0:
            break
        i1 += 1
    i2 = _skip_masked(valid, v, i0, -1, k)
    while i2 > 0:
        if _gt(g, valid, v, i2, i2 - 1) == 0:
            break
        i2 -= 1
    # The shallower of the two dips wins
    return _pick(g, valid, v, i2, i1, i0, 0)


@ti.func
def _closest_maximum(g: ti.template(), valid: ti.template(), v, k):
    i0 = (k - 1) // 2
    i1 = _skip_masked(valid, v, i0, 1, k)
    while i1 < k - 1:
        if _lt(g, valid, v, i1, i1 + 1) == 0:
            break
        i1 += 1
    i2 = _skip_masked(valid, v, i0, -1, k)
    while i2 > 0:
        if _lt(g, valid, v, i2, i2 - 1) == 0:
            break
        i2 -= 1
    return _pick(g, valid, v, i2, i1, i0, 0)


@ti.func
def _strongest(g: ti.template(), valid: ti.template(), v, k, lower):
    i0 = (k - 1) // 2
    i1 = _skip_masked(valid, v, i0, 1, k)
    start = i1 + 1
    for i in range(start, k):
        if lower != 0:
            if _lt(g, valid, v, i, i1) != 0:
                i1 = i
        else:
            if _gt(g, valid, v, i, i1) != 0:
                i1 = i
    i2 = _skip_masked(valid, v, i0, -1, k)
    stop = i2
    for t in range(stop):
        ii = stop - 1 - t
        if lower != 0:
            if _lt(g, valid, v, ii, i2) != 0:
                i2 = ii
        else:
            if _gt(g, valid, v, ii, i2) != 0:
                i2 = ii
    return _pick(g, valid, v, i2, i1, i0, lower)


@ti.func
def _closest_extremum(g: ti.template(), valid: ti.template(), v, k):
    r = (k - 1) // 2
    j1 = _closest_minimum(g, valid, v, k)
    j2 = _closest_maximum(g, valid, v, k)
    j = j2
    if ti.abs(j1 - r) <= ti.abs(j2 - r):
        j = j1
    return j


@ti.func
def _strongest_extremum(g: ti.template(), valid: ti.template(), v, k):
    r = (k - 1) // 2
    j1 = _strongest(g, valid, v, k, 1)
    j2 = _strongest(g, valid, v, k, 0)
    j = r
    v1 = valid[v, j1] != 0
    v2 = valid[v, j2] != 0
    if v1 and v2:
        j = j2
        if ti.abs(g[v, j1]) > ti.abs(g[v, j2]):
            j = j1
    elif v1:
        j = j1
    elif v2:
        j = j2
    return j


@ti.func
def _extremum(g: ti.template(), valid: ti.template(), v, k):
    r = (k - 1) // 2
    j = r
    if _lt_value(g, valid, v, r, 0.0) != 0:
        j = _closest_minimum(g, valid, v, k)
    elif _gt_value(g, valid, v, r, 0.0) != 0:
        j = _closest_maximum(g, valid, v, k)
    return j


# --------------------------------
# Neonatal T2-weighted MRI heuristics
# --------------------------------
@ti.func
def _not_turning(g: ti.template(), valid: ti.template(), v, j):
    """1 unless g has a strict local extremum at j"""
    res = 0
    if valid[v, j - 1] != 0 and valid[v, j] != 0 and valid[v, j + 1] != 0:
        if (g[v, j] - g[v, j - 1]) * (g[v, j] - g[v, j + 1]) <= 0.0:
            res = 1
    return res


@ti.func
def _white_matter_score(
    g: ti.template(), f: ti.template(), v, c, k,
    min_intensity, max_intensity, padding,
    wm_mean, wm_var, gm_mean, gm_var, has_wm, has_gm,
):
    """Likelihood of the WM peak / GM trough adjacent to candidate c, -1 if implausible"""
    score = -1.0
    iw = c
    while iw > 0:
        if f[v, iw - 1] < f[v, iw]:
            break
        iw -= 1
    if not (f[v, iw] > max_intensity):
        ig = c
        while ig < k - 1:
            if f[v, ig + 1] > f[v, ig]:
                break
            ig += 1
        if not (f[v, ig] < min_intensity or f[v, ig] < padding):
            if has_wm == 0 or wm_var <= 0.0:
                score = ti.abs(g[v, c])
            else:
                dw = f[v, iw] - wm_mean
                score = ti.exp(-0.5 * dw * dw / wm_var)
            if has_gm != 0 and f[v, ig] > gm_mean and gm_var > 0.0:
                dg = f[v, ig] - gm_mean
                score *= ti.exp(-0.5 * dg * dg / gm_var)
    return score


@ti.func
def _neonatal_white_surface(
    g: ti.template(), valid: ti.template(), f: ti.template(), v, k,
    min_gradient, min_intensity, max_intensity, padding,
    wm_mean, wm_var, gm_mean, gm_var, has_wm, has_gm,
):
    i0 = (k - 1) // 2
    g1 = -min_gradient
    g2 = min_gradient
    j = i0
    if k >= 3:
        # Inward side
        i = i0
        while i > 1:
            keep = 0
            if valid[v, i] != 0:
                if g[v, i] >= g1:
                    keep = 1
            if _ge(g, valid, v, i, i - 1) != 0:
                keep = 1
            if keep == 0:
                break
            i -= 1
        jj = i + 1
        while jj < k - 2:
            if _not_turning(g, valid, v, jj) == 0:
                break
            jj += 1
        i2 = -1
        if _lt_value(g, valid, v, i, g1) != 0 and _gt_value(g, valid, v, jj, 0.0) != 0:
            i2 = i

        # Outward side
        i = i0
        while i < k - 2:
            keep = 0
            if valid[v, i] != 0:
                if g1 <= g[v, i] and g[v, i] <= g2:
                    keep = 1
            if _ge(g, valid, v, i, i + 1) != 0:
                keep = 1
            if keep == 0:
                break
            i += 1
        jj = i + 1
        while jj < k - 2:
            if _not_turning(g, valid, v, jj) == 0:
                break
            jj += 1
        i1 = -1
        if _lt_value(g, valid, v, i, g1) != 0 and _gt_value(g, valid, v, jj, 0.0) != 0:
            i1 = i

        if i1 != -1 and i2 != -1:
            score1 = _white_matter_score(
                g, f, v, i1, k, min_intensity, max_intensity, padding,
                wm_mean, wm_var, gm_mean, gm_var, has_wm, has_gm,
            )
            if score1 < 0.0:
                i1 = i0
                score1 = 0.0
            score2 = _white_matter_score(
                g, f, v, i2, k, min_intensity, max_intensity, padding,
                wm_mean, wm_var, gm_mean, gm_var, has_wm, has_gm,
            )
            if score2 < 0.0:
                i2 = i0
                score2 = 0.0
            j = i2
            if score2 < score1:
                j = i1
        elif i1 != -1:
            j = i1
        elif i2 != -1:
            j = i2
    return j


@ti.func
def _neonatal_pial_surface(g: ti.template(), valid: ti.template(), v, k, min_gradient):
    i0 = (k - 1) // 2
    i = _skip_masked(valid, v, i0, 1, k)
    while i < k - 1:
        keep = _lt(g, valid, v, i, i + 1)
        if valid[v, i] != 0:
            if g[v, i] <= min_gradient:
                keep = 1
        if keep == 0:
            break
        i += 1
    i1 = -1
    if _gt_value(g, valid, v, i, 0.0) != 0:
        i1 = i

    i = i0
    while i > 0:
        keep = _lt(g, valid, v, i, i - 1)
        if valid[v, i] != 0:
            if g[v, i] <= min_gradient:
                keep = 1
        if keep == 0:
            break
        i -= 1
    i2 = -1
    if _gt_value(g, valid, v, i, 0.0) != 0:
        i2 = i

    j = i0
    if i1 != -1 and i2 != -1:
        j = i2
        if ti.abs(i0 - i1) <= ti.abs(i0 - i2):
            j = i1
    elif i1 != -1:
        j = i1
    elif i2 != -1:
        j = i2
    return j


# --------------------------------
# Post-selection gating
# --------------------------------
@ti.func
def _crosses_padding(g: ti.template(), valid: ti.template(), f: ti.template(), v, j, k, padding):
    """1 if the scan from the center toward j hits padding before the gradient changes sign"""
    r = (k - 1) // 2
    rejected = 1
    if j < r:
        i = r
        while i > 0:
            if f[v, i] < padding:
                break
            if valid[v, i] != 0 and valid[v, j] != 0:
                if g[v, j] * g[v, i] < 0.0:
                    rejected = 0
                    break
            i -= 1
    else:
        i = r
        while i < k:
            if f[v, i] < padding:
                break
            if valid[v, i] != 0 and valid[v, j] != 0:
                if g[v, j] * g[v, i] < 0.0:
                    rejected = 0
                    break
            i += 1
    return rejected


@ti.kernel
def _locate_edges(
    g: ti.types.ndarray(dtype=ti.f64, ndim=2),
    valid: ti.types.ndarray(dtype=ti.i32, ndim=2),
    f: ti.types.ndarray(dtype=ti.f64, ndim=2),
    status: ti.types.ndarray(dtype=ti.i32, ndim=1),
    tissue: ti.types.ndarray(dtype=ti.f64, ndim=2),
    min_gradient: ti.f64,
    min_intensity: ti.f64,
    max_intensity: ti.f64,
    padding: ti.f64,
    step_length: ti.f64,
    has_wm: ti.i32,
    has_gm: ti.i32,
    check_range: ti.i32,
    check_padding: ti.i32,
    edge_type: ti.template(),
    index_out: ti.types.ndarray(dtype=ti.i32, ndim=1),
    distance_out: ti.types.ndarray(dtype=ti.f64, ndim=1),
    magnitude_out: ti.types.ndarray(dtype=ti.f64, ndim=1),
):
    k = g.shape[1]
    r = (k - 1) // 2
    for v in range(g.shape[0]):
        j = r
        if status[v] != 0:
            if ti.static(edge_type == 0):
                j = _extremum(g, valid, v, k)
            elif ti.static(edge_type == 1):
                j = _closest_minimum(g, valid, v, k)
            elif ti.static(edge_type == 2):
                j = _closest_maximum(g, valid, v, k)
            elif ti.static(edge_type == 3):
                j = _closest_extremum(g, valid, v, k)
            elif ti.static(edge_type == 4):
                j = _strongest(g, valid, v, k, 1)
            elif ti.static(edge_type == 5):
                j = _strongest(g, valid, v, k, 0)
            elif ti.static(edge_type == 6):
                j = _strongest_extremum(g, valid, v, k)
            elif ti.static(edge_type == 7):
                j = _neonatal_white_surface(
                    g, valid, f, v, k, min_gradient, min_intensity, max_intensity, padding,
                    tissue[v, 0], tissue[v, 1], tissue[v, 2], tissue[v, 3], has_wm, has_gm,
                )
            else:
                j = _neonatal_pial_surface(g, valid, v, k, min_gradient)

            if ti.static(edge_type != 7):
                if j != r and check_range != 0:
                    if f[v, j] < min_intensity or f[v, j] > max_intensity:
                        j = r
                if j != r and check_padding != 0:
                    if _crosses_padding(g, valid, f, v, j, k, padding) != 0:
                        j = r

            index_out[v] = j
            distance_out[v] = ti.cast(j - r, ti.f64) * step_length
            magnitude_out[v] = 0.0
            if valid[v, j] != 0:
                magnitude_out[v] = ti.abs(g[v, j])
        else:
            index_out[v] = r
            distance_out[v] = 0.0
            magnitude_out[v] = 0.0


# --------------------------------
# Python interface
# --------------------------------
@dataclass
class EdgeSearchResult:
    index: np.ndarray
    distance: np.ndarray
    magnitude: np.ndarray


class EdgeLocator:
    """
    Select one edge per profile row according to an edge type

    Intensity thresholds gate every policy except the neonatal white surface
    one, which uses them in its own plausibility test.
    """

    def __init__(
        self,
        edge_type=EdgeType.EXTREMUM,
        min_gradient: float = 0.0,
        min_intensity: float = -math.inf,
        max_intensity: float = math.inf,
        padding: float = -math.inf,
        tissue: Optional[TissueStatistics] = None,
    ):
        ensure_taichi_initialized()
        self.edge_type = coerce_edge_type(edge_type)
        self.min_gradient = float(min_gradient)
        self.min_intensity = float(min_intensity)
        self.max_intensity = float(max_intensity)
        self.padding = float(padding)
        self.tissue = tissue

    @property
    def check_range(self) -> bool:
        return not (math.isinf(self.min_intensity) and math.isinf(self.max_intensity))

    @property
    def check_padding(self) -> bool:
        return not math.isinf(self.padding)

    @property
    def needs_intensity(self) -> bool:
        if self.edge_type == EdgeType.NEONATAL_WHITE_SURFACE:
            return True
        return self.check_range or self.check_padding

    def tissue_at(self, centers_vox: Optional[np.ndarray], n: int) -> np.ndarray:
        """Per-vertex (wm_mean, wm_var, gm_mean, gm_var), local maps read at the rounded center voxel."""
        table = np.zeros((n, 4), dtype=np.float64)
        stats = self.tissue
        if stats is None or self.edge_type != EdgeType.NEONATAL_WHITE_SURFACE:
            return table
        table[:, 0] = stats.wm_mean
        table[:, 1] = stats.wm_variance
        table[:, 2] = stats.gm_mean
        table[:, 3] = stats.gm_variance
        maps = (stats.wm_local_mean, stats.wm_local_variance, stats.gm_local_mean, stats.gm_local_variance)
        if centers_vox is None or all(m is None for m in maps) or n == 0:
            return table
        shape = next(m.shape for m in maps if m is not None)
        ijk = np.floor(np.asarray(centers_vox, dtype=np.float64) + 0.5).astype(np.int64)
        for ax in range(3):
            ijk[:, ax] = np.clip(ijk[:, ax], 0, shape[ax] - 1)
        for col, local in enumerate(maps):
            if local is not None:
                table[:, col] = local[ijk[:, 0], ijk[:, 1], ijk[:, 2]]
        return table

    def locate(
        self,
        g: np.ndarray,
        valid: np.ndarray,
        f: Optional[np.ndarray],
        status: np.ndarray,
        step_length: float,
        centers_vox: Optional[np.ndarray] = None,
    ) -> EdgeSearchResult:
        g = np.ascontiguousarray(g, dtype=np.float64)
        if g.ndim != 2 or g.shape[1] % 2 != 1:
            raise ValueError(f"Profiles must have shape (N, 2r+1), got {g.shape}")
        n = g.shape[0]
        valid = np.ascontiguousarray(valid, dtype=np.int32)
        status = np.ascontiguousarray(status, dtype=np.int32)
        if f is None:
            if self.needs_intensity:
                raise ValueError(f"Edge search with {self.edge_type} requires intensity profiles")
            f = np.zeros((1, 1), dtype=np.float64)
        f = np.ascontiguousarray(f, dtype=np.float64)
        tissue = self.tissue_at(centers_vox, n)
        has_wm = self.tissue is not None and self.tissue.has_wm
        has_gm = self.tissue is not None and self.tissue.has_gm

        index = np.zeros(n, dtype=np.int32)
        distance = np.zeros(n, dtype=np.float64)
        magnitude = np.zeros(n, dtype=np.float64)
        if n > 0:
            _locate_edges(
                g, valid, f, status, tissue,
                self.min_gradient, self.min_intensity, self.max_intensity, self.padding,
                float(step_length), int(has_wm), int(has_gm),
                int(self.check_range), int(self.check_padding),
                int(self.edge_type),
                index, distance, magnitude,
            )
        return EdgeSearchResult(index, distance, magnitude)


def locate_edges(
    profiles: np.ndarray,
    edge_type=EdgeType.EXTREMUM,
    valid: Optional[np.ndarray] = None,
    intensities: Optional[np.ndarray] = None,
    status: Optional[np.ndarray] = None,
    step_length: float = 1.0,
    **thresholds,
) -> EdgeSearchResult:
    """
    Run the edge search on plain numpy profiles

    NaN samples in `profiles` are masked in addition to `valid`. A single 1-D
    profile is treated as one row.
    """
    g = np.atleast_2d(np.asarray(profiles, dtype=np.float64))
    mask = np.isfinite(g)
    if valid is not None:
        mask &= np.atleast_2d(np.asarray(valid)) != 0
    g = np.where(mask, g, 0.0)
    f = None if intensities is None else np.atleast_2d(np.asarray(intensities, dtype=np.float64))
    if status is None:
        status = np.ones(g.shape[0], dtype=np.int32)
    locator = EdgeLocator(edge_type, **thresholds)
    return locator.locate(g, mask.astype(np.int32), f, status, step_length)


def locate_edge(profile, edge_type=EdgeType.EXTREMUM, **kwargs) -> int:
    """Index of the selected edge in a single profile."""
    return int(locate_edges(profile, edge_type, **kwargs).index[0])
