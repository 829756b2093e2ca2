"""
Surface force towards the offset iso-surface of a signed distance image.
"""

import logging
import math
import time
from typing import List, Optional, Tuple

import numpy as np
import taichi as ti

from .config import ConfigurationError, DistanceMeasure, ImplicitSurfaceParams
from .force import ForceContext, register_energy_term
from .image import ImageVolume
from .profiles import trilinear
from .runtime import ensure_taichi_initialized
from .shaping import distance_gradient, penalty
from .surface import DeformableSurface

logger = logging.getLogger(__name__)

TRACE_TOLERANCE = 0.001
MAX_TRACE_STEPS = 1000


@ti.data_oriented
class ImplicitSurfaceSampler:
    """Signed distance lookups and sphere tracing in world units."""

    def __init__(self, image: ImageVolume):
        ensure_taichi_initialized()
        self.image = image
        self.sdf = ti.field(ti.f64, shape=image.shape)
        self.world_to_voxel = ti.Matrix.field(4, 4, ti.f64, shape=())
        self.sdf.from_numpy(image.data)
        self.world_to_voxel.from_numpy(np.ascontiguousarray(image.affine_inv, dtype=np.float64))

    @ti.func
    def _distance_at(self, x, offset):
        h = self.world_to_voxel[None] @ ti.Vector([x[0], x[1], x[2], 1.0])
        return trilinear(self.sdf, ti.Vector([h[0], h[1], h[2]])) - offset

    @ti.kernel
    def _minimum_distances(
        self,
        points: ti.types.ndarray(dtype=ti.f64, ndim=2),
        offset: ti.f64,
        out: ti.types.ndarray(dtype=ti.f64, ndim=1),
    ):
        for i in range(points.shape[0]):
            p = ti.Vector([points[i, 0], points[i, 1], points[i, 2]])
            out[i] = self._distance_at(p, offset)

    @ti.kernel
    def _normal_distances(
        self,
        points: ti.types.ndarray(dtype=ti.f64, ndim=2),
        normals: ti.types.ndarray(dtype=ti.f64, ndim=2),
        offset: ti.f64,
        tolerance: ti.f64,
        max_distance: ti.f64,
        out: ti.types.ndarray(dtype=ti.f64, ndim=1),
    ):
        for i in range(points.shape[0]):
            p = ti.Vector([points[i, 0], points[i, 1], points[i, 2]])
            n = ti.Vector([normals[i, 0], normals[i, 1], normals[i, 2]])
            mind = self._distance_at(p, offset)
            # March towards the iso-surface: inwards from outside, outwards from inside
            side = -1.0
            direction = n
            if mind > 0.0:
                side = 1.0
                direction = -n
            t = 0.0
            d = ti.abs(mind)
            steps = 0
            while ti.abs(d) > tolerance and t < max_distance and steps < MAX_TRACE_STEPS:
                t += d
                # Negative once the ray overshoots, stepping back towards the crossing
                d = side * self._distance_at(p + t * direction, offset)
                steps += 1
            t = ti.min(ti.max(t, 0.0), max_distance)
            if mind < 0.0:
                t = -t
            out[i] = t

    def minimum_distances(self, points: np.ndarray, offset: float) -> np.ndarray:
        points = np.ascontiguousarray(points, dtype=np.float64).reshape(-1, 3)
        out = np.zeros(len(points), dtype=np.float64)
        if len(points):
            self._minimum_distances(points, float(offset), out)
        return out

    def normal_distances(self, points: np.ndarray, normals: np.ndarray, offset: float,
                         max_distance: float, tolerance: float = TRACE_TOLERANCE) -> np.ndarray:
        points = np.ascontiguousarray(points, dtype=np.float64).reshape(-1, 3)
        normals = np.ascontiguousarray(normals, dtype=np.float64).reshape(-1, 3)
        out = np.zeros(len(points), dtype=np.float64)
        if len(points):
            self._normal_distances(points, normals, float(offset), float(tolerance), float(max_distance), out)
        return out


@register_energy_term
class ImplicitSurfaceDistance:
    KEY = "implicit-surface"

    def __init__(
        self,
        surface: DeformableSurface,
        distance_image: ImageVolume,
        params: Optional[ImplicitSurfaceParams] = None,
        name: str = "Implicit surface distance",
        weight: float = 1.0,
    ):
        self.context = ForceContext(surface, name, weight)
        self.image = distance_image
        self.params = params if params is not None else ImplicitSurfaceParams()
        self.max_distance = 0.0
        self._sampler: Optional[ImplicitSurfaceSampler] = None
        self._initialized = False

    def set_parameter(self, name: str, value: str) -> bool:
        ok = self.params.set_parameter(name, value)
        if ok is None:
            ok = self.context.set_parameter(name, value)
        if ok is None:
            raise ConfigurationError(f"{self.context.name}: unknown parameter '{name}'")
        return ok

    def parameters(self) -> List[Tuple[str, str]]:
        return self.context.parameters() + self.params.parameters()

    @property
    def point_data_name(self) -> str:
        measure = self.params.distance_measure
        if measure == DistanceMeasure.MINIMUM:
            return "MinimumImplicitSurfaceDistance"
        if measure == DistanceMeasure.NORMAL:
            return "NormalImplicitSurfaceDistance"
        raise ValueError(f"Invalid distance measure: {measure!r}")

    @property
    def distances(self) -> np.ndarray:
        return self.context.point_data(self.point_data_name)

    def initialize(self) -> None:
        self._initialized = True
        self.max_distance = self.params.max_distance
        if not self.max_distance > 0.0:
            self.max_distance = float(np.max(np.abs(self.image.data))) if self.image.data.size else 0.0
        if self.params.distance_measure == DistanceMeasure.MINIMUM:
            self.context.add_point_data(self.point_data_name, fill=math.inf)
        else:
            self.context.add_point_data(self.point_data_name, fill=self.max_distance)
        self.context.reset_gradient()
        self._sampler = ImplicitSurfaceSampler(self.image)
        logger.info(
            f"{self.context.name}: measure={self.params.distance_measure}, "
            f"offset={self.params.offset:g}, max distance={self.max_distance:.4g}"
        )

    def update(self, gradient: bool = True) -> None:
        if not self._initialized:
            self.initialize()
        ctx = self.context
        name = self.point_data_name
        if ctx.number_of_points == 0 or ctx.is_up_to_date(name):
            return
        surface = ctx.surface
        start = time.perf_counter()
        if self.params.distance_measure == DistanceMeasure.MINIMUM:
            distance = self._sampler.minimum_distances(surface.points, self.params.offset)
        else:
            distance = self._sampler.normal_distances(
                surface.points, surface.normals, self.params.offset, self.max_distance
            )
        logger.debug(f"computing implicit surface distances: {time.perf_counter() - start:.3f} s")
        ctx.set_point_data(name, distance)

    def evaluate(self) -> float:
        if self.context.number_of_points == 0:
            return 0.0
        self.update(gradient=False)
        return penalty(self.distances)

    def evaluate_gradient(self, buffer: np.ndarray, step: float = 1.0, weight: float = 1.0) -> None:
        ctx = self.context
        n = ctx.number_of_points
        if n == 0:
            return
        self.update(gradient=True)
        ctx.reset_gradient()
        ctx.gradient[...] = distance_gradient(self.distances, ctx.surface.normals, ctx.status)
        ctx.accumulate_gradient(buffer, weight / n)
