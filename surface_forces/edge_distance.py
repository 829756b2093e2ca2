"""
External surface force towards image edges along the vertex normals.

Per update (when the surface moved since the last one):

1. cast a ray of gradient samples through every active vertex
2. pick one edge per ray (EdgeType policy, intensity gating)
3. distance = signed offset of the edge, magnitude = edge strength
4. optional median filter / Gaussian smoothing of the distances and
   combinatorial smoothing of the magnitudes over the mesh
5. shape the magnitudes into a bounded, sign-preserving force

The penalty is the mean absolute edge distance and its gradient is
-magnitude * normal per vertex.
"""

from __future__ import annotations

import logging
import math
import time
from typing import List, Optional, Tuple

import numpy as np

from .config import ConfigurationError, EdgeDistanceParams, EdgeType
from .edge_locator import EdgeLocator
from .force import ForceContext, register_energy_term
from .image import ImageVolume
from .mesh_utils import COMBINATORIAL, GAUSSIAN, median_filter, smooth_point_data
from .profiles import RayProfileSampler
from .shaping import force_gradient, penalty, shape_force_magnitude
from .statistics import TissueStatistics
from .surface import DeformableSurface

logger = logging.getLogger(__name__)


@register_energy_term
class ImageEdgeDistance:
    KEY = "edge-distance"

    def __init__(
        self,
        surface: DeformableSurface,
        image: ImageVolume,
        params: Optional[EdgeDistanceParams] = None,
        white_matter_mask=None,
        grey_matter_mask=None,
        name: str = "Image edge distance",
        weight: float = 1.0,
    ):
        self.context = ForceContext(surface, name, weight)
        self.image = image
        self.params = params.copy() if params is not None else EdgeDistanceParams()
        self.white_matter_mask = white_matter_mask
        self.grey_matter_mask = grey_matter_mask

        self.step_length = 0.0
        self.max_distance = 0.0
        self.min_intensity = self.params.min_intensity
        self.max_intensity = self.params.max_intensity
        self.tissue: Optional[TissueStatistics] = None
        self._sampler: Optional[RayProfileSampler] = None
        self._locator: Optional[EdgeLocator] = None
        self._initialized = False

    # --------------------------------
    # Configuration
    # --------------------------------
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
    def radius(self) -> int:
        """Number of ray samples on either side of a vertex."""
        if self.step_length <= 0.0:
            return 0
        return int(math.floor(self.max_distance / self.step_length))

    @property
    def distances(self) -> np.ndarray:
        return self.context.point_data("Distance")

    @property
    def magnitudes(self) -> np.ndarray:
        return self.context.point_data("Magnitude")

    # --------------------------------
    # Initialization
    # --------------------------------
    def initialize(self) -> None:
        ctx = self.context
        params = self.params
        self._initialized = True
        if ctx.number_of_points == 0:
            logger.warning(f"{ctx.name}: surface has no points")
            return

        res = self.image.voxel_diagonal
        self.step_length = params.step_length if params.step_length > 0.0 else 0.25 * res
        self.max_distance = params.max_distance if params.max_distance > 0.0 else 4.0 * res
        if not (self.step_length > 0.0 and math.isfinite(self.step_length)):
            raise ConfigurationError(f"{ctx.name}: step length must be positive, got {self.step_length}")
        if not (self.max_distance > 0.0 and math.isfinite(self.max_distance)):
            raise ConfigurationError(f"{ctx.name}: maximum distance must be positive, got {self.max_distance}")

        ctx.add_point_data("Distance")
        ctx.add_point_data("Magnitude")
        ctx.reset_gradient()

        self.min_intensity = params.min_intensity
        self.max_intensity = params.max_intensity
        self.tissue = None
        if params.needs_tissue_statistics:
            start = time.perf_counter()
            self.tissue = TissueStatistics.compute(
                self.image,
                self.white_matter_mask,
                self.grey_matter_mask,
                params.white_matter_window_width,
                params.grey_matter_window_width,
            )
            logger.debug(f"computing tissue statistics: {time.perf_counter() - start:.3f} s")
            if math.isnan(self.min_intensity) and self.tissue.has_gm:
                self.min_intensity = self.tissue.gm_mean - 5.0 * self.tissue.gm_sigma
            if math.isnan(self.max_intensity) and self.tissue.has_wm:
                self.max_intensity = self.tissue.wm_mean + 5.0 * self.tissue.wm_sigma
        # Unresolved automatic bounds disable the threshold
        if math.isnan(self.min_intensity):
            self.min_intensity = -math.inf
        if math.isnan(self.max_intensity):
            self.max_intensity = math.inf

        self._sampler = RayProfileSampler(self.image)
        self._locator = EdgeLocator(
            params.edge_type,
            min_gradient=params.min_gradient,
            min_intensity=self.min_intensity,
            max_intensity=self.max_intensity,
            padding=params.padding,
            tissue=self.tissue,
        )
        logger.info(
            f"{ctx.name}: type={params.edge_type}, step={self.step_length:.4g}, "
            f"max distance={self.max_distance:.4g} ({2 * self.radius + 1} samples per ray)"
        )

    # --------------------------------
    # Evaluation
    # --------------------------------
    def update(self, gradient: bool = True) -> None:
        if not self._initialized:
            self.initialize()
        ctx = self.context
        surface = ctx.surface
        if ctx.number_of_points == 0 or ctx.is_up_to_date("Distance"):
            return
        params = self.params
        status = surface.status

        start = time.perf_counter()
        g, valid, f = self._sampler.sample(
            surface.points,
            surface.normals,
            status,
            self.step_length,
            self.radius,
            need_intensity=self._locator.needs_intensity,
        )
        centers = None
        if params.edge_type == EdgeType.NEONATAL_WHITE_SURFACE:
            centers = self.image.world_to_voxel(surface.points)
        result = self._locator.locate(g, valid, f, status, self.step_length, centers)
        distance = result.distance
        magnitude = result.magnitude
        logger.debug(f"computing edge distances: {time.perf_counter() - start:.3f} s")

        if params.median_filter_radius > 0:
            start = time.perf_counter()
            distance = median_filter(distance, surface.edge_table, params.median_filter_radius)
            logger.debug(f"edge distance median filtering: {time.perf_counter() - start:.3f} s")
        if params.distance_smoothing > 0:
            start = time.perf_counter()
            distance = smooth_point_data(
                distance, surface.points, surface.edge_table, params.distance_smoothing, GAUSSIAN
            )
            logger.debug(f"edge distance smoothing: {time.perf_counter() - start:.3f} s")
        if params.magnitude_smoothing > 0:
            start = time.perf_counter()
            magnitude = smooth_point_data(
                magnitude, surface.points, surface.edge_table, params.magnitude_smoothing, COMBINATORIAL
            )
            logger.debug(f"edge magnitude smoothing: {time.perf_counter() - start:.3f} s")

        start = time.perf_counter()
        magnitude = shape_force_magnitude(distance, magnitude, status)
        logger.debug(f"computing edge force magnitude: {time.perf_counter() - start:.3f} s")

        ctx.set_point_data("Distance", distance)
        ctx.set_point_data("Magnitude", magnitude)
        if not status.any():
            logger.warning(f"{ctx.name}: no active vertices")

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
        ctx.gradient[...] = force_gradient(self.magnitudes, ctx.surface.normals, ctx.status)
        ctx.accumulate_gradient(buffer, weight / n)
