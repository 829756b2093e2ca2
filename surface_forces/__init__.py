"""
External forces that drive deformable surface meshes towards image edges
and implicit surfaces.
"""

from .config import (
    ConfigurationError,
    DistanceMeasure,
    EdgeDistanceParams,
    EdgeType,
    ImplicitSurfaceParams,
)
from .edge_distance import ImageEdgeDistance
from .edge_locator import EdgeLocator, locate_edge, locate_edges
from .force import ForceContext, create_energy_term, list_energy_terms, register_energy_term
from .image import ImageVolume
from .implicit_surface import ImplicitSurfaceDistance
from .statistics import TissueStatistics, estimate_global, estimate_local
from .surface import DeformableSurface

__all__ = [
    "ConfigurationError",
    "DeformableSurface",
    "DistanceMeasure",
    "EdgeDistanceParams",
    "EdgeLocator",
    "EdgeType",
    "ForceContext",
    "ImageEdgeDistance",
    "ImageVolume",
    "ImplicitSurfaceDistance",
    "ImplicitSurfaceParams",
    "TissueStatistics",
    "create_energy_term",
    "estimate_global",
    "estimate_local",
    "list_energy_terms",
    "locate_edge",
    "locate_edges",
    "register_energy_term",
]
