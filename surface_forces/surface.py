"""
Deformable triangulated surface shared by the surface forces.

Holds the vertex positions, the triangles, the per-vertex initial status
(vertices allowed to move) and lazily computed unit normals and edge table.
Every change of the vertex positions bumps a modification time stamp which
the forces compare against the time stamps of their point data arrays.
"""

from __future__ import annotations

import itertools
import logging
from pathlib import Path
from typing import Optional, Union

import meshio
import numpy as np

from .mesh_utils import EdgeTable, build_edge_table, load_surface_mesh, triangle_cells

logger = logging.getLogger(__name__)

_CLOCK = itertools.count(1)


def next_mtime() -> int:
    """Monotonic modification time shared by surfaces and point data."""
    return next(_CLOCK)


def vertex_normals(points: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Area-weighted unit vertex normals, (N, 3)."""
    normals = np.zeros_like(points, dtype=np.float64)
    if len(triangles):
        p0 = points[triangles[:, 0]]
        p1 = points[triangles[:, 1]]
        p2 = points[triangles[:, 2]]
        face_normals = np.cross(p1 - p0, p2 - p0)
        for a in range(3):
            np.add.at(normals, triangles[:, a], face_normals)
    norm = np.linalg.norm(normals, axis=1, keepdims=True)
    np.divide(normals, norm, out=normals, where=norm > 0.0)
    return normals


class DeformableSurface:
    def __init__(
        self,
        points: np.ndarray,
        triangles: np.ndarray,
        status: Optional[np.ndarray] = None,
        normals: Optional[np.ndarray] = None,
    ):
        self._points = np.ascontiguousarray(points, dtype=np.float64)
        if self._points.ndim != 2 or self._points.shape[1] != 3:
            raise ValueError(f"Points must have shape (N, 3), got {self._points.shape}")
        self.triangles = np.ascontiguousarray(triangles, dtype=np.int64).reshape(-1, 3)
        n = len(self._points)
        if len(self.triangles) and (self.triangles.min() < 0 or self.triangles.max() >= n):
            raise ValueError("Triangle indices out of range")
        if status is None:
            status = np.ones(n, dtype=np.int32)
        status = np.asarray(status)
        if status.shape != (n,):
            raise ValueError(f"Status shape {status.shape} doesn't match mesh nodes {(n,)}")
        self.status = np.ascontiguousarray(status != 0, dtype=np.int32)
        self._normals = None
        self._normals_fixed = normals is not None
        if normals is not None:
            normals = np.ascontiguousarray(normals, dtype=np.float64)
            if normals.shape != (n, 3):
                raise ValueError(f"Normals shape {normals.shape} doesn't match mesh nodes {(n, 3)}")
            self._normals = normals
        self._edge_table: Optional[EdgeTable] = None
        self.mtime = next_mtime()

    @classmethod
    def from_meshio(cls, mesh: meshio.Mesh, status_name: str = "status") -> "DeformableSurface":
        triangles = triangle_cells(mesh)
        if triangles is None:
            raise ValueError("No triangular cells found in mesh")
        status = mesh.point_data.get(status_name)
        return cls(mesh.points[:, :3], triangles, status=status)

    @classmethod
    def read(cls, path: Union[str, Path]) -> "DeformableSurface":
        return cls.from_meshio(load_surface_mesh(path))

    def to_meshio(self, point_data: Optional[dict] = None) -> meshio.Mesh:
        data = {"status": self.status.copy()}
        if point_data:
            data.update(point_data)
        return meshio.Mesh(points=self._points.copy(), cells=[("triangle", self.triangles)], point_data=data)

    @property
    def number_of_points(self) -> int:
        return len(self._points)

    @property
    def points(self) -> np.ndarray:
        return self._points

    @points.setter
    def points(self, value: np.ndarray) -> None:
        value = np.ascontiguousarray(value, dtype=np.float64)
        if value.shape != self._points.shape:
            raise ValueError(f"Points shape {value.shape} doesn't match {self._points.shape}")
        self._points = value
        self.modified()

    def displace(self, displacement: np.ndarray) -> None:
        """Move the vertices by a (N, 3) displacement."""
        self.points = self._points + np.asarray(displacement, dtype=np.float64)

    def modified(self) -> None:
        if not self._normals_fixed:
            self._normals = None
        self.mtime = next_mtime()

    @property
    def normals(self) -> np.ndarray:
        if self._normals is None:
            self._normals = vertex_normals(self._points, self.triangles)
        return self._normals

    @property
    def edge_table(self) -> EdgeTable:
        """Vertex adjacency; connectivity is fixed for the surface's lifetime."""
        if self._edge_table is None:
            self._edge_table = build_edge_table(self.triangles, self.number_of_points)
        return self._edge_table
