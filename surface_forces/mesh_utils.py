"""
Utility functions for surface mesh operations used by the surface forces
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import meshio
import numpy as np
import scipy.sparse as sp
from skimage import measure

logger = logging.getLogger(__name__)

GAUSSIAN = "gaussian"
COMBINATORIAL = "combinatorial"


@dataclass(frozen=True)
class EdgeTable:
    """Vertex adjacency in CSR form: neighbors of i are indices[offsets[i]:offsets[i+1]]."""

    offsets: np.ndarray
    indices: np.ndarray

    @property
    def num_points(self) -> int:
        return len(self.offsets) - 1

    def neighbors(self, i: int) -> np.ndarray:
        return self.indices[self.offsets[i]:self.offsets[i + 1]]

    def adjacency_matrix(self) -> sp.csr_matrix:
        n = self.num_points
        data = np.ones(len(self.indices), dtype=np.float64)
        return sp.csr_matrix((data, self.indices, self.offsets), shape=(n, n))


def triangle_cells(mesh: meshio.Mesh) -> Optional[np.ndarray]:
    """Return the first block of triangle cells, or None."""
    for cell in mesh.cells:
        if cell.type == "triangle":
            return np.asarray(cell.data, dtype=np.int64)
    return None


def load_surface_mesh(mesh_file: Union[str, Path]) -> meshio.Mesh:
    """Load a triangulated surface mesh"""
    mesh_file = Path(mesh_file)
    if not mesh_file.exists():
        raise FileNotFoundError(f"Mesh not found: {mesh_file}")
    mesh = meshio.read(mesh_file)
    if triangle_cells(mesh) is None:
        raise ValueError(f"No triangular cells found in mesh {mesh_file}")
    logger.info(f"Loaded mesh: {mesh_file} ({len(mesh.points)} vertices)")
    return mesh


def extract_surface(mask_data: np.ndarray, affine: np.ndarray,
                    level: float = 0.5, step_size: int = 1) -> meshio.Mesh:
    """
    Extract a surface using the marching cubes algorithm

    Args:
        mask_data: 3D binary mask (or scalar) array
        affine: 4x4 voxel->world transformation matrix
        level: Iso-surface value for marching cubes
        step_size: Step size for marching cubes (reduce for higher resolution)

    Returns:
        meshio.Mesh: Surface mesh in world coordinates
    """
    vertices, faces, _, _ = measure.marching_cubes(
        np.asarray(mask_data, dtype=np.float64), level=level, step_size=step_size
    )

    # Transform vertices to physical coordinates
    vertices_homo = np.column_stack([vertices, np.ones(len(vertices))])
    vertices_phys = (affine @ vertices_homo.T).T[:, :3]

    return meshio.Mesh(points=vertices_phys, cells=[("triangle", faces)])


def build_edge_table(triangles: np.ndarray, num_vertices: int) -> EdgeTable:
    """Build the vertex adjacency (edge table) of a triangle mesh"""
    triangles = np.asarray(triangles, dtype=np.int64)
    if triangles.size == 0:
        return EdgeTable(np.zeros(num_vertices + 1, dtype=np.int64), np.zeros(0, dtype=np.int64))
    rows = np.concatenate([triangles[:, 0], triangles[:, 1], triangles[:, 2],
                           triangles[:, 1], triangles[:, 2], triangles[:, 0]])
    cols = np.concatenate([triangles[:, 1], triangles[:, 2], triangles[:, 0],
                           triangles[:, 0], triangles[:, 1], triangles[:, 2]])
    adj = sp.coo_matrix(
        (np.ones(len(rows), dtype=np.int8), (rows, cols)),
        shape=(num_vertices, num_vertices),
    ).tocsr()
    adj.sum_duplicates()
    adj.sort_indices()
    return EdgeTable(adj.indptr.astype(np.int64), adj.indices.astype(np.int64))


def ring_neighborhoods(edge_table: EdgeTable, connectivity: int) -> sp.csr_matrix:
    """Sparsity pattern of the n-ring neighborhoods (including the point itself)"""
    n = edge_table.num_points
    step = edge_table.adjacency_matrix() + sp.identity(n, format="csr")
    ring = sp.identity(n, format="csr", dtype=np.float64)
    for _ in range(max(0, connectivity)):
        ring = (ring @ step).astype(bool).astype(np.float64)
    ring = ring.tocsr()
    ring.sort_indices()
    return ring


def median_filter(values: np.ndarray, edge_table: EdgeTable, connectivity: int = 1) -> np.ndarray:
    """
    Median of point data over mesh neighborhoods

    Args:
        values: Point data array (N,)
        edge_table: Mesh vertex adjacency
        connectivity: Neighborhood radius in edges (n-ring)

    Returns:
        np.ndarray: Filtered copy of the point data
    """
    values = np.asarray(values, dtype=np.float64)
    if connectivity <= 0 or values.size == 0:
        return values.copy()
    ring = ring_neighborhoods(edge_table, connectivity)
    counts = np.diff(ring.indptr)
    starts = ring.indptr[:-1]
    rows = np.repeat(np.arange(len(values)), counts)
    samples = values[ring.indices]
    # Sort within each row; every ring holds the point itself, so counts >= 1
    samples = samples[np.lexsort((samples, rows))]
    filtered = 0.5 * (samples[starts + (counts - 1) // 2] + samples[starts + counts // 2])
    has_nan = np.add.reduceat(np.isnan(samples).astype(np.int64), starts) > 0
    filtered[has_nan] = np.nan
    return filtered


def _smoothing_operator(points: np.ndarray, edge_table: EdgeTable, weighting: str) -> sp.csr_matrix:
    """Row-normalized neighbor weights"""
    n = edge_table.num_points
    rows = np.repeat(np.arange(n), np.diff(edge_table.offsets))
    cols = edge_table.indices
    if weighting == COMBINATORIAL:
        weights = np.ones(len(cols), dtype=np.float64)
    elif weighting == GAUSSIAN:
        dist2 = np.sum((points[rows] - points[cols]) ** 2, axis=1)
        # Per-point sigma is the mean length of its incident edges
        counts = np.maximum(np.diff(edge_table.offsets), 1)
        sigma = np.bincount(rows, weights=np.sqrt(dist2), minlength=n) / counts
        sigma2 = np.maximum(sigma[rows] ** 2, 1e-12)
        weights = np.exp(-0.5 * dist2 / sigma2)
    else:
        raise ValueError(f"Unknown smoothing weighting: {weighting}")
    W = sp.csr_matrix((weights, (rows, cols)), shape=(n, n))
    wsum = np.asarray(W.sum(axis=1)).ravel()
    isolated = wsum <= 0.0
    wsum[isolated] = 1.0
    W = sp.diags(1.0 / wsum) @ W
    if isolated.any():
        # Points without neighbors keep their value
        W = W + sp.diags(isolated.astype(np.float64))
    return W.tocsr()


def smooth_point_data(
    values: np.ndarray,
    points: np.ndarray,
    edge_table: EdgeTable,
    iterations: int,
    weighting: str = COMBINATORIAL,
) -> np.ndarray:
    """
    Iterative diffusion of point data over the mesh (points stay fixed)

    Args:
        values: Point data array (N,) or (N, C)
        points: Vertex positions (N, 3), used by Gaussian weighting
        edge_table: Mesh vertex adjacency
        iterations: Number of smoothing iterations
        weighting: GAUSSIAN or COMBINATORIAL neighbor weights

    Returns:
        np.ndarray: Smoothed copy of the point data
    """
    values = np.asarray(values, dtype=np.float64).copy()
    if iterations <= 0 or edge_table.num_points == 0:
        return values
    W = _smoothing_operator(np.asarray(points, dtype=np.float64), edge_table, weighting)
    for _ in range(iterations):
        values = W @ values
    return values


def save_mesh_with_metadata(mesh: meshio.Mesh, output_file: Path,
                            metadata: dict = None):
    """
    Save mesh with optional metadata

    Args:
        mesh: Mesh to save
        output_file: Output file path
        metadata: Optional metadata dictionary
    """
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    mesh.write(output_file)
    logger.info(f"Saved mesh: {output_file}")

    if metadata:
        metadata_file = output_file.with_suffix('.json')
        with open(metadata_file, 'w') as f:
            json.dump(metadata, f, indent=2)
        logger.info(f"Saved metadata: {metadata_file}")
