import os
import sys
from pathlib import Path

import numpy as np
import pytest
from skimage import measure

# Kernels are compiled for the CPU backend in tests
os.environ["TAICHI_ARCH"] = "cpu"

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from surface_forces.image import ImageVolume  # noqa: E402
from surface_forces.surface import DeformableSurface  # noqa: E402

GRID = 40
CENTER = np.array([19.5, 19.5, 19.5])


def _radial_distance(shape=(GRID, GRID, GRID), center=CENTER):
    ii, jj, kk = np.meshgrid(*[np.arange(n, dtype=np.float64) for n in shape], indexing="ij")
    return np.sqrt((ii - center[0]) ** 2 + (jj - center[1]) ** 2 + (kk - center[2]) ** 2)


def _sphere_surface(radius, center=CENTER):
    dist = _radial_distance(center=center)
    verts, faces, _, _ = measure.marching_cubes(radius - dist, level=0.0)
    faces = np.asarray(faces, dtype=np.int64)
    surface = DeformableSurface(verts, faces)
    # Orient triangles so that normals point away from the center
    if np.mean(np.sum(surface.normals * (verts - center), axis=1)) < 0.0:
        surface = DeformableSurface(verts, faces[:, ::-1].copy())
    return surface


@pytest.fixture
def radial_distance():
    return _radial_distance()


@pytest.fixture
def sphere_surface():
    """Factory for outward-oriented sphere meshes around the grid center (voxel = world)."""
    return _sphere_surface


@pytest.fixture
def blob_image(radial_distance):
    """Bright ball of radius 10 with a smooth (logistic) boundary, identity affine."""
    data = 100.0 / (1.0 + np.exp(radial_distance - 10.0))
    return ImageVolume(data, np.eye(4))


@pytest.fixture
def sphere_sdf(radial_distance):
    """Signed distance to a sphere of radius 10, negative inside."""
    return ImageVolume(radial_distance - 10.0, np.eye(4))
