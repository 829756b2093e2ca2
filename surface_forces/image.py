"""
Scalar image volumes sampled by the surface forces.

An ImageVolume bundles the voxel intensities (float64), the 4x4 voxel->world
affine of the NIfTI header, an optional foreground mask and the voxel-space
intensity gradient used for directional derivatives along cast rays.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import nibabel as nib
import numpy as np

from .config import ConfigurationError

logger = logging.getLogger(__name__)


class ImageVolume:
    """3D scalar image with world<->voxel transforms."""

    def __init__(
        self,
        data: np.ndarray,
        affine: Optional[np.ndarray] = None,
        foreground: Optional[np.ndarray] = None,
    ):
        data = np.asarray(data)
        if data.ndim == 4 and data.shape[3] == 1:
            data = data[..., 0]
        if data.ndim != 3:
            raise ConfigurationError(f"Expected a 3D image, got array with shape {data.shape}")
        self.data = np.ascontiguousarray(data, dtype=np.float64)
        self.affine = np.eye(4) if affine is None else np.asarray(affine, dtype=np.float64)
        if self.affine.shape != (4, 4):
            raise ConfigurationError(f"Affine must be 4x4, got {self.affine.shape}")
        self.affine_inv = np.linalg.inv(self.affine)
        if foreground is None:
            self.foreground = np.ones(self.data.shape, dtype=np.int32)
        else:
            foreground = np.asarray(foreground)
            if foreground.shape != self.data.shape:
                raise ConfigurationError(
                    f"Foreground mask shape {foreground.shape} doesn't match image {self.data.shape}"
                )
            self.foreground = np.ascontiguousarray(foreground != 0, dtype=np.int32)
        self._gradient: Optional[np.ndarray] = None

    @classmethod
    def load(cls, path: Union[str, Path], foreground: Optional[np.ndarray] = None) -> "ImageVolume":
        """Load a NIfTI (or any nibabel-readable) volume."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Image not found: {path}")
        img = nib.load(str(path))
        volume = cls(img.get_fdata(), img.affine, foreground)
        logger.info(f"Loaded image: {path} (shape={volume.shape}, spacing={volume.spacing})")
        return volume

    @property
    def shape(self) -> tuple:
        return tuple(int(s) for s in self.data.shape)

    @property
    def spacing(self) -> np.ndarray:
        """Voxel size along each lattice axis in world units."""
        return np.linalg.norm(self.affine[:3, :3], axis=0)

    @property
    def voxel_diagonal(self) -> float:
        return float(np.linalg.norm(self.spacing))

    @property
    def gradient(self) -> np.ndarray:
        """Central-difference intensity gradient in voxel units, shape (X, Y, Z, 3)."""
        if self._gradient is None:
            axes = [ax for ax in range(3) if self.data.shape[ax] > 1]
            grad = np.zeros(self.data.shape + (3,), dtype=np.float64)
            if axes:
                parts = np.gradient(self.data, axis=axes)
                if len(axes) == 1:
                    parts = [parts]
                for ax, part in zip(axes, parts):
                    grad[..., ax] = part
            self._gradient = np.ascontiguousarray(grad)
        return self._gradient

    def world_to_voxel(self, xyz: np.ndarray) -> np.ndarray:
        """Map world points (N, 3) to continuous voxel coordinates."""
        xyz = np.atleast_2d(np.asarray(xyz, dtype=np.float64))
        hom = np.column_stack([xyz, np.ones(len(xyz))])
        return (hom @ self.affine_inv.T)[:, :3]

    def voxel_to_world(self, ijk: np.ndarray) -> np.ndarray:
        ijk = np.atleast_2d(np.asarray(ijk, dtype=np.float64))
        hom = np.column_stack([ijk, np.ones(len(ijk))])
        return (hom @ self.affine.T)[:, :3]

    def world_to_voxel_vectors(self, vectors: np.ndarray) -> np.ndarray:
        """Map world displacement vectors (N, 3) to voxel space (no translation)."""
        vectors = np.atleast_2d(np.asarray(vectors, dtype=np.float64))
        return vectors @ self.affine_inv[:3, :3].T

    def has_spatial_attributes_of(self, other: "ImageVolume", atol: float = 1e-6) -> bool:
        """Same lattice size and same voxel->world mapping."""
        return self.shape == other.shape and np.allclose(self.affine, other.affine, atol=atol)

    def masked_values(self, mask: np.ndarray) -> np.ndarray:
        return self.data[np.asarray(mask) != 0]
