# flowlib/data.py
"""Module for 4D flow data representation."""

import numpy as np
from typing import Optional, Sequence


class FieldGeometry:
    """
    Grid geometry shared by velocity fields, scalar images and pressure maps.

    The grid axes are ordered (x, y, z[, t]). The last axis has the lowest stride,
    so a linear voxel index ("lid") is the C-order index of the grid coordinates.
    """
    def __init__(self,
                 size: Sequence[int],
                 scale: Optional[Sequence[float]] = None,
                 world_matrix: Optional[np.ndarray] = None):
        """
        Initializes a FieldGeometry object.

        Args:
            size: Number of voxels per axis, e.g. (X, Y, Z, T).
            scale: Physical extent of one voxel per axis (mm for space, ms for time).
                   Defaults to 1 for every axis.
            world_matrix: Homogeneous 4x4 matrix mapping spatial grid coordinates
                          (x, y, z, 1) to world coordinates. Defaults to a diagonal
                          matrix built from the spatial scale.
        """
        size = tuple(int(s) for s in size)
        if len(size) == 0 or any(s <= 0 for s in size):
            raise ValueError(f"size must contain positive integers, got {size}")
        self.size = size

        if scale is None:
            scale = (1.0,) * len(size)
        scale = tuple(float(s) for s in scale)
        if len(scale) != len(size):
            raise ValueError(f"scale must have {len(size)} entries, got {len(scale)}")
        if any(s <= 0 for s in scale):
            raise ValueError(f"scale must be positive, got {scale}")
        self.scale = scale

        if world_matrix is None:
            world_matrix = np.eye(4)
            for i, s in enumerate(scale[:3]):
                world_matrix[i, i] = s
        world_matrix = np.asarray(world_matrix, dtype=np.float64)
        if world_matrix.shape != (4, 4):
            raise ValueError(f"world_matrix must be 4x4, got shape {world_matrix.shape}")
        self.world_matrix = world_matrix

    @property
    def ndim(self) -> int:
        return len(self.size)

    @property
    def spatial_size(self) -> tuple:
        return self.size[:3]

    @property
    def num_voxels(self) -> int:
        return int(np.prod(self.size))

    def grid_to_world(self, points: np.ndarray) -> np.ndarray:
        """Maps spatial grid coordinates of shape (..., 3) to world coordinates."""
        points = np.asarray(points, dtype=np.float64)
        return points @ self.world_matrix[:3, :3].T + self.world_matrix[:3, 3]

    def world_to_grid(self, points: np.ndarray) -> np.ndarray:
        """Maps world coordinates of shape (..., 3) to (fractional) spatial grid coordinates."""
        points = np.asarray(points, dtype=np.float64)
        inv = np.linalg.inv(self.world_matrix)
        return points @ inv[:3, :3].T + inv[:3, 3]

    def copy(self) -> "FieldGeometry":
        return FieldGeometry(self.size, self.scale, self.world_matrix.copy())

    def __eq__(self, other):
        if not isinstance(other, FieldGeometry):
            return NotImplemented
        return (self.size == other.size and self.scale == other.scale
                and np.array_equal(self.world_matrix, other.world_matrix))

    def __repr__(self):
        return f"FieldGeometry(size={self.size}, scale={self.scale})"


class VelocityField:
    """
    Represents a time-resolved 3D velocity field (4D flow), i.e. a (x, y, z, t) grid
    of 3-component velocity vectors in m/s.
    """
    def __init__(self, values: np.ndarray, geometry: Optional[FieldGeometry] = None):
        """
        Initializes a VelocityField object.

        Args:
            values: Array of shape (X, Y, Z, T, 3). Stored as C-contiguous float64.
            geometry: Optional FieldGeometry. Its size must equal values.shape[:4].
                      Defaults to a unit-scaled geometry.
        """
        values = np.ascontiguousarray(values, dtype=np.float64)
        if values.ndim != 5 or values.shape[-1] != 3:
            raise ValueError(f"values must have shape (X, Y, Z, T, 3), got {values.shape}")
        if geometry is None:
            geometry = FieldGeometry(values.shape[:4])
        elif tuple(geometry.size) != values.shape[:4]:
            raise ValueError(f"geometry size {geometry.size} does not match values shape {values.shape[:4]}")
        self.values = values
        self.geometry = geometry

    @property
    def size(self) -> tuple:
        return self.values.shape[:4]

    @property
    def num_values(self) -> int:
        return int(np.prod(self.size))

    @property
    def flat(self) -> np.ndarray:
        """(N, 3) view of the vectors, addressed by linear voxel index."""
        return self.values.reshape(-1, 3)

    def copy(self) -> "VelocityField":
        return VelocityField(self.values.copy(), self.geometry.copy())

    @classmethod
    def zeros(cls, size: Sequence[int], scale: Optional[Sequence[float]] = None) -> "VelocityField":
        size = tuple(int(s) for s in size)
        return cls(np.zeros(size + (3,)), FieldGeometry(size, scale))


class ScalarField:
    """
    Represents a scalar image on a regular grid: a static-tissue image (x, y, z),
    a through-plane flow image (x, y, t) or a pressure map (x, y, z, t).
    """
    def __init__(self, values: np.ndarray, geometry: Optional[FieldGeometry] = None):
        values = np.ascontiguousarray(values, dtype=np.float64)
        if values.ndim not in (2, 3, 4):
            raise ValueError(f"values must be 2D, 3D or 4D, got {values.ndim} dimensions")
        if geometry is None:
            geometry = FieldGeometry(values.shape)
        elif tuple(geometry.size) != values.shape:
            raise ValueError(f"geometry size {geometry.size} does not match values shape {values.shape}")
        self.values = values
        self.geometry = geometry

    @property
    def size(self) -> tuple:
        return self.values.shape

    @property
    def num_values(self) -> int:
        return int(self.values.size)

    @property
    def flat(self) -> np.ndarray:
        return self.values.reshape(-1)

    def copy(self) -> "ScalarField":
        return ScalarField(self.values.copy(), self.geometry.copy())
