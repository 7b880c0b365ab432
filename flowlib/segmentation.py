# flowlib/segmentation.py
"""Vessel segmentations resampled to the spatial grid of a flow field."""

import logging
import numpy as np
import scipy.ndimage
from typing import Optional, Union

from .data import FieldGeometry

logger = logging.getLogger(__name__)


class Vessel:
    """
    A segmented vessel.

    Attributes:
        name (str): Label used in logs and reports.
        segmentation (np.ndarray): (X, Y, Z) 0/1 mask in the vessel's own grid.
        geometry (FieldGeometry): Geometry of `segmentation`. If None, the
            segmentation is assumed to share the flow field's grid.
    """
    def __init__(self, name: str, segmentation: np.ndarray, geometry: Optional[FieldGeometry] = None):
        segmentation = np.asarray(segmentation)
        if segmentation.ndim != 3:
            raise ValueError(f"segmentation must be 3D, got shape {segmentation.shape}")
        if geometry is not None and tuple(geometry.size[:3]) != segmentation.shape:
            raise ValueError(f"geometry size {geometry.size} does not match segmentation shape {segmentation.shape}")
        self.name = name
        self.segmentation = segmentation
        self.geometry = geometry

    def __repr__(self):
        return f"Vessel(name={self.name!r}, shape={self.segmentation.shape}, voxels={int(np.count_nonzero(self.segmentation))})"


def vessel_mask_in_field_size(vessel: Union[Vessel, np.ndarray], geometry: FieldGeometry) -> np.ndarray:
    """
    Returns the vessel mask on the spatial grid of a flow field.

    A segmentation that already has the field's spatial size is copied. Otherwise
    every field voxel is mapped to world coordinates, then into the vessel's grid,
    where the segmentation is interpolated trilinearly and rounded.

    Args:
        vessel (Vessel or np.ndarray): Vessel, or a ready-made (X, Y, Z) mask.
        geometry (FieldGeometry): Geometry of the flow field.

    Returns:
        np.ndarray: Boolean mask of shape geometry.spatial_size.
    """
    spatial_size = tuple(geometry.spatial_size)
    if not isinstance(vessel, Vessel):
        mask = np.asarray(vessel)
        if mask.shape != spatial_size:
            raise ValueError(f"mask shape {mask.shape} does not match field size {spatial_size}")
        return mask != 0

    seg = vessel.segmentation
    if seg.shape == spatial_size:
        return seg != 0
    if vessel.geometry is None:
        raise ValueError(f"Vessel {vessel.name!r} has size {seg.shape} but no geometry to resample "
                         f"it to the field size {spatial_size}")

    grid = np.stack(np.meshgrid(*(np.arange(n, dtype=np.float64) for n in spatial_size), indexing="ij"), axis=-1)
    coords = vessel.geometry.world_to_grid(geometry.grid_to_world(grid))  # (X, Y, Z, 3)
    sampled = scipy.ndimage.map_coordinates(seg.astype(np.float64), np.moveaxis(coords, -1, 0),
                                            order=1, mode="constant", cval=0.0)
    mask = np.round(sampled) != 0
    logger.debug("Resampled vessel %r from %s to %s (%d voxels)", vessel.name, seg.shape, spatial_size, mask.sum())
    return mask


def dilate_mask(mask: np.ndarray) -> np.ndarray:
    """One-voxel dilation with the full 26-neighbourhood (3x3x3 structuring element)."""
    mask = np.asarray(mask, dtype=bool)
    structure = np.ones((3,) * mask.ndim, dtype=bool)
    return scipy.ndimage.binary_dilation(mask, structure=structure)
