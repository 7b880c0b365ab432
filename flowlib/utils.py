# flowlib/utils.py
"""Module for utility functions."""

import math
import numpy as np
from typing import Callable, Optional, Sequence

ProgressFn = Callable[[int, int, str], None]


def grid_to_list_id(size: Sequence[int], *coords: int) -> int:
    """
    Converts grid coordinates to a linear voxel index.

    The last dimension has the lowest stride, e.g. for a 3x3 grid:
    x0y0 x0y1 x0y2 x1y0 ...

    Args:
        size: Grid size per dimension.
        *coords: One integer coordinate per dimension.

    Returns:
        int: Linear index.
    """
    if len(coords) != len(size):
        raise ValueError(f"Expected {len(size)} coordinates, got {len(coords)}")
    return int(np.ravel_multi_index(tuple(int(c) for c in coords), tuple(size)))


def list_to_grid_id(size: Sequence[int], lid: int) -> tuple:
    """Inverse of grid_to_list_id."""
    return tuple(int(c) for c in np.unravel_index(int(lid), tuple(size)))


def quantile(values: np.ndarray, p: float) -> float:
    """
    Returns the value at p (0..1) of the sorted sample, taking the element at
    position min(floor(p * N), N - 1). No interpolation between samples.

    Args:
        values (np.ndarray): Sample, any shape. Flattened.
        p (float): Quantile in [0, 1].

    Returns:
        float: The selected sample value.
    """
    values = np.asarray(values, dtype=np.float64).ravel()
    if values.size == 0:
        raise ValueError("quantile of an empty sample is undefined.")
    if not 0.0 <= p <= 1.0:
        raise ValueError(f"p must be in [0, 1], got {p}")
    idx = min(int(math.floor(p * values.size)), values.size - 1)
    return float(np.partition(values, idx)[idx])


def report_progress(progress_fn: Optional[ProgressFn], step: int, total: int, description: str):
    """Forwards a progress update to an optional observer."""
    if progress_fn is not None:
        progress_fn(step, total, description)


def as_venc(venc, num_components: int = 3) -> tuple:
    """
    Normalizes a venc argument (scalar or per-component sequence) to a tuple of
    positive floats.
    """
    if np.isscalar(venc):
        venc = (venc,) * num_components
    venc = tuple(float(v) for v in venc)
    if len(venc) != num_components:
        raise ValueError(f"venc must be a scalar or have {num_components} entries, got {len(venc)}")
    if any(v <= 0 for v in venc):
        raise ValueError(f"venc must be positive, got {venc}")
    return venc
