# flowlib/plotting.py
"""Module for visualization of flow corrections and pressure maps."""

import numpy as np
import matplotlib.pyplot as plt

from .data import FieldGeometry, ScalarField


def _axes(ax):
    if ax is None:
        _, ax = plt.subplots()
    return ax


def wrap_count_volume(unwrapper, geometry: FieldGeometry, component: int = 0) -> np.ndarray:
    """Scatters a component's wrap record into a dense array of wrap counts with the grid size."""
    counts = np.zeros(geometry.num_voxels, dtype=np.int8)
    record = unwrapper.wrap_records[component]
    counts[record["lid"].astype(np.int64)] = record["nr"]
    return counts.reshape(geometry.size)


def plot_wrap_map(unwrapper, geometry: FieldGeometry, z: int, t: int, component: int = 0, ax=None):
    """
    Shows the detected wrap counts of one (z, t) slice of a 3D+T field.

    Args:
        unwrapper (PhaseUnwrapper3DT): Initialized unwrapper.
        geometry (FieldGeometry): (X, Y, Z, T) geometry the record was detected on.
        z (int): Slice index.
        t (int): Time index.
        component (int): Velocity component.
        ax (matplotlib.axes.Axes, optional): Target axes. A new figure is created if None.

    Returns:
        matplotlib.axes.Axes: The axes drawn into.
    """
    if geometry.ndim != 4:
        raise ValueError("plot_wrap_map expects a (X, Y, Z, T) geometry.")
    counts = wrap_count_volume(unwrapper, geometry, component)
    limit = max(1, int(np.abs(counts).max()))

    ax = _axes(ax)
    im = ax.imshow(counts[:, :, z, t].T, cmap="RdBu_r", vmin=-limit, vmax=limit, origin="lower")
    ax.figure.colorbar(im, ax=ax, label="Wrap count")
    ax.set_title(f"Phase wraps, component {component}, z={z}, t={t}")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    return ax


def plot_offset_plane(corrector, geometry: FieldGeometry, z: int, component: int = 0, ax=None):
    """
    Shows the fitted offset plane a*x + b*y + c of one slice.

    Returns:
        matplotlib.axes.Axes: The axes drawn into.
    """
    planes = corrector.plane_coefficients
    if z >= planes.shape[1]:
        raise ValueError(f"Slice {z} not fitted; corrector has {planes.shape[1]} slices.")
    a, b, c = planes[component, z]
    X, Y = geometry.size[:2]
    x, y = np.meshgrid(np.arange(X), np.arange(Y), indexing="ij")
    offset = a * x + b * y + c

    ax = _axes(ax)
    im = ax.imshow(offset.T, cmap="viridis", origin="lower")
    ax.figure.colorbar(im, ax=ax, label="Offset (m/s)")
    ax.set_title(f"Offset plane, component {component}, z={z}")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    return ax


def plot_pressure_slice(pressure: ScalarField, z: int, t: int, ax=None, unit: str = "mmHg"):
    """
    Shows one (z, t) slice of a relative pressure map.

    Returns:
        matplotlib.axes.Axes: The axes drawn into.
    """
    if not isinstance(pressure, ScalarField) or pressure.values.ndim != 4:
        raise ValueError("pressure must be a 4D ScalarField.")
    data = pressure.values[:, :, z, t]
    limit = float(np.abs(data).max()) or 1.0

    ax = _axes(ax)
    im = ax.imshow(data.T, cmap="coolwarm", vmin=-limit, vmax=limit, origin="lower")
    ax.figure.colorbar(im, ax=ax, label=f"Relative pressure ({unit})")
    ax.set_title(f"Relative pressure, z={z}, t={t}")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    return ax
