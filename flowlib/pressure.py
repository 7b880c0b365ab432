# flowlib/pressure.py
"""
Relative pressure maps from 4D flow velocity fields.

The pressure gradient follows from the incompressible Navier-Stokes momentum
balance

    -grad(p) = density * (dv/dt + (v . grad) v) - viscosity * lap(v)

Taking the divergence gives a Poisson equation for p, which is relaxed with a
damped Jacobi iteration inside each vessel. The result is smoothed, clamped to
its 1st/99th percentiles and referenced to its mean, so it is a relative pressure.

All finite differences use periodic neighbours (torch.roll) at the grid borders.
This is an approximation without a physical boundary condition; vessels are
expected to lie away from the field border.
"""

import logging
import numpy as np
import torch
from typing import Callable, Optional, Sequence, Tuple

from .data import ScalarField, VelocityField
from .fft import to_tensor
from .results import FilterReport, FilterStatus, Stopwatch
from .segmentation import dilate_mask, vessel_mask_in_field_size
from .utils import ProgressFn, quantile, report_progress

logger = logging.getLogger(__name__)

PA_TO_MMHG = 0.0075006156130264
RELAXATION_WEIGHT = 0.5


def _next(t: torch.Tensor, dim: int) -> torch.Tensor:
    """Periodic neighbour at index + 1 along `dim`."""
    return torch.roll(t, shifts=-1, dims=dim)


def _prev(t: torch.Tensor, dim: int) -> torch.Tensor:
    """Periodic neighbour at index - 1 along `dim`."""
    return torch.roll(t, shifts=1, dims=dim)


def momentum_residual(velocity: torch.Tensor,
                      mask: torch.Tensor,
                      scale: Sequence[float],
                      density: float,
                      viscosity: float) -> torch.Tensor:
    """
    Computes density * (dv/dt + (v . grad) v) - viscosity * lap(v) with central
    differences.

    Args:
        velocity (torch.Tensor): (X, Y, Z, T, 3) velocities.
        mask (torch.Tensor): (X, Y, Z) boolean vessel mask. The residual is zero
            outside the mask.
        scale (sequence of float): Voxel size (sx, sy, sz, st).
        density (float): Blood density.
        viscosity (float): Dynamic viscosity.

    Returns:
        torch.Tensor: (X, Y, Z, T, 3) residual.
    """
    if velocity.ndim != 5 or velocity.shape[-1] != 3:
        raise ValueError(f"velocity must have shape (X, Y, Z, T, 3), got {tuple(velocity.shape)}")
    if tuple(mask.shape) != tuple(velocity.shape[:3]):
        raise ValueError(f"mask shape {tuple(mask.shape)} does not match {tuple(velocity.shape[:3])}")
    sx, sy, sz, st = (float(s) for s in scale[:4])
    v = velocity

    dvdt = (_next(v, 3) - _prev(v, 3)) / (2.0 * st)

    lap = torch.zeros_like(v)
    grads = []
    for dim, s in enumerate((sx, sy, sz)):
        vn, vp = _next(v, dim), _prev(v, dim)
        lap += (vp + vn - 2.0 * v) / (s * s)
        grads.append((vn - vp) / (2.0 * s))

    # (v . grad) v: component k is vx * dvk/dx + vy * dvk/dy + vz * dvk/dz
    convective = v[..., 0:1] * grads[0] + v[..., 1:2] * grads[1] + v[..., 2:3] * grads[2]

    residual = (dvdt + convective) * density - lap * viscosity
    return residual * mask.to(residual.dtype)[:, :, :, None, None]


def relax_pressure(residual: torch.Tensor,
                   mask: torch.Tensor,
                   scale: Sequence[float],
                   max_iterations: int,
                   progress_fn: Optional[Callable[[int], None]] = None) -> torch.Tensor:
    """
    Damped Jacobi relaxation of the pressure Poisson equation.

    Every iteration reads the previous pressure only:
        new = (1 - w) * old + w / 6 * (sum of the 6 spatial neighbours of old
              + sx * (Rx[x+1] - Rx[x-1]) + sy * (Ry[y+1] - Ry[y-1]) + sz * (Rz[z+1] - Rz[z-1]))
    with w = 0.5. Only masked voxels are updated; all others stay zero. There is
    no convergence check, the loop always runs `max_iterations` times.

    Args:
        residual (torch.Tensor): (X, Y, Z, T, 3) from `momentum_residual`.
        mask (torch.Tensor): (X, Y, Z) boolean vessel mask.
        scale (sequence of float): Voxel size (sx, sy, sz, ...).
        max_iterations (int): Number of sweeps.
        progress_fn (callable, optional): Called with the iteration count after
            every sweep.

    Returns:
        torch.Tensor: (X, Y, Z, T) pressure.
    """
    sx, sy, sz = (float(s) for s in scale[:3])
    source = (sx * (_next(residual[..., 0], 0) - _prev(residual[..., 0], 0))
              + sy * (_next(residual[..., 1], 1) - _prev(residual[..., 1], 1))
              + sz * (_next(residual[..., 2], 2) - _prev(residual[..., 2], 2)))

    update = mask[:, :, :, None].expand_as(source)
    pressure = torch.zeros_like(source)
    w = RELAXATION_WEIGHT
    for it in range(int(max_iterations)):
        neighbours = source.clone()
        for dim in range(3):
            neighbours += _next(pressure, dim) + _prev(pressure, dim)
        pressure = torch.where(update, (1.0 - w) * pressure + (w / 6.0) * neighbours, pressure)
        if progress_fn is not None:
            progress_fn(it + 1)
    return pressure


def binomial_smooth_masked(pressure: torch.Tensor, mask: torch.Tensor) -> torch.Tensor:
    """
    One 3x3x3 binomial smoothing pass (corner 1/64, edge 2/64, face 4/64, centre
    8/64) in the spatial dimensions.

    Only masked voxels at least one voxel away from the grid border are replaced;
    every other voxel keeps its input value.

    Args:
        pressure (torch.Tensor): (X, Y, Z, T) pressure.
        mask (torch.Tensor): (X, Y, Z) boolean vessel mask.

    Returns:
        torch.Tensor: Smoothed copy of `pressure`.
    """
    smoothed = pressure
    # the 3D kernel is the outer product of [1, 2, 1] / 4 along each axis
    for dim in range(3):
        smoothed = 0.25 * (_prev(smoothed, dim) + 2.0 * smoothed + _next(smoothed, dim))

    interior = torch.zeros_like(mask, dtype=torch.bool)
    interior[1:-1, 1:-1, 1:-1] = True
    selected = (mask & interior)[:, :, :, None].expand_as(pressure)
    return torch.where(selected, smoothed, pressure)


def clamp_and_reference(pressure: torch.Tensor,
                        mask: torch.Tensor,
                        low: float = 0.01,
                        high: float = 0.99) -> Tuple[float, float, float]:
    """
    Clamps the masked pressure values (all time points) to their [low, high]
    quantiles and subtracts their mean, in place.

    Args:
        pressure (torch.Tensor): (X, Y, Z, T) pressure, modified in place.
        mask (torch.Tensor): (X, Y, Z) boolean vessel mask with at least one voxel.
        low (float): Lower quantile.
        high (float): Upper quantile.

    Returns:
        tuple[float, float, float]: (qlow, qhigh, mean), the bounds taken from the
        unclamped values and the mean of the clamped values.
    """
    values = pressure[mask]  # (M, T)
    if values.numel() == 0:
        raise ValueError("mask selects no voxels.")
    sample = values.detach().cpu().numpy()
    qlow = quantile(sample, low)
    qhigh = quantile(sample, high)

    clamped = values.clamp(min=qlow, max=qhigh)
    mean = float(clamped.mean().item())
    pressure[mask] = clamped - mean
    return qlow, qhigh, mean


class PressureMapFilter:
    """
    Computes a relative pressure map inside a set of vessels.

    Example:
        >>> pressure_filter = PressureMapFilter(max_iterations=500)
        >>> pressure = pressure_filter.apply(field, [Vessel("aorta", segmentation, seg_geometry)])
    """

    def __init__(self,
                 density: float = 1060.0,
                 viscosity: float = 0.0035,
                 max_iterations: int = 1000,
                 convert_to_mmhg: bool = True,
                 device="cpu",
                 progress_fn: Optional[ProgressFn] = None):
        """
        Args:
            density (float): Blood density in kg/m^3.
            viscosity (float): Dynamic viscosity in Pa*s.
            max_iterations (int): Number of relaxation sweeps per vessel.
            convert_to_mmhg (bool): Scale the result from Pa to mmHg.
            device: PyTorch device. Defaults to 'cpu'.
            progress_fn (callable, optional): Observer called as
                `fn(step, total, description)`.
        """
        self.density = density
        self.viscosity = viscosity
        self.max_iterations = max_iterations
        self.convert_to_mmhg = bool(convert_to_mmhg)
        self.device = device
        self.progress_fn = progress_fn
        self.last_report = None

    @property
    def density(self) -> float:
        return self._density

    @density.setter
    def density(self, value: float):
        if value <= 0:
            raise ValueError(f"density must be positive, got {value}")
        self._density = float(value)

    @property
    def viscosity(self) -> float:
        return self._viscosity

    @viscosity.setter
    def viscosity(self, value: float):
        if value < 0:
            raise ValueError(f"viscosity must be non-negative, got {value}")
        self._viscosity = float(value)

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int):
        if int(value) != value or value < 0:
            raise ValueError(f"max_iterations must be a non-negative integer, got {value}")
        self._max_iterations = int(value)

    def apply(self, field: VelocityField, vessels: Sequence, mask_provider=None) -> Optional[ScalarField]:
        """
        Computes the relative pressure of every vessel.

        Vessels are processed one after another in the given order. Each writes
        its mask and the one-voxel rim around it into the shared output, so a
        later vessel overwrites an earlier one where they overlap. Rim voxels
        outside the mask receive zero.

        Args:
            field (VelocityField): Velocity field in m/s.
            vessels (sequence): Vessels (or ready-made (X, Y, Z) masks).
            mask_provider (callable, optional): `fn(vessel, geometry) -> mask` on
                the field's spatial grid. Defaults to `vessel_mask_in_field_size`.

        Returns:
            ScalarField or None: (X, Y, Z, T) pressure map, zero outside the
            dilated vessels, or None if `vessels` is empty. The outcome is also
            stored in `last_report`.
        """
        if not isinstance(field, VelocityField):
            raise TypeError(f"field must be a VelocityField, got {type(field).__name__}")
        vessels = list(vessels)
        if not vessels:
            logger.warning("No vessels given; no pressure map computed.")
            self.last_report = FilterReport.failure(FilterStatus.EMPTY_INPUT, "no vessels")
            return None
        if mask_provider is None:
            mask_provider = vessel_mask_in_field_size

        scale = field.geometry.scale
        unit = PA_TO_MMHG if self.convert_to_mmhg else 1.0
        out = np.zeros(field.size, dtype=np.float64)
        velocity = to_tensor(field.values, self.device)

        stages = self._max_iterations + 3
        total = len(vessels) * stages
        report = FilterReport()
        with Stopwatch() as sw:
            for i, vessel in enumerate(vessels):
                base = i * stages
                mask_np = np.asarray(mask_provider(vessel, field.geometry), dtype=bool)
                if not mask_np.any():
                    logger.warning("Vessel %d has an empty mask in the field grid; skipped.", i)
                    report.details.setdefault("skipped_vessels", []).append(i)
                    report_progress(self.progress_fn, base + stages, total, "Calculating relative pressure")
                    continue
                mask = torch.from_numpy(mask_np).to(velocity.device)

                residual = momentum_residual(velocity, mask, scale, self._density, self._viscosity)
                report_progress(self.progress_fn, base + 1, total, "Calculating relative pressure")

                pressure = relax_pressure(
                    residual, mask, scale, self._max_iterations,
                    lambda it: report_progress(self.progress_fn, base + 1 + it, total, "Calculating relative pressure"))

                pressure = binomial_smooth_masked(pressure, mask)
                report_progress(self.progress_fn, base + stages - 1, total, "Calculating relative pressure")

                qlow, qhigh, mean = clamp_and_reference(pressure, mask)
                logger.debug("Vessel %d: %d voxels, quantiles [%.4g, %.4g], mean %.4g",
                             i, int(mask_np.sum()), qlow, qhigh, mean)

                rim = dilate_mask(mask_np)
                out[rim] = pressure.cpu().numpy()[rim] * unit
                report_progress(self.progress_fn, base + stages, total, "Calculating relative pressure")

        report.duration = sw.elapsed
        report.details["vessels"] = len(vessels)
        self.last_report = report
        logger.info("Relative pressure of %d vessels computed in %.3fs", len(vessels), report.duration)
        return ScalarField(out, field.geometry.copy())
