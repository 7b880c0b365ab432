# flowlib/phase_unwrapping/laplacian_unwrap.py
"""N-D Laplacian phase-wrap detection using FFT-based convolution in PyTorch."""

import concurrent.futures
import itertools
import logging
import numpy as np
import torch
from typing import Optional, Tuple

from ..fft import fftn, ifft_shifted, pad_to_power_of_two, padding_for, region, to_tensor

logger = logging.getLogger(__name__)

# frequency bins whose squared kernel response is below this are not divided
DEGENERATE_BIN_EPSILON = 1e-13


def laplace_kernel_fft(padded_shape: Tuple[int, ...], device="cpu") -> torch.Tensor:
    """
    Builds the discrete N-D Laplace stencil centred in a buffer of `padded_shape`
    and transforms it to the frequency domain.

    Every voxel in the +-1 window around the centre gets -1 and the centre gets
    3^N - 1 (80 for 4D, 26 for 3D). Window positions are placed periodically and
    accumulated, so an axis of length 2 receives -2 on its single off-centre cell
    and the stencil stays zero-sum.

    Args:
        padded_shape (tuple): Power-of-two buffer shape.
        device: PyTorch device.

    Returns:
        torch.Tensor: Real part of the stencil's FFT (float64), shape `padded_shape`.
    """
    ndim = len(padded_shape)
    centre = tuple(n // 2 for n in padded_shape)
    kernel = torch.zeros(padded_shape, dtype=torch.float64, device=device)

    for offset in itertools.product((-1, 0, 1), repeat=ndim):
        idx = tuple((c + o) % n for c, o, n in zip(centre, offset, padded_shape))
        kernel[idx] += -1.0 if any(offset) else float(3 ** ndim - 1)

    # centred on n // 2 with even n, so the spectrum is real up to rounding
    return fftn(kernel.to(torch.complex128)).real.contiguous()


def _laplace(buf_fft: torch.Tensor, kernel_fft: torch.Tensor) -> torch.Tensor:
    """Applies the stencil to a transformed buffer and returns the spatial result."""
    return ifft_shifted(buf_fft * kernel_fft)


def detect_phase_wraps(phase: np.ndarray,
                       kernel_fft=None,
                       executor: Optional[concurrent.futures.Executor] = None,
                       device="cpu") -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Detects 2*pi phase wraps in an N-D wrapped phase array without branch cuts.

    With L the discrete Laplacian, the Laplacian of the true phase is estimated
    from the wrapped phase psi as cos(psi) * L(sin(psi)) - sin(psi) * L(cos(psi)).
    Subtracting L(psi) leaves L(2*pi*k), where k is the integer wrap count per
    voxel. k is recovered by dividing by the kernel spectrum and rounding.

    The array is zero-padded (centred) to the next power of two per axis; only
    voxels of the original grid are reported. Independent transforms (kernel,
    sin/cos forward and inverse) are submitted to `executor` and joined before
    the dependent step runs.

    Args:
        phase (np.ndarray): Real wrapped phase in radians, nominally in [-pi, pi].
        kernel_fft (torch.Tensor or Future, optional): Output of
            `laplace_kernel_fft` for the padded shape, or a future resolving to
            it. Computed if None.
        executor (concurrent.futures.Executor, optional): Pool used to overlap
            independent transforms. A two-worker pool is created if None.
        device: PyTorch device.

    Returns:
        tuple[np.ndarray, np.ndarray, int]:
            - lids (np.ndarray, uint32): Linear (C-order) indices of wrapped voxels
              in the original grid, in ascending order.
            - counts (np.ndarray, int8): Signed wrap count for each index.
            - skipped_bins (int): Number of frequency bins left undivided because
              the kernel response was (near) zero. Includes the DC bin.
    """
    phase = np.asarray(phase, dtype=np.float64)
    if phase.ndim < 1 or phase.ndim > 4:
        raise ValueError(f"phase must have 1 to 4 dimensions, got {phase.ndim}")

    if executor is None:
        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as pool:
            return detect_phase_wraps(phase, kernel_fft, pool, device)

    info = padding_for(phase.shape)
    inner = region(info)

    kernel_future = None
    if kernel_fft is None:
        kernel_future = executor.submit(laplace_kernel_fft, info.padded_shape, device)
    elif isinstance(kernel_fft, concurrent.futures.Future):
        kernel_future = kernel_fft
    elif tuple(kernel_fft.shape) != info.padded_shape:
        raise ValueError(f"kernel_fft shape {tuple(kernel_fft.shape)} does not match padded shape {info.padded_shape}")

    phi = to_tensor(phase, device)
    sin_phi = torch.sin(phi)
    cos_phi = torch.cos(phi)

    # 1. sin/cos of the wrapped phase to frequency domain
    sin_future = executor.submit(fftn, pad_to_power_of_two(sin_phi, info))
    cos_future = executor.submit(fftn, pad_to_power_of_two(cos_phi, info))

    if kernel_future is not None:
        kernel_fft = kernel_future.result()
    sin_fft = sin_future.result()
    cos_fft = cos_future.result()

    # 2. L(sin), L(cos) back in the spatial domain
    lap_sin_future = executor.submit(_laplace, sin_fft, kernel_fft)
    lap_cos_future = executor.submit(_laplace, cos_fft, kernel_fft)
    lap_sin = lap_sin_future.result().real[inner]
    lap_cos = lap_cos_future.result().real[inner]

    # 3. Laplacian of the true phase, estimated from the wrapped one
    estimated = cos_phi * lap_sin - sin_phi * lap_cos

    # 4. Laplacian of the measured (wrapped) phase
    measured = _laplace(fftn(pad_to_power_of_two(phi, info)), kernel_fft).real[inner]

    residual = torch.zeros(info.padded_shape, dtype=torch.complex128, device=phi.device)
    residual[inner] = (estimated - measured).to(torch.complex128)

    # 5. inverse Laplacian, skipping bins where the kernel vanishes
    residual_fft = fftn(residual)
    valid = kernel_fft * kernel_fft >= DEGENERATE_BIN_EPSILON
    safe_kernel = torch.where(valid, kernel_fft, torch.ones_like(kernel_fft))
    residual_fft = torch.where(valid, residual_fft / safe_kernel, torch.zeros_like(residual_fft))
    skipped_bins = int((~valid).sum().item())

    wraps = ifft_shifted(residual_fft).real[inner]

    # 6. integer wrap count per voxel
    counts = torch.round(wraps / (2.0 * np.pi)).reshape(-1).cpu().numpy()
    lids = np.flatnonzero(counts)
    nr = np.clip(counts[lids], np.iinfo(np.int8).min, np.iinfo(np.int8).max).astype(np.int8)

    logger.debug("Detected %d wrapped voxels in grid %s (padded %s, %d skipped bins)",
                 lids.size, info.original_shape, info.padded_shape, skipped_bins)
    return lids.astype(np.uint32), nr, skipped_bins
