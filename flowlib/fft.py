# flowlib/fft.py
"""N-dimensional FFT helpers for power-of-two padded grids, built on torch.fft."""

import collections
import numpy as np
import torch
from typing import Sequence, Tuple

PaddingInfo = collections.namedtuple("PaddingInfo", ["original_shape", "padded_shape", "offsets", "odd"])


def next_power_of_two(n: int) -> int:
    """Smallest power of two >= n (1 for n <= 1)."""
    p = 1
    while p < n:
        p <<= 1
    return p


def padding_for(shape: Sequence[int]) -> PaddingInfo:
    """
    Computes the power-of-two padded shape of a grid and where the original
    grid sits inside it. The original data is centred, i.e. offset by
    (padded - original) // 2 along every axis.
    """
    shape = tuple(int(s) for s in shape)
    padded = tuple(next_power_of_two(s) for s in shape)
    offsets = tuple((p - s) // 2 for p, s in zip(padded, shape))
    odd = tuple(s % 2 == 1 for s in shape)
    return PaddingInfo(shape, padded, offsets, odd)


def region(info: PaddingInfo) -> Tuple[slice, ...]:
    """Slices selecting the original grid inside the padded buffer."""
    return tuple(slice(o, o + s) for o, s in zip(info.offsets, info.original_shape))


def pad_to_power_of_two(data: torch.Tensor, info: PaddingInfo) -> torch.Tensor:
    """Zero-pads `data` into a complex buffer of shape `info.padded_shape`."""
    if tuple(data.shape) != info.original_shape:
        raise ValueError(f"data shape {tuple(data.shape)} does not match {info.original_shape}")
    buf = torch.zeros(info.padded_shape, dtype=torch.complex128, device=data.device)
    buf[region(info)] = data.to(torch.complex128)
    return buf


def fftn(buf: torch.Tensor, normalize: bool = False) -> torch.Tensor:
    """Forward FFT over all dimensions. With `normalize`, scales by 1/N."""
    return torch.fft.fftn(buf, norm="forward" if normalize else "backward")


def ifftn(buf: torch.Tensor, normalize: bool = True) -> torch.Tensor:
    """Inverse FFT over all dimensions. With `normalize` (default), scales by 1/N."""
    return torch.fft.ifftn(buf, norm="backward" if normalize else "forward")


def fftshift(buf: torch.Tensor) -> torch.Tensor:
    """Moves the zero-index sample to the centre of every dimension."""
    return torch.fft.fftshift(buf)


def ifft_shifted(buf: torch.Tensor) -> torch.Tensor:
    """Inverse transform followed by a shift back to spatial centring."""
    return fftshift(ifftn(buf))


def to_tensor(array: np.ndarray, device="cpu") -> torch.Tensor:
    return torch.from_numpy(np.ascontiguousarray(array, dtype=np.float64)).to(device)
