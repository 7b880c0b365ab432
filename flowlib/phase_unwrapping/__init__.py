# flowlib/phase_unwrapping/__init__.py
"""
Phase unwrapping for phase-contrast flow images.

- `detect_phase_wraps`: Detects integer 2*pi wraps in an N-D wrapped phase array by
                        comparing the Laplacian of the measured phase with the
                        Laplacian of the true phase estimated from sin/cos transforms.
- `PhaseUnwrapper3DT`: Stateful filter for 4D flow fields (detect / apply / save / load).
- `PhaseUnwrapper2DT`: The same for single-component 2D+T through-plane flow images.
"""

from .laplacian_unwrap import detect_phase_wraps, laplace_kernel_fft
from .unwrapper import PhaseUnwrapper2DT, PhaseUnwrapper3DT, empty_wrap_record


__all__ = [
    "detect_phase_wraps",
    "laplace_kernel_fft",
    "PhaseUnwrapper3DT",
    "PhaseUnwrapper2DT",
    "empty_wrap_record",
]
