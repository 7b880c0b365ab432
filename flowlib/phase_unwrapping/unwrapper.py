# flowlib/phase_unwrapping/unwrapper.py
"""Phase-wrap detection and correction filters for 4D flow (3D+T) and 2D+T flow images."""

import concurrent.futures
import logging
import numpy as np
from typing import List, Optional, Sequence

from ..data import ScalarField, VelocityField
from ..fft import padding_for
from ..io import WRAP_RECORD_DTYPE, read_wrap_records, write_wrap_records
from ..results import FilterReport, FilterStatus, Stopwatch
from ..utils import ProgressFn, as_venc, report_progress
from .laplacian_unwrap import detect_phase_wraps, laplace_kernel_fft

logger = logging.getLogger(__name__)


def empty_wrap_record() -> np.ndarray:
    return np.empty(0, dtype=WRAP_RECORD_DTYPE)


class _PhaseUnwrapperBase:
    """
    Shared state and bookkeeping of the phase unwrappers.

    The wrap record holds, per velocity component, the voxels found to be wrapped
    as (linear voxel index, signed wrap count) pairs. It is built by `detect()` or
    restored by `load()`, and consumed by `apply()` any number of times.
    """
    num_components = 1

    def __init__(self, device="cpu", max_workers: int = 2, progress_fn: Optional[ProgressFn] = None):
        """
        Args:
            device: PyTorch device used for the transforms. Defaults to 'cpu'.
            max_workers (int): Threads used to overlap independent transforms.
            progress_fn (callable, optional): Observer called as
                `fn(step, total, description)`.
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.device = device
        self.max_workers = int(max_workers)
        self.progress_fn = progress_fn
        self._records: List[np.ndarray] = [empty_wrap_record() for _ in range(self.num_components)]
        self._is_initialized = False

    # ------------------------------------------------------------------ field access
    def _check_field(self, field):
        raise NotImplementedError

    def _component_values(self, field) -> np.ndarray:
        """(N, num_components) view of the field values, addressed by linear voxel index."""
        raise NotImplementedError

    def _component_grid(self, field, component: int) -> np.ndarray:
        raise NotImplementedError

    # ------------------------------------------------------------------ state
    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    @property
    def wrap_records(self) -> List[np.ndarray]:
        """Copies of the per-component wrap records (fields 'lid' and 'nr')."""
        return [rec.copy() for rec in self._records]

    def set_wrap_records(self, records: Sequence[np.ndarray]):
        """Installs externally built wrap records and marks the filter initialized."""
        if len(records) != self.num_components:
            raise ValueError(f"Expected {self.num_components} wrap records, got {len(records)}")
        self._records = [np.asarray(rec, dtype=WRAP_RECORD_DTYPE).copy() for rec in records]
        self._is_initialized = True

    def is_wrapped(self) -> bool:
        return self.num_wrapped_voxels() != 0

    def num_wrapped_voxels(self, component: Optional[int] = None) -> int:
        if component is None:
            return sum(rec.size for rec in self._records)
        if not 0 <= component < self.num_components:
            raise ValueError(f"component must be in [0, {self.num_components}), got {component}")
        return int(self._records[component].size)

    def clear(self):
        self._records = [empty_wrap_record() for _ in range(self.num_components)]
        self._is_initialized = False

    # ------------------------------------------------------------------ filter
    def detect(self, field, venc) -> FilterReport:
        """
        Detects phase wraps in `field` and stores them in the wrap record.

        Each component is scaled to radians (value / venc * pi) and analysed
        independently by `detect_phase_wraps`. The frequency-domain stencil is
        transformed once, concurrently with the first component's transforms,
        and reused for all components.

        Args:
            field: Flow field that has not been unwrapped yet.
            venc: Velocity encoding in m/s, scalar or one value per component.

        Returns:
            FilterReport: OK with the elapsed time. `details` holds the number of
            wrapped voxels per component and the number of skipped frequency bins.
        """
        self._check_field(field)
        venc = as_venc(venc, self.num_components)
        self.clear()

        report = FilterReport()
        total_steps = self.num_components + 1
        report_progress(self.progress_fn, 0, total_steps, "Analyzing phase wraps")

        records = []
        skipped_per_component = []
        with Stopwatch() as sw:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                info = padding_for(self._component_grid(field, 0).shape)
                kernel_future = pool.submit(laplace_kernel_fft, info.padded_shape, self.device)

                for v in range(self.num_components):
                    phase = self._component_grid(field, v) * (np.pi / venc[v])
                    lids, nr, skipped = detect_phase_wraps(phase, kernel_future, pool, self.device)

                    rec = np.empty(lids.size, dtype=WRAP_RECORD_DTYPE)
                    rec["lid"] = lids
                    rec["nr"] = nr
                    records.append(rec)
                    skipped_per_component.append(skipped)
                    report_progress(self.progress_fn, v + 1, total_steps, "Analyzing phase wraps")

        self._records = records
        self._is_initialized = True

        report.duration = sw.elapsed
        report.details["wrapped_voxels"] = [rec.size for rec in records]
        report.details["skipped_frequency_bins"] = skipped_per_component
        for v, skipped in enumerate(skipped_per_component):
            # the DC bin is always zero for a zero-sum stencil
            if skipped > 1:
                logger.warning("Component %d: %d non-DC frequency bins left undivided.", v, skipped - 1)
                report.add_fallback(FilterStatus.DEGENERATE_FREQUENCY, {"component": v, "bins": skipped - 1})

        report_progress(self.progress_fn, total_steps, total_steps, "Analyzing phase wraps")
        logger.info("Phase wrap detection found %d wrapped voxels %s in %.3fs",
                    self.num_wrapped_voxels(), report.details["wrapped_voxels"], report.duration)
        return report

    def apply(self, field, venc) -> FilterReport:
        """
        Corrects `field` in place: every recorded (lid, k) adds k * 2 * venc to the
        component. Voxels without a record are left untouched.

        Returns:
            FilterReport: OK, or NOT_INITIALIZED (field untouched) if neither
            `detect()` nor `load()` succeeded before.
        """
        if not self._is_initialized:
            logger.warning("apply() called before detect() or load(); field left unchanged.")
            return FilterReport.failure(FilterStatus.NOT_INITIALIZED, "detect() or load() first")

        self._check_field(field)
        venc = as_venc(venc, self.num_components)
        values = self._component_values(field)

        with Stopwatch() as sw:
            for v, rec in enumerate(self._records):
                if rec.size == 0:
                    continue
                lids = rec["lid"].astype(np.int64)
                if lids.max() >= values.shape[0]:
                    raise ValueError(f"Wrap record index {lids.max()} exceeds field size {values.shape[0]}; "
                                     "the record belongs to a different grid.")
                # add.at accumulates repeated indices like a sequential loop would
                np.add.at(values[:, v], lids, rec["nr"].astype(np.float64) * 2.0 * venc[v])

        return FilterReport(duration=sw.elapsed, details={"corrected_voxels": self.num_wrapped_voxels()})

    # ------------------------------------------------------------------ I/O
    def save(self, filepath: str) -> FilterReport:
        """Writes the wrap record (per component: uint32 count, then (uint32 lid, int8 nr) pairs)."""
        if not self._is_initialized:
            return FilterReport.failure(FilterStatus.NOT_INITIALIZED, "nothing to save")
        try:
            write_wrap_records(filepath, self._records)
        except OSError as e:
            logger.error("Could not write wrap record to %s: %s", filepath, e)
            return FilterReport.failure(FilterStatus.IO_ERROR, str(e))
        return FilterReport()

    def load(self, filepath: str) -> FilterReport:
        """
        Restores a wrap record written by `save()`. The in-memory record is only
        replaced once the whole file was read; on failure the filter is cleared.
        """
        self.clear()
        try:
            records = read_wrap_records(filepath, self.num_components)
        except (OSError, EOFError) as e:
            logger.error("Could not read wrap record from %s: %s", filepath, e)
            return FilterReport.failure(FilterStatus.IO_ERROR, str(e))

        self._records = records
        self._is_initialized = True
        return FilterReport(details={"wrapped_voxels": [rec.size for rec in records]})


class PhaseUnwrapper3DT(_PhaseUnwrapperBase):
    """
    Phase unwrapping for 4D flow velocity fields (x, y, z, t, 3 components).

    Example:
        >>> unwrapper = PhaseUnwrapper3DT()
        >>> unwrapper.detect(field, venc=(1.5, 1.5, 1.5))
        >>> if unwrapper.is_wrapped():
        ...     unwrapper.apply(field, venc=(1.5, 1.5, 1.5))
    """
    num_components = 3

    def _check_field(self, field):
        if not isinstance(field, VelocityField):
            raise TypeError(f"field must be a VelocityField, got {type(field).__name__}")
        if not field.values.flags.c_contiguous:
            raise ValueError("field values must be C-contiguous.")

    def _component_values(self, field) -> np.ndarray:
        return field.flat

    def _component_grid(self, field, component: int) -> np.ndarray:
        return field.values[..., component]


class PhaseUnwrapper2DT(_PhaseUnwrapperBase):
    """
    Phase unwrapping for 2D+T through-plane flow images (x, y, t), one velocity
    component. Uses the 3-D (26-centre) stencil.
    """
    num_components = 1

    def _check_field(self, field):
        if not isinstance(field, ScalarField) or field.values.ndim != 3:
            raise TypeError("field must be a 3D (x, y, t) ScalarField.")
        if not field.values.flags.c_contiguous:
            raise ValueError("field values must be C-contiguous.")

    def _component_values(self, field) -> np.ndarray:
        return field.values.reshape(-1, 1)

    def _component_grid(self, field, component: int) -> np.ndarray:
        return field.values
