# flowlib/offset_correction.py
"""
Background phase offset correction for 4D flow velocity fields.

Eddy currents add a slowly varying bias to the measured velocities. Inside static
tissue the true velocity is zero, so the bias can be estimated there: for every
slice and velocity component a plane v(x, y) = a*x + b*y + c is fitted to the
static voxels at the end-diastolic time point and subtracted from the whole slice
at every time point.

Static voxels are selected with an IVSD image (inter-velocity standard deviation):
the norm of the temporal standard deviations of the three components. Stationary
tissue has a low IVSD, flowing blood a high one.
"""

import concurrent.futures
import itertools
import logging
import numpy as np
import scipy.linalg
from typing import Optional, Tuple, Union

from .data import FieldGeometry, ScalarField, VelocityField
from .io import OFFSET_FILE_SUFFIX, read_offset_coefficients, resolve_offset_path, write_offset_coefficients
from .results import FilterReport, FilterStatus, Stopwatch
from .utils import ProgressFn, report_progress

logger = logging.getLogger(__name__)

# relative tolerance on the diagonal of R below which the plane fit is rank deficient
SINGULAR_TOLERANCE = 1e-12


def static_tissue_image(field: VelocityField) -> ScalarField:
    """
    Computes the IVSD image of a velocity field.

    Args:
        field (VelocityField): Field of shape (X, Y, Z, T, 3).

    Returns:
        ScalarField: (X, Y, Z) image, sqrt(std_t(vx)^2 + std_t(vy)^2 + std_t(vz)^2)
        using the population standard deviation over time.
    """
    if not isinstance(field, VelocityField):
        raise TypeError(f"field must be a VelocityField, got {type(field).__name__}")
    std = field.values.std(axis=3)  # (X, Y, Z, 3)
    ivsd = np.sqrt(np.sum(std * std, axis=-1))
    geometry = field.geometry
    return ScalarField(ivsd, FieldGeometry(geometry.spatial_size, geometry.scale[:3], geometry.world_matrix.copy()))


def _normal_equations(values: np.ndarray, static: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Least-squares normal equations of the plane a*x + b*y + c over the static voxels
    of one slice.

    Args:
        values (np.ndarray): (X, Y) velocity component at the reference time point.
        static (np.ndarray): (X, Y) boolean selection.

    Returns:
        tuple[np.ndarray, np.ndarray]: 3x3 matrix A and right-hand side b.
    """
    x, y = np.nonzero(static)
    x = x.astype(np.float64)
    y = y.astype(np.float64)
    v = values[static]

    sx, sy, sn = x.sum(), y.sum(), float(x.size)
    sxx, syy, sxy = (x * x).sum(), (y * y).sum(), (x * y).sum()
    A = np.array([[sxx, sxy, sx],
                  [sxy, syy, sy],
                  [sx, sy, sn]])
    b = np.array([(x * v).sum(), (y * v).sum(), v.sum()])
    return A, b


def fit_plane(A: np.ndarray, b: np.ndarray) -> Optional[np.ndarray]:
    """
    Solves A @ (a, b, c) = b with a QR decomposition.

    Returns:
        np.ndarray or None: The coefficients, or None if A is rank deficient.
    """
    Q, R = scipy.linalg.qr(A)
    diag = np.abs(np.diag(R))
    if diag.max() == 0.0 or diag.min() <= SINGULAR_TOLERANCE * diag.max():
        return None
    coeffs = scipy.linalg.solve_triangular(R, Q.T @ b)
    if not np.all(np.isfinite(coeffs)):
        return None
    return coeffs


class VelocityOffsetCorrector3DT:
    """
    Slice-wise planar background offset correction.

    Example:
        >>> corrector = VelocityOffsetCorrector3DT(static_tissue_threshold=0.05)
        >>> corrector.detect(field, static_tissue_image(field))
        >>> corrector.apply(field)
        >>> corrector.save("veloff.voc")
    """

    def __init__(self,
                 static_tissue_threshold: float = 0.0,
                 end_diastolic_time_point: int = 0,
                 max_workers: Optional[int] = None,
                 progress_fn: Optional[ProgressFn] = None):
        """
        Args:
            static_tissue_threshold (float): Voxels whose static-tissue value is
                <= this threshold are used for the fit.
            end_diastolic_time_point (int): Time index whose velocities are fitted.
            max_workers (int, optional): Threads for the slice x component fits.
                None lets the executor decide.
            progress_fn (callable, optional): Observer called as
                `fn(step, total, description)`.
        """
        self.static_tissue_threshold = static_tissue_threshold
        self.end_diastolic_time_point = end_diastolic_time_point
        if max_workers is not None and max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.max_workers = max_workers
        self.progress_fn = progress_fn
        self._planes = np.zeros((3, 0, 3))
        self._is_initialized = False

    @property
    def static_tissue_threshold(self) -> float:
        return self._static_tissue_threshold

    @static_tissue_threshold.setter
    def static_tissue_threshold(self, value: float):
        value = float(value)
        if not np.isfinite(value):
            raise ValueError(f"static_tissue_threshold must be finite, got {value}")
        self._static_tissue_threshold = value

    @property
    def end_diastolic_time_point(self) -> int:
        return self._end_diastolic_time_point

    @end_diastolic_time_point.setter
    def end_diastolic_time_point(self, value: int):
        if int(value) != value or value < 0:
            raise ValueError(f"end_diastolic_time_point must be a non-negative integer, got {value}")
        self._end_diastolic_time_point = int(value)

    @property
    def is_initialized(self) -> bool:
        return self._is_initialized

    @property
    def plane_coefficients(self) -> np.ndarray:
        """Copy of the (component, slice, (a, b, c)) coefficient array."""
        return self._planes.copy()

    def set_plane_coefficients(self, planes: np.ndarray):
        """Installs externally determined planes of shape (3, Z, 3) and marks the filter initialized."""
        planes = np.array(planes, dtype=np.float64)
        if planes.ndim != 3 or planes.shape[0] != 3 or planes.shape[2] != 3:
            raise ValueError(f"planes must have shape (3, Z, 3), got {planes.shape}")
        self._planes = planes
        self._is_initialized = True

    def clear(self):
        self._planes = np.zeros((3, 0, 3))
        self._is_initialized = False

    def detect(self, field: VelocityField, static_tissue: Union[ScalarField, np.ndarray]) -> FilterReport:
        """
        Fits one offset plane per (slice, component).

        Args:
            field (VelocityField): Field to analyse (not modified).
            static_tissue (ScalarField or np.ndarray): (X, Y, Z) static-tissue
                indicator, e.g. from `static_tissue_image`.

        Returns:
            FilterReport: OK with the elapsed time. Every fit that was rank
            deficient (e.g. fewer than three non-collinear static voxels) is
            replaced by the zero plane and listed as a SINGULAR_SYSTEM fallback.
        """
        if not isinstance(field, VelocityField):
            raise TypeError(f"field must be a VelocityField, got {type(field).__name__}")
        ivsd = static_tissue.values if isinstance(static_tissue, ScalarField) else np.asarray(static_tissue)
        if ivsd.shape != tuple(field.size[:3]):
            raise ValueError(f"static tissue image shape {ivsd.shape} does not match field size {field.size[:3]}")
        t_ref = self._end_diastolic_time_point
        if t_ref >= field.size[3]:
            raise ValueError(f"end_diastolic_time_point {t_ref} out of range for {field.size[3]} time points")

        static = ivsd <= self._static_tissue_threshold
        reference = field.values[:, :, :, t_ref, :]
        num_slices = field.size[2]
        planes = np.zeros((3, num_slices, 3))
        singular = []

        def fit(task):
            z, v = task
            A, b = _normal_equations(reference[:, :, z, v], static[:, :, z])
            coeffs = fit_plane(A, b)
            if coeffs is None:
                singular.append((z, v))
            else:
                planes[v, z] = coeffs
            return task

        tasks = list(itertools.product(range(num_slices), range(3)))
        report = FilterReport()
        with Stopwatch() as sw:
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                for step, _ in enumerate(pool.map(fit, tasks), start=1):
                    report_progress(self.progress_fn, step, len(tasks), "Fitting velocity offset planes")

        self._planes = planes
        self._is_initialized = True

        report.duration = sw.elapsed
        report.details["static_voxels"] = int(static.sum())
        for z, v in sorted(singular):
            logger.warning("Offset plane fit for slice %d, component %d is singular; using zero plane.", z, v)
            report.add_fallback(FilterStatus.SINGULAR_SYSTEM, {"slice": z, "component": v})
        logger.info("Fitted %d offset planes (%d singular) from %d static voxels in %.3fs",
                    len(tasks), len(singular), report.details["static_voxels"], report.duration)
        return report

    def apply(self, field: VelocityField) -> FilterReport:
        """
        Subtracts the fitted planes from `field` in place, at every time point.

        Returns:
            FilterReport: OK, or NOT_INITIALIZED (field untouched) without a prior
            successful `detect()` or `load()`.
        """
        if not self._is_initialized:
            logger.warning("apply() called before detect() or load(); field left unchanged.")
            return FilterReport.failure(FilterStatus.NOT_INITIALIZED, "detect() or load() first")
        if not isinstance(field, VelocityField):
            raise TypeError(f"field must be a VelocityField, got {type(field).__name__}")
        if self._planes.shape[1] != field.size[2]:
            raise ValueError(f"Offset planes cover {self._planes.shape[1]} slices, field has {field.size[2]}")

        X, Y = field.size[:2]
        x = np.arange(X, dtype=np.float64)[:, None, None]
        y = np.arange(Y, dtype=np.float64)[None, :, None]
        with Stopwatch() as sw:
            for v in range(3):
                a, b, c = (self._planes[v, :, i][None, None, :] for i in range(3))
                offset = a * x + b * y + c  # (X, Y, Z)
                field.values[..., v] -= offset[:, :, :, None]
        return FilterReport(duration=sw.elapsed)

    def save(self, filepath: str = "") -> FilterReport:
        """
        Writes the planes; OFFSET_FILE_SUFFIX is appended when missing and an empty
        path maps to the default file name.
        """
        if not self._is_initialized:
            return FilterReport.failure(FilterStatus.NOT_INITIALIZED, "nothing to save")
        filepath = resolve_offset_path(filepath)
        try:
            write_offset_coefficients(filepath, self._end_diastolic_time_point,
                                      self._static_tissue_threshold, list(self._planes))
        except OSError as e:
            logger.error("Could not write offset planes to %s: %s", filepath, e)
            return FilterReport.failure(FilterStatus.IO_ERROR, str(e))
        return FilterReport(details={"path": filepath})

    def load(self, filepath: str) -> FilterReport:
        """
        Restores planes, threshold and time point written by `save()`. The path must
        carry OFFSET_FILE_SUFFIX. Nothing is committed unless the whole file was read.
        """
        self.clear()
        if not str(filepath).endswith(OFFSET_FILE_SUFFIX):
            logger.error("Offset file %s does not end with %s", filepath, OFFSET_FILE_SUFFIX)
            return FilterReport.failure(FilterStatus.IO_ERROR, f"expected a {OFFSET_FILE_SUFFIX} file")
        try:
            time_point, threshold, planes = read_offset_coefficients(filepath, 3)
        except (OSError, EOFError) as e:
            logger.error("Could not read offset planes from %s: %s", filepath, e)
            return FilterReport.failure(FilterStatus.IO_ERROR, str(e))

        if len({p.shape[0] for p in planes}) != 1:
            return FilterReport.failure(FilterStatus.IO_ERROR, "components have different slice counts")

        self._end_diastolic_time_point = time_point
        self._static_tissue_threshold = threshold
        self._planes = np.stack(planes)
        self._is_initialized = True
        return FilterReport(details={"slices": self._planes.shape[1]})
