# flowlib/pipeline_utils.py
"""Higher-level utilities for running the 4D flow correction chain end to end."""

import logging
import typing

from .data import ScalarField, VelocityField
from .offset_correction import VelocityOffsetCorrector3DT, static_tissue_image
from .phase_unwrapping import PhaseUnwrapper3DT
from .pressure import PressureMapFilter
from .results import FilterReport

logger = logging.getLogger(__name__)


def correct_and_map_pressure(
    field: VelocityField,
    venc,
    static_tissue: typing.Optional[ScalarField] = None,
    vessels: typing.Sequence = (),
    static_tissue_threshold: float = 0.0,
    end_diastolic_time_point: int = 0,
    pressure_filter: typing.Optional[PressureMapFilter] = None,
    unwrap: bool = True,
    correct_offsets: bool = True,
    device="cpu",
    progress_fn=None,
) -> typing.Tuple[VelocityField, typing.Optional[ScalarField], typing.Dict[str, FilterReport]]:
    """
    Runs phase unwrapping, velocity offset correction and relative pressure
    mapping on a copy of `field`.

    The pipeline involves:
    1. Detecting and removing 2*pi phase wraps (`PhaseUnwrapper3DT`).
    2. Fitting and subtracting slice-wise offset planes in static tissue
       (`VelocityOffsetCorrector3DT`). Without a `static_tissue` image, the IVSD
       image of the unwrapped field is used.
    3. Computing the relative pressure inside `vessels` (`PressureMapFilter`),
       skipped when no vessels are given.

    Args:
        field (VelocityField): Measured velocity field. Not modified.
        venc: Velocity encoding in m/s, scalar or one value per component.
        static_tissue (ScalarField, optional): (X, Y, Z) static-tissue indicator.
        vessels (sequence): Vessels for the pressure map.
        static_tissue_threshold (float): Passed to the offset corrector.
        end_diastolic_time_point (int): Passed to the offset corrector.
        pressure_filter (PressureMapFilter, optional): Configured pressure filter.
            A default one on `device` is created if None.
        unwrap (bool): Run step 1.
        correct_offsets (bool): Run step 2.
        device: PyTorch device for the unwrapper and default pressure filter.
        progress_fn (callable, optional): Observer handed to every stage.

    Returns:
        tuple[VelocityField, ScalarField or None, dict[str, FilterReport]]:
            - corrected (VelocityField): Unwrapped and offset-corrected copy.
            - pressure (ScalarField or None): Relative pressure map, None without vessels.
            - reports (dict): One report per executed stage, keyed by
              'unwrap_detect', 'unwrap_apply', 'offset_detect', 'offset_apply', 'pressure'.
    """
    if not isinstance(field, VelocityField):
        raise TypeError("field must be a VelocityField.")

    corrected = field.copy()
    reports = {}

    # 1. Phase unwrapping
    if unwrap:
        unwrapper = PhaseUnwrapper3DT(device=device, progress_fn=progress_fn)
        reports["unwrap_detect"] = unwrapper.detect(corrected, venc)
        if unwrapper.is_wrapped():
            reports["unwrap_apply"] = unwrapper.apply(corrected, venc)
        else:
            logger.info("No phase wraps found.")

    # 2. Velocity offset correction
    if correct_offsets:
        if static_tissue is None:
            static_tissue = static_tissue_image(corrected)
        corrector = VelocityOffsetCorrector3DT(static_tissue_threshold=static_tissue_threshold,
                                               end_diastolic_time_point=end_diastolic_time_point,
                                               progress_fn=progress_fn)
        reports["offset_detect"] = corrector.detect(corrected, static_tissue)
        reports["offset_apply"] = corrector.apply(corrected)

    # 3. Relative pressure
    pressure = None
    vessels = list(vessels)
    if vessels:
        if pressure_filter is None:
            pressure_filter = PressureMapFilter(device=device, progress_fn=progress_fn)
        pressure = pressure_filter.apply(corrected, vessels)
        reports["pressure"] = pressure_filter.last_report

    for name, report in reports.items():
        if report.used_fallback:
            logger.warning("Stage %s used %d fallback(s).", name, len(report.fallbacks))
    return corrected, pressure, reports
