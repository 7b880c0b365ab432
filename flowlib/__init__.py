"""
FlowLib: A Python library for 4D flow MRI velocity correction and relative pressure mapping.
"""

__version__ = "0.1.0"

import logging

from .data import FieldGeometry, VelocityField, ScalarField
from .results import FilterReport, FilterStatus
from .phase_unwrapping import PhaseUnwrapper3DT, PhaseUnwrapper2DT, detect_phase_wraps
from .offset_correction import VelocityOffsetCorrector3DT, static_tissue_image
from .pressure import PressureMapFilter, PA_TO_MMHG
from .segmentation import Vessel, vessel_mask_in_field_size, dilate_mask
from .pipeline_utils import correct_and_map_pressure
from .utils import grid_to_list_id, list_to_grid_id, quantile

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "FieldGeometry",
    "VelocityField",
    "ScalarField",
    "FilterReport",
    "FilterStatus",
    "PhaseUnwrapper3DT",
    "PhaseUnwrapper2DT",
    "detect_phase_wraps",
    "VelocityOffsetCorrector3DT",
    "static_tissue_image",
    "PressureMapFilter",
    "PA_TO_MMHG",
    "Vessel",
    "vessel_mask_in_field_size",
    "dilate_mask",
    "correct_and_map_pressure",
    "grid_to_list_id",
    "list_to_grid_id",
    "quantile",
]
