# flowlib/io.py
"""Binary persistence of wrap records and velocity offset planes."""

import os
import numpy as np
from typing import List, Sequence, Tuple

# one wrapped voxel: linear voxel index + signed wrap count, packed (5 bytes)
WRAP_RECORD_DTYPE = np.dtype([("lid", "<u4"), ("nr", "i1")])

OFFSET_FILE_SUFFIX = ".voc"
DEFAULT_OFFSET_BASENAME = "veloff"

_U32 = np.dtype("<u4")
_F64 = np.dtype("<f8")


class _Reader:
    """Sequential reader over a byte buffer that fails loudly on short reads."""
    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    def read(self, dtype: np.dtype, count: int = 1) -> np.ndarray:
        nbytes = dtype.itemsize * count
        if self._pos + nbytes > len(self._data):
            raise EOFError(f"Expected {nbytes} bytes at offset {self._pos}, "
                           f"only {len(self._data) - self._pos} left.")
        if count == 0:
            return np.empty(0, dtype=dtype)
        out = np.frombuffer(self._data, dtype=dtype, count=count, offset=self._pos).copy()
        self._pos += nbytes
        return out


def write_wrap_records(filepath: str, records: Sequence[np.ndarray]) -> None:
    """
    Writes per-component wrap records.

    Layout, per component in order: uint32 count N, then N packed
    (uint32 linear voxel index, int8 wrap count) pairs.

    Args:
        filepath (str): Target file.
        records: One structured array (WRAP_RECORD_DTYPE) per component.
    """
    with open(filepath, "wb") as f:
        for rec in records:
            rec = np.asarray(rec, dtype=WRAP_RECORD_DTYPE)
            f.write(np.array([rec.size], dtype=_U32).tobytes())
            f.write(rec.tobytes())


def read_wrap_records(filepath: str, num_components: int = 3) -> List[np.ndarray]:
    """
    Reads wrap records written by `write_wrap_records`.

    Raises:
        OSError: If the file cannot be opened.
        EOFError: If the file ends before all records were read.
    """
    with open(filepath, "rb") as f:
        reader = _Reader(f.read())

    records = []
    for _ in range(num_components):
        n = int(reader.read(_U32)[0])
        records.append(reader.read(WRAP_RECORD_DTYPE, n))
    return records


def resolve_offset_path(filepath: str) -> str:
    """Appends the offset file suffix if missing; an empty path maps to the default name."""
    filepath = os.fspath(filepath) if filepath else ""
    if not filepath:
        return DEFAULT_OFFSET_BASENAME + OFFSET_FILE_SUFFIX
    if not filepath.endswith(OFFSET_FILE_SUFFIX):
        return filepath + OFFSET_FILE_SUFFIX
    return filepath


def write_offset_coefficients(filepath: str,
                              end_diastolic_time_point: int,
                              static_tissue_threshold: float,
                              planes: Sequence[np.ndarray]) -> None:
    """
    Writes velocity offset planes.

    Layout: uint32 end-diastolic time index, float64 static-tissue threshold,
    then per component: uint32 slice count Z followed by Z * (a, b, c) float64.

    Args:
        filepath (str): Target file, used as given.
        end_diastolic_time_point (int): Reference time index of the fit.
        static_tissue_threshold (float): Threshold used to select static voxels.
        planes: One (Z, 3) array of plane coefficients per component.
    """
    with open(filepath, "wb") as f:
        f.write(np.array([end_diastolic_time_point], dtype=_U32).tobytes())
        f.write(np.array([static_tissue_threshold], dtype=_F64).tobytes())
        for plane in planes:
            plane = np.asarray(plane, dtype=_F64).reshape(-1, 3)
            f.write(np.array([plane.shape[0]], dtype=_U32).tobytes())
            f.write(plane.tobytes())


def read_offset_coefficients(filepath: str, num_components: int = 3) -> Tuple[int, float, List[np.ndarray]]:
    """
    Reads velocity offset planes written by `write_offset_coefficients`.

    Returns:
        tuple[int, float, list[np.ndarray]]: End-diastolic time index, static-tissue
        threshold and one (Z, 3) coefficient array per component.

    Raises:
        OSError: If the file cannot be opened.
        EOFError: If the file ends early.
    """
    with open(filepath, "rb") as f:
        reader = _Reader(f.read())

    time_point = int(reader.read(_U32)[0])
    threshold = float(reader.read(_F64)[0])
    planes = []
    for _ in range(num_components):
        num_slices = int(reader.read(_U32)[0])
        planes.append(reader.read(_F64, 3 * num_slices).reshape(num_slices, 3))
    return time_point, threshold, planes
