import os
import shutil
import tempfile
import unittest

import numpy as np
import torch

from flowlib.data import FieldGeometry, ScalarField, VelocityField
from flowlib.io import WRAP_RECORD_DTYPE
from flowlib.phase_unwrapping import (
    PhaseUnwrapper2DT,
    PhaseUnwrapper3DT,
    detect_phase_wraps,
    laplace_kernel_fft,
)
from flowlib.results import FilterStatus
from flowlib.utils import grid_to_list_id


def _wrap_velocity(values: np.ndarray, venc: float) -> np.ndarray:
    """Wraps velocities into [-venc, venc) like the scanner's phase measurement."""
    return np.mod(values + venc, 2 * venc) - venc


def _smooth_field(size=(4, 4, 4, 2), amplitude=0.05) -> np.ndarray:
    """Small, slowly varying synthetic velocities, far away from any venc used in the tests."""
    x, y, z, t = np.meshgrid(*(np.arange(n, dtype=np.float64) for n in size), indexing="ij")
    values = np.empty(size + (3,))
    values[..., 0] = amplitude * np.sin(0.5 * x + 0.3 * y) * np.cos(0.4 * z) + 0.01 * t
    values[..., 1] = amplitude * np.cos(0.3 * x - 0.2 * z) + 0.005 * t
    values[..., 2] = amplitude * np.sin(0.2 * y + 0.1 * z)
    return values


def _gaussian_bump(shape, peak, sigma):
    """Spatial Gaussian centred in the grid (between the two central voxels for even sizes)."""
    coords = np.meshgrid(*(np.arange(n, dtype=np.float64) for n in shape), indexing="ij")
    r2 = sum((c - (n - 1) / 2.0) ** 2 for c, n in zip(coords, shape))
    return peak * np.exp(-r2 / (2.0 * sigma ** 2))


class TestLaplaceKernel(unittest.TestCase):

    def test_kernel_is_zero_sum_and_real(self):
        for shape in [(4, 4, 4, 2), (8, 8, 2), (4, 1, 2, 2)]:
            kernel_fft = laplace_kernel_fft(shape)
            self.assertEqual(tuple(kernel_fft.shape), shape)
            self.assertEqual(kernel_fft.dtype, torch.float64)
            # the DC bin equals the stencil sum
            self.assertAlmostEqual(kernel_fft.flatten()[0].item(), 0.0, places=9)
            # all other bins are clearly non-zero
            self.assertGreater(kernel_fft.flatten()[1:].abs().min().item(), 1e-3)

    def test_kernel_centre_weight(self):
        # with every axis >= 3 the stencil is the plain 3^N - 1 centre / -1 neighbour design
        kernel_fft = laplace_kernel_fft((4, 4, 4, 4))
        kernel = torch.fft.ifftn(kernel_fft.to(torch.complex128)).real
        self.assertAlmostEqual(kernel[2, 2, 2, 2].item(), 80.0, places=9)
        self.assertAlmostEqual(kernel[1, 2, 3, 2].item(), -1.0, places=9)
        self.assertAlmostEqual(kernel[0, 2, 2, 2].item(), 0.0, places=9)


class TestDetectPhaseWraps(unittest.TestCase):

    def test_unwrapped_phase_has_no_wraps(self):
        phase = 0.3 * np.sin(np.linspace(0, np.pi, 8))[:, None, None] * np.ones((8, 8, 4))
        lids, counts, skipped = detect_phase_wraps(phase)
        self.assertEqual(lids.size, 0)
        self.assertEqual(counts.size, 0)
        self.assertEqual(skipped, 1)

    def test_single_wrap_in_padded_grid(self):
        phase = np.zeros((5, 3, 3))
        phase[2, 1, 1] = -2 * np.pi
        lids, counts, _ = detect_phase_wraps(phase)
        np.testing.assert_array_equal(lids, [grid_to_list_id((5, 3, 3), 2, 1, 1)])
        np.testing.assert_array_equal(counts, [1])
        self.assertEqual(lids.dtype, np.uint32)
        self.assertEqual(counts.dtype, np.int8)

    def test_rejects_kernel_of_wrong_shape(self):
        with self.assertRaises(ValueError):
            detect_phase_wraps(np.zeros((4, 4)), kernel_fft=laplace_kernel_fft((8, 8)))


class TestPhaseUnwrapper3DT(unittest.TestCase):

    def setUp(self):
        self.venc = 1.5
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_injected_wraps_are_corrected(self):
        truth = _smooth_field((4, 4, 4, 2))
        measured = truth.copy()
        measured[1, 1, 1, 0, :] -= 2 * self.venc   # one wrap, corrected by +1
        measured[2, 2, 2, 1, :] += 2 * self.venc   # one wrap, corrected by -1
        field = VelocityField(measured)

        unwrapper = PhaseUnwrapper3DT()
        report = unwrapper.detect(field, (self.venc,) * 3)
        self.assertTrue(report.ok)
        self.assertTrue(unwrapper.is_initialized)
        self.assertTrue(unwrapper.is_wrapped())
        for v in range(3):
            self.assertEqual(unwrapper.num_wrapped_voxels(v), 2)
            rec = unwrapper.wrap_records[v]
            lid_a = grid_to_list_id(field.size, 1, 1, 1, 0)
            lid_b = grid_to_list_id(field.size, 2, 2, 2, 1)
            self.assertEqual(dict(zip(rec["lid"].tolist(), rec["nr"].tolist())), {lid_a: 1, lid_b: -1})

        untouched = np.ones(field.size, dtype=bool)
        untouched[1, 1, 1, 0] = False
        untouched[2, 2, 2, 1] = False

        self.assertTrue(unwrapper.apply(field, self.venc))
        np.testing.assert_allclose(field.values[1, 1, 1, 0], truth[1, 1, 1, 0], atol=1e-6)
        np.testing.assert_allclose(field.values[2, 2, 2, 1], truth[2, 2, 2, 1], atol=1e-6)
        np.testing.assert_array_equal(field.values[untouched], measured[untouched])

    def test_smooth_field_exceeding_venc(self):
        venc = 1.0
        shape = (16, 16, 16)
        bump = _gaussian_bump(shape, peak=1.15 * venc, sigma=5.0)
        truth = np.zeros(shape + (4, 3))
        truth[..., 0] = bump[..., None]
        truth[..., 1] = -0.5 * bump[..., None]
        truth[..., 2] = 0.2
        field = VelocityField(_wrap_velocity(truth, venc))
        needed_wrap = np.abs(truth) >= venc
        self.assertTrue(needed_wrap.any())

        unwrapper = PhaseUnwrapper3DT()
        unwrapper.detect(field, venc)
        self.assertEqual(unwrapper.num_wrapped_voxels(), int(needed_wrap.sum()))
        unwrapper.apply(field, venc)

        np.testing.assert_allclose(field.values[needed_wrap], truth[needed_wrap], atol=1e-6)
        np.testing.assert_allclose(field.values, truth, atol=1e-6)

    def test_apply_without_wraps_is_identity(self):
        values = _smooth_field((6, 5, 4, 3))
        field = VelocityField(values.copy())
        unwrapper = PhaseUnwrapper3DT()
        report = unwrapper.detect(field, 4.0)
        self.assertFalse(unwrapper.is_wrapped())
        self.assertEqual(report.details["wrapped_voxels"], [0, 0, 0])
        self.assertFalse(report.used_fallback)
        unwrapper.apply(field, 4.0)
        np.testing.assert_array_equal(field.values, values)

    def test_padded_grid(self):
        values = np.zeros((3, 3, 3, 2, 3))
        values[1, 1, 1, 0, 1] = -2 * self.venc
        field = VelocityField(values)
        unwrapper = PhaseUnwrapper3DT()
        unwrapper.detect(field, self.venc)
        self.assertEqual(unwrapper.num_wrapped_voxels(0), 0)
        self.assertEqual(unwrapper.num_wrapped_voxels(1), 1)
        self.assertEqual(unwrapper.num_wrapped_voxels(2), 0)
        unwrapper.apply(field, self.venc)
        np.testing.assert_allclose(field.values, 0.0, atol=1e-12)

    def test_progress_is_reported(self):
        calls = []
        unwrapper = PhaseUnwrapper3DT(progress_fn=lambda step, total, desc: calls.append((step, total)))
        unwrapper.detect(VelocityField.zeros((4, 4, 2, 2)), 1.0)
        self.assertEqual(calls[0], (0, 4))
        self.assertEqual(calls[-1], (4, 4))

    def test_apply_before_detect(self):
        values = _smooth_field()
        field = VelocityField(values.copy())
        report = PhaseUnwrapper3DT().apply(field, self.venc)
        self.assertFalse(report)
        self.assertEqual(report.status, FilterStatus.NOT_INITIALIZED)
        np.testing.assert_array_equal(field.values, values)

    def test_save_load_round_trip(self):
        size = (4, 3, 2, 2)
        records = []
        for v, entries in enumerate([[(0, 1), (7, -2)], [], [(47, 3)]]):
            rec = np.array(entries, dtype=WRAP_RECORD_DTYPE)
            records.append(rec)
        unwrapper = PhaseUnwrapper3DT()
        unwrapper.set_wrap_records(records)

        base = _smooth_field(size)
        expected = VelocityField(base.copy())
        unwrapper.apply(expected, self.venc)

        path = os.path.join(self.tmpdir, "wraps.bin")
        self.assertTrue(unwrapper.save(path))
        self.assertEqual(os.path.getsize(path), 3 * 4 + 3 * 5)

        restored = PhaseUnwrapper3DT()
        self.assertTrue(restored.load(path))
        self.assertTrue(restored.is_initialized)
        self.assertEqual(restored.num_wrapped_voxels(), 3)
        actual = VelocityField(base.copy())
        restored.apply(actual, self.venc)
        np.testing.assert_array_equal(actual.values, expected.values)

    def test_load_truncated_file(self):
        path = os.path.join(self.tmpdir, "truncated.bin")
        with open(path, "wb") as f:
            f.write(np.array([5], dtype="<u4").tobytes())
            f.write(np.array([(1, 1), (2, -1)], dtype=WRAP_RECORD_DTYPE).tobytes())

        unwrapper = PhaseUnwrapper3DT()
        unwrapper.set_wrap_records([np.array([(3, 1)], dtype=WRAP_RECORD_DTYPE)] * 3)
        report = unwrapper.load(path)
        self.assertEqual(report.status, FilterStatus.IO_ERROR)
        self.assertFalse(unwrapper.is_initialized)
        self.assertEqual(unwrapper.num_wrapped_voxels(), 0)

    def test_load_missing_file(self):
        report = PhaseUnwrapper3DT().load(os.path.join(self.tmpdir, "missing.bin"))
        self.assertEqual(report.status, FilterStatus.IO_ERROR)

    def test_save_before_detect(self):
        report = PhaseUnwrapper3DT().save(os.path.join(self.tmpdir, "never.bin"))
        self.assertEqual(report.status, FilterStatus.NOT_INITIALIZED)
        self.assertFalse(os.path.exists(os.path.join(self.tmpdir, "never.bin")))

    def test_invalid_arguments(self):
        unwrapper = PhaseUnwrapper3DT()
        with self.assertRaises(TypeError):
            unwrapper.detect(np.zeros((4, 4, 4, 2, 3)), 1.0)
        with self.assertRaises(ValueError):
            unwrapper.detect(VelocityField.zeros((4, 4, 4, 2)), -1.0)
        with self.assertRaises(ValueError):
            unwrapper.detect(VelocityField.zeros((4, 4, 4, 2)), (1.0, 1.0))
        with self.assertRaises(ValueError):
            PhaseUnwrapper3DT(max_workers=0)

    def test_record_from_other_grid_is_rejected(self):
        unwrapper = PhaseUnwrapper3DT()
        unwrapper.set_wrap_records([np.array([(1000, 1)], dtype=WRAP_RECORD_DTYPE)] * 3)
        with self.assertRaises(ValueError):
            unwrapper.apply(VelocityField.zeros((4, 4, 4, 2)), 1.0)


class TestPhaseUnwrapper2DT(unittest.TestCase):

    def test_through_plane_bump(self):
        venc = 0.8
        bump = _gaussian_bump((16, 16), peak=1.15 * venc, sigma=4.0)
        truth = np.repeat(bump[:, :, None], 4, axis=2)
        image = ScalarField(_wrap_velocity(truth, venc), FieldGeometry((16, 16, 4), (1.5, 1.5, 40.0)))
        needed_wrap = truth >= venc

        unwrapper = PhaseUnwrapper2DT()
        report = unwrapper.detect(image, venc)
        self.assertTrue(report.ok)
        self.assertEqual(unwrapper.num_wrapped_voxels(), int(needed_wrap.sum()))
        unwrapper.apply(image, venc)
        np.testing.assert_allclose(image.values, truth, atol=1e-6)

    def test_save_load_single_component(self):
        tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmpdir)
        unwrapper = PhaseUnwrapper2DT()
        unwrapper.set_wrap_records([np.array([(5, 1), (9, -1)], dtype=WRAP_RECORD_DTYPE)])
        path = os.path.join(tmpdir, "wraps2dt.bin")
        unwrapper.save(path)
        self.assertEqual(os.path.getsize(path), 4 + 2 * 5)

        restored = PhaseUnwrapper2DT()
        self.assertTrue(restored.load(path))
        np.testing.assert_array_equal(restored.wrap_records[0], unwrapper.wrap_records[0])

    def test_rejects_velocity_field(self):
        with self.assertRaises(TypeError):
            PhaseUnwrapper2DT().detect(VelocityField.zeros((4, 4, 4, 2)), 1.0)


if __name__ == '__main__':
    unittest.main()
