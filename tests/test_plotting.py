import unittest

import numpy as np
import matplotlib.pyplot as plt

from flowlib.data import FieldGeometry, ScalarField
from flowlib.io import WRAP_RECORD_DTYPE
from flowlib.offset_correction import VelocityOffsetCorrector3DT
from flowlib.phase_unwrapping import PhaseUnwrapper3DT
from flowlib.plotting import plot_offset_plane, plot_pressure_slice, plot_wrap_map, wrap_count_volume
from flowlib.utils import grid_to_list_id


class TestPlottingBase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        # non-interactive backend for tests
        plt.switch_backend('Agg')

    def tearDown(self):
        plt.close('all')


class TestPlotting(TestPlottingBase):

    def setUp(self):
        self.geometry = FieldGeometry((6, 5, 3, 2))

    def test_wrap_count_volume(self):
        unwrapper = PhaseUnwrapper3DT()
        lid = grid_to_list_id(self.geometry.size, 4, 3, 1, 1)
        empty = np.empty(0, dtype=WRAP_RECORD_DTYPE)
        unwrapper.set_wrap_records([np.array([(lid, -2)], dtype=WRAP_RECORD_DTYPE), empty, empty])
        counts = wrap_count_volume(unwrapper, self.geometry, component=0)
        self.assertEqual(counts.shape, self.geometry.size)
        self.assertEqual(counts[4, 3, 1, 1], -2)
        self.assertEqual(int(np.count_nonzero(counts)), 1)

    def test_plot_wrap_map(self):
        unwrapper = PhaseUnwrapper3DT()
        unwrapper.set_wrap_records([np.array([(3, 1)], dtype=WRAP_RECORD_DTYPE)] * 3)
        ax = plot_wrap_map(unwrapper, self.geometry, z=0, t=1, component=2)
        self.assertIsInstance(ax, plt.Axes)
        self.assertIn("component 2", ax.get_title())

    def test_plot_wrap_map_into_given_axes(self):
        _, ax = plt.subplots()
        unwrapper = PhaseUnwrapper3DT()
        unwrapper.set_wrap_records([np.empty(0, dtype=WRAP_RECORD_DTYPE)] * 3)
        self.assertIs(plot_wrap_map(unwrapper, self.geometry, z=1, t=0, ax=ax), ax)

    def test_plot_offset_plane(self):
        corrector = VelocityOffsetCorrector3DT()
        planes = np.zeros((3, 3, 3))
        planes[0, 1] = (0.1, -0.2, 0.05)
        corrector.set_plane_coefficients(planes)
        ax = plot_offset_plane(corrector, self.geometry, z=1)
        image = ax.get_images()[0].get_array()
        # drawn transposed: rows are y, columns are x
        self.assertAlmostEqual(float(image[2, 3]), 0.1 * 3 - 0.2 * 2 + 0.05)
        with self.assertRaises(ValueError):
            plot_offset_plane(corrector, self.geometry, z=5)

    def test_plot_pressure_slice(self):
        pressure = ScalarField(np.random.default_rng(1).normal(size=(6, 5, 3, 2)))
        ax = plot_pressure_slice(pressure, z=2, t=1)
        self.assertIsInstance(ax, plt.Axes)
        with self.assertRaises(ValueError):
            plot_pressure_slice(ScalarField(np.zeros((6, 5, 3))), z=0, t=0)


if __name__ == '__main__':
    unittest.main()
