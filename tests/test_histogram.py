"""
Tests for findfoci.histogram and findfoci.statistics.
"""

import numpy as np
import pytest

from findfoci import BackgroundMethod, HistogramConsistencyError, PeakMethod, SearchMethod, ThresholdMethod
from findfoci.histogram import Histogram, HistogramScope, build_histogram
from findfoci.image import EXCLUDED, FLOAT, INTEGER, Geometry
from findfoci.statistics import (
    FindFociStatistics,
    get_peak_height,
    get_search_threshold,
    get_statistics,
    get_threshold,
    get_tolerance,
)


def _buffers(image, excluded=None):
    geometry = Geometry.for_image(image)
    values = geometry.pad(image.astype(np.float64), -np.inf, dtype=np.float64)
    values[~np.isfinite(values)] = -np.inf
    types = np.full(geometry.size, EXCLUDED, dtype=np.uint8)
    types[geometry.inner] = 0
    types[~np.isfinite(values)] |= EXCLUDED
    if excluded is not None:
        types[geometry.inner[np.ravel(excluded)]] |= EXCLUDED
    return values, types, geometry


class TestBuildHistogram:
    """Tests for build_histogram."""

    def test_integer_histogram(self):
        """Integer samples are counted per value."""
        values, types, geometry = _buffers(np.array([[1, 1, 3], [7, 3, 1]], dtype=np.uint8))
        hist = build_histogram(values, types, geometry, INTEGER)

        np.testing.assert_array_equal(hist.values, [1, 3, 7])
        np.testing.assert_array_equal(hist.counts, [3, 2, 1])
        assert hist.total == 6

    def test_float_histogram_skips_non_finite(self):
        """NaN and infinite voxels are not counted."""
        image = np.array([[0.5, np.nan, 0.5], [np.inf, 2.0, -1.0]], dtype=np.float32)
        values, types, geometry = _buffers(image)
        hist = build_histogram(values, types, geometry, FLOAT)

        np.testing.assert_array_equal(hist.values, [-1.0, 0.5, 2.0])
        np.testing.assert_array_equal(hist.counts, [1, 2, 1])

    def test_unflagged_non_finite_voxel(self):
        """A non-finite voxel that is not flagged as excluded is an error."""
        values, types, geometry = _buffers(np.array([[0.5, 1.0, 2.0]], dtype=np.float32))
        values[geometry.index(1, 0)] = np.nan

        with pytest.raises(HistogramConsistencyError):
            build_histogram(values, types, geometry, FLOAT)

    def test_scopes(self):
        """Inside counts included voxels, outside the excluded ones, all both."""
        image = np.array([[1, 2], [3, 4]], dtype=np.uint8)
        excluded = np.array([[False, True], [False, True]])
        values, types, geometry = _buffers(image, excluded)

        inside = build_histogram(values, types, geometry, INTEGER, HistogramScope.INSIDE)
        outside = build_histogram(values, types, geometry, INTEGER, HistogramScope.OUTSIDE)
        everything = build_histogram(values, types, geometry, INTEGER, HistogramScope.ALL)

        np.testing.assert_array_equal(inside.values, [1, 3])
        np.testing.assert_array_equal(outside.values, [2, 4])
        assert everything.total == 4

    def test_bins_index_values(self):
        """Each counted voxel records its bin; other voxels hold -1."""
        image = np.array([[5, 2], [5, 9]], dtype=np.uint16)
        values, types, geometry = _buffers(image)
        hist = build_histogram(values, types, geometry, INTEGER, with_bins=True)

        inner = geometry.inner
        np.testing.assert_array_equal(hist.values[hist.bins[inner]], image.ravel())
        outside = np.setdiff1d(np.arange(geometry.size), inner)
        assert np.all(hist.bins[outside] == -1)

    def test_empty_histogram(self):
        """A fully excluded image gives an empty histogram."""
        image = np.ones((2, 2), dtype=np.uint8)
        values, types, geometry = _buffers(image, np.ones((2, 2), dtype=bool))
        hist = build_histogram(values, types, geometry, INTEGER)

        assert len(hist) == 0
        assert get_statistics(hist) == (0.0, 0.0, 0.0, 0.0, 0.0)


class TestHistogram:
    """Tests for Histogram helpers."""

    def test_background_bin(self):
        """The background bin is the first value not below the background."""
        hist = Histogram(np.array([1.0, 4.0, 9.0]), np.array([1, 1, 1]))

        assert hist.background_bin(4, INTEGER) == 1
        assert hist.background_bin(5, INTEGER) == 2
        assert hist.background_bin(100, INTEGER) == 2
        assert hist.background_bin(0, INTEGER) == 0

    def test_compact(self):
        """Compacting keeps the total count and the value range."""
        values = np.linspace(0.0, 1.0, 1000)
        hist = Histogram(values, np.ones(1000, dtype=np.int64)).compact(256)

        assert len(hist) == 256
        assert hist.total == 1000
        assert hist.values[0] == 0.0
        assert hist.values[-1] == pytest.approx(1.0)

    def test_compact_small_histogram_unchanged(self):
        """Histograms with few bins are not re-binned."""
        hist = Histogram(np.array([1.0, 2.0]), np.array([3, 4]))

        assert hist.compact(256) is hist


class TestStatistics:
    """Tests for the statistics helpers."""

    def test_get_statistics(self):
        """Minimum, maximum, mean, sample standard deviation and sum."""
        hist = Histogram(np.array([1.0, 2.0, 3.0]), np.array([1, 2, 1]))
        lo, hi, av, sd, total = get_statistics(hist)

        assert (lo, hi, av, total) == (1.0, 3.0, 2.0, 8.0)
        assert sd == pytest.approx(np.std([1, 2, 2, 3], ddof=1))

    def test_threshold_none_is_minimum(self):
        """No threshold method gives the histogram minimum."""
        hist = Histogram(np.array([3.0, 10.0]), np.array([5, 5]))

        assert get_threshold(ThresholdMethod.NONE, hist) == 3.0

    def test_threshold_is_histogram_value(self):
        """The threshold is snapped down to a value present in the histogram."""
        hist = Histogram(np.array([0.0, 1.0, 10.0, 11.0]), np.array([50, 50, 5, 5]))

        assert get_threshold(ThresholdMethod.OTSU, hist) == 1.0
        assert get_threshold(ThresholdMethod.MEAN, hist) == 1.0

    def test_absolute_background_is_rounded_for_integers(self):
        """Integer backgrounds are rounded and never negative."""
        stats = FindFociStatistics()

        assert get_search_threshold(BackgroundMethod.ABSOLUTE, 10.5, stats, INTEGER) == 11.0
        assert get_search_threshold(BackgroundMethod.ABSOLUTE, -4.0, stats, INTEGER) == 0.0
        assert get_search_threshold(BackgroundMethod.ABSOLUTE, -4.0, stats, FLOAT) == -4.0

    def test_std_dev_above_mean(self):
        """The background is the mean plus a multiple of the standard deviation."""
        stats = FindFociStatistics(background_region_average=10.0, background_region_std_dev=2.0)

        assert get_search_threshold(BackgroundMethod.STD_DEV_ABOVE_MEAN, 3.0, stats, INTEGER) == 16.0
        assert get_search_threshold(BackgroundMethod.MEAN, 3.0, stats, FLOAT) == 10.0

    def test_background_none(self):
        """No background method gives 0 for integers and the region minimum for floats."""
        stats = FindFociStatistics(region_minimum=-3.0)

        assert get_search_threshold(BackgroundMethod.NONE, 0.0, stats, INTEGER) == 0.0
        assert get_search_threshold(BackgroundMethod.NONE, 0.0, stats, FLOAT) == -3.0

    def test_tolerance(self):
        """Search tolerances relative to the background."""
        stats = FindFociStatistics(background=10.0)

        assert get_tolerance(SearchMethod.ABOVE_BACKGROUND, 0.3, stats, 110.0, INTEGER) == 10.0
        assert get_tolerance(SearchMethod.HALF_PEAK_VALUE, 0.3, stats, 110.0, INTEGER) == 60.0
        assert get_tolerance(SearchMethod.FRACTION_OF_PEAK_MINUS_BACKGROUND, 0.3, stats, 110.0, INTEGER) == 40.0

    def test_peak_height(self):
        """Integer peak heights are rounded and at least 1."""
        stats = FindFociStatistics(background=10.0)

        assert get_peak_height(PeakMethod.ABSOLUTE, 5.0, stats, 100.0, INTEGER) == 5.0
        assert get_peak_height(PeakMethod.RELATIVE, 0.25, stats, 100.0, INTEGER) == 25.0
        assert get_peak_height(PeakMethod.RELATIVE_ABOVE_BACKGROUND, 0.5, stats, 100.0, INTEGER) == 45.0
        assert get_peak_height(PeakMethod.ABSOLUTE, 0.0, stats, 100.0, INTEGER) == 1.0

    def test_float_peak_height_is_positive(self):
        """A zero float peak height is replaced by a tiny fraction of the peak."""
        stats = FindFociStatistics(background=0.0)

        assert get_peak_height(PeakMethod.ABSOLUTE, 0.0, stats, 2.0, FLOAT) == pytest.approx(2e-6)
