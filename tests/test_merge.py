"""
Tests for findfoci.search, findfoci.saddle and findfoci.merge.
"""

import numpy as np

from conftest import make_spots
from findfoci import AlgorithmOption, BackgroundMethod, ProcessorOptions, find_foci
from findfoci.image import Geometry
from findfoci.merge import PeakIdMap
from findfoci.result import FindFociResult
from findfoci.saddle import Saddle, SaddleList
from findfoci.search import analyse_contiguous_peak, no_saddle_value


class TestSearch:
    """Tests for the maxima search."""

    def test_no_saddle_value(self):
        """Saddles are floored at zero unless the background is negative."""
        assert no_saddle_value(5.0) == 0.0
        assert no_saddle_value(0.0) == 0.0
        assert no_saddle_value(-1.0) == -np.inf

    def test_plateau_is_one_peak(self, absolute_options):
        """A flat-topped maximum is a single peak."""
        image = np.array([[0, 7, 7, 7, 0]], dtype=np.uint8)
        output = find_foci(image, absolute_options)

        assert len(output) == 1
        assert output.results[0].max_value == 7
        assert output.results[0].x in (1, 2, 3)
        assert output.results[0].count == 5

    def test_below_background_is_not_a_peak(self, two_peak_profile, absolute_options):
        """Maxima at or below the background are ignored."""
        absolute_options.background_parameter = 6.0
        output = find_foci(two_peak_profile, absolute_options)

        assert [r.max_value for r in output.results] == [8]


class TestSaddleList:
    """Tests for SaddleList."""

    def test_sorted_highest_first(self):
        """Ties in value are ordered by id."""
        saddles = SaddleList([Saddle(3, 5.0), Saddle(2, 9.0), Saddle(1, 5.0)])
        saddles.sort()

        assert [(s.id, s.value) for s in saddles] == [(2, 9.0), (1, 5.0), (3, 5.0)]

    def test_remove_duplicates_keeps_highest(self):
        """One saddle per neighbour id survives, the highest one."""
        saddles = SaddleList([Saddle(1, 2.0), Saddle(2, 4.0), Saddle(1, 6.0)])
        saddles.remove_duplicates()

        assert [(s.id, s.value) for s in saddles] == [(1, 6.0), (2, 4.0)]

    def test_copy_is_independent(self):
        """Changing a copy leaves the original untouched."""
        saddles = SaddleList([Saddle(1, 2.0)])
        other = saddles.copy()
        other[0].value = 3.0
        other.clear()

        assert len(saddles) == 1
        assert saddles[0].value == 2.0


class TestPeakIdMap:
    """Tests for PeakIdMap."""

    def test_new_map_is_identity(self):
        """Every peak starts as its own root."""
        id_map = PeakIdMap(4)

        np.testing.assert_array_equal(id_map.resolve(), [0, 1, 2, 3, 4])
        assert id_map.count() == 4

    def test_union_follows_chains(self):
        """Merging into a merged peak resolves to the final target."""
        id_map = PeakIdMap(4)
        id_map.union(1, 2)
        id_map.union(2, 3)

        assert id_map.find(1) == 3
        assert id_map.count() == 2
        assert not id_map.is_root(1)
        assert id_map.is_root(3)

    def test_remove_maps_to_zero(self):
        """Removed peaks and everything merged into them map to 0."""
        id_map = PeakIdMap(3)
        id_map.union(1, 2)
        id_map.remove(2)

        np.testing.assert_array_equal(id_map.resolve(), [0, 0, 0, 3])
        assert id_map.count() == 1

    def test_copy_is_independent(self):
        """Unions on a copy do not change the original."""
        id_map = PeakIdMap(2)
        other = id_map.copy()
        other.union(1, 2)

        assert id_map.find(1) == 1

    def test_resolve_ids(self):
        """An id array is mapped to current ids, keeping its shape."""
        id_map = PeakIdMap(4)
        id_map.union(1, 2)
        id_map.remove(3)

        ids = np.array([[0, 1, 2], [3, 1, 4]])

        np.testing.assert_array_equal(id_map.resolve_ids(ids), [[0, 2, 2], [0, 2, 4]])


class TestContiguousPeak:
    """Tests for analyse_contiguous_peak."""

    @staticmethod
    def _row():
        geometry = Geometry(7, 1)
        values = geometry.pad(np.array([0.0, 5.0, 9.0, 5.0, 9.0, 5.0, 0.0]), -np.inf)
        maxima = geometry.pad(np.array([0, 1, 1, 1, 2, 2, 0], dtype=np.int32), 0)
        result = FindFociResult(id=1, x=2, y=0, index=geometry.index(2, 0), highest_saddle_value=4.0)
        return values, maxima, geometry, result

    def test_own_voxels(self):
        """Only connected voxels of the peak above the saddle are counted."""
        values, maxima, geometry, result = self._row()
        analyse_contiguous_peak(values, maxima, geometry, result)

        assert result.count_above_saddle == 3
        assert result.intensity_above_saddle == 19.0

    def test_merged_ids(self):
        """Voxels of a peak merged into this one count before the buffer is relabelled."""
        values, maxima, geometry, result = self._row()
        id_map = PeakIdMap(2)
        id_map.union(2, 1)
        analyse_contiguous_peak(values, maxima, geometry, result, id_map.find)

        assert result.count_above_saddle == 5
        assert result.intensity_above_saddle == 33.0
        np.testing.assert_array_equal(maxima[geometry.inner], [0, 1, 1, 1, 2, 2, 0])


class TestMerging:
    """Tests for the merge passes through find_foci."""

    def test_min_size_removes_small_isolated_peaks(self, spots_image, spots_options):
        """Peaks smaller than the minimum size with no neighbour are removed."""
        spots_options.min_size = 10000
        spots_options.set_option(AlgorithmOption.MINIMUM_ABOVE_SADDLE, False)

        assert len(find_foci(spots_image, spots_options)) == 0

    def test_max_size_removes_large_peaks(self, spots_image, spots_options):
        """Peaks larger than the maximum size are removed."""
        spots_options.max_size = 5

        assert len(find_foci(spots_image, spots_options)) == 0

    def test_remove_edge_maxima(self, spots_options):
        """Peaks touching the image border are removed."""
        image = make_spots(centres=((0, 20, 100), (24, 24, 100)))
        spots_options.set_option(AlgorithmOption.REMOVE_EDGE_MAXIMA)
        output = find_foci(image, spots_options)

        assert [(r.x, r.y) for r in output.results] == [(24, 24)]

    def test_size_above_saddle_merges_shallow_peak(self):
        """A peak with too few voxels above its saddle joins its neighbour."""
        image = make_spots(centres=((20, 20, 100), (20, 26, 60)))
        options = ProcessorOptions(
            background_method=BackgroundMethod.ABSOLUTE, background_parameter=15.0, peak_parameter=0.0,
        )
        found = find_foci(image, options)
        options.min_size = 30
        merged = find_foci(image, options)

        assert len(found) == 2
        assert len(merged) == 1
        assert merged.results[0].count == sum(r.count for r in found.results)
