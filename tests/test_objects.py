"""
Tests for findfoci.objects.
"""

import numpy as np
import pytest

from findfoci import ConfigurationError
from findfoci.objects import analyse_objects, label_objects
from findfoci.result import FindFociResult


@pytest.fixture
def object_mask():
    """
    Two square objects with mask values 3 and 7.

    Returns:
        np.ndarray: 10x10 uint8 array
    """
    mask = np.zeros((10, 10), dtype=np.uint8)
    mask[1:4, 1:4] = 3
    mask[5:9, 5:9] = 7
    return mask


class TestLabelObjects:
    """Tests for label_objects."""

    def test_raster_order(self, object_mask):
        """Objects are numbered in raster order."""
        objects, n = label_objects(object_mask)

        assert n == 2
        assert objects[2, 2] == 1
        assert objects[6, 6] == 2
        assert objects[0, 0] == 0

    def test_touching_values_are_separate(self):
        """Touching regions with different mask values are different objects."""
        mask = np.array([[1, 1, 2, 2]], dtype=np.uint8)
        _, n = label_objects(mask)

        assert n == 2

    def test_single_slice_stack(self, object_mask):
        """A one-slice stack is labelled like the 2D mask."""
        objects, n = label_objects(object_mask[np.newaxis])

        assert n == 2
        assert objects.shape == (1, 10, 10)


class TestAnalyseObjects:
    """Tests for analyse_objects."""

    def test_results_are_tagged(self, object_mask):
        """Each result gets its object id and the object's mask value."""
        results = [
            FindFociResult(id=1, x=2, y=2),
            FindFociResult(id=2, x=6, y=7),
            FindFociResult(id=3, x=7, y=6),
            FindFociResult(id=4, x=0, y=9),
        ]
        analysis = analyse_objects(object_mask, results)

        assert analysis.number_of_objects == 2
        assert [(r.object, r.state) for r in results] == [(1, 3), (2, 7), (2, 7), (0, 0)]
        np.testing.assert_array_equal(analysis.object_state, [0, 3, 7])
        np.testing.assert_array_equal(analysis.foci_count, [1, 1, 2])
        assert analysis.object_mask is None

    def test_object_mask(self, object_mask):
        """The labelled objects can be returned as a uint16 mask."""
        analysis = analyse_objects(object_mask, [], create_object_mask=True)

        assert analysis.object_mask.dtype == np.uint16
        assert analysis.object_mask.shape == object_mask.shape
        assert analysis.object_mask.max() == 2

    def test_3d_mask(self):
        """Stacks are labelled in 3D and results use their z position."""
        mask = np.zeros((3, 4, 4), dtype=np.uint8)
        mask[0, :2, :2] = 1
        mask[2, 2:, 2:] = 1
        results = [FindFociResult(id=1, x=3, y=3, z=2)]
        analysis = analyse_objects(mask, results)

        assert analysis.number_of_objects == 2
        assert results[0].object == 2

    def test_bad_dimensions(self):
        """Only 2D and 3D masks are accepted."""
        with pytest.raises(ConfigurationError):
            analyse_objects(np.zeros(4, dtype=np.uint8), [])
