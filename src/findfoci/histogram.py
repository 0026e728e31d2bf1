from __future__ import annotations

import enum
import logging

import numpy as np

from .errors import HistogramConsistencyError
from .image import EXCLUDED, Geometry, SampleKind


logger = logging.getLogger(__name__)


class HistogramScope(enum.Enum):
    INSIDE = "inside"
    ALL = "all"
    OUTSIDE = "outside"


class Histogram:
    """Sorted unique-value histogram.

    Attributes:
        values: Ascending unique sample values.
        counts: Number of voxels holding each value.
        bins: Optional per-voxel bin index into ``values`` over the padded buffer;
            -1 for voxels that were not counted.
    """

    def __init__(self, values: np.ndarray, counts: np.ndarray, bins: np.ndarray | None = None):
        self.values = np.asarray(values, dtype=np.float64)
        self.counts = np.asarray(counts, dtype=np.int64)
        self.bins = bins
        self.min_bin = 0
        self.max_bin = len(self.values) - 1

    def __len__(self) -> int:
        return len(self.values)

    @property
    def total(self) -> int:
        return int(self.counts.sum())

    def get_value(self, i: int) -> float:
        return float(self.values[i])

    def background_bin(self, background: float, kind: SampleKind) -> int:
        """First bin whose value is not below the background, capped at the top bin."""
        if len(self.values) == 0:
            return 0
        i = int(np.searchsorted(self.values, kind.round(background), side="left"))
        return min(i, self.max_bin)

    def compact(self, size: int) -> "Histogram":
        """Re-bin onto ``size`` equal-width bins between the minimum and maximum value.

        Histograms that already have at most ``size`` bins are returned unchanged.
        """
        if len(self.values) <= size or size < 2:
            return self
        lo = self.values[0]
        hi = self.values[-1]
        scale = (size - 1) / (hi - lo)
        mapping = np.floor((self.values - lo) * scale + 0.5).astype(np.int64)
        counts = np.bincount(mapping, weights=self.counts, minlength=size).astype(np.int64)
        values = lo + np.arange(size) / scale
        bins = None
        if self.bins is not None:
            bins = np.where(self.bins >= 0, mapping[np.maximum(self.bins, 0)], -1)
        return Histogram(values, counts, bins)


def select_voxels(types: np.ndarray, values: np.ndarray, geometry: Geometry,
                  scope: HistogramScope = HistogramScope.INSIDE) -> np.ndarray:
    """Padded indices of the voxels counted for ``scope``."""
    inner = geometry.inner
    finite = np.isfinite(values[inner])
    if scope is HistogramScope.INSIDE:
        keep = (types[inner] & EXCLUDED) == 0
    elif scope is HistogramScope.OUTSIDE:
        keep = ((types[inner] & EXCLUDED) != 0) & finite
    else:
        keep = finite
    return inner[keep]


def build_histogram(
    values: np.ndarray,
    types: np.ndarray,
    geometry: Geometry,
    kind: SampleKind,
    scope: HistogramScope = HistogramScope.INSIDE,
    with_bins: bool = False,
) -> Histogram:
    """Build the histogram of the selected voxels of a padded value buffer.

    Integer samples are counted into direct buckets; float samples are sorted
    into unique values.

    Args:
        values: Padded float64 sample buffer.
        types: Padded voxel type flags.
        geometry: Padded geometry of the buffers.
        kind: Sample kind of the image.
        scope: Which voxels to count.
        with_bins: If True, record the bin of every counted voxel in ``Histogram.bins``.

    Returns:
        Histogram: Histogram of the selected voxels.

    Raises:
        HistogramConsistencyError: If a selected voxel is not finite, i.e. the
            type flags do not exclude every non-finite value.
    """
    idx = select_voxels(types, values, geometry, scope)
    sample = values[idx]
    if sample.size == 0:
        return Histogram(np.empty(0), np.empty(0, dtype=np.int64),
                         np.full(values.shape, -1, dtype=np.int64) if with_bins else None)

    n_finite = int(np.count_nonzero(np.isfinite(sample)))
    if n_finite != idx.size:
        raise HistogramConsistencyError(
            f"Only {n_finite} of {idx.size} selected voxels are finite"
        )

    if kind.is_float:
        unique, inverse, counts = np.unique(sample, return_inverse=True, return_counts=True)
    else:
        ints = sample.astype(np.int64)
        lo = int(ints.min())
        bucket = np.bincount(ints - lo)
        present = bucket > 0
        unique = np.flatnonzero(present) + lo
        counts = bucket[present]
        lookup = np.cumsum(present) - 1
        inverse = lookup[ints - lo]

    bins = None
    if with_bins:
        bins = np.full(values.shape, -1, dtype=np.int64)
        bins[idx] = np.ravel(inverse)
    return Histogram(unique, counts, bins)
