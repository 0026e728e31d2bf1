from __future__ import annotations

import logging

import numpy as np

from .histogram import Histogram
from .image import SADDLE, Geometry, SampleKind
from .options import AlgorithmOption, MaskMethod, ProcessorOptions
from .result import FindFociResult
from .statistics import FindFociStatistics, get_threshold


logger = logging.getLogger(__name__)

MAXIMA_CAPACITY = 65535

ABOVE_SADDLE_METHODS = (MaskMethod.PEAKS_ABOVE_SADDLE, MaskMethod.THRESHOLD_ABOVE_SADDLE)
THRESHOLD_METHODS = (MaskMethod.THRESHOLD, MaskMethod.THRESHOLD_ABOVE_SADDLE)
FRACTION_METHODS = (MaskMethod.FRACTION_OF_INTENSITY, MaskMethod.FRACTION_OF_HEIGHT)


def peak_histogram(values: np.ndarray) -> Histogram:
    unique, counts = np.unique(values, return_counts=True)
    return Histogram(unique, counts)


def fraction_of_intensity_cutoff(values: np.ndarray, background: float, fraction: float, kind: SampleKind) -> float:
    """Value at which the intensity above background, summed from the top, first exceeds ``fraction`` of the total.

    Voxels at or below the returned value are cut. Returns -inf when the
    fraction is never exceeded.
    """
    hist = peak_histogram(values)
    if kind.is_float:
        contribution = hist.counts * (hist.values - background)
        total = contribution.sum() * fraction
    else:
        background = np.floor(background)
        contribution = hist.counts * (hist.values - background)
        total = float(int(contribution.sum() * fraction))
    cumulative = np.cumsum(contribution[::-1])
    above = np.flatnonzero(cumulative > total)
    if above.size == 0:
        return -np.inf
    return float(hist.values[::-1][above[0]])


def find_borders(labels: np.ndarray, types: np.ndarray, geometry: Geometry, inner: np.ndarray) -> np.ndarray:
    """Saddle voxels of a peak that touch a different peak in the xy plane.

    Args:
        labels: Padded label buffer, 0 outside the listed peaks.
        types: Padded voxel flags.
        geometry: Padded geometry of the buffers.
        inner: Padded indices of the voxels to test.

    Returns:
        np.ndarray: Boolean array aligned with ``inner``.
    """
    own = labels[inner]
    border = np.zeros(inner.shape, dtype=bool)
    for off in geometry.offsets[:8]:
        other = labels[inner + off]
        border |= (other > 0) & (other != own)
    return border & (own > 0) & ((types[inner] & SADDLE) != 0)


def group_labels(labels: np.ndarray, n_labels: int):
    """Yield (label, indices) for each label in 1..n_labels present in ``labels``.

    Indices are in ascending order within each group.
    """
    order = np.argsort(labels, kind="stable")
    starts = np.searchsorted(labels[order], np.arange(1, n_labels + 2))
    for label in range(1, n_labels + 1):
        lo, hi = starts[label - 1], starts[label]
        if lo < hi:
            yield label, order[lo:hi]


def threshold_peaks(
    pixels: np.ndarray, labels: np.ndarray, n_labels: int, options: ProcessorOptions,
) -> np.ndarray:
    """Auto-threshold each labelled peak: 3 above the threshold, 2 at or below."""
    out = np.zeros_like(labels)
    for _, member in group_labels(labels, n_labels):
        v = pixels[member]
        t = get_threshold(options.threshold_method, peak_histogram(v))
        out[member] = np.where(v > t, 3, 2)
    return out


def generate_output_mask(
    options: ProcessorOptions,
    pixels: np.ndarray,
    maxima: np.ndarray,
    types: np.ndarray,
    stats: FindFociStatistics,
    results: list[FindFociResult],
    geometry: Geometry,
    kind: SampleKind,
    shape: tuple,
) -> np.ndarray | None:
    """Build the labelled output mask for the final results.

    Each peak's voxels are labelled ``n - rank`` so the first result has the
    highest label. Depending on the mask method voxels at or below a per-peak
    cut-off are cleared, or the peaks are auto-thresholded into a 3/2/1
    (above, below, border) mask.

    Args:
        options: Processor options; mask_method, fraction_parameter,
            threshold_method and the peak dots option are used.
        pixels: Padded sample buffer of the search image.
        maxima: Padded peak id buffer.
        types: Padded voxel flags.
        stats: Image statistics.
        results: Ranked results.
        geometry: Padded geometry of the buffers.
        kind: Sample kind of the image.
        shape: Shape of the input image.

    Returns:
        np.ndarray | None: uint8 or uint16 mask with the input's shape, or None
            when the mask method is NONE or the labels exceed 16 bits.
    """
    method = options.mask_method
    if method == MaskMethod.NONE:
        return None
    n = len(results)
    inner = geometry.inner
    ids = maxima[inner]
    v_inner = pixels[inner]

    label_of = np.zeros(int(maxima.max(initial=0)) + 1, dtype=np.int64)
    cutoff = np.full(label_of.shape, -np.inf)
    fraction = options.fraction_parameter
    if method == MaskMethod.FRACTION_OF_HEIGHT:
        fraction = min(max(1.0 - fraction, 0.0), 1.0)
    members = {}
    if method == MaskMethod.FRACTION_OF_INTENSITY:
        members = dict(group_labels(ids, len(label_of) - 1))
    for rank, result in enumerate(results):
        if result.id >= len(label_of):
            continue
        label_of[result.id] = n - rank
        if method in ABOVE_SADDLE_METHODS:
            cutoff[result.id] = result.highest_saddle_value
        elif method == MaskMethod.FRACTION_OF_HEIGHT:
            cutoff[result.id] = kind.round(fraction * (result.max_value - stats.background) + stats.background)
        elif method == MaskMethod.FRACTION_OF_INTENSITY:
            v = v_inner[members.get(result.id, np.empty(0, dtype=np.int64))]
            cutoff[result.id] = fraction_of_intensity_cutoff(v, stats.background, fraction, kind)

    labels = label_of[ids]
    below = (labels > 0) & (v_inner <= cutoff[ids])
    max_value = n

    if method in THRESHOLD_METHODS:
        padded = np.zeros(geometry.size, dtype=np.int64)
        padded[inner] = labels
        border = find_borders(padded, types, geometry, inner)
        labels = threshold_peaks(v_inner, labels, n, options)
        labels[border] = 1
        max_value = 3

    if method in ABOVE_SADDLE_METHODS or method in FRACTION_METHODS:
        labels[below] = 0

    if options.is_option(AlgorithmOption.OUTPUT_MASK_PEAK_DOTS):
        max_value += 1
        for result in results:
            labels[_inner_position(geometry, result)] = max_value

    if max_value > MAXIMA_CAPACITY:
        logger.warning("The number of maxima exceeds the 16-bit capacity used for display: %d", MAXIMA_CAPACITY)
        return None

    dtype = np.uint16 if max_value > 255 else np.uint8
    mask = labels.astype(dtype).reshape(geometry.maxz, geometry.maxy, geometry.maxx)
    return mask.reshape(shape)


def _inner_position(geometry: Geometry, result: FindFociResult) -> int:
    return (result.z * geometry.maxy + result.y) * geometry.maxx + result.x
