from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

import numpy as np
from skimage.filters import (
    threshold_isodata,
    threshold_li,
    threshold_mean,
    threshold_minimum,
    threshold_otsu,
    threshold_triangle,
    threshold_yen,
)

from .histogram import Histogram
from .image import EXCLUDED, SampleKind
from .options import BackgroundMethod, PeakMethod, SearchMethod, ThresholdMethod


logger = logging.getLogger(__name__)


@dataclass
class FindFociStatistics:
    """Image statistics gathered during the init stage and completed with the final results."""

    region_minimum: float = 0.0
    region_maximum: float = 0.0
    region_average: float = 0.0
    region_std_dev: float = 0.0
    region_total: float = 0.0
    background: float = 0.0
    total_above_background: float = 0.0
    background_region_minimum: float = 0.0
    background_region_maximum: float = 0.0
    background_region_average: float = 0.0
    background_region_std_dev: float = 0.0
    image_minimum: float = 0.0
    total_above_image_minimum: float = 0.0

    def copy(self) -> "FindFociStatistics":
        return dataclasses.replace(self)


def get_statistics(histogram: Histogram) -> tuple[float, float, float, float, float]:
    """Return (min, max, mean, sample standard deviation, sum) of a histogram.

    An empty histogram gives all zeros.
    """
    total = histogram.total
    if total == 0:
        return 0.0, 0.0, 0.0, 0.0, 0.0
    values = histogram.values
    counts = histogram.counts.astype(np.float64)
    s = float(np.sum(values * counts))
    s2 = float(np.sum(values * values * counts))
    av = s / total
    var = (total * s2 - s * s) / total
    sd = float(np.sqrt(var / (total - 1.0))) if var > 0 and total > 1 else 0.0
    return float(values[0]), float(values[-1]), av, sd, s


def set_region_statistics(histogram: Histogram, stats: FindFociStatistics) -> None:
    """Fill the region statistics, copying them into the background-region fields."""
    lo, hi, av, sd, s = get_statistics(histogram)
    stats.region_minimum = stats.background_region_minimum = lo
    stats.region_maximum = stats.background_region_maximum = hi
    stats.region_average = stats.background_region_average = av
    stats.region_std_dev = stats.background_region_std_dev = sd
    stats.region_total = s


def set_background_statistics(histogram: Histogram, stats: FindFociStatistics) -> None:
    lo, hi, av, sd, _ = get_statistics(histogram)
    stats.background_region_minimum = lo
    stats.background_region_maximum = hi
    stats.background_region_average = av
    stats.background_region_std_dev = sd


def _threshold_value(sample: np.ndarray, method: ThresholdMethod) -> float:
    if method in (ThresholdMethod.DEFAULT, ThresholdMethod.ISO_DATA):
        return float(threshold_isodata(sample))
    elif method == ThresholdMethod.LI:
        return float(threshold_li(sample))
    elif method == ThresholdMethod.MEAN:
        return float(threshold_mean(sample))
    elif method == ThresholdMethod.MINIMUM:
        return float(threshold_minimum(sample))
    elif method == ThresholdMethod.OTSU:
        return float(threshold_otsu(sample))
    elif method == ThresholdMethod.TRIANGLE:
        return float(threshold_triangle(sample))
    elif method == ThresholdMethod.YEN:
        return float(threshold_yen(sample))
    raise ValueError(f"Unsupported method: {method}")


def get_threshold(method: ThresholdMethod, histogram: Histogram) -> float:
    """Auto-threshold a histogram and return the threshold as a histogram value.

    The threshold is the largest histogram value that is not above the level
    returned by scikit-image, so voxels strictly above it are foreground.

    Args:
        method: Thresholding method.
        histogram: Histogram of the voxels to threshold.

    Returns:
        float: Threshold value. The histogram minimum for ``ThresholdMethod.NONE``
            or when fewer than two distinct values are present.
    """
    if len(histogram) == 0:
        return 0.0
    if method == ThresholdMethod.NONE or len(histogram) < 2:
        return histogram.get_value(0)
    sample = np.repeat(histogram.values, histogram.counts)
    try:
        level = _threshold_value(sample, method)
    except RuntimeError as e:
        logger.warning("Threshold method %s failed (%s), using otsu", method.value, e)
        level = _threshold_value(sample, ThresholdMethod.OTSU)
    i = int(np.searchsorted(histogram.values, level, side="right")) - 1
    return histogram.get_value(max(i, 0))


def get_search_threshold(
    method: BackgroundMethod, parameter: float, stats: FindFociStatistics, kind: SampleKind
) -> float:
    """Return the background level for the background method.

    ``stats.background`` must already hold the auto-threshold when the method
    is ``BackgroundMethod.AUTO_THRESHOLD``.
    """
    if kind.is_float:
        if method == BackgroundMethod.ABSOLUTE:
            # Negative backgrounds are allowed for float data
            return float(parameter)
        elif method == BackgroundMethod.AUTO_THRESHOLD:
            return stats.background
        elif method == BackgroundMethod.MEAN:
            return stats.background_region_average
        elif method == BackgroundMethod.STD_DEV_ABOVE_MEAN:
            extra = parameter * stats.background_region_std_dev if parameter > 0 else 0.0
            return stats.background_region_average + extra
        return stats.region_minimum

    if method == BackgroundMethod.ABSOLUTE:
        return kind.round(max(parameter, 0.0))
    elif method == BackgroundMethod.AUTO_THRESHOLD:
        return kind.round(stats.background)
    elif method == BackgroundMethod.MEAN:
        return kind.round(stats.background_region_average)
    elif method == BackgroundMethod.STD_DEV_ABOVE_MEAN:
        extra = parameter * stats.background_region_std_dev if parameter >= 0 else 0.0
        return kind.round(stats.background_region_average + extra)
    elif method == BackgroundMethod.MIN_MASK_OR_ROI:
        return kind.round(stats.region_minimum)
    return 0.0


def get_tolerance(
    method: SearchMethod, parameter: float, stats: FindFociStatistics, v0: float, kind: SampleKind
) -> float:
    """Lowest value a voxel may have and still belong to a peak with maximum ``v0``."""
    bg = stats.background
    if method == SearchMethod.ABOVE_BACKGROUND:
        t = bg
    elif method == SearchMethod.FRACTION_OF_PEAK_MINUS_BACKGROUND:
        t = bg + max(parameter, 0.0) * (v0 - bg)
    elif method == SearchMethod.HALF_PEAK_VALUE:
        t = bg + 0.5 * (v0 - bg)
    else:
        return stats.region_minimum if kind.is_float else 0.0
    return kind.round(t)


def get_peak_height(
    method: PeakMethod, parameter: float, stats: FindFociStatistics, v0: float, kind: SampleKind
) -> float:
    """Height a peak needs above its highest saddle to survive the height merge."""
    bg = stats.background
    if not kind.is_float:
        parameter = max(parameter, 0.0)
    if method == PeakMethod.ABSOLUTE:
        height = parameter
    elif method == PeakMethod.RELATIVE:
        height = v0 * parameter
    else:
        height = (v0 - bg) * parameter

    if kind.is_float:
        if height <= 0:
            height = (v0 - bg) * 1e-6
        return height
    # It should be a peak
    return max(kind.round(height), 1.0)


def get_intensity_above_floor(values: np.ndarray, types: np.ndarray, inner: np.ndarray, floor: float) -> float:
    """Sum of ``v - floor`` over included voxels above the floor."""
    v = values[inner]
    keep = ((types[inner] & EXCLUDED) == 0) & (v > floor)
    return float(np.sum(v[keep] - floor))


def get_image_minimum(values: np.ndarray, types: np.ndarray, inner: np.ndarray) -> float:
    v = values[inner]
    keep = ((types[inner] & EXCLUDED) == 0) & np.isfinite(v)
    if not np.any(keep):
        return 0.0
    return float(v[keep].min())
