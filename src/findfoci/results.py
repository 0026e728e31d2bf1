from __future__ import annotations

import logging

from .image import Geometry
from .options import SortMethod
from .result import FindFociResult
from .statistics import FindFociStatistics


logger = logging.getLogger(__name__)


def get_absolute_height(result: FindFociResult, floor: float) -> float:
    """Height of the maximum above its highest saddle, or above ``floor`` when the saddle is lower."""
    if result.highest_saddle_value > floor:
        return result.max_value - result.highest_saddle_value
    return result.max_value - floor


def get_relative_height(result: FindFociResult, floor: float, absolute_height: float) -> float:
    span = result.max_value - floor
    if span == 0:
        return 0.0
    return absolute_height / span


def get_sort_value(
    result: FindFociResult, sort_method: SortMethod, stats: FindFociStatistics | None = None,
    geometry: Geometry | None = None,
) -> float:
    """Value of ``result`` used to rank it for ``sort_method``."""
    if sort_method == SortMethod.INTENSITY:
        return result.total_intensity
    elif sort_method == SortMethod.INTENSITY_MINUS_BACKGROUND:
        return result.total_intensity_above_background
    elif sort_method == SortMethod.COUNT:
        return result.count
    elif sort_method == SortMethod.MAX_VALUE:
        return result.max_value
    elif sort_method == SortMethod.AVERAGE_INTENSITY:
        return result.average_intensity
    elif sort_method == SortMethod.AVERAGE_INTENSITY_MINUS_BACKGROUND:
        return result.average_intensity_above_background
    elif sort_method == SortMethod.X:
        return result.x
    elif sort_method == SortMethod.Y:
        return result.y
    elif sort_method == SortMethod.Z:
        return result.z
    elif sort_method == SortMethod.SADDLE_HEIGHT:
        return result.highest_saddle_value
    elif sort_method == SortMethod.COUNT_ABOVE_SADDLE:
        return result.count_above_saddle
    elif sort_method == SortMethod.INTENSITY_ABOVE_SADDLE:
        return result.intensity_above_saddle
    elif sort_method == SortMethod.ABSOLUTE_HEIGHT:
        return get_absolute_height(result, stats.background)
    elif sort_method == SortMethod.RELATIVE_HEIGHT_ABOVE_BACKGROUND:
        absolute = get_absolute_height(result, stats.background)
        return get_relative_height(result, stats.background, absolute)
    elif sort_method == SortMethod.PEAK_ID:
        return result.id
    elif sort_method == SortMethod.XYZ:
        return float(result.x) * geometry.maxy * geometry.maxz + result.y * geometry.maxz + result.z
    elif sort_method == SortMethod.INTENSITY_MINUS_MIN:
        return result.total_intensity_above_image_minimum
    elif sort_method == SortMethod.AVERAGE_INTENSITY_MINUS_MIN:
        return result.average_intensity_above_image_minimum
    raise ValueError(f"Unsupported method: {sort_method}")


def is_sort_index_sensitive_to_negative_values(sort_method: SortMethod) -> bool:
    """True if ranking by ``sort_method`` changes when the image is offset below zero.

    These keys sum raw intensities, so peaks of different size shift by
    different amounts.
    """
    return sort_method in (SortMethod.INTENSITY, SortMethod.INTENSITY_ABOVE_SADDLE)


def _set_sort_values(results, sort_method, stats, geometry) -> None:
    for result in results:
        result.sort_value = get_sort_value(result, sort_method, stats, geometry)


def _desc_key(r: FindFociResult):
    return -r.sort_value, -r.max_value, -r.count, r.x, r.y, r.z


def _asc_key(r: FindFociResult):
    # Ties are broken in the reverse of the descending order
    return r.sort_value, r.max_value, r.count, -r.x, -r.y, -r.z


def sort_desc_results(
    results: list[FindFociResult], sort_method: SortMethod, stats: FindFociStatistics | None = None,
    geometry: Geometry | None = None,
) -> None:
    """Sort in place, highest sort value first."""
    _set_sort_values(results, sort_method, stats, geometry)
    results.sort(key=_desc_key)


def sort_asc_results(
    results: list[FindFociResult], sort_method: SortMethod, stats: FindFociStatistics | None = None,
    geometry: Geometry | None = None,
) -> None:
    _set_sort_values(results, sort_method, stats, geometry)
    results.sort(key=_asc_key)


def calculate_final_results(results: list[FindFociResult], background: float, minimum: float) -> None:
    """Fill the averages and the totals above the background and the image minimum."""
    for result in results:
        n = result.count
        result.total_intensity_above_background = result.total_intensity - background * n
        result.total_intensity_above_image_minimum = result.total_intensity - minimum * n
        result.average_intensity = result.total_intensity / n
        result.average_intensity_above_background = result.total_intensity_above_background / n
        result.average_intensity_above_image_minimum = result.total_intensity_above_image_minimum / n


def trim(results: list[FindFociResult], max_peaks: int) -> list[FindFociResult]:
    """Keep the first ``max_peaks`` results; 0 keeps them all."""
    if 0 < max_peaks < len(results):
        return results[:max_peaks]
    return results


def renumber_peaks(results: list[FindFociResult]) -> None:
    """Renumber ids 1..n in list order, remapping saddle neighbours (0 if no longer listed)."""
    id_map = {r.id: i for i, r in enumerate(results, start=1)}
    for result in results:
        result.id = id_map[result.id]
        result.saddle_neighbour_id = id_map.get(result.saddle_neighbour_id, 0)


def format_results_table(results: list[FindFociResult], float_image: bool = False) -> str:
    """Tab-separated table of the main result columns."""
    header = ["Peak #", "X", "Y", "Z", "Size", "Total", "Max", "Saddle", "Neighbour",
              "Size>Saddle", "Total>Saddle", "Total-Bg", "Av-Bg"]
    fmt = "{:.4g}" if float_image else "{:.0f}"
    lines = ["\t".join(header)]
    for r in results:
        row = [
            str(r.id), str(r.x), str(r.y), str(r.z), str(r.count),
            fmt.format(r.total_intensity), fmt.format(r.max_value),
            fmt.format(r.highest_saddle_value), str(r.saddle_neighbour_id),
            str(r.count_above_saddle), fmt.format(r.intensity_above_saddle),
            "{:.4g}".format(r.total_intensity_above_background),
            "{:.4g}".format(r.average_intensity_above_background),
        ]
        lines.append("\t".join(row))
    return "\n".join(lines)
