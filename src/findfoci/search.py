from __future__ import annotations

import logging
from typing import NamedTuple

import numpy as np
from scipy.ndimage import maximum_filter

from .errors import check_cancelled
from .histogram import Histogram
from .image import (
    EXCLUDED,
    IGNORE,
    LISTED,
    MAX_AREA,
    MAXIMUM,
    PLATEAU,
    SADDLE,
    Geometry,
    SampleKind,
)
from .options import SearchMethod
from .result import FindFociResult
from .saddle import Saddle, SaddleList
from .statistics import FindFociStatistics, get_tolerance


logger = logging.getLogger(__name__)


class MaxPoint(NamedTuple):
    index: int
    id: int
    value: float


def no_saddle_value(background: float) -> float:
    """Saddle value used for peaks with no neighbour."""
    return 0.0 if background >= 0 else float("-inf")


def _neighbour_max(values: np.ndarray, geometry: Geometry) -> np.ndarray:
    shape = (geometry.pz, geometry.py, geometry.px)
    footprint = np.ones((3, 3, 3) if geometry.is3d else (1, 3, 3), dtype=bool)
    footprint[tuple(s // 2 for s in footprint.shape)] = False
    nb = maximum_filter(values.reshape(shape), footprint=footprint, mode="constant", cval=-np.inf)
    return nb.ravel()


def expand_maximum(
    values: list, types: np.ndarray, maxima: np.ndarray, geometry: Geometry, index0: int, v0: float, peak_id: int
) -> int | None:
    """Flood the plateau of equal values around ``index0``.

    Returns:
        int | None: Index of the plateau voxel closest to the plateau centre, or None
            if the plateau touches a higher voxel and is therefore not a maximum.
    """
    offsets = geometry.offsets[::-1].tolist()
    types[index0] |= LISTED | PLATEAU
    points = [index0]
    is_plateau = True
    i = 0
    while i < len(points) and is_plateau:
        index1 = points[i]
        for off in offsets:
            index2 = index1 + off
            if types[index2] & IGNORE:
                continue
            v2 = values[index2]
            if v2 > v0:
                is_plateau = False
            elif v2 == v0:
                points.append(index2)
                types[index2] |= LISTED | PLATEAU
        i += 1

    pts = np.array(points, dtype=np.int64)
    types[pts] &= ~np.uint8(LISTED)
    if not is_plateau:
        return None

    x, y, z = geometry.coord_arrays(pts)
    d2 = (x - x.mean()) ** 2 + (y - y.mean()) ** 2 + (z - z.mean()) ** 2
    # First minimum when scanning from the end of the list
    seed = len(points) - 1 - int(np.argmin(d2[::-1]))
    types[pts] |= MAX_AREA
    maxima[pts] = peak_id
    types[points[seed]] |= MAXIMUM
    return points[seed]


def get_sorted_maxpoints(
    values: np.ndarray,
    types: np.ndarray,
    maxima: np.ndarray,
    geometry: Geometry,
    region_minimum: float,
    threshold: float,
) -> list[MaxPoint]:
    """Find all local maxima at or above ``threshold``.

    Plateaus of equal value are reduced to a single maximum at their centre.
    Maxima are returned highest first and ``maxima`` is labelled with ids
    1..n in that order.

    Args:
        values: Padded search image.
        types: Padded voxel flags, updated with MAXIMUM, MAX_AREA and PLATEAU.
        maxima: Padded peak id buffer, updated in place.
        geometry: Buffer geometry.
        region_minimum: Minimum of the included voxels; voxels at this value are never maxima.
        threshold: Background level.

    Returns:
        list[MaxPoint]: Maxima sorted by value, descending.
    """
    nb = _neighbour_max(values, geometry)
    inner = geometry.inner
    v = values[inner]
    candidate = (
        ((types[inner] & EXCLUDED) == 0)
        & (v >= threshold)
        & (v != region_minimum)
        & (v >= nb[inner])
    )
    candidates = inner[candidate][::-1]
    logger.debug("Maxima candidates: %d", candidates.size)

    value_list = values.tolist()
    maxpoints = []
    peak_id = 0
    for i in candidates.tolist():
        if types[i] & (MAX_AREA | PLATEAU):
            continue
        v0 = value_list[i]
        if nb[i] < v0:
            peak_id += 1
            types[i] |= MAXIMUM | MAX_AREA
            maxima[i] = peak_id
            maxpoints.append(MaxPoint(i, peak_id, v0))
        else:
            seed = expand_maximum(value_list, types, maxima, geometry, i, v0, peak_id + 1)
            if seed is not None:
                peak_id += 1
                maxpoints.append(MaxPoint(seed, peak_id, v0))

    maxpoints.sort(key=lambda m: -m.value)
    id_map = np.zeros(len(maxpoints) + 1, dtype=np.int32)
    for new_id, m in enumerate(maxpoints, start=1):
        id_map[m.id] = new_id
    maxima[:] = id_map[maxima]
    return [MaxPoint(m.index, i, m.value) for i, m in enumerate(maxpoints, start=1)]


def assign_maxima(maxpoints: list[MaxPoint], geometry: Geometry, background: float) -> list[FindFociResult]:
    """Create a single-voxel result for each maximum."""
    saddle = no_saddle_value(background)
    results = []
    for m in maxpoints:
        x, y, z = geometry.coords(m.index)
        results.append(
            FindFociResult(
                id=m.id,
                x=x,
                y=y,
                z=z,
                index=m.index,
                count=1,
                max_value=m.value,
                total_intensity=m.value,
                highest_saddle_value=saddle,
                centre_x=float(x),
                centre_y=float(y),
                centre_z=float(z),
            )
        )
    return results


def process_level(values: list, types: bytearray, maxima: list, points: list, directions: list) -> tuple[int, list]:
    """Assign each voxel of a level to the peak of its steepest higher neighbour.

    Returns:
        tuple[int, list]: Number of voxels dealt with and the voxels that still
            have no higher assigned neighbour.
    """
    changed = 0
    unchanged = []
    for index in points:
        if types[index] & (EXCLUDED | MAX_AREA):
            changed += 1
            continue
        v = values[index]
        max_value = v
        max_offset = 0
        found = False
        for off, flat in directions:
            index2 = index + off
            vn = values[index2]
            if max_value < vn:
                max_value = vn
                max_offset = off
                found = True
            elif max_value == vn:
                if v != vn:
                    # Favour flat edges over diagonals for equal neighbours
                    if flat:
                        max_offset = off
                elif types[index2] & MAX_AREA and (not found or flat):
                    max_offset = off
                    found = True
        if not found:
            unchanged.append(index)
            continue
        types[index] |= MAX_AREA
        maxima[index] = maxima[index + max_offset]
        changed += 1
    return changed, unchanged


def assign_points_to_maxima(
    values: np.ndarray,
    histogram: Histogram,
    types: np.ndarray,
    maxima: np.ndarray,
    geometry: Geometry,
    background: float,
    kind: SampleKind,
    cancel=None,
) -> None:
    """Grow the peaks downhill, one histogram level at a time.

    Levels from the background bin up to (excluding) the top bin are processed
    highest first. Voxels that cannot be assigned in a level are carried to
    the next level down.
    """
    if histogram.bins is None or len(histogram) == 0:
        return
    min_bin = histogram.background_bin(background, kind)
    max_bin = histogram.max_bin
    bins = histogram.bins
    selected = np.flatnonzero((bins >= min_bin) & (bins < max_bin) & ((types & EXCLUDED) == 0))
    if selected.size == 0:
        return

    # Descending index order within each level
    selected = selected[::-1]
    selected = selected[np.argsort(bins[selected], kind="stable")]
    counts = np.bincount(bins[selected], minlength=max_bin)
    starts = np.concatenate(([0], np.cumsum(counts)))
    order = selected.tolist()
    levels = {b: order[starts[b]:starts[b + 1]] for b in range(min_bin, max_bin) if counts[b]}

    value_list = values.tolist()
    type_buf = bytearray(types.tobytes())
    maxima_list = maxima.tolist()
    directions = [(int(geometry.offsets[d]), bool(geometry.flat_edge[d]))
                  for d in reversed(range(geometry.n_directions))]

    passes = 0
    for level in range(max_bin - 1, min_bin - 1, -1):
        points = levels.pop(level, None)
        if not points:
            continue
        while points:
            passes += 1
            n, points = process_level(value_list, type_buf, maxima_list, points, directions)
            if n == 0:
                break
        if passes % 64 == 0:
            check_cancelled(cancel)
        if points:
            logger.debug("Carrying %d unassigned voxels below level %d", len(points), level)
            next_level = level - 1
            while next_level >= min_bin and next_level not in levels:
                next_level -= 1
            if next_level >= min_bin:
                levels[next_level] = levels[next_level] + points

    types[:] = np.frombuffer(bytes(type_buf), dtype=np.uint8)
    maxima[:] = maxima_list


def prune_maxima(
    values: np.ndarray,
    types: np.ndarray,
    maxima: np.ndarray,
    results: list[FindFociResult],
    search_method: SearchMethod,
    search_parameter: float,
    stats: FindFociStatistics,
    kind: SampleKind,
) -> None:
    """Unassign voxels below the search tolerance of their peak."""
    threshold = np.full(len(results) + 1, -np.inf)
    for result in results:
        threshold[result.id] = get_tolerance(search_method, search_parameter, stats, result.max_value, kind)
    prune = (maxima != 0) & (values < threshold[maxima])
    maxima[prune] = 0
    types[prune] &= ~np.uint8(MAX_AREA)


def calculate_initial_results(values: np.ndarray, maxima: np.ndarray, results: list[FindFociResult]) -> None:
    """Sum the size and intensity of each peak."""
    assigned = np.flatnonzero(maxima)
    ids = maxima[assigned]
    n = len(results) + 1
    count = np.bincount(ids, minlength=n)
    intensity = np.bincount(ids, weights=values[assigned], minlength=n)
    for result in results:
        result.count = int(count[result.id])
        result.total_intensity = float(intensity[result.id])
        result.average_intensity = result.total_intensity / result.count if result.count else 0.0


def calculate_native_results(
    original: np.ndarray, maxima: np.ndarray, results: list[FindFociResult], n_peaks: int
) -> None:
    """Recompute total intensity and maximum from the unblurred image."""
    assigned = np.flatnonzero(maxima)
    ids = maxima[assigned]
    v = original[assigned]
    intensity = np.bincount(ids, weights=v, minlength=n_peaks + 1)
    peak_max = np.zeros(n_peaks + 1)
    np.maximum.at(peak_max, ids, v)
    for result in results:
        if intensity[result.id] != 0:
            result.total_intensity = float(intensity[result.id])
            result.max_value = float(peak_max[result.id])


def find_bounds(maxima: np.ndarray, results: list[FindFociResult], geometry: Geometry, n_peaks: int) -> None:
    """Set the inclusive-min / exclusive-max bounding box of each peak."""
    assigned = np.flatnonzero(maxima)
    ids = maxima[assigned]
    x, y, z = geometry.coord_arrays(assigned)
    big = np.iinfo(np.int64).max
    lo = [np.full(n_peaks + 1, big) for _ in range(3)]
    hi = [np.full(n_peaks + 1, -1) for _ in range(3)]
    for c, l, h in zip((x, y, z), lo, hi):
        np.minimum.at(l, ids, c)
        np.maximum.at(h, ids, c)
    for result in results:
        i = result.id
        if hi[0][i] < 0:
            result.minx = result.miny = result.minz = 0
            result.maxx = result.maxy = result.maxz = 0
            continue
        result.minx, result.miny, result.minz = int(lo[0][i]), int(lo[1][i]), int(lo[2][i])
        result.maxx, result.maxy, result.maxz = int(hi[0][i]) + 1, int(hi[1][i]) + 1, int(hi[2][i]) + 1


def find_saddle_points(
    values: np.ndarray,
    types: np.ndarray,
    maxima: np.ndarray,
    results: list[FindFociResult],
    geometry: Geometry,
    saddle_floor: float,
) -> list[SaddleList]:
    """Find the highest saddle between every pair of touching peaks.

    Each touching voxel pair from different peaks gives a candidate saddle at
    the lower of the two values, and the lower voxel is flagged SADDLE. Only
    values above ``saddle_floor`` are recorded.

    Returns:
        list[SaddleList]: Saddle list per peak id (index 0 is unused), sorted
            highest value first.
    """
    n = len(results)
    assigned = np.flatnonzero(maxima)
    pairs_a, pairs_b, pairs_v = [], [], []
    for off in geometry.half_offsets.tolist():
        q = assigned + off
        id_p = maxima[assigned]
        id_q = maxima[q]
        touch = (id_q != 0) & (id_q != id_p)
        if not np.any(touch):
            continue
        p = assigned[touch]
        q = q[touch]
        id_p = id_p[touch]
        id_q = id_q[touch]
        vp = values[p]
        vq = values[q]
        types[p[vp <= vq]] |= SADDLE
        types[q[vq <= vp]] |= SADDLE
        m = np.minimum(vp, vq)
        pairs_a.extend((id_p, id_q))
        pairs_b.extend((id_q, id_p))
        pairs_v.extend((m, m))

    saddles = [SaddleList() for _ in range(n + 1)]
    if pairs_a:
        a = np.concatenate(pairs_a)
        b = np.concatenate(pairs_b)
        v = np.concatenate(pairs_v)
        keep = v > saddle_floor
        a, b, v = a[keep], b[keep], v[keep]
        order = np.lexsort((-v, b, a))
        a, b, v = a[order], b[order], v[order]
        first = np.ones(a.size, dtype=bool)
        first[1:] = (a[1:] != a[:-1]) | (b[1:] != b[:-1])
        for i, j, s in zip(a[first].tolist(), b[first].tolist(), v[first].tolist()):
            saddles[i].add(Saddle(j, s))

    for result in results:
        saddle_list = saddles[result.id]
        saddle_list.sort()
        if len(saddle_list):
            result.saddle_neighbour_id = saddle_list[0].id
            result.highest_saddle_value = saddle_list[0].value
    return saddles


def analyse_peaks(values: np.ndarray, maxima: np.ndarray, results: list[FindFociResult], n_peaks: int) -> None:
    """Count the voxels and intensity of each peak above its highest saddle."""
    saddle = np.full(n_peaks + 1, np.inf)
    for result in results:
        saddle[result.id] = result.highest_saddle_value
    assigned = np.flatnonzero(maxima)
    ids = maxima[assigned]
    v = values[assigned]
    above = v > saddle[ids]
    count = np.bincount(ids[above], minlength=n_peaks + 1)
    intensity = np.bincount(ids[above], weights=v[above], minlength=n_peaks + 1)
    for result in results:
        result.count_above_saddle = int(count[result.id])
        result.intensity_above_saddle = float(intensity[result.id])


def analyse_contiguous_peak(
    values: np.ndarray,
    maxima: np.ndarray,
    geometry: Geometry,
    result: FindFociResult,
    find_id=None,
) -> None:
    """Count the voxels connected to the peak maximum that lie above the highest saddle.

    Args:
        values: Padded search image.
        maxima: Padded peak id buffer.
        geometry: Buffer geometry.
        result: Peak to analyse; its count and intensity above saddle are updated.
        find_id: Optional callable returning the current peak id for an id in
            ``maxima``, used while peaks are being merged and ``maxima`` has not
            been relabelled.
    """
    saddle = result.highest_saddle_value
    index0 = result.index
    peak_id = int(maxima[index0])
    if find_id is not None:
        peak_id = find_id(peak_id)
    offsets = geometry.offsets.tolist()
    seen = {index0}
    points = [index0]
    total = float(values[index0])
    i = 0
    while i < len(points):
        index1 = points[i]
        for off in offsets:
            index2 = index1 + off
            if index2 in seen:
                continue
            label = int(maxima[index2])
            if find_id is not None and label:
                label = find_id(label)
            if label != peak_id:
                continue
            v = values[index2]
            if v > saddle:
                seen.add(index2)
                points.append(index2)
                total += float(v)
        i += 1
    result.count_above_saddle = len(points)
    result.intensity_above_saddle = total
