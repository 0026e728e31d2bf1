from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .errors import check_cancelled
from .image import Geometry, SampleKind
from .options import PeakMethod, SortMethod
from .result import FindFociResult
from .results import sort_asc_results, sort_desc_results
from .saddle import Saddle, SaddleList
from .search import analyse_contiguous_peak, analyse_peaks, find_bounds
from .statistics import FindFociStatistics, get_peak_height


logger = logging.getLogger(__name__)

# Polling interval for the cancel signal while merging
CANCEL_CHECK = 64


class PeakIdMap:
    """Mapping from original peak ids to the peak they were merged into.

    A union-find forest with path compression. Id 0 is the removed/background
    root, so removing a peak links it to 0.
    """

    def __init__(self, n_peaks: int):
        self.parent = list(range(n_peaks + 1))

    def __len__(self) -> int:
        return len(self.parent)

    def find(self, peak_id: int) -> int:
        parent = self.parent
        root = peak_id
        while parent[root] != root:
            root = parent[root]
        while parent[peak_id] != root:
            parent[peak_id], peak_id = root, parent[peak_id]
        return root

    def union(self, peak_id: int, neighbour_id: int) -> None:
        """Redirect ``peak_id`` (and everything mapped to it) to ``neighbour_id``."""
        self.parent[self.find(peak_id)] = self.find(neighbour_id)

    def remove(self, peak_id: int) -> None:
        self.parent[self.find(peak_id)] = 0

    def is_root(self, peak_id: int) -> bool:
        return peak_id != 0 and self.parent[peak_id] == peak_id

    def resolve(self) -> np.ndarray:
        """Array lookup of the current id of every original id."""
        return np.array([self.find(i) for i in range(len(self.parent))], dtype=np.int32)

    def resolve_ids(self, ids: np.ndarray) -> np.ndarray:
        """Current ids for an array of original ids, resolving each distinct id once."""
        unique, inverse = np.unique(ids, return_inverse=True)
        current = np.array([self.find(int(i)) for i in unique], dtype=np.int32)
        return current[inverse].reshape(ids.shape)

    def count(self) -> int:
        return sum(1 for i in range(1, len(self.parent)) if self.parent[i] == i)

    def copy(self) -> "PeakIdMap":
        other = PeakIdMap(0)
        other.parent = list(self.parent)
        return other


@dataclass
class MergeTempResults:
    """Working state shared by the merge passes."""

    results: list[FindFociResult]
    saddles: list[SaddleList]
    id_map: PeakIdMap
    by_id: list

    @classmethod
    def create(cls, results: list[FindFociResult], saddles: list[SaddleList]) -> "MergeTempResults":
        by_id = [None] * (len(saddles))
        for result in results:
            by_id[result.id] = result
        return cls(results, saddles, PeakIdMap(len(saddles) - 1), by_id)

    def copy(self) -> "MergeTempResults":
        results = [r.copy() for r in self.results]
        by_id = [None] * len(self.by_id)
        for result in results:
            by_id[result.id] = result
        return MergeTempResults(results, [s.copy() for s in self.saddles], self.id_map.copy(), by_id)


def clear_saddle(result: FindFociResult, saddle_floor: float) -> None:
    result.count_above_saddle = result.count
    result.intensity_above_saddle = result.total_intensity
    result.saddle_neighbour_id = 0
    result.highest_saddle_value = saddle_floor


def consolidate_saddles(result: FindFociResult, saddles: SaddleList, id_map: PeakIdMap) -> None:
    """Map saddle ids to current peaks, dropping removed peaks and the peak itself."""
    kept = []
    for saddle in saddles:
        new_id = id_map.find(saddle.id)
        if new_id == 0 or new_id == result.id:
            continue
        saddle.id = new_id
        kept.append(saddle)
    saddles.saddles = kept


def update_saddle_details(results: list[FindFociResult], mapping: np.ndarray, saddle_floor: float) -> None:
    """Remap saddle neighbours; a neighbour that was removed or merged into the peak clears the saddle."""
    for result in results:
        neighbour_id = int(mapping[result.saddle_neighbour_id])
        if neighbour_id == result.id:
            neighbour_id = 0
        if neighbour_id == 0:
            clear_saddle(result, saddle_floor)
        else:
            result.saddle_neighbour_id = neighbour_id


def reassign_maxima(maxima: np.ndarray, mapping: np.ndarray) -> None:
    maxima[:] = mapping[maxima]


def remove_flagged_results(results: list[FindFociResult]) -> list[FindFociResult]:
    """Drop results flagged as merged (total intensity of -inf), leaving the rest sorted by intensity."""
    sort_desc_results(results, SortMethod.INTENSITY)
    return [r for r in results if r.total_intensity != -np.inf]


def _union_bounds(target: FindFociResult, other: FindFociResult) -> None:
    target.minx = min(target.minx, other.minx)
    target.miny = min(target.miny, other.miny)
    target.minz = min(target.minz, other.minz)
    target.maxx = max(target.maxx, other.maxx)
    target.maxy = max(target.maxy, other.maxy)
    target.maxz = max(target.maxz, other.maxz)


def box_indices(geometry: Geometry, result: FindFociResult) -> np.ndarray:
    """Padded indices of the voxels inside the result bounds."""
    z = np.arange(result.minz, result.maxz) + geometry.zpad
    y = np.arange(result.miny, result.maxy) + 1
    x = np.arange(result.minx, result.maxx) + 1
    return (z[:, None, None] * geometry.xy + y[None, :, None] * geometry.px + x[None, None, :]).ravel()


class PeakMerger:
    """Merges peaks that fail the height, size and size-above-saddle criteria.

    Merging a peak adds its size and intensity to the neighbour it shares its
    highest saddle with and moves its saddles to that neighbour. A peak with no
    neighbour is removed.

    Args:
        values: Padded search image.
        maxima: Padded peak id buffer; relabelled in place when ids are reassigned.
        geometry: Buffer geometry.
        stats: Image statistics (background).
        kind: Sample kind of the image.
        saddle_floor: Saddle value used for peaks without a neighbour.
        cancel: Optional cancel signal with ``is_set()``.
    """

    def __init__(self, values, maxima, geometry: Geometry, stats: FindFociStatistics, kind: SampleKind,
                 saddle_floor: float, cancel=None):
        self.values = values
        self.maxima = maxima
        self.geometry = geometry
        self.stats = stats
        self.kind = kind
        self.saddle_floor = saddle_floor
        self.cancel = cancel

    def merge_using_height(self, merge: MergeTempResults, peak_method: PeakMethod, peak_parameter: float) -> None:
        """Merge peaks whose maximum is not high enough above their highest saddle.

        Peaks are processed in order of saddle height, highest first. Peaks with no
        saddle are measured against the background.
        """
        if peak_parameter <= 0:
            return
        results = merge.results
        sort_desc_results(results, SortMethod.SADDLE_HEIGHT, self.stats)
        for i, result in enumerate(results):
            if i % CANCEL_CHECK == 0:
                check_cancelled(self.cancel)
            peak_id = result.id
            if not merge.id_map.is_root(peak_id):
                continue
            saddles = merge.saddles[peak_id]
            consolidate_saddles(result, saddles, merge.id_map)
            highest = saddles[0] if len(saddles) else None
            base = self.stats.background if highest is None else highest.value
            height = get_peak_height(peak_method, peak_parameter, self.stats, result.max_value, self.kind)
            if result.max_value - base < height:
                self._merge_or_remove(merge, result, saddles, highest)
        logger.info("Height filter: number of peaks = %d", merge.id_map.count())

    def merge_using_size(self, merge: MergeTempResults, min_size: int) -> None:
        """Merge peaks with fewer than ``min_size`` voxels, smallest first."""
        if min_size <= 1:
            return
        results = merge.results
        sort_asc_results(results, SortMethod.COUNT)
        for i, result in enumerate(results):
            if i % CANCEL_CHECK == 0:
                check_cancelled(self.cancel)
            peak_id = result.id
            if not merge.id_map.is_root(peak_id):
                continue
            if result.count < min_size:
                saddles = merge.saddles[peak_id]
                consolidate_saddles(result, saddles, merge.id_map)
                highest = saddles[0] if len(saddles) else None
                self._merge_or_remove(merge, result, saddles, highest)
        logger.info("Size filter: number of peaks = %d", merge.id_map.count())

    def merge_above_saddle(self, merge: MergeTempResults, min_size: int, contiguous: bool) -> None:
        """Merge peaks with fewer than ``min_size`` voxels above their highest saddle.

        The receiving peak's size above its saddle is recounted after every merge.
        """
        results = merge.results
        mapping = merge.id_map.resolve()
        update_saddle_details(results, mapping, self.saddle_floor)
        reassign_maxima(self.maxima, mapping)

        n_peaks = len(merge.by_id) - 1
        find_bounds(self.maxima, results, self.geometry, n_peaks)
        if contiguous:
            for result in results:
                if result.highest_saddle_value != self.saddle_floor and merge.id_map.is_root(result.id):
                    analyse_contiguous_peak(self.values, self.maxima, self.geometry, result)
        else:
            analyse_peaks(self.values, self.maxima, results, n_peaks)

        sort_asc_results(results, SortMethod.COUNT_ABOVE_SADDLE)
        for i, result in enumerate(results):
            if i % CANCEL_CHECK == 0:
                check_cancelled(self.cancel)
            peak_id = result.id
            if not merge.id_map.is_root(peak_id):
                continue
            if result.count_above_saddle < min_size:
                saddles = merge.saddles[peak_id]
                consolidate_saddles(result, saddles, merge.id_map)
                highest = saddles[0] if len(saddles) else None
                self._merge_or_remove(merge, result, saddles, highest, update_above_saddle=True,
                                      contiguous=contiguous)
        logger.info("Size above saddle filter: number of peaks = %d", merge.id_map.count())

    def _merge_or_remove(self, merge, result, saddles, highest: Saddle | None, **kwargs) -> None:
        if highest is None:
            self.merge_peak(merge, result, None, saddles, None, **kwargs)
        else:
            neighbour = merge.by_id[highest.id]
            self.merge_peak(merge, result, neighbour, saddles, merge.saddles[highest.id], **kwargs)

    def merge_peak(
        self,
        merge: MergeTempResults,
        result: FindFociResult,
        neighbour: FindFociResult | None,
        peak_saddles: SaddleList,
        neighbour_saddles: SaddleList | None,
        update_above_saddle: bool = False,
        contiguous: bool = False,
    ) -> None:
        """Merge ``result`` into ``neighbour``, or remove it when there is no neighbour.

        The merged result is flagged with a total intensity of -inf.
        """
        peak_id = result.id
        id_map = merge.id_map

        if neighbour is not None:
            neighbour_id = neighbour.id
            neighbour.total_intensity += result.total_intensity
            neighbour.count += result.count
            neighbour.average_intensity = neighbour.total_intensity / neighbour.count
            if update_above_saddle:
                _union_bounds(neighbour, result)

            if neighbour.max_value < result.max_value:
                neighbour.max_value = result.max_value
                neighbour.x, neighbour.y, neighbour.z = result.x, result.y, result.z
                neighbour.centre_x, neighbour.centre_y, neighbour.centre_z = (
                    result.centre_x, result.centre_y, result.centre_z)
                neighbour.index = result.index

            kept = []
            for saddle in neighbour_saddles:
                new_id = id_map.find(saddle.id)
                if new_id in (0, peak_id, neighbour_id):
                    continue
                saddle.id = new_id
                kept.append(saddle)
            neighbour_saddles.saddles = kept

            # Move the peak's remaining saddles to the neighbour
            seen = set()
            for saddle in peak_saddles:
                if saddle.id == neighbour_id or saddle.id in seen:
                    continue
                seen.add(saddle.id)
                existing = next((s for s in neighbour_saddles if s.id == saddle.id), None)
                if existing is None:
                    neighbour_saddles.add(saddle)
                elif existing.value < saddle.value:
                    existing.value = saddle.value
            neighbour_saddles.remove_duplicates()
            id_map.union(peak_id, neighbour_id)
        else:
            id_map.remove(peak_id)

        result.total_intensity = -np.inf
        peak_saddles.free()

        if neighbour is None:
            return
        if len(neighbour_saddles):
            top = neighbour_saddles[0]
            neighbour.saddle_neighbour_id = id_map.find(top.id)
            neighbour.highest_saddle_value = top.value
            if update_above_saddle:
                self._reanalyse_peak(neighbour, id_map, contiguous)
        else:
            clear_saddle(neighbour, self.saddle_floor)

    def _reanalyse_peak(self, result: FindFociResult, id_map: PeakIdMap, contiguous: bool) -> None:
        if contiguous:
            analyse_contiguous_peak(self.values, self.maxima, self.geometry, result, id_map.find)
            return
        box = box_indices(self.geometry, result)
        ids = id_map.resolve_ids(self.maxima[box])
        v = self.values[box]
        above = (ids == result.id) & (v > result.highest_saddle_value)
        result.count_above_saddle = int(np.count_nonzero(above))
        result.intensity_above_saddle = float(np.sum(v[above]))

    def merge_final(self, merge: MergeTempResults) -> list[FindFociResult]:
        """Drop merged results, relabel ``maxima`` with the surviving ids and refresh saddle neighbours."""
        results = remove_flagged_results(merge.results)
        mapping = merge.id_map.resolve()
        reassign_maxima(self.maxima, mapping)
        update_saddle_details(results, mapping, self.saddle_floor)
        return results

    def _remove_ids(self, results: list[FindFociResult], remove: set, n_peaks: int) -> list[FindFociResult]:
        if not remove:
            return results
        mapping = np.arange(n_peaks + 1, dtype=np.int32)
        mapping[list(remove)] = 0
        for result in results:
            if result.id in remove:
                result.total_intensity = -np.inf
        results = remove_flagged_results(results)
        reassign_maxima(self.maxima, mapping)
        update_saddle_details(results, mapping, self.saddle_floor)
        return results

    def remove_edge_maxima(self, results: list[FindFociResult], n_peaks: int) -> list[FindFociResult]:
        """Remove peaks with any voxel on the x or y border of any slice."""
        labels = self.geometry.unpad(self.maxima)
        border = np.concatenate(
            [labels[:, 0, :].ravel(), labels[:, -1, :].ravel(), labels[:, :, 0].ravel(), labels[:, :, -1].ravel()]
        )
        edge = set(np.unique(border).tolist()) - {0}
        logger.debug("Edge maxima: %d", len(edge))
        return self._remove_ids(results, edge, n_peaks)

    def remove_large_peaks(self, results: list[FindFociResult], max_size: int, n_peaks: int) -> list[FindFociResult]:
        """Remove peaks with more than ``max_size`` voxels."""
        if max_size <= 0:
            return results
        large = {r.id for r in results if r.count > max_size}
        logger.debug("Peaks above maximum size %d: %d", max_size, len(large))
        return self._remove_ids(results, large, n_peaks)
