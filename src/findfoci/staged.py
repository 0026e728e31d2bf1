from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np

from . import image as image_utils
from .errors import check_cancelled
from .centre import locate_maxima, resolve_centre_method
from .histogram import Histogram, HistogramScope, build_histogram
from .image import EXCLUDED, Geometry, SampleKind
from .mask import generate_output_mask
from .merge import MergeTempResults, PeakMerger
from .objects import ObjectAnalysisResult
from .options import AlgorithmOption, BackgroundMethod, ProcessorOptions, StatisticsMethod
from .result import FindFociResult
from .results import calculate_final_results, renumber_peaks, sort_desc_results, trim
from .saddle import SaddleList
from .search import (
    analyse_peaks,
    assign_maxima,
    assign_points_to_maxima,
    calculate_initial_results,
    calculate_native_results,
    find_saddle_points,
    get_sorted_maxpoints,
    no_saddle_value,
    prune_maxima,
)
from .statistics import (
    FindFociStatistics,
    get_image_minimum,
    get_intensity_above_floor,
    get_search_threshold,
    get_threshold,
    set_background_statistics,
    set_region_statistics,
)


logger = logging.getLogger(__name__)


@dataclass
class InitResults:
    """Padded working buffers and statistics of an initialised image.

    The sample buffers and histogram are never modified after init; ``types``,
    ``maxima`` and ``stats`` are copied by every stage that changes them.
    """

    search: np.ndarray
    original: np.ndarray
    types: np.ndarray
    maxima: np.ndarray
    histogram: Histogram
    stats: FindFociStatistics
    geometry: Geometry
    kind: SampleKind
    shape: tuple

    def copy(self) -> "InitResults":
        return InitResults(
            self.search,
            self.original,
            self.types.copy(),
            self.maxima.copy(),
            self.histogram,
            self.stats.copy(),
            self.geometry,
            self.kind,
            self.shape,
        )


@dataclass
class SearchResults:
    init: InitResults
    results: list[FindFociResult]
    saddles: list[SaddleList]


@dataclass
class MergeResults:
    init: InitResults
    results: list[FindFociResult]
    original_number_of_peaks: int


@dataclass
class PrelimResults:
    init: InitResults
    results: list[FindFociResult]
    stats: FindFociStatistics


@dataclass
class FindFociResults:
    """Outcome of a FindFoci run.

    Attributes:
        results: Peaks in rank order, numbered 1..n.
        stats: Image statistics.
        mask: Labelled output mask, or None.
        cancelled: True if the run was cancelled before completing.
        objects: Object analysis of the inclusion mask, when requested.
    """

    results: list[FindFociResult] = field(default_factory=list)
    stats: FindFociStatistics | None = None
    mask: np.ndarray | None = None
    cancelled: bool = False
    objects: ObjectAnalysisResult | None = None

    @classmethod
    def cancelled_result(cls) -> "FindFociResults":
        return cls(cancelled=True)

    def __len__(self) -> int:
        return len(self.results)


def _copy_results(results: list[FindFociResult]) -> list[FindFociResult]:
    return [r.copy() for r in results]


def _pad_values(image: np.ndarray, geometry: Geometry) -> np.ndarray:
    v = image.astype(np.float64)
    if np.issubdtype(image.dtype, np.floating):
        v = np.where(np.isfinite(v), v, -np.inf)
    return geometry.pad(v, -np.inf, dtype=np.float64)


class FindFociStagedProcessor:
    """Runs FindFoci as a chain of stages whose outputs can be cached and replayed.

    Each stage takes the outputs of the earlier stages and returns new
    containers, so a later stage can be repeated with different options
    without repeating the work before it.

    Args:
        cancel: Optional cancel signal with ``is_set()``, polled while growing and merging peaks.
        workers: Number of joblib workers used to blur stack slices.
    """

    def __init__(self, cancel=None, workers: int = 1):
        self.cancel = cancel
        self.workers = workers

    def blur(self, image: np.ndarray, gaussian_blur: float) -> np.ndarray:
        """Return the search image: ``image`` blurred slice by slice, or ``image`` itself."""
        image = image_utils.validate_image(image)
        if gaussian_blur > 0:
            logger.info("Applying Gaussian blur: sigma = %s", gaussian_blur)
        return image_utils.blur(image, gaussian_blur, workers=self.workers)

    def find_maxima_init(
        self, original: np.ndarray, search: np.ndarray, mask: np.ndarray | None, options: ProcessorOptions
    ) -> InitResults:
        """Build the padded buffers, the histogram and the image statistics.

        Raises:
            ConfigurationError: If the image or mask cannot be processed.
        """
        original = image_utils.validate_image(original)
        kind = image_utils.sample_kind_for(original.dtype)
        inclusion = image_utils.validate_mask(mask, original)
        geometry = Geometry.for_image(original)

        values = _pad_values(image_utils.as_stack(original), geometry)
        search_values = values if search is original else _pad_values(image_utils.as_stack(search), geometry)
        types = np.full(geometry.size, EXCLUDED, dtype=np.uint8)
        types[geometry.inner] = 0
        types[~np.isfinite(search_values)] |= EXCLUDED
        maxima = np.zeros(geometry.size, dtype=np.int32)

        stats = FindFociStatistics()
        stats.image_minimum = get_image_minimum(values, types, geometry.inner)

        exclusion = 0
        if inclusion is not None:
            outside = geometry.inner[~np.asarray(inclusion).ravel()]
            types[outside] |= EXCLUDED
            exclusion = outside.size
            logger.info("Excluded %d voxels outside the mask", exclusion)

        histogram = build_histogram(search_values, types, geometry, kind, HistogramScope.INSIDE, with_bins=True)
        set_region_statistics(histogram, stats)

        stats_histogram = histogram
        if exclusion > 0 and options.statistics_method != StatisticsMethod.INSIDE:
            scope = HistogramScope.ALL if options.statistics_method == StatisticsMethod.ALL else HistogramScope.OUTSIDE
            stats_histogram = build_histogram(search_values, types, geometry, kind, scope)
            set_background_statistics(stats_histogram, stats)

        if options.background_method == BackgroundMethod.AUTO_THRESHOLD:
            stats.background = get_threshold(options.threshold_method, stats_histogram)
        logger.info(
            "Image stats: min = %s, max = %s, av = %.4g, sd = %.4g",
            stats.region_minimum, stats.region_maximum, stats.region_average, stats.region_std_dev,
        )
        return InitResults(search_values, values, types, maxima, histogram, stats, geometry, kind, original.shape)

    def find_maxima_search(self, init: InitResults, options: ProcessorOptions) -> SearchResults:
        """Find the maxima, grow them downhill and measure their saddles."""
        check_cancelled(self.cancel)
        init = init.copy()
        stats = init.stats
        geometry = init.geometry
        stats.background = get_search_threshold(
            options.background_method, options.background_parameter, stats, init.kind
        )
        logger.info("Background level = %s", stats.background)

        maxpoints = get_sorted_maxpoints(
            init.search, init.types, init.maxima, geometry, stats.region_minimum, stats.background
        )
        logger.info("Number of potential maxima = %d", len(maxpoints))
        results = assign_maxima(maxpoints, geometry, stats.background)
        assign_points_to_maxima(
            init.search, init.histogram, init.types, init.maxima, geometry, stats.background, init.kind, self.cancel
        )
        prune_maxima(
            init.search, init.types, init.maxima, results, options.search_method, options.search_parameter,
            stats, init.kind,
        )
        calculate_initial_results(init.search, init.maxima, results)
        saddles = find_saddle_points(
            init.search, init.types, init.maxima, results, geometry, no_saddle_value(stats.background)
        )
        analyse_peaks(init.search, init.maxima, results, len(results))
        return SearchResults(init, results, saddles)

    def _merger(self, init: InitResults) -> PeakMerger:
        return PeakMerger(
            init.search, init.maxima, init.geometry, init.stats, init.kind,
            no_saddle_value(init.stats.background), self.cancel,
        )

    def find_maxima_merge_peak(self, search: SearchResults, options: ProcessorOptions) -> MergeTempResults:
        """Merge peaks that do not rise high enough above their highest saddle."""
        check_cancelled(self.cancel)
        merge = MergeTempResults.create(_copy_results(search.results), [s.copy() for s in search.saddles])
        self._merger(search.init).merge_using_height(merge, options.peak_method, options.peak_parameter)
        return merge

    def find_maxima_merge_size(
        self, search: SearchResults, merge: MergeTempResults, options: ProcessorOptions
    ) -> MergeTempResults:
        check_cancelled(self.cancel)
        merge = merge.copy()
        self._merger(search.init).merge_using_size(merge, options.min_size)
        return merge

    def find_maxima_merge_final(
        self, search: SearchResults, merge: MergeTempResults, options: ProcessorOptions
    ) -> MergeResults:
        """Apply the size above saddle merge, then finalise the peak ids.

        Edge peaks and peaks above the maximum size are removed afterwards. With
        a blur the totals and maxima are recomputed from the original image.
        """
        check_cancelled(self.cancel)
        init = search.init.copy()
        merger = self._merger(init)
        merge = merge.copy()
        n_peaks = len(merge.by_id) - 1

        if options.min_size > 1 and options.is_option(AlgorithmOption.MINIMUM_ABOVE_SADDLE):
            contiguous = options.is_option(AlgorithmOption.CONTIGUOUS_ABOVE_SADDLE)
            merger.merge_above_saddle(merge, options.min_size, contiguous)

        results = merger.merge_final(merge)
        if options.is_option(AlgorithmOption.REMOVE_EDGE_MAXIMA):
            results = merger.remove_edge_maxima(results, n_peaks)
        results = merger.remove_large_peaks(results, options.max_size, n_peaks)

        if options.gaussian_blur > 0:
            calculate_native_results(init.original, init.maxima, results, n_peaks)
        logger.info("Number of peaks after merging = %d", len(results))
        return MergeResults(init, results, n_peaks)

    def _rank_results(self, merge: MergeResults, options: ProcessorOptions) -> PrelimResults:
        init = merge.init
        stats = init.stats.copy()
        results = _copy_results(merge.results)
        centre_method = resolve_centre_method(options.centre_method, options.gaussian_blur)
        locate_maxima(
            init.original, init.search, init.maxima, init.types, results, init.geometry,
            centre_method, options.centre_parameter,
        )
        calculate_final_results(results, stats.background, stats.background_region_minimum)
        sort_desc_results(results, options.sort_method, stats, init.geometry)
        total_peaks = len(results)
        results = trim(results, options.max_peaks)
        if len(results) < total_peaks:
            logger.info("Final number of peaks = %d / %d", len(results), total_peaks)
        else:
            logger.info("Final number of peaks = %d", len(results))

        if results:
            inner = init.geometry.inner
            stats.total_above_background = get_intensity_above_floor(
                init.original, init.types, inner, stats.background)
            stats.total_above_image_minimum = get_intensity_above_floor(
                init.original, init.types, inner, stats.image_minimum)
        return PrelimResults(init, results, stats)

    def find_maxima_prelim_results(self, merge: MergeResults, options: ProcessorOptions) -> PrelimResults:
        """Locate, measure, rank and truncate the merged peaks, keeping the merge ids."""
        return self._rank_results(merge, options)

    def find_maxima_mask_results(
        self, merge: MergeResults, prelim: PrelimResults, options: ProcessorOptions
    ) -> FindFociResults:
        """Build the output mask for the preliminary results and renumber them."""
        init = prelim.init
        results = _copy_results(prelim.results)
        mask = generate_output_mask(
            options, init.search, init.maxima, init.types, prelim.stats, results, init.geometry, init.kind,
            init.shape,
        )
        renumber_peaks(results)
        return FindFociResults(results, prelim.stats.copy(), mask)

    def find_maxima_results(self, merge: MergeResults, options: ProcessorOptions) -> FindFociResults:
        """Final results without an output mask."""
        prelim = self._rank_results(merge, options)
        renumber_peaks(prelim.results)
        return FindFociResults(prelim.results, prelim.stats)

    def find_maxima(
        self, image: np.ndarray, options: ProcessorOptions, mask: np.ndarray | None = None
    ) -> FindFociResults:
        """Run every stage in order.

        Raises:
            ConfigurationError: If the image, mask or options cannot be processed.
            FindFociCancelled: If the cancel signal is set during the run.
        """
        options.validate()
        search_image = self.blur(image, options.gaussian_blur)
        init = self.find_maxima_init(image, search_image, mask, options)
        search = self.find_maxima_search(init, options)
        merge = self.find_maxima_merge_peak(search, options)
        merge = self.find_maxima_merge_size(search, merge, options)
        merge_results = self.find_maxima_merge_final(search, merge, options)
        prelim = self.find_maxima_prelim_results(merge_results, options)
        return self.find_maxima_mask_results(merge_results, prelim, options)
