from __future__ import annotations

import logging
import math
from collections import OrderedDict

import numpy as np

from .errors import FindFociCancelled
from .mask import FRACTION_METHODS
from .objects import analyse_objects
from .options import OutputOptions, ProcessorOptions
from .results import is_sort_index_sensitive_to_negative_values
from .staged import FindFociResults, FindFociStagedProcessor
from .state import FindFociState, StateMachine


logger = logging.getLogger(__name__)


def _limit(max_peaks: int) -> float:
    return max_peaks if max_peaks > 0 else math.inf


def _same_array(a: np.ndarray | None, b: np.ndarray | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    a = np.asarray(a)
    b = np.asarray(b)
    return a.shape == b.shape and a.dtype == b.dtype and np.array_equal(a, b, equal_nan=a.dtype.kind == "f")


class Runner:
    """Repeats FindFoci runs on an image, redoing only the stages an option change affects.

    The outputs of every stage are cached. Each run compares its settings with
    the previous successful run and replays the stages from the earliest one
    invalidated by a change.

    Args:
        workers: Number of joblib workers used to blur stack slices.

    Attributes:
        memory: Results saved with ``save_to_memory``, keyed by memory name in save order.
        last_state: Stage the last run started from (COMPLETE when nothing was rerun).
    """

    def __init__(self, workers: int = 1):
        self.workers = workers
        self.memory: OrderedDict[str, FindFociResults] = OrderedDict()
        self.last_state = FindFociState.INITIAL
        self._clear()

    def _clear(self) -> None:
        self._previous = None
        self._image = None
        self._mask = None
        self._search_image = None
        self._init = None
        self._search = None
        self._merge_peak = None
        self._merge_size = None
        self._merge = None
        self._prelim = None
        self._results = None

    @staticmethod
    def settings(options: ProcessorOptions, output: OutputOptions | None = None) -> dict:
        """Flatten processor and output options into the names used by the state machine."""
        output = output or OutputOptions()
        d = options.to_dict()
        d["object_analysis"] = output.object_analysis
        d["save_to_memory"] = output.save_to_memory
        d["memory_name"] = output.memory_name
        return d

    def compare(self, previous: dict | None, current: dict) -> FindFociState:
        """Earliest stage invalidated by the differences between two settings dicts.

        Some changes only matter in context: the contiguous flag needs the size
        above saddle merge to be on, a new peak limit needs the previous results
        to reach one of the limits, the fraction only affects the fraction mask
        methods, and the output actions only need repeating when switched on.

        Returns:
            FindFociState: INITIAL if there is no previous run, COMPLETE if no
                change needs any work.
        """
        if previous is None:
            return FindFociState.INITIAL
        machine = StateMachine()
        for name in sorted(set(previous) | set(current)):
            old = previous.get(name)
            new = current.get(name)
            if old == new:
                continue
            if name == "contiguous_above_saddle" and not current.get("minimum_above_saddle"):
                continue
            if name == "max_peaks":
                n = len(self._results) if self._results is not None else 0
                change = _limit(new) - _limit(old)
                if not ((change > 0 and n >= _limit(old)) or (change < 0 and n > _limit(new))):
                    continue
            if name == "fraction_parameter" and current.get("mask_method") not in FRACTION_METHODS:
                continue
            if name in ("object_analysis", "save_to_memory") and not new:
                continue
            if name == "memory_name" and not current.get("save_to_memory"):
                continue
            machine.observe(name)
        return machine.state

    def run(
        self,
        image: np.ndarray,
        options: ProcessorOptions,
        mask: np.ndarray | None = None,
        cancel=None,
        output: OutputOptions | None = None,
    ) -> FindFociResults:
        """Run FindFoci, reusing the cached stages that the changes leave valid.

        Args:
            image: 2D (y, x) or 3D (z, y, x) uint8, uint16 or float32 image.
            options: Processor options.
            mask: Optional inclusion mask; non-zero voxels are analysed.
            cancel: Optional cancel signal with ``is_set()``.
            output: Object analysis and memory options.

        Returns:
            FindFociResults: Results of the run, or a cancelled result.

        Raises:
            ConfigurationError: If the image, mask or options cannot be processed.
        """
        options.validate()
        output = output or OutputOptions()
        current = self.settings(options, output)

        state = self.compare(self._previous, current)
        if not _same_array(self._image, image):
            state = FindFociState.INITIAL
        elif not _same_array(self._mask, mask):
            state = min(state, FindFociState.FIND_MAXIMA)
        self.last_state = state
        self._previous = None
        logger.info("Running from state %s", state.name)

        processor = FindFociStagedProcessor(cancel, self.workers)
        try:
            self._run_stages(processor, state, image, options, mask, output)
        except FindFociCancelled:
            logger.info("FindFoci run cancelled")
            self._clear()
            return FindFociResults.cancelled_result()
        except Exception:
            self._clear()
            raise

        self._previous = current
        self._image = np.array(image, copy=True)
        self._mask = None if mask is None else np.array(mask, copy=True)
        return self._results

    def _run_stages(self, processor, state, image, options, mask, output) -> None:
        if state <= FindFociState.INITIAL:
            self._search_image = processor.blur(image, options.gaussian_blur)
        if state <= FindFociState.FIND_MAXIMA:
            self._init = processor.find_maxima_init(image, self._search_image, mask, options)
        if state <= FindFociState.SEARCH:
            self._search = processor.find_maxima_search(self._init, options)
        if state <= FindFociState.MERGE_HEIGHT:
            self._merge_peak = processor.find_maxima_merge_peak(self._search, options)
        if state <= FindFociState.MERGE_SIZE:
            self._merge_size = processor.find_maxima_merge_size(self._search, self._merge_peak, options)
        if state <= FindFociState.MERGE_SADDLE:
            self._merge = processor.find_maxima_merge_final(self._search, self._merge_size, options)
        if state <= FindFociState.CALCULATE_RESULTS:
            image_minimum = self._init.stats.image_minimum
            if image_minimum < 0 and is_sort_index_sensitive_to_negative_values(options.sort_method):
                logger.warning(
                    "Image minimum is %s; sorting by %s is sensitive to negative values",
                    image_minimum, options.sort_method.value,
                )
            self._prelim = processor.find_maxima_prelim_results(self._merge, options)
        if state <= FindFociState.CALCULATE_OUTPUT_MASK:
            self._results = processor.find_maxima_mask_results(self._merge, self._prelim, options)
        if state <= FindFociState.SHOW_RESULTS:
            self._show_results(mask, output)

    def _show_results(self, mask: np.ndarray | None, output: OutputOptions) -> None:
        results = self._results
        if output.object_analysis:
            if mask is None:
                logger.warning("Object analysis requires a mask")
            else:
                results.objects = analyse_objects(mask, results.results)
        if output.save_to_memory:
            self.memory[output.memory_name] = FindFociResults(
                [r.copy() for r in results.results], results.stats.copy(), results.mask, objects=results.objects
            )
            self.memory.move_to_end(output.memory_name)
            logger.info("Saved %d results to memory: %s", len(results.results), output.memory_name)
