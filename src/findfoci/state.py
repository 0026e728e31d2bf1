from __future__ import annotations

import enum
import logging


logger = logging.getLogger(__name__)


class FindFociState(enum.IntEnum):
    """Processing stages in run order."""

    INITIAL = 0
    FIND_MAXIMA = 1
    SEARCH = 2
    MERGE_HEIGHT = 3
    MERGE_SIZE = 4
    MERGE_SADDLE = 5
    CALCULATE_RESULTS = 6
    CALCULATE_OUTPUT_MASK = 7
    SHOW_RESULTS = 8
    COMPLETE = 9


STATE_MAP = {
    "gaussian_blur": FindFociState.INITIAL,
    "image": FindFociState.INITIAL,
    "background_method": FindFociState.FIND_MAXIMA,
    "threshold_method": FindFociState.FIND_MAXIMA,
    "statistics_method": FindFociState.FIND_MAXIMA,
    "mask": FindFociState.FIND_MAXIMA,
    "background_parameter": FindFociState.SEARCH,
    "search_method": FindFociState.SEARCH,
    "search_parameter": FindFociState.SEARCH,
    "peak_method": FindFociState.MERGE_HEIGHT,
    "peak_parameter": FindFociState.MERGE_HEIGHT,
    "min_size": FindFociState.MERGE_SIZE,
    "minimum_above_saddle": FindFociState.MERGE_SADDLE,
    "contiguous_above_saddle": FindFociState.MERGE_SADDLE,
    "remove_edge_maxima": FindFociState.MERGE_SADDLE,
    "max_size": FindFociState.MERGE_SADDLE,
    "sort_method": FindFociState.CALCULATE_RESULTS,
    "max_peaks": FindFociState.CALCULATE_RESULTS,
    "centre_method": FindFociState.CALCULATE_RESULTS,
    "centre_parameter": FindFociState.CALCULATE_RESULTS,
    "mask_method": FindFociState.CALCULATE_OUTPUT_MASK,
    "mask_peak_dots": FindFociState.CALCULATE_OUTPUT_MASK,
    "fraction_parameter": FindFociState.CALCULATE_OUTPUT_MASK,
    "object_analysis": FindFociState.SHOW_RESULTS,
    "save_to_memory": FindFociState.SHOW_RESULTS,
    "memory_name": FindFociState.SHOW_RESULTS,
}


class StateMachine:
    """Tracks the earliest stage that must be rerun after option changes.

    Args:
        state: Starting state; COMPLETE means nothing needs to be rerun.
    """

    def __init__(self, state: FindFociState = FindFociState.COMPLETE):
        self.state = state

    @staticmethod
    def stage_for(name: str) -> FindFociState:
        """Stage invalidated by a change to option ``name``; unknown names reset everything."""
        return STATE_MAP.get(name, FindFociState.INITIAL)

    def reduce_state(self, state: FindFociState) -> None:
        if state < self.state:
            self.state = state

    def observe(self, name: str) -> FindFociState:
        """Record a change to option ``name`` and return the resulting state."""
        self.reduce_state(self.stage_for(name))
        logger.debug("Option %s changed: state = %s", name, self.state.name)
        return self.state

    @property
    def observed_properties(self) -> set:
        return set(STATE_MAP)
