"""FindFoci: find and segment peaks (foci) in 2D and 3D images."""

from .errors import ConfigurationError, FindFociCancelled, FindFociError, HistogramConsistencyError
from .options import (
    AlgorithmOption,
    BackgroundMethod,
    CentreMethod,
    MaskMethod,
    OutputOptions,
    PeakMethod,
    ProcessorOptions,
    SearchMethod,
    SortMethod,
    StatisticsMethod,
    ThresholdMethod,
)
from .processor import find_foci, find_foci_batch
from .result import FindFociResult
from .runner import Runner
from .staged import FindFociResults, FindFociStagedProcessor
from .state import FindFociState, StateMachine
from .statistics import FindFociStatistics

__all__ = [
    "AlgorithmOption",
    "BackgroundMethod",
    "CentreMethod",
    "ConfigurationError",
    "FindFociCancelled",
    "FindFociError",
    "FindFociResult",
    "FindFociResults",
    "FindFociStagedProcessor",
    "FindFociState",
    "FindFociStatistics",
    "HistogramConsistencyError",
    "MaskMethod",
    "OutputOptions",
    "PeakMethod",
    "ProcessorOptions",
    "Runner",
    "SearchMethod",
    "SortMethod",
    "StateMachine",
    "StatisticsMethod",
    "ThresholdMethod",
    "find_foci",
    "find_foci_batch",
]
