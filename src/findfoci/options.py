from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field

from .errors import ConfigurationError


class BackgroundMethod(enum.Enum):
    """How the background level is derived from the image statistics."""

    ABSOLUTE = "absolute"
    MEAN = "mean"
    STD_DEV_ABOVE_MEAN = "std_dev_above_mean"
    AUTO_THRESHOLD = "auto_threshold"
    MIN_MASK_OR_ROI = "min_mask_or_roi"
    NONE = "none"


class ThresholdMethod(enum.Enum):
    NONE = "none"
    DEFAULT = "default"
    ISO_DATA = "isodata"
    LI = "li"
    MEAN = "mean"
    MINIMUM = "minimum"
    OTSU = "otsu"
    TRIANGLE = "triangle"
    YEN = "yen"


class StatisticsMethod(enum.Enum):
    """Which voxels feed the background statistics when a mask is used."""

    ALL = "all"
    INSIDE = "inside"
    OUTSIDE = "outside"


class SearchMethod(enum.Enum):
    ABOVE_BACKGROUND = "above_background"
    FRACTION_OF_PEAK_MINUS_BACKGROUND = "fraction_of_peak_minus_background"
    HALF_PEAK_VALUE = "half_peak_value"


class PeakMethod(enum.Enum):
    ABSOLUTE = "absolute"
    RELATIVE = "relative"
    RELATIVE_ABOVE_BACKGROUND = "relative_above_background"


class SortMethod(enum.Enum):
    COUNT = "count"
    INTENSITY = "intensity"
    MAX_VALUE = "max_value"
    AVERAGE_INTENSITY = "average_intensity"
    INTENSITY_MINUS_BACKGROUND = "intensity_minus_background"
    AVERAGE_INTENSITY_MINUS_BACKGROUND = "average_intensity_minus_background"
    X = "x"
    Y = "y"
    Z = "z"
    SADDLE_HEIGHT = "saddle_height"
    COUNT_ABOVE_SADDLE = "count_above_saddle"
    INTENSITY_ABOVE_SADDLE = "intensity_above_saddle"
    ABSOLUTE_HEIGHT = "absolute_height"
    RELATIVE_HEIGHT_ABOVE_BACKGROUND = "relative_height_above_background"
    PEAK_ID = "peak_id"
    XYZ = "xyz"
    INTENSITY_MINUS_MIN = "intensity_minus_min"
    AVERAGE_INTENSITY_MINUS_MIN = "average_intensity_minus_min"


class MaskMethod(enum.Enum):
    NONE = "none"
    PEAKS = "peaks"
    THRESHOLD = "threshold"
    PEAKS_ABOVE_SADDLE = "peaks_above_saddle"
    THRESHOLD_ABOVE_SADDLE = "threshold_above_saddle"
    FRACTION_OF_INTENSITY = "fraction_of_intensity"
    FRACTION_OF_HEIGHT = "fraction_of_height"


class CentreMethod(enum.Enum):
    MAX_VALUE_SEARCH = "max_value_search"
    MAX_VALUE_ORIGINAL = "max_value_original"
    CENTRE_OF_MASS_SEARCH = "centre_of_mass_search"
    CENTRE_OF_MASS_ORIGINAL = "centre_of_mass_original"
    GAUSSIAN_SEARCH = "gaussian_search"
    GAUSSIAN_ORIGINAL = "gaussian_original"


class AlgorithmOption(enum.Flag):
    NONE = 0
    MINIMUM_ABOVE_SADDLE = enum.auto()
    OUTPUT_MASK_PEAK_DOTS = enum.auto()
    REMOVE_EDGE_MAXIMA = enum.auto()
    CONTIGUOUS_ABOVE_SADDLE = enum.auto()


@dataclass
class ProcessorOptions:
    """Algorithm configuration for a FindFoci run.

    The defaults reproduce the standard FindFoci settings: Otsu auto-threshold
    background, search above background, minimum size 5 above the saddle and a
    relative-above-background peak height of 0.5.
    """

    background_method: BackgroundMethod = BackgroundMethod.AUTO_THRESHOLD
    background_parameter: float = 3.0
    threshold_method: ThresholdMethod = ThresholdMethod.OTSU
    statistics_method: StatisticsMethod = StatisticsMethod.ALL
    search_method: SearchMethod = SearchMethod.ABOVE_BACKGROUND
    search_parameter: float = 0.3
    min_size: int = 5
    max_size: int = 0
    peak_method: PeakMethod = PeakMethod.RELATIVE_ABOVE_BACKGROUND
    peak_parameter: float = 0.5
    sort_method: SortMethod = SortMethod.INTENSITY
    max_peaks: int = 50
    mask_method: MaskMethod = MaskMethod.PEAKS_ABOVE_SADDLE
    gaussian_blur: float = 0.0
    centre_method: CentreMethod = CentreMethod.MAX_VALUE_SEARCH
    centre_parameter: float = 2.0
    fraction_parameter: float = 0.5
    options: AlgorithmOption = field(default=AlgorithmOption.MINIMUM_ABOVE_SADDLE)

    def is_option(self, option: AlgorithmOption) -> bool:
        return bool(self.options & option)

    def set_option(self, option: AlgorithmOption, enabled: bool = True) -> None:
        if enabled:
            self.options |= option
        else:
            self.options &= ~option

    def copy(self) -> "ProcessorOptions":
        return dataclasses.replace(self)

    def to_dict(self) -> dict:
        """Flatten to option-name -> value, with algorithm flags as booleans.

        The names match the keys used by the stage state machine.
        """
        d = {f.name: getattr(self, f.name) for f in dataclasses.fields(self) if f.name != "options"}
        d["minimum_above_saddle"] = self.is_option(AlgorithmOption.MINIMUM_ABOVE_SADDLE)
        d["mask_peak_dots"] = self.is_option(AlgorithmOption.OUTPUT_MASK_PEAK_DOTS)
        d["remove_edge_maxima"] = self.is_option(AlgorithmOption.REMOVE_EDGE_MAXIMA)
        d["contiguous_above_saddle"] = self.is_option(AlgorithmOption.CONTIGUOUS_ABOVE_SADDLE)
        return d

    def validate(self) -> None:
        """Check values that cannot be clamped.

        Raises:
            ConfigurationError: If a size, count or blur value is negative.
        """
        if self.min_size < 0:
            raise ConfigurationError(f"min_size must be >= 0, got {self.min_size}")
        if self.max_size < 0:
            raise ConfigurationError(f"max_size must be >= 0, got {self.max_size}")
        if self.max_peaks < 0:
            raise ConfigurationError(f"max_peaks must be >= 0, got {self.max_peaks}")
        if self.gaussian_blur < 0:
            raise ConfigurationError(f"gaussian_blur must be >= 0, got {self.gaussian_blur}")


@dataclass
class OutputOptions:
    """Options acted on after the results are built."""

    object_analysis: bool = False
    save_to_memory: bool = False
    memory_name: str = "default"
