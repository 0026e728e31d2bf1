import argparse
import logging
from pathlib import Path

from .options import (
    AlgorithmOption,
    BackgroundMethod,
    CentreMethod,
    MaskMethod,
    PeakMethod,
    ProcessorOptions,
    SearchMethod,
    SortMethod,
    StatisticsMethod,
    ThresholdMethod,
)
from .processor import find_foci
from .results import format_results_table
from .utils import load_image, save_image


logger = logging.getLogger(__name__)


def _choices(enum_cls) -> list:
    return [m.value for m in enum_cls]


def build_parser() -> argparse.ArgumentParser:
    """Create and return the command-line argument parser.

    Returns:
        argparse.ArgumentParser: Configured parser for the findfoci CLI.
    """
    defaults = ProcessorOptions()
    parser = argparse.ArgumentParser(
        prog="findfoci",
        description=(
            "Find foci in a 2D or 3D image and segment them into peak regions."
        ),
    )
    parser.add_argument(
        "-l",
        "--loglevel",
        dest="loglevel",
        type=str,
        default="INFO",
        help="logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    parser.add_argument(
        "-i",
        "--input",
        dest="input_path",
        required=True,
        help="image file (.tif or .npy) with a (y, x) or (z, y, x) uint8, uint16 or float32 array",
    )
    parser.add_argument(
        "-o",
        "--output",
        dest="output_path",
        help="output file (.tif or .npy) for the labelled peak mask",
    )
    parser.add_argument(
        "-m",
        "--mask",
        dest="mask_path",
        help="inclusion mask file (.tif or .npy); only non-zero voxels are analysed",
    )
    parser.add_argument(
        "-r",
        "--results",
        dest="results_path",
        help="output file for the tab-separated results table",
    )
    parser.add_argument("--background-method", choices=_choices(BackgroundMethod),
                        default=defaults.background_method.value)
    parser.add_argument("--background-parameter", type=float, default=defaults.background_parameter)
    parser.add_argument("--threshold-method", choices=_choices(ThresholdMethod),
                        default=defaults.threshold_method.value)
    parser.add_argument("--statistics-method", choices=_choices(StatisticsMethod),
                        default=defaults.statistics_method.value)
    parser.add_argument("--search-method", choices=_choices(SearchMethod), default=defaults.search_method.value)
    parser.add_argument("--search-parameter", type=float, default=defaults.search_parameter)
    parser.add_argument("--min-size", type=int, default=defaults.min_size)
    parser.add_argument("--max-size", type=int, default=defaults.max_size, help="0 for no limit")
    parser.add_argument("--peak-method", choices=_choices(PeakMethod), default=defaults.peak_method.value)
    parser.add_argument("--peak-parameter", type=float, default=defaults.peak_parameter)
    parser.add_argument("--sort-method", choices=_choices(SortMethod), default=defaults.sort_method.value)
    parser.add_argument("--max-peaks", type=int, default=defaults.max_peaks, help="0 for no limit")
    parser.add_argument("--mask-method", choices=_choices(MaskMethod), default=defaults.mask_method.value)
    parser.add_argument("--fraction-parameter", type=float, default=defaults.fraction_parameter)
    parser.add_argument("-g", "--gaussian-blur", type=float, default=defaults.gaussian_blur,
                        help="Gaussian blur sigma applied to each slice before the search; 0 for none")
    parser.add_argument("--centre-method", choices=_choices(CentreMethod), default=defaults.centre_method.value)
    parser.add_argument("--centre-parameter", type=float, default=defaults.centre_parameter)
    parser.add_argument("--no-minimum-above-saddle", dest="minimum_above_saddle", action="store_false",
                        help="apply the minimum size to the whole peak instead of the part above the saddle")
    parser.add_argument("--contiguous-above-saddle", action="store_true",
                        help="count only voxels connected to the maximum when sizing above the saddle")
    parser.add_argument("--remove-edge-maxima", action="store_true",
                        help="remove peaks touching the x or y border")
    parser.add_argument("--mask-peak-dots", action="store_true",
                        help="mark each peak position in the output mask")
    return parser


def options_from_args(args: argparse.Namespace) -> ProcessorOptions:
    options = ProcessorOptions(
        background_method=BackgroundMethod(args.background_method),
        background_parameter=args.background_parameter,
        threshold_method=ThresholdMethod(args.threshold_method),
        statistics_method=StatisticsMethod(args.statistics_method),
        search_method=SearchMethod(args.search_method),
        search_parameter=args.search_parameter,
        min_size=args.min_size,
        max_size=args.max_size,
        peak_method=PeakMethod(args.peak_method),
        peak_parameter=args.peak_parameter,
        sort_method=SortMethod(args.sort_method),
        max_peaks=args.max_peaks,
        mask_method=MaskMethod(args.mask_method),
        gaussian_blur=args.gaussian_blur,
        centre_method=CentreMethod(args.centre_method),
        centre_parameter=args.centre_parameter,
        fraction_parameter=args.fraction_parameter,
        options=AlgorithmOption.NONE,
    )
    options.set_option(AlgorithmOption.MINIMUM_ABOVE_SADDLE, args.minimum_above_saddle)
    options.set_option(AlgorithmOption.CONTIGUOUS_ABOVE_SADDLE, args.contiguous_above_saddle)
    options.set_option(AlgorithmOption.REMOVE_EDGE_MAXIMA, args.remove_edge_maxima)
    options.set_option(AlgorithmOption.OUTPUT_MASK_PEAK_DOTS, args.mask_peak_dots)
    return options


def main(argv=None) -> int:
    """Entry point for the findfoci CLI.

    Parses command-line arguments, configures logging, runs FindFoci and
    writes the results table and output mask.

    Returns:
        int: Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging as early as possible
    level_name = str(args.loglevel).upper() if getattr(args, "loglevel", None) else "INFO"
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {args.loglevel}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    logger.info("findfoci invoked with args: %s", vars(args))

    options = options_from_args(args)
    logger.info("Opening: %s", args.input_path)
    image = load_image(args.input_path)
    mask = None
    if args.mask_path:
        mask = load_image(args.mask_path)

    output = find_foci(image, options, mask)
    table = format_results_table(output.results, float_image=image.dtype.kind == "f")
    print(table)
    if args.results_path:
        Path(args.results_path).write_text(table + "\n")
        logger.info("Results saved: %s", args.results_path)
    if args.output_path:
        if output.mask is None:
            logger.warning("No output mask was produced")
        else:
            save_image(args.output_path, output.mask)
    return 0


if __name__ == "__main__":
    main()
