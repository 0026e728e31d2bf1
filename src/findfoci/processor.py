from __future__ import annotations

import logging

import numpy as np
from joblib import Parallel, delayed

from .errors import FindFociCancelled
from .options import ProcessorOptions
from .staged import FindFociResults, FindFociStagedProcessor


logger = logging.getLogger(__name__)


def find_foci(
    image: np.ndarray,
    options: ProcessorOptions | None = None,
    mask: np.ndarray | None = None,
    cancel=None,
) -> FindFociResults:
    """Find the foci of an image in a single run.

    Args:
        image: 2D (y, x) or 3D (z, y, x) uint8, uint16 or float32 image. It is not modified.
        options: Processor options. Defaults to ``ProcessorOptions()``.
        mask: Optional inclusion mask with the image's shape (or a 2D mask for every
            slice of a stack); only non-zero voxels are analysed.
        cancel: Optional cancel signal with ``is_set()``, e.g. ``threading.Event``.

    Returns:
        FindFociResults: Ranked results, statistics and output mask, or a cancelled result.

    Raises:
        ConfigurationError: If the image, mask or options cannot be processed.
    """
    options = ProcessorOptions() if options is None else options
    processor = FindFociStagedProcessor(cancel)
    try:
        return processor.find_maxima(image, options, mask)
    except FindFociCancelled:
        logger.info("FindFoci run cancelled")
        return FindFociResults.cancelled_result()


def find_foci_batch(
    images: list,
    options: ProcessorOptions | None = None,
    workers: int = 1,
    verbose: int = 0,
) -> list[FindFociResults]:
    """Run ``find_foci`` on independent images in parallel.

    Args:
        images: Images to process.
        options: Processor options shared by every run.
        workers: Number of joblib workers.
        verbose: Verbosity level for joblib.Parallel.

    Returns:
        list[FindFociResults]: One result per image, in input order.
    """
    options = ProcessorOptions() if options is None else options
    logger.info("Processing %d images with %d workers", len(images), workers)
    return Parallel(n_jobs=workers, verbose=verbose)(
        delayed(find_foci)(image, options.copy()) for image in images
    )
