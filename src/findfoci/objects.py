from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from skimage.measure import label

from .errors import ConfigurationError
from .image import as_stack
from .result import FindFociResult


logger = logging.getLogger(__name__)


@dataclass
class ObjectAnalysisResult:
    """Objects found in a mask and the foci they hold.

    ``object_state`` and ``foci_count`` are indexed by object id; index 0 is the
    background.
    """

    number_of_objects: int = 0
    object_state: np.ndarray = field(default_factory=lambda: np.zeros(1, dtype=np.int64))
    foci_count: np.ndarray = field(default_factory=lambda: np.zeros(1, dtype=np.int64))
    object_mask: np.ndarray | None = None


def label_objects(mask: np.ndarray) -> tuple[np.ndarray, int]:
    """Label connected voxels sharing the same non-zero mask value.

    Objects are numbered in raster order. A single-slice mask is labelled in 2D.
    """
    mask = np.asarray(mask)
    if mask.ndim == 3 and mask.shape[0] == 1:
        objects, n = label(mask[0], background=0, return_num=True, connectivity=2)
        return objects[np.newaxis], n
    objects, n = label(mask, background=0, return_num=True, connectivity=mask.ndim)
    return objects, n


def analyse_objects(
    mask: np.ndarray,
    results: list[FindFociResult],
    create_object_mask: bool = False,
) -> ObjectAnalysisResult:
    """Assign each result the object under its position and that object's mask value.

    Args:
        mask: 2D (y, x) or 3D (z, y, x) mask whose non-zero values define objects.
        results: Results to update in place (``object`` and ``state``).
        create_object_mask: If True, return the labelled objects as a uint16 mask.

    Returns:
        ObjectAnalysisResult: Object count, per-object state and foci counts.

    Raises:
        ConfigurationError: If the mask is not 2D or 3D.
    """
    mask = np.asarray(mask)
    if mask.ndim not in (2, 3):
        raise ConfigurationError(f"Object mask must be 2D or 3D, got shape {mask.shape}")
    stack = as_stack(mask)
    objects, n = label_objects(stack)

    object_state = np.zeros(n + 1, dtype=np.int64)
    flat_objects = objects.ravel()
    present = flat_objects > 0
    # Every voxel of an object holds the same mask value
    object_state[flat_objects[present]] = stack.ravel()[present]

    foci_count = np.zeros(n + 1, dtype=np.int64)
    is2d = stack.shape[0] == 1
    for result in results:
        z = 0 if is2d else result.z
        object_id = int(objects[z, result.y, result.x])
        result.object = object_id
        result.state = int(object_state[object_id])
        foci_count[object_id] += 1
    logger.info("Object analysis: %d objects, %d foci", n, len(results))

    object_mask = None
    if create_object_mask:
        if n > np.iinfo(np.uint16).max:
            logger.warning("The number of objects exceeds the 16-bit capacity of the object mask: %d", n)
        else:
            object_mask = objects.astype(np.uint16).reshape(mask.shape)
    return ObjectAnalysisResult(n, object_state, foci_count, object_mask)
