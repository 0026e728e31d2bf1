from __future__ import annotations

import os
import logging
from typing import Union

import numpy as np
import tifffile


logger = logging.getLogger(__name__)

TIFF_SUFFIXES = (".tif", ".tiff")


def load_image(path: Union[str, os.PathLike]) -> np.ndarray:
    """Read an image or stack from a TIFF or .npy file.

    Args:
        path (Union[str, os.PathLike]): Input file path.

    Returns:
        np.ndarray: The array as stored, (y, x) or (z, y, x).

    Raises:
        ValueError: If the file type is not supported.
    """
    file_path = os.fspath(path)
    suffix = os.path.splitext(file_path)[1].lower()
    if suffix in TIFF_SUFFIXES:
        image = tifffile.imread(file_path)
    elif suffix == ".npy":
        image = np.load(file_path)
    else:
        raise ValueError(f"Unsupported file type: {suffix}")
    logger.info("Read %s: shape=%s dtype=%s", file_path, tuple(image.shape), image.dtype)
    return image


def save_image(path: Union[str, os.PathLike], stack: np.ndarray) -> None:
    """Write an array as a (multi-page) TIFF or a .npy file, chosen by the suffix.

    Args:
        path (Union[str, os.PathLike]): Output file path.
        stack (np.ndarray): Array to write.
    """
    file_path = os.fspath(path)
    os.makedirs(os.path.dirname(file_path) or ".", exist_ok=True)
    if os.path.splitext(file_path)[1].lower() in TIFF_SUFFIXES:
        tifffile.imwrite(file_path, stack, compression="deflate")
    else:
        np.save(file_path, stack)
    logger.info("Wrote %s: shape=%s dtype=%s", file_path, tuple(stack.shape), stack.dtype)
