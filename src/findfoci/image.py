from __future__ import annotations

import logging
import math

import numpy as np
from joblib import Parallel, delayed
from skimage.filters import gaussian

from .errors import ConfigurationError


logger = logging.getLogger(__name__)


# Pixel type flags
EXCLUDED = 1
MAXIMUM = 2
LISTED = 4
MAX_AREA = 8
SADDLE = 16
SADDLE_POINT = 32
SADDLE_WITHIN = 64
PLATEAU = 128
# Reused bits while searching for saddles
SADDLE_SEARCH = 32
BELOW_SADDLE = 128

IGNORE = EXCLUDED | LISTED

# Neighbour tables: 8 in-plane directions, then the 9 voxels of the slice below and the 9 above.
DIR_X = (0, 1, 1, 1, 0, -1, -1, -1, 0, 1, 1, 1, 0, -1, -1, -1, 0, 0, 1, 1, 1, 0, -1, -1, -1, 0)
DIR_Y = (-1, -1, 0, 1, 1, 1, 0, -1, -1, -1, 0, 1, 1, 1, 0, -1, 0, -1, -1, 0, 1, 1, 1, 0, -1, 0)
DIR_Z = (0,) * 8 + (-1,) * 9 + (1,) * 9

# One direction of each symmetric pair
DIR_X2 = (0, 1, 1, 1, 0, 1, 1, 1, 0, -1, -1, -1, 0)
DIR_Y2 = (-1, -1, 0, 1, -1, -1, 0, 1, 1, 1, 0, -1, 0)
DIR_Z2 = (0, 0, 0, 0, -1, -1, -1, -1, -1, -1, -1, -1, -1)

SUPPORTED_DTYPES = (np.dtype(np.uint8), np.dtype(np.uint16), np.dtype(np.float32))


class SampleKind:
    """Sample-type capabilities: threshold rounding and value semantics."""

    def __init__(self, name: str, is_float: bool):
        self.name = name
        self.is_float = is_float

    def round(self, value: float) -> float:
        """Round half up for integer samples; float samples are returned unchanged."""
        if self.is_float:
            return float(value)
        return float(math.floor(value + 0.5))

    def __repr__(self) -> str:
        return f"SampleKind({self.name})"


INTEGER = SampleKind("integer", False)
FLOAT = SampleKind("float", True)


def sample_kind_for(dtype) -> SampleKind:
    """Return the SampleKind for a supported dtype.

    Raises:
        ConfigurationError: If the dtype is not uint8, uint16 or float32.
    """
    dtype = np.dtype(dtype)
    if dtype not in SUPPORTED_DTYPES:
        raise ConfigurationError(f"Unsupported image dtype: {dtype}")
    return FLOAT if dtype.kind == "f" else INTEGER


def validate_image(image) -> np.ndarray:
    """Check the image is a non-empty 2D (y, x) or 3D (z, y, x) array of a supported dtype."""
    image = np.asarray(image)
    if image.ndim not in (2, 3):
        raise ConfigurationError(f"Image must be 2D or 3D, got shape {image.shape}")
    if image.size == 0:
        raise ConfigurationError("Image is empty")
    sample_kind_for(image.dtype)
    return image


def validate_mask(mask, image: np.ndarray) -> np.ndarray | None:
    """Return a boolean inclusion mask with the image's 3D shape, or None.

    A 2D mask applied to a 3D image is used for every slice.
    """
    if mask is None:
        return None
    mask = np.asarray(mask)
    if mask.shape == image.shape:
        return as_stack(mask != 0)
    if image.ndim == 3 and mask.shape == image.shape[1:]:
        return np.broadcast_to(mask != 0, image.shape)
    raise ConfigurationError(
        f"Mask shape {mask.shape} does not match image shape {image.shape}"
    )


def as_stack(array: np.ndarray) -> np.ndarray:
    """View a 2D array as a single-slice (1, y, x) stack."""
    return array[np.newaxis] if array.ndim == 2 else array


class Geometry:
    """Padded voxel geometry.

    Working buffers are flattened copies of the image with a one voxel border in
    x and y (and z for stacks). Every neighbour of an image voxel is therefore
    a valid index and no bounds checks are required while searching.
    """

    def __init__(self, maxx: int, maxy: int, maxz: int = 1, is3d: bool | None = None):
        self.maxx = maxx
        self.maxy = maxy
        self.maxz = maxz
        self.is3d = maxz > 1 if is3d is None else is3d
        self.px = maxx + 2
        self.py = maxy + 2
        self.pz = maxz + 2 if self.is3d else 1
        self.zpad = 1 if self.is3d else 0
        self.xy = self.px * self.py
        self.size = self.xy * self.pz
        self.n_voxels = maxx * maxy * maxz

        n = 26 if self.is3d else 8
        self.offsets = np.array(
            [DIR_Z[d] * self.xy + DIR_Y[d] * self.px + DIR_X[d] for d in range(n)], dtype=np.int64
        )
        self.flat_edge = np.array(
            [abs(DIR_X[d]) + abs(DIR_Y[d]) + abs(DIR_Z[d]) == 1 for d in range(n)], dtype=bool
        )
        n2 = 13 if self.is3d else 4
        self.half_offsets = np.array(
            [DIR_Z2[d] * self.xy + DIR_Y2[d] * self.px + DIR_X2[d] for d in range(n2)], dtype=np.int64
        )

        z, y, x = np.meshgrid(
            np.arange(maxz) + self.zpad, np.arange(maxy) + 1, np.arange(maxx) + 1, indexing="ij"
        )
        self.inner = (z * self.xy + y * self.px + x).ravel()

    @classmethod
    def for_image(cls, image: np.ndarray) -> "Geometry":
        if image.ndim == 3:
            maxz, maxy, maxx = image.shape
            return cls(maxx, maxy, maxz, is3d=maxz > 1)
        maxy, maxx = image.shape
        return cls(maxx, maxy, 1, is3d=False)

    @property
    def n_directions(self) -> int:
        return len(self.offsets)

    def pad(self, array: np.ndarray, fill, dtype=None) -> np.ndarray:
        """Flatten ``array`` (natural shape) into a padded buffer filled with ``fill``."""
        dtype = array.dtype if dtype is None else dtype
        out = np.full(self.size, fill, dtype=dtype)
        out[self.inner] = np.asarray(array, dtype=dtype).ravel()
        return out

    def unpad(self, flat: np.ndarray) -> np.ndarray:
        """Return the (z, y, x) image region of a padded buffer."""
        return flat[self.inner].reshape(self.maxz, self.maxy, self.maxx)

    def coords(self, index: int) -> tuple[int, int, int]:
        """Image (x, y, z) of a padded index."""
        zp, rem = divmod(int(index), self.xy)
        yp, xp = divmod(rem, self.px)
        return xp - 1, yp - 1, zp - self.zpad

    def coord_arrays(self, indices: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        zp, rem = np.divmod(np.asarray(indices, dtype=np.int64), self.xy)
        yp, xp = np.divmod(rem, self.px)
        return xp - 1, yp - 1, zp - self.zpad

    def index(self, x: int, y: int, z: int = 0) -> int:
        """Padded index of image voxel (x, y, z)."""
        return (z + self.zpad) * self.xy + (y + 1) * self.px + x + 1


def blur_plane(plane: np.ndarray, sigma: float) -> np.ndarray:
    """Gaussian blur a single plane, keeping the plane's dtype."""
    blurred = gaussian(plane.astype(np.float64), sigma=sigma, mode="nearest", preserve_range=True)
    if np.issubdtype(plane.dtype, np.integer):
        info = np.iinfo(plane.dtype)
        return np.clip(np.floor(blurred + 0.5), info.min, info.max).astype(plane.dtype)
    return blurred.astype(plane.dtype, copy=False)


def blur(image: np.ndarray, sigma: float, workers: int = 1, verbose: int = 0) -> np.ndarray:
    """Apply a 2D Gaussian blur to each slice of the image.

    Args:
        image: 2D (y, x) or 3D (z, y, x) image.
        sigma: Gaussian standard deviation in pixels. Values <= 0 return the image unchanged.
        workers: Number of workers for parallel processing of slices.
        verbose: Verbosity level for joblib.Parallel.

    Returns:
        np.ndarray: Blurred image with the same shape and dtype as the input.
    """
    if sigma <= 0:
        return image
    if image.ndim == 3:
        planes = Parallel(n_jobs=workers, verbose=verbose)(
            delayed(blur_plane)(image[i], sigma) for i in range(image.shape[0])
        )
        return np.stack(planes, axis=0)
    return blur_plane(image, sigma)
