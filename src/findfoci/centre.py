from __future__ import annotations

import logging
import math
import warnings

import numpy as np
from scipy.optimize import OptimizeWarning, curve_fit

from .image import EXCLUDED, Geometry
from .options import CentreMethod
from .result import FindFociResult


logger = logging.getLogger(__name__)

MAX_COM_ITERATIONS = 10


def _round(v: float) -> int:
    return int(math.floor(v + 0.5))


def resolve_centre_method(method: CentreMethod, gaussian_blur: float) -> CentreMethod:
    """Without a blur the original image is the search image."""
    if gaussian_blur <= 0 and method == CentreMethod.MAX_VALUE_ORIGINAL:
        return CentreMethod.MAX_VALUE_SEARCH
    return method


def find_maxima_coords(
    pixels: np.ndarray, maxima: np.ndarray, types: np.ndarray, geometry: Geometry,
    index0: int, peak_id: int, saddle_value: float,
) -> np.ndarray:
    """Padded indices of the voxels connected to ``index0`` in peak ``peak_id`` at or above the saddle."""
    offsets = geometry.offsets.tolist()
    seen = {index0}
    points = [index0]
    i = 0
    while i < len(points):
        index1 = points[i]
        for off in offsets:
            index2 = index1 + off
            if index2 in seen or types[index2] & EXCLUDED or maxima[index2] != peak_id:
                continue
            if pixels[index2] >= saddle_value:
                seen.add(index2)
                points.append(index2)
        i += 1
    return np.array(points, dtype=np.int64)


def extract_sub_image(
    pixels: np.ndarray, maxima: np.ndarray, geometry: Geometry, lo: tuple, hi: tuple,
    peak_id: int, floor: float,
) -> np.ndarray:
    """Return the (z, y, x) box ``lo..hi`` holding ``v - floor`` for peak voxels above ``floor``, else 0."""
    z = np.arange(lo[2], hi[2] + 1) + geometry.zpad
    y = np.arange(lo[1], hi[1] + 1) + 1
    x = np.arange(lo[0], hi[0] + 1) + 1
    idx = z[:, None, None] * geometry.xy + y[None, :, None] * geometry.px + x[None, None, :]
    v = pixels[idx]
    keep = (maxima[idx] == peak_id) & (v > floor)
    return np.where(keep, v - floor, 0.0)


def find_centre_max_value(sub: np.ndarray) -> tuple[int, int, int] | None:
    """Position (x, y, z) of the highest voxel.

    Ties resolve to the tied voxel nearest their centroid. Returns None when no
    voxel is above zero.
    """
    flat = sub.ravel()
    top = float(flat.max())
    if top <= 0:
        return None
    ties = np.flatnonzero(flat == top)
    if ties.size == 1:
        z, y, x = np.unravel_index(int(ties[0]), sub.shape)
        return int(x), int(y), int(z)
    z, y, x = np.unravel_index(ties, sub.shape)
    cx, cy, cz = x.mean(), y.mean(), z.mean()
    d2 = (x - cx) ** 2 + (y - cy) ** 2 + (z - cz) ** 2
    # Last of the closest voxels in index order
    i = ties.size - 1 - int(np.argmin(d2[::-1]))
    return int(x[i]), int(y[i]), int(z[i])


def _centre_of_mass_window(sub: np.ndarray, search_range: int, com: np.ndarray) -> np.ndarray | None:
    centre = [_round(c) for c in com]
    dims = (sub.shape[2], sub.shape[1], sub.shape[0])
    lo = [max(c - search_range, 0) for c in centre]
    hi = [min(c + search_range, d - 1) for c, d in zip(centre, dims)]
    window = sub[lo[2]:hi[2] + 1, lo[1]:hi[1] + 1, lo[0]:hi[0] + 1]
    w = np.where(window > 0, window, 0.0)
    total = w.sum()
    if total == 0:
        return None
    z, y, x = np.meshgrid(
        np.arange(lo[2], hi[2] + 1), np.arange(lo[1], hi[1] + 1), np.arange(lo[0], hi[0] + 1), indexing="ij"
    )
    return np.array([(x * w).sum(), (y * w).sum(), (z * w).sum()]) / total


def find_centre_of_mass(sub: np.ndarray, search_range: int) -> np.ndarray | None:
    """Iterative centre of mass within ``search_range`` voxels, starting at the maximum.

    Stops when the centre moves by at most one voxel or after ten iterations.

    Returns:
        np.ndarray: Fractional (x, y, z) centre, or None if no voxel is above zero.
    """
    search_range = max(1, search_range)
    start = find_centre_max_value(sub)
    if start is None:
        return None
    com = np.array(start, dtype=np.float64)
    for _ in range(MAX_COM_ITERATIONS):
        new_com = _centre_of_mass_window(sub, search_range, com)
        if new_com is None:
            break
        distance = float(np.sum((new_com - com) ** 2))
        com = new_com
        if distance <= 1:
            break
    return com


def _gaussian_2d(xy, background, amplitude, x0, y0, sx, sy):
    x, y = xy
    return background + amplitude * np.exp(-((x - x0) ** 2 / (2 * sx * sx) + (y - y0) ** 2 / (2 * sy * sy)))


def fit_gaussian_2d(projection: np.ndarray) -> tuple[float, float] | None:
    """Fit a 2D Gaussian to a (y, x) projection and return the fitted (x, y) centre.

    Returns:
        tuple[float, float] | None: Centre, or None when the fit fails or falls
            outside the projection.
    """
    h, w = projection.shape
    if h * w < 6:
        logger.debug("Gaussian fit skipped: projection %s too small", projection.shape)
        return None
    y, x = np.mgrid[0:h, 0:w]
    peak = np.unravel_index(int(np.argmax(projection)), projection.shape)
    amplitude = float(projection.max() - projection.min())
    if amplitude <= 0:
        return None
    p0 = [float(projection.min()), amplitude, float(peak[1]), float(peak[0]), max(w / 4.0, 0.5), max(h / 4.0, 0.5)]
    bounds = (
        [-np.inf, 0.0, -0.5, -0.5, 0.1, 0.1],
        [np.inf, np.inf, w - 0.5, h - 0.5, float(max(w, 2)), float(max(h, 2))],
    )
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            popt, _ = curve_fit(
                _gaussian_2d, (x.ravel(), y.ravel()), projection.ravel(), p0=p0, bounds=bounds, maxfev=2000
            )
    except (RuntimeError, ValueError) as exc:
        logger.debug("Gaussian fit failed: %s", exc)
        return None
    cx, cy = float(popt[2]), float(popt[3])
    if not (0 <= cx <= w - 1 and 0 <= cy <= h - 1):
        logger.debug("Gaussian fit centre outside projection: %.2f, %.2f", cx, cy)
        return None
    return cx, cy


def find_centre_gaussian_fit(sub: np.ndarray, projection_method: int) -> np.ndarray | None:
    """Centre from a Gaussian fit of the z projection (1 = maximum, otherwise mean) and the z centroid."""
    projection = sub.max(axis=0) if projection_method == 1 else sub.mean(axis=0)
    fit = fit_gaussian_2d(projection)
    if fit is None:
        return None
    depth = sub.shape[0]
    weights = sub.sum(axis=(1, 2))
    total = weights.sum()
    if total == 0:
        cz = depth // 2
    else:
        cz = min(max(_round(float(np.sum(np.arange(depth) * weights) / total)), 0), depth - 1)
    return np.array([fit[0], fit[1], float(cz)])


def locate_maxima(
    original: np.ndarray,
    search: np.ndarray,
    maxima: np.ndarray,
    types: np.ndarray,
    results: list[FindFociResult],
    geometry: Geometry,
    centre_method: CentreMethod,
    centre_parameter: float,
) -> None:
    """Move each result to the centre given by ``centre_method``.

    The centre is computed over the voxels connected to the maximum that lie at
    or above the highest saddle, measured as the height above the saddle.
    """
    if centre_method == CentreMethod.MAX_VALUE_SEARCH:
        return
    if centre_method in (CentreMethod.GAUSSIAN_SEARCH, CentreMethod.CENTRE_OF_MASS_SEARCH):
        pixels = search
    else:
        pixels = original

    for result in results:
        pts = find_maxima_coords(pixels, maxima, types, geometry, result.index, result.id,
                                 result.highest_saddle_value)
        x, y, z = geometry.coord_arrays(pts)
        lo = (int(x.min()), int(y.min()), int(z.min()))
        hi = (int(x.max()), int(y.max()), int(z.max()))
        floor = result.highest_saddle_value
        if not np.isfinite(floor):
            # No saddle below a negative background: measure above the lowest voxel
            floor = float(pixels[pts].min())
        sub = extract_sub_image(pixels, maxima, geometry, lo, hi, result.id, floor)

        if centre_method in (CentreMethod.GAUSSIAN_SEARCH, CentreMethod.GAUSSIAN_ORIGINAL):
            centre = find_centre_gaussian_fit(sub, _round(centre_parameter))
        elif centre_method in (CentreMethod.CENTRE_OF_MASS_SEARCH, CentreMethod.CENTRE_OF_MASS_ORIGINAL):
            centre = find_centre_of_mass(sub, _round(centre_parameter))
        else:
            centre = find_centre_max_value(sub)

        if centre is None:
            continue
        result.centre_x = lo[0] + float(centre[0])
        result.centre_y = lo[1] + float(centre[1])
        result.centre_z = lo[2] + float(centre[2])
        result.x = lo[0] + _round(centre[0])
        result.y = lo[1] + _round(centre[1])
        result.z = lo[2] + _round(centre[2])
        result.index = geometry.index(result.x, result.y, result.z)
