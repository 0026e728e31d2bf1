"""
Pytest fixtures for findfoci tests.

Provides small hand-checked profiles and synthetic spot images.
"""

import numpy as np
import pytest

from findfoci import BackgroundMethod, ProcessorOptions

# (y, x, amplitude) of the spots in the synthetic image
SPOT_CENTRES = ((12, 12, 200), (30, 34, 120), (36, 10, 80))


def make_spots(shape=(48, 48), centres=SPOT_CENTRES, sigma=2.0, background=10, noise=0.0, seed=0):
    """
    Create a uint16 image of Gaussian spots on a flat background.

    Returns:
        np.ndarray: (y, x) uint16 array
    """
    y, x = np.mgrid[0:shape[0], 0:shape[1]]
    image = np.full(shape, float(background))
    for cy, cx, amplitude in centres:
        image += amplitude * np.exp(-((x - cx) ** 2 + (y - cy) ** 2) / (2 * sigma * sigma))
    if noise > 0:
        rng = np.random.default_rng(seed)
        image += rng.normal(0.0, noise, shape)
    return np.clip(np.floor(image + 0.5), 0, 65535).astype(np.uint16)


@pytest.fixture
def two_peak_profile():
    """
    Single-row image with isolated peaks of 5 (x=2) and 8 (x=5).

    Returns:
        np.ndarray: 1x8 uint8 array
    """
    return np.array([[0, 0, 5, 0, 0, 8, 0, 0]], dtype=np.uint8)


@pytest.fixture
def shoulder_profile():
    """
    Single-row image with a peak of 100 (x=2) and a shoulder of 20 (x=5) joined at 15.

    Returns:
        np.ndarray: 1x8 uint8 array
    """
    return np.array([[0, 40, 100, 40, 15, 20, 15, 0]], dtype=np.uint8)


@pytest.fixture
def absolute_options():
    """Options with a zero absolute background and single-voxel peaks allowed."""
    return ProcessorOptions(
        background_method=BackgroundMethod.ABSOLUTE,
        background_parameter=0.0,
        min_size=1,
    )


@pytest.fixture
def spots_image():
    """Three well separated noise-free Gaussian spots."""
    return make_spots()


@pytest.fixture
def noisy_spots_image():
    """Three Gaussian spots with seeded noise."""
    return make_spots(noise=3.0, background=30)


@pytest.fixture
def spots_options():
    """Options with an absolute background just above the flat image level."""
    return ProcessorOptions(background_method=BackgroundMethod.ABSOLUTE, background_parameter=15.0)


class DelayedCancel:
    """Cancel signal that reports set after ``calls`` polls."""

    def __init__(self, calls):
        self.calls = calls
        self.polls = 0

    def is_set(self):
        self.polls += 1
        return self.polls > self.calls


@pytest.fixture
def noise_image():
    """
    Seeded float noise with thousands of local maxima.

    Returns:
        np.ndarray: 200x200 float32 array
    """
    rng = np.random.default_rng(1)
    return rng.normal(100.0, 10.0, (200, 200)).astype(np.float32)


@pytest.fixture
def noise_options():
    """Options that keep every noise maximum above a zero background."""
    return ProcessorOptions(
        background_method=BackgroundMethod.ABSOLUTE,
        background_parameter=0.0,
        max_peaks=0,
    )
