class FindFociError(Exception):
    """Base class for all errors raised by findfoci."""


class ConfigurationError(FindFociError, ValueError):
    """Raised when the image, mask or options cannot be processed."""


class HistogramConsistencyError(FindFociError, RuntimeError):
    """Raised when histogram counts disagree with the number of included voxels."""


class FindFociCancelled(FindFociError):
    """Raised inside a stage when the caller's cancel signal is set."""


def check_cancelled(cancel) -> None:
    """Raise FindFociCancelled if ``cancel`` (anything with ``is_set()``) is set."""
    if cancel is not None and cancel.is_set():
        raise FindFociCancelled("FindFoci run cancelled")
