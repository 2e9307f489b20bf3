"""
Error taxonomy for the segmentation / registration pipeline.

Per-frame failures are raised by the components and collected by the series
and group drivers, so a single bad frame never aborts a whole group unless the
configured failure policy asks for it.
"""

from typing import Any, Dict, Optional


class PerfusionAnalysisError(Exception):
    """Base class for all errors raised by perfusion_analysis."""


class InvalidArgument(PerfusionAnalysisError, ValueError):
    """Malformed input: wrong dimensionality, out-of-range threshold, bad iteration count."""


class SegmentationFailure(PerfusionAnalysisError, RuntimeError):
    """No usable region was found, or contour evolution errored."""


class RegistrationFailure(PerfusionAnalysisError, RuntimeError):
    """
    The optimizer could not produce a transform.

    Parameters
    ----------
    message : str
        Failure reason
    stage : int, optional
        Registration stage (1 = mask-guided, 2 = edge-guided) the failure occurred in
    partial_result : tuple, optional
        (registered_image, registered_edges, metrics) from Stage 1 when Stage 2 failed
    """

    def __init__(self, message: str, stage: Optional[int] = None,
                 partial_result: Optional[Any] = None):
        super().__init__(message)
        self.stage = stage
        self.partial_result = partial_result

    def __str__(self):
        message = super().__str__()
        if self.stage is not None:
            return f"stage {self.stage}: {message}"
        return message


class GroupFailure(PerfusionAnalysisError, RuntimeError):
    """A group produced no usable registered frames (or was aborted by policy)."""

    def __init__(self, message: str, group_index: Optional[int] = None,
                 failures: Optional[Dict[Any, str]] = None):
        super().__init__(message)
        self.group_index = group_index
        self.failures = dict(failures or {})
