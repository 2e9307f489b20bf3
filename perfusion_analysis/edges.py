"""
Canny edge extraction for registration features and vessel masks.

Thresholds are given relative to the maximum gradient magnitude of the
smoothed image, so the same sensitivity works on any intensity range:

- scalar ``t``       -> high = t, low = 0.4 * t
- pair ``(lo, hi)``  -> used as given
- ``None``           -> high at the 70th percentile of the gradient magnitude,
                        low = 0.4 * high
"""

import math
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from scipy import ndimage
from skimage import feature

from .errors import InvalidArgument

Threshold = Union[float, Sequence[float], None]

DEFAULT_SIGMA = math.sqrt(2.0)
LOW_TO_HIGH_RATIO = 0.4
NON_EDGE_FRACTION = 0.7


def detect_edges(image: np.ndarray, threshold: Threshold = 0.1,
                 sigma: float = DEFAULT_SIGMA) -> np.ndarray:
    """
    Detect edges with the Canny operator.

    Parameters
    ----------
    image : np.ndarray
        2D single-channel image
    threshold : float, (float, float) or None
        Sensitivity in [0, 1]: a single value, an ordered (low, high) pair,
        or None for automatic thresholds
    sigma : float
        Standard deviation of the Gaussian smoothing

    Returns
    -------
    np.ndarray
        Boolean edge map with the same shape as ``image``

    Raises
    ------
    InvalidArgument
        If the image is not 2D or a threshold is outside [0, 1]
    """
    image = np.asarray(image)
    if image.ndim != 2:
        raise InvalidArgument(f"Edge detection needs a 2D single-channel image, got shape {image.shape}")
    if not np.issubdtype(image.dtype, np.number) or np.issubdtype(image.dtype, np.complexfloating):
        raise InvalidArgument(f"Edge detection needs a real-valued image, got dtype {image.dtype}")
    if sigma <= 0:
        raise InvalidArgument(f"sigma must be positive, got {sigma}")

    relative = _parse_threshold(threshold)
    image = image.astype(np.float64)

    magnitude = _gradient_magnitude(image, sigma)
    max_magnitude = float(magnitude.max()) if magnitude.size else 0.0
    if max_magnitude <= 0:
        return np.zeros(image.shape, dtype=bool)

    if relative is None:
        high = float(np.quantile(magnitude, NON_EDGE_FRACTION))
        if high <= 0:
            high = float(magnitude[magnitude > 0].min())
        low = LOW_TO_HIGH_RATIO * high
    else:
        low, high = relative[0] * max_magnitude, relative[1] * max_magnitude

    # zero-gradient pixels are never edges
    floor = max_magnitude * 1e-12
    low = max(low, floor)
    high = max(high, low)

    return feature.canny(image, sigma=sigma, low_threshold=low, high_threshold=high)


def _parse_threshold(threshold: Threshold) -> Optional[Tuple[float, float]]:
    """Validate a threshold and return the relative (low, high) pair."""
    if threshold is None:
        return None

    values = np.atleast_1d(np.asarray(threshold, dtype=np.float64))
    if values.ndim != 1 or values.size not in (1, 2):
        raise InvalidArgument(f"Threshold must be a scalar or a (low, high) pair, got {threshold!r}")
    if not np.all(np.isfinite(values)) or np.any(values < 0) or np.any(values > 1):
        raise InvalidArgument(f"Threshold values must lie in [0, 1], got {threshold!r}")

    if values.size == 1:
        high = float(values[0])
        return LOW_TO_HIGH_RATIO * high, high

    low, high = float(values[0]), float(values[1])
    if low > high:
        raise InvalidArgument(f"Low threshold {low} exceeds high threshold {high}")
    return low, high


def _gradient_magnitude(image: np.ndarray, sigma: float) -> np.ndarray:
    """Sobel gradient magnitude of the Gaussian-smoothed image, as computed by Canny."""
    smoothed = ndimage.gaussian_filter(image, sigma, mode='constant', cval=0.0)
    bleed = ndimage.gaussian_filter(np.ones_like(image), sigma, mode='constant', cval=0.0)
    smoothed = smoothed / (bleed + np.finfo(np.float64).eps)
    return np.hypot(ndimage.sobel(smoothed, axis=0), ndimage.sobel(smoothed, axis=1))
