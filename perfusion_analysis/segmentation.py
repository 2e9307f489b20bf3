"""
Automatic brain-region segmentation with an ellipse-seeded active contour.

The seed is derived without user input:

1. normalize to [0, 1] and binarize with Otsu's threshold
2. drop connected components below a pixel-count floor and fill holes
3. keep the largest remaining component and fit an ellipse to it from its
   second moments
4. shrink the ellipse so it lies strictly inside the head

The seed is then evolved with the Chan-Vese region energy for a fixed number
of iterations (morphological formulation, one pixel of front motion per step).
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy import ndimage
from skimage import filters, measure, segmentation

from .errors import InvalidArgument, SegmentationFailure
from .io import normalize_image

# 8-connectivity, as used for region cleanup and labelling
_CONNECTIVITY = np.ones((3, 3), dtype=bool)


@dataclass(frozen=True)
class SeedEllipse:
    """Initial contour ellipse in pixel coordinates."""
    center_row: float
    center_col: float
    semi_major: float  # already shrunk
    semi_minor: float  # already shrunk
    orientation: float  # radians, angle between the row axis and the major axis

    def rasterize(self, shape: Tuple[int, int]) -> np.ndarray:
        """Boolean mask of the pixels inside the ellipse."""
        rows, cols = np.mgrid[0:shape[0], 0:shape[1]]
        dr = rows - self.center_row
        dc = cols - self.center_col
        cos_t = np.cos(self.orientation)
        sin_t = np.sin(self.orientation)
        along_major = dr * cos_t + dc * sin_t
        along_minor = -dr * sin_t + dc * cos_t
        return (along_major / self.semi_major) ** 2 + (along_minor / self.semi_minor) ** 2 <= 1.0


def largest_foreground_region(normalized: np.ndarray, min_region_area: int = 1000) -> np.ndarray:
    """
    Otsu-threshold an image and return its largest cleaned connected component.

    Parameters
    ----------
    normalized : np.ndarray
        2D image in [0, 1]
    min_region_area : int
        Components with fewer pixels are discarded before holes are filled

    Returns
    -------
    np.ndarray
        Boolean mask of the largest component

    Raises
    ------
    SegmentationFailure
        If no component survives the cleanup
    """
    if normalized.max() <= normalized.min():
        raise SegmentationFailure("Image is constant; no foreground to segment")

    threshold = filters.threshold_otsu(normalized)
    binary = normalized > threshold

    labels, n_regions = ndimage.label(binary, structure=_CONNECTIVITY)
    sizes = np.bincount(labels.ravel())
    keep = sizes >= min_region_area
    keep[0] = False
    cleaned = ndimage.binary_fill_holes(keep[labels])

    labels, n_regions = ndimage.label(cleaned, structure=_CONNECTIVITY)
    if n_regions == 0:
        raise SegmentationFailure(
            f"No connected region of at least {min_region_area} pixels after thresholding"
        )

    sizes = np.bincount(labels.ravel())
    sizes[0] = 0
    return labels == int(np.argmax(sizes))


def fit_seed_ellipse(region: np.ndarray, shrink_factor: float = 0.45) -> SeedEllipse:
    """
    Fit an ellipse to a binary region from its second moments and shrink it.

    Parameters
    ----------
    region : np.ndarray
        Boolean mask of a single connected region
    shrink_factor : float
        Fraction of the fitted semi-axes to keep

    Returns
    -------
    SeedEllipse
    """
    props = measure.regionprops(region.astype(np.uint8))
    if not props:
        raise SegmentationFailure("Cannot fit an ellipse to an empty region")
    region_props = props[0]

    center_row, center_col = region_props.centroid
    semi_major = 0.5 * region_props.axis_major_length * shrink_factor
    semi_minor = 0.5 * region_props.axis_minor_length * shrink_factor
    if semi_minor <= 0 or not np.isfinite(semi_major):
        raise SegmentationFailure("Degenerate region: fitted ellipse has zero width")

    return SeedEllipse(
        center_row=float(center_row),
        center_col=float(center_col),
        semi_major=float(semi_major),
        semi_minor=float(semi_minor),
        orientation=float(region_props.orientation),
    )


def initial_contour(image: np.ndarray, min_region_area: int = 1000,
                    shrink_factor: float = 0.45) -> Tuple[np.ndarray, SeedEllipse]:
    """
    Compute the automatic elliptical seed for the active contour.

    Parameters
    ----------
    image : np.ndarray
        2D image (normalized internally)
    min_region_area : int
        Cleanup floor in pixels
    shrink_factor : float
        Fraction of the fitted semi-axes used for the seed

    Returns
    -------
    seed : np.ndarray
        Boolean initial contour mask
    ellipse : SeedEllipse
        Parameters of the seed
    """
    normalized = _validated_normalized(image)
    region = largest_foreground_region(normalized, min_region_area)
    ellipse = fit_seed_ellipse(region, shrink_factor)

    seed = ellipse.rasterize(normalized.shape)
    if not seed.any():
        raise SegmentationFailure("Initial contour is empty")
    return seed, ellipse


def segment_brain(image: np.ndarray, iterations: int = 300, smoothing: int = 1,
                  min_region_area: int = 1000,
                  shrink_factor: float = 0.45) -> Tuple[np.ndarray, np.ndarray]:
    """
    Segment the head/brain region of a slice.

    Parameters
    ----------
    image : np.ndarray
        2D grayscale image
    iterations : int
        Chan-Vese evolution steps
    smoothing : int
        Curvature smoothing passes applied after every evolution step
    min_region_area : int
        Cleanup floor for seed generation
    shrink_factor : float
        Seed ellipse shrink factor

    Returns
    -------
    mask : np.ndarray
        Boolean mask of the segmented region
    masked_image : np.ndarray
        Copy of ``image`` (float64) with every pixel outside ``mask`` set to zero

    Raises
    ------
    InvalidArgument
        If the image is not 2D or iterations is not a positive integer
    SegmentationFailure
        If no seed region is found or the contour evolution fails
    """
    if not _is_count(iterations) or iterations < 1:
        raise InvalidArgument(f"iterations must be a positive integer, got {iterations!r}")
    if not _is_count(smoothing) or smoothing < 0:
        raise InvalidArgument(f"smoothing must be a non-negative integer, got {smoothing!r}")

    normalized = _validated_normalized(image)
    seed, _ = initial_contour(normalized, min_region_area, shrink_factor)

    try:
        level_set = segmentation.morphological_chan_vese(
            normalized,
            int(iterations),
            init_level_set=seed.astype(np.int8),
            smoothing=int(smoothing),
        )
    except (ValueError, FloatingPointError) as e:
        raise SegmentationFailure(f"Active contour evolution failed: {e}") from e

    mask = np.asarray(level_set, dtype=bool)
    if not mask.any():
        raise SegmentationFailure("Active contour evolution produced an empty region")

    masked_image = np.asarray(image, dtype=np.float64).copy()
    masked_image[~mask] = 0.0
    return mask, masked_image


def _is_count(value) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def _validated_normalized(image: np.ndarray) -> np.ndarray:
    image = np.asarray(image)
    if image.ndim != 2:
        raise InvalidArgument(f"Segmentation needs a 2D single-channel image, got shape {image.shape}")
    return normalize_image(image)
