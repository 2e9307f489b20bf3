"""
Time-to-peak mapping and colour rendering of an aligned perfusion series.

Includes functions for:
- Per-pixel time-to-peak (1-based index of the frame where the pixel peaks)
- Vessel mask from the dilated edges of a composite image
- Inverted colormap lookup gated by the vessel mask
"""

from typing import Optional, Sequence, Tuple, Union

import numpy as np
from scipy import ndimage
from skimage import morphology

from .edges import DEFAULT_SIGMA, Threshold, detect_edges
from .errors import InvalidArgument
from .io import normalize_image

# TTP value of pixels outside the vessel mask
BACKGROUND_TTP = 0


def compute_ttp_map(frames: Sequence[np.ndarray],
                    frame_indices: Optional[Sequence[int]] = None) -> np.ndarray:
    """
    Compute the time-to-peak index of every pixel.

    Each frame is normalized to [0, 1] independently before comparison.

    Parameters
    ----------
    frames : sequence of np.ndarray
        Aligned 2D frames in acquisition order
    frame_indices : sequence of int, optional
        0-based position of each frame in the acquired series. Needed when
        frames are missing so that the TTP stays the series ordinal;
        defaults to 0 .. len(frames) - 1

    Returns
    -------
    np.ndarray
        int array, 1-based series position of the frame with the maximum
        value; ties resolve to the earliest frame
    """
    stack = _stack_frames(frames)
    ordinals = _frame_ordinals(frame_indices, stack.shape[-1])
    return ordinals[np.argmax(stack, axis=-1)] + 1


def create_vessel_mask(composite: np.ndarray, radius: int = 2,
                       threshold: Threshold = None,
                       sigma: float = DEFAULT_SIGMA) -> np.ndarray:
    """
    Vessel mask: Canny edges of the composite image dilated with a disk.

    Parameters
    ----------
    composite : np.ndarray
        2D composite (merged) image
    radius : int
        Disk radius of the dilation; 0 keeps the bare edges
    threshold : float, (float, float) or None
        Canny sensitivity, automatic when None
    sigma : float
        Canny Gaussian width

    Returns
    -------
    np.ndarray
        Boolean mask
    """
    if not isinstance(radius, (int, np.integer)) or isinstance(radius, bool) or radius < 0:
        raise InvalidArgument(f"Dilation radius must be a non-negative integer, got {radius!r}")

    edges = detect_edges(composite, threshold, sigma)
    if radius == 0:
        return edges
    return ndimage.binary_dilation(edges, structure=morphology.disk(int(radius)))


def build_colormap(colormap: Union[str, np.ndarray] = 'jet', levels: int = 256,
                   inverted: bool = True) -> np.ndarray:
    """
    Build an RGB lookup table.

    Parameters
    ----------
    colormap : str or np.ndarray
        Matplotlib colormap name, or an explicit (levels, 3) RGB table in [0, 1]
    levels : int
        Number of entries when ``colormap`` is a name
    inverted : bool
        Reverse the table

    Returns
    -------
    np.ndarray
        (levels, 3) float array
    """
    if isinstance(colormap, str):
        import matplotlib

        if levels < 2:
            raise InvalidArgument(f"Colormap needs at least 2 levels, got {levels}")
        try:
            cmap = matplotlib.colormaps[colormap]
        except KeyError as e:
            raise InvalidArgument(f"Unknown colormap: {colormap}") from e
        table = cmap.resampled(levels)(np.arange(levels))[:, :3]
    else:
        table = np.asarray(colormap, dtype=np.float64)
        if table.ndim != 2 or table.shape[1] != 3 or table.shape[0] < 2:
            raise InvalidArgument(f"Colormap table must have shape (levels, 3), got {table.shape}")

    if inverted:
        table = table[::-1]
    return np.array(table, dtype=np.float64)


def colorize_ttp(frames: Sequence[np.ndarray], composite: np.ndarray,
                 edge_dilation_radius: int = 2, colormap: Union[str, np.ndarray] = 'jet',
                 levels: int = 256, invert: bool = True,
                 edge_threshold: Threshold = None,
                 edge_sigma: float = DEFAULT_SIGMA,
                 frame_indices: Optional[Sequence[int]] = None,
                 n_frames: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Render the time-to-peak of an aligned series inside the vessel mask.

    Parameters
    ----------
    frames : sequence of np.ndarray
        Aligned time series, in acquisition order
    composite : np.ndarray
        Composite image the vessel mask is derived from
    edge_dilation_radius : int
        Disk radius for the vessel mask dilation
    colormap : str or np.ndarray
        Colormap name or RGB table
    levels : int
        Colormap entries when ``colormap`` is a name
    invert : bool
        Reverse the colormap so early arrival gets the top colours
    edge_threshold : float, (float, float) or None
        Canny sensitivity for the vessel mask, automatic when None
    edge_sigma : float
        Canny Gaussian width
    frame_indices : sequence of int, optional
        0-based series position of each frame (see compute_ttp_map)
    n_frames : int, optional
        Length of the acquired series, used to scale TTP onto the colormap.
        Defaults to the last frame position + 1

    Returns
    -------
    color : np.ndarray
        (rows, cols, 3) float image in [0, 1]; 0 outside the vessel mask
    ttp_map : np.ndarray
        int TTP map, BACKGROUND_TTP outside the vessel mask
    vessel_mask : np.ndarray
        Boolean vessel mask
    """
    frames = list(frames)
    stack = _stack_frames(frames)
    composite = np.asarray(composite)
    if composite.shape != stack.shape[:2]:
        raise InvalidArgument(
            f"Composite shape {composite.shape} does not match frame shape {stack.shape[:2]}"
        )

    table = build_colormap(colormap, levels, invert)
    n_levels = table.shape[0]
    ordinals = _frame_ordinals(frame_indices, stack.shape[-1])
    if n_frames is None:
        n_frames = int(ordinals[-1]) + 1
    elif not isinstance(n_frames, (int, np.integer)) or n_frames <= ordinals[-1]:
        raise InvalidArgument(f"Series length {n_frames!r} does not cover frame position {ordinals[-1]}")

    vessel_mask = create_vessel_mask(composite, edge_dilation_radius, edge_threshold, edge_sigma)
    ttp = ordinals[np.argmax(stack, axis=-1)] + 1

    color_index = np.floor(ttp * (n_levels - 1) / n_frames + 0.5).astype(np.int64)
    color_index = np.clip(color_index, 0, n_levels - 1)

    color = np.zeros(stack.shape[:2] + (3,), dtype=np.float64)
    color[vessel_mask] = table[color_index[vessel_mask]]

    ttp_map = np.where(vessel_mask, ttp, BACKGROUND_TTP)
    return color, ttp_map, vessel_mask


def ttp_value_range(ttp_map: Optional[np.ndarray]) -> Optional[Tuple[int, int]]:
    """(min, max) TTP over the defined pixels, or None when nothing is defined."""
    if ttp_map is None:
        return None
    defined = ttp_map[ttp_map != BACKGROUND_TTP]
    if defined.size == 0:
        return None
    return int(defined.min()), int(defined.max())


def _stack_frames(frames: Sequence[np.ndarray]) -> np.ndarray:
    """Normalize frames independently and stack them along a trailing time axis."""
    frames = [np.asarray(frame) for frame in frames]
    if not frames:
        raise InvalidArgument("Time series is empty")
    shape = frames[0].shape
    if len(shape) != 2:
        raise InvalidArgument(f"Frames must be 2D, got shape {shape}")
    for frame in frames[1:]:
        if frame.shape != shape:
            raise InvalidArgument(f"Frame shapes differ: {shape} vs {frame.shape}")
    return np.stack([normalize_image(frame) for frame in frames], axis=-1)


def _frame_ordinals(frame_indices: Optional[Sequence[int]], n_stacked: int) -> np.ndarray:
    """Series positions of the stacked frames as an int array, strictly increasing."""
    if frame_indices is None:
        return np.arange(n_stacked, dtype=np.int64)
    ordinals = np.asarray(frame_indices, dtype=np.int64)
    if ordinals.shape != (n_stacked,):
        raise InvalidArgument(f"Got {ordinals.size} frame indices for {n_stacked} frames")
    if ordinals[0] < 0 or np.any(np.diff(ordinals) <= 0):
        raise InvalidArgument(f"Frame indices must be non-negative and increasing, got {list(frame_indices)}")
    return ordinals
