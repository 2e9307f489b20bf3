"""
Series alignment: segment every frame of a group and register it to one
fixed frame with the two-stage protocol.

Per-frame registrations are independent of each other and may run on a
thread pool (``PipelineConfig.max_workers``). Failures are collected per
frame in ``RegisteredSeries.failures`` under the "skip" policy; the "abort"
policy turns the first failure into a GroupFailure.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import PipelineConfig
from .edges import detect_edges
from .errors import GroupFailure, InvalidArgument, RegistrationFailure, SegmentationFailure
from .io import PositionMetadata, normalize_image
from .registration import PairMetrics, register_pair
from .segmentation import segment_brain


@dataclass(frozen=True)
class Frame:
    """
    One slice of a group.

    ``index`` identifies the frame within its series (0-based) and is the key
    used for failure reporting. ``mask`` and ``masked_image`` are filled in by
    segment_frames; a frame that already carries a mask is not re-segmented.
    """
    index: int
    image: np.ndarray
    mask: Optional[np.ndarray] = None
    masked_image: Optional[np.ndarray] = None
    position: Optional[PositionMetadata] = None
    source: Optional[str] = None


@dataclass(frozen=True)
class RegisteredFrame:
    """A frame resampled onto the fixed grid."""
    index: int
    image: np.ndarray
    reference: np.ndarray  # registered edge map
    metrics: Optional[PairMetrics] = None
    is_reference: bool = False


@dataclass(frozen=True)
class RegisteredSeries:
    """
    Aligned frames of one series, ordered by frame index, plus their composite.

    Attributes
    ----------
    frames : tuple of RegisteredFrame
        Successfully registered frames (the fixed frame included, if any)
    fixed_index : int or None
        Frame index of the fixed frame when it belongs to this series
    merged : np.ndarray
        Sum of the registered images rescaled to [0, 1]
    failures : dict
        Frame index -> failure reason
    reference_frame : Frame or None
        Segmented fixed frame the series was registered to
    """
    frames: Tuple[RegisteredFrame, ...]
    fixed_index: Optional[int]
    merged: Optional[np.ndarray]
    failures: Dict[int, str] = field(default_factory=dict)
    reference_frame: Optional[Frame] = None

    @property
    def images(self) -> List[np.ndarray]:
        return [frame.image for frame in self.frames]

    @property
    def indices(self) -> List[int]:
        return [frame.index for frame in self.frames]

    @property
    def n_registered(self) -> int:
        return len(self.frames)

    @property
    def n_failed(self) -> int:
        return len(self.failures)


def segment_frames(frames: Sequence[Frame], config: Optional[PipelineConfig] = None,
                   verbose: bool = True) -> Tuple[List[Frame], Dict[int, str]]:
    """
    Segment every frame that does not already carry a mask.

    Parameters
    ----------
    frames : sequence of Frame
        Frames to segment
    config : PipelineConfig, optional
        Segmentation parameters (defaults if None)
    verbose : bool
        Print progress

    Returns
    -------
    segmented : list of Frame
        New Frame values with ``mask`` and ``masked_image`` set, in input
        order; frames that failed are left out
    failures : dict
        Frame index -> failure reason
    """
    config = config or PipelineConfig()
    segmented = []
    failures = {}

    if verbose:
        print(f"Segmenting {len(frames)} frames...")

    for frame in frames:
        if frame.mask is not None:
            mask = np.asarray(frame.mask, dtype=bool)
            if mask.shape != np.shape(frame.image):
                raise InvalidArgument(
                    f"Frame {frame.index}: mask shape {mask.shape} does not match image shape {np.shape(frame.image)}"
                )
            masked_image = frame.masked_image
            if masked_image is None:
                masked_image = np.where(mask, np.asarray(frame.image, dtype=np.float64), 0.0)
            segmented.append(replace(frame, mask=mask, masked_image=masked_image))
            continue

        try:
            mask, masked_image = segment_brain(
                frame.image,
                iterations=config.contour_iterations,
                smoothing=config.contour_smoothing,
                min_region_area=config.min_region_area,
                shrink_factor=config.seed_shrink_factor,
            )
        except SegmentationFailure as e:
            failures[frame.index] = f"segmentation: {e}"
            if verbose:
                print(f"  Warning: frame {frame.index} segmentation failed: {e}")
            continue

        segmented.append(replace(frame, mask=mask, masked_image=masked_image))
        if verbose:
            print(f"  Frame {frame.index}: mask covers {mask.mean() * 100:.1f}% of the slice")

    return segmented, failures


def align_series(frames: Sequence[Frame], fixed_index: int,
                 config: Optional[PipelineConfig] = None,
                 verbose: bool = True) -> RegisteredSeries:
    """
    Register every frame of a series to the frame at ``fixed_index``.

    The fixed frame itself is passed through with no transform applied. With
    ``config.mask_fixed_frame`` (the default) it enters the series as its
    masked image, like every registered frame; otherwise it is the full
    normalized slice. Its edge map is always taken from the masked image.

    Parameters
    ----------
    frames : sequence of Frame
        Ordered frames of one series
    fixed_index : int
        Position of the fixed frame within ``frames``
    config : PipelineConfig, optional
        Pipeline parameters (defaults if None)
    verbose : bool
        Print progress

    Returns
    -------
    RegisteredSeries

    Raises
    ------
    InvalidArgument
        If ``frames`` is empty or ``fixed_index`` is out of range
    GroupFailure
        If the fixed frame cannot be segmented, if no moving frame could be
        registered, or on the first failure under the "abort" policy
    """
    config = config or PipelineConfig()
    frames = list(frames)
    if not frames:
        raise InvalidArgument("Cannot align an empty series")
    if not isinstance(fixed_index, (int, np.integer)) or not 0 <= fixed_index < len(frames):
        raise InvalidArgument(f"Fixed frame index {fixed_index} out of range for {len(frames)} frames")

    fixed_frame_id = frames[fixed_index].index
    segmented, failures = segment_frames(frames, config, verbose)
    _apply_policy(failures, config)

    fixed = next((f for f in segmented if f.index == fixed_frame_id), None)
    if fixed is None:
        raise GroupFailure(f"Fixed frame {fixed_frame_id} could not be segmented: "
                           f"{failures.get(fixed_frame_id)}", failures=failures)

    fixed_edges = detect_edges(fixed.masked_image, config.edge_threshold, config.edge_sigma)
    moving = [f for f in segmented if f.index != fixed_frame_id]

    registered, reg_failures = _register_frames(moving, fixed, fixed_edges, config, verbose)
    failures.update(reg_failures)

    n_moving = len(frames) - 1
    if n_moving > 0 and not registered:
        raise GroupFailure(f"None of the {n_moving} moving frames could be registered",
                           failures=failures)

    fixed_image = fixed.masked_image if config.mask_fixed_frame else normalize_image(fixed.image)
    registered.append(RegisteredFrame(
        index=fixed.index,
        image=np.asarray(fixed_image, dtype=np.float64),
        reference=fixed_edges,
        metrics=None,
        is_reference=True,
    ))
    registered.sort(key=lambda f: f.index)

    return RegisteredSeries(
        frames=tuple(registered),
        fixed_index=fixed.index,
        merged=merge_registered_frames([f.image for f in registered]),
        failures=dict(sorted(failures.items())),
        reference_frame=fixed,
    )


def align_to_reference(frames: Sequence[Frame], fixed_frame: Frame,
                       config: Optional[PipelineConfig] = None,
                       verbose: bool = True) -> RegisteredSeries:
    """
    Register every frame of a series to a fixed frame from another series.

    Used for the arterial frames of a group, which are all aligned to the
    time series' fixed frame; none of them is skipped.

    Parameters
    ----------
    frames : sequence of Frame
        Frames to register
    fixed_frame : Frame
        Segmented fixed frame (``mask`` and ``masked_image`` set)
    config : PipelineConfig, optional
        Pipeline parameters (defaults if None)
    verbose : bool
        Print progress

    Returns
    -------
    RegisteredSeries
        ``fixed_index`` is None and ``merged`` is None when no frame registered
    """
    config = config or PipelineConfig()
    if fixed_frame.mask is None or fixed_frame.masked_image is None:
        raise InvalidArgument("Fixed frame must be segmented before aligning to it")

    frames = list(frames)
    if not frames:
        return RegisteredSeries(frames=(), fixed_index=None, merged=None, reference_frame=fixed_frame)

    segmented, failures = segment_frames(frames, config, verbose)
    _apply_policy(failures, config)

    fixed_edges = detect_edges(fixed_frame.masked_image, config.edge_threshold, config.edge_sigma)
    registered, reg_failures = _register_frames(segmented, fixed_frame, fixed_edges, config, verbose)
    failures.update(reg_failures)
    registered.sort(key=lambda f: f.index)

    merged = merge_registered_frames([f.image for f in registered]) if registered else None
    return RegisteredSeries(
        frames=tuple(registered),
        fixed_index=None,
        merged=merged,
        failures=dict(sorted(failures.items())),
        reference_frame=fixed_frame,
    )


def merge_registered_frames(images: Sequence[np.ndarray]) -> np.ndarray:
    """
    Sum registered images and rescale the result to [0, 1].

    Raises
    ------
    InvalidArgument
        If no image is given or the shapes differ
    """
    images = [np.asarray(image, dtype=np.float64) for image in images]
    if not images:
        raise InvalidArgument("Cannot merge an empty set of images")
    shape = images[0].shape
    for image in images[1:]:
        if image.shape != shape:
            raise InvalidArgument(f"Cannot merge images of shapes {shape} and {image.shape}")
    return normalize_image(np.sum(images, axis=0))


def _register_frames(moving: Sequence[Frame], fixed: Frame, fixed_edges: np.ndarray,
                     config: PipelineConfig, verbose: bool) -> Tuple[List[RegisteredFrame], Dict[int, str]]:
    """Register ``moving`` frames to ``fixed``, sequentially or on a thread pool."""
    registered = []
    failures = {}
    n_frames = len(moving)
    if n_frames == 0:
        return registered, failures

    if verbose:
        print(f"Registering {n_frames} frames to reference (frame {fixed.index})...")

    def handle(frame: Frame, outcome):
        if isinstance(outcome, RegistrationFailure):
            failures[frame.index] = f"registration {outcome}"
            if verbose:
                print(f"  Warning: frame {frame.index} registration failed ({outcome})")
            _apply_policy(failures, config)
            return
        registered.append(outcome)
        if verbose:
            _print_frame_summary(outcome)

    if config.max_workers > 1 and n_frames > 1:
        with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
            futures = {executor.submit(_register_frame, frame, fixed, fixed_edges, config): frame
                       for frame in moving}
            outcomes = {}
            for future in as_completed(futures):
                outcomes[futures[future].index] = future.result()
        for frame in moving:
            handle(frame, outcomes[frame.index])
    else:
        for i, frame in enumerate(moving, start=1):
            if verbose:
                print(f"  Registering frame {frame.index} ({i}/{n_frames})")
            handle(frame, _register_frame(frame, fixed, fixed_edges, config))

    if verbose:
        print("Registration complete.")
    return registered, failures


def _register_frame(frame: Frame, fixed: Frame, fixed_edges: np.ndarray, config: PipelineConfig):
    """Register one frame; returns a RegisteredFrame or the RegistrationFailure."""
    try:
        image, edges, metrics = register_pair(
            frame.masked_image,
            fixed.masked_image,
            frame.mask,
            fixed.mask,
            fixed_edge_map=None if config.recompute_fixed_edges else fixed_edges,
            max_iterations=config.registration_iterations,
            edge_threshold=config.edge_threshold,
            edge_sigma=config.edge_sigma,
            family=config.transform_family,
            metric=config.metric,
            frame_index=frame.index,
            require_refinement_gain=config.require_refinement_gain,
        )
    except RegistrationFailure as e:
        if config.fallback_to_stage1 and e.stage == 2 and e.partial_result is not None:
            image, edges, metrics = e.partial_result
        else:
            return e
    return RegisteredFrame(index=frame.index, image=image, reference=edges, metrics=metrics)


def _apply_policy(failures: Dict[int, str], config: PipelineConfig) -> None:
    if failures and config.failure_policy == 'abort':
        index, reason = next(iter(failures.items()))
        raise GroupFailure(f"Frame {index} failed ({reason}); aborting under 'abort' policy",
                           failures=failures)


def _print_frame_summary(frame: RegisteredFrame) -> None:
    m = frame.metrics
    tx, ty = m.translation
    dice = f"{m.stage1_dice:.3f}"
    if m.stage2_dice is not None:
        dice += f" -> {m.stage2_dice:.3f} ({'kept' if m.refinement_accepted else 'rejected'})"
    print(f"    Edge Dice: {dice}, MSE: {m.mean_squared_error:.4f}")
    print(f"    Translation (pixels): X={tx:.2f}, Y={ty:.2f}, "
          f"Rotation: {np.degrees(m.rotation):.2f} deg, Scale: {m.scale:.3f}")
    print(f"    Time: {m.registration_time:.1f}s")
