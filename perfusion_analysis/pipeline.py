"""
Group-level pipeline: align a group's time series and arterial frames, build
the composite and render the time-to-peak map.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .alignment import Frame, RegisteredSeries, align_series, align_to_reference
from .config import PipelineConfig
from .errors import GroupFailure, InvalidArgument
from .ttp_mapping import colorize_ttp, ttp_value_range


@dataclass(frozen=True)
class Group:
    """
    Frames of one anatomical location.

    ``Frame.index`` is the 0-based position of a frame in the acquired
    series, so slices that could not be loaded leave gaps; they are listed in
    ``load_failures`` and counted in ``n_acquired``. ``fixed_index`` is the
    series position of the fixed frame; None means
    ``PipelineConfig.reference_frame_index``.
    """
    index: int
    timeseries: Tuple[Frame, ...]
    arterial: Tuple[Frame, ...] = ()
    fixed_index: Optional[int] = None
    slice_location: Optional[float] = None
    load_failures: Dict[str, str] = field(default_factory=dict)
    n_acquired: Optional[int] = None

    @property
    def series_length(self) -> int:
        """Number of acquired time points, loaded or not."""
        if self.n_acquired is not None:
            return self.n_acquired
        return max((frame.index + 1 for frame in self.timeseries), default=0)


@dataclass(frozen=True)
class GroupResult:
    """Outcome of one group. ``error`` is set (and arrays are None) when the group failed."""
    group_index: int
    timeseries: Optional[RegisteredSeries] = None
    arterial: Optional[RegisteredSeries] = None
    composite: Optional[np.ndarray] = None
    ttp_map: Optional[np.ndarray] = None
    vessel_mask: Optional[np.ndarray] = None
    colored: Optional[np.ndarray] = None
    failures: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    processing_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def n_processed(self) -> int:
        return sum(series.n_registered for series in (self.timeseries, self.arterial)
                   if series is not None)

    @property
    def n_failed(self) -> int:
        return len(self.failures)

    @property
    def ttp_range(self) -> Optional[Tuple[int, int]]:
        return ttp_value_range(self.ttp_map)


def process_group(group: Group, config: Optional[PipelineConfig] = None,
                  verbose: bool = True) -> GroupResult:
    """
    Run the full pipeline on one group.

    Parameters
    ----------
    group : Group
        Frames of one location
    config : PipelineConfig, optional
        Pipeline parameters (defaults if None)
    verbose : bool
        Print progress

    Returns
    -------
    GroupResult

    Raises
    ------
    GroupFailure
        If the fixed frame could not be loaded, or the time series (or, under
        the "abort" policy, the arterial series) yields no usable registration
    InvalidArgument
        If the fixed frame index is out of range
    """
    config = config or PipelineConfig()
    start_time = time.time()
    fixed_position = resolve_fixed_position(group, config)

    try:
        timeseries = align_series(group.timeseries, fixed_position, config, verbose)
    except GroupFailure as e:
        failures = dict(group.load_failures)
        failures.update(_prefixed('timeseries', e.failures))
        raise GroupFailure(str(e), group_index=group.index, failures=failures) from e
    failures = dict(group.load_failures)
    failures.update(_prefixed('timeseries', timeseries.failures))

    arterial = None
    if group.arterial:
        if verbose:
            print(f"Aligning {len(group.arterial)} arterial frames to the time-series reference...")
        try:
            arterial = align_to_reference(group.arterial, timeseries.reference_frame, config, verbose)
        except GroupFailure as e:
            failures.update(_prefixed('arterial', e.failures))
            raise GroupFailure(str(e), group_index=group.index, failures=failures) from e
        failures.update(_prefixed('arterial', arterial.failures))

    if arterial is not None and arterial.merged is not None:
        composite = arterial.merged
    else:
        composite = timeseries.merged

    if verbose:
        print(f"Computing time-to-peak over {timeseries.n_registered} frames...")
    colored, ttp_map, vessel_mask = colorize_ttp(
        timeseries.images,
        composite,
        edge_dilation_radius=config.edge_dilation_radius,
        colormap=config.colormap,
        levels=config.color_levels,
        invert=config.invert_colormap,
        edge_sigma=config.edge_sigma,
        frame_indices=timeseries.indices,
        n_frames=group.series_length,
    )

    return GroupResult(
        group_index=group.index,
        timeseries=timeseries,
        arterial=arterial,
        composite=composite,
        ttp_map=ttp_map,
        vessel_mask=vessel_mask,
        colored=colored,
        failures=failures,
        processing_time=time.time() - start_time,
    )


def process_groups(groups: Sequence[Group], config: Optional[PipelineConfig] = None,
                   verbose: bool = True) -> List[GroupResult]:
    """
    Process groups one after another, isolating GroupFailure per group.

    A failed group yields a GroupResult with ``error`` set; the remaining
    groups are still processed. A group whose fixed frame index falls
    outside its series is reported as failed the same way.
    """
    config = config or PipelineConfig()
    results = []

    for i, group in enumerate(groups, start=1):
        if verbose:
            print(f"\n=== Group {group.index} ({i}/{len(groups)}) ===")
        start_time = time.time()
        try:
            try:
                resolve_fixed_position(group, config)
            except InvalidArgument as e:
                raise GroupFailure(str(e), group_index=group.index,
                                   failures=dict(group.load_failures)) from e
            results.append(process_group(group, config, verbose))
        except GroupFailure as e:
            if verbose:
                print(f"Group {group.index} failed: {e}")
            results.append(GroupResult(
                group_index=group.index,
                failures=dict(e.failures),
                error=str(e),
                processing_time=time.time() - start_time,
            ))

    return results


def print_group_report(results: Sequence[GroupResult]) -> None:
    """Print processed / failed frame counts and TTP range per group."""
    print("\n" + "=" * 60)
    print("PERFUSION ANALYSIS SUMMARY")
    print("=" * 60)

    for result in results:
        status = "OK" if result.ok else "FAILED"
        ttp_range = result.ttp_range
        ttp_text = f"{ttp_range[0]}-{ttp_range[1]}" if ttp_range else "n/a"
        print(f"Group {result.group_index:2d}: {status:6s} processed={result.n_processed:3d} "
              f"failed={result.n_failed:3d} TTP range={ttp_text} ({result.processing_time:.1f}s)")
        if result.error:
            print(f"    Error: {result.error}")
        for frame_id, reason in result.failures.items():
            print(f"    {frame_id}: {reason}")

    n_ok = sum(1 for r in results if r.ok)
    print("-" * 60)
    print(f"Groups succeeded: {n_ok}/{len(results)}")
    print(f"Frames processed: {sum(r.n_processed for r in results)}, "
          f"failed: {sum(r.n_failed for r in results)}")


def resolve_fixed_position(group: Group, config: PipelineConfig) -> int:
    """
    Position in ``group.timeseries`` of the fixed frame.

    Raises
    ------
    InvalidArgument
        If the fixed frame index lies outside the acquired series
    GroupFailure
        If the fixed frame was acquired but could not be loaded
    """
    fixed_index = group.fixed_index if group.fixed_index is not None else config.reference_frame_index
    n_frames = group.series_length
    if not isinstance(fixed_index, (int, np.integer)) or not 0 <= fixed_index < n_frames:
        raise InvalidArgument(f"Fixed frame index {fixed_index} out of range for {n_frames} frames")

    for position, frame in enumerate(group.timeseries):
        if frame.index == fixed_index:
            return position
    raise GroupFailure(f"Fixed frame {fixed_index} could not be loaded",
                       group_index=group.index, failures=dict(group.load_failures))


def _prefixed(series_name: str, failures: Dict) -> Dict[str, str]:
    return {f"{series_name}[{index}]": reason for index, reason in failures.items()}
