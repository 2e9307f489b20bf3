"""
DICOM folder scanner and group provider.

Scans a perfusion (time-series) folder and an optional arterial folder,
organizes the perfusion slices by slice location and matches each location
to a set of arterial slices, producing Group objects for process_group.
"""

from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .alignment import Frame
from .errors import InvalidArgument
from .io import PositionMetadata, load_dicom_image
from .pipeline import Group

# arterial slices within this distance (mm) of the perfusion range are kept
LOCATION_MARGIN = 2.0


@dataclass(frozen=True)
class DicomRecord:
    """Header-only view of one DICOM file."""
    path: str
    position: PositionMetadata

    @property
    def location(self) -> float:
        return self.position.slice_location


def scan_series_folder(folder_path: str, recursive: bool = False,
                       verbose: bool = True) -> List[DicomRecord]:
    """
    Collect the readable DICOM files of a folder.

    Files without a usable position (ImagePositionPatient or SliceLocation)
    and non-DICOM files are skipped.

    Parameters
    ----------
    folder_path : str
        Folder holding one series
    recursive : bool
        Whether to scan subdirectories
    verbose : bool
        Print skipped files and a count

    Returns
    -------
    List[DicomRecord]
        Records sorted by path
    """
    import pydicom
    from pydicom.errors import InvalidDicomError

    folder = Path(folder_path)
    if not folder.is_dir():
        raise FileNotFoundError(f"Folder not found: {folder_path}")

    candidates = folder.rglob("*") if recursive else folder.iterdir()
    records = []
    skipped = 0

    for fpath in sorted(candidates):
        if not fpath.is_file() or fpath.name.startswith("."):
            continue
        try:
            ds = pydicom.dcmread(str(fpath), stop_before_pixels=True)
            position = PositionMetadata.from_dataset(ds)
        except (InvalidDicomError, InvalidArgument, OSError, ValueError, AttributeError) as e:
            skipped += 1
            if verbose:
                print(f"  Skipping {fpath.name}: {e}")
            continue
        records.append(DicomRecord(path=str(fpath), position=position))

    if verbose:
        print(f"Found {len(records)} DICOM slices in {folder} ({skipped} skipped)")
    return records


def group_timeseries_by_location(records: Sequence[DicomRecord],
                                 max_groups: Optional[int] = None) -> List[Tuple[float, List[DicomRecord]]]:
    """
    Group time-series slices by slice location.

    Parameters
    ----------
    records : sequence of DicomRecord
        Slices of the perfusion series
    max_groups : int, optional
        Keep only the first ``max_groups`` locations

    Returns
    -------
    list of (location, records)
        Ascending by location; within a location, ordered by acquisition
        time, then instance number, then path
    """
    by_location: Dict[float, List[DicomRecord]] = defaultdict(list)
    for record in records:
        by_location[record.location].append(record)

    groups = []
    for location in sorted(by_location):
        ordered = sorted(by_location[location], key=_temporal_key)
        groups.append((location, ordered))

    if max_groups is not None:
        groups = groups[:max_groups]
    return groups


def group_arterial_by_location(records: Sequence[DicomRecord], locations: Sequence[float],
                               group_size: int = 4,
                               margin: float = LOCATION_MARGIN) -> List[List[DicomRecord]]:
    """
    Chunk arterial slices into sets matched to the time-series locations.

    Slices outside ``[min(locations) - margin, max(locations) + margin]`` are
    dropped; the rest are sorted by location and cut into consecutive sets
    of ``group_size`` (a trailing incomplete set is discarded).

    Returns
    -------
    list of list of DicomRecord
        The k-th set belongs to the k-th time-series location
    """
    if group_size < 1:
        raise InvalidArgument(f"group_size must be positive, got {group_size}")
    if not locations:
        return []

    low = min(locations) - margin
    high = max(locations) + margin
    in_range = sorted((r for r in records if low <= r.location <= high),
                      key=lambda r: (r.location, r.path))

    n_sets = len(in_range) // group_size
    return [in_range[i * group_size:(i + 1) * group_size] for i in range(n_sets)]


def build_groups(timeseries_folder: str, arterial_folder: Optional[str] = None,
                 fixed_index: Optional[int] = None, group_size: int = 4,
                 max_groups: Optional[int] = None, verbose: bool = True) -> List[Group]:
    """
    Build pipeline groups from a perfusion folder and an optional arterial folder.

    Parameters
    ----------
    timeseries_folder : str
        Folder with the time-resolved perfusion slices
    arterial_folder : str, optional
        Folder with the arterial-phase slices
    fixed_index : int, optional
        Fixed frame position for every group (None = config default)
    group_size : int
        Arterial slices per group
    max_groups : int, optional
        Limit the number of locations
    verbose : bool
        Print progress

    Returns
    -------
    List[Group]
    """
    if verbose:
        print("Processing time-series images...")
    series = group_timeseries_by_location(scan_series_folder(timeseries_folder, verbose=verbose),
                                          max_groups=max_groups)
    if not series:
        raise InvalidArgument(f"No usable DICOM slices found in {timeseries_folder}")

    arterial_sets: List[List[DicomRecord]] = []
    if arterial_folder:
        if verbose:
            print("Processing arterial images...")
        arterial_records = scan_series_folder(arterial_folder, verbose=verbose)
        arterial_sets = group_arterial_by_location(arterial_records, [loc for loc, _ in series],
                                                   group_size=group_size)
        if verbose:
            print(f"Grouped {len(arterial_sets)} sets of {group_size} arterial images")

    groups = []
    for k, (location, records) in enumerate(series):
        arterial = arterial_sets[k] if k < len(arterial_sets) else []
        timeseries_frames, load_failures = _load_frames(records, 'timeseries', verbose)
        arterial_frames, arterial_failures = _load_frames(arterial, 'arterial', verbose)
        load_failures.update(arterial_failures)
        groups.append(Group(
            index=k,
            timeseries=tuple(timeseries_frames),
            arterial=tuple(arterial_frames),
            fixed_index=fixed_index,
            slice_location=location,
            load_failures=load_failures,
            n_acquired=len(records),
        ))
        if verbose:
            print(f"  Group {k}: location {location:.1f}, {len(records)} time points, "
                  f"{len(arterial)} arterial slices, {len(load_failures)} unreadable")

    return groups


def print_scan_summary(groups: Sequence[Group]) -> None:
    """Print a summary of the groups found."""
    print(f"\nFound {len(groups)} groups:\n")
    print(f"{'Group':>6} | {'Location':>10} | {'Time points':>11} | {'Arterial':>8}")
    print("-" * 45)
    for group in groups:
        location = f"{group.slice_location:.1f}" if group.slice_location is not None else "-"
        print(f"{group.index:>6} | {location:>10} | {len(group.timeseries):>11} | {len(group.arterial):>8}")


def _load_frames(records: Sequence[DicomRecord], series_name: str,
                 verbose: bool) -> Tuple[List[Frame], Dict[str, str]]:
    """Load pixel data; a slice that cannot be read is recorded and leaves a gap in the indices."""
    from pydicom.errors import InvalidDicomError

    frames = []
    failures = {}
    for i, record in enumerate(records):
        try:
            image, position = load_dicom_image(record.path)
        except (InvalidDicomError, InvalidArgument, OSError, ValueError, AttributeError, RuntimeError) as e:
            failures[f"{series_name}[{i}]"] = f"load: {e}"
            if verbose:
                print(f"  Warning: cannot load {Path(record.path).name}: {e}")
            continue
        frames.append(Frame(index=i, image=image, position=position, source=record.path))
    return frames, failures


def _temporal_key(record: DicomRecord):
    position = record.position
    return (
        position.acquisition_time or '',
        position.instance_number if position.instance_number is not None else 0,
        record.path,
    )
