"""
Image I/O for the perfusion pipeline.

Includes functions for:
- Normalizing slices to [0, 1]
- Loading a single DICOM slice together with its positional metadata
- Saving and loading per-group results (npz arrays, JSON metrics, PNG)
"""

import json
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Tuple, Optional, Dict, Any

import numpy as np

from .errors import InvalidArgument


@dataclass(frozen=True)
class PositionMetadata:
    """
    Positional metadata of one slice, resolved once at load time.

    ``slice_location`` is always present; every other field is optional and
    is ``None`` when the source file does not carry it.
    """
    slice_location: float
    image_position: Optional[Tuple[float, float, float]] = None
    instance_number: Optional[int] = None
    acquisition_time: Optional[str] = None
    series_description: Optional[str] = None
    pixel_spacing: Optional[Tuple[float, float]] = None

    @classmethod
    def from_dataset(cls, ds) -> 'PositionMetadata':
        """
        Resolve metadata from a pydicom dataset.

        Raises
        ------
        InvalidArgument
            If neither ImagePositionPatient nor SliceLocation is present
        """
        image_position = None
        position = ds.get('ImagePositionPatient')
        if position is not None and len(position) >= 3:
            image_position = tuple(float(v) for v in position[:3])

        if image_position is not None:
            slice_location = image_position[2]
        elif ds.get('SliceLocation') is not None:
            slice_location = float(ds.SliceLocation)
        else:
            raise InvalidArgument("DICOM file has no ImagePositionPatient or SliceLocation")

        instance_number = ds.get('InstanceNumber')
        acquisition_time = ds.get('AcquisitionTime') or ds.get('ContentTime')
        description = ds.get('SeriesDescription')
        spacing = ds.get('PixelSpacing')

        return cls(
            slice_location=float(slice_location),
            image_position=image_position,
            instance_number=int(instance_number) if instance_number is not None else None,
            acquisition_time=str(acquisition_time) if acquisition_time else None,
            series_description=str(description).strip() if description else None,
            pixel_spacing=(float(spacing[0]), float(spacing[1])) if spacing is not None and len(spacing) >= 2 else None,
        )


def normalize_image(image: np.ndarray) -> np.ndarray:
    """
    Min-max normalize an image to [0, 1].

    A constant image maps to all zeros. The input is never modified.

    Parameters
    ----------
    image : np.ndarray
        Image of any numeric dtype

    Returns
    -------
    np.ndarray
        float64 image in [0, 1]
    """
    image = np.asarray(image, dtype=np.float64)
    if image.size == 0:
        return image.copy()
    low = image.min()
    high = image.max()
    if high > low:
        return (image - low) / (high - low)
    return np.zeros_like(image)


def load_dicom_image(filepath: str) -> Tuple[np.ndarray, PositionMetadata]:
    """
    Load a single-frame DICOM slice normalized to [0, 1].

    Parameters
    ----------
    filepath : str
        Path to the DICOM file

    Returns
    -------
    image : np.ndarray
        2D float64 image [row, col] in [0, 1]
    metadata : PositionMetadata
        Slice location and optional acquisition fields

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    InvalidArgument
        If the pixel data is not a single 2D grayscale slice or has no position
    """
    import pydicom

    path = Path(filepath)
    if not path.exists():
        raise FileNotFoundError(f"DICOM file not found: {filepath}")

    ds = pydicom.dcmread(str(path), force=True)
    pixels = ds.pixel_array.astype(np.float64)
    if pixels.ndim != 2:
        raise InvalidArgument(f"Expected a single 2D grayscale slice, got pixel array of shape {pixels.shape}")

    slope = float(ds.get('RescaleSlope', 1.0) or 1.0)
    intercept = float(ds.get('RescaleIntercept', 0.0) or 0.0)
    pixels = pixels * slope + intercept

    return normalize_image(pixels), PositionMetadata.from_dataset(ds)


def _to_json_safe(value: Any) -> Any:
    """Convert numpy scalars/arrays (possibly nested) into JSON-serializable types."""
    if isinstance(value, dict):
        return {str(k): _to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_safe(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        value = float(value)
    if isinstance(value, float) and not np.isfinite(value):
        return None
    return value


def save_group_result(result, output_dir: str, config=None, verbose: bool = True) -> Path:
    """
    Save one group's registered series, composite and TTP rendering to disk.

    Writes ``group_XX/registered.npz``, ``group_XX/metrics.json`` and, when a
    colour image exists, ``group_XX/colored_ttp.png``.

    Parameters
    ----------
    result : GroupResult
        Output of process_group
    output_dir : str
        Base output directory
    config : PipelineConfig, optional
        Configuration used, stored alongside the metrics
    verbose : bool
        Print the paths written

    Returns
    -------
    Path
        Group output directory
    """
    group_dir = Path(output_dir) / f"group_{result.group_index:02d}"
    group_dir.mkdir(parents=True, exist_ok=True)

    arrays = {}
    for name, series in (('timeseries', result.timeseries), ('arterial', result.arterial)):
        if series is not None and series.frames:
            arrays[f'{name}_images'] = np.stack(series.images, axis=0)
            arrays[f'{name}_indices'] = np.array(series.indices, dtype=np.int64)
    for name in ('composite', 'ttp_map', 'vessel_mask', 'colored'):
        value = getattr(result, name)
        if value is not None:
            arrays[name] = value

    if arrays:
        data_file = group_dir / "registered.npz"
        np.savez_compressed(data_file, **arrays)
        if verbose:
            print(f"  Registered data saved to: {data_file}")

    if result.colored is not None:
        from matplotlib import image as mpimg

        png_file = group_dir / "colored_ttp.png"
        mpimg.imsave(png_file, np.clip(result.colored, 0.0, 1.0))
        if verbose:
            print(f"  Colored TTP image saved to: {png_file}")

    metrics = []
    for series in (result.timeseries, result.arterial):
        if series is None:
            continue
        metrics.extend(asdict(frame.metrics) for frame in series.frames if frame.metrics is not None)

    metrics_dict = {
        'metadata': {
            'created_at': time.strftime('%Y-%m-%d %H:%M:%S'),
            'group_index': result.group_index,
            'shape': result.composite.shape if result.composite is not None else None,
            'config': config.to_dict() if config is not None else None,
        },
        'error': result.error,
        'failures': result.failures,
        'metrics': metrics,
        'summary': {
            'processed_frames': result.n_processed,
            'failed_frames': result.n_failed,
            'processing_time': result.processing_time,
            'ttp_range': result.ttp_range,
        }
    }

    metrics_file = group_dir / "metrics.json"
    with open(metrics_file, 'w') as f:
        json.dump(_to_json_safe(metrics_dict), f, indent=2)
    if verbose:
        print(f"  Group metrics saved to: {metrics_file}")

    return group_dir


def load_group_result(group_dir: str) -> Dict[str, Any]:
    """
    Load a group directory written by save_group_result.

    Parameters
    ----------
    group_dir : str
        Path to ``group_XX`` directory

    Returns
    -------
    dict
        Saved arrays keyed by name plus 'metrics' (parsed metrics.json)
    """
    group_path = Path(group_dir)

    metrics_file = group_path / "metrics.json"
    if not metrics_file.exists():
        raise FileNotFoundError(f"Metrics file not found: {metrics_file}")

    with open(metrics_file, 'r') as f:
        loaded = {'metrics': json.load(f)}

    data_file = group_path / "registered.npz"
    if data_file.exists():
        with np.load(data_file) as data:
            for key in data.files:
                loaded[key] = data[key]

    return loaded
