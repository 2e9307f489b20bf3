"""
perfusion_analysis - Alignment and time-to-peak mapping of serial perfusion slices.

This package provides tools for:
- Automatic brain segmentation with an ellipse-seeded active contour
- Two-stage (mask-guided, then edge-guided) registration of each frame to a fixed frame
- Series alignment with per-frame failure isolation
- Time-to-peak maps gated by a vessel mask and rendered through a colormap
- Grouping DICOM slices by location and saving per-group results
"""

from .config import PipelineConfig
from .errors import (
    PerfusionAnalysisError,
    InvalidArgument,
    SegmentationFailure,
    RegistrationFailure,
    GroupFailure,
)
from .io import load_dicom_image, normalize_image, save_group_result, load_group_result
from .edges import detect_edges
from .segmentation import segment_brain, initial_contour
from .registration import estimate_and_apply, register_pair, dice_coefficient
from .alignment import Frame, RegisteredSeries, align_series, align_to_reference, merge_registered_frames
from .ttp_mapping import compute_ttp_map, create_vessel_mask, colorize_ttp
from .pipeline import Group, GroupResult, process_group, process_groups, print_group_report

__version__ = "1.0.0"
__all__ = [
    "PipelineConfig",
    "PerfusionAnalysisError",
    "InvalidArgument",
    "SegmentationFailure",
    "RegistrationFailure",
    "GroupFailure",
    "load_dicom_image",
    "normalize_image",
    "save_group_result",
    "load_group_result",
    "detect_edges",
    "segment_brain",
    "initial_contour",
    "estimate_and_apply",
    "register_pair",
    "dice_coefficient",
    "Frame",
    "RegisteredSeries",
    "align_series",
    "align_to_reference",
    "merge_registered_frames",
    "compute_ttp_map",
    "create_vessel_mask",
    "colorize_ttp",
    "Group",
    "GroupResult",
    "process_group",
    "process_groups",
    "print_group_report",
]
