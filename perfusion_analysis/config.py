"""
Pipeline configuration.

All tunable constants of the segmentation, registration and colour-mapping
stages live here with their documented defaults.
"""

import math
from dataclasses import dataclass, asdict, fields, replace
from typing import Any, Dict

from .errors import InvalidArgument


TRANSFORM_FAMILIES = ('translation', 'rigid', 'similarity', 'affine')
METRICS = ('mean_squares', 'mattes')
FAILURE_POLICIES = ('skip', 'abort')


@dataclass(frozen=True)
class PipelineConfig:
    """
    Named parameters of the pipeline.

    Attributes
    ----------
    contour_iterations : int
        Chan-Vese contour evolution steps
    contour_smoothing : int
        Curvature smoothing passes per contour evolution step
    min_region_area : int
        Connected components smaller than this (pixels) are removed before seeding
    seed_shrink_factor : float
        Fraction of the fitted ellipse semi-axes used for the initial contour
    edge_threshold : float
        Canny sensitivity for the edge-guided refinement stage
    edge_sigma : float
        Canny Gaussian smoothing width (pixels)
    registration_iterations : int
        Optimizer iteration cap per registration call
    transform_family : str
        'translation', 'rigid', 'similarity' or 'affine'
    metric : str
        'mean_squares' or 'mattes' (Mattes mutual information)
    reference_frame_index : int
        0-based index of the fixed frame within each time series
    edge_dilation_radius : int
        Disk radius used to dilate composite edges into the vessel mask
    colormap : str
        Matplotlib colormap name for TTP rendering
    color_levels : int
        Number of colormap entries
    invert_colormap : bool
        Reverse the colormap so early arrival maps to the top of the scale
    failure_policy : str
        'skip' records per-frame failures and continues, 'abort' fails the group
    recompute_fixed_edges : bool
        Recompute the fixed edge map for every pair instead of once per group
    fallback_to_stage1 : bool
        Keep the Stage-1 result when the edge-guided stage fails
    require_refinement_gain : bool
        Keep the Stage-1 result when the edge-guided stage lowers the edge
        Dice; off means the Stage-2 result is always the final one
    mask_fixed_frame : bool
        Pass the fixed frame through as its masked image (on) or as the
        full normalized slice (off)
    max_workers : int
        Thread pool size for per-frame registration (1 = sequential)
    """
    contour_iterations: int = 300
    contour_smoothing: int = 1
    min_region_area: int = 1000
    seed_shrink_factor: float = 0.45
    edge_threshold: float = 0.1
    edge_sigma: float = math.sqrt(2.0)
    registration_iterations: int = 1000
    transform_family: str = 'similarity'
    metric: str = 'mean_squares'
    reference_frame_index: int = 14
    edge_dilation_radius: int = 2
    colormap: str = 'jet'
    color_levels: int = 256
    invert_colormap: bool = True
    failure_policy: str = 'skip'
    recompute_fixed_edges: bool = False
    fallback_to_stage1: bool = False
    require_refinement_gain: bool = False
    mask_fixed_frame: bool = True
    max_workers: int = 1

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise InvalidArgument if any value is out of range."""
        for name in ('contour_iterations', 'registration_iterations', 'color_levels', 'max_workers'):
            value = getattr(self, name)
            if not _is_int(value) or value < 1:
                raise InvalidArgument(f"{name} must be a positive integer, got {value!r}")
        for name in ('min_region_area', 'reference_frame_index', 'edge_dilation_radius'):
            value = getattr(self, name)
            if not _is_int(value) or value < 0:
                raise InvalidArgument(f"{name} must be a non-negative integer, got {value!r}")
        if not 0.0 < self.seed_shrink_factor <= 1.0:
            raise InvalidArgument(f"seed_shrink_factor must be in (0, 1], got {self.seed_shrink_factor}")
        if not 0.0 <= self.edge_threshold <= 1.0:
            raise InvalidArgument(f"edge_threshold must be in [0, 1], got {self.edge_threshold}")
        if self.edge_sigma <= 0:
            raise InvalidArgument(f"edge_sigma must be positive, got {self.edge_sigma}")
        if not _is_int(self.contour_smoothing) or self.contour_smoothing < 0:
            raise InvalidArgument(f"contour_smoothing must be a non-negative integer, got {self.contour_smoothing!r}")
        if self.color_levels < 2:
            raise InvalidArgument(f"color_levels must be at least 2, got {self.color_levels}")
        if self.transform_family not in TRANSFORM_FAMILIES:
            raise InvalidArgument(f"Unknown transform family: {self.transform_family}")
        if self.metric not in METRICS:
            raise InvalidArgument(f"Unknown registration metric: {self.metric}")
        if self.failure_policy not in FAILURE_POLICIES:
            raise InvalidArgument(f"Unknown failure policy: {self.failure_policy}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> 'PipelineConfig':
        """Build a config from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    def with_overrides(self, **overrides) -> 'PipelineConfig':
        return replace(self, **overrides)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
