"""
Reference-guided registration of 2D slices.

The transform is estimated on derived "reference" images (segmentation masks
or edge maps) instead of raw intensities, and then applied to both the
moving image and its reference. ``register_pair`` chains two such estimates:

- Stage 1 aligns the brain masks (coarse, large capture range)
- Stage 2 aligns Canny edge maps of the Stage-1 result (fine structure)

Stage 2 is kept only when it does not lower the edge overlap with the fixed
edge map.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import SimpleITK as sitk
from scipy import ndimage

from .config import TRANSFORM_FAMILIES, METRICS
from .edges import detect_edges, DEFAULT_SIGMA
from .errors import InvalidArgument, RegistrationFailure

INITIALIZERS = ('moments', 'geometry')

# smallest accepted isotropic scale (or sqrt(|det|) for affine)
MIN_SCALE = 1e-3


@dataclass
class RegistrationTransform:
    """Estimated 2D transform plus optimizer bookkeeping."""
    transform: sitk.Transform
    family: str
    iterations: int = 0
    metric_value: float = 0.0
    stop_condition: str = ''

    @property
    def parameters(self) -> Tuple[float, ...]:
        return tuple(float(p) for p in self.transform.GetParameters())

    @property
    def translation(self) -> Tuple[float, float]:
        """(x, y) translation in pixels; x runs along columns."""
        if self.family == 'translation':
            return tuple(float(v) for v in self.transform.GetOffset())
        return tuple(float(v) for v in self.transform.GetTranslation())

    @property
    def rotation(self) -> float:
        """Rotation angle in radians."""
        if self.family in ('rigid', 'similarity'):
            return float(self.transform.GetAngle())
        if self.family == 'affine':
            matrix = _affine_matrix(self.transform)
            return float(math.atan2(matrix[1, 0], matrix[0, 0]))
        return 0.0

    @property
    def scale(self) -> float:
        if self.family == 'similarity':
            return float(self.transform.GetScale())
        if self.family == 'affine':
            return float(math.sqrt(abs(np.linalg.det(_affine_matrix(self.transform)))))
        return 1.0


@dataclass
class PairMetrics:
    """Container for the quality metrics of one two-stage registration."""
    frame_index: Optional[int]
    stage1_dice: float  # edge Dice against the fixed edge map after Stage 1
    stage2_dice: Optional[float]  # same after Stage 2 (None if Stage 2 did not run)
    refinement_accepted: bool
    stage1_parameters: Tuple[float, ...]
    stage2_parameters: Tuple[float, ...] = field(default_factory=tuple)
    translation: Tuple[float, float] = (0.0, 0.0)  # Stage-1 translation (x, y) in pixels
    rotation: float = 0.0  # Stage-1 rotation in radians
    scale: float = 1.0  # Stage-1 isotropic scale
    optimizer_iterations: int = 0
    optimizer_metric_value: float = 0.0
    mean_squared_error: float = 0.0
    normalized_cross_correlation: float = 0.0
    registration_time: float = 0.0


def estimate_and_apply(moving_image: np.ndarray, fixed_image: np.ndarray,
                       moving_reference: np.ndarray, fixed_reference: np.ndarray,
                       max_iterations: int = 1000, family: str = 'similarity',
                       metric: str = 'mean_squares',
                       initializer: str = 'moments') -> Tuple[np.ndarray, np.ndarray, RegistrationTransform]:
    """
    Estimate a transform between two reference images and apply it.

    The transform is optimized on the reference images only. It is then used
    to resample the moving image (linear interpolation) and the moving
    reference (nearest neighbour) onto the fixed grid, filling samples that
    fall outside the moving image with 0.

    Parameters
    ----------
    moving_image : np.ndarray
        2D moving image
    fixed_image : np.ndarray
        2D fixed image; defines the output grid
    moving_reference : np.ndarray
        Mask or edge map of the moving image (same shape as moving_image)
    fixed_reference : np.ndarray
        Mask or edge map of the fixed image (same shape as fixed_image)
    max_iterations : int
        Optimizer iteration cap per resolution level
    family : str
        'translation', 'rigid', 'similarity' or 'affine'
    metric : str
        'mean_squares' or 'mattes'
    initializer : str
        'moments' centres the reference images on each other before
        optimizing, 'geometry' starts from the identity

    Returns
    -------
    registered_image : np.ndarray
        Moving image resampled onto the fixed grid
    registered_reference : np.ndarray
        Boolean moving reference resampled onto the fixed grid
    transform : RegistrationTransform
        Estimated transform

    Raises
    ------
    InvalidArgument
        For non-2D inputs, mismatched shapes, a bad iteration count or an
        unknown family, metric or initializer
    RegistrationFailure
        If a reference image is empty, the optimizer errors, or the
        estimated transform is degenerate
    """
    moving_image, fixed_image, moving_reference, fixed_reference = _validate_inputs(
        moving_image, fixed_image, moving_reference, fixed_reference, max_iterations,
        family, metric, initializer,
    )

    if not moving_reference.any():
        raise RegistrationFailure("Moving reference image is empty")
    if not fixed_reference.any():
        raise RegistrationFailure("Fixed reference image is empty")

    fixed_sitk = _numpy_to_sitk(fixed_reference.astype(np.float64))
    moving_sitk = _numpy_to_sitk(moving_reference.astype(np.float64))

    initial_transform = _initial_transform(fixed_sitk, moving_sitk, moving_reference,
                                           fixed_reference, family, initializer)

    registration_method = sitk.ImageRegistrationMethod()

    if metric == 'mattes':
        registration_method.SetMetricAsMattesMutualInformation(numberOfHistogramBins=50)
    else:
        registration_method.SetMetricAsMeanSquares()
    # every pixel, so results are reproducible
    registration_method.SetMetricSamplingStrategy(registration_method.NONE)

    registration_method.SetInterpolator(sitk.sitkLinear)

    registration_method.SetOptimizerAsRegularStepGradientDescent(
        learningRate=1.0,
        minStep=1e-4,
        numberOfIterations=int(max_iterations),
        gradientMagnitudeTolerance=1e-8
    )
    registration_method.SetOptimizerScalesFromPhysicalShift()

    registration_method.SetInitialTransform(initial_transform, inPlace=True)

    registration_method.SetShrinkFactorsPerLevel(shrinkFactors=_shrink_factors(fixed_reference.shape))
    registration_method.SetSmoothingSigmasPerLevel(smoothingSigmas=_smoothing_sigmas(fixed_reference.shape))
    registration_method.SmoothingSigmasAreSpecifiedInPhysicalUnitsOn()

    iteration_count = [0]

    def iteration_callback():
        iteration_count[0] += 1

    registration_method.AddCommand(sitk.sitkIterationEvent, iteration_callback)

    try:
        registration_method.Execute(fixed_sitk, moving_sitk)
    except RuntimeError as e:
        raise RegistrationFailure(f"Optimizer failed: {e}") from e

    result = RegistrationTransform(
        transform=initial_transform,
        family=family,
        iterations=iteration_count[0],
        metric_value=float(registration_method.GetMetricValue()),
        stop_condition=registration_method.GetOptimizerStopConditionDescription(),
    )
    _check_degenerate(result)

    registered_image = _resample(moving_image, fixed_image.shape, initial_transform, sitk.sitkLinear)
    registered_reference = _resample(moving_reference.astype(np.float64), fixed_image.shape,
                                     initial_transform, sitk.sitkNearestNeighbor) > 0.5

    return registered_image, registered_reference, result


def register_pair(moving_image: np.ndarray, fixed_image: np.ndarray,
                  moving_mask: np.ndarray, fixed_mask: np.ndarray,
                  fixed_edge_map: Optional[np.ndarray] = None,
                  max_iterations: int = 1000, edge_threshold: float = 0.1,
                  edge_sigma: float = DEFAULT_SIGMA, family: str = 'similarity',
                  metric: str = 'mean_squares',
                  frame_index: Optional[int] = None,
                  require_refinement_gain: bool = False) -> Tuple[np.ndarray, np.ndarray, PairMetrics]:
    """
    Two-stage registration of one moving image to the fixed image.

    Stage 1 aligns ``moving_mask`` to ``fixed_mask`` and resamples the moving
    image, giving ``I1``. Stage 2 detects edges on ``I1`` and aligns them to
    ``fixed_edge_map``, resampling ``I1`` (not the original moving image).
    The Stage-2 image is the result unless ``require_refinement_gain`` is
    set and the refinement lowered the edge Dice, in which case ``I1`` is kept.

    Parameters
    ----------
    moving_image, fixed_image : np.ndarray
        2D images (normally the masked images from segmentation)
    moving_mask, fixed_mask : np.ndarray
        Brain masks of the two images
    fixed_edge_map : np.ndarray, optional
        Edge map of the fixed image; computed from ``fixed_image`` when None
    max_iterations : int
        Optimizer iteration cap for each stage
    edge_threshold : float
        Canny sensitivity used for the moving (and, if needed, fixed) edges
    edge_sigma : float
        Canny Gaussian width
    family : str
        Transform family for both stages
    metric : str
        Registration metric for both stages
    frame_index : int, optional
        Recorded in the returned metrics
    require_refinement_gain : bool
        Reject a Stage-2 result whose edge Dice is below the Stage-1 Dice

    Returns
    -------
    registered_image : np.ndarray
        Final registered image on the fixed grid
    registered_edges : np.ndarray
        Registered moving edge map matching ``registered_image``
    metrics : PairMetrics
        Per-stage overlap and optimizer statistics

    Raises
    ------
    RegistrationFailure
        Tagged with ``stage`` 1 or 2. A Stage-2 failure carries the Stage-1
        output as ``partial_result = (I1, edges_of_I1, metrics)``.
    """
    start_time = time.time()
    fixed_image = np.asarray(fixed_image, dtype=np.float64)

    if fixed_edge_map is None:
        fixed_edge_map = detect_edges(fixed_image, edge_threshold, edge_sigma)
    fixed_edge_map = np.asarray(fixed_edge_map, dtype=bool)

    # Stage 1: mask-guided coarse alignment
    try:
        stage1_image, _, stage1 = estimate_and_apply(
            moving_image, fixed_image, moving_mask, fixed_mask,
            max_iterations=max_iterations, family=family, metric=metric,
            initializer='moments',
        )
    except RegistrationFailure as e:
        raise RegistrationFailure(str(e), stage=1) from e

    stage1_edges = detect_edges(stage1_image, edge_threshold, edge_sigma)
    metrics = PairMetrics(
        frame_index=frame_index,
        stage1_dice=dice_coefficient(stage1_edges, fixed_edge_map),
        stage2_dice=None,
        refinement_accepted=False,
        stage1_parameters=stage1.parameters,
        translation=stage1.translation,
        rotation=stage1.rotation,
        scale=stage1.scale,
        optimizer_iterations=stage1.iterations,
        optimizer_metric_value=stage1.metric_value,
    )

    # Stage 2: edge-guided refinement, applied to the Stage-1 image
    try:
        stage2_image, stage2_edges, stage2 = estimate_and_apply(
            stage1_image, fixed_image, stage1_edges, fixed_edge_map,
            max_iterations=max_iterations, family=family, metric=metric,
            initializer='geometry',
        )
    except RegistrationFailure as e:
        _finish_metrics(metrics, stage1_image, fixed_image, start_time)
        raise RegistrationFailure(str(e), stage=2,
                                  partial_result=(stage1_image, stage1_edges, metrics)) from e

    metrics.stage2_dice = dice_coefficient(stage2_edges, fixed_edge_map)
    metrics.stage2_parameters = stage2.parameters
    metrics.optimizer_iterations += stage2.iterations
    metrics.optimizer_metric_value = stage2.metric_value

    if not require_refinement_gain or metrics.stage2_dice >= metrics.stage1_dice:
        metrics.refinement_accepted = True
        registered_image, registered_edges = stage2_image, stage2_edges
    else:
        registered_image, registered_edges = stage1_image, stage1_edges

    _finish_metrics(metrics, registered_image, fixed_image, start_time)
    return registered_image, registered_edges, metrics


def dice_coefficient(first: np.ndarray, second: np.ndarray) -> float:
    """
    Dice overlap of two binary maps.

    Two empty maps are treated as a perfect match.
    """
    first = np.asarray(first, dtype=bool)
    second = np.asarray(second, dtype=bool)
    total = int(first.sum()) + int(second.sum())
    if total == 0:
        return 1.0
    return 2.0 * int(np.logical_and(first, second).sum()) / total


def compute_mean_squared_error(reference: np.ndarray, registered: np.ndarray) -> float:
    """
    Compute mean squared error between two images.

    Parameters
    ----------
    reference : np.ndarray
        Reference image
    registered : np.ndarray
        Registered image

    Returns
    -------
    float
        Mean squared error
    """
    reference = np.asarray(reference, dtype=np.float64)
    registered = np.asarray(registered, dtype=np.float64)
    if reference.shape != registered.shape:
        raise InvalidArgument(f"Shape mismatch: {reference.shape} vs {registered.shape}")
    return float(np.mean((reference - registered) ** 2))


def compute_normalized_cross_correlation(reference: np.ndarray, registered: np.ndarray) -> float:
    """
    Global normalized cross-correlation (higher is better, 1 for identical images).

    Returns 0 when either image is constant.
    """
    reference = np.asarray(reference, dtype=np.float64).ravel()
    registered = np.asarray(registered, dtype=np.float64).ravel()
    if reference.shape != registered.shape:
        raise InvalidArgument(f"Shape mismatch: {reference.shape} vs {registered.shape}")
    a = reference - reference.mean()
    b = registered - registered.mean()
    denom = math.sqrt(float(np.dot(a, a)) * float(np.dot(b, b)))
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


def _finish_metrics(metrics: PairMetrics, registered_image: np.ndarray,
                    fixed_image: np.ndarray, start_time: float) -> None:
    metrics.mean_squared_error = compute_mean_squared_error(fixed_image, registered_image)
    metrics.normalized_cross_correlation = compute_normalized_cross_correlation(fixed_image, registered_image)
    metrics.registration_time = time.time() - start_time


def _validate_inputs(moving_image, fixed_image, moving_reference, fixed_reference,
                     max_iterations, family, metric, initializer):
    if not isinstance(max_iterations, (int, np.integer)) or isinstance(max_iterations, bool) \
            or max_iterations < 1:
        raise InvalidArgument(f"max_iterations must be a positive integer, got {max_iterations!r}")
    if family not in TRANSFORM_FAMILIES:
        raise InvalidArgument(f"Unknown transform family: {family}")
    if metric not in METRICS:
        raise InvalidArgument(f"Unknown registration metric: {metric}")
    if initializer not in INITIALIZERS:
        raise InvalidArgument(f"Unknown initializer: {initializer}")

    moving_image = np.asarray(moving_image, dtype=np.float64)
    fixed_image = np.asarray(fixed_image, dtype=np.float64)
    moving_reference = np.asarray(moving_reference, dtype=bool)
    fixed_reference = np.asarray(fixed_reference, dtype=bool)

    for name, array in (('moving_image', moving_image), ('fixed_image', fixed_image),
                        ('moving_reference', moving_reference), ('fixed_reference', fixed_reference)):
        if array.ndim != 2:
            raise InvalidArgument(f"{name} must be 2D, got shape {array.shape}")
    if moving_reference.shape != moving_image.shape:
        raise InvalidArgument(
            f"Moving reference shape {moving_reference.shape} does not match image shape {moving_image.shape}"
        )
    if fixed_reference.shape != fixed_image.shape:
        raise InvalidArgument(
            f"Fixed reference shape {fixed_reference.shape} does not match image shape {fixed_image.shape}"
        )

    return moving_image, fixed_image, moving_reference, fixed_reference


def _initial_transform(fixed_sitk: sitk.Image, moving_sitk: sitk.Image,
                       moving_reference: np.ndarray, fixed_reference: np.ndarray,
                       family: str, initializer: str) -> sitk.Transform:
    """Build the starting transform for the optimizer."""
    if family == 'translation':
        transform = sitk.TranslationTransform(2)
        if initializer == 'moments':
            moving_row, moving_col = ndimage.center_of_mass(moving_reference)
            fixed_row, fixed_col = ndimage.center_of_mass(fixed_reference)
            # maps fixed points to moving points, (x, y) = (col, row)
            transform.SetOffset((moving_col - fixed_col, moving_row - fixed_row))
        return transform

    if family == 'rigid':
        base = sitk.Euler2DTransform()
    elif family == 'similarity':
        base = sitk.Similarity2DTransform()
    else:
        base = sitk.AffineTransform(2)

    mode = (sitk.CenteredTransformInitializerFilter.MOMENTS if initializer == 'moments'
            else sitk.CenteredTransformInitializerFilter.GEOMETRY)
    try:
        initial = sitk.CenteredTransformInitializer(fixed_sitk, moving_sitk, base, mode)
    except RuntimeError as e:
        raise RegistrationFailure(f"Transform initialization failed: {e}") from e

    # downcast so the in-place optimized parameters stay readable
    if family == 'rigid':
        return sitk.Euler2DTransform(initial)
    if family == 'similarity':
        return sitk.Similarity2DTransform(initial)
    return sitk.AffineTransform(initial)


def _check_degenerate(result: RegistrationTransform) -> None:
    parameters = np.asarray(result.parameters, dtype=np.float64)
    if not np.all(np.isfinite(parameters)):
        raise RegistrationFailure(f"Optimizer produced non-finite parameters: {result.parameters}")
    if result.scale <= MIN_SCALE:
        raise RegistrationFailure(f"Degenerate transform: scale collapsed to {result.scale:.3g}")


def _affine_matrix(transform: sitk.Transform) -> np.ndarray:
    return np.asarray(transform.GetMatrix(), dtype=np.float64).reshape(2, 2)


def _shrink_factors(shape: Tuple[int, int]):
    # coarsest level keeps at least 16 pixels along the short side
    factors = [f for f in (4, 2) if min(shape) // f >= 16]
    return factors + [1]


def _smoothing_sigmas(shape: Tuple[int, int]):
    return [float(f // 2) for f in _shrink_factors(shape)]


def _resample(image: np.ndarray, shape: Tuple[int, int], transform: sitk.Transform,
              interpolator: int) -> np.ndarray:
    """Resample an image onto a grid of ``shape`` through ``transform``, background 0."""
    reference_grid = sitk.Image(int(shape[1]), int(shape[0]), sitk.sitkFloat64)
    resampled = sitk.Resample(
        _numpy_to_sitk(image),
        reference_grid,
        transform,
        interpolator,
        0.0,
        sitk.sitkFloat64
    )
    return _sitk_to_numpy(resampled)


def _numpy_to_sitk(image: np.ndarray) -> sitk.Image:
    """
    Convert a [row, col] array to a SimpleITK image with unit spacing.

    SimpleITK's array view is [y, x], so rows map to y and columns to x.
    """
    return sitk.GetImageFromArray(np.ascontiguousarray(image, dtype=np.float64))


def _sitk_to_numpy(image: sitk.Image) -> np.ndarray:
    return sitk.GetArrayFromImage(image).astype(np.float64)
