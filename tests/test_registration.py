"""
Tests for transform estimation and the two-stage pair registration.
"""

import numpy as np
import pytest
from scipy import ndimage

from perfusion_analysis.edges import detect_edges
from perfusion_analysis.errors import InvalidArgument, RegistrationFailure
from perfusion_analysis.registration import (
    compute_mean_squared_error,
    compute_normalized_cross_correlation,
    dice_coefficient,
    estimate_and_apply,
    register_pair,
)


class TestEstimateAndApply:
    """Single transform estimation on reference images."""

    def test_recovers_translation(self, phantom_factory, head_mask_factory):
        fixed = phantom_factory((0, 0))
        moving = phantom_factory((3, -2))

        registered, registered_mask, transform = estimate_and_apply(
            moving, fixed, head_mask_factory((3, -2)), head_mask_factory((0, 0)),
            max_iterations=200,
        )

        assert registered.shape == fixed.shape
        assert registered_mask.dtype == bool
        # x runs along columns, y along rows
        np.testing.assert_allclose(transform.translation, (-2.0, 3.0), atol=0.1)
        assert transform.scale == pytest.approx(1.0, abs=0.01)
        assert dice_coefficient(registered_mask, head_mask_factory((0, 0))) > 0.98

    @pytest.mark.parametrize("family", ["translation", "rigid", "similarity", "affine"])
    def test_every_family_aligns_masks(self, phantom_factory, head_mask_factory, family):
        fixed = phantom_factory((0, 0))
        moving = phantom_factory((2, 2))

        _, registered_mask, transform = estimate_and_apply(
            moving, fixed, head_mask_factory((2, 2)), head_mask_factory((0, 0)),
            max_iterations=200, family=family,
        )

        assert transform.family == family
        assert dice_coefficient(registered_mask, head_mask_factory((0, 0))) > 0.95

    def test_out_of_bounds_samples_are_zero(self, phantom_factory, head_mask_factory):
        fixed = phantom_factory((0, 0))
        moving = np.ones_like(fixed)
        mask = head_mask_factory((3, 0))

        registered, _, _ = estimate_and_apply(moving, fixed, mask, head_mask_factory((0, 0)),
                                              max_iterations=100)
        # content moved down by 3 rows, so the last rows sample outside the moving image
        assert np.all(registered[-2:, :] == 0)

    def test_empty_moving_reference(self, phantom_factory, head_mask_factory):
        image = phantom_factory()
        with pytest.raises(RegistrationFailure):
            estimate_and_apply(image, image, np.zeros(image.shape, dtype=bool),
                               head_mask_factory(), max_iterations=10)

    def test_empty_fixed_reference(self, phantom_factory, head_mask_factory):
        image = phantom_factory()
        with pytest.raises(RegistrationFailure):
            estimate_and_apply(image, image, head_mask_factory(),
                               np.zeros(image.shape, dtype=bool), max_iterations=10)

    @pytest.mark.parametrize("iterations", [0, -1, 1.5, True])
    def test_bad_iteration_count(self, phantom_factory, head_mask_factory, iterations):
        image = phantom_factory()
        mask = head_mask_factory()
        with pytest.raises(InvalidArgument):
            estimate_and_apply(image, image, mask, mask, max_iterations=iterations)

    def test_unknown_family(self, phantom_factory, head_mask_factory):
        image = phantom_factory()
        mask = head_mask_factory()
        with pytest.raises(InvalidArgument):
            estimate_and_apply(image, image, mask, mask, max_iterations=10, family='bspline')

    def test_reference_shape_mismatch(self, phantom_factory, head_mask_factory):
        image = phantom_factory()
        with pytest.raises(InvalidArgument):
            estimate_and_apply(image, image, np.ones((10, 10), dtype=bool),
                               head_mask_factory(), max_iterations=10)


class TestRegisterPair:
    """Two-stage (mask, then edge) protocol."""

    def test_identity(self, phantom_factory, head_mask_factory):
        """Registering an image to itself returns the image and an identity transform."""
        image = phantom_factory()
        mask = head_mask_factory()

        registered, edges, metrics = register_pair(image, image, mask, mask, max_iterations=100)

        np.testing.assert_allclose(registered, image, atol=1e-6)
        np.testing.assert_allclose(metrics.stage1_parameters, (1.0, 0.0, 0.0, 0.0), atol=1e-6)
        np.testing.assert_allclose(metrics.stage2_parameters, (1.0, 0.0, 0.0, 0.0), atol=1e-6)
        assert metrics.refinement_accepted
        assert metrics.stage1_dice == pytest.approx(1.0)
        assert metrics.mean_squared_error == pytest.approx(0.0, abs=1e-10)

    def test_refinement_is_the_final_result(self, phantom_factory, head_mask_factory):
        """
        A moving mask offset from its image leaves Stage 1 three pixels off;
        the edge-guided stage recovers the alignment and its output is kept.
        """
        fixed = phantom_factory((0, 0))
        moving = phantom_factory((2, -3))
        biased_mask = head_mask_factory((5, -3))
        fixed_edges = detect_edges(fixed, 0.1)

        registered, edges, metrics = register_pair(
            moving, fixed, biased_mask, head_mask_factory((0, 0)),
            fixed_edge_map=fixed_edges, max_iterations=200,
        )

        assert metrics.refinement_accepted
        assert metrics.stage2_dice >= metrics.stage1_dice
        assert dice_coefficient(edges, fixed_edges) == pytest.approx(metrics.stage2_dice)
        assert compute_mean_squared_error(fixed, registered) < compute_mean_squared_error(fixed, moving)

    def test_refinement_gain_gate_never_lowers_edge_overlap(self, phantom_factory, head_mask_factory):
        fixed = phantom_factory((0, 0))
        moving = ndimage.rotate(phantom_factory((2, -3)), 4.0, reshape=False, order=1)
        moving_mask = ndimage.rotate(head_mask_factory((2, -3)).astype(float), 4.0,
                                     reshape=False, order=0) > 0.5
        fixed_edges = detect_edges(fixed, 0.1)

        registered, edges, metrics = register_pair(
            moving, fixed, moving_mask, head_mask_factory((0, 0)),
            fixed_edge_map=fixed_edges, max_iterations=200, frame_index=7,
            require_refinement_gain=True,
        )

        assert metrics.frame_index == 7
        assert metrics.stage2_dice is not None
        assert dice_coefficient(edges, fixed_edges) >= metrics.stage1_dice
        assert registered.shape == fixed.shape
        assert compute_mean_squared_error(fixed, registered) < compute_mean_squared_error(fixed, moving)

    def test_stage1_failure_is_tagged(self, phantom_factory, head_mask_factory):
        image = phantom_factory()
        with pytest.raises(RegistrationFailure) as exc_info:
            register_pair(image, image, np.zeros(image.shape, dtype=bool), head_mask_factory(),
                          max_iterations=10)
        assert exc_info.value.stage == 1
        assert str(exc_info.value).startswith("stage 1:")

    def test_stage2_failure_carries_stage1_result(self, phantom_factory, head_mask_factory):
        image = phantom_factory()
        mask = head_mask_factory()
        empty_edges = np.zeros(image.shape, dtype=bool)

        with pytest.raises(RegistrationFailure) as exc_info:
            register_pair(image, image, mask, mask, fixed_edge_map=empty_edges, max_iterations=10)

        error = exc_info.value
        assert error.stage == 2
        stage1_image, stage1_edges, metrics = error.partial_result
        np.testing.assert_allclose(stage1_image, image, atol=1e-6)
        assert metrics.stage2_dice is None


class TestQualityMetrics:
    """Overlap and similarity helpers."""

    def test_dice(self):
        a = np.zeros((4, 4), dtype=bool)
        b = np.zeros((4, 4), dtype=bool)
        a[:2] = True
        b[1:3] = True
        assert dice_coefficient(a, b) == pytest.approx(0.5)
        assert dice_coefficient(a, a) == 1.0
        assert dice_coefficient(np.zeros((3, 3)), np.zeros((3, 3))) == 1.0

    def test_mean_squared_error(self):
        assert compute_mean_squared_error(np.zeros((2, 2)), np.ones((2, 2))) == pytest.approx(1.0)

    def test_normalized_cross_correlation(self, phantom_factory):
        image = phantom_factory()
        assert compute_normalized_cross_correlation(image, image) == pytest.approx(1.0)
        assert compute_normalized_cross_correlation(image, 2 * image + 1) == pytest.approx(1.0)
        assert compute_normalized_cross_correlation(image, np.zeros_like(image)) == 0.0
