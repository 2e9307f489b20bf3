"""
Tests for Canny edge detection and threshold validation.
"""

import numpy as np
import pytest

from perfusion_analysis.edges import detect_edges
from perfusion_analysis.errors import InvalidArgument


@pytest.fixture
def square_image():
    image = np.zeros((48, 48))
    image[12:36, 12:36] = 1.0
    return image


class TestDetectEdges:
    """Edge map shape, placement and determinism."""

    def test_returns_boolean_map_of_same_shape(self, square_image):
        edges = detect_edges(square_image, 0.1)
        assert edges.shape == square_image.shape
        assert edges.dtype == bool
        assert edges.any()

    def test_edges_lie_on_the_boundary(self, square_image):
        edges = detect_edges(square_image, 0.1)
        rows, cols = np.nonzero(edges)
        # nothing deep inside or far outside the square
        assert rows.min() >= 9 and rows.max() <= 38
        assert cols.min() >= 9 and cols.max() <= 38
        assert not edges[20:28, 20:28].any()

    def test_deterministic(self, phantom_factory):
        image = phantom_factory()
        np.testing.assert_array_equal(detect_edges(image, 0.1), detect_edges(image, 0.1))

    def test_threshold_pair(self, square_image):
        edges = detect_edges(square_image, (0.05, 0.2))
        assert edges.any()

    def test_higher_threshold_never_adds_edges(self, phantom_factory):
        image = phantom_factory()
        low = detect_edges(image, 0.1)
        high = detect_edges(image, 0.6)
        assert high.sum() <= low.sum()

    def test_automatic_threshold(self, phantom_factory):
        edges = detect_edges(phantom_factory(), None)
        assert edges.any()

    def test_constant_image_has_no_edges(self):
        edges = detect_edges(np.full((20, 20), 0.5), 0.1)
        assert not edges.any()


class TestDetectEdgesValidation:
    """Malformed inputs fail fast with InvalidArgument."""

    @pytest.mark.parametrize("threshold", [-0.1, 1.5, (0.2, 1.2), (0.5, 0.1), (0.1, 0.2, 0.3)])
    def test_bad_threshold(self, square_image, threshold):
        with pytest.raises(InvalidArgument):
            detect_edges(square_image, threshold)

    def test_non_2d_image(self):
        with pytest.raises(InvalidArgument):
            detect_edges(np.zeros((8, 8, 3)), 0.1)

    def test_non_positive_sigma(self, square_image):
        with pytest.raises(InvalidArgument):
            detect_edges(square_image, 0.1, sigma=0)
