"""
Tests for image loading and per-group result persistence.

Covers:
- Normalization to [0, 1]
- DICOM slice loading with positional metadata
- Saving and loading group results (npz, JSON, PNG)
"""

import json
from pathlib import Path

import numpy as np
import pydicom
import pytest

from perfusion_analysis.alignment import RegisteredFrame, RegisteredSeries
from perfusion_analysis.config import PipelineConfig
from perfusion_analysis.errors import InvalidArgument
from perfusion_analysis.io import (
    PositionMetadata,
    load_dicom_image,
    load_group_result,
    normalize_image,
    save_group_result,
)
from perfusion_analysis.pipeline import GroupResult
from perfusion_analysis.registration import PairMetrics


@pytest.fixture
def sample_result(phantom_factory):
    image = phantom_factory()
    edges = image > 0.5
    metrics = PairMetrics(
        frame_index=0,
        stage1_dice=0.8,
        stage2_dice=0.85,
        refinement_accepted=True,
        stage1_parameters=(1.0, 0.0, -2.0, 3.0),
        stage2_parameters=(1.0, 0.001, 0.1, 0.0),
        translation=(-2.0, 3.0),
        optimizer_iterations=12,
        optimizer_metric_value=np.float64(0.01),
        mean_squared_error=0.001,
        registration_time=0.5,
    )
    series = RegisteredSeries(
        frames=(
            RegisteredFrame(index=0, image=image, reference=edges, metrics=metrics),
            RegisteredFrame(index=1, image=image, reference=edges, is_reference=True),
        ),
        fixed_index=1,
        merged=image,
        failures={2: "registration stage 1: Moving reference image is empty"},
    )
    ttp_map = np.zeros(image.shape, dtype=np.int64)
    ttp_map[30:34, 30:34] = 2
    colored = np.zeros(image.shape + (3,))
    colored[30:34, 30:34] = [1.0, 0.5, 0.0]
    return GroupResult(
        group_index=3,
        timeseries=series,
        composite=image,
        ttp_map=ttp_map,
        vessel_mask=ttp_map > 0,
        colored=colored,
        failures={'timeseries[2]': series.failures[2]},
        processing_time=1.5,
    )


class TestNormalizeImage:
    """Min-max normalization."""

    def test_range(self):
        normalized = normalize_image(np.array([[10, 20], [30, 50]], dtype=np.uint16))
        assert normalized.dtype == np.float64
        assert normalized.min() == 0.0
        assert normalized.max() == 1.0
        assert normalized[0, 1] == pytest.approx(0.25)

    def test_constant_image(self):
        np.testing.assert_array_equal(normalize_image(np.full((3, 3), 7.0)), np.zeros((3, 3)))

    def test_input_not_modified(self):
        image = np.array([[1.0, 3.0]])
        normalize_image(image)
        np.testing.assert_array_equal(image, [[1.0, 3.0]])


class TestLoadDicomImage:
    """Single-slice DICOM loading."""

    def test_pixels_and_metadata(self, temp_output_dir, phantom_factory, dicom_writer):
        image = phantom_factory()
        path = dicom_writer(Path(temp_output_dir) / "slice.dcm", image, location=-42.5,
                            instance_number=7, acquisition_time='101500.000')

        loaded, position = load_dicom_image(path)

        assert loaded.shape == image.shape
        np.testing.assert_allclose(loaded, normalize_image(image), atol=1e-3)
        assert position.slice_location == -42.5
        assert position.image_position == (0.0, 0.0, -42.5)
        assert position.instance_number == 7
        assert position.acquisition_time == '101500.000'
        assert position.series_description == 'HEAD PERFUSION'
        assert position.pixel_spacing == (0.5, 0.5)

    def test_missing_file(self, temp_output_dir):
        with pytest.raises(FileNotFoundError):
            load_dicom_image(str(Path(temp_output_dir) / "missing.dcm"))


class TestPositionMetadata:
    """Optional-field resolution from a dataset."""

    def test_slice_location_fallback(self):
        ds = pydicom.Dataset()
        ds.SliceLocation = 12.0
        position = PositionMetadata.from_dataset(ds)
        assert position.slice_location == 12.0
        assert position.image_position is None
        assert position.instance_number is None
        assert position.acquisition_time is None

    def test_no_position(self):
        with pytest.raises(InvalidArgument):
            PositionMetadata.from_dataset(pydicom.Dataset())


class TestGroupResultPersistence:
    """save_group_result / load_group_result round trip."""

    def test_files_written(self, temp_output_dir, sample_result):
        group_dir = save_group_result(sample_result, temp_output_dir, PipelineConfig())

        assert group_dir == Path(temp_output_dir) / "group_03"
        assert (group_dir / "registered.npz").exists()
        assert (group_dir / "metrics.json").exists()
        assert (group_dir / "colored_ttp.png").exists()

    def test_round_trip(self, temp_output_dir, sample_result):
        group_dir = save_group_result(sample_result, temp_output_dir, PipelineConfig())
        loaded = load_group_result(str(group_dir))

        np.testing.assert_array_equal(loaded['timeseries_indices'], [0, 1])
        assert loaded['timeseries_images'].shape == (2, 64, 64)
        np.testing.assert_array_equal(loaded['ttp_map'], sample_result.ttp_map)
        np.testing.assert_allclose(loaded['colored'], sample_result.colored)
        assert 'arterial_images' not in loaded

        metrics = loaded['metrics']
        assert metrics['metadata']['group_index'] == 3
        assert metrics['metadata']['config']['reference_frame_index'] == 14
        assert metrics['failures'] == {'timeseries[2]': sample_result.failures['timeseries[2]']}
        assert metrics['summary']['processed_frames'] == 2
        assert metrics['summary']['failed_frames'] == 1
        assert metrics['summary']['ttp_range'] == [2, 2]
        assert len(metrics['metrics']) == 1
        assert metrics['metrics'][0]['stage1_parameters'] == [1.0, 0.0, -2.0, 3.0]

    def test_failed_group(self, temp_output_dir):
        result = GroupResult(group_index=0, error="Fixed frame 14 could not be segmented",
                             failures={'timeseries[14]': 'segmentation: no region'})
        group_dir = save_group_result(result, temp_output_dir)

        assert not (group_dir / "registered.npz").exists()
        assert not (group_dir / "colored_ttp.png").exists()
        with open(group_dir / "metrics.json") as f:
            metrics = json.load(f)
        assert metrics['error'].startswith("Fixed frame 14")
        assert metrics['summary']['processed_frames'] == 0

    def test_load_missing_directory(self, temp_output_dir):
        with pytest.raises(FileNotFoundError):
            load_group_result(str(Path(temp_output_dir) / "group_99"))
