"""
Shared synthetic phantoms.

A phantom slice is a 64x64 image with a head disk (tissue 0.4), a concentric
bolus disk whose intensity changes over time, and a bright square marker
that keeps the per-frame normalization stable.
"""

import shutil
import tempfile

import numpy as np
import pytest

SIZE = 64
CENTER = (32, 32)
HEAD_RADIUS = 24
BOLUS_RADIUS = 7

# per-frame (row, col) shifts and bolus intensities; frame 1 is the reference
SHIFTS = [(3, -2), (0, 0), (-2, 3), (2, 2)]
BOLUS = [0.6, 0.85, 0.7, 0.5]


def disk(radius, shift=(0, 0), size=SIZE):
    rows, cols = np.mgrid[0:size, 0:size]
    cr = CENTER[0] + shift[0]
    cc = CENTER[1] + shift[1]
    return (rows - cr) ** 2 + (cols - cc) ** 2 <= radius ** 2


def phantom(shift=(0, 0), bolus=0.7, size=SIZE):
    image = np.zeros((size, size), dtype=np.float64)
    image[disk(HEAD_RADIUS, shift, size)] = 0.4
    image[disk(BOLUS_RADIUS, shift, size)] = bolus
    cr = CENTER[0] + shift[0]
    cc = CENTER[1] + shift[1]
    image[cr - 14:cr - 9, cc - 2:cc + 3] = 1.0
    return image


@pytest.fixture
def temp_output_dir():
    """Create a temporary directory for test outputs."""
    temp_dir = tempfile.mkdtemp(prefix="perfusion_test_")
    yield temp_dir
    shutil.rmtree(temp_dir)


@pytest.fixture
def phantom_factory():
    """Build a phantom slice for a given (row, col) shift and bolus intensity."""
    return phantom


@pytest.fixture
def head_mask_factory():
    """Ground-truth head mask for a given shift."""
    return lambda shift=(0, 0): disk(HEAD_RADIUS, shift)


@pytest.fixture
def phantom_series():
    """Four shifted frames whose bolus peaks at the reference frame (index 1)."""
    return [phantom(shift, bolus) for shift, bolus in zip(SHIFTS, BOLUS)]


def write_dicom_slice(filepath, image, location, instance_number=1,
                      acquisition_time=None, series_description='HEAD PERFUSION'):
    """Write a minimal single-frame DICOM slice scaled to uint16."""
    import pydicom
    from pydicom.dataset import FileDataset

    file_meta = pydicom.dataset.FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = pydicom.uid.CTImageStorage
    file_meta.MediaStorageSOPInstanceUID = pydicom.uid.generate_uid()
    file_meta.TransferSyntaxUID = pydicom.uid.ImplicitVRLittleEndian

    ds = FileDataset(str(filepath), {}, file_meta=file_meta, preamble=b"\0" * 128)
    ds.SOPClassUID = file_meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.Modality = 'CT'
    ds.SeriesDescription = series_description
    ds.InstanceNumber = instance_number
    if acquisition_time is not None:
        ds.AcquisitionTime = acquisition_time
    ds.ImagePositionPatient = [0.0, 0.0, float(location)]
    ds.SliceLocation = float(location)
    ds.PixelSpacing = [0.5, 0.5]

    pixels = np.round(np.asarray(image) * 1000).astype(np.uint16)
    ds.Rows, ds.Columns = pixels.shape
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelRepresentation = 0
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = 'MONOCHROME2'
    ds.RescaleSlope = 1.0
    ds.RescaleIntercept = -1024.0
    ds.PixelData = pixels.tobytes()

    ds.save_as(str(filepath))
    return str(filepath)


@pytest.fixture
def dicom_writer():
    """Write a synthetic DICOM slice: dicom_writer(path, image, location, ...)."""
    return write_dicom_slice
