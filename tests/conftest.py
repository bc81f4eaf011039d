import pytest
import yaml
import numpy as np
import nibabel as nib
from pathlib import Path

from drt_pipeline.config import Config
from drt_pipeline.workspace import SubjectWorkspace
from tests.helpers import SUBJECT, FakeToolRunner, touch


@pytest.fixture
def fake_tools():
    return FakeToolRunner()


@pytest.fixture
def config_file(tmp_path):
    data = {
        'paths': {
            'base_dir': str(tmp_path),
            'mni_reference': str(tmp_path / 'standard' / 'MNI152_T1_1mm.nii.gz'),
        },
        'qc': {'check_connectivity_maps': False},
    }
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def config(config_file):
    return Config(config_file)


@pytest.fixture
def workspace(tmp_path):
    return SubjectWorkspace(tmp_path, SUBJECT)


@pytest.fixture
def subject_inputs(tmp_path, workspace):
    """Creates the artifacts produced upstream of this pipeline."""
    anat_dir = tmp_path / 'fmriprep' / 'fmriprep' / f'sub-{SUBJECT}' / 'anat'
    paths = [
        tmp_path / 'freesurfer' / f'sub-{SUBJECT}' / SUBJECT / 'mri' / 'aparc+aseg.mgz',
        anat_dir / f'sub-{SUBJECT}_from-T1w_to-MNI152NLin2009cAsym_mode-image_xfm.h5',
        anat_dir / f'sub-{SUBJECT}_from-MNI152NLin2009cAsym_to-T1w_mode-image_xfm.h5',
        anat_dir / f'sub-{SUBJECT}_space-MNI152NLin2009cAsym_desc-preproc_T1w.nii.gz',
        tmp_path / 'atlasses' / 'Local' / 'Dentate_R.nii.gz',
        tmp_path / 'atlasses' / 'Local' / 'Dentate_L.nii.gz',
        tmp_path / 'standard' / 'MNI152_T1_1mm.nii.gz',
        workspace.path_of('anat'),
        workspace.path_of('wmfod'),
        workspace.path_of('dwi'),
        workspace.path_of('dwi_mask'),
    ]
    for path in paths:
        touch(path)
    return paths


@pytest.fixture
def unit_map(tmp_path):
    """A normalised connectivity map with its peak at exactly 1."""
    data = np.zeros((10, 10, 10), dtype=np.float32)
    data[2:8, 2:8, 2:8] = 0.25
    data[5, 5, 5] = 1.0
    path = tmp_path / 'TH-DR_R_iFOD2.nii.gz'
    nib.save(nib.Nifti1Image(data, np.eye(4)), str(path))
    return path
