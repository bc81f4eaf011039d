"""Configuration handling for the DRT segmentation pipeline.

Defaults live in ``DEFAULT_CONFIG``; an optional YAML file is merged on top of
them. Path values may contain ``{subject}`` placeholders and environment
variables (``$FSLDIR``), which are resolved by :meth:`Config.get_path`.
"""
from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    'paths': {
        'base_dir': '.',
        'freesurfer_aparc': 'freesurfer/sub-{subject}/{subject}/mri/aparc+aseg.mgz',
        'fmriprep_anat_dir': 'fmriprep/fmriprep/sub-{subject}/anat',
        'atlas_dir': 'atlasses/Local',
        'mni_reference': '$FSLDIR/data/standard/MNI152_T1_1mm.nii.gz',
    },
    'executables': {},
    'tractography': {
        'n_streamlines': 20000,
        'tensor_cutoff': 0.01,
        'algorithms': ['iFOD2', 'Tensor_Prob'],
    },
    # FreeSurfer aparc+aseg label numbers
    'rois': {
        'labels': {
            'M1_fs_R': 2024,
            'M1_fs_L': 1024,
            'S1_fs_R': 2022,
            'S1_fs_L': 1022,
            'THALAMUS_fs_R': 49,
            'THALAMUS_fs_L': 10,
            'MFG_fs_R': 1003,
            'SFG_fs_R': 1028,
            'MFG_fs_L': 2003,
            'SFG_fs_L': 2028,
            'WM_fs_R': 41,
            'WM_fs_L': 2,
        },
        'unions': {
            'SMA_and_PMC_fs_R': ['MFG_fs_R', 'SFG_fs_R'],
            'SMA_and_PMC_fs_L': ['MFG_fs_L', 'SFG_fs_L'],
        },
    },
    # Dentate nuclei from the SUIT cerebellar atlas, stored in MNI space under atlas_dir.
    'atlas_rois': {
        'DENTATE_R': 'Dentate_R.nii.gz',
        'DENTATE_L': 'Dentate_L.nii.gz',
    },
    # The first seed of every tract is the thalamic ROI the density map is masked with.
    'tracts': [
        {'name': 'TH-M1_fs_R', 'seeds': ['THALAMUS_fs_R', 'M1_fs_R'], 'exclude': 'WM_fs_L'},
        {'name': 'TH-M1_fs_L', 'seeds': ['THALAMUS_fs_L', 'M1_fs_L'], 'exclude': 'WM_fs_R'},
        {'name': 'TH-S1_fs_R', 'seeds': ['THALAMUS_fs_R', 'S1_fs_R'], 'exclude': 'WM_fs_L'},
        {'name': 'TH-S1_fs_L', 'seeds': ['THALAMUS_fs_L', 'S1_fs_L'], 'exclude': 'WM_fs_R'},
        {'name': 'TH-SMA_and_PMC_R', 'seeds': ['THALAMUS_fs_R', 'SMA_and_PMC_fs_L'], 'exclude': 'WM_fs_L'},
        {'name': 'TH-SMA_and_PMC_L', 'seeds': ['THALAMUS_fs_L', 'SMA_and_PMC_fs_L']},
        {'name': 'TH-DR_R', 'seeds': ['THALAMUS_fs_R', 'M1_fs_R', 'DENTATE_L'], 'exclude': 'WM_fs_L'},
        {'name': 'TH-DR_L', 'seeds': ['THALAMUS_fs_L', 'M1_fs_L', 'DENTATE_R'], 'exclude': 'WM_fs_R'},
    ],
    'qc': {
        'check_connectivity_maps': True,
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass(frozen=True)
class ToolSettings:
    """Settings handed to every external tool invocation."""
    n_threads: int = 6
    verbose: bool = False

    def environment(self) -> dict[str, str]:
        """Environment variables the external tool families read."""
        env = {
            'OMP_NUM_THREADS': str(self.n_threads),
            'FSLPARALLEL': str(self.n_threads),
            'FSLOUTPUTTYPE': 'NIFTI_GZ',
        }
        if not self.verbose:
            env['MRTRIX_QUIET'] = '1'
        return env


class Config:
    """Handles loading and providing access to the YAML configuration file."""
    def __init__(self, path: Path | None = None):
        self.path = path
        data: dict = {}
        if path is not None:
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ValueError(f"Failed to load or parse config {path}") from e
            if not isinstance(data, dict):
                raise ValueError(f"Config {path} must contain a mapping at the top level.")
            logger.info(f"Configuration loaded from {path}")
        self._data = _deep_merge(DEFAULT_CONFIG, data)

    def get_path(self, key: str, subject: str, base_dir: Path | None = None) -> Path:
        """Resolves a path entry, filling in the subject and environment variables.

        Relative paths are anchored at ``base_dir`` (the configured base directory
        when omitted).
        """
        try:
            raw = self._data['paths'][key]
        except KeyError:
            raise ValueError(f"Path '{key}' is not defined in the configuration.") from None
        path = Path(os.path.expandvars(str(raw).format(subject=subject)))
        if path.is_absolute():
            return path
        anchor = Path(base_dir).absolute() if base_dir is not None else self.base_dir
        return anchor / path

    @property
    def base_dir(self) -> Path:
        return Path(os.path.expandvars(str(self._data['paths']['base_dir']))).absolute()

    def get_exec(self, key: str, default: str | None = None) -> str:
        return self._data.get('executables', {}).get(key, default or key)

    @property
    def executables(self) -> dict[str, str]:
        return dict(self._data.get('executables') or {})

    def get_section(self, name: str) -> Any:
        return copy.deepcopy(self._data.get(name, {}))
