import logging
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

# Relative locations of the fixed artifacts inside a subject directory.
ARTIFACT_LAYOUT = {
    'anat': 'T1w/T1w_BrainExtractionBrain.nii.gz',
    'anat_mni': 'T1w/T1w_MNI152NLin2009cAsym.nii.gz',
    'mni_t1w_native': 'T1w/T1w_test_inv_MNI_warp.nii.gz',
    'labels': 'roi/labels_from_FS.nii.gz',
    '5tt_seg': '5tt/5ttseg.mif',
    '5tt_failed_masks': '5tt/failed_5tt',
    'gmwmi': '5tt/5tt2gmwmi.nii.gz',
    'wmfod': 'response/wmfod_reg2T1w.mif',
    'dwi': 'dwi_preproced_reg2T1w.mif',
    'dwi_mask': 'dwi_mask.nii.gz',
}


class SubjectWorkspace:
    """On-disk artifact namespace of a single subject.

    Every path is a pure function of the subject and the artifact role; the
    only time-dependent names are the run log and run summary.
    """
    def __init__(self, base_dir: Path, subject: str):
        if not subject:
            raise ValueError("A subject identifier is required.")
        self.subject = subject
        self.base_dir = Path(base_dir).absolute()
        self.root = self.base_dir / 'dwiprep' / f'sub-{subject}'

    def path_of(self, role: str) -> Path:
        try:
            return self.root / ARTIFACT_LAYOUT[role]
        except KeyError:
            raise ValueError(f"Unknown artifact role '{role}'.") from None

    def roi(self, name: str) -> Path:
        return self.root / 'roi' / f'{name}.nii.gz'

    def tract_dir(self, algorithm: str) -> Path:
        return self.root / f'tracts_{algorithm}'

    def streamlines(self, tract: str, algorithm: str) -> Path:
        return self.tract_dir(algorithm) / f'{tract}.tck'

    def density(self, tract: str, algorithm: str) -> Path:
        return self.tract_dir(algorithm) / f'{tract}.nii.gz'

    def masked_density(self, tract: str, algorithm: str) -> Path:
        return self.tract_dir(algorithm) / f'{tract}_masked.nii.gz'

    def connectivity_map(self, tract: str, algorithm: str) -> Path:
        return self.root / f'{tract}_{algorithm}.nii.gz'

    def log_file(self, timestamp: str) -> Path:
        return self.root / 'log' / f'log_{timestamp}.txt'

    def summary_file(self, timestamp: str) -> Path:
        return self.root / 'log' / f'run_summary_{timestamp}.json'

    def exists(self, path: Path) -> bool:
        return Path(path).is_file()

    def missing(self, paths: Iterable[Path]) -> list[Path]:
        return [p for p in paths if not self.exists(p)]

    def create_directories(self):
        for sub in ('roi', '5tt', 'T1w', 'log'):
            (self.root / sub).mkdir(parents=True, exist_ok=True)
