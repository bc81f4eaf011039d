"""Stage abstraction and the fixed (non-tractography) stages.

A stage declares the artifacts it reads and writes. ``run()`` skips the body
when every declared output already exists, so a rerun resumes where the
previous one stopped. A stage never deletes what a failed body left behind.
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Sequence

from .tools import ToolInvocationError, ToolRunner
from .workspace import SubjectWorkspace

logger = logging.getLogger(__name__)


class StageError(RuntimeError):
    """Raised by a stage body when it cannot continue for a non-tool reason."""
    pass


# Failure categories
class FailureCategory:
    INPUT_MISSING = "input_missing"
    TOOL_FAILED = "tool_failed"
    OUTPUTS_MISSING = "outputs_missing"
    STAGE_ERROR = "stage_error"
    UNEXPECTED = "unexpected"


@dataclass
class StageResult:
    """Outcome of one ``Stage.run()`` call."""
    stage: str
    status: Literal["success", "skipped", "failed"]
    category: str | None = None
    tool: str | None = None
    exit_code: int | None = None
    error: str | None = None
    missing: list[Path] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status != "failed"


class Stage(ABC):
    """Abstract base class for a pipeline stage."""
    def __init__(self, name: str, workspace: SubjectWorkspace, tools: ToolRunner):
        self.name = name
        self.workspace = workspace
        self.tools = tools

    @abstractmethod
    def outputs(self) -> list[Path]:
        """Artifacts this stage produces."""

    def inputs(self) -> list[Path]:
        """Artifacts this stage reads that must exist before it starts."""
        return []

    def is_done(self) -> bool:
        return not self.workspace.missing(self.outputs())

    def invoke(self, tool: str, args: Sequence, capture: bool = False):
        return self.tools.invoke(tool, [str(a) for a in args], cwd=self.workspace.root, capture=capture)

    def run(self) -> StageResult:
        if self.is_done():
            logger.info(f"Skipped - {self.name} (outputs already present).")
            return StageResult(self.name, "skipped")

        start = time.time()
        missing_inputs = self.workspace.missing(self.inputs())
        if missing_inputs:
            listing = ', '.join(str(p) for p in missing_inputs)
            logger.error(f"Stage '{self.name}' cannot start, missing inputs: {listing}")
            return StageResult(self.name, "failed", category=FailureCategory.INPUT_MISSING,
                               error=f"Missing inputs: {listing}", missing=missing_inputs)

        try:
            self._run()
        except ToolInvocationError as e:
            logger.error(f"Stage '{self.name}' failed: {e.tool} exited with code {e.exit_code}.")
            return StageResult(self.name, "failed", category=FailureCategory.TOOL_FAILED,
                               tool=e.tool, exit_code=e.exit_code, error=str(e),
                               duration_seconds=time.time() - start)
        except StageError as e:
            logger.error(f"Stage '{self.name}' failed: {e}")
            return StageResult(self.name, "failed", category=FailureCategory.STAGE_ERROR,
                               error=str(e), duration_seconds=time.time() - start)
        except Exception as e:
            logger.exception(f"Stage '{self.name}': an unexpected error occurred.")
            return StageResult(self.name, "failed", category=FailureCategory.UNEXPECTED,
                               error=str(e), duration_seconds=time.time() - start)

        duration = time.time() - start
        missing_outputs = self.workspace.missing(self.outputs())
        if missing_outputs:
            listing = ', '.join(str(p) for p in missing_outputs)
            logger.error(f"Stage '{self.name}' finished but did not produce: {listing}")
            return StageResult(self.name, "failed", category=FailureCategory.OUTPUTS_MISSING,
                               error=f"Missing outputs: {listing}", missing=missing_outputs,
                               duration_seconds=duration)
        return StageResult(self.name, "success", duration_seconds=duration)

    @abstractmethod
    def _run(self):
        """Invokes the stage's tools. Called only when the stage is not done."""


class LabelResampleStage(Stage):
    """Brings the FreeSurfer parcellation back into the native anatomical grid."""
    def __init__(self, workspace: SubjectWorkspace, tools: ToolRunner, aparc: Path):
        super().__init__("resample_labels", workspace, tools)
        self.aparc = aparc

    def inputs(self) -> list[Path]:
        return [self.aparc, self.workspace.path_of('anat')]

    def outputs(self) -> list[Path]:
        return [self.workspace.path_of('labels')]

    def _run(self):
        labels = self.workspace.path_of('labels')
        labels.parent.mkdir(parents=True, exist_ok=True)
        self.invoke('mri_convert', ['-rl', self.workspace.path_of('anat'), '-rt', 'nearest',
                                    self.aparc, labels])


class TissueSegmentationStage(Stage):
    """Five-tissue-type segmentation and the gray/white-matter interface."""
    def __init__(self, workspace: SubjectWorkspace, tools: ToolRunner):
        super().__init__("5tt", workspace, tools)

    def inputs(self) -> list[Path]:
        return [self.workspace.path_of('labels')]

    def outputs(self) -> list[Path]:
        return [self.workspace.path_of('5tt_seg'), self.workspace.path_of('gmwmi')]

    def _run(self):
        ws = self.workspace
        nthreads = str(self.tools.settings.n_threads)
        seg = ws.path_of('5tt_seg')
        seg.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Performing 5tt...")
        self.invoke('5ttgen', ['freesurfer', ws.path_of('labels'), seg,
                               '-nocrop', '-force', '-nthreads', nthreads])
        self.invoke('5ttcheck', ['-masks', ws.path_of('5tt_failed_masks'), seg,
                                 '-force', '-nthreads', nthreads])
        self.invoke('5tt2gmwmi', [seg, ws.path_of('gmwmi'), '-force'])


@dataclass(frozen=True)
class LabelRoi:
    """Binary mask of a single parcellation label."""
    name: str
    label: int


@dataclass(frozen=True)
class UnionRoi:
    """Binary union of previously extracted ROIs."""
    name: str
    parts: tuple[str, ...]


def rois_from_config(section: dict) -> list:
    """Builds the ROI table from the ``rois`` configuration section."""
    rois: list = [LabelRoi(name, int(label)) for name, label in (section.get('labels') or {}).items()]
    known = {roi.name for roi in rois}
    for name, parts in (section.get('unions') or {}).items():
        unknown = [p for p in parts if p not in known]
        if unknown:
            raise ValueError(f"Union ROI '{name}' refers to undefined ROIs: {', '.join(unknown)}")
        rois.append(UnionRoi(name, tuple(parts)))
        known.add(name)
    return rois


class RoiExtractionStage(Stage):
    """Thresholds the native-space label volume into binary anatomical ROIs."""
    def __init__(self, workspace: SubjectWorkspace, tools: ToolRunner, rois: Sequence):
        super().__init__("roi_extraction", workspace, tools)
        self.rois = list(rois)

    def inputs(self) -> list[Path]:
        return [self.workspace.path_of('labels')]

    def outputs(self) -> list[Path]:
        return [self.workspace.roi(roi.name) for roi in self.rois]

    def _run(self):
        logger.info("Making the Freesurfer ROIs from subject space...")
        labels = self.workspace.path_of('labels')
        for roi in self.rois:
            out = self.workspace.roi(roi.name)
            if isinstance(roi, LabelRoi):
                thr = str(roi.label)
                self.invoke('fslmaths', [labels, '-thr', thr, '-uthr', thr, '-bin', out])
            else:
                args = [self.workspace.roi(roi.parts[0])]
                for part in roi.parts[1:]:
                    args += ['-add', self.workspace.roi(part)]
                self.invoke('fslmaths', [*args, '-bin', out])


@dataclass(frozen=True)
class TransformJob:
    """One ``antsApplyTransforms`` call."""
    input: Path
    output: Path
    reference: Path
    transform: Path
    interpolation: str = "Linear"

    def arguments(self) -> list[str]:
        return ['-d', '3', '--float', '1', '--verbose', '1',
                '-i', str(self.input), '-o', str(self.output),
                '-r', str(self.reference), '-t', str(self.transform),
                '-n', self.interpolation]


class TransformStage(Stage):
    """Resamples images through precomputed registration transforms."""
    def __init__(self, name: str, workspace: SubjectWorkspace, tools: ToolRunner,
                 jobs: Sequence[TransformJob]):
        super().__init__(name, workspace, tools)
        self.jobs = list(jobs)

    def inputs(self) -> list[Path]:
        paths: list[Path] = []
        for job in self.jobs:
            for p in (job.input, job.reference, job.transform):
                if p not in paths:
                    paths.append(p)
        return paths

    def outputs(self) -> list[Path]:
        return [job.output for job in self.jobs]

    def _run(self):
        for job in self.jobs:
            if self.workspace.exists(job.output):
                logger.debug(f"  {job.output.name} already present, not resampling again.")
                continue
            job.output.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"  Applying {job.transform.name} to {job.input.name}")
            self.invoke('antsApplyTransforms', job.arguments())
