"""Segmentation of the dentato-rubro-thalamic tract for DBS target selection.

Runs the per-subject stage sequence: label resampling, 5tt segmentation, ROI
extraction, standard-space transforms, atlas ROIs and eight tractography
stages. Stages whose outputs already exist are skipped, so an interrupted run
can simply be started again. The first failing stage stops the run.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Sequence

from . import __version__
from .config import Config, ToolSettings
from .qc import check_connectivity_maps
from .stages import (LabelResampleStage, RoiExtractionStage, Stage, StageResult,
                     TissueSegmentationStage, TransformJob, TransformStage, rois_from_config)
from .tools import DependencyChecker, ToolRunner
from .tracts import TractDefinition, TractographyParams, TractStage, build_tract_stages
from .workspace import SubjectWorkspace

# --- Logger Setup ---
PACKAGE_LOGGER = "drt_pipeline"
logger = logging.getLogger(__name__)

USAGE = """\
drt-pipeline performs dMRI segmentation of the Dentato-rubro-thalamic tract in thalamus for DBS target selection.

Usage:

  drt-pipeline -s subject <OPT_ARGS>

Example:

  drt-pipeline -s pat001 -p 6

Required arguments:

     -s:  subject (anonymised name of the subject)

Optional arguments:

     -p:  number of cpu for parallelisation
     -v:  show output from mrtrix commands
     -c:  YAML configuration file
"""


def setup_logging(log_file: Path, console_level: str = "INFO") -> logging.Handler:
    """Configures the package logger; returns the file handler so it can be closed."""
    pkg_logger = logging.getLogger(PACKAGE_LOGGER)
    pkg_logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - [%(name)s] %(message)s')
    if pkg_logger.hasHandlers():
        pkg_logger.handlers.clear()

    # Console handler
    ch = logging.StreamHandler(sys.stdout)
    try:
        ch.setLevel(getattr(logging, console_level.upper()))
    except AttributeError:
        ch.setLevel(logging.INFO)
    ch.setFormatter(formatter)
    pkg_logger.addHandler(ch)

    # File handler
    log_file.parent.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_file, encoding='utf-8', mode='a')
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)
    pkg_logger.addHandler(fh)
    return fh


def _to_serializable(obj):
    if isinstance(obj, Path):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


# --- Driver ---

@dataclass
class PipelineResult:
    subject: str
    results: list[StageResult] = field(default_factory=list)
    failed_stage: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed_stage is None

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


class PipelineDriver:
    """Runs stages one after another, stopping at the first failure."""
    def run(self, subject: str, stages: Sequence[Stage]) -> PipelineResult:
        pipeline_result = PipelineResult(subject)
        for stage in stages:
            logger.info(f"Starting stage - {stage.name}...")
            result = stage.run()
            pipeline_result.results.append(result)
            if not result.ok:
                pipeline_result.failed_stage = stage.name
                logger.critical(f"Pipeline aborted due to failure in stage: {stage.name}")
                break
            if result.status == "skipped":
                logger.info(f"Finished stage - {stage.name} (skipped).")
            else:
                logger.info(f"Finished stage - {stage.name} ({result.duration_seconds:.1f}s).")
        return pipeline_result


def save_run_summary(result: PipelineResult, output_path: Path, extra: dict | None = None):
    """Writes the stage results of a run to a JSON file."""
    summary = {
        "subject": result.subject,
        "version": __version__,
        "status": "success" if result.ok else "failed",
        "failed_stage": result.failed_stage,
        "stages": [asdict(r) for r in result.results],
        **(extra or {}),
    }
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(summary, f, indent=4, default=_to_serializable)
    except OSError as e:
        logger.error(f"Failed to save run summary to {output_path}: {e}")


# --- Reference stage sequence ---

def build_reference_stages(workspace: SubjectWorkspace, tools: ToolRunner, config: Config) -> list[Stage]:
    """Builds the full ordered stage list for one subject."""
    subject = workspace.subject
    base = workspace.base_dir
    anat = workspace.path_of('anat')

    fmriprep = config.get_path('fmriprep_anat_dir', subject, base)
    t1w_to_mni = fmriprep / f"sub-{subject}_from-T1w_to-MNI152NLin2009cAsym_mode-image_xfm.h5"
    mni_to_t1w = fmriprep / f"sub-{subject}_from-MNI152NLin2009cAsym_to-T1w_mode-image_xfm.h5"
    mni_t1w = fmriprep / f"sub-{subject}_space-MNI152NLin2009cAsym_desc-preproc_T1w.nii.gz"
    atlas_dir = config.get_path('atlas_dir', subject, base)

    rois = rois_from_config(config.get_section('rois'))
    atlas_rois = config.get_section('atlas_rois')
    tracts = [TractDefinition.from_dict(d) for d in config.get_section('tracts')]
    params = TractographyParams.from_dict(config.get_section('tractography'))

    available = {roi.name for roi in rois} | set(atlas_rois)
    for tract in tracts:
        used = list(tract.seeds) + ([tract.exclude] if tract.exclude else [])
        unknown = [name for name in used if name not in available]
        if unknown:
            raise ValueError(f"Tract '{tract.name}' uses undefined ROIs: {', '.join(unknown)}")

    standard_space = TransformStage("standard_space", workspace, tools, [
        TransformJob(anat, workspace.path_of('anat_mni'),
                     config.get_path('mni_reference', subject, base), t1w_to_mni),
        TransformJob(mni_t1w, workspace.path_of('mni_t1w_native'), anat, mni_to_t1w),
    ])
    atlas_stage = TransformStage("atlas_rois", workspace, tools, [
        TransformJob(atlas_dir / filename, workspace.roi(name), anat, mni_to_t1w)
        for name, filename in atlas_rois.items()
    ])

    return [
        LabelResampleStage(workspace, tools, config.get_path('freesurfer_aparc', subject, base)),
        TissueSegmentationStage(workspace, tools),
        RoiExtractionStage(workspace, tools, rois),
        standard_space,
        atlas_stage,
        *build_tract_stages(tracts, workspace, tools, params),
    ]


# --- Main Orchestrator ---

class PipelineRunner:
    def __init__(self, subject: str, config: Config, settings: ToolSettings,
                 tools: ToolRunner | None = None, check_dependencies: bool = True,
                 console_log_level: str = "INFO", base_dir: Path | None = None):
        self.config = config
        self.settings = settings
        self.tools = tools or ToolRunner(settings, config.executables)
        self.check_dependencies = check_dependencies
        self.console_log_level = console_log_level
        self.workspace = SubjectWorkspace(base_dir if base_dir is not None else config.base_dir, subject)
        self.timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")

    @property
    def log_file(self) -> Path:
        return self.workspace.log_file(self.timestamp)

    def run(self) -> int:
        """Runs the pipeline and returns the process exit status."""
        try:
            stages = build_reference_stages(self.workspace, self.tools, self.config)
        except ValueError as e:
            logger.critical(f"Configuration error: {e}")
            return 1

        self.workspace.create_directories()
        file_handler = setup_logging(self.log_file, self.console_log_level)
        try:
            return self._run(stages)
        except Exception:
            logger.critical("Pipeline failed with an unhandled exception.", exc_info=True)
            return 1
        finally:
            logging.getLogger(PACKAGE_LOGGER).removeHandler(file_handler)
            file_handler.close()

    def _run(self, stages: list[Stage]) -> int:
        logger.info(f"Welcome to drt-pipeline {__version__} - {self.timestamp}")
        logger.info("=" * 60)
        logger.info(f"Subject: {self.workspace.subject}")
        logger.info(f"Subject directory: {self.workspace.root}")
        logger.info(f"Threads: {self.settings.n_threads}, verbose: {self.settings.verbose}")
        logger.info(f"Stages: {len(stages)}")
        logger.info("=" * 60)

        if self.check_dependencies:
            missing = DependencyChecker(self.tools).missing_families()
            if missing:
                logger.critical(f"Required tools are not available: {', '.join(missing)}")
                return 1

        result = PipelineDriver().run(self.workspace.subject, stages)

        extra = {"log_file": self.log_file, "n_threads": self.settings.n_threads}
        if result.ok and self.config.get_section('qc').get('check_connectivity_maps', True):
            maps = [p for stage in stages if isinstance(stage, TractStage) for p in stage.outputs()]
            logger.info(f"Checking {len(maps)} connectivity maps...")
            checks = check_connectivity_maps(maps)
            extra["qc"] = [asdict(c) for c in checks]
        save_run_summary(result, self.workspace.summary_file(self.timestamp), extra)

        if not result.ok:
            logger.error(f"drt-pipeline {__version__} - stopped at stage '{result.failed_stage}'")
            return result.exit_code
        logger.info(f"drt-pipeline {__version__} - finished processing")
        return 0


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on malformed options."""
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="drt-pipeline",
        usage=USAGE,
        description="dMRI segmentation of the dentato-rubro-thalamic tract for DBS target selection.",
        formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("-s", dest="subject", help="Subject (anonymised name of the subject).")
    parser.add_argument("-p", dest="ncpu", type=int, default=6, help="Number of cpu for parallelisation.")
    parser.add_argument("-v", dest="verbose", action="store_true", help="Show output from mrtrix commands.")
    parser.add_argument("-c", dest="config", type=Path, default=None, help="YAML configuration file.")
    return parser


def main(argv: Sequence[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.subject:
        parser.print_usage(sys.stderr)
        print("Option -s is required: give the anonymised name of a subject.", file=sys.stderr)
        sys.exit(2)
    if args.ncpu < 1:
        parser.error("-p must be a positive number of cpus")

    try:
        config = Config(args.config)
    except ValueError as e:
        print(f"Setup failed: {e}", file=sys.stderr)
        sys.exit(1)

    settings = ToolSettings(n_threads=args.ncpu, verbose=args.verbose)
    runner = PipelineRunner(args.subject, config, settings,
                            console_log_level="DEBUG" if args.verbose else "INFO")
    sys.exit(runner.run())


if __name__ == "__main__":
    main()
