import sys
import pytest
from pathlib import Path

from drt_pipeline.config import Config, ToolSettings
from drt_pipeline.stages import (FailureCategory, LabelResampleStage, LabelRoi, RoiExtractionStage,
                                 Stage, StageError, TissueSegmentationStage, TransformJob,
                                 TransformStage, UnionRoi, rois_from_config)
from drt_pipeline.tools import ToolRunner
from drt_pipeline.workspace import SubjectWorkspace
from tests.helpers import SUBJECT, FakeToolRunner, touch


class RecordingStage(Stage):
    """Writes its outputs one tool call at a time."""
    def __init__(self, workspace, tools, n_outputs=2, write=True, error=None):
        super().__init__("recording", workspace, tools)
        self.n_outputs = n_outputs
        self.write = write
        self.error = error

    def outputs(self):
        return [self.workspace.root / f"out_{i}.nii.gz" for i in range(self.n_outputs)]

    def _run(self):
        if self.error is not None:
            raise self.error
        for out in self.outputs():
            self.invoke('fslmaths', ['in.nii.gz', '-bin', out if self.write else self.workspace.root / 'elsewhere.nii.gz'])


def test_done_stage_is_skipped_without_tool_calls(workspace):
    tools = FakeToolRunner()
    stage = RecordingStage(workspace, tools)
    for i, out in enumerate(stage.outputs()):
        touch(out, f"original {i}")
    before = {p: p.read_bytes() for p in stage.outputs()}

    assert stage.is_done()
    result = stage.run()

    assert result.status == "skipped"
    assert tools.calls == []
    assert {p: p.read_bytes() for p in stage.outputs()} == before


def test_partial_outputs_do_not_count_as_done(workspace):
    tools = FakeToolRunner()
    stage = RecordingStage(workspace, tools)
    touch(stage.outputs()[0])

    assert not stage.is_done()
    assert stage.run().status == "success"
    assert len(tools.calls) == 2


def test_tool_failure_aborts_remaining_invocations(workspace):
    tools = FakeToolRunner(fail_on=lambda tool, args: args[-1].endswith("out_0.nii.gz"))
    stage = RecordingStage(workspace, tools, n_outputs=3)

    result = stage.run()

    assert result.status == "failed"
    assert result.category == FailureCategory.TOOL_FAILED
    assert result.tool == "fslmaths"
    assert result.exit_code == 1
    assert len(tools.calls) == 1


def test_partial_artifacts_are_kept_after_failure(workspace):
    tools = FakeToolRunner(fail_on=lambda tool, args: args[-1].endswith("out_1.nii.gz"))
    stage = RecordingStage(workspace, tools)

    assert not stage.run().ok
    assert stage.outputs()[0].exists()
    assert not stage.is_done()


def test_missing_outputs_after_body_fail_the_stage(workspace):
    stage = RecordingStage(workspace, FakeToolRunner(), write=False)
    result = stage.run()
    assert result.status == "failed"
    assert result.category == FailureCategory.OUTPUTS_MISSING
    assert result.missing == stage.outputs()


def test_stage_error_and_unexpected_errors_become_failures(workspace):
    result = RecordingStage(workspace, FakeToolRunner(), error=StageError("no maximum")).run()
    assert result.category == FailureCategory.STAGE_ERROR
    assert "no maximum" in result.error

    result = RecordingStage(workspace, FakeToolRunner(), error=KeyError("x")).run()
    assert result.category == FailureCategory.UNEXPECTED


def test_missing_inputs_fail_before_any_tool_call(workspace, tmp_path):
    tools = FakeToolRunner()
    stage = LabelResampleStage(workspace, tools, tmp_path / "freesurfer" / "aparc+aseg.mgz")

    result = stage.run()

    assert result.category == FailureCategory.INPUT_MISSING
    assert tmp_path / "freesurfer" / "aparc+aseg.mgz" in result.missing
    assert tools.calls == []


def test_label_resample_arguments(workspace, tmp_path):
    aparc = touch(tmp_path / "aparc+aseg.mgz")
    touch(workspace.path_of('anat'))
    tools = FakeToolRunner()

    assert LabelResampleStage(workspace, tools, aparc).run().status == "success"
    assert tools.calls == [('mri_convert', ['-rl', str(workspace.path_of('anat')), '-rt', 'nearest',
                                            str(aparc), str(workspace.path_of('labels'))])]


def test_tissue_segmentation_sequence(workspace):
    touch(workspace.path_of('labels'))
    tools = FakeToolRunner()

    result = TissueSegmentationStage(workspace, tools).run()

    assert result.status == "success"
    assert tools.tools_called() == ['5ttgen', '5ttcheck', '5tt2gmwmi']
    assert tools.calls[0][1][:3] == ['freesurfer', str(workspace.path_of('labels')),
                                     str(workspace.path_of('5tt_seg'))]
    assert tools.calls[0][1][-2:] == ['-nthreads', '6']


def test_rois_from_config():
    rois = rois_from_config({'labels': {'MFG_fs_L': 2003, 'SFG_fs_L': 2028},
                             'unions': {'SMA_and_PMC_fs_L': ['MFG_fs_L', 'SFG_fs_L']}})
    assert rois == [LabelRoi('MFG_fs_L', 2003), LabelRoi('SFG_fs_L', 2028),
                    UnionRoi('SMA_and_PMC_fs_L', ('MFG_fs_L', 'SFG_fs_L'))]


def test_rois_from_config_rejects_unknown_union_parts():
    with pytest.raises(ValueError, match="undefined ROIs"):
        rois_from_config({'labels': {'MFG_fs_L': 2003}, 'unions': {'SMA': ['MFG_fs_L', 'SFG_fs_L']}})


def test_roi_extraction(workspace):
    touch(workspace.path_of('labels'))
    tools = FakeToolRunner()
    rois = [LabelRoi('THALAMUS_fs_R', 49), LabelRoi('MFG_fs_R', 1003), LabelRoi('SFG_fs_R', 1028),
            UnionRoi('SMA_and_PMC_fs_R', ('MFG_fs_R', 'SFG_fs_R'))]
    stage = RoiExtractionStage(workspace, tools, rois)

    assert stage.outputs() == [workspace.roi(r.name) for r in rois]
    assert stage.run().status == "success"

    labels = str(workspace.path_of('labels'))
    assert tools.calls[0] == ('fslmaths', [labels, '-thr', '49', '-uthr', '49', '-bin',
                                           str(workspace.roi('THALAMUS_fs_R'))])
    assert tools.calls[-1] == ('fslmaths', [str(workspace.roi('MFG_fs_R')), '-add', str(workspace.roi('SFG_fs_R')),
                                            '-bin', str(workspace.roi('SMA_and_PMC_fs_R'))])


def test_roi_extraction_reruns_when_one_roi_is_missing(workspace):
    touch(workspace.path_of('labels'))
    rois = [LabelRoi('WM_fs_R', 41), LabelRoi('WM_fs_L', 2)]
    touch(workspace.roi('WM_fs_R'))
    tools = FakeToolRunner()

    assert RoiExtractionStage(workspace, tools, rois).run().status == "success"
    assert len(tools.calls) == 2


def test_transform_job_arguments(tmp_path):
    job = TransformJob(Path('in.nii.gz'), Path('out.nii.gz'), Path('ref.nii.gz'), Path('xfm.h5'))
    assert job.arguments() == ['-d', '3', '--float', '1', '--verbose', '1', '-i', 'in.nii.gz',
                               '-o', 'out.nii.gz', '-r', 'ref.nii.gz', '-t', 'xfm.h5', '-n', 'Linear']


def test_transform_stage_only_runs_missing_jobs(workspace, tmp_path):
    ref = touch(tmp_path / 'ref.nii.gz')
    xfm = touch(tmp_path / 'xfm.h5')
    jobs = [TransformJob(touch(tmp_path / 'Dentate_R.nii.gz'), workspace.roi('DENTATE_R'), ref, xfm),
            TransformJob(touch(tmp_path / 'Dentate_L.nii.gz'), workspace.roi('DENTATE_L'), ref, xfm)]
    touch(workspace.roi('DENTATE_R'))
    tools = FakeToolRunner()
    stage = TransformStage("atlas_rois", workspace, tools, jobs)

    assert stage.inputs() == [tmp_path / 'Dentate_R.nii.gz', ref, xfm, tmp_path / 'Dentate_L.nii.gz']
    assert stage.run().status == "success"
    assert len(tools.calls) == 1
    assert str(workspace.roi('DENTATE_L')) in tools.calls[0][1]


@pytest.mark.skipif(sys.platform.startswith("win"), reason="uses a POSIX shell script as mri_convert")
def test_relative_base_dir_resolves_for_tools(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = Config()
    workspace = SubjectWorkspace(config.base_dir, SUBJECT)
    aparc = config.get_path('freesurfer_aparc', SUBJECT, workspace.base_dir)
    touch(Path('freesurfer') / f'sub-{SUBJECT}' / SUBJECT / 'mri' / 'aparc+aseg.mgz')
    touch(Path('dwiprep') / f'sub-{SUBJECT}' / 'T1w' / 'T1w_BrainExtractionBrain.nii.gz')
    workspace.create_directories()
    script = tmp_path / 'bin' / 'mri_convert'
    touch(script, '#!/bin/sh\ntest -f "$2" && test -f "$5" && touch "$6"\n')
    script.chmod(0o755)
    tools = ToolRunner(ToolSettings(), {'mri_convert': str(script)})

    result = LabelResampleStage(workspace, tools, aparc).run()

    assert workspace.root.is_absolute()
    assert aparc.is_absolute()
    assert result.status == "success"
    assert (tmp_path / 'dwiprep' / f'sub-{SUBJECT}' / 'roi' / 'labels_from_FS.nii.gz').is_file()
