from pathlib import Path

from drt_pipeline.config import ToolSettings
from drt_pipeline.tools import ToolInvocationError, ToolResult, ToolRunner

SUBJECT = "pat001"


def _written_by(tool, args):
    """Paths a tool call writes, mirroring each tool's CLI contract."""
    if tool in ('mri_convert', 'fslmaths'):
        return [args[-1]]
    if tool == '5ttgen':
        return [args[2]]
    if tool in ('5tt2gmwmi', 'tckgen', 'tckmap'):
        return [args[1]]
    if tool == 'antsApplyTransforms':
        return [args[args.index('-o') + 1]]
    return []


class FakeToolRunner(ToolRunner):
    """Records tool calls and creates the files each call would write."""
    def __init__(self, settings=None, fail_on=None, max_value="57.0"):
        super().__init__(settings or ToolSettings(n_threads=6))
        self.calls = []
        self.fail_on = fail_on
        self.max_value = max_value

    def invoke(self, tool, args, cwd=None, capture=False):
        args = [str(a) for a in args]
        self.calls.append((tool, args))
        if self.fail_on is not None and self.fail_on(tool, args):
            raise ToolInvocationError(tool, args, 1, stderr=f"{tool}: simulated failure")
        for out in _written_by(tool, args):
            out = Path(out)
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(f"{tool} output")
        if capture:
            return ToolResult(0, f"{self.max_value}\n")
        return ToolResult(0)

    def tools_called(self):
        return [tool for tool, _ in self.calls]


def touch(path: Path, content: str = "data"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path
