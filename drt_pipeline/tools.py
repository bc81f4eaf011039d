"""Adapter around the external neuroimaging command-line tools.

Every tool call goes through :class:`ToolRunner`, which receives a fully
resolved argument list, runs the executable without a shell and blocks until
it exits. A non-zero exit status is raised as :class:`ToolInvocationError`;
nothing is retried or suppressed here.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from nipype.interfaces.fsl import Info as FSLInfo

from .config import ToolSettings

logger = logging.getLogger(__name__)

# Tool families and the executables each stage depends on.
TOOL_FAMILIES = {
    'freesurfer': ['mri_convert'],
    'mrtrix3': ['5ttgen', '5ttcheck', '5tt2gmwmi', 'tckgen', 'tckmap', 'mrstats'],
    'fsl': ['fslmaths'],
    'ants': ['antsApplyTransforms'],
}


class ToolInvocationError(RuntimeError):
    """Raised when an external tool exits with a non-zero status."""
    def __init__(self, tool: str, args: Sequence[str], exit_code: int,
                 stdout: str = '', stderr: str = ''):
        self.tool = tool
        self.arguments = list(args)
        self.exit_code = exit_code
        self.stdout = stdout or ''
        self.stderr = stderr or ''
        message = f"{tool} failed with exit code {exit_code}."
        if self.stderr.strip():
            message += f"\n--- {tool} STDERR ---\n{self.stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True)
class ToolResult:
    exit_code: int
    output: str | None = None


class ToolRunner:
    """Runs external tools with the environment derived from ``ToolSettings``."""
    def __init__(self, settings: ToolSettings | None = None, executables: dict[str, str] | None = None):
        self.settings = settings or ToolSettings()
        self.executables = dict(executables or {})

    def executable_for(self, tool: str) -> str:
        return self.executables.get(tool, tool)

    def _environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.settings.environment())
        return env

    def invoke(self, tool: str, args: Sequence[str], cwd: Path | None = None,
               capture: bool = False) -> ToolResult:
        """Runs ``tool`` with ``args`` and waits for it to finish.

        Returns the exit status and, when ``capture`` is set, the tool's stdout.
        """
        command = [self.executable_for(tool), *[str(a) for a in args]]
        logger.debug(f"Executing command: {' '.join(command)}")
        try:
            result = subprocess.run(command, cwd=cwd, env=self._environment(),
                                    capture_output=True, text=True, check=False)
        except FileNotFoundError as e:
            raise ToolInvocationError(tool, args, 127, stderr=str(e)) from e

        if result.returncode != 0:
            if result.stdout:
                logger.debug(f"Stdout from '{tool}':\n{result.stdout.strip()}")
            if result.stderr:
                logger.warning(f"Stderr from '{tool}':\n{result.stderr.strip()}")
            raise ToolInvocationError(tool, args, result.returncode, result.stdout, result.stderr)

        output_level = logging.INFO if self.settings.verbose else logging.DEBUG
        if result.stdout and not capture:
            logger.log(output_level, f"Stdout from '{tool}':\n{result.stdout.strip()}")
        if result.stderr:
            logger.log(output_level, f"Stderr from '{tool}':\n{result.stderr.strip()}")
        return ToolResult(result.returncode, result.stdout if capture else None)


class DependencyChecker:
    """Checks that the external tool families are installed, caching results."""
    def __init__(self, runner: ToolRunner):
        self.runner = runner
        self._present: dict[str, bool] = {}

    def _on_path(self, family: str) -> bool:
        missing = [t for t in TOOL_FAMILIES[family] if not shutil.which(self.runner.executable_for(t))]
        if missing:
            logger.error(f"{family} dependency check: FAILED. Not found in PATH: {', '.join(missing)}")
            return False
        logger.info(f"{family} dependency check: OK.")
        return True

    def _check_fsl(self) -> bool:
        try:
            version = FSLInfo.version()
        except Exception as e:
            logger.debug(f"Could not query FSL version via Nipype: {e}")
            version = None
        if version:
            logger.info(f"FSL dependency check: OK (version {version}, found via Nipype).")
            return True
        return self._on_path('fsl')

    def _check_freesurfer(self) -> bool:
        if not os.getenv("FREESURFER_HOME"):
            logger.error("freesurfer dependency check: FAILED. FREESURFER_HOME environment variable is not set.")
            return False
        return self._on_path('freesurfer')

    def is_present(self, family: str) -> bool:
        if family not in self._present:
            if family == 'fsl':
                self._present[family] = self._check_fsl()
            elif family == 'freesurfer':
                self._present[family] = self._check_freesurfer()
            else:
                self._present[family] = self._on_path(family)
        return self._present[family]

    def missing_families(self) -> list[str]:
        return [family for family in TOOL_FAMILIES if not self.is_present(family)]
