"""Tractography stage template.

One :class:`TractDefinition` expands into a stage that, for each algorithm
variant, generates streamlines between the seed ROIs, converts them to a
density volume, masks it with the first seed ROI and scales it by its own
maximum into a [0, 1] connectivity map.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .config import DEFAULT_CONFIG
from .stages import Stage, StageError
from .tools import ToolRunner
from .workspace import SubjectWorkspace

logger = logging.getLogger(__name__)

IFOD2 = "iFOD2"
TENSOR_PROB = "Tensor_Prob"
ALGORITHMS = (IFOD2, TENSOR_PROB)


@dataclass(frozen=True)
class TractDefinition:
    """A tract to reconstruct.

    ``seeds`` doubles as the inclusion set, so every seed region has to be
    crossed by a retained streamline. The first seed is the ROI the density
    map is intersected with.
    """
    name: str
    seeds: tuple[str, ...]
    exclude: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "TractDefinition":
        return cls(name=data['name'], seeds=tuple(data['seeds']), exclude=data.get('exclude') or None)


@dataclass(frozen=True)
class TractographyParams:
    n_streamlines: int = 20000
    tensor_cutoff: float = 0.01
    algorithms: tuple[str, ...] = field(default=ALGORITHMS)

    @classmethod
    def from_dict(cls, data: dict) -> "TractographyParams":
        algorithms = tuple(data.get('algorithms', ALGORITHMS))
        unknown = [a for a in algorithms if a not in ALGORITHMS]
        if unknown:
            raise ValueError(f"Unsupported tractography algorithms: {', '.join(unknown)}")
        return cls(n_streamlines=int(data.get('n_streamlines', 20000)),
                   tensor_cutoff=float(data.get('tensor_cutoff', 0.01)),
                   algorithms=algorithms)


# Tracts reconstructed when the configuration does not override them.
REFERENCE_TRACTS = tuple(TractDefinition.from_dict(d) for d in DEFAULT_CONFIG['tracts'])


class TractStage(Stage):
    def __init__(self, definition: TractDefinition, workspace: SubjectWorkspace,
                 tools: ToolRunner, params: TractographyParams):
        super().__init__(f"tract {definition.name}", workspace, tools)
        self.definition = definition
        self.params = params

    def outputs(self) -> list[Path]:
        return [self.workspace.connectivity_map(self.definition.name, a) for a in self.params.algorithms]

    def inputs(self) -> list[Path]:
        ws = self.workspace
        paths = [ws.path_of('anat'), ws.path_of('dwi_mask')]
        if IFOD2 in self.params.algorithms:
            paths.append(ws.path_of('wmfod'))
        if TENSOR_PROB in self.params.algorithms:
            paths.append(ws.path_of('dwi'))
        paths += [ws.roi(name) for name in self.definition.seeds]
        if self.definition.exclude:
            paths.append(ws.roi(self.definition.exclude))
        return paths

    def tckgen_arguments(self, algorithm: str) -> list[str]:
        """Argument list of the streamline generation call for one variant."""
        ws = self.workspace
        tract = self.definition
        if algorithm == IFOD2:
            args = [str(ws.path_of('wmfod')), str(ws.streamlines(tract.name, algorithm)),
                    '-algorithm', algorithm]
        elif algorithm == TENSOR_PROB:
            args = [str(ws.path_of('dwi')), str(ws.streamlines(tract.name, algorithm)),
                    '-algorithm', algorithm, '-cutoff', str(self.params.tensor_cutoff)]
        else:
            raise ValueError(f"Unsupported tractography algorithm '{algorithm}'")
        args += ['-select', str(self.params.n_streamlines)]
        for roi in tract.seeds:
            args += ['-seed_image', str(ws.roi(roi))]
        for roi in tract.seeds:
            args += ['-include', str(ws.roi(roi))]
        if tract.exclude:
            args += ['-exclude', str(ws.roi(tract.exclude))]
        args += ['-mask', str(ws.path_of('dwi_mask')),
                 '-nthreads', str(self.tools.settings.n_threads), '-force']
        return args

    def _masked_maximum(self, masked: Path) -> float:
        result = self.invoke('mrstats', ['-quiet', masked, '-output', 'max'], capture=True)
        text = (result.output or '').strip()
        try:
            return float(text.split()[0])
        except (IndexError, ValueError):
            raise StageError(f"Could not read the maximum of {masked.name} from mrstats output: {text!r}") from None

    def _run_variant(self, algorithm: str):
        ws = self.workspace
        name = self.definition.name
        intersect = self.definition.seeds[0]
        ws.tract_dir(algorithm).mkdir(parents=True, exist_ok=True)

        logger.info(f"Calculating {algorithm} {name} tract (all seeds with -select "
                    f"{self.params.n_streamlines}, intersect with {intersect})")
        self.invoke('tckgen', self.tckgen_arguments(algorithm))

        tck = ws.streamlines(name, algorithm)
        density = ws.density(name, algorithm)
        masked = ws.masked_density(name, algorithm)
        self.invoke('tckmap', [tck, density, '-template', ws.path_of('anat'), '-force'])
        self.invoke('fslmaths', [density, '-mas', ws.roi(intersect), masked])

        maximum = self._masked_maximum(masked)
        if maximum <= 0:
            logger.warning(f"  {name} ({algorithm}) has no streamlines inside {intersect}; "
                           f"the connectivity map will be empty.")
        self.invoke('fslmaths', [masked, '-div', repr(maximum), ws.connectivity_map(name, algorithm)])

    def _run(self):
        for algorithm in self.params.algorithms:
            final = self.workspace.connectivity_map(self.definition.name, algorithm)
            if self.workspace.exists(final):
                logger.info(f"  {final.name} already present, skipping {algorithm}.")
                continue
            self._run_variant(algorithm)


def build_tract_stage(definition: TractDefinition, workspace: SubjectWorkspace,
                      tools: ToolRunner, params: TractographyParams | None = None) -> TractStage:
    """Expands one tract definition into a tractography stage."""
    if not definition.seeds:
        raise ValueError(f"Tract '{definition.name}' needs at least one seed ROI.")
    return TractStage(definition, workspace, tools, params or TractographyParams())


def build_tract_stages(definitions: Sequence[TractDefinition], workspace: SubjectWorkspace,
                       tools: ToolRunner, params: TractographyParams | None = None) -> list[TractStage]:
    return [build_tract_stage(d, workspace, tools, params) for d in definitions]
