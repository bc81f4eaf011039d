"""Checks on the final connectivity maps."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import nibabel as nib
import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MapCheck:
    """Value range of one connectivity map."""
    path: Path
    minimum: float | None = None
    maximum: float | None = None
    nonzero_voxels: int = 0
    in_unit_range: bool = False
    has_peak: bool = False
    error: str | None = None

    @property
    def passed(self) -> bool:
        return self.error is None and self.in_unit_range and self.has_peak


def check_connectivity_map(path: Path, atol: float = 1e-5) -> MapCheck:
    """Verifies that a map lies within [0, 1] and reaches 1 at its peak."""
    path = Path(path)
    try:
        data = np.asanyarray(nib.load(str(path)).dataobj, dtype=np.float64)
    except Exception as e:
        logger.error(f"Could not load connectivity map {path}: {e}")
        return MapCheck(path, error=str(e))

    if data.size == 0 or not np.all(np.isfinite(data)):
        return MapCheck(path, error="Map is empty or contains non-finite values.")

    minimum, maximum = float(data.min()), float(data.max())
    return MapCheck(
        path=path,
        minimum=minimum,
        maximum=maximum,
        nonzero_voxels=int(np.count_nonzero(data)),
        in_unit_range=minimum >= -atol and maximum <= 1.0 + atol,
        has_peak=bool(np.isclose(maximum, 1.0, atol=atol)),
    )


def check_connectivity_maps(paths: Iterable[Path]) -> list[MapCheck]:
    checks = []
    for path in paths:
        check = check_connectivity_map(path)
        if check.passed:
            logger.info(f"  QC OK - {check.path.name} (range {check.minimum:.3g}..{check.maximum:.3g}, "
                        f"{check.nonzero_voxels} voxels)")
        else:
            logger.warning(f"  QC WARNING - {check.path.name}: "
                           f"{check.error or f'range {check.minimum}..{check.maximum}'}")
        checks.append(check)
    return checks
