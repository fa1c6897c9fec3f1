"""
Volume state detection.

A volume "has data" iff its marker sub-directory (or the volume root when
no marker is configured) exists and holds at least one entry. Emptiness
is the only signal: it can be observed at container start, before the
database or the application is running.

Invariants:
    - Read-only; never creates, modifies or removes anything
    - Never raises on unreadable paths: OSError means "no data"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List

from ..repository.base import VolumeTag

if TYPE_CHECKING:
    from ..config import VolumeConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VolumeSpec:
    """A monitored storage area.

    Attributes:
        name: Human-readable volume name
        tag: Archive tag of the volume
        path: Mount point
        marker: Sub-directory whose non-emptiness signals data ("" = root)
    """

    name: str
    tag: VolumeTag
    path: str
    marker: str = ""

    @property
    def marker_path(self) -> str:
        return os.path.join(self.path, self.marker) if self.marker else self.path


@dataclass(frozen=True)
class VolumeState:
    """Observed state of one volume for the current run."""

    name: str
    tag: VolumeTag
    path: str
    has_data: bool


def detect(path: str, marker: str = "") -> bool:
    """Whether the volume at path holds data.

    Args:
        path: Volume mount point
        marker: Optional sub-directory to inspect instead of the root

    Returns:
        True iff the inspected directory exists and is non-empty
    """
    target = os.path.join(path, marker) if marker else path
    try:
        if not os.path.isdir(target):
            return False
        with os.scandir(target) as entries:
            return next(entries, None) is not None
    except OSError as e:
        logger.warning(
            f"Cannot read {target}, treating volume as empty",
            extra={"path": target, "error": str(e)},
        )
        return False


def detect_volumes(specs: Iterable[VolumeSpec]) -> List[VolumeState]:
    """Detect the state of every volume."""
    states = []
    for spec in specs:
        has_data = detect(spec.path, spec.marker)
        logger.info(
            f"Volume {spec.name}: {'has data' if has_data else 'empty'}",
            extra={"volume": spec.name, "path": spec.marker_path, "has_data": has_data},
        )
        states.append(
            VolumeState(name=spec.name, tag=spec.tag, path=spec.path, has_data=has_data)
        )
    return states


def volume_specs_from_config(config: "VolumeConfig") -> List[VolumeSpec]:
    """Database and application volume specs, database first."""
    return [
        VolumeSpec(name="database", tag=VolumeTag.DB, path=config.db_path, marker=config.db_marker),
        VolumeSpec(name="application", tag=VolumeTag.APP, path=config.app_path, marker=config.app_marker),
    ]
