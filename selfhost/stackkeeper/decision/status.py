"""
Versioned status record of a prep run.

When the prep run and the database bootstrap happen in different
processes (an init container before the database container), the prep
run hands its observations over in a structured JSON record instead of
ad hoc key=value files.

Invariants:
    - schema_version is written explicitly and checked on read
    - The record is replaced atomically (temp file + rename)
    - Unknown versions are rejected, never guessed at

How to change safely:
    - Add optional fields without bumping the version
    - Renaming or removing a field requires SCHEMA_VERSION + 1 and a
      reader for the old version
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from ..errors import ConfigurationError
from .detector import VolumeState
from .engine import DeploymentAction, DeploymentDecision

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class VolumeStatus(BaseModel):
    """Observed state of one volume."""

    name: str
    tag: str
    has_data: bool


class PrepStatus(BaseModel):
    """Status record of one prep run."""

    schema_version: int = Field(default=SCHEMA_VERSION, description="Record schema version")
    created_at: datetime = Field(default_factory=datetime.now, description="Run time")
    action: DeploymentAction = Field(..., description="Decided action")
    reason: str = Field(..., description="Decision reason")
    volumes: list[VolumeStatus] = Field(default_factory=list, description="Detected volumes")
    outcome: str = Field("", description="Result of the dispatched action")

    @classmethod
    def from_run(
        cls, decision: DeploymentDecision, states: list[VolumeState], outcome: str = ""
    ) -> PrepStatus:
        return cls(
            action=decision.action,
            reason=decision.reason,
            volumes=[
                VolumeStatus(name=s.name, tag=s.tag.value, has_data=s.has_data) for s in states
            ],
            outcome=outcome,
        )

    def volume_had_data(self, tag: str) -> Optional[bool]:
        """has_data of the volume with tag, None if not recorded."""
        for volume in self.volumes:
            if volume.tag == tag:
                return volume.has_data
        return None


def write_status(status: PrepStatus, path: str) -> None:
    """Write the record atomically."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(target.name + ".tmp")
    tmp.write_text(status.model_dump_json(indent=2), encoding="utf-8")
    os.replace(tmp, target)
    logger.debug("Status record written", extra={"path": path, "action": status.action.value})


def read_status(path: str) -> Optional[PrepStatus]:
    """Read a status record.

    Returns:
        The record, or None if no record exists

    Raises:
        ConfigurationError: If the record is unreadable or has an unknown version
    """
    target = Path(path)
    if not target.exists():
        return None
    try:
        status = PrepStatus.model_validate_json(target.read_text(encoding="utf-8"))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid status record {path}: {e}", setting="STATUS_FILE")
    if status.schema_version != SCHEMA_VERSION:
        raise ConfigurationError(
            f"Unsupported status record version {status.schema_version} in {path} "
            f"(expected {SCHEMA_VERSION})",
            setting="STATUS_FILE",
        )
    return status
