"""
Deployment decision engine.

Maps the has-data flags of the database and application volumes to the
action for this startup:

    db    app    action
    ----  -----  -------
    yes   yes    BACKUP   (maintenance restart, protect current state)
    no    no     RESTORE  (recover, or fresh deploy if nothing to restore)
    yes   no     RESTORE  (partial state, recover the missing side)
    no    yes    RESTORE  (partial state, recover the missing side)

Only "both populated" never restores: restoring over populated volumes
risks silent data loss.

Invariants:
    - decide() is pure and total over its four inputs
    - decide() never returns NOOP; NOOP is issued by the prep pipeline when
      volume automation is disabled
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from ..repository.base import VolumeTag
from .detector import VolumeState


class DeploymentAction(Enum):
    """Action taken on startup."""

    BACKUP = "backup"
    RESTORE = "restore"
    NOOP = "noop"


@dataclass(frozen=True)
class DeploymentDecision:
    """The single decision of one prep run."""

    action: DeploymentAction
    reason: str


_TABLE = {
    (True, True): DeploymentDecision(
        DeploymentAction.BACKUP,
        "both volumes populated, protecting current state",
    ),
    (False, False): DeploymentDecision(
        DeploymentAction.RESTORE,
        "both volumes empty, attempting recovery before fresh deploy",
    ),
    (True, False): DeploymentDecision(
        DeploymentAction.RESTORE,
        "application volume empty while database has data, recovering missing side",
    ),
    (False, True): DeploymentDecision(
        DeploymentAction.RESTORE,
        "database volume empty while application has data, recovering missing side",
    ),
}


def decide(db_has_data: bool, app_has_data: bool) -> DeploymentDecision:
    """Decide the startup action from the two has-data flags."""
    return _TABLE[(bool(db_has_data), bool(app_has_data))]


def decide_for(states: Iterable[VolumeState]) -> DeploymentDecision:
    """Decide from detected volume states.

    Raises:
        ValueError: If the database or application volume is missing
    """
    flags = {state.tag: state.has_data for state in states}
    missing = [tag.value for tag in VolumeTag if tag not in flags]
    if missing:
        raise ValueError(f"No state for volume(s): {', '.join(missing)}")
    return decide(flags[VolumeTag.DB], flags[VolumeTag.APP])


def disabled_decision() -> DeploymentDecision:
    """Decision issued when volume automation is switched off."""
    return DeploymentDecision(DeploymentAction.NOOP, "volume automation disabled (PREP_ENABLED=false)")
