"""
Volume state detection and the deployment decision.

- detect / detect_volumes: has-data flags of the monitored volumes
- decide / decide_for: startup action from those flags
- PrepStatus: versioned record handed to other processes
"""

from .detector import VolumeSpec, VolumeState, detect, detect_volumes, volume_specs_from_config
from .engine import (
    DeploymentAction,
    DeploymentDecision,
    decide,
    decide_for,
    disabled_decision,
)
from .status import SCHEMA_VERSION, PrepStatus, VolumeStatus, read_status, write_status

__all__ = [
    "VolumeSpec",
    "VolumeState",
    "detect",
    "detect_volumes",
    "volume_specs_from_config",
    "DeploymentAction",
    "DeploymentDecision",
    "decide",
    "decide_for",
    "disabled_decision",
    "SCHEMA_VERSION",
    "PrepStatus",
    "VolumeStatus",
    "read_status",
    "write_status",
]
