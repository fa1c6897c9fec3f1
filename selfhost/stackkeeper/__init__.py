"""
Stackkeeper - volume lifecycle automation for a self-hosted application stack.

On every startup Stackkeeper decides, without human input, whether the
stack is a fresh install, a restore from backup, or a restart of an
already-populated deployment, and drives a deduplicated, encrypted
snapshot repository (borg) accordingly. Independently it bootstraps an
empty database from the best available SQL seed.

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │   Volumes    │────▶│   Detector   │────▶│  Decision Engine │
    │ (db, app)    │     │  (has data?) │     │ BACKUP / RESTORE │
    └──────────────┘     └──────────────┘     └────────┬─────────┘
                                                       │
                              ┌────────────────────────┴───────┐
                              ▼                                ▼
                      ┌───────────────┐                ┌───────────────┐
                      │    Backup     │                │    Restore    │
                      │   Executor    │                │   Executor    │
                      └───────┬───────┘                └───────┬───────┘
                              └───────────────┬────────────────┘
                                              ▼
                                  ┌───────────────────────┐
                                  │  Snapshot Repository  │
                                  │   (borg, locked)      │
                                  └───────────────────────┘

    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │  Seed dir    │────▶│   Selector   │────▶│   Seed Runner    │──▶ mariadb
    │ *.sql(.gz)   │     │              │     │ prep/import/...  │
    └──────────────┘     └──────────────┘     └──────────────────┘

Invariants:
    - Exactly one deployment decision per run
    - Populated volumes are never restored over by automation
    - Archive names are unique; a collision is fatal, never an overwrite
    - Seeds are only imported into a database without tables

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
