"""
Database seed handling.

- discover_candidates / select_seed: pick one dump among many
- SeedRunner: prep / import / export / auto modes
- MariaDbClient: production database access through the mariadb CLIs
- InMemoryDatabase: database stand-in for tests
"""

from .database import MariaDbClient, SeedDatabase, create_database
from .memory import InMemoryDatabase
from .runner import SeedOutcome, SeedRunner, SeedRunResult
from .selector import SeedCandidate, SelectedSeed, discover_candidates, select_seed

__all__ = [
    "MariaDbClient",
    "SeedDatabase",
    "create_database",
    "InMemoryDatabase",
    "SeedOutcome",
    "SeedRunner",
    "SeedRunResult",
    "SeedCandidate",
    "SelectedSeed",
    "discover_candidates",
    "select_seed",
]
