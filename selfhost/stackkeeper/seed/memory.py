"""
In-memory database for testing the seed runner.

Imported SQL is kept verbatim; every `CREATE TABLE` statement in it adds
a table. dump() writes a small SQL text describing the current tables.

Invariants:
    - All data is lost on process exit
    - Keep interface compatible with the SeedDatabase protocol
"""

from __future__ import annotations

import logging
import re
from typing import BinaryIO, Iterable, List, Optional

from ..errors import ConnectivityError, SeedExportError, SeedImportError

logger = logging.getLogger(__name__)

_CREATE_TABLE_RE = re.compile(rb"CREATE TABLE(?: IF NOT EXISTS)?\s+`?(\w+)`?", re.IGNORECASE)


class InMemoryDatabase:
    """SeedDatabase backed by process memory.

    Attributes:
        tables: Table names currently present
        imports: Raw byte streams imported so far
        ready_after: Number of failed pings before the database is ready

    Example:
        >>> db = InMemoryDatabase(tables=["wp_posts"])
        >>> await db.table_count()
        1
    """

    def __init__(
        self,
        tables: Optional[List[str]] = None,
        ready_after: int = 0,
        reachable: bool = True,
        name: str = "memory/wordpress",
    ) -> None:
        self.tables: List[str] = list(tables or [])
        self.imports: List[bytes] = []
        self.ready_after = ready_after
        self.reachable = reachable
        self.pings = 0
        self.fail_import: Optional[str] = None
        self.fail_dump: Optional[str] = None
        self._name = name

    @property
    def location(self) -> str:
        return self._name

    async def ping(self) -> bool:
        self.pings += 1
        return self.reachable and self.pings > self.ready_after

    async def table_count(self) -> int:
        if not self.reachable:
            raise ConnectivityError(f"Cannot reach {self._name}", target=self._name)
        return len(self.tables)

    async def import_stream(self, chunks: Iterable[bytes]) -> None:
        data = b"".join(chunks)
        if self.fail_import:
            raise SeedImportError(f"Import into {self._name} failed: {self.fail_import}")
        self.imports.append(data)
        for match in _CREATE_TABLE_RE.finditer(data):
            name = match.group(1).decode("utf-8")
            if name not in self.tables:
                self.tables.append(name)
        logger.debug("In-memory import", extra={"bytes": len(data), "tables": len(self.tables)})

    async def dump(self, out: BinaryIO) -> None:
        if self.fail_dump:
            raise SeedExportError(f"Dump of {self._name} failed: {self.fail_dump}")
        out.write(b"-- in-memory dump\n")
        for table in self.tables:
            out.write(f"CREATE TABLE `{table}` (id INT);\n".encode("utf-8"))

    @property
    def last_import(self) -> bytes:
        return self.imports[-1] if self.imports else b""
