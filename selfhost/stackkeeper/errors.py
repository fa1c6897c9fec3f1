"""
Error types for Stackkeeper.

This module defines the error taxonomy shared by every component:
- StackkeeperError: Base exception
- ConfigurationError: Missing or invalid credential/path (fatal, no retry)
- ConnectivityError: Store or database unreachable (retried, then fatal)
- LockTimeoutError: Repository lock not acquired within the bounded wait
- ConflictError: Archive name collision, import into a non-empty database
- PartialFailure: One of two volumes succeeded, the other did not
- PolicyWarning: Non-fatal policy failure (pruning, compaction)
- RepositoryError: Snapshot store command failed
- SeedImportError / SeedExportError: Seed subsystem failures

Invariants:
    - All errors inherit from StackkeeperError
    - Errors carry a stable code and structured details
    - Messages name the volume or operation that failed
    - "Empty volume" and "no snapshot found" are outcomes, never errors

How to change safely:
    - Add new error types as subclasses, keep existing codes stable
    - The CLI maps classes to exit codes, update main.exit_code_for()
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class StackkeeperError(Exception):
    """Base exception for all Stackkeeper errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "STACKKEEPER_ERROR"
        self.details = details or {}


class ConfigurationError(StackkeeperError):
    """Required configuration is missing or invalid.

    Raised when:
    - A required credential or path is not set
    - An option has an unparsable value
    - A required binary is not installed
    """

    def __init__(self, message: str, setting: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"setting": setting},
        )
        self.setting = setting


class ConnectivityError(StackkeeperError):
    """Snapshot store or database is unreachable.

    Raised after the bounded retry/wait budget is exhausted.
    """

    def __init__(
        self,
        message: str,
        target: Optional[str] = None,
        code: str = "CONNECTIVITY_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"target": target})
        self.target = target


class LockTimeoutError(ConnectivityError):
    """Repository lock could not be acquired within the timeout."""

    def __init__(self, message: str, lock_path: Optional[str] = None) -> None:
        super().__init__(message, target=lock_path, code="LOCK_TIMEOUT")
        self.lock_path = lock_path


class ConflictError(StackkeeperError):
    """Operation would overwrite or corrupt existing state.

    Raised when:
    - An archive with the same name already exists
    - A seed import targets a database that already has tables

    Never auto-resolved.
    """

    def __init__(self, message: str, resource: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"resource": resource},
        )
        self.resource = resource


class PartialFailure(StackkeeperError):
    """One volume operation succeeded while another failed.

    Attributes:
        succeeded: Names of volumes (or archives) that completed
        failed: Mapping of volume name to failure message
    """

    def __init__(
        self,
        message: str,
        succeeded: Optional[List[str]] = None,
        failed: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="PARTIAL_FAILURE",
            details={"succeeded": succeeded or [], "failed": failed or {}},
        )
        self.succeeded = succeeded or []
        self.failed = failed or {}


class PolicyWarning(StackkeeperError):
    """A non-fatal policy step failed.

    Collected on results and logged; never raised out of an executor.
    """

    def __init__(self, message: str, operation: str) -> None:
        super().__init__(
            message,
            code="POLICY_WARNING",
            details={"operation": operation},
        )
        self.operation = operation

    def __str__(self) -> str:
        return f"{self.operation}: {self.message}"


class RepositoryError(StackkeeperError):
    """A snapshot store command failed.

    Attributes:
        operation: Store operation (create, extract, prune, ...)
        returncode: Process exit status, if a process was run
        stderr: Captured error output
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="REPOSITORY_ERROR",
            details={
                "operation": operation,
                "returncode": returncode,
                "stderr": stderr,
            },
        )
        self.operation = operation
        self.returncode = returncode
        self.stderr = stderr


class RepositoryNotFoundError(RepositoryError):
    """The repository has not been initialized."""


class SeedImportError(StackkeeperError):
    """Seed import failed.

    Raised when:
    - The seed file is missing or empty
    - The database client rejected the stream
    """

    def __init__(self, message: str, seed_path: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="SEED_IMPORT_ERROR",
            details={"seed_path": seed_path},
        )
        self.seed_path = seed_path


class SeedExportError(StackkeeperError):
    """Seed export failed. A failed dump leaves the canonical slot untouched."""

    def __init__(self, message: str, destination: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="SEED_EXPORT_ERROR",
            details={"destination": destination},
        )
        self.destination = destination
