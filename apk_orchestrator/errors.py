"""Error taxonomy shared by the store, queue, coordinator and workers."""

from __future__ import annotations

from enum import Enum


class FailureCause(str, Enum):
    """Why a build attempt did not complete."""

    CORRUPT_ARCHIVE = "CorruptArchive"
    TOOLCHAIN_FAILURE = "ToolchainFailure"
    TIMEOUT = "Timeout"
    STORAGE_ERROR = "StorageError"
    WORKER_CRASH = "WorkerCrash"
    CANCELLED = "Cancelled"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_CAUSES


RETRYABLE_CAUSES = frozenset(
    {
        FailureCause.TOOLCHAIN_FAILURE,
        FailureCause.TIMEOUT,
        FailureCause.STORAGE_ERROR,
        FailureCause.WORKER_CRASH,
    }
)


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator."""

    cause: FailureCause | None = None


class RejectedAdmission(OrchestratorError):
    """The tenant is over quota or the queue is full."""

    def __init__(self, tenant_id: str, reason: str) -> None:
        super().__init__(f"build for tenant {tenant_id!r} rejected: {reason}")
        self.tenant_id = tenant_id
        self.reason = reason


class BuildNotFound(OrchestratorError, LookupError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"unknown build request {request_id!r}")
        self.request_id = request_id


class CorruptArchive(OrchestratorError):
    cause = FailureCause.CORRUPT_ARCHIVE


class ToolchainFailure(OrchestratorError):
    cause = FailureCause.TOOLCHAIN_FAILURE

    def __init__(self, message: str, *, exit_code: int | None = None, diagnostics: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.diagnostics = diagnostics


class BuildTimeout(ToolchainFailure):
    cause = FailureCause.TIMEOUT


class BuildCancelled(OrchestratorError):
    cause = FailureCause.CANCELLED


class StorageError(OrchestratorError):
    """The artifact store could not be read or written."""

    cause = FailureCause.STORAGE_ERROR


class ArtifactNotFound(StorageError, LookupError):
    def __init__(self, key: str) -> None:
        super().__init__(f"artifact {key!r} not found")
        self.key = key


class ArtifactTooLarge(StorageError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"artifact of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


__all__ = [
    "ArtifactNotFound",
    "ArtifactTooLarge",
    "BuildCancelled",
    "BuildNotFound",
    "BuildTimeout",
    "CorruptArchive",
    "FailureCause",
    "OrchestratorError",
    "RETRYABLE_CAUSES",
    "RejectedAdmission",
    "StorageError",
    "ToolchainFailure",
]
