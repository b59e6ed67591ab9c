"""Build request records and the lifecycle graph they move along."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import FailureCause


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_request_id() -> str:
    return uuid.uuid4().hex


def bounded(text: str, limit: int) -> str:
    """Keep the tail of ``text`` within ``limit`` UTF-8 bytes."""
    raw = text.encode("utf-8", errors="replace")
    if len(raw) <= limit:
        return text
    marker = "...[truncated]\n"
    keep = raw[-max(0, limit - len(marker)) :]
    return marker + keep.decode("utf-8", errors="ignore")


class BuildState(str, Enum):
    SUBMITTED = "submitted"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({BuildState.COMPLETED, BuildState.FAILED, BuildState.CANCELLED})

# running -> queued is the retry edge.
TRANSITIONS: dict[BuildState, frozenset[BuildState]] = {
    BuildState.SUBMITTED: frozenset({BuildState.QUEUED}),
    BuildState.QUEUED: frozenset({BuildState.RUNNING, BuildState.CANCELLED}),
    BuildState.RUNNING: frozenset(
        {BuildState.COMPLETED, BuildState.FAILED, BuildState.CANCELLED, BuildState.QUEUED}
    ),
    BuildState.COMPLETED: frozenset(),
    BuildState.FAILED: frozenset(),
    BuildState.CANCELLED: frozenset(),
}


def can_transition(current: BuildState, target: BuildState) -> bool:
    return target in TRANSITIONS[current]


@dataclass(slots=True)
class BuildRequest:
    """One compilation job. Only the coordinator mutates these."""

    request_id: str
    tenant_id: str
    source_key: str
    variant: str
    submitted_at: datetime = field(default_factory=utcnow)
    state: BuildState = BuildState.SUBMITTED
    retry_count: int = 0
    last_error: str | None = None
    failure_cause: FailureCause | None = None
    output_key: str | None = None
    worker_id: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    available_at: datetime | None = None
    cancel_requested: bool = False
    progress: int = 0
    message: str = ""
    history: list[tuple[BuildState, datetime]] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    @property
    def states(self) -> list[BuildState]:
        return [state for state, _ in self.history]

    def snapshot(self) -> "BuildRequest":
        return copy.deepcopy(self)

    def error_summary(self) -> str | None:
        if self.failure_cause is None and not self.last_error:
            return None
        cause = self.failure_cause.value if self.failure_cause else "Error"
        if self.last_error:
            return f"{cause}: {self.last_error}"
        return cause


@dataclass(frozen=True, slots=True)
class QueueEntry:
    """Admission ticket for a queued request. Lives until a worker claims it."""

    request_id: str
    tenant_id: str
    seq: int
    enqueued_at: datetime
    available_at: datetime
    requires: frozenset[str] = frozenset()


@dataclass(slots=True)
class TenantQuota:
    limit: int
    queued: int = 0
    running: int = 0

    @property
    def active(self) -> int:
        return self.queued + self.running

    @property
    def exhausted(self) -> bool:
        return self.active >= self.limit


@dataclass(frozen=True, slots=True)
class StatusView:
    request_id: str
    tenant_id: str
    variant: str
    state: BuildState
    retry_count: int
    error_summary: str | None
    failure_cause: FailureCause | None
    output_artifact_key: str | None
    progress: int
    message: str

    @classmethod
    def of(cls, request: BuildRequest) -> "StatusView":
        return cls(
            request_id=request.request_id,
            tenant_id=request.tenant_id,
            variant=request.variant,
            state=request.state,
            retry_count=request.retry_count,
            error_summary=request.error_summary(),
            failure_cause=request.failure_cause,
            output_artifact_key=request.output_key,
            progress=request.progress,
            message=request.message,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "tenant_id": self.tenant_id,
            "variant": self.variant,
            "state": self.state.value,
            "retry_count": self.retry_count,
            "error_summary": self.error_summary,
            "failure_cause": self.failure_cause.value if self.failure_cause else None,
            "output_artifact_key": self.output_artifact_key,
            "progress": self.progress,
            "message": self.message,
        }


__all__ = [
    "BuildRequest",
    "BuildState",
    "QueueEntry",
    "StatusView",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "TenantQuota",
    "bounded",
    "can_transition",
    "new_request_id",
    "utcnow",
]
