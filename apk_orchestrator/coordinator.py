"""Build coordinator: the single writer of build lifecycle state.

Workers and the HTTP layer never touch a :class:`BuildRequest` directly. They
send events (claim, progress, complete, fail, cancel) and the coordinator
applies the resulting transition under one lock, updates tenant quotas under
the same lock and journals the record before releasing it.

A transition is journaled before anything in memory changes. When the write
fails the request, its queue entry and the tenant quota are left exactly as
they were and the :class:`StorageError` propagates to the caller.

Events that do not fit the current state (a duplicate completion, a report
from a worker that no longer owns the request, anything addressed to a
terminal request) are ignored and the current state is returned.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from .config import Settings
from .errors import BuildNotFound, FailureCause, RejectedAdmission, StorageError
from .models import (
    BuildRequest,
    BuildState,
    StatusView,
    TenantQuota,
    bounded,
    can_transition,
    new_request_id,
    utcnow,
)
from .queue import BuildQueue
from .records import RecordStore

logger = logging.getLogger("apk_orchestrator.coordinator")

# Variants end up in toolchain argv and file names.
_VARIANT_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,63}$")


@dataclass(frozen=True, slots=True)
class Claim:
    """A running build handed to one worker."""

    request: BuildRequest
    cancel_event: threading.Event

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def attempt(self) -> int:
        return self.request.retry_count + 1


class Coordinator:
    def __init__(
        self,
        settings: Settings,
        *,
        queue: BuildQueue | None = None,
        records: RecordStore | None = None,
    ) -> None:
        self._settings = settings
        self._queue = queue or BuildQueue(capacity=settings.queue_capacity)
        self._records = records
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._requests: dict[str, BuildRequest] = {}
        self._quotas: dict[str, TenantQuota] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._closed = False

    @property
    def queue(self) -> BuildQueue:
        return self._queue

    @property
    def max_retries(self) -> int:
        return int(self._settings.max_retries)

    # --- internals (call with the lock held) ---

    def _quota(self, tenant_id: str) -> TenantQuota:
        quota = self._quotas.get(tenant_id)
        if quota is None:
            quota = TenantQuota(limit=self._settings.quota_for(tenant_id))
            self._quotas[tenant_id] = quota
        return quota

    def _require(self, request_id: str) -> BuildRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise BuildNotFound(request_id)
        return request

    def _persist(self, request: BuildRequest) -> None:
        if self._records is not None:
            self._records.save(request)

    def _commit(self, request: BuildRequest, **changes: Any) -> BuildRequest:
        """Journal ``request`` with ``changes`` applied, then make it current."""
        updated = dataclasses.replace(request, **changes)
        self._persist(updated)
        self._requests[updated.request_id] = updated
        self._changed.notify_all()
        return updated

    def _transition(
        self,
        request: BuildRequest,
        target: BuildState,
        *,
        now: datetime | None = None,
        **changes: Any,
    ) -> BuildRequest | None:
        if not can_transition(request.state, target):
            logger.debug(
                "ignoring transition %s -> %s for %s", request.state.value, target.value, request.request_id
            )
            return None
        now = now or utcnow()
        changes["state"] = target
        changes["history"] = [*request.history, (target, now)]
        if target.terminal:
            changes["finished_at"] = now
        return self._commit(request, **changes)

    def _owned_running(self, request_id: str, worker_id: str) -> BuildRequest | None:
        request = self._require(request_id)
        if request.state is not BuildState.RUNNING or request.worker_id != worker_id:
            logger.debug(
                "stale event for %s from %s (state=%s owner=%s)",
                request_id,
                worker_id,
                request.state.value,
                request.worker_id,
            )
            return None
        return request

    def _leave_running(self, request: BuildRequest) -> None:
        quota = self._quota(request.tenant_id)
        quota.running = max(0, quota.running - 1)
        self._cancel_events.pop(request.request_id, None)

    def _check_admission(self, tenant_id: str) -> TenantQuota:
        quota = self._quota(tenant_id)
        if quota.exhausted:
            raise RejectedAdmission(
                tenant_id,
                f"quota of {quota.limit} active builds reached ({quota.running} running, {quota.queued} queued)",
            )
        if len(self._queue) >= self._queue.capacity:
            raise RejectedAdmission(tenant_id, f"queue is full ({self._queue.capacity} entries)")
        return quota

    # --- submission ---

    def admission_check(self, tenant_id: str) -> None:
        """Raise :class:`RejectedAdmission` if a build for ``tenant_id`` would be rejected now."""
        with self._lock:
            self._check_admission((tenant_id or "").strip())

    def submit(self, tenant_id: str, source_key: str, variant: str) -> BuildRequest:
        """Register and admit a build. Raises :class:`RejectedAdmission`."""
        tenant_id = (tenant_id or "").strip()
        variant = (variant or "").strip()
        if not tenant_id:
            raise ValueError("tenant_id is required")
        if not _VARIANT_RE.match(variant):
            raise ValueError(f"invalid build variant {variant!r}")

        with self._lock:
            if self._closed:
                raise RuntimeError("coordinator is shut down")
            now = utcnow()
            # A rejected request is dropped here and never journaled.
            quota = self._check_admission(tenant_id)
            draft = BuildRequest(
                request_id=new_request_id(),
                tenant_id=tenant_id,
                source_key=source_key,
                variant=variant,
                submitted_at=now,
                history=[(BuildState.SUBMITTED, now)],
            )
            request = self._transition(draft, BuildState.QUEUED, now=now, message="Waiting in queue...")
            self._queue.enqueue(request, quota, now=now)
            quota.queued += 1
            logger.info(
                "build %s admitted tenant=%s variant=%s source=%s",
                request.request_id,
                tenant_id,
                variant,
                source_key[:12],
            )
            return request.snapshot()

    # --- worker events ---

    def claim(
        self,
        worker_id: str,
        capabilities: Iterable[str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Claim | None:
        """Hand the next claimable build to ``worker_id``, waiting up to ``timeout``."""
        deadline = time.monotonic() + timeout if timeout is not None else None
        caps = frozenset(capabilities) if capabilities is not None else None
        with self._changed:
            while not self._closed:
                now = utcnow()
                entry = self._queue.claim_next(caps, now=now)
                if entry is not None:
                    queued = self._requests.get(entry.request_id)
                    if queued is None or queued.state is not BuildState.QUEUED:
                        continue
                    try:
                        request = self._transition(
                            queued,
                            BuildState.RUNNING,
                            now=now,
                            worker_id=worker_id,
                            started_at=now,
                            available_at=None,
                            progress=0,
                            message="Starting...",
                        )
                    except StorageError:
                        logger.exception("cannot journal claim of %s, leaving it queued", entry.request_id)
                        self._queue.requeue(
                            queued,
                            available_at=now + timedelta(seconds=float(self._settings.poll_interval)),
                            now=now,
                        )
                        return None
                    quota = self._quota(request.tenant_id)
                    quota.queued = max(0, quota.queued - 1)
                    quota.running += 1
                    event = threading.Event()
                    self._cancel_events[request.request_id] = event
                    logger.info(
                        "build %s claimed by %s (attempt %d)", request.request_id, worker_id, request.retry_count + 1
                    )
                    return Claim(request=request.snapshot(), cancel_event=event)

                wait = float(self._settings.poll_interval)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = min(wait, remaining)
                next_at = self._queue.next_available_at()
                if next_at is not None and next_at > now:
                    wait = min(wait, (next_at - now).total_seconds())
                self._changed.wait(max(wait, 0.01))
        return None

    def report_progress(self, request_id: str, worker_id: str, progress: int, message: str) -> None:
        # Progress is relayed, not journaled.
        with self._lock:
            request = self._owned_running(request_id, worker_id)
            if request is None:
                return
            request.progress = max(request.progress, min(100, int(progress)))
            request.message = message
            self._changed.notify_all()

    def complete(self, request_id: str, worker_id: str, output_key: str) -> BuildState:
        with self._lock:
            request = self._owned_running(request_id, worker_id)
            if request is None:
                return self._require(request_id).state
            done = self._transition(
                request,
                BuildState.COMPLETED,
                output_key=output_key,
                last_error=None,
                failure_cause=None,
                progress=100,
                message="Done!",
            )
            self._leave_running(done)
            logger.info("build %s completed output=%s", request_id, output_key[:12])
            return done.state

    def fail(self, request_id: str, worker_id: str, cause: FailureCause, diagnostics: str = "") -> BuildState:
        """Record a failed attempt; requeue it when the cause is retryable and budget remains."""
        with self._lock:
            request = self._owned_running(request_id, worker_id)
            if request is None:
                return self._require(request_id).state
            now = utcnow()

            if request.cancel_requested or cause is FailureCause.CANCELLED:
                cancelled = self._transition(
                    request,
                    BuildState.CANCELLED,
                    now=now,
                    failure_cause=FailureCause.CANCELLED,
                    last_error="cancelled by tenant",
                    message="Cancelled",
                )
                self._leave_running(cancelled)
                logger.info("build %s cancelled while running", request_id)
                return cancelled.state

            last_error = bounded(diagnostics or cause.value, self._settings.diagnostics_max_bytes)

            if cause.retryable and request.retry_count < self.max_retries:
                retry_count = request.retry_count + 1
                delay = self._settings.backoff_seconds(retry_count)
                retried = self._transition(
                    request,
                    BuildState.QUEUED,
                    now=now,
                    failure_cause=cause,
                    last_error=last_error,
                    retry_count=retry_count,
                    available_at=now + timedelta(seconds=delay),
                    worker_id=None,
                    message=f"Retrying after {cause.value} (attempt {retry_count + 1})",
                )
                self._leave_running(retried)
                self._queue.requeue(retried, available_at=retried.available_at, now=now)
                self._quota(retried.tenant_id).queued += 1
                logger.warning(
                    "build %s failed with %s, retry %d/%d in %.1fs",
                    request_id,
                    cause.value,
                    retry_count,
                    self.max_retries,
                    delay,
                )
                return retried.state

            failed = self._transition(
                request,
                BuildState.FAILED,
                now=now,
                failure_cause=cause,
                last_error=last_error,
                message="Build failed.",
            )
            self._leave_running(failed)
            logger.warning("build %s failed with %s after %d retries", request_id, cause.value, failed.retry_count)
            return failed.state

    def acknowledge_cancel(self, request_id: str, worker_id: str) -> BuildState:
        return self.fail(request_id, worker_id, FailureCause.CANCELLED)

    # --- tenant actions ---

    def cancel(self, request_id: str, tenant_id: str | None = None) -> BuildState:
        """Cancel a queued or running build. Terminal builds are left untouched.

        When ``tenant_id`` is given, a build owned by another tenant is
        reported as unknown.
        """
        with self._lock:
            request = self._require(request_id)
            if tenant_id is not None and request.tenant_id != tenant_id:
                raise BuildNotFound(request_id)
            if request.terminal:
                return request.state

            if request.state is BuildState.QUEUED:
                cancelled = self._transition(
                    request,
                    BuildState.CANCELLED,
                    cancel_requested=True,
                    failure_cause=FailureCause.CANCELLED,
                    last_error="cancelled by tenant",
                    message="Cancelled",
                )
                self._queue.remove(request_id)
                quota = self._quota(request.tenant_id)
                quota.queued = max(0, quota.queued - 1)
                logger.info("build %s cancelled while queued", request_id)
                return cancelled.state

            if request.state is BuildState.RUNNING and not request.cancel_requested:
                self._commit(request, cancel_requested=True, message="Cancelling...")
                event = self._cancel_events.get(request_id)
                if event is not None:
                    event.set()
                logger.info("cancellation requested for running build %s", request_id)
            return request.state

    # --- queries ---

    def get(self, request_id: str) -> BuildRequest:
        with self._lock:
            return self._require(request_id).snapshot()

    def status(self, request_id: str) -> StatusView:
        with self._lock:
            return StatusView.of(self._require(request_id))

    def list_requests(self, tenant_id: str | None = None) -> list[BuildRequest]:
        with self._lock:
            found = [
                r.snapshot() for r in self._requests.values() if tenant_id is None or r.tenant_id == tenant_id
            ]
        return sorted(found, key=lambda r: r.submitted_at)

    def quota(self, tenant_id: str) -> TenantQuota:
        with self._lock:
            q = self._quota(tenant_id)
            return TenantQuota(limit=q.limit, queued=q.queued, running=q.running)

    def wait(self, request_id: str, *, timeout: float | None = None) -> BuildRequest:
        """Block until the request is terminal or ``timeout`` elapses; return a snapshot."""
        deadline = time.monotonic() + timeout if timeout is not None else None
        with self._changed:
            while True:
                request = self._require(request_id)
                if request.terminal:
                    return request.snapshot()
                if deadline is None:
                    self._changed.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return request.snapshot()
                self._changed.wait(remaining)

    # --- lifecycle ---

    def recover(self) -> int:
        """Reload journaled requests; unfinished ones go back to the queue."""
        if self._records is None:
            return 0
        restored = 0
        with self._lock:
            for request in self._records.load_all():
                if request.request_id in self._requests:
                    continue
                if request.terminal:
                    self._requests[request.request_id] = request
                    continue
                now = utcnow()
                if request.cancel_requested:
                    self._commit(
                        request,
                        state=BuildState.CANCELLED,
                        history=[*request.history, (BuildState.CANCELLED, now)],
                        failure_cause=FailureCause.CANCELLED,
                        finished_at=now,
                    )
                    continue
                history = request.history
                if request.state is not BuildState.QUEUED:
                    # The worker that held it is gone with the previous process.
                    history = [*history, (BuildState.QUEUED, now)]
                requeued = self._commit(
                    request,
                    state=BuildState.QUEUED,
                    history=history,
                    worker_id=None,
                    available_at=now,
                )
                self._queue.requeue(requeued, available_at=now, now=now)
                self._quota(requeued.tenant_id).queued += 1
                restored += 1
        if restored:
            logger.info("requeued %d unfinished builds from the journal", restored)
        return restored

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._changed.notify_all()

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed


__all__ = ["Claim", "Coordinator"]
