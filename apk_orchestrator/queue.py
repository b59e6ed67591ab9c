"""Bounded build queue with per-tenant admission control.

Design goals:
- FIFO within a tenant, round-robin across tenants so no tenant starves.
- Atomic claims: an entry is handed to exactly one caller.
- Admission is checked against the tenant's quota snapshot supplied by the
  coordinator, which owns the counters.
"""

from __future__ import annotations

import itertools
import threading
from collections import OrderedDict, deque
from datetime import datetime
from typing import Iterable

from .errors import RejectedAdmission
from .models import BuildRequest, QueueEntry, TenantQuota, utcnow


class BuildQueue:
    def __init__(self, *, capacity: int) -> None:
        self._capacity = int(capacity)
        self._lock = threading.Lock()
        self._tenants: OrderedDict[str, deque[QueueEntry]] = OrderedDict()
        self._seq = itertools.count(1)
        self._size = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return self._size

    def __contains__(self, request_id: object) -> bool:
        with self._lock:
            return any(e.request_id == request_id for q in self._tenants.values() for e in q)

    def enqueue(self, request: BuildRequest, quota: TenantQuota, *, now: datetime | None = None) -> QueueEntry:
        """Admit a new request or raise :class:`RejectedAdmission`."""
        with self._lock:
            if quota.exhausted:
                raise RejectedAdmission(
                    request.tenant_id,
                    f"quota of {quota.limit} active builds reached ({quota.running} running, {quota.queued} queued)",
                )
            if self._size >= self._capacity:
                raise RejectedAdmission(request.tenant_id, f"queue is full ({self._capacity} entries)")
            return self._push(request, now or utcnow(), None)

    def requeue(self, request: BuildRequest, *, available_at: datetime, now: datetime | None = None) -> QueueEntry:
        """Put a retried request back without re-running admission."""
        with self._lock:
            return self._push(request, now or utcnow(), available_at)

    def _push(self, request: BuildRequest, now: datetime, available_at: datetime | None) -> QueueEntry:
        entry = QueueEntry(
            request_id=request.request_id,
            tenant_id=request.tenant_id,
            seq=next(self._seq),
            enqueued_at=now,
            available_at=available_at or now,
            requires=frozenset({request.variant}),
        )
        self._tenants.setdefault(request.tenant_id, deque()).append(entry)
        self._size += 1
        return entry

    def claim_next(
        self,
        capabilities: Iterable[str] | None = None,
        *,
        now: datetime | None = None,
    ) -> QueueEntry | None:
        caps = frozenset(capabilities) if capabilities is not None else None
        now = now or utcnow()
        with self._lock:
            for tenant_id in list(self._tenants):
                entries = self._tenants[tenant_id]
                picked = next(
                    (e for e in entries if e.available_at <= now and (caps is None or e.requires <= caps)),
                    None,
                )
                if picked is None:
                    continue
                entries.remove(picked)
                self._size -= 1
                # Served tenant goes to the back of the rotation.
                if entries:
                    self._tenants.move_to_end(tenant_id)
                else:
                    del self._tenants[tenant_id]
                return picked
        return None

    def remove(self, request_id: str) -> QueueEntry | None:
        with self._lock:
            for tenant_id, entries in self._tenants.items():
                for entry in entries:
                    if entry.request_id == request_id:
                        entries.remove(entry)
                        self._size -= 1
                        if not entries:
                            del self._tenants[tenant_id]
                        return entry
        return None

    def next_available_at(self) -> datetime | None:
        with self._lock:
            times = [e.available_at for q in self._tenants.values() for e in q]
        return min(times) if times else None


__all__ = ["BuildQueue"]
