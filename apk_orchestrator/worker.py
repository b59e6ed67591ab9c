"""Build workers and the thread pool that runs them."""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass
from typing import Callable, TypeVar
from uuid import uuid4

from .config import Settings
from .coordinator import Claim, Coordinator
from .errors import (
    ArtifactNotFound,
    BuildCancelled,
    BuildTimeout,
    FailureCause,
    OrchestratorError,
    StorageError,
    ToolchainFailure,
)
from .store import ArtifactStore
from .toolchain import ToolchainAdapter
from .workspace import UnpackLimits, Workspace, WorkspaceManager

logger = logging.getLogger("apk_orchestrator.worker")

T = TypeVar("T")


def default_worker_id(index: int = 0) -> str:
    host = socket.gethostname() or "worker"
    return f"{host}-{uuid4().hex[:8]}-{index}"


@dataclass(frozen=True, slots=True)
class Outcome:
    output_key: str | None = None
    cause: FailureCause | None = None
    diagnostics: str = ""


class BuildWorker:
    """Processes one claimed build at a time, start to finish."""

    def __init__(
        self,
        *,
        worker_id: str,
        coordinator: Coordinator,
        store: ArtifactStore,
        workspaces: WorkspaceManager,
        toolchain: ToolchainAdapter,
        settings: Settings,
    ) -> None:
        self.worker_id = worker_id
        self._coordinator = coordinator
        self._store = store
        self._workspaces = workspaces
        self._toolchain = toolchain
        self._settings = settings
        self._limits = UnpackLimits(
            max_members=settings.max_archive_members,
            max_bytes=settings.max_unpacked_bytes,
        )
        self._capabilities = (
            frozenset(settings.worker_capabilities) if settings.worker_capabilities is not None else None
        )

    def run(self, stop_event: threading.Event) -> None:
        logger.info("worker %s started", self.worker_id)
        while not stop_event.is_set() and not self._coordinator.closed:
            claim = self._coordinator.claim(
                self.worker_id,
                self._capabilities,
                timeout=float(self._settings.poll_interval),
            )
            if claim is None:
                continue
            try:
                self.process(claim)
            except Exception:
                logger.exception("work item %s crashed", claim.request_id)
        logger.info("worker %s stopped", self.worker_id)

    def process(self, claim: Claim) -> Outcome:
        request = claim.request
        logger.info(
            "building %s tenant=%s variant=%s attempt=%d",
            request.request_id,
            request.tenant_id,
            request.variant,
            claim.attempt,
        )
        workspace: Workspace | None = None
        try:
            workspace = self._workspaces.create(request.request_id, claim.attempt)
            outcome = self._build(claim, workspace)
        except BuildCancelled:
            outcome = Outcome(cause=FailureCause.CANCELLED)
        except ToolchainFailure as exc:
            outcome = Outcome(cause=exc.cause, diagnostics=_diagnostics(exc))
        except OrchestratorError as exc:
            outcome = Outcome(cause=exc.cause or FailureCause.WORKER_CRASH, diagnostics=str(exc))
        except Exception as exc:
            logger.exception("unexpected error while building %s", request.request_id)
            outcome = Outcome(cause=FailureCause.WORKER_CRASH, diagnostics=f"{type(exc).__name__}: {exc}")
        finally:
            if workspace is not None:
                self._destroy(workspace)

        self._report(claim, outcome)
        return outcome

    def _build(self, claim: Claim, workspace: Workspace) -> Outcome:
        request = claim.request
        cancel = claim.cancel_event

        self._progress(claim, 5, "Fetching project...")
        source = self._with_storage_retries(lambda: self._store.get(request.source_key), cancel)
        _check_cancel(cancel)

        self._progress(claim, 10, "Unpacking project...")
        files = workspace.unpack(source, self._limits)
        logger.debug("unpacked %d files for %s", files, request.request_id)
        _check_cancel(cancel)

        self._progress(claim, 20, "Building APK...")
        result = self._toolchain.build(
            workspace,
            request.variant,
            timeout_seconds=float(self._settings.build_timeout_seconds),
            cancel_event=cancel,
            on_progress=lambda progress, message: self._progress(claim, progress, message),
        )
        if result.cancelled or cancel.is_set():
            raise BuildCancelled(request.request_id)
        if result.timed_out:
            raise BuildTimeout(
                f"toolchain exceeded {self._settings.build_timeout_seconds:g}s",
                exit_code=result.exit_code,
                diagnostics=result.diagnostics,
            )
        if result.exit_code != 0:
            raise ToolchainFailure(
                f"toolchain exited with code {result.exit_code}",
                exit_code=result.exit_code,
                diagnostics=result.diagnostics,
            )

        self._progress(claim, 96, "Verifying APK...")
        output = result.output_path
        if output is None or not output.is_file():
            raise ToolchainFailure(
                f"toolchain reported success but produced no package at {output}",
                exit_code=result.exit_code,
                diagnostics=result.diagnostics,
            )

        self._progress(claim, 98, "Finalizing...")
        output_key = self._with_storage_retries(lambda: self._store.put_file(output), cancel)
        return Outcome(output_key=output_key)

    def _with_storage_retries(self, fn: Callable[[], T], cancel: threading.Event) -> T:
        attempts = int(self._settings.storage_retries) + 1
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except ArtifactNotFound:
                raise
            except StorageError as exc:
                if attempt >= attempts:
                    raise
                delay = float(self._settings.storage_retry_delay_seconds) * (2 ** (attempt - 1))
                logger.warning("storage error (attempt %d/%d), retrying in %.2fs: %s", attempt, attempts, delay, exc)
                if cancel.wait(delay):
                    raise BuildCancelled("cancelled during storage retry") from exc
        raise AssertionError("unreachable")

    def _progress(self, claim: Claim, progress: int, message: str) -> None:
        self._coordinator.report_progress(claim.request_id, self.worker_id, progress, message)

    def _destroy(self, workspace: Workspace) -> None:
        try:
            self._workspaces.destroy(workspace)
        except OSError:
            logger.exception("failed to remove workspace %s", workspace.root)

    def _report(self, claim: Claim, outcome: Outcome) -> None:
        if outcome.output_key is not None:
            self._coordinator.complete(claim.request_id, self.worker_id, outcome.output_key)
        elif outcome.cause is FailureCause.CANCELLED:
            self._coordinator.acknowledge_cancel(claim.request_id, self.worker_id)
        else:
            cause = outcome.cause or FailureCause.WORKER_CRASH
            self._coordinator.fail(claim.request_id, self.worker_id, cause, outcome.diagnostics)


def _check_cancel(cancel: threading.Event) -> None:
    if cancel.is_set():
        raise BuildCancelled("cancelled")


def _diagnostics(exc: ToolchainFailure) -> str:
    if exc.diagnostics:
        return f"{exc}\n{exc.diagnostics}"
    return str(exc)


class WorkerPool:
    """A fixed set of worker threads sharing one coordinator."""

    def __init__(self, workers: list[BuildWorker], *, workspaces: WorkspaceManager | None = None) -> None:
        self._workers = workers
        self._workspaces = workspaces
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        coordinator: Coordinator,
        store: ArtifactStore,
        workspaces: WorkspaceManager,
        toolchain: ToolchainAdapter,
    ) -> "WorkerPool":
        workers = [
            BuildWorker(
                worker_id=default_worker_id(index),
                coordinator=coordinator,
                store=store,
                workspaces=workspaces,
                toolchain=toolchain,
                settings=settings,
            )
            for index in range(int(settings.workers))
        ]
        return cls(workers, workspaces=workspaces)

    @property
    def size(self) -> int:
        return len(self._workers)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self._threads:
            return
        if self._workspaces is not None:
            # Nothing is running yet, so every workspace on disk is orphaned.
            self._workspaces.sweep()
        self._stop.clear()
        for worker in self._workers:
            thread = threading.Thread(target=worker.run, args=(self._stop,), name=f"build-{worker.worker_id}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("worker pool started with %d workers", len(self._threads))

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning("workers still busy at shutdown: %s", ", ".join(alive))
        self._threads = [t for t in self._threads if t.is_alive()]


__all__ = ["BuildWorker", "Outcome", "WorkerPool", "default_worker_id"]
