from __future__ import annotations

from apk_orchestrator.coordinator import Coordinator
from apk_orchestrator.errors import FailureCause, StorageError
from apk_orchestrator.models import BuildState
from apk_orchestrator.store import ArtifactStore
from apk_orchestrator.worker import BuildWorker
from apk_orchestrator.workspace import WorkspaceManager

from conftest import (
    APK_BYTES,
    BlockingToolchain,
    FailingToolchain,
    LyingToolchain,
    SucceedingToolchain,
    TimingOutToolchain,
    android_project,
    make_settings,
)

S, Q, R, C, F, X = (
    BuildState.SUBMITTED,
    BuildState.QUEUED,
    BuildState.RUNNING,
    BuildState.COMPLETED,
    BuildState.FAILED,
    BuildState.CANCELLED,
)


def test_debug_build_completes(coordinator, store, workspaces, start_pool) -> None:
    toolchain = SucceedingToolchain()
    start_pool(toolchain)
    source_key = store.put(android_project())

    request = coordinator.submit("acme", source_key, "debug")
    final = coordinator.wait(request.request_id, timeout=10)

    assert final.state is C
    assert final.states == [S, Q, R, C]
    assert final.retry_count == 0
    assert store.get(final.output_key) == APK_BYTES + b"debug"
    assert toolchain.seen_sources == [["app", "settings.gradle"]]
    assert workspaces.for_request(request.request_id) == []
    assert coordinator.status(request.request_id).progress == 100


def test_identical_outputs_share_one_key(coordinator, store, start_pool) -> None:
    start_pool(SucceedingToolchain())
    source_key = store.put(android_project())

    first = coordinator.submit("acme", source_key, "release")
    second = coordinator.submit("globex", source_key, "release")
    a = coordinator.wait(first.request_id, timeout=10)
    b = coordinator.wait(second.request_id, timeout=10)

    assert a.state is C and b.state is C
    assert a.output_key == b.output_key


def test_corrupt_archive_fails_without_retry(coordinator, store, workspaces, start_pool) -> None:
    toolchain = SucceedingToolchain()
    start_pool(toolchain)
    source_key = store.put(b"this is not a zip or a tarball")

    request = coordinator.submit("acme", source_key, "debug")
    final = coordinator.wait(request.request_id, timeout=10)

    assert final.state is F
    assert final.failure_cause is FailureCause.CORRUPT_ARCHIVE
    assert final.retry_count == 0
    assert final.states == [S, Q, R, F]
    assert toolchain.calls == []
    assert workspaces.for_request(request.request_id) == []


def test_timeouts_are_retried_then_fail(coordinator, store, workspaces, start_pool) -> None:
    toolchain = TimingOutToolchain()
    start_pool(toolchain)
    source_key = store.put(android_project())

    request = coordinator.submit("acme", source_key, "release")
    final = coordinator.wait(request.request_id, timeout=10)

    assert final.state is F
    assert final.failure_cause is FailureCause.TIMEOUT
    assert final.retry_count == 2
    assert toolchain.calls == 3
    assert final.states == [S, Q, R, Q, R, Q, R, F]
    assert "still compiling" in final.last_error
    assert workspaces.for_request(request.request_id) == []


def test_toolchain_failure_carries_diagnostics(coordinator, store, start_pool) -> None:
    start_pool(FailingToolchain())
    source_key = store.put(android_project())

    request = coordinator.submit("acme", source_key, "debug")
    final = coordinator.wait(request.request_id, timeout=10)

    assert final.state is F
    assert final.failure_cause is FailureCause.TOOLCHAIN_FAILURE
    assert "BUILD FAILED" in coordinator.status(request.request_id).error_summary


def test_success_without_output_is_a_failure(coordinator, store, start_pool) -> None:
    start_pool(LyingToolchain())
    source_key = store.put(android_project())

    request = coordinator.submit("acme", source_key, "debug")
    final = coordinator.wait(request.request_id, timeout=10)

    assert final.state is F
    assert final.failure_cause is FailureCause.TOOLCHAIN_FAILURE
    assert final.output_key is None
    assert "produced no package" in final.last_error


def test_cancel_while_running(coordinator, store, workspaces, start_pool) -> None:
    toolchain = BlockingToolchain()
    start_pool(toolchain)
    source_key = store.put(android_project())
    request = coordinator.submit("acme", source_key, "debug")

    assert toolchain.entered.wait(10)
    assert coordinator.get(request.request_id).state is R
    assert toolchain.workspaces[0].exists()

    coordinator.cancel(request.request_id)
    final = coordinator.wait(request.request_id, timeout=10)

    assert final.state is X
    assert final.states == [S, Q, R, X]
    assert final.retry_count == 0
    assert not toolchain.workspaces[0].exists()


def test_missing_source_is_a_storage_failure(coordinator, store, start_pool) -> None:
    start_pool(SucceedingToolchain())

    request = coordinator.submit("acme", "0" * 64, "debug")
    final = coordinator.wait(request.request_id, timeout=10)

    assert final.state is F
    assert final.failure_cause is FailureCause.STORAGE_ERROR


def test_transient_storage_errors_are_retried_in_place(tmp_path) -> None:
    settings = make_settings(tmp_path, storage_retries=2)
    store = ArtifactStore(settings.artifacts_dir)
    source_key = store.put(android_project())
    calls = {"n": 0}
    real_get = store.get

    def flaky_get(key: str) -> bytes:
        calls["n"] += 1
        if calls["n"] < 3:
            raise StorageError("blob store unavailable")
        return real_get(key)

    store.get = flaky_get  # type: ignore[method-assign]
    coordinator = Coordinator(settings)
    worker = BuildWorker(
        worker_id="w1",
        coordinator=coordinator,
        store=store,
        workspaces=WorkspaceManager(settings.workspaces_dir),
        toolchain=SucceedingToolchain(),
        settings=settings,
    )
    request = coordinator.submit("acme", source_key, "debug")

    outcome = worker.process(coordinator.claim("w1", timeout=1))

    assert outcome.output_key is not None
    assert calls["n"] == 3
    final = coordinator.get(request.request_id)
    assert final.state is C
    assert final.retry_count == 0


def test_worker_survives_unexpected_errors(coordinator, store, workspaces, start_pool) -> None:
    class Exploding:
        def __init__(self) -> None:
            self.calls = 0

        def build(self, workspace, variant, *, timeout_seconds, cancel_event, on_progress=None):
            self.calls += 1
            raise RuntimeError("toolchain adapter bug")

    toolchain = Exploding()
    start_pool(toolchain)
    source_key = store.put(android_project())

    request = coordinator.submit("acme", source_key, "debug")
    final = coordinator.wait(request.request_id, timeout=10)
    follow_up = coordinator.submit("acme", source_key, "debug")
    second = coordinator.wait(follow_up.request_id, timeout=10)

    assert final.state is F
    assert final.failure_cause is FailureCause.WORKER_CRASH
    assert final.retry_count == 2
    assert "RuntimeError" in final.last_error
    # The pool kept claiming work after the crashes.
    assert second.state is F
    assert toolchain.calls == 6


def test_many_builds_each_finish_once(coordinator, store, start_pool, tmp_path) -> None:
    toolchain = SucceedingToolchain()
    start_pool(toolchain)
    source_key = store.put(android_project())
    ids = []
    for i in range(12):
        ids.append(coordinator.submit(f"tenant{i % 3}", source_key, "debug").request_id)

    finals = [coordinator.wait(rid, timeout=20) for rid in ids]

    assert all(f.state is C for f in finals)
    assert all(f.states.count(C) == 1 for f in finals)
    assert len(toolchain.calls) == 12
    assert len({root for root, _ in toolchain.calls}) == 12


def test_pool_stops(coordinator, store, start_pool) -> None:
    pool = start_pool(SucceedingToolchain())
    assert pool.running

    pool.stop(timeout=5)

    assert not pool.running
