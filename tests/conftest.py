from __future__ import annotations

import io
import threading
import zipfile
from collections.abc import Iterator
from pathlib import Path

import pytest

from apk_orchestrator.config import Settings
from apk_orchestrator.coordinator import Coordinator
from apk_orchestrator.queue import BuildQueue
from apk_orchestrator.records import RecordStore
from apk_orchestrator.store import ArtifactStore
from apk_orchestrator.toolchain import ToolchainResult
from apk_orchestrator.worker import WorkerPool
from apk_orchestrator.workspace import Workspace, WorkspaceManager

APK_BYTES = b"PK\x03\x04fake-apk-payload"


def make_zip(files: dict[str, bytes | str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def android_project() -> bytes:
    return make_zip(
        {
            "myapp/settings.gradle": "include ':app'\n",
            "myapp/app/build.gradle": "apply plugin: 'com.android.application'\n",
            "myapp/app/src/main/AndroidManifest.xml": "<manifest/>\n",
        }
    )


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        data_dir=tmp_path / "data",
        workers=2,
        poll_interval=0.05,
        build_timeout_seconds=5,
        kill_grace_seconds=1,
        max_retries=2,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
        storage_retries=2,
        storage_retry_delay_seconds=0,
        tenant_quota=4,
        queue_capacity=64,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class SucceedingToolchain:
    """Writes a package where the gradle adapter would and reports success."""

    def __init__(self) -> None:
        self.calls: list[tuple[Path, str]] = []
        self.seen_sources: list[list[str]] = []

    def build(self, workspace: Workspace, variant: str, *, timeout_seconds, cancel_event, on_progress=None):
        self.calls.append((workspace.root, variant))
        self.seen_sources.append(sorted(p.name for p in workspace.source_dir.iterdir()))
        if on_progress is not None:
            on_progress(50, "Building: :app:assembleDebug")
        output = workspace.output_dir / f"app-{variant}.apk"
        output.write_bytes(APK_BYTES + variant.encode())
        return ToolchainResult(exit_code=0, output_path=output, diagnostics="BUILD SUCCESSFUL\n")


class TimingOutToolchain:
    def __init__(self) -> None:
        self.calls = 0

    def build(self, workspace, variant, *, timeout_seconds, cancel_event, on_progress=None):
        self.calls += 1
        return ToolchainResult(exit_code=124, output_path=None, diagnostics="still compiling...\n", timed_out=True)


class FailingToolchain:
    def build(self, workspace, variant, *, timeout_seconds, cancel_event, on_progress=None):
        return ToolchainResult(exit_code=1, output_path=None, diagnostics="error: cannot find symbol\nBUILD FAILED\n")


class LyingToolchain:
    """Exits 0 without producing the declared package."""

    def build(self, workspace, variant, *, timeout_seconds, cancel_event, on_progress=None):
        return ToolchainResult(exit_code=0, output_path=workspace.output_dir / "app-debug.apk", diagnostics="")


class BlockingToolchain:
    """Runs until cancelled, like a build that never ends on its own."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.workspaces: list[Path] = []

    def build(self, workspace, variant, *, timeout_seconds, cancel_event, on_progress=None):
        self.workspaces.append(workspace.root)
        self.entered.set()
        cancelled = cancel_event.wait(timeout_seconds)
        return ToolchainResult(
            exit_code=-15 if cancelled else 124,
            output_path=None,
            diagnostics="",
            timed_out=not cancelled,
            cancelled=cancelled,
        )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def store(settings: Settings) -> ArtifactStore:
    return ArtifactStore(settings.artifacts_dir)


@pytest.fixture
def workspaces(settings: Settings) -> WorkspaceManager:
    return WorkspaceManager(settings.workspaces_dir)


@pytest.fixture
def coordinator(settings: Settings) -> Iterator[Coordinator]:
    records = RecordStore.from_settings(settings)
    coord = Coordinator(
        settings,
        queue=BuildQueue(capacity=settings.queue_capacity),
        records=records,
    )
    yield coord
    coord.close()
    records.dispose()


@pytest.fixture
def start_pool(settings, coordinator, store, workspaces):
    pools: list[WorkerPool] = []

    def _start(toolchain, **kwargs) -> WorkerPool:
        pool = WorkerPool.from_settings(
            kwargs.get("settings", settings),
            coordinator=coordinator,
            store=store,
            workspaces=workspaces,
            toolchain=toolchain,
        )
        pool.start()
        pools.append(pool)
        return pool

    yield _start
    coordinator.close()
    for pool in pools:
        pool.stop(timeout=5)
