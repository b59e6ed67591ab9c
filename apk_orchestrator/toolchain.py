"""Toolchain adapters: the external, untrusted step that turns sources into an APK."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from .config import Settings
from .subprocess_runner import SubprocessRunner
from .workspace import Workspace

logger = logging.getLogger("apk_orchestrator.toolchain")

ProgressCallback = Callable[[int, str], None]

# Gradle task markers and the share of the build they roughly represent.
GRADLE_TASKS = [
    (r"preBuild", 5),
    (r"preReleaseBuild", 8),
    (r"preDebugBuild", 8),
    (r"compileReleaseAidl", 10),
    (r"compileDebugAidl", 10),
    (r"generateReleaseBuildConfig", 15),
    (r"generateDebugBuildConfig", 15),
    (r"generateReleaseResources", 20),
    (r"generateDebugResources", 20),
    (r"mergeReleaseResources", 25),
    (r"mergeDebugResources", 25),
    (r"processReleaseResources", 30),
    (r"processDebugResources", 30),
    (r"compileReleaseJavaWithJavac", 45),
    (r"compileDebugJavaWithJavac", 45),
    (r"compileReleaseSources", 50),
    (r"compileDebugSources", 50),
    (r"dexBuilderRelease", 60),
    (r"dexBuilderDebug", 60),
    (r"mergeDexRelease", 70),
    (r"mergeDexDebug", 70),
    (r"mergeReleaseNativeLibs", 75),
    (r"mergeDebugNativeLibs", 75),
    (r"packageRelease", 85),
    (r"packageDebug", 85),
    (r"assembleRelease", 90),
    (r"assembleDebug", 90),
    (r"BUILD SUCCESSFUL", 95),
]


@dataclass(frozen=True, slots=True)
class ToolchainResult:
    exit_code: int
    output_path: Path | None
    diagnostics: str
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


class ToolchainAdapter(Protocol):
    def build(
        self,
        workspace: Workspace,
        variant: str,
        *,
        timeout_seconds: float,
        cancel_event: threading.Event,
        on_progress: ProgressCallback | None = None,
    ) -> ToolchainResult: ...


class GradleProgress:
    """Turns Gradle console lines into (progress, message) updates."""

    def __init__(self, on_progress: ProgressCallback | None, *, base_progress: int = 20) -> None:
        self._on_progress = on_progress
        self._base = base_progress
        self.last_progress = base_progress

    def feed(self, line: str) -> None:
        if self._on_progress is None:
            return
        line_stripped = line.strip()
        for pattern, progress_value in GRADLE_TASKS:
            if pattern in line_stripped:
                # Scale progress: base to 95
                scaled = self._base + int((progress_value / 100) * (95 - self._base))
                if scaled > self.last_progress:
                    self.last_progress = scaled
                    if ">" in line_stripped:
                        task = line_stripped.split(">")[-1].strip()[:50]
                    else:
                        task = pattern
                    self._on_progress(scaled, f"Building: {task}")
                return

        if "Downloading" in line_stripped or "Download" in line_stripped:
            self._on_progress(self.last_progress, "Downloading dependencies...")
        elif "Compiling" in line_stripped:
            self._on_progress(self.last_progress, "Compiling source code...")


class GradleToolchain:
    """Runs the configured build command (``make.sh apk`` by default) in a workspace.

    The command sees the project through ``ANDROID_PROJECT_ROOT`` and must
    leave its package at ``OUTPUT_DIR/<output_name>``.
    """

    def __init__(
        self,
        command: list[str],
        *,
        output_name: str = "app-{variant}.apk",
        cache_dir: Path | None = None,
        java_home: Path | None = None,
        android_home: Path | None = None,
        gradle_home: Path | None = None,
        runner: SubprocessRunner | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("toolchain command is empty")
        self._command = list(command)
        self._output_name = output_name
        self._cache_dir = cache_dir
        self._java_home = java_home
        self._android_home = android_home
        self._gradle_home = gradle_home
        self._runner = runner or SubprocessRunner()
        self._extra_env = dict(extra_env or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> "GradleToolchain":
        return cls(
            settings.toolchain_command,
            output_name=settings.toolchain_output_name,
            cache_dir=settings.cache_dir,
            java_home=settings.java_home,
            android_home=settings.android_home,
            gradle_home=settings.gradle_home,
            runner=SubprocessRunner(
                kill_grace_seconds=settings.kill_grace_seconds,
                output_max_bytes=settings.diagnostics_max_bytes,
            ),
        )

    def output_path(self, workspace: Workspace, variant: str) -> Path:
        return workspace.output_dir / self._output_name.replace("{variant}", variant)

    def environment(self, workspace: Workspace, variant: str) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self._extra_env)
        env["ANDROID_PROJECT_ROOT"] = str(workspace.source_dir)
        env["OUTPUT_DIR"] = str(workspace.output_dir)
        env["BUILD_VARIANT"] = variant
        if self._cache_dir is not None:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            env["CACHE_DIR"] = str(self._cache_dir)
            env["GRADLE_USER_HOME"] = str(self._cache_dir / "gradle")

        path_prefix: list[str] = []
        if self._java_home is not None:
            env["JAVA_HOME"] = str(self._java_home)
            path_prefix.append(str(self._java_home / "bin"))
        if self._gradle_home is not None:
            env["GRADLE_HOME"] = str(self._gradle_home)
            path_prefix.append(str(self._gradle_home / "bin"))
        if self._android_home is not None:
            env["ANDROID_HOME"] = str(self._android_home)
            env["ANDROID_SDK_ROOT"] = str(self._android_home)
        if path_prefix:
            env["PATH"] = os.pathsep.join([*path_prefix, env.get("PATH", "")])
        return env

    def build(
        self,
        workspace: Workspace,
        variant: str,
        *,
        timeout_seconds: float,
        cancel_event: threading.Event,
        on_progress: ProgressCallback | None = None,
    ) -> ToolchainResult:
        cmd = [part.replace("{variant}", variant) for part in self._command]
        progress = GradleProgress(on_progress)
        result = self._runner.run(
            cmd,
            cwd=workspace.source_dir,
            env=self.environment(workspace, variant),
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
            on_line=progress.feed,
        )
        return ToolchainResult(
            exit_code=result.exit_code,
            output_path=self.output_path(workspace, variant) if result.exit_code == 0 else None,
            diagnostics=result.output,
            timed_out=result.timed_out,
            cancelled=result.cancelled,
        )


__all__ = [
    "GRADLE_TASKS",
    "GradleProgress",
    "GradleToolchain",
    "ProgressCallback",
    "ToolchainAdapter",
    "ToolchainResult",
]
