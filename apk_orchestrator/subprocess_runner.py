"""Run untrusted toolchain subprocesses with a deadline and a cancel token.

The child runs in its own session so the whole process group (Gradle daemons
included) can be signalled. Output is merged, streamed line by line to an
optional callback, and only a bounded tail is kept in memory.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

logger = logging.getLogger("apk_orchestrator.subprocess")

TIMEOUT_EXIT_CODE = 124


class OutputTail:
    """Keeps the most recent output lines within a byte budget."""

    def __init__(self, max_bytes: int) -> None:
        self._max_bytes = max(1, int(max_bytes))
        self._lines: deque[str] = deque()
        self._size = 0
        self.dropped = 0

    def append(self, line: str) -> None:
        size = len(line.encode("utf-8", errors="replace"))
        if size > self._max_bytes:
            line = line[-self._max_bytes :]
            size = len(line.encode("utf-8", errors="replace"))
        self._lines.append(line)
        self._size += size
        while self._size > self._max_bytes and len(self._lines) > 1:
            old = self._lines.popleft()
            self._size -= len(old.encode("utf-8", errors="replace"))
            self.dropped += 1

    def text(self) -> str:
        body = "".join(self._lines)
        if self.dropped:
            return f"...[{self.dropped} earlier lines dropped]\n{body}"
        return body


@dataclass(frozen=True, slots=True)
class SubprocessResult:
    exit_code: int
    timed_out: bool
    cancelled: bool
    duration_seconds: float
    output: str


class SubprocessRunner:
    def __init__(self, *, kill_grace_seconds: float = 5.0, output_max_bytes: int = 8 * 1024) -> None:
        self._kill_grace_seconds = float(kill_grace_seconds)
        self._output_max_bytes = int(output_max_bytes)

    def run(
        self,
        cmd: list[str],
        *,
        cwd: Path | str | None,
        env: dict[str, str] | None,
        timeout_seconds: float | None,
        cancel_event: threading.Event | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> SubprocessResult:
        start = time.monotonic()
        deadline = (start + float(timeout_seconds)) if timeout_seconds is not None else None
        tail = OutputTail(self._output_max_bytes)

        logger.debug("starting %s in %s", cmd, cwd)
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
            cwd=str(cwd) if cwd is not None else None,
            env=env,
            start_new_session=(os.name != "nt"),
        )

        errors: list[BaseException] = []

        def drain() -> None:
            try:
                assert proc.stdout is not None
                for line in iter(proc.stdout.readline, ""):
                    tail.append(line)
                    if on_line is not None:
                        on_line(line)
            except BaseException as exc:
                errors.append(exc)
            finally:
                try:
                    proc.stdout.close()  # type: ignore[union-attr]
                except OSError:
                    pass

        reader = threading.Thread(target=drain, name=f"drain-{proc.pid}", daemon=True)
        reader.start()

        timed_out = False
        cancelled = False
        while True:
            if proc.poll() is not None:
                break
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                self._terminate(proc)
                break
            if deadline is not None and time.monotonic() >= deadline:
                timed_out = True
                self._terminate(proc)
                break
            if cancel_event is not None:
                cancel_event.wait(0.05)
            else:
                time.sleep(0.05)

        # Reap the process.
        try:
            proc.wait(timeout=self._kill_grace_seconds + 2)
        except subprocess.TimeoutExpired:
            self._kill(proc)
            proc.wait()

        reader.join(timeout=2)
        if errors:
            raise errors[0]

        duration = max(0.0, time.monotonic() - start)
        exit_code = int(proc.returncode or 0)
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
        elif cancelled and exit_code == 0:
            exit_code = -int(signal.SIGTERM)

        logger.debug(
            "finished %s exit_code=%s timed_out=%s cancelled=%s duration=%.2fs",
            cmd[0],
            exit_code,
            timed_out,
            cancelled,
            duration,
        )
        return SubprocessResult(
            exit_code=exit_code,
            timed_out=timed_out,
            cancelled=cancelled,
            duration_seconds=duration,
            output=tail.text(),
        )

    def _terminate(self, proc: subprocess.Popen) -> None:
        try:
            if os.name != "nt":
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
        except ProcessLookupError:
            return

        try:
            proc.wait(timeout=self._kill_grace_seconds)
            return
        except subprocess.TimeoutExpired:
            logger.warning("process %s ignored SIGTERM for %.1fs, killing", proc.pid, self._kill_grace_seconds)

        self._kill(proc)

    def _kill(self, proc: subprocess.Popen) -> None:
        try:
            if os.name != "nt":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except ProcessLookupError:
            pass


__all__ = ["OutputTail", "SubprocessResult", "SubprocessRunner", "TIMEOUT_EXIT_CODE"]
