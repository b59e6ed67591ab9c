from __future__ import annotations

import errno
import io
import shutil
import tarfile
import zipfile
from pathlib import Path

import pytest

from apk_orchestrator.errors import CorruptArchive
from apk_orchestrator.workspace import UnpackLimits, WorkspaceManager

from conftest import android_project, make_zip

LIMITS = UnpackLimits(max_members=100, max_bytes=1024 * 1024)


def make_tar(files: dict[str, bytes], mode: str = "w:gz") -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode=mode) as tf:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tf.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def test_create_gives_fresh_isolated_directories(workspaces: WorkspaceManager) -> None:
    first = workspaces.create("req1", 1)
    (first.source_dir / "leftover").write_text("x")
    again = workspaces.create("req1", 1)
    other = workspaces.create("req1", 2)

    assert again.source_dir.is_dir() and again.output_dir.is_dir()
    assert not (again.source_dir / "leftover").exists()
    assert other.root != again.root
    assert workspaces.for_request("req1") == sorted([again.root, other.root])


def test_unpack_zip_hoists_single_root(workspaces: WorkspaceManager) -> None:
    ws = workspaces.create("req", 1)

    count = ws.unpack(android_project(), LIMITS)

    assert count == 3
    assert (ws.source_dir / "settings.gradle").is_file()
    assert (ws.source_dir / "app" / "src" / "main" / "AndroidManifest.xml").is_file()


def test_unpack_tar(workspaces: WorkspaceManager) -> None:
    ws = workspaces.create("req", 1)
    archive = make_tar({"settings.gradle": b"include ':app'\n", "app/build.gradle": b"android {}\n"})

    assert ws.unpack(archive, LIMITS) == 2
    assert (ws.source_dir / "app" / "build.gradle").read_bytes() == b"android {}\n"


def test_executable_bit_is_kept(workspaces: WorkspaceManager) -> None:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        info = zipfile.ZipInfo("gradlew")
        info.external_attr = 0o100755 << 16
        zf.writestr(info, "#!/bin/sh\n")
        zf.writestr("settings.gradle", "")
    ws = workspaces.create("req", 1)

    ws.unpack(buf.getvalue(), LIMITS)

    assert (ws.source_dir / "gradlew").stat().st_mode & 0o100


@pytest.mark.parametrize(
    "name",
    ["../escape.txt", "app/../../escape.txt", "/etc/evil", "..\\windows.txt"],
)
def test_zip_slip_is_rejected(workspaces: WorkspaceManager, tmp_path: Path, name: str) -> None:
    ws = workspaces.create("req", 1)

    with pytest.raises(CorruptArchive):
        ws.unpack(make_zip({"ok.txt": "fine", name: "pwned"}), LIMITS)

    assert not (workspaces.root / "escape.txt").exists()
    assert not (ws.root / "escape.txt").exists()


def test_tar_links_are_rejected(workspaces: WorkspaceManager) -> None:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tf:
        link = tarfile.TarInfo("app/link")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/passwd"
        tf.addfile(link)
    ws = workspaces.create("req", 1)

    with pytest.raises(CorruptArchive, match="unsupported member"):
        ws.unpack(buf.getvalue(), LIMITS)


def test_zip_symlinks_are_rejected(workspaces: WorkspaceManager) -> None:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        info = zipfile.ZipInfo("app/link")
        info.external_attr = 0o120777 << 16
        zf.writestr(info, "/etc/passwd")
    ws = workspaces.create("req", 1)

    with pytest.raises(CorruptArchive, match="link"):
        ws.unpack(buf.getvalue(), LIMITS)


@pytest.mark.parametrize("payload", [b"", b"definitely not an archive", b"PK\x03\x04garbage" * 10])
def test_garbage_is_corrupt(workspaces: WorkspaceManager, payload: bytes) -> None:
    ws = workspaces.create("req", 1)

    with pytest.raises(CorruptArchive):
        ws.unpack(payload, LIMITS)


def test_truncated_zip_is_corrupt(workspaces: WorkspaceManager) -> None:
    archive = android_project()
    ws = workspaces.create("req", 1)

    with pytest.raises(CorruptArchive):
        ws.unpack(archive[: len(archive) // 2], LIMITS)


def test_empty_archive_is_corrupt(workspaces: WorkspaceManager) -> None:
    ws = workspaces.create("req", 1)

    with pytest.raises(CorruptArchive, match="no files"):
        ws.unpack(make_zip({}), LIMITS)


def test_member_and_size_limits(workspaces: WorkspaceManager) -> None:
    ws = workspaces.create("req", 1)
    many = make_zip({f"f{i}.txt": "x" for i in range(20)})
    big = make_zip({"big.bin": b"\0" * 4096})

    with pytest.raises(CorruptArchive, match="too many members"):
        ws.unpack(many, UnpackLimits(max_members=10, max_bytes=1 << 20))
    ws = workspaces.create("req", 2)
    with pytest.raises(CorruptArchive, match="unpacked size"):
        ws.unpack(big, UnpackLimits(max_members=10, max_bytes=1024))


def test_destroy_and_sweep(workspaces: WorkspaceManager) -> None:
    ws = workspaces.create("gone", 1)
    ws.unpack(android_project(), LIMITS)
    (ws.source_dir / "settings.gradle").chmod(0o400)
    keep = workspaces.create("alive", 1)
    orphan = workspaces.create("orphan", 3)

    workspaces.destroy(ws)
    removed = workspaces.sweep(keep={"alive"})

    assert not ws.exists()
    assert removed == 1
    assert keep.exists()
    assert not orphan.exists()


@pytest.mark.parametrize("kind", ["zip", "tar"])
def test_host_io_errors_are_not_reported_as_corrupt(workspaces: WorkspaceManager, monkeypatch, kind: str) -> None:
    ws = workspaces.create("req", 1)
    archive = android_project() if kind == "zip" else make_tar({"settings.gradle": b"include ':app'\n"})

    def disk_full(src, dst, length=0):
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(shutil, "copyfileobj", disk_full)

    with pytest.raises(OSError) as excinfo:
        ws.unpack(archive, LIMITS)
    assert not isinstance(excinfo.value, CorruptArchive)
    assert excinfo.value.errno == errno.ENOSPC
