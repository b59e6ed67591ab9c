"""Per-build workspaces and untrusted archive unpacking.

Layout::

    <workspaces_root>/<request_id>-<attempt>/src   unpacked project
    <workspaces_root>/<request_id>-<attempt>/out   toolchain output
"""

from __future__ import annotations

import gzip
import io
import logging
import lzma
import shutil
import tarfile
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .errors import CorruptArchive

logger = logging.getLogger("apk_orchestrator.workspace")


def _safe_join(base: Path, *parts: str) -> Path:
    base_resolved = base.resolve()
    candidate = (base_resolved.joinpath(*parts)).resolve()
    try:
        candidate.relative_to(base_resolved)
    except ValueError as exc:
        raise CorruptArchive(f"unsafe path in archive: {'/'.join(parts)}") from exc
    return candidate


def _member_parts(name: str) -> tuple[str, ...]:
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts:
        raise CorruptArchive(f"unsafe path in archive: {name}")
    return tuple(p for p in path.parts if p not in ("", "."))


@dataclass(frozen=True, slots=True)
class UnpackLimits:
    max_members: int
    max_bytes: int


@dataclass(slots=True)
class Workspace:
    """An exclusively owned working directory for one build attempt."""

    root: Path

    @property
    def source_dir(self) -> Path:
        return self.root / "src"

    @property
    def output_dir(self) -> Path:
        return self.root / "out"

    def exists(self) -> bool:
        return self.root.exists()

    def unpack(self, archive: bytes, limits: UnpackLimits) -> int:
        """Unpack a zip or tar archive into ``source_dir``; returns the file count."""
        if zipfile.is_zipfile(io.BytesIO(archive)):
            count = self._unpack_zip(archive, limits)
        else:
            count = self._unpack_tar(archive, limits)
        if count == 0:
            raise CorruptArchive("archive contains no files")
        _hoist_single_root(self.source_dir)
        return count

    def _unpack_zip(self, archive: bytes, limits: UnpackLimits) -> int:
        try:
            with zipfile.ZipFile(io.BytesIO(archive), "r") as zf:
                infos = zf.infolist()
                if len(infos) > limits.max_members:
                    raise CorruptArchive(f"too many members: {len(infos)} > {limits.max_members}")
                total = 0
                count = 0
                for info in infos:
                    parts = _member_parts(info.filename)
                    if not parts:
                        continue
                    dest = _safe_join(self.source_dir, *parts)
                    if info.is_dir():
                        dest.mkdir(parents=True, exist_ok=True)
                        continue
                    # Symlinks are stored with S_IFLNK in the high bits of external_attr.
                    if (info.external_attr >> 16) & 0o170000 == 0o120000:
                        raise CorruptArchive(f"link members are not allowed: {info.filename}")
                    total += info.file_size
                    if total > limits.max_bytes:
                        raise CorruptArchive(f"unpacked size exceeds limit of {limits.max_bytes} bytes")
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info) as src, dest.open("wb") as out:
                        shutil.copyfileobj(src, out)
                    mode = (info.external_attr >> 16) & 0o777
                    if mode & 0o100:
                        dest.chmod(0o755)
                    count += 1
                return count
        except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError, NotImplementedError) as exc:
            raise CorruptArchive(f"invalid zip archive: {exc}") from exc

    def _unpack_tar(self, archive: bytes, limits: UnpackLimits) -> int:
        try:
            with tarfile.open(fileobj=io.BytesIO(archive), mode="r:*") as tf:
                total = 0
                count = 0
                for index, member in enumerate(tf):
                    if index >= limits.max_members:
                        raise CorruptArchive(f"too many members: more than {limits.max_members}")
                    parts = _member_parts(member.name)
                    if not parts:
                        continue
                    dest = _safe_join(self.source_dir, *parts)
                    if member.isdir():
                        dest.mkdir(parents=True, exist_ok=True)
                        continue
                    if not member.isfile():
                        raise CorruptArchive(f"unsupported member type: {member.name}")
                    total += member.size
                    if total > limits.max_bytes:
                        raise CorruptArchive(f"unpacked size exceeds limit of {limits.max_bytes} bytes")
                    src = tf.extractfile(member)
                    if src is None:
                        raise CorruptArchive(f"unreadable member: {member.name}")
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    with src, dest.open("wb") as out:
                        shutil.copyfileobj(src, out)
                    if member.mode & 0o100:
                        dest.chmod(0o755)
                    count += 1
                return count
        except (tarfile.TarError, gzip.BadGzipFile, lzma.LZMAError, zlib.error, EOFError) as exc:
            raise CorruptArchive(f"invalid archive: {exc}") from exc


def _hoist_single_root(source_dir: Path) -> None:
    """Archives made from a project folder wrap everything in one directory; unwrap it."""
    children = list(source_dir.iterdir())
    if len(children) != 1 or not children[0].is_dir():
        return
    wrapper = children[0]
    staging = source_dir.with_name(source_dir.name + ".hoist")
    wrapper.rename(staging)
    source_dir.rmdir()
    staging.rename(source_dir)


class WorkspaceManager:
    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def create(self, request_id: str, attempt: int) -> Workspace:
        root = self._root / f"{request_id}-{attempt}"
        if root.exists():
            # Left over from a crashed process; never share it.
            shutil.rmtree(root)
        workspace = Workspace(root=root)
        workspace.source_dir.mkdir(parents=True)
        workspace.output_dir.mkdir(parents=True)
        return workspace

    def destroy(self, workspace: Workspace) -> None:
        shutil.rmtree(workspace.root, ignore_errors=True)
        if workspace.root.exists():
            # Read-only files from the toolchain; retry once after making them writable.
            for path in workspace.root.rglob("*"):
                try:
                    path.chmod(0o700 if path.is_dir() else 0o600)
                except OSError:
                    continue
            shutil.rmtree(workspace.root)
        logger.debug("destroyed workspace %s", workspace.root)

    def for_request(self, request_id: str) -> list[Path]:
        return sorted(self._root.glob(f"{request_id}-*"))

    def sweep(self, keep: set[str] | None = None) -> int:
        """Remove workspaces not owned by an active build; returns the count removed."""
        keep = keep or set()
        removed = 0
        for path in self._root.iterdir():
            if not path.is_dir():
                continue
            request_id = path.name.rsplit("-", 1)[0]
            if request_id in keep:
                continue
            shutil.rmtree(path, ignore_errors=True)
            removed += 1
        if removed:
            logger.info("swept %d orphaned workspaces", removed)
        return removed


__all__ = ["UnpackLimits", "Workspace", "WorkspaceManager"]
