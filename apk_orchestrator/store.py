"""Content-addressed artifact store on the local filesystem.

Layout: ``<root>/<key[:2]>/<key>`` where ``key`` is the hex sha256 of the
payload. Blobs are written to a temp file in the target directory and moved
into place with ``os.replace`` so a partial write is never visible.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from hashlib import sha256
from pathlib import Path
from typing import Iterator

from .errors import ArtifactNotFound, ArtifactTooLarge, StorageError

logger = logging.getLogger("apk_orchestrator.store")

_DEFAULT_CHUNK_SIZE = 1024 * 1024
_KEY_RE = re.compile(r"^[0-9a-f]{64}$")


def content_key(data: bytes) -> str:
    return sha256(data).hexdigest()


class ArtifactStore:
    def __init__(self, root: Path, *, max_bytes: int | None = None) -> None:
        self._root = Path(root).expanduser().resolve()
        self._max_bytes = max_bytes
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"cannot create artifact root {self._root}: {exc}") from exc

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: str) -> Path:
        if not isinstance(key, str) or not _KEY_RE.match(key):
            raise ArtifactNotFound(str(key))
        return self._root / key[:2] / key

    def exists(self, key: str) -> bool:
        try:
            return self.path_for(key).is_file()
        except ArtifactNotFound:
            return False

    def put(self, data: bytes) -> str:
        if self._max_bytes is not None and len(data) > self._max_bytes:
            raise ArtifactTooLarge(len(data), self._max_bytes)
        key = content_key(data)
        if self.exists(key):
            return key
        self._commit(key, [data])
        logger.debug("stored artifact %s (%d bytes)", key, len(data))
        return key

    def put_file(self, path: Path) -> str:
        """Store a file by streaming it twice: once to hash, once to copy."""
        source = Path(path)
        digest = sha256()
        size = 0
        try:
            with source.open("rb") as fh:
                for chunk in iter(lambda: fh.read(_DEFAULT_CHUNK_SIZE), b""):
                    size += len(chunk)
                    digest.update(chunk)
        except OSError as exc:
            raise StorageError(f"cannot read {source}: {exc}") from exc
        key = digest.hexdigest()
        if self.exists(key):
            return key
        try:
            with source.open("rb") as fh:
                self._commit(key, iter(lambda: fh.read(_DEFAULT_CHUNK_SIZE), b""))
        except OSError as exc:
            raise StorageError(f"cannot read {source}: {exc}") from exc
        logger.debug("stored artifact %s from %s (%d bytes)", key, source, size)
        return key

    def get(self, key: str) -> bytes:
        target = self.path_for(key)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise ArtifactNotFound(key) from exc
        except OSError as exc:
            raise StorageError(f"cannot read artifact {key}: {exc}") from exc

    def stream(self, key: str, *, chunk_size: int = _DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        target = self.path_for(key)
        try:
            fh = target.open("rb")
        except FileNotFoundError as exc:
            raise ArtifactNotFound(key) from exc
        except OSError as exc:
            raise StorageError(f"cannot read artifact {key}: {exc}") from exc
        return self._iter_chunks(fh, chunk_size)

    def size(self, key: str) -> int:
        try:
            return self.path_for(key).stat().st_size
        except FileNotFoundError as exc:
            raise ArtifactNotFound(key) from exc

    @staticmethod
    def _iter_chunks(fh, chunk_size: int) -> Iterator[bytes]:
        with fh:
            while True:
                chunk = fh.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def _commit(self, key: str, chunks) -> None:
        target = self.path_for(key)
        tmp_name: str | None = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{key[:8]}-", suffix=".tmp", dir=target.parent)
            with os.fdopen(fd, "wb") as out:
                for chunk in chunks:
                    out.write(chunk)
                out.flush()
                os.fsync(out.fileno())
            # Concurrent writers of the same key race here harmlessly: same bytes.
            os.replace(tmp_name, target)
            tmp_name = None
        except OSError as exc:
            raise StorageError(f"cannot write artifact {key}: {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass


__all__ = ["ArtifactStore", "content_key"]
