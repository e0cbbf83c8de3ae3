"""Filesystem blob store addressed by content hash.

Blobs live under ``root`` at a path derived from their SHA-256 digest,
sharded into prefix directories so no single directory grows unbounded::

    root/
      .scratch/          staged uploads waiting to be hashed
      ab/
        cdef0123...      blob whose digest starts with "abcdef0123..."

Locations handed to callers are always relative to ``root``.
"""

import os
from pathlib import Path
from typing import Iterator, List, Tuple

from loguru import logger

from .errors import BlobNotFound, InvalidInput, StorageFailure

CHUNK_SIZE = 64 * 1024
SCRATCH_DIR = ".scratch"


def shard(checksum: str, prefix_depth: int, prefix_width: int) -> List[str]:
    """Split ``checksum`` into ``prefix_depth`` tokens of ``prefix_width``
    characters followed by the remainder."""
    if len(checksum) <= prefix_depth * prefix_width:
        raise InvalidInput("checksum must be longer than prefix_depth * prefix_width")

    tokens = [checksum[i * prefix_width : (i + 1) * prefix_width] for i in range(prefix_depth)]
    return tokens + [checksum[prefix_depth * prefix_width :]]


def _iter_file(handle, chunk_size: int) -> Iterator[bytes]:
    with handle:
        while chunk := handle.read(chunk_size):
            yield chunk


class BlobStore:
    """Durable, append-only byte storage keyed by content hash.

    ``put`` is idempotent: storing a hash that is already present leaves the
    existing blob untouched.
    """

    def __init__(self, root, prefix_depth: int = 1, prefix_width: int = 2) -> None:
        self._root = Path(root).resolve()
        self._prefix_depth = prefix_depth
        self._prefix_width = prefix_width
        self.scratch_dir.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def scratch_dir(self) -> Path:
        return self._root / SCRATCH_DIR

    def location_for(self, content_hash: str) -> str:
        return "/".join(shard(content_hash.lower(), self._prefix_depth, self._prefix_width))

    def _resolve(self, location: str) -> Path:
        """Resolve a location and ensure it stays under the store root."""
        candidate = (self._root / location).resolve()
        try:
            candidate.relative_to(self._root)
        except ValueError:
            raise InvalidInput(f"Location escapes the blob store: {location}") from None
        if candidate == self._root or SCRATCH_DIR in candidate.relative_to(self._root).parts:
            raise InvalidInput(f"Not a blob location: {location}")
        return candidate

    def exists(self, location: str) -> bool:
        return self._resolve(location).is_file()

    def put(self, content_hash: str, staged_path) -> str:
        """Move a staged file into place under its hash.

        The file and its directory entry are flushed to disk before this
        returns, so the caller may commit metadata pointing at it.
        """
        location = self.location_for(content_hash)
        target = self._resolve(location)
        if target.is_file():
            return location

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(staged_path, "rb") as staged:
                os.fsync(staged.fileno())
            os.replace(staged_path, target)
            _fsync_dir(target.parent)
        except OSError as exc:
            logger.error(f"Failed to write blob {location}: {exc}")
            raise StorageFailure(f"Could not write blob {location}.") from exc

        logger.debug(f"Stored blob {location}")
        return location

    def get(self, location: str, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Open a blob and return an iterator over its bytes.

        The file is opened before returning so a missing blob raises
        :class:`BlobNotFound` here rather than mid-stream.
        """
        path = self._resolve(location)
        try:
            handle = open(path, "rb")
        except FileNotFoundError:
            raise BlobNotFound(location) from None
        except OSError as exc:
            raise StorageFailure(f"Could not read blob {location}.") from exc
        return _iter_file(handle, chunk_size)

    def delete(self, location: str) -> bool:
        """Remove a blob. Returns False when it was already absent."""
        path = self._resolve(location)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.error(f"Failed to delete blob {location}: {exc}")
            raise StorageFailure(f"Could not delete blob {location}.") from exc

        logger.info(f"Removed blob {location}")
        return True

    def iter_locations(self) -> Iterator[Tuple[str, float]]:
        """Yield ``(location, mtime)`` for every stored blob."""
        for path in self._root.rglob("*"):
            relative = path.relative_to(self._root)
            if relative.parts[0] == SCRATCH_DIR or not path.is_file():
                continue
            yield relative.as_posix(), path.stat().st_mtime


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
