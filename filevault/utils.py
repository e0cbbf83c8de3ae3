import hashlib
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from .errors import InvalidInput, PayloadTooLarge

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class StagedUpload:
    path: Path
    content_hash: str
    size_bytes: int


@contextmanager
def stage_upload(stream, max_bytes: int, scratch_dir):
    """Copy ``stream`` to a scratch file, hashing it on the way.

    The payload is read exactly once; its size is whatever was actually
    read, never what the client declared. The scratch file is removed on
    exit unless something moved it away first.
    """
    sha256 = hashlib.sha256()
    size = 0
    fd, name = tempfile.mkstemp(prefix="upload-", dir=scratch_dir)
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as buffer:
            # Read in chunks to prevent memory crash on large files
            while chunk := stream.read(CHUNK_SIZE):
                size += len(chunk)
                if size > max_bytes:
                    raise PayloadTooLarge(max_bytes)
                sha256.update(chunk)
                buffer.write(chunk)
            buffer.flush()
            os.fsync(buffer.fileno())

        if size == 0:
            raise InvalidInput("Empty uploads are not accepted.")

        yield StagedUpload(path=path, content_hash=sha256.hexdigest(), size_bytes=size)
    finally:
        path.unlink(missing_ok=True)
