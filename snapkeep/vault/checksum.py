# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Checksums - Rolling digests for artifacts.

ChecksummingWriter sits between a producer and a byte sink, forwarding
every byte unchanged while accumulating a digest. The verify helpers
re-read artifacts in streaming fashion; a mismatch always raises
IntegrityMismatch carrying both digests.
"""

import hashlib
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator

import aiofiles
import structlog

from snapkeep.exceptions import IntegrityMismatch, SnapshotNotFound

logger = structlog.get_logger()

DEFAULT_READ_SIZE = 1024 * 1024  # 1 MiB


class ChecksummingWriter:
    """
    Async writer that mirrors bytes into `sink` and hashes them.

    `sink` is any object with an awaitable write(bytes) method, such as
    an aiofiles file handle.
    """

    def __init__(self, sink: Any, algorithm: str = "sha256"):
        self._sink = sink
        self._hash = hashlib.new(algorithm)
        self._digest: str | None = None
        self.algorithm = algorithm
        self.bytes_written = 0

    async def write(self, data: bytes) -> int:
        if self._digest is not None:
            raise ValueError("write() after finalize()")
        if not data:
            return 0
        await self._sink.write(data)
        self._hash.update(data)
        self.bytes_written += len(data)
        return len(data)

    def finalize(self) -> str:
        """Return the hex digest; further writes are rejected."""
        if self._digest is None:
            self._digest = self._hash.hexdigest()
        return self._digest


def wrap(sink: Any, algorithm: str = "sha256") -> ChecksummingWriter:
    """Wrap a byte sink in a ChecksummingWriter."""
    return ChecksummingWriter(sink, algorithm)


async def iter_file(
    path: Path,
    chunk_size: int = DEFAULT_READ_SIZE,
    offset: int = 0,
) -> AsyncIterator[bytes]:
    """Stream a file's bytes without loading it into memory."""
    async with aiofiles.open(path, "rb") as f:
        if offset:
            await f.seek(offset)
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            yield chunk


async def digest_stream(chunks: AsyncIterable[bytes], algorithm: str = "sha256") -> str:
    """Digest an async byte stream."""
    h = hashlib.new(algorithm)
    async for chunk in chunks:
        h.update(chunk)
    return h.hexdigest()


async def compute_digest(
    path: Path,
    algorithm: str = "sha256",
    chunk_size: int = DEFAULT_READ_SIZE,
) -> str:
    """
    Compute the digest of a file in streaming fashion.

    Raises:
        SnapshotNotFound: If the file does not exist
    """
    if not Path(path).is_file():
        raise SnapshotNotFound(
            f"Artifact not found: {path}",
            details={"path": str(path)},
        )
    return await digest_stream(iter_file(Path(path), chunk_size), algorithm)


async def verify(
    path: Path,
    expected_digest: str,
    algorithm: str = "sha256",
    chunk_size: int = DEFAULT_READ_SIZE,
) -> bool:
    """
    Verify an artifact against its expected digest.

    Returns:
        True when the digest matches

    Raises:
        IntegrityMismatch: If the digest differs
        SnapshotNotFound: If the artifact is missing
    """
    actual = await compute_digest(path, algorithm, chunk_size)
    if actual != expected_digest:
        logger.warning(
            "artifact_integrity_mismatch",
            path=str(path),
            expected=expected_digest,
            actual=actual,
        )
        raise IntegrityMismatch(
            expected_digest,
            actual,
            details={"path": str(path), "algorithm": algorithm},
        )
    logger.debug("artifact_verified", path=str(path), algorithm=algorithm)
    return True


async def verify_stream(
    chunks: AsyncIterable[bytes],
    expected_digest: str,
    algorithm: str = "sha256",
    source: str | None = None,
) -> bool:
    """
    Verify an async byte stream against an expected digest.

    Raises:
        IntegrityMismatch: If the digest differs
    """
    actual = await digest_stream(chunks, algorithm)
    if actual != expected_digest:
        raise IntegrityMismatch(
            expected_digest,
            actual,
            details={"source": source, "algorithm": algorithm},
        )
    return True
