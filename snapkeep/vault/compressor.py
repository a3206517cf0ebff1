# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Compressor - Streaming zstd for snapshot artifacts.

Dumps can exceed available memory, so compression works chunk by chunk
on async byte streams. Large chunks are compressed in a thread pool to
keep the event loop responsive.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import AsyncIterable, AsyncIterator, Callable

import structlog
import zstandard as zstd

from snapkeep.exceptions import ProducerError
from snapkeep.models import ServiceKind

logger = structlog.get_logger()

# Thread pool for CPU-bound compression
_executor = ThreadPoolExecutor(max_workers=4)

COMPRESSION_ZSTD = "zstd"
DEFAULT_ZSTD_LEVEL = 6
_OFFLOAD_THRESHOLD = 1024 * 1024  # > 1MB goes to the thread pool

_KIND_SUFFIX = {
    ServiceKind.SQL_RELATIONAL: ".sql",
    ServiceKind.KEY_VALUE: ".rdb",
}


def artifact_suffix(kind: ServiceKind, compression: str | None) -> str:
    """
    File suffix for an artifact of the given kind.

    Examples:
        >>> artifact_suffix(ServiceKind.SQL_RELATIONAL, "zstd")
        '.sql.zst'
    """
    suffix = _KIND_SUFFIX[kind]
    if compression == COMPRESSION_ZSTD:
        suffix += ".zst"
    return suffix


async def _run(fn: Callable[[bytes], bytes], data: bytes) -> bytes:
    if len(data) > _OFFLOAD_THRESHOLD:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_executor, fn, data)
    return fn(data)


async def compress_stream(
    chunks: AsyncIterable[bytes],
    level: int = DEFAULT_ZSTD_LEVEL,
) -> AsyncIterator[bytes]:
    """
    Compress an async byte stream into a single zstd frame.

    Note: an empty input still yields a small frame header, so callers
    that care about emptiness must count input bytes themselves.
    """
    cobj = zstd.ZstdCompressor(level=level).compressobj()
    async for chunk in chunks:
        if not chunk:
            continue
        out = await _run(cobj.compress, chunk)
        if out:
            yield out
    tail = cobj.flush()
    if tail:
        yield tail


async def decompress_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """
    Decompress a zstd-compressed async byte stream.

    Raises:
        ProducerError: If the stream is not valid zstd
    """
    dobj = zstd.ZstdDecompressor().decompressobj()
    try:
        async for chunk in chunks:
            out = await _run(dobj.decompress, chunk)
            if out:
                yield out
    except zstd.ZstdError as e:
        raise ProducerError(f"Decompression failed: {e}") from e


def maybe_decompress(
    chunks: AsyncIterable[bytes],
    compression: str | None,
) -> AsyncIterable[bytes]:
    """Decompress when the artifact was stored compressed."""
    if compression == COMPRESSION_ZSTD:
        return decompress_stream(chunks)
    if compression:
        raise ProducerError(
            f"Unsupported artifact compression: {compression}",
            details={"compression": compression},
        )
    return chunks


def get_compression_stats(
    original_size: int,
    compressed_size: int,
) -> dict:
    """
    Calculate compression statistics.

    Args:
        original_size: Original data size in bytes
        compressed_size: Compressed data size in bytes

    Returns:
        Dict with compression statistics
    """
    if compressed_size == 0:
        return {
            "original_size": original_size,
            "compressed_size": compressed_size,
            "compression_ratio": 0,
            "space_saved_bytes": 0,
            "space_saved_percent": 0,
        }

    ratio = original_size / compressed_size
    saved_bytes = original_size - compressed_size
    saved_percent = (saved_bytes / original_size) * 100 if original_size > 0 else 0

    return {
        "original_size": original_size,
        "compressed_size": compressed_size,
        "compression_ratio": round(ratio, 2),
        "space_saved_bytes": saved_bytes,
        "space_saved_percent": round(saved_percent, 2),
    }
