# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Artifact Manager - Local artifact layout and lifecycle.

Artifacts live at `vault/artifacts/<source>/<snapshot_id><suffix>`, each
optionally accompanied by a `<artifact>.manifest.json` sidecar so it can
be restored without the catalog. Every write goes to a temp name first
and is renamed into place, so a final name never holds partial bytes.
"""

import json
import shutil
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterable, Tuple

import aiofiles
import structlog

from snapkeep.config import SnapkeepConfig
from snapkeep.exceptions import ProducerError, ValidationFailed
from snapkeep.models import ServiceKind, Snapshot
from snapkeep.vault.compressor import artifact_suffix

logger = structlog.get_logger()

PARTIAL_SUFFIX = ".partial"
MANIFEST_SUFFIX = ".manifest.json"
_TEMP_SUFFIXES = (PARTIAL_SUFFIX, ".part", ".tmp")


def artifact_path(
    config: SnapkeepConfig,
    source_name: str,
    snapshot_id: str,
    kind: ServiceKind,
    compression: str | None,
) -> Path:
    """Final path of a snapshot's artifact."""
    return (
        config.artifacts_path
        / _sanitize_component(source_name)
        / f"{snapshot_id}{artifact_suffix(kind, compression)}"
    )


def temp_path_for(path: Path, suffix: str = PARTIAL_SUFFIX) -> Path:
    return path.with_name(path.name + suffix)


def manifest_path_for(path: Path) -> Path:
    return path.with_name(path.name + MANIFEST_SUFFIX)


def _sanitize_component(name: str) -> str:
    """
    Make a source name safe as a single path component.

    Examples:
        >>> _sanitize_component("prod/pg:main")
        'prod_pg_main'
    """
    safe = name.replace("/", "_").replace("\\", "_")
    for char in [":", "*", "?", '"', "<", ">", "|"]:
        safe = safe.replace(char, "_")
    if safe in ("", ".", ".."):
        raise ProducerError(
            f"Invalid source name: {name!r}",
            details={"source_name": name},
        )
    return safe


async def write_stream_atomic(dest: Path, chunks: AsyncIterable[bytes]) -> int:
    """
    Write an async byte stream to `dest` via a temp file.

    Returns:
        Number of bytes written
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    temp_path = temp_path_for(dest, ".tmp")
    written = 0
    try:
        async with aiofiles.open(temp_path, "wb") as f:
            async for chunk in chunks:
                await f.write(chunk)
                written += len(chunk)
        temp_path.replace(dest)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise

    logger.debug("file_written", path=str(dest), size=written)
    return written


async def write_manifest(artifact: Path, snapshot: Snapshot) -> Path:
    """Write the sidecar manifest describing `artifact`."""
    path = manifest_path_for(artifact)
    temp_path = temp_path_for(path, ".tmp")
    async with aiofiles.open(temp_path, "w") as f:
        await f.write(json.dumps(snapshot.to_manifest(), indent=2))
    temp_path.replace(path)
    return path


async def read_manifest(artifact: Path) -> Snapshot | None:
    """
    Read the sidecar manifest of `artifact`, if present.

    Raises:
        ValidationFailed: The manifest exists but is not a valid snapshot record
    """
    path = manifest_path_for(artifact)
    if not path.is_file():
        return None
    async with aiofiles.open(path, "rb") as f:
        raw = await f.read()
    try:
        return Snapshot.from_manifest(json.loads(raw), local_path=str(artifact))
    except (ValueError, KeyError, TypeError) as e:
        raise ValidationFailed(
            f"Unreadable manifest for {artifact.name}",
            details={"manifest": str(path), "error": str(e)},
        ) from e


def remove_artifact(path: Path) -> int:
    """
    Delete an artifact and its manifest sidecar.

    Returns:
        Bytes freed
    """
    freed = 0
    for candidate in (path, manifest_path_for(path)):
        if candidate.is_file():
            freed += candidate.stat().st_size
            candidate.unlink()
    parent = path.parent
    if parent.is_dir() and not any(parent.iterdir()):
        parent.rmdir()
    return freed


def prune_partials(config: SnapkeepConfig) -> Tuple[int, int]:
    """
    Remove temp files and staging directories left by crashed runs.

    Only call this when no operation is in flight in this vault.

    Returns:
        Tuple of (entries_removed, bytes_freed)
    """
    removed = 0
    freed = 0

    for root in (config.artifacts_path, config.downloads_path):
        if not root.exists():
            continue
        for path in root.rglob("*"):
            if path.is_file() and path.name.endswith(_TEMP_SUFFIXES):
                freed += path.stat().st_size
                path.unlink()
                removed += 1
                logger.debug("partial_file_pruned", path=str(path))

    for root in (config.staging_path, config.rollback_path):
        if not root.exists():
            continue
        for entry in root.iterdir():
            if entry.is_dir():
                freed += sum(f.stat().st_size for f in entry.rglob("*") if f.is_file())
                shutil.rmtree(entry)
                removed += 1
                logger.debug("stale_staging_pruned", path=str(entry))

    if removed:
        logger.info("partials_pruned", removed=removed, bytes_freed=freed)
    return removed, freed


async def get_artifact_stats(config: SnapkeepConfig) -> dict:
    """
    Get statistics about local artifact storage.

    Returns:
        Dict with artifact counts and sizes, overall and per source
    """
    stats = {
        "artifact_files": 0,
        "artifact_bytes": 0,
        "sources": {},
        "oldest_artifact": None,
        "newest_artifact": None,
    }

    root = config.artifacts_path
    if not root.exists():
        return stats

    oldest_mtime = None
    newest_mtime = None

    for source_dir in root.iterdir():
        if not source_dir.is_dir():
            continue
        files = 0
        size = 0
        for artifact in source_dir.iterdir():
            name = artifact.name
            if not artifact.is_file() or name.endswith(MANIFEST_SUFFIX) or name.endswith(_TEMP_SUFFIXES):
                continue
            st = artifact.stat()
            files += 1
            size += st.st_size
            if oldest_mtime is None or st.st_mtime < oldest_mtime:
                oldest_mtime = st.st_mtime
            if newest_mtime is None or st.st_mtime > newest_mtime:
                newest_mtime = st.st_mtime
        stats["sources"][source_dir.name] = {"files": files, "bytes": size}
        stats["artifact_files"] += files
        stats["artifact_bytes"] += size

    if oldest_mtime is not None:
        stats["oldest_artifact"] = datetime.fromtimestamp(oldest_mtime, UTC).isoformat()
    if newest_mtime is not None:
        stats["newest_artifact"] = datetime.fromtimestamp(newest_mtime, UTC).isoformat()

    return stats
