# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Transfer Engine - Chunked, resumable, verified transfers.

Uploads:
1. Snapshot goes LOCAL -> UPLOADING in the catalog
2. Chunks are sent as multipart parts to `<key>.inflight`; a marker is
   persisted after every part so a later call resumes where this one stopped
3. The completed inflight object is read back and verified
4. It is promoted to `<key>`, a manifest is written beside it, and the
   snapshot becomes REMOTE

Downloads write to `<path>.part` with the same marker discipline and are
renamed into place only after verification.

A failed verification, or a resumed session that no longer exists
remotely, discards all partial state and restarts from zero once.
"""

import asyncio
import functools
import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable

import aiofiles
import structlog

from snapkeep.config import SnapkeepConfig
from snapkeep.exceptions import (
    BlobNotFound,
    IntegrityMismatch,
    SnapshotNotFound,
    TransferIntegrityFailed,
    TransferRejected,
    TransferRetriesExhausted,
    TransientStorageError,
    ValidationFailed,
)
from snapkeep.models import Snapshot, SnapshotStatus, TransferMarker
from snapkeep.transfer.retry import RetryPolicy, retry_async
from snapkeep.transfer.storage import BlobStorage
from snapkeep.vault.catalog import CatalogStore
from snapkeep.vault.checksum import digest_stream, verify

logger = structlog.get_logger()

UPLOAD = "upload"
DOWNLOAD = "download"

INFLIGHT_SUFFIX = ".inflight"
MANIFEST_SUFFIX = ".manifest.json"

# Called as on_chunk(direction, artifact_id, bytes_completed, total_bytes)
ChunkCallback = Callable[[str, str, int, int], None]


@dataclass
class TransferStats:
    """Counters for one engine instance."""

    chunks_sent: int = 0
    chunks_received: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    retries: int = 0
    restarts: int = 0


class _RestartTransfer(Exception):
    """Partial state is unusable; start over from byte zero."""

    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(str(cause))


def remote_key_for(snapshot: Snapshot) -> str:
    """Remote key of a snapshot's artifact, relative to the storage root."""
    if not snapshot.local_path:
        raise SnapshotNotFound(
            f"Snapshot {snapshot.id} has no local artifact",
            details={"snapshot_id": snapshot.id},
        )
    return f"{snapshot.source_name}/{Path(snapshot.local_path).name}"


class TransferEngine:
    """Moves artifacts between the local vault and remote storage."""

    def __init__(
        self,
        storage: BlobStorage,
        catalog: CatalogStore,
        config: SnapkeepConfig,
        on_chunk: ChunkCallback | None = None,
    ):
        self.storage = storage
        self.catalog = catalog
        self.config = config
        self.chunk_size = config.chunk_size
        self.policy = RetryPolicy.from_config(config)
        self.on_chunk = on_chunk
        self.stats = TransferStats()

    def _count_retry(self, attempt: int, error: BaseException) -> None:
        self.stats.retries += 1

    async def _call(self, name: str, fn, *args, **log_context):
        return await retry_async(
            functools.partial(fn, *args),
            self.policy,
            operation_name=name,
            on_retry=self._count_retry,
            **log_context,
        )

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(self, snapshot: Snapshot, local_path: Path, remote_key: str) -> Snapshot:
        """
        Upload a LOCAL snapshot's artifact and mark it REMOTE.

        Returns:
            The REMOTE snapshot as recorded in the catalog

        Raises:
            TransferRetriesExhausted: Snapshot reverts to LOCAL, marker kept
            TransferRejected: Snapshot becomes FAILED
            TransferIntegrityFailed: Snapshot becomes FAILED
        """
        if snapshot.status == SnapshotStatus.REMOTE:
            return snapshot

        local_path = Path(local_path)
        if not local_path.is_file():
            raise SnapshotNotFound(
                f"Artifact not found: {local_path}",
                details={"snapshot_id": snapshot.id, "path": str(local_path)},
            )

        inflight_key = remote_key + INFLIGHT_SUFFIX
        uploading = snapshot.with_status(
            SnapshotStatus.UPLOADING,
            storage_location=self.storage.locator(remote_key),
        )
        await self.catalog.put(uploading)
        total = local_path.stat().st_size

        logger.info(
            "upload_started",
            snapshot_id=snapshot.id,
            remote_key=remote_key,
            size=total,
        )

        try:
            for restart in range(2):
                try:
                    await self._send(uploading, local_path, inflight_key, total)
                    await self._verify_remote(uploading, inflight_key, total)
                    break
                except _RestartTransfer as e:
                    await self._discard_upload(snapshot.id, inflight_key)
                    if restart == 1:
                        if isinstance(e.cause, TransferRejected):
                            raise e.cause
                        raise TransferIntegrityFailed(
                            "Upload failed verification after restart",
                            details={
                                "snapshot_id": snapshot.id,
                                "remote_key": remote_key,
                                "cause": str(e.cause),
                            },
                        ) from e.cause
                    self.stats.restarts += 1
                    logger.warning(
                        "upload_restarting",
                        snapshot_id=snapshot.id,
                        reason=str(e.cause),
                    )

            await self._call("promote", self.storage.promote, inflight_key, remote_key)
            remote = uploading.with_status(SnapshotStatus.REMOTE)
            manifest = json.dumps(remote.to_manifest(), indent=2).encode()
            await self._call("put_manifest", self.storage.put, remote_key + MANIFEST_SUFFIX, manifest)
            await self.catalog.clear_marker(snapshot.id, UPLOAD)
            await self.catalog.put(remote)

        except TransferRetriesExhausted:
            # Marker stays so a later resume continues from the last part
            await self.catalog.put(uploading.with_status(SnapshotStatus.LOCAL))
            raise
        except (TransferRejected, TransferIntegrityFailed) as e:
            await self._discard_upload(snapshot.id, inflight_key)
            await self.catalog.put(uploading.with_status(SnapshotStatus.FAILED))
            logger.error(
                "upload_failed",
                snapshot_id=snapshot.id,
                error=str(e),
            )
            raise
        except asyncio.CancelledError:
            await self._discard_upload(snapshot.id, inflight_key)
            await self.catalog.put(uploading.with_status(SnapshotStatus.LOCAL))
            logger.warning("upload_cancelled", snapshot_id=snapshot.id)
            raise

        logger.info(
            "upload_completed",
            snapshot_id=snapshot.id,
            location=remote.storage_location,
            chunks=self.stats.chunks_sent,
        )
        return remote

    async def _send(
        self,
        snapshot: Snapshot,
        local_path: Path,
        inflight_key: str,
        total: int,
    ) -> None:
        marker = await self.catalog.load_marker(snapshot.id, UPLOAD)
        resumed = bool(
            marker and marker.upload_id and marker.total_bytes == total
            and marker.bytes_completed <= total
        )

        if resumed:
            logger.info(
                "upload_resuming",
                snapshot_id=snapshot.id,
                bytes_completed=marker.bytes_completed,
                total_bytes=total,
            )
            marker.attempt_count += 1
        else:
            upload_id = await self._call(
                "begin_upload", self.storage.begin_upload, inflight_key,
                snapshot_id=snapshot.id,
            )
            marker = TransferMarker(
                artifact_id=snapshot.id,
                direction=UPLOAD,
                bytes_completed=0,
                total_bytes=total,
                attempt_count=1,
                upload_id=upload_id,
            )
        await self.catalog.save_marker(marker)

        offset = marker.bytes_completed
        try:
            async with aiofiles.open(local_path, "rb") as f:
                await f.seek(offset)
                # At least one part, even for an empty artifact
                while offset < total or not marker.parts:
                    data = await f.read(self.chunk_size)
                    part_number = len(marker.parts) + 1
                    part = await self._call(
                        "upload_part",
                        self.storage.upload_part,
                        inflight_key,
                        marker.upload_id,
                        part_number,
                        data,
                        snapshot_id=snapshot.id,
                        part=part_number,
                    )
                    offset += len(data)
                    marker.parts.append(part)
                    marker.bytes_completed = offset
                    await self.catalog.save_marker(marker)

                    self.stats.chunks_sent += 1
                    self.stats.bytes_sent += len(data)
                    logger.debug(
                        "upload_chunk_sent",
                        snapshot_id=snapshot.id,
                        part=part_number,
                        bytes_completed=offset,
                        total_bytes=total,
                    )
                    if self.on_chunk is not None:
                        self.on_chunk(UPLOAD, snapshot.id, offset, total)
                    if not data:
                        break

            await self._call(
                "complete_upload",
                self.storage.complete_upload,
                inflight_key,
                marker.upload_id,
                marker.parts,
                snapshot_id=snapshot.id,
            )
        except BlobNotFound as e:
            # The multipart session is gone, typically expired between attempts
            raise _RestartTransfer(e) from e

    async def _verify_remote(self, snapshot: Snapshot, inflight_key: str, total: int) -> None:
        remote_size = await self._call("size", self.storage.size, inflight_key)
        if remote_size != total:
            raise _RestartTransfer(
                IntegrityMismatch(
                    str(total),
                    str(remote_size),
                    details={"snapshot_id": snapshot.id, "check": "size"},
                )
            )
        if not self.config.verify_after_upload or not snapshot.digest:
            return

        async def read_back() -> str:
            return await digest_stream(
                self.storage.get(inflight_key, self.chunk_size),
                snapshot.digest_algorithm,
            )

        actual = await retry_async(
            read_back,
            # A full read-back can take far longer than one chunk
            replace(self.policy, timeout=None),
            operation_name="verify_upload",
            on_retry=self._count_retry,
            snapshot_id=snapshot.id,
        )
        if actual != snapshot.digest:
            raise _RestartTransfer(
                IntegrityMismatch(
                    snapshot.digest,
                    actual,
                    details={"snapshot_id": snapshot.id, "key": inflight_key},
                )
            )
        logger.debug("upload_verified", snapshot_id=snapshot.id)

    async def _discard_upload(self, snapshot_id: str, inflight_key: str) -> None:
        """Abort the multipart session and remove the inflight object."""
        marker = await self.catalog.load_marker(snapshot_id, UPLOAD)
        try:
            if marker and marker.upload_id:
                await self.storage.abort_upload(inflight_key, marker.upload_id)
            await self.storage.delete(inflight_key)
        except (TransientStorageError, TransferRejected) as e:
            logger.warning(
                "upload_cleanup_failed",
                snapshot_id=snapshot_id,
                key=inflight_key,
                error=str(e),
            )
        await self.catalog.clear_marker(snapshot_id, UPLOAD)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download(
        self,
        remote_key: str,
        local_path: Path,
        expected_digest: str,
        algorithm: str = "sha256",
        artifact_id: str | None = None,
    ) -> Path:
        """
        Download `remote_key` to `local_path`, verified against `expected_digest`.

        Raises:
            SnapshotNotFound: If the remote object does not exist
            TransferIntegrityFailed: If verification fails after one restart
            TransferRetriesExhausted: Marker and partial file are kept
        """
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        part_path = local_path.with_name(local_path.name + ".part")
        marker_id = artifact_id or remote_key

        try:
            total = await self._call("size", self.storage.size, remote_key)
        except BlobNotFound as e:
            raise SnapshotNotFound(
                f"Remote artifact not found: {remote_key}",
                details={"remote_key": remote_key},
            ) from e

        try:
            for restart in range(2):
                await self._receive(remote_key, part_path, marker_id, total)
                try:
                    await verify(part_path, expected_digest, algorithm)
                    break
                except IntegrityMismatch as e:
                    part_path.unlink(missing_ok=True)
                    await self.catalog.clear_marker(marker_id, DOWNLOAD)
                    if restart == 1:
                        raise TransferIntegrityFailed(
                            "Download failed verification after restart",
                            details={"remote_key": remote_key, "path": str(local_path)},
                        ) from e
                    self.stats.restarts += 1
                    logger.warning("download_restarting", remote_key=remote_key)
        except (asyncio.CancelledError, TransferRejected):
            part_path.unlink(missing_ok=True)
            await self.catalog.clear_marker(marker_id, DOWNLOAD)
            raise

        part_path.replace(local_path)
        await self.catalog.clear_marker(marker_id, DOWNLOAD)
        logger.info(
            "download_completed",
            remote_key=remote_key,
            path=str(local_path),
            size=total,
        )
        return local_path

    async def _receive(self, remote_key: str, part_path: Path, marker_id: str, total: int) -> None:
        marker = await self.catalog.load_marker(marker_id, DOWNLOAD)
        offset = 0
        if (
            marker
            and marker.total_bytes == total
            and part_path.is_file()
            and part_path.stat().st_size >= marker.bytes_completed
        ):
            offset = marker.bytes_completed
            marker.attempt_count += 1
            logger.info(
                "download_resuming",
                remote_key=remote_key,
                bytes_completed=offset,
                total_bytes=total,
            )
        else:
            marker = TransferMarker(
                artifact_id=marker_id,
                direction=DOWNLOAD,
                bytes_completed=0,
                total_bytes=total,
                attempt_count=1,
            )
        await self.catalog.save_marker(marker)

        mode = "r+b" if offset and part_path.exists() else "wb"
        async with aiofiles.open(part_path, mode) as f:
            await f.truncate(offset)
            await f.seek(offset)
            while offset < total:
                end = min(offset + self.chunk_size, total)
                data = await self._call(
                    "get_range", self._read_range, remote_key, offset, end,
                    remote_key=remote_key,
                )
                await f.write(data)
                await f.flush()
                offset += len(data)
                marker.bytes_completed = offset
                await self.catalog.save_marker(marker)

                self.stats.chunks_received += 1
                self.stats.bytes_received += len(data)
                if self.on_chunk is not None:
                    self.on_chunk(DOWNLOAD, marker_id, offset, total)

    async def _read_range(self, key: str, start: int, end: int) -> bytes:
        data = await self.storage.get_range(key, start, end)
        if len(data) != end - start:
            raise TransientStorageError(
                "Short read from storage",
                details={"key": key, "expected": end - start, "received": len(data)},
            )
        return data

    # ------------------------------------------------------------------
    # Manifests
    # ------------------------------------------------------------------

    async def fetch_manifest(self, remote_key: str) -> Snapshot:
        """
        Read the manifest stored next to a remote artifact.

        Raises:
            SnapshotNotFound: If there is no manifest
            ValidationFailed: If the manifest cannot be parsed
        """
        manifest_key = remote_key + MANIFEST_SUFFIX

        async def read() -> bytes:
            return b"".join([chunk async for chunk in self.storage.get(manifest_key)])

        try:
            raw = await retry_async(read, self.policy, operation_name="fetch_manifest")
        except BlobNotFound as e:
            raise SnapshotNotFound(
                f"No manifest for remote artifact: {remote_key}",
                details={"remote_key": remote_key},
            ) from e
        try:
            return Snapshot.from_manifest(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationFailed(
                f"Unreadable manifest for remote artifact: {remote_key}",
                details={"remote_key": remote_key, "error": str(e)},
            ) from e

    async def delete_remote(self, remote_key: str) -> None:
        """Remove a remote artifact and its manifest."""
        await self._call("delete", self.storage.delete, remote_key)
        await self._call("delete", self.storage.delete, remote_key + MANIFEST_SUFFIX)
