# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Producer - Turn a live service into a local artifact.

The producer streams the target's output through optional compression
and a checksumming writer into `<artifact>.partial`, then links it to
its final name. It never records anything in the catalog; callers do
that once they have a LOCAL snapshot in hand.
"""

import os
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterator, Set, Tuple

import aiofiles
import structlog

from snapkeep.backup.manager import (
    artifact_path,
    remove_artifact,
    temp_path_for,
    write_manifest,
)
from snapkeep.config import SnapkeepConfig
from snapkeep.exceptions import ProducerError, ProducerOutputEmpty, UnsupportedScope
from snapkeep.models import Scope, ServiceKind, Snapshot, SnapshotStatus, make_snapshot_id
from snapkeep.targets.base import ServiceTarget
from snapkeep.vault.catalog import CatalogStore
from snapkeep.vault.checksum import wrap
from snapkeep.vault.compressor import COMPRESSION_ZSTD, compress_stream, get_compression_stats

logger = structlog.get_logger()

_MAX_ID_ATTEMPTS = 1000


class SnapshotProducer:
    """Produces exactly one local artifact per produce() call."""

    def __init__(self, config: SnapkeepConfig, catalog: CatalogStore):
        self.config = config
        self.catalog = catalog
        self._reserved: Set[str] = set()

    async def _reserve(
        self,
        source: ServiceTarget,
        created_at: datetime,
        compression: str | None,
    ) -> Tuple[str, Path]:
        """Pick an id not used by the catalog, the vault, or a running call."""
        for attempt in range(1, _MAX_ID_ATTEMPTS + 1):
            snapshot_id = make_snapshot_id(source.name, created_at, attempt)
            path = artifact_path(self.config, source.name, snapshot_id, source.kind, compression)
            if (
                snapshot_id in self._reserved
                or path.exists()
                or temp_path_for(path).exists()
                or await self.catalog.exists(snapshot_id)
            ):
                continue
            self._reserved.add(snapshot_id)
            return snapshot_id, path
        raise ProducerError(
            "Could not allocate a snapshot id",
            details={"source_name": source.name},
        )

    async def produce(self, source: ServiceTarget, scope: Scope | None = None) -> Snapshot:
        """
        Snapshot `source` into the local vault.

        Returns:
            A LOCAL snapshot with size and digest of the stored artifact

        Raises:
            UnsupportedScope: Subset requested from a key-value target
            ProducerUnavailable: The target is not reachable
            ProducerProcessFailed: The snapshot process exited non-zero
            ProducerOutputEmpty: The snapshot process produced no data
        """
        scope = scope or Scope.full()
        if source.kind == ServiceKind.KEY_VALUE and scope.is_subset:
            raise UnsupportedScope(
                f"{source.kind.value} targets do not support subset backups",
                details={"target": source.name, "scope": scope.describe()},
            )

        await source.probe()

        created_at = datetime.now(UTC)
        compression = COMPRESSION_ZSTD if self.config.compress_artifacts else None
        snapshot_id, path = await self._reserve(source, created_at, compression)
        partial = temp_path_for(path)
        raw_bytes = 0
        linked = False

        logger.info(
            "snapshot_started",
            snapshot_id=snapshot_id,
            target=source.name,
            scope=scope.describe(),
        )

        source_stream = source.snapshot(scope)

        async def counted() -> AsyncIterator[bytes]:
            nonlocal raw_bytes
            async for chunk in source_stream:
                raw_bytes += len(chunk)
                yield chunk

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            stream = counted()
            if compression:
                stream = compress_stream(stream, self.config.compression_level)

            async with aiofiles.open(partial, "xb") as f:
                writer = wrap(f, self.config.digest_algorithm)
                async for chunk in stream:
                    await writer.write(chunk)
            digest = writer.finalize()

            if raw_bytes == 0:
                raise ProducerOutputEmpty(
                    f"{source.name} produced no data",
                    details={"snapshot_id": snapshot_id, "target": source.name},
                )

            # link() fails instead of replacing an existing artifact
            os.link(partial, path)
            linked = True
            partial.unlink()

            snapshot = Snapshot(
                id=snapshot_id,
                service_kind=source.kind,
                source_name=source.name,
                created_at=created_at,
                size_bytes=writer.bytes_written,
                digest=digest,
                digest_algorithm=self.config.digest_algorithm,
                status=SnapshotStatus.LOCAL,
                local_path=str(path),
                scope=scope,
                compression=compression,
            )
            await write_manifest(path, snapshot)

        except FileExistsError as e:
            partial.unlink(missing_ok=True)
            raise ProducerError(
                "Artifact path already exists",
                details={"snapshot_id": snapshot_id, "path": str(path)},
            ) from e
        except BaseException as e:
            partial.unlink(missing_ok=True)
            if linked:
                remove_artifact(path)
            logger.warning(
                "snapshot_aborted",
                snapshot_id=snapshot_id,
                target=source.name,
                error=str(e) or type(e).__name__,
            )
            raise
        finally:
            # Stops the producing process if we bailed out early
            aclose = getattr(source_stream, "aclose", None)
            if aclose is not None:
                await aclose()
            self._reserved.discard(snapshot_id)

        ratio = None
        if compression:
            ratio = get_compression_stats(raw_bytes, snapshot.size_bytes)["compression_ratio"]
        logger.info(
            "snapshot_produced",
            snapshot_id=snapshot_id,
            target=source.name,
            raw_bytes=raw_bytes,
            size=snapshot.size_bytes,
            compression=compression,
            compression_ratio=ratio,
        )
        return snapshot
