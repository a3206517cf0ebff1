# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Restore Coordinator - Verified, reversible restores.

A restore walks a small state machine:

    VALIDATING -> STAGING -> SWAPPING -> COMPLETE
                                 |
                                 +-> ROLLED_BACK -> SWAPPING (one re-attempt)

FAILED is reachable from any state and CANCELLED from any non-terminal
one. Nothing before SWAPPING touches the live service. Inside SWAPPING
the service is quiesced, a pre-swap copy of its current data is taken,
and that copy is what a failed apply is rolled back to.
"""

import asyncio
import shutil
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterable, List

import structlog
from ulid import ULID

from snapkeep.backup.manager import read_manifest, remove_artifact, write_stream_atomic
from snapkeep.config import SnapkeepConfig
from snapkeep.exceptions import (
    ApplyFailed,
    BlobNotFound,
    Cancelled,
    ConfirmationRequired,
    RestoreFailed,
    RestoreUnrecoverable,
    SnapkeepError,
    SnapshotNotFound,
    SubsetNotPresent,
    UnsupportedScope,
    ValidationFailed,
)
from snapkeep.models import (
    RESTORE_TRANSITIONS,
    RestorePlan,
    RestoreState,
    Scope,
    ServiceKind,
    Snapshot,
    SnapshotStatus,
)
from snapkeep.targets.base import ServiceTarget
from snapkeep.targets.subset import contains_subset, extract_subset
from snapkeep.transfer.engine import TransferEngine
from snapkeep.transfer.storage import open_locator
from snapkeep.vault.catalog import CatalogStore
from snapkeep.vault.checksum import compute_digest, iter_file, verify
from snapkeep.vault.compressor import COMPRESSION_ZSTD, artifact_suffix, maybe_decompress

logger = structlog.get_logger()

_REMOTE_SCHEMES = ("s3://", "file://")


@dataclass
class RestoreRun:
    """Progress of one restore through the state machine."""

    restore_id: str
    target: str
    snapshot_ref: str
    scope: Scope
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    state: RestoreState = RestoreState.VALIDATING
    history: List[str] = field(default_factory=lambda: [RestoreState.VALIDATING.value])
    snapshot_id: str | None = None
    pre_swap_copy: Path | None = None

    def advance(self, new_state: RestoreState) -> None:
        if new_state not in RESTORE_TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal restore transition {self.state.value} -> {new_state.value}"
            )
        logger.info(
            "restore_state_changed",
            restore_id=self.restore_id,
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state
        self.history.append(new_state.value)

    @property
    def is_open(self) -> bool:
        return self.state in (
            RestoreState.VALIDATING,
            RestoreState.STAGING,
            RestoreState.SWAPPING,
        )


class RestoreCoordinator:
    """Runs restores against service targets."""

    def __init__(self, config: SnapkeepConfig, catalog: CatalogStore):
        self.config = config
        self.catalog = catalog

    # ------------------------------------------------------------------
    # VALIDATING
    # ------------------------------------------------------------------

    async def validate(
        self,
        target: ServiceTarget,
        snapshot_ref: str,
        scope: Scope,
    ) -> RestorePlan:
        """
        Resolve and check a restore without touching the live service.

        Raises:
            SnapshotNotFound: The reference resolves to nothing
            IntegrityMismatch: The artifact does not match its digest
            UnsupportedScope: Subset restore on a key-value target
            SubsetNotPresent: The subset key is not in the artifact
        """
        if scope.is_subset and target.kind == ServiceKind.KEY_VALUE:
            raise UnsupportedScope(
                f"{target.kind.value} targets do not support subset restores",
                details={"target": target.name, "scope": scope.describe()},
            )

        snapshot, artifact, downloaded = await self._resolve(snapshot_ref, target)

        if snapshot.service_kind != target.kind:
            raise ValidationFailed(
                "Snapshot kind does not match target",
                details={
                    "snapshot_id": snapshot.id,
                    "snapshot_kind": snapshot.service_kind.value,
                    "target_kind": target.kind.value,
                },
            )

        if not snapshot.digest:
            raise ValidationFailed(
                "Snapshot has no recorded digest",
                details={"snapshot_id": snapshot.id, "artifact": str(artifact)},
            )
        await verify(artifact, snapshot.digest, snapshot.digest_algorithm)

        if scope.is_subset:
            chunks = maybe_decompress(iter_file(artifact), snapshot.compression)
            if not await contains_subset(chunks, scope.subset_key):
                raise SubsetNotPresent(
                    f"Subset {scope.subset_key!r} not present in {snapshot.id}",
                    details={"snapshot_id": snapshot.id, "subset_key": scope.subset_key},
                )

        logger.info(
            "restore_validated",
            target=target.name,
            snapshot_id=snapshot.id,
            scope=scope.describe(),
        )
        return RestorePlan(
            target=target,
            snapshot=snapshot,
            mode=scope.mode,
            subset_key=scope.subset_key,
            artifact_path=artifact,
            downloaded=downloaded,
        )

    async def _resolve(self, ref: str, target: ServiceTarget) -> tuple:
        """Turn a catalog id, local path or remote locator into (snapshot, path, downloaded)."""
        if ref.startswith(_REMOTE_SCHEMES):
            snapshot = await self.catalog.find_by_location(ref)
            if snapshot is not None and snapshot.local_path and Path(snapshot.local_path).is_file():
                return snapshot, Path(snapshot.local_path), False
            return await self._fetch_remote(ref, snapshot)

        if await self.catalog.exists(ref):
            snapshot = await self.catalog.get(ref)
            if snapshot.status == SnapshotStatus.CREATING:
                raise SnapshotNotFound(
                    f"Snapshot {ref} was never completed",
                    details={"snapshot_id": ref},
                )
            if snapshot.local_path and Path(snapshot.local_path).is_file():
                return snapshot, Path(snapshot.local_path), False
            if snapshot.storage_location:
                return await self._fetch_remote(snapshot.storage_location, snapshot)
            raise SnapshotNotFound(
                f"Artifact for snapshot {ref} is gone",
                details={"snapshot_id": ref, "local_path": snapshot.local_path},
            )

        path = Path(ref)
        if path.is_file():
            return await self._import_local(path, target), path, False

        raise SnapshotNotFound(
            f"Snapshot not found: {ref}",
            details={"snapshot_ref": ref},
        )

    async def _import_local(self, path: Path, target: ServiceTarget) -> Snapshot:
        snapshot = await read_manifest(path)
        if snapshot is not None:
            return snapshot

        # No record of this file anywhere; the digest can only confirm
        # that it does not change between validation and staging
        name = path.name
        compression = COMPRESSION_ZSTD if name.endswith(".zst") else None
        snapshot_id = name.split(".", 1)[0]
        digest = await compute_digest(path, self.config.digest_algorithm)
        logger.warning(
            "restore_unverified_artifact",
            path=str(path),
            digest=digest,
        )
        return Snapshot(
            id=snapshot_id,
            service_kind=target.kind,
            source_name=target.name,
            created_at=datetime.fromtimestamp(path.stat().st_mtime, UTC),
            size_bytes=path.stat().st_size,
            digest=digest,
            digest_algorithm=self.config.digest_algorithm,
            status=SnapshotStatus.LOCAL,
            local_path=str(path),
            compression=compression,
        )

    async def _fetch_remote(self, locator: str, known: Snapshot | None) -> tuple:
        storage, key = open_locator(locator, self.config)
        engine = TransferEngine(storage, self.catalog, self.config)
        try:
            snapshot = known
            if snapshot is None:
                snapshot = await engine.fetch_manifest(key)
            if not snapshot.digest:
                raise ValidationFailed(
                    "Remote snapshot has no recorded digest",
                    details={"snapshot_id": snapshot.id, "locator": locator},
                )

            dest = self.config.downloads_path / (
                snapshot.id + artifact_suffix(snapshot.service_kind, snapshot.compression)
            )
            if dest.is_file():
                try:
                    await verify(dest, snapshot.digest, snapshot.digest_algorithm)
                    return snapshot, dest, True
                except ValidationFailed:
                    dest.unlink()

            try:
                await engine.download(
                    key,
                    dest,
                    snapshot.digest,
                    snapshot.digest_algorithm,
                    artifact_id=snapshot.id,
                )
            except BlobNotFound as e:
                raise SnapshotNotFound(
                    f"Remote artifact not found: {locator}",
                    details={"locator": locator},
                ) from e
            return snapshot, dest, True
        finally:
            await storage.close()

    # ------------------------------------------------------------------
    # Full restore
    # ------------------------------------------------------------------

    async def restore(
        self,
        target: ServiceTarget,
        snapshot_ref: str,
        scope: Scope | None = None,
        quiesce: AbstractAsyncContextManager | None = None,
        restore_id: str | None = None,
        confirmed_snapshot_id: str | None = None,
    ) -> RestoreRun:
        """
        Restore `target` from a snapshot.

        Args:
            target: Live service to restore
            snapshot_ref: Catalog id, local artifact path or remote locator
            scope: FULL or NAMED_SUBSET; defaults to FULL
            quiesce: Context manager held during the swap; defaults to
                target.quiesced(scope)
            restore_id: Id for the audit record; a ULID is generated if omitted
            confirmed_snapshot_id: Snapshot id a dry run validated; the
                reference must still resolve to it

        Returns:
            The finished RestoreRun (state COMPLETE)

        Raises:
            ValidationFailed: Before any side effect on the target
            RestoreFailed: Apply failed twice; the target was rolled back
            RestoreUnrecoverable: Rollback failed or was impossible
        """
        scope = scope or Scope.full()
        run = RestoreRun(
            restore_id=restore_id or str(ULID()),
            target=target.name,
            snapshot_ref=snapshot_ref,
            scope=scope,
        )
        staging_dir = self.config.staging_path / run.restore_id
        rollback_dir = self.config.rollback_path / run.restore_id
        plan: RestorePlan | None = None
        error: BaseException | None = None

        logger.info(
            "restore_started",
            restore_id=run.restore_id,
            target=target.name,
            snapshot_ref=snapshot_ref,
            scope=scope.describe(),
        )

        try:
            plan = await self.validate(target, snapshot_ref, scope)
            run.snapshot_id = plan.snapshot.id
            if confirmed_snapshot_id is not None and plan.snapshot.id != confirmed_snapshot_id:
                raise ConfirmationRequired(
                    f"{snapshot_ref} now resolves to {plan.snapshot.id}, "
                    f"not the dry-run snapshot {confirmed_snapshot_id}",
                    details={
                        "snapshot_ref": snapshot_ref,
                        "confirmed_snapshot_id": confirmed_snapshot_id,
                        "snapshot_id": plan.snapshot.id,
                    },
                )

            run.advance(RestoreState.STAGING)
            staged = await self._stage(plan, staging_dir)

            run.advance(RestoreState.SWAPPING)
            async with quiesce if quiesce is not None else target.quiesced(scope):
                await self._swap(run, target, scope, staged, rollback_dir)

            run.advance(RestoreState.COMPLETE)

        except (asyncio.CancelledError, Cancelled) as e:
            error = e
            if run.is_open:
                run.advance(RestoreState.CANCELLED)
            raise
        except SnapkeepError as e:
            error = e
            phase = run.state.value
            if run.is_open:
                run.advance(RestoreState.FAILED)
            e.details.setdefault("phase", phase)
            e.details.setdefault("restore_id", run.restore_id)
            e.details.setdefault("restore_state", run.state.value)
            raise
        except Exception as e:
            error = e
            if run.is_open:
                run.advance(RestoreState.FAILED)
            raise
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)
            shutil.rmtree(rollback_dir, ignore_errors=True)
            if plan is not None and plan.downloaded and plan.artifact_path:
                remove_artifact(plan.artifact_path)
            await self._record(run, error)

        logger.info(
            "restore_completed",
            restore_id=run.restore_id,
            target=target.name,
            snapshot_id=run.snapshot_id,
            history=run.history,
        )
        return run

    async def _record(self, run: RestoreRun, error: BaseException | None) -> None:
        await self.catalog.record_restore(
            restore_id=run.restore_id,
            target=run.target,
            snapshot_id=run.snapshot_id or run.snapshot_ref,
            scope=run.scope,
            state=run.state.value,
            started_at=run.started_at,
            history=run.history,
            error=(str(error) or type(error).__name__) if error is not None else None,
        )

    # ------------------------------------------------------------------
    # STAGING
    # ------------------------------------------------------------------

    async def _stage(self, plan: RestorePlan, staging_dir: Path) -> Path:
        """Materialise exactly the bytes that will be applied."""
        snapshot = plan.snapshot
        chunks: AsyncIterable[bytes] = maybe_decompress(
            iter_file(plan.artifact_path), snapshot.compression
        )
        if plan.scope.is_subset:
            chunks = extract_subset(chunks, plan.subset_key)

        staged = staging_dir / "artifact"
        size = await write_stream_atomic(staged, chunks)
        logger.info(
            "restore_staged",
            snapshot_id=snapshot.id,
            path=str(staged),
            size=size,
        )
        return staged

    # ------------------------------------------------------------------
    # SWAPPING
    # ------------------------------------------------------------------

    async def _capture(
        self,
        target: ServiceTarget,
        scope: Scope,
        rollback_dir: Path,
    ) -> Path:
        """Save the live data as it is right before the swap."""
        chunks: AsyncIterable[bytes] = target.snapshot(scope)
        if scope.is_subset:
            chunks = extract_subset(chunks, scope.subset_key)
        path = rollback_dir / "pre_swap"
        size = await write_stream_atomic(path, chunks)
        logger.info("pre_swap_copy_taken", target=target.name, size=size)
        return path

    async def _swap(
        self,
        run: RestoreRun,
        target: ServiceTarget,
        scope: Scope,
        staged: Path,
        rollback_dir: Path,
    ) -> None:
        if self.config.retain_pre_restore_copy:
            run.pre_swap_copy = await self._capture(target, scope, rollback_dir)

        try:
            await target.apply(iter_file(staged), scope)
            return
        except ApplyFailed as first:
            logger.warning(
                "restore_apply_failed",
                restore_id=run.restore_id,
                attempt=1,
                error=str(first),
            )
            await self._rollback(run, target, scope, first)
        except asyncio.CancelledError:
            await self._apply_pre_swap(run, target, scope, None)
            raise

        run.advance(RestoreState.SWAPPING)
        try:
            await target.apply(iter_file(staged), scope)
        except ApplyFailed as second:
            logger.warning(
                "restore_apply_failed",
                restore_id=run.restore_id,
                attempt=2,
                error=str(second),
            )
            await self._rollback(run, target, scope, second)
            raise RestoreFailed(
                "Restore failed twice; target rolled back to its pre-swap state",
                details={
                    "restore_id": run.restore_id,
                    "snapshot_id": run.snapshot_id,
                    "phase": RestoreState.SWAPPING.value,
                    "cause": str(second),
                },
            ) from second
        except asyncio.CancelledError:
            await self._apply_pre_swap(run, target, scope, None)
            raise

    async def _rollback(
        self,
        run: RestoreRun,
        target: ServiceTarget,
        scope: Scope,
        cause: BaseException,
    ) -> None:
        """Roll back after a failed apply; leaves the run in ROLLED_BACK."""
        await self._apply_pre_swap(run, target, scope, cause)
        run.advance(RestoreState.ROLLED_BACK)

    async def _apply_pre_swap(
        self,
        run: RestoreRun,
        target: ServiceTarget,
        scope: Scope,
        cause: BaseException | None,
    ) -> None:
        """
        Put the pre-swap copy back onto the live service.

        Raises:
            RestoreUnrecoverable: No copy exists or re-applying it failed
        """
        details = {
            "restore_id": run.restore_id,
            "snapshot_id": run.snapshot_id,
            "target": target.name,
            "phase": RestoreState.SWAPPING.value,
            "cause": str(cause) if cause is not None else "cancelled",
        }

        if run.pre_swap_copy is None:
            run.advance(RestoreState.FAILED)
            logger.critical("restore_unrecoverable", reason="no_pre_swap_copy", **details)
            raise RestoreUnrecoverable(
                "Apply failed and no pre-swap copy exists; target state is unknown",
                details=details,
            ) from cause

        try:
            await target.apply(iter_file(run.pre_swap_copy), scope)
        except ApplyFailed as e:
            run.advance(RestoreState.FAILED)
            details["rollback_error"] = str(e)
            logger.critical("restore_unrecoverable", reason="rollback_failed", **details)
            raise RestoreUnrecoverable(
                "Rollback to the pre-swap copy failed; operator intervention required",
                details=details,
            ) from e

        logger.warning("restore_rolled_back", **details)
