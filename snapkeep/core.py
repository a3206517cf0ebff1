# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Core - Operation entry points for backup, restore and retention.

This module coordinates the components: the catalog, the producer, the
transfer engine and the restore coordinator. Every public operation
returns a result object carrying a ResultCode instead of raising, so the
CLI and the HTTP integration can map outcomes without knowing the error
taxonomy.
"""

import asyncio
import time
from collections import defaultdict
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Dict, List, Tuple, TypedDict

import structlog

from snapkeep.config import SnapkeepConfig
from snapkeep.errors import explain_confirmation_required, explain_missing_remote_storage
from snapkeep.exceptions import (
    Cancelled,
    ConfigurationError,
    ConfirmationRequired,
    OperationTimedOut,
    RestoreUnrecoverable,
    SnapkeepError,
    SnapshotNotFound,
    TargetBusy,
    result_code_for,
)
from snapkeep.models import ResultCode, Scope, Snapshot, SnapshotStatus
from snapkeep.targets.base import ServiceTarget

logger = structlog.get_logger()


@dataclass
class BackupResult:
    """Result of a backup or upload operation."""

    code: ResultCode
    snapshot: Snapshot | None
    error: str | None
    duration_seconds: float
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RestorePreview:
    """Result of a restore dry-run."""

    code: ResultCode
    target: str
    snapshot_ref: str
    scope: str
    snapshot: Snapshot | None = None
    confirmation_token: str | None = None
    expires_at: datetime | None = None
    error: str | None = None


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    code: ResultCode
    restore_id: str | None
    snapshot_id: str | None
    state: str | None
    history: List[str]
    error: str | None
    duration_seconds: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PruneResult:
    """Result of a retention pass."""

    dry_run: bool
    deleted_ids: List[str]
    bytes_freed: int
    remote_deleted: int
    errors: List[str]
    # Candidates left alone because their source had an operation running
    skipped_ids: List[str] = field(default_factory=list)


@dataclass
class EngineMetrics:
    """Metrics for backup and restore operations."""

    total_backups: int
    total_restores: int
    total_failures: int
    last_backup_at: datetime | None
    last_restore_at: datetime | None
    last_error: str | None
    snapshots_by_status: Dict[str, int]
    catalog_bytes: int
    artifact_files: int
    artifact_bytes: int
    bytes_uploaded: int
    bytes_downloaded: int
    transfer_retries: int
    targets_busy: List[str]


class TargetLocks:
    """
    One in-flight operation per target name.

    A second caller fails fast instead of queueing behind the first.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._operations: Dict[str, str] = {}

    @asynccontextmanager
    async def hold(self, target_name: str, operation: str) -> AsyncIterator[None]:
        lock = self._locks[target_name]
        if lock.locked():
            raise TargetBusy(
                f"{target_name} is busy with a {self._operations.get(target_name, 'running')} operation",
                details={"target": target_name, "operation": operation},
            )
        # An unlocked asyncio.Lock is acquired without yielding
        async with lock:
            self._operations[target_name] = operation
            try:
                yield
            finally:
                self._operations.pop(target_name, None)

    def busy(self) -> List[str]:
        return sorted(self._operations)


class ConfirmationLedger:
    """
    Single-use tokens issued by a restore dry-run.

    Tokens live in the catalog, so a dry-run in one process can be
    confirmed from another.
    """

    def __init__(self, catalog, ttl_seconds: float):
        self.catalog = catalog
        self.ttl_seconds = ttl_seconds

    async def issue(
        self,
        target: str,
        snapshot_ref: str,
        snapshot_id: str,
        scope: Scope,
    ) -> Tuple[str, datetime]:
        from ulid import ULID

        token = str(ULID())
        expires_at = datetime.now(UTC) + timedelta(seconds=self.ttl_seconds)
        await self.catalog.save_confirmation(
            token, target, snapshot_ref, snapshot_id, scope, expires_at
        )
        return token, expires_at

    async def consume(
        self,
        token: str | None,
        target: str,
        snapshot_ref: str,
        scope: Scope,
    ) -> str:
        """
        Redeem a token for exactly the restore it was issued for.

        Returns:
            The snapshot id the dry-run resolved

        Raises:
            ConfirmationRequired: Token missing, unknown, expired or bound
                to a different restore
        """
        entry = await self.catalog.take_confirmation(token) if token else None
        if (
            entry is None
            or entry["target"] != target
            or entry["snapshot_ref"] != snapshot_ref
            or entry["scope"] != scope.describe()
        ):
            raise ConfirmationRequired(
                explain_confirmation_required(target, snapshot_ref),
                details={
                    "target": target,
                    "snapshot_ref": snapshot_ref,
                    "token_supplied": bool(token),
                },
            )
        return entry["snapshot_id"]


class EngineState(TypedDict):
    """Runtime state shared by all operations on one vault."""

    catalog: Any  # CatalogStore
    producer: Any  # SnapshotProducer
    coordinator: Any  # RestoreCoordinator
    storage: Any  # BlobStorage or None
    transfer: Any  # TransferEngine or None
    locks: TargetLocks
    confirmations: ConfirmationLedger
    total_backups: int
    total_restores: int
    total_failures: int
    last_backup_at: datetime | None
    last_restore_at: datetime | None
    last_error: str | None


async def initialize_state(config: SnapkeepConfig) -> EngineState:
    """
    Initialize runtime state.

    Creates the vault directories, initializes the catalog, removes
    partial files left by a previous crash and opens remote storage.

    Args:
        config: Snapkeep configuration

    Returns:
        Initialized EngineState dictionary
    """
    from snapkeep.backup.manager import prune_partials
    from snapkeep.backup.producer import SnapshotProducer
    from snapkeep.backup.restore import RestoreCoordinator
    from snapkeep.transfer.engine import TransferEngine
    from snapkeep.transfer.storage import create_blob_storage
    from snapkeep.vault.catalog import CatalogStore

    for path in (
        config.vault_path,
        config.artifacts_path,
        config.staging_path,
        config.rollback_path,
        config.downloads_path,
    ):
        path.mkdir(parents=True, exist_ok=True)

    catalog = CatalogStore(config.catalog_db_path)
    await catalog.initialize()
    prune_partials(config)

    storage = create_blob_storage(config)
    transfer = TransferEngine(storage, catalog, config) if storage is not None else None

    logger.info(
        "engine_initialized",
        vault_path=str(config.vault_path),
        remote_storage=config.remote_storage,
    )

    return EngineState(
        catalog=catalog,
        producer=SnapshotProducer(config, catalog),
        coordinator=RestoreCoordinator(config, catalog),
        storage=storage,
        transfer=transfer,
        locks=TargetLocks(),
        confirmations=ConfirmationLedger(catalog, config.confirmation_ttl_seconds),
        total_backups=0,
        total_restores=0,
        total_failures=0,
        last_backup_at=None,
        last_restore_at=None,
        last_error=None,
    )


async def shutdown_state(state: EngineState) -> None:
    """Release remote storage clients."""
    if state["storage"] is not None:
        await state["storage"].close()
    logger.info("engine_shutdown")


# ============================================================================
# Cancellation and timeouts
# ============================================================================


async def run_controlled(
    operation: Awaitable,
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
    operation_name: str = "operation",
):
    """
    Run `operation` until it finishes, `cancel` is set or `timeout` passes.

    On cancel or timeout the operation is cancelled and awaited, so its own
    cleanup finishes before this returns.

    Raises:
        Cancelled: `cancel` was set
        OperationTimedOut: `timeout` elapsed
        RestoreUnrecoverable: Cleanup of the cancelled operation failed
    """
    task = asyncio.ensure_future(operation)
    waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
    pending = {task} if waiter is None else {task, waiter}

    try:
        done, _ = await asyncio.wait(
            pending, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise
    finally:
        if waiter is not None and not waiter.done():
            waiter.cancel()

    if task in done:
        return task.result()

    timed_out = waiter is None or waiter not in done
    task.cancel()
    try:
        result = await task
    except asyncio.CancelledError:
        pass
    except (RestoreUnrecoverable, Cancelled):
        raise
    except SnapkeepError as e:
        # Failed on its own while being cancelled; report the cancellation
        logger.debug("cancelled_operation_error", operation=operation_name, error=str(e))
    else:
        # Finished before the cancellation landed
        return result

    if timed_out:
        logger.warning("operation_timed_out", operation=operation_name, timeout=timeout)
        raise OperationTimedOut(
            f"{operation_name} exceeded {timeout}s",
            details={"operation": operation_name, "timeout": timeout},
        )
    logger.warning("operation_cancelled", operation=operation_name)
    raise Cancelled(f"{operation_name} was cancelled", details={"operation": operation_name})


def _record_failure(state: EngineState, error: BaseException) -> None:
    state["total_failures"] += 1
    state["last_error"] = str(error) or type(error).__name__


# ============================================================================
# Backup
# ============================================================================


async def run_backup(
    config: SnapkeepConfig,
    state: EngineState,
    target: ServiceTarget,
    scope: Scope | None = None,
    *,
    upload: bool | None = None,
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
) -> BackupResult:
    """
    Snapshot a target, record it, and upload it when remote storage is set.

    Args:
        config: Snapkeep configuration
        state: Runtime state
        target: Service to back up
        scope: FULL (default) or NAMED_SUBSET
        upload: Force upload on or off; defaults to "remote storage configured"
        cancel: Set to cancel the running backup
        timeout: Overall ceiling in seconds

    Returns:
        BackupResult; `snapshot` is the latest catalog record when one exists
    """
    from ulid import ULID

    operation_id = str(ULID())
    scope = scope or Scope.full()
    start = time.monotonic()
    recorded: Dict[str, Snapshot] = {}

    logger.info(
        "backup_started",
        operation_id=operation_id,
        target=target.name,
        scope=scope.describe(),
    )

    try:
        async with state["locks"].hold(target.name, "backup"):
            await run_controlled(
                _backup(config, state, target, scope, upload, recorded),
                cancel,
                timeout,
                operation_name=f"backup of {target.name}",
            )
    except SnapkeepError as e:
        _record_failure(state, e)
        snapshot = await _latest(state, recorded.get("snapshot"))
        logger.error(
            "backup_failed",
            operation_id=operation_id,
            target=target.name,
            code=e.result_code.value,
            error=str(e),
        )
        return BackupResult(
            code=e.result_code,
            snapshot=snapshot,
            error=str(e),
            duration_seconds=time.monotonic() - start,
            details=dict(e.details),
        )

    snapshot = recorded["snapshot"]
    state["total_backups"] += 1
    state["last_backup_at"] = datetime.now(UTC)
    duration = time.monotonic() - start

    logger.info(
        "backup_completed",
        operation_id=operation_id,
        snapshot_id=snapshot.id,
        status=snapshot.status.value,
        size=snapshot.size_bytes,
        duration=duration,
    )
    return BackupResult(
        code=ResultCode.OK,
        snapshot=snapshot,
        error=None,
        duration_seconds=duration,
    )


async def _backup(
    config: SnapkeepConfig,
    state: EngineState,
    target: ServiceTarget,
    scope: Scope,
    upload: bool | None,
    recorded: Dict[str, Snapshot],
) -> Snapshot:
    snapshot = await state["producer"].produce(target, scope)
    recorded["snapshot"] = await state["catalog"].put(snapshot)

    if upload is None:
        upload = state["transfer"] is not None
    if upload:
        recorded["snapshot"] = await _upload(config, state, recorded["snapshot"])
    return recorded["snapshot"]


async def _upload(config: SnapkeepConfig, state: EngineState, snapshot: Snapshot) -> Snapshot:
    from snapkeep.backup.manager import remove_artifact
    from snapkeep.transfer.engine import remote_key_for

    engine = state["transfer"]
    if engine is None:
        raise ConfigurationError(
            explain_missing_remote_storage(),
            details={"snapshot_id": snapshot.id},
        )
    if not snapshot.local_path or not Path(snapshot.local_path).is_file():
        raise SnapshotNotFound(
            f"Local artifact for {snapshot.id} is missing",
            details={"snapshot_id": snapshot.id, "local_path": snapshot.local_path},
        )

    local_path = Path(snapshot.local_path)
    try:
        snapshot = await engine.upload(snapshot, local_path, remote_key_for(snapshot))
    except SnapkeepError as e:
        e.details.setdefault("snapshot_id", snapshot.id)
        raise

    if config.delete_local_after_upload and snapshot.status == SnapshotStatus.REMOTE:
        freed = remove_artifact(local_path)
        logger.info("local_artifact_removed", snapshot_id=snapshot.id, bytes_freed=freed)
    return snapshot


async def _latest(state: EngineState, snapshot: Snapshot | None) -> Snapshot | None:
    if snapshot is None:
        return None
    try:
        return await state["catalog"].get(snapshot.id)
    except SnapshotNotFound:
        return None


async def resume_upload(
    config: SnapkeepConfig,
    state: EngineState,
    snapshot_id: str,
    *,
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
) -> BackupResult:
    """
    Re-run the upload of a LOCAL or interrupted snapshot.

    A persisted transfer marker makes the upload continue from the last
    acknowledged chunk.
    """
    start = time.monotonic()
    try:
        snapshot = await state["catalog"].get(snapshot_id)
        if snapshot.status == SnapshotStatus.REMOTE:
            return BackupResult(
                code=ResultCode.OK,
                snapshot=snapshot,
                error=None,
                duration_seconds=time.monotonic() - start,
            )
        async with state["locks"].hold(snapshot.source_name, "upload"):
            snapshot = await run_controlled(
                _upload(config, state, snapshot),
                cancel,
                timeout,
                operation_name=f"upload of {snapshot_id}",
            )
    except SnapkeepError as e:
        _record_failure(state, e)
        logger.error("resume_upload_failed", snapshot_id=snapshot_id, error=str(e))
        try:
            current = await state["catalog"].get(snapshot_id)
        except SnapshotNotFound:
            current = None
        return BackupResult(
            code=e.result_code,
            snapshot=current,
            error=str(e),
            duration_seconds=time.monotonic() - start,
            details=dict(e.details),
        )

    logger.info("upload_resumed", snapshot_id=snapshot_id, status=snapshot.status.value)
    return BackupResult(
        code=ResultCode.OK,
        snapshot=snapshot,
        error=None,
        duration_seconds=time.monotonic() - start,
    )


# ============================================================================
# Restore
# ============================================================================


async def plan_restore(
    config: SnapkeepConfig,
    state: EngineState,
    target: ServiceTarget,
    snapshot_ref: str,
    scope: Scope | None = None,
) -> RestorePreview:
    """
    Validate a restore without touching the target.

    Resolves and verifies the snapshot, then issues a confirmation token
    that authorises exactly this restore once.
    """
    scope = scope or Scope.full()
    try:
        plan = await state["coordinator"].validate(target, snapshot_ref, scope)
    except SnapkeepError as e:
        logger.warning(
            "restore_plan_rejected",
            target=target.name,
            snapshot_ref=snapshot_ref,
            error=str(e),
        )
        return RestorePreview(
            code=e.result_code,
            target=target.name,
            snapshot_ref=snapshot_ref,
            scope=scope.describe(),
            error=str(e),
        )

    token, expires_at = await state["confirmations"].issue(
        target.name, snapshot_ref, plan.snapshot.id, scope
    )
    logger.info(
        "restore_planned",
        target=target.name,
        snapshot_id=plan.snapshot.id,
        scope=scope.describe(),
        expires_at=expires_at.isoformat(),
    )
    return RestorePreview(
        code=ResultCode.OK,
        target=target.name,
        snapshot_ref=snapshot_ref,
        scope=scope.describe(),
        snapshot=plan.snapshot,
        confirmation_token=token,
        expires_at=expires_at,
    )


async def run_restore(
    config: SnapkeepConfig,
    state: EngineState,
    target: ServiceTarget,
    snapshot_ref: str,
    scope: Scope | None = None,
    *,
    force: bool = False,
    confirmation_token: str | None = None,
    quiesce: AbstractAsyncContextManager | None = None,
    cancel: asyncio.Event | None = None,
    timeout: float | None = None,
) -> RestoreResult:
    """
    Restore a target from a snapshot.

    Without `force`, `confirmation_token` must come from plan_restore() for
    the same target, snapshot reference and scope.

    Returns:
        RestoreResult; `state` and `history` come from the restore record
    """
    from ulid import ULID

    scope = scope or Scope.full()
    restore_id = str(ULID())
    start = time.monotonic()

    try:
        async with state["locks"].hold(target.name, "restore"):
            confirmed_id = None
            if not force:
                confirmed_id = await state["confirmations"].consume(
                    confirmation_token, target.name, snapshot_ref, scope
                )
            run = await run_controlled(
                state["coordinator"].restore(
                    target,
                    snapshot_ref,
                    scope,
                    quiesce=quiesce,
                    restore_id=restore_id,
                    confirmed_snapshot_id=confirmed_id,
                ),
                cancel,
                timeout,
                operation_name=f"restore of {target.name}",
            )
    except SnapkeepError as e:
        _record_failure(state, e)
        record = await state["catalog"].get_restore(restore_id)
        level = "critical" if isinstance(e, RestoreUnrecoverable) else "error"
        getattr(logger, level)(
            "restore_failed",
            restore_id=restore_id,
            target=target.name,
            code=e.result_code.value,
            error=str(e),
        )
        return RestoreResult(
            code=e.result_code,
            restore_id=restore_id if record else None,
            snapshot_id=record["snapshot_id"] if record else None,
            state=record["state"] if record else None,
            history=record["history"] if record else [],
            error=str(e),
            duration_seconds=time.monotonic() - start,
            details=dict(e.details),
        )

    state["total_restores"] += 1
    state["last_restore_at"] = datetime.now(UTC)
    return RestoreResult(
        code=result_code_for(None),
        restore_id=run.restore_id,
        snapshot_id=run.snapshot_id,
        state=run.state.value,
        history=list(run.history),
        error=None,
        duration_seconds=time.monotonic() - start,
    )


# ============================================================================
# Catalog queries and retention
# ============================================================================


def list_snapshots(state: EngineState, source_name: str | None = None):
    """Lazy listing of snapshots, newest first."""
    return state["catalog"].list(source_name)


async def prune_snapshots(
    config: SnapkeepConfig,
    state: EngineState,
    source_name: str | None = None,
    keep_last: int | None = None,
    older_than_days: int | None = None,
    dry_run: bool = False,
) -> PruneResult:
    """
    Delete snapshots outside the retention window.

    A snapshot is kept when it is among the `keep_last` newest of its
    source or younger than `older_than_days`. With neither rule given the
    configured retention applies; with no retention at all nothing is
    deleted. Snapshots with an upload in flight are never pruned, and
    sources with a backup or restore running are skipped.

    Args:
        config: Snapkeep configuration
        state: Runtime state
        source_name: Limit to one source
        keep_last: Newest snapshots to keep per source
        older_than_days: Keep snapshots younger than this
        dry_run: Report what would be deleted without deleting

    Returns:
        PruneResult
    """
    from snapkeep.backup.manager import remove_artifact

    if keep_last is None and older_than_days is None:
        keep_last = config.retention_keep_last
        older_than_days = config.retention_days

    result = PruneResult(
        dry_run=dry_run, deleted_ids=[], bytes_freed=0, remote_deleted=0, errors=[]
    )
    if keep_last is None and older_than_days is None:
        return result

    cutoff = (
        datetime.now(UTC) - timedelta(days=older_than_days)
        if older_than_days is not None
        else None
    )
    seen: Dict[str, int] = defaultdict(int)
    candidates: List[Snapshot] = []

    async for snapshot in state["catalog"].list(source_name):
        seen[snapshot.source_name] += 1
        if snapshot.status in (SnapshotStatus.CREATING, SnapshotStatus.UPLOADING):
            continue
        within_count = keep_last is not None and seen[snapshot.source_name] <= keep_last
        within_age = cutoff is not None and snapshot.created_at >= cutoff
        if not (within_count or within_age):
            candidates.append(snapshot)

    for snapshot in candidates:
        if dry_run:
            result.deleted_ids.append(snapshot.id)
            result.bytes_freed += snapshot.size_bytes
            continue
        try:
            async with state["locks"].hold(snapshot.source_name, "prune"):
                # Re-read under the lock; an upload may have finished meanwhile
                current = await state["catalog"].get(snapshot.id)
                if current.status in (SnapshotStatus.CREATING, SnapshotStatus.UPLOADING):
                    continue
                if current.storage_location:
                    await _delete_remote(config, current)
                    result.remote_deleted += 1
                if current.local_path:
                    result.bytes_freed += remove_artifact(Path(current.local_path))
                await state["catalog"].delete(current.id)
            result.deleted_ids.append(snapshot.id)
        except TargetBusy:
            result.skipped_ids.append(snapshot.id)
            logger.info(
                "prune_skipped_busy_source",
                snapshot_id=snapshot.id,
                source=snapshot.source_name,
            )
        except SnapshotNotFound:
            # Deleted by someone else since the listing
            continue
        except SnapkeepError as e:
            result.errors.append(f"{snapshot.id}: {e}")
            logger.error("prune_failed", snapshot_id=snapshot.id, error=str(e))

    logger.info(
        "snapshots_pruned",
        dry_run=dry_run,
        deleted=len(result.deleted_ids),
        skipped=len(result.skipped_ids),
        bytes_freed=result.bytes_freed,
        errors=len(result.errors),
    )
    return result


async def _delete_remote(config: SnapkeepConfig, snapshot: Snapshot) -> None:
    from snapkeep.transfer.engine import TransferEngine
    from snapkeep.transfer.storage import open_locator

    storage, key = open_locator(snapshot.storage_location, config)
    try:
        engine = TransferEngine(storage, None, config)
        await engine.delete_remote(key)
    finally:
        await storage.close()


async def delete_snapshot(config: SnapkeepConfig, state: EngineState, snapshot_id: str) -> bool:
    """
    Delete one snapshot everywhere.

    Returns:
        False if the catalog has no such snapshot
    """
    from snapkeep.backup.manager import remove_artifact

    try:
        snapshot = await state["catalog"].get(snapshot_id)
    except SnapshotNotFound:
        return False
    async with state["locks"].hold(snapshot.source_name, "delete"):
        if snapshot.storage_location and snapshot.status != SnapshotStatus.UPLOADING:
            await _delete_remote(config, snapshot)
        if snapshot.local_path:
            remove_artifact(Path(snapshot.local_path))
        await state["catalog"].delete(snapshot_id)
    logger.info("snapshot_deleted", snapshot_id=snapshot_id)
    return True


# ============================================================================
# Metrics
# ============================================================================


async def get_metrics(config: SnapkeepConfig, state: EngineState) -> EngineMetrics:
    """
    Get current metrics.

    Args:
        config: Snapkeep configuration
        state: Runtime state

    Returns:
        EngineMetrics
    """
    from snapkeep.backup.manager import get_artifact_stats

    catalog_stats = await state["catalog"].stats()
    artifact_stats = await get_artifact_stats(config)
    engine = state["transfer"]

    return EngineMetrics(
        total_backups=state["total_backups"],
        total_restores=state["total_restores"],
        total_failures=state["total_failures"],
        last_backup_at=state["last_backup_at"],
        last_restore_at=state["last_restore_at"],
        last_error=state["last_error"],
        snapshots_by_status=catalog_stats["snapshots_by_status"],
        catalog_bytes=catalog_stats["total_bytes"],
        artifact_files=artifact_stats["artifact_files"],
        artifact_bytes=artifact_stats["artifact_bytes"],
        bytes_uploaded=engine.stats.bytes_sent if engine else 0,
        bytes_downloaded=engine.stats.bytes_received if engine else 0,
        transfer_retries=engine.stats.retries if engine else 0,
        targets_busy=state["locks"].busy(),
    )
