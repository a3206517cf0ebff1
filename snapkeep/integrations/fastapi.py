# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep FastAPI Integration - Admin API for backups and restores.

This module provides a complete integration with FastAPI including:
- Lifespan management (startup/shutdown)
- Protected admin endpoints
- Scheduled daily backups
- Health checks
"""

import os
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import Any, Dict, Mapping

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from snapkeep.config import SnapkeepConfig
from snapkeep.core import (
    EngineState,
    delete_snapshot,
    get_metrics,
    initialize_state,
    plan_restore,
    prune_snapshots,
    resume_upload,
    run_backup,
    run_restore,
    shutdown_state,
)
from snapkeep.exceptions import SnapkeepError, SnapshotNotFound, TargetBusy
from snapkeep.models import ResultCode, Scope, Snapshot
from snapkeep.targets.base import ServiceTarget

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)

_HTTP_STATUS = {
    ResultCode.OK: 200,
    ResultCode.VALIDATION_FAILED: 422,
    ResultCode.BUSY: 409,
    ResultCode.CANCELLED: 499,
    ResultCode.BACKUP_FAILED: 500,
    ResultCode.TRANSFER_FAILED: 502,
    ResultCode.RESTORE_FAILED: 500,
    ResultCode.RESTORE_UNRECOVERABLE: 500,
}


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the SNAPKEEP_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("SNAPKEEP_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="SNAPKEEP_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if not secrets.compare_digest(credentials.credentials, api_key):
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def snapshot_to_dict(snapshot: Snapshot | None) -> dict | None:
    """JSON-safe view of a snapshot record."""
    if snapshot is None:
        return None
    data = snapshot.to_manifest()
    data["local_path"] = snapshot.local_path
    return data


def _respond(code: ResultCode, body: dict) -> JSONResponse:
    body["code"] = code.value
    return JSONResponse(status_code=_HTTP_STATUS[code], content=body)


def _parse_scope(subset: str | None) -> Scope:
    return Scope.subset(subset) if subset else Scope.full()


def get_snapkeep_state(request: Request) -> EngineState:
    """
    Get Snapkeep state from the running app.

    Raises:
        HTTPException: 503 until the lifespan has initialized the engine
    """
    state = getattr(request.app.state, "snapkeep_state", None)
    if not state:
        raise HTTPException(status_code=503, detail="Snapkeep is not initialized")
    return state


def register_snapkeep_routes(
    app: FastAPI,
    config: SnapkeepConfig,
    targets: Mapping[str, ServiceTarget],
    prefix: str = "/admin/snapkeep",
) -> None:
    """
    Register Snapkeep admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication. Engine state is
    read from app.state at request time, so routes can be registered
    before startup.

    Args:
        app: FastAPI application
        config: Snapkeep configuration
        targets: Service targets addressable by name
        prefix: URL prefix for endpoints (default: /admin/snapkeep)
    """

    def resolve_target(name: str) -> ServiceTarget:
        target = targets.get(name)
        if target is None:
            raise HTTPException(status_code=404, detail=f"Unknown target: {name}")
        return target

    @app.post(f"{prefix}/targets/{{name}}/backup", dependencies=[Depends(verify_api_key)])
    async def trigger_backup(
        name: str,
        subset: str | None = None,
        upload: bool | None = None,
        timeout: float | None = None,
        state: EngineState = Depends(get_snapkeep_state),
    ) -> JSONResponse:
        """
        Back up one target.

        Returns the backup result including the recorded snapshot.
        """
        result = await run_backup(
            config,
            state,
            resolve_target(name),
            _parse_scope(subset),
            upload=upload,
            timeout=timeout,
        )
        return _respond(
            result.code,
            {
                "snapshot": snapshot_to_dict(result.snapshot),
                "error": result.error,
                "duration_seconds": result.duration_seconds,
            },
        )

    @app.post(
        f"{prefix}/targets/{{name}}/restore/plan", dependencies=[Depends(verify_api_key)]
    )
    async def plan_target_restore(
        name: str,
        snapshot_ref: str,
        subset: str | None = None,
        state: EngineState = Depends(get_snapkeep_state),
    ) -> JSONResponse:
        """
        Dry-run a restore.

        Validates the snapshot and returns a single-use confirmation token.
        """
        preview = await plan_restore(
            config, state, resolve_target(name), snapshot_ref, _parse_scope(subset)
        )
        return _respond(
            preview.code,
            {
                "target": preview.target,
                "snapshot_ref": preview.snapshot_ref,
                "scope": preview.scope,
                "snapshot": snapshot_to_dict(preview.snapshot),
                "confirmation_token": preview.confirmation_token,
                "expires_at": preview.expires_at.isoformat() if preview.expires_at else None,
                "error": preview.error,
            },
        )

    @app.post(f"{prefix}/targets/{{name}}/restore", dependencies=[Depends(verify_api_key)])
    async def restore_target(
        name: str,
        snapshot_ref: str,
        subset: str | None = None,
        confirmation_token: str | None = None,
        force: bool = False,
        timeout: float | None = None,
        state: EngineState = Depends(get_snapkeep_state),
    ) -> JSONResponse:
        """
        Restore a target.

        Args:
            snapshot_ref: Catalog id, local path or remote locator
            confirmation_token: Token from the plan endpoint
            force: Skip the confirmation token
        """
        result = await run_restore(
            config,
            state,
            resolve_target(name),
            snapshot_ref,
            _parse_scope(subset),
            force=force,
            confirmation_token=confirmation_token,
            timeout=timeout,
        )
        return _respond(
            result.code,
            {
                "restore_id": result.restore_id,
                "snapshot_id": result.snapshot_id,
                "state": result.state,
                "history": result.history,
                "error": result.error,
                "duration_seconds": result.duration_seconds,
            },
        )

    @app.get(f"{prefix}/snapshots", dependencies=[Depends(verify_api_key)])
    async def list_snapshot_records(
        source_name: str | None = None,
        limit: int = 50,
        state: EngineState = Depends(get_snapkeep_state),
    ) -> list:
        """
        List snapshots, newest first.

        Args:
            source_name: Filter by source
            limit: Maximum number of snapshots to return
        """
        snapshots = await state["catalog"].list(source_name).collect(limit)
        return [snapshot_to_dict(s) for s in snapshots]

    @app.get(f"{prefix}/snapshots/{{snapshot_id}}", dependencies=[Depends(verify_api_key)])
    async def get_snapshot_record(
        snapshot_id: str,
        state: EngineState = Depends(get_snapkeep_state),
    ) -> dict:
        try:
            snapshot = await state["catalog"].get(snapshot_id)
        except SnapshotNotFound:
            raise HTTPException(status_code=404, detail=f"Snapshot not found: {snapshot_id}")
        return snapshot_to_dict(snapshot)

    @app.delete(f"{prefix}/snapshots/{{snapshot_id}}", dependencies=[Depends(verify_api_key)])
    async def delete_snapshot_record(
        snapshot_id: str,
        state: EngineState = Depends(get_snapkeep_state),
    ) -> dict:
        """Delete a snapshot from the catalog, the vault and remote storage."""
        try:
            deleted = await delete_snapshot(config, state, snapshot_id)
        except TargetBusy as e:
            raise HTTPException(status_code=409, detail=str(e))
        except SnapkeepError as e:
            raise HTTPException(status_code=_HTTP_STATUS[e.result_code], detail=str(e))
        if not deleted:
            raise HTTPException(status_code=404, detail=f"Snapshot not found: {snapshot_id}")
        return {"deleted": snapshot_id}

    @app.post(
        f"{prefix}/snapshots/{{snapshot_id}}/upload", dependencies=[Depends(verify_api_key)]
    )
    async def resume_snapshot_upload(
        snapshot_id: str,
        state: EngineState = Depends(get_snapkeep_state),
    ) -> JSONResponse:
        """Resume an interrupted upload."""
        result = await resume_upload(config, state, snapshot_id)
        return _respond(
            result.code,
            {"snapshot": snapshot_to_dict(result.snapshot), "error": result.error},
        )

    @app.post(f"{prefix}/prune", dependencies=[Depends(verify_api_key)])
    async def prune(
        source_name: str | None = None,
        keep_last: int | None = None,
        older_than_days: int | None = None,
        dry_run: bool = True,
        state: EngineState = Depends(get_snapkeep_state),
    ) -> dict:
        """
        Apply retention.

        Defaults to a dry run; pass dry_run=false to delete.
        """
        result = await prune_snapshots(
            config, state, source_name, keep_last, older_than_days, dry_run
        )
        return {
            "dry_run": result.dry_run,
            "deleted_ids": result.deleted_ids,
            "bytes_freed": result.bytes_freed,
            "remote_deleted": result.remote_deleted,
            "skipped_ids": result.skipped_ids,
            "errors": result.errors,
        }

    @app.get(f"{prefix}/restores", dependencies=[Depends(verify_api_key)])
    async def list_restore_records(
        target: str | None = None,
        limit: int = 50,
        state: EngineState = Depends(get_snapkeep_state),
    ) -> list:
        """List recorded restores, newest first."""
        return await state["catalog"].list_restores(target, limit)

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_status(state: EngineState = Depends(get_snapkeep_state)) -> dict:
        """
        Get engine status and metrics.
        """
        metrics = await get_metrics(config, state)
        return {
            "targets": sorted(targets),
            "targets_busy": metrics.targets_busy,
            "remote_storage": config.remote_storage,
            "total_backups": metrics.total_backups,
            "total_restores": metrics.total_restores,
            "total_failures": metrics.total_failures,
            "last_backup_at": (
                metrics.last_backup_at.isoformat() if metrics.last_backup_at else None
            ),
            "last_restore_at": (
                metrics.last_restore_at.isoformat() if metrics.last_restore_at else None
            ),
            "last_error": metrics.last_error,
            "snapshots_by_status": metrics.snapshots_by_status,
            "artifact_files": metrics.artifact_files,
            "artifact_bytes": metrics.artifact_bytes,
            "artifact_mb": round(metrics.artifact_bytes / (1024 * 1024), 2),
            "bytes_uploaded": metrics.bytes_uploaded,
            "bytes_downloaded": metrics.bytes_downloaded,
            "transfer_retries": metrics.transfer_retries,
        }

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check(state: EngineState = Depends(get_snapkeep_state)) -> dict:
        """
        Health check endpoint.

        Verifies the catalog, remote storage and every target.
        """
        catalog_ok = config.catalog_db_path.exists()

        storage_ok = None
        storage_error = None
        if state["storage"] is not None:
            try:
                await state["storage"].exists(".snapkeep-health")
                storage_ok = True
            except SnapkeepError as e:
                storage_ok = False
                storage_error = str(e)

        target_status: Dict[str, Any] = {}
        for name, target in targets.items():
            try:
                await target.probe()
                target_status[name] = {"reachable": True, "error": None}
            except SnapkeepError as e:
                target_status[name] = {"reachable": False, "error": str(e)}

        targets_ok = all(t["reachable"] for t in target_status.values())
        status = "healthy"
        if storage_ok is False or not targets_ok:
            status = "degraded"
        if not catalog_ok:
            status = "unhealthy"

        return {
            "status": status,
            "catalog_accessible": catalog_ok,
            "storage_reachable": storage_ok,
            "storage_error": storage_error,
            "targets": target_status,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration.
        """
        return {
            "vault_path": str(config.vault_path),
            "remote_storage": config.remote_storage,
            "region": config.region,
            "chunk_size": config.chunk_size,
            "max_attempts": config.max_attempts,
            "digest_algorithm": config.digest_algorithm,
            "compress_artifacts": config.compress_artifacts,
            "retain_pre_restore_copy": config.retain_pre_restore_copy,
            "retention_keep_last": config.retention_keep_last,
            "retention_days": config.retention_days,
            "schedule_daily_at": config.schedule_daily_at,
        }


def setup_scheduled_backups(
    config: SnapkeepConfig,
    state: EngineState,
    targets: Mapping[str, ServiceTarget],
):
    """
    Back up every target daily at config.schedule_daily_at (UTC).

    Returns:
        The started AsyncIOScheduler, or None if apscheduler is not installed
    """
    try:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        from apscheduler.triggers.cron import CronTrigger
    except ImportError:
        logger.warning(
            "apscheduler_not_installed",
            message="Install snapkeep[scheduler] for scheduled backups",
        )
        return None

    scheduler = AsyncIOScheduler(timezone=UTC)
    hour, minute = map(int, config.schedule_daily_at.split(":"))

    async def scheduled_backup():
        """Back up each target, then apply retention."""
        logger.info("scheduled_backup_starting", targets=sorted(targets))
        for name, target in targets.items():
            result = await run_backup(config, state, target)
            logger.info(
                "scheduled_backup_finished",
                target=name,
                code=result.code.value,
                snapshot_id=result.snapshot.id if result.snapshot else None,
            )
        if config.retention_keep_last is not None or config.retention_days is not None:
            await prune_snapshots(config, state)

    scheduler.add_job(
        scheduled_backup,
        trigger=CronTrigger(hour=hour, minute=minute, timezone=UTC),
        id="snapkeep_scheduled",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.start()

    logger.info(
        "scheduler_started",
        schedule=config.schedule_daily_at,
        next_run=scheduler.get_job("snapkeep_scheduled").next_run_time.isoformat(),
    )
    return scheduler


@asynccontextmanager
async def snapkeep_lifespan(
    app: FastAPI,
    config: SnapkeepConfig,
    targets: Mapping[str, ServiceTarget] | None = None,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: snapkeep_lifespan(app, config, targets))
        register_snapkeep_routes(app, config, targets)

    Args:
        app: FastAPI application
        config: Snapkeep configuration
        targets: Targets for scheduled backups
    """
    logger.info("snapkeep_lifespan_starting")

    state = await initialize_state(config)
    app.state.snapkeep_state = state
    app.state.snapkeep_config = config

    scheduler = None
    if config.schedule_daily_at and targets:
        scheduler = setup_scheduled_backups(config, state, targets)

    logger.info("snapkeep_lifespan_started")

    try:
        yield
    finally:
        logger.info("snapkeep_lifespan_stopping")
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await shutdown_state(state)
        app.state.snapkeep_state = None
        logger.info("snapkeep_lifespan_stopped")


def create_app(
    config: SnapkeepConfig,
    targets: Mapping[str, ServiceTarget],
    prefix: str = "/admin/snapkeep",
) -> FastAPI:
    """
    Build a FastAPI app serving the Snapkeep admin API.

    This is the main entry point for running Snapkeep as a service.
    """
    app = FastAPI(
        title="snapkeep",
        lifespan=lambda app: snapkeep_lifespan(app, config, targets),
    )
    register_snapkeep_routes(app, config, targets, prefix)
    return app


def get_snapkeep_config(app: FastAPI) -> SnapkeepConfig:
    """
    Get Snapkeep config from a FastAPI app.

    Raises:
        RuntimeError: If Snapkeep is not initialized
    """
    config = getattr(app.state, "snapkeep_config", None)
    if not config:
        raise RuntimeError("Snapkeep not initialized. Use snapkeep_lifespan or create_app.")
    return config
