# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Critical Restore Tests for Snapkeep.

These tests verify the restore guarantees:
1. Validation never touches the live service
2. A failed apply is rolled back to the pre-swap copy and retried once
3. A second failure leaves the service rolled back, not half-restored
4. A failed rollback is reported as unrecoverable
5. Every restore, successful or not, is recorded for audit
"""

from pathlib import Path

import pytest

from snapkeep.exceptions import (
    IntegrityMismatch,
    RestoreFailed,
    RestoreUnrecoverable,
    SnapshotNotFound,
    SubsetNotPresent,
    UnsupportedScope,
    ValidationFailed,
)
from snapkeep.models import RestoreState, Scope, ServiceKind, Snapshot, SnapshotStatus

LIVE_DUMP_EDIT = (b"(1), (2), (3)", b"(42)")


async def _backup(state, target, scope: Scope | None = None) -> Snapshot:
    snapshot = await state["producer"].produce(target, scope)
    return await state["catalog"].put(snapshot)


def _drift(target) -> bytes:
    """Change the live data after the backup was taken; return the new bytes."""
    target.data = target.data.replace(*LIVE_DUMP_EDIT)
    return target.data


# ============================================================================
# Successful restores
# ============================================================================

@pytest.mark.asyncio
async def test_full_restore_completes(engine_state, target, test_config):
    backed_up = target.data
    snapshot = await _backup(engine_state, target)
    _drift(target)

    run = await engine_state["coordinator"].restore(target, snapshot.id)

    assert run.state == RestoreState.COMPLETE
    assert run.history == ["validating", "staging", "swapping", "complete"]
    assert run.snapshot_id == snapshot.id
    assert target.data == backed_up
    assert target.applied == [backed_up]
    assert target.quiesce_events == ["enter", "exit"]

    record = await engine_state["catalog"].get_restore(run.restore_id)
    assert record["state"] == "complete"
    assert record["snapshot_id"] == snapshot.id

    # Staging and rollback copies are removed afterwards
    assert not any(test_config.staging_path.iterdir())
    assert not any(test_config.rollback_path.iterdir())


@pytest.mark.asyncio
async def test_subset_restore_applies_only_that_database(engine_state, target):
    snapshot = await _backup(engine_state, target)
    live = _drift(target)

    run = await engine_state["coordinator"].restore(target, snapshot.id, Scope.subset("shop"))

    assert run.state == RestoreState.COMPLETE
    assert target.applied == [
        b"\\connect shop\n"
        b"CREATE TABLE orders (id integer);\n"
        b"INSERT INTO orders VALUES (1), (2), (3);\n"
    ]
    # FakeTarget leaves the rest of the live data alone for subset applies
    assert target.data == live


@pytest.mark.asyncio
async def test_restore_from_artifact_path(engine_state, target):
    """A local artifact path with a manifest sidecar is restorable directly."""
    backed_up = target.data
    snapshot = await _backup(engine_state, target)
    _drift(target)

    run = await engine_state["coordinator"].restore(target, snapshot.local_path)

    assert run.state == RestoreState.COMPLETE
    assert run.snapshot_id == snapshot.id
    assert target.data == backed_up


@pytest.mark.asyncio
async def test_restore_downloads_when_local_copy_is_gone(engine_state, target, test_config):
    from snapkeep.transfer.engine import remote_key_for

    backed_up = target.data
    snapshot = await _backup(engine_state, target)
    remote = await engine_state["transfer"].upload(
        snapshot, Path(snapshot.local_path), remote_key_for(snapshot)
    )
    Path(snapshot.local_path).unlink()
    _drift(target)

    run = await engine_state["coordinator"].restore(target, snapshot.id)

    assert run.state == RestoreState.COMPLETE
    assert target.data == backed_up
    # The downloaded copy is not kept
    assert not any(test_config.downloads_path.iterdir())

    # A bare remote locator works without any catalog record
    await engine_state["catalog"].delete(snapshot.id)
    target.data = b"\\connect shop\nDROP TABLE orders;\n"
    run = await engine_state["coordinator"].restore(target, remote.storage_location)
    assert run.state == RestoreState.COMPLETE
    assert target.data == backed_up


# ============================================================================
# Validation failures leave the target untouched
# ============================================================================

@pytest.mark.asyncio
async def test_missing_subset_touches_nothing(engine_state, target):
    snapshot = await _backup(engine_state, target)

    with pytest.raises(SubsetNotPresent):
        await engine_state["coordinator"].restore(target, snapshot.id, Scope.subset("inventory"))

    assert target.applied == []
    assert target.quiesce_events == []
    records = await engine_state["catalog"].list_restores("pg-main")
    assert records[0]["state"] == "failed"
    assert records[0]["history"] == ["validating", "failed"]


@pytest.mark.asyncio
async def test_tampered_artifact_fails_validation(engine_state, target):
    snapshot = await _backup(engine_state, target)
    artifact = Path(snapshot.local_path)
    data = bytearray(artifact.read_bytes())
    data[-1] ^= 0x01
    artifact.write_bytes(bytes(data))

    with pytest.raises(IntegrityMismatch) as exc_info:
        await engine_state["coordinator"].restore(target, snapshot.id)

    assert exc_info.value.expected == snapshot.digest
    assert target.applied == []
    assert target.quiesce_events == []


@pytest.mark.asyncio
async def test_subset_restore_on_key_value_target(engine_state, make_target):
    cache = make_target(name="cache", kind=ServiceKind.KEY_VALUE, data=b"REDIS0011" + b"\x00" * 64)
    snapshot = await _backup(engine_state, cache)

    with pytest.raises(UnsupportedScope):
        await engine_state["coordinator"].restore(cache, snapshot.id, Scope.subset("0"))
    assert cache.applied == []


@pytest.mark.asyncio
async def test_kind_mismatch_is_rejected(engine_state, target, make_target):
    snapshot = await _backup(engine_state, target)
    cache = make_target(name="cache", kind=ServiceKind.KEY_VALUE)

    with pytest.raises(ValidationFailed):
        await engine_state["coordinator"].validate(cache, snapshot.id, Scope.full())


@pytest.mark.asyncio
async def test_unknown_and_incomplete_snapshots(engine_state, target):
    from datetime import datetime, UTC

    with pytest.raises(SnapshotNotFound):
        await engine_state["coordinator"].restore(target, "pg-main-19990101T000000Z")

    creating = Snapshot(
        id="pg-main-creating",
        service_kind=ServiceKind.SQL_RELATIONAL,
        source_name="pg-main",
        created_at=datetime.now(UTC),
        status=SnapshotStatus.CREATING,
    )
    await engine_state["catalog"].put(creating)
    with pytest.raises(SnapshotNotFound):
        await engine_state["coordinator"].validate(target, creating.id, Scope.full())
    assert target.applied == []


@pytest.mark.asyncio
async def test_validate_has_no_side_effects(engine_state, target):
    snapshot = await _backup(engine_state, target)

    plan = await engine_state["coordinator"].validate(target, snapshot.id, Scope.subset("Billing DB"))

    assert plan.snapshot.id == snapshot.id
    assert plan.scope == Scope.subset("Billing DB")
    assert plan.downloaded is False
    assert target.applied == []
    assert target.quiesce_events == []
    assert await engine_state["catalog"].list_restores() == []


@pytest.mark.asyncio
async def test_unreadable_manifest_fails_validation(engine_state, target):
    from snapkeep.backup.manager import manifest_path_for

    snapshot = await _backup(engine_state, target)
    manifest_path_for(Path(snapshot.local_path)).write_text("{not json")

    with pytest.raises(ValidationFailed) as exc_info:
        await engine_state["coordinator"].validate(target, snapshot.local_path, Scope.full())

    assert "manifest" in exc_info.value.details
    assert target.applied == []


@pytest.mark.asyncio
async def test_manifest_without_digest_fails_validation(engine_state, target):
    """CRITICAL: An artifact whose manifest records no digest is never applied unverified."""
    import json

    from snapkeep.backup.manager import manifest_path_for

    snapshot = await _backup(engine_state, target)
    manifest_path = manifest_path_for(Path(snapshot.local_path))
    manifest = json.loads(manifest_path.read_text())
    manifest["digest"] = None
    manifest_path.write_text(json.dumps(manifest))
    _drift(target)

    with pytest.raises(ValidationFailed) as exc_info:
        await engine_state["coordinator"].restore(target, snapshot.local_path)

    assert "digest" in str(exc_info.value)
    assert target.applied == []
    assert target.quiesce_events == []
    records = await engine_state["catalog"].list_restores("pg-main")
    assert records[0]["history"] == ["validating", "failed"]


# ============================================================================
# Rollback
# ============================================================================

@pytest.mark.asyncio
async def test_single_apply_failure_rolls_back_and_retries(engine_state, target):
    """One failed apply: roll back to the pre-swap copy, then succeed on retry."""
    backed_up = target.data
    snapshot = await _backup(engine_state, target)
    live = _drift(target)
    target.apply_failures = 1

    run = await engine_state["coordinator"].restore(target, snapshot.id)

    assert run.state == RestoreState.COMPLETE
    assert run.history == [
        "validating", "staging", "swapping", "rolled_back", "swapping", "complete"
    ]
    assert target.applied == [live, backed_up]
    assert target.data == backed_up
    assert target.quiesce_events == ["enter", "exit"]


@pytest.mark.asyncio
async def test_second_apply_failure_leaves_target_rolled_back(engine_state, target):
    """
    CRITICAL: When the artifact cannot be applied, the live data is put back
    exactly as it was before the swap.
    """
    backed_up = target.data
    snapshot = await _backup(engine_state, target)
    live = _drift(target)
    target.fail_apply_when = lambda payload: payload == backed_up

    with pytest.raises(RestoreFailed) as exc_info:
        await engine_state["coordinator"].restore(target, snapshot.id)

    assert target.data == live
    assert target.applied == [live, live]
    assert exc_info.value.details["restore_state"] == "rolled_back"

    record = (await engine_state["catalog"].list_restores())[0]
    assert record["state"] == "rolled_back"
    assert record["history"][-3:] == ["rolled_back", "swapping", "rolled_back"]
    assert "twice" in record["error"]


@pytest.mark.asyncio
async def test_failed_rollback_is_unrecoverable(engine_state, target):
    snapshot = await _backup(engine_state, target)
    _drift(target)
    target.apply_failures = 2

    with pytest.raises(RestoreUnrecoverable) as exc_info:
        await engine_state["coordinator"].restore(target, snapshot.id)

    assert exc_info.value.details["rollback_error"]
    assert target.quiesce_events == ["enter", "exit"]
    record = (await engine_state["catalog"].list_restores())[0]
    assert record["state"] == "failed"
    assert record["history"] == ["validating", "staging", "swapping", "failed"]


@pytest.mark.asyncio
async def test_apply_failure_without_pre_swap_copy(engine_state, target, test_config):
    from snapkeep.backup.restore import RestoreCoordinator

    config = test_config.with_updates(retain_pre_restore_copy=False)
    coordinator = RestoreCoordinator(config, engine_state["catalog"])
    snapshot = await _backup(engine_state, target)
    target.apply_failures = 1

    with pytest.raises(RestoreUnrecoverable):
        await coordinator.restore(target, snapshot.id)

    # Nothing to roll back with, so nothing was applied after the failure
    assert target.applied == []


@pytest.mark.asyncio
async def test_custom_quiesce_context(engine_state, target):
    from contextlib import asynccontextmanager

    events = []

    @asynccontextmanager
    async def maintenance_window():
        events.append("paused")
        yield
        events.append("resumed")

    snapshot = await _backup(engine_state, target)
    await engine_state["coordinator"].restore(
        target, snapshot.id, quiesce=maintenance_window()
    )

    assert events == ["paused", "resumed"]
    assert target.quiesce_events == []
