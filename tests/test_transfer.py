# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Transfer Tests for Snapkeep.

These tests verify the transfer guarantees:
1. Transient failures are retried per chunk with backoff
2. An exhausted upload stays LOCAL and resumes from its last acknowledged part
3. Corrupted or vanished remote state restarts the transfer from zero, once
4. Rejections fail the snapshot without retrying
5. Downloads are verified before they are moved into place
"""

import asyncio
import hashlib
from datetime import datetime, UTC
from pathlib import Path

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from snapkeep.exceptions import (
    AuthorizationFailed,
    BlobNotFound,
    QuotaExceeded,
    SnapshotNotFound,
    TransferIntegrityFailed,
    TransferRejected,
    TransferRetriesExhausted,
    TransientStorageError,
    ValidationFailed,
)
from snapkeep.models import ServiceKind, Snapshot, SnapshotStatus, TransferMarker

REMOTE_KEY = "pg-main/pg-main-20260301T120000Z.sql"


async def _local_snapshot(catalog, temp_dir: Path, data: bytes) -> Snapshot:
    path = temp_dir / "vault" / "artifacts" / "pg-main" / "pg-main-20260301T120000Z.sql"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    snapshot = Snapshot(
        id="pg-main-20260301T120000Z",
        service_kind=ServiceKind.SQL_RELATIONAL,
        source_name="pg-main",
        created_at=datetime(2026, 3, 1, 12, tzinfo=UTC),
        size_bytes=len(data),
        digest=hashlib.sha256(data).hexdigest(),
        status=SnapshotStatus.LOCAL,
        local_path=str(path),
    )
    return await catalog.put(snapshot)


def _engine(storage, catalog, config):
    from snapkeep.transfer.engine import TransferEngine

    return TransferEngine(storage, catalog, config)


# ============================================================================
# Upload
# ============================================================================

@pytest.mark.asyncio
async def test_upload_marks_snapshot_remote(
    catalog, test_config, flaky_storage, remote_dir: Path, temp_dir: Path, payload: bytes
):
    """A clean upload ends REMOTE with the artifact and its manifest stored."""
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    engine = _engine(flaky_storage, catalog, test_config)
    progress = []
    engine.on_chunk = lambda direction, artifact_id, done, total: progress.append(done)

    remote = await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)

    assert remote.status == SnapshotStatus.REMOTE
    assert remote.storage_location == flaky_storage.locator(REMOTE_KEY)
    assert (remote_dir / REMOTE_KEY).read_bytes() == payload
    assert (remote_dir / (REMOTE_KEY + ".manifest.json")).exists()
    assert not (remote_dir / (REMOTE_KEY + ".inflight")).exists()

    assert (await catalog.get(snapshot.id)).status == SnapshotStatus.REMOTE
    assert await catalog.load_marker(snapshot.id, "upload") is None
    assert progress == [1024, 2048, 3072, 4096, 5000]
    assert engine.stats.chunks_sent == 5


@pytest.mark.asyncio
async def test_upload_retries_transient_chunk_failures(
    catalog, test_config, flaky_storage, temp_dir: Path, payload: bytes
):
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    flaky_storage.transient["upload_part"] = 2
    engine = _engine(flaky_storage, catalog, test_config)

    remote = await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)

    assert remote.status == SnapshotStatus.REMOTE
    assert engine.stats.retries == 2
    assert flaky_storage.calls["upload_part"] == 7


@pytest.mark.asyncio
async def test_exhausted_upload_stays_local_and_resumes(
    catalog, test_config, flaky_storage, remote_dir: Path, temp_dir: Path, payload: bytes
):
    """
    CRITICAL: An interrupted upload keeps its marker and the next attempt
    sends only the parts that were never acknowledged.
    """
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    flaky_storage.stop_after_parts = 2
    engine = _engine(flaky_storage, catalog, test_config)

    with pytest.raises(TransferRetriesExhausted):
        await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)

    interrupted = await catalog.get(snapshot.id)
    assert interrupted.status == SnapshotStatus.LOCAL
    marker = await catalog.load_marker(snapshot.id, "upload")
    assert marker.bytes_completed == 2048
    assert [p["PartNumber"] for p in marker.parts] == [1, 2]
    assert not (remote_dir / REMOTE_KEY).exists()

    # Connection comes back
    flaky_storage.stop_after_parts = None
    remote = await _engine(flaky_storage, catalog, test_config).upload(
        interrupted, Path(snapshot.local_path), REMOTE_KEY
    )

    assert remote.status == SnapshotStatus.REMOTE
    assert flaky_storage.parts_uploaded == [1, 2, 3, 4, 5]
    assert flaky_storage.calls["begin_upload"] == 1
    assert (remote_dir / REMOTE_KEY).read_bytes() == payload


@pytest.mark.asyncio
async def test_resume_restarts_when_upload_session_expired(
    catalog, test_config, flaky_storage, remote_dir: Path, temp_dir: Path, payload: bytes
):
    """A resume whose multipart session is gone starts over from byte zero."""
    import shutil

    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    flaky_storage.stop_after_parts = 3
    with pytest.raises(TransferRetriesExhausted):
        await _engine(flaky_storage, catalog, test_config).upload(
            snapshot, Path(snapshot.local_path), REMOTE_KEY
        )

    shutil.rmtree(remote_dir / ".uploads")
    flaky_storage.stop_after_parts = None
    engine = _engine(flaky_storage, catalog, test_config)
    remote = await engine.upload(
        await catalog.get(snapshot.id), Path(snapshot.local_path), REMOTE_KEY
    )

    assert remote.status == SnapshotStatus.REMOTE
    assert engine.stats.restarts == 1
    assert flaky_storage.calls["begin_upload"] == 2
    assert (remote_dir / REMOTE_KEY).read_bytes() == payload


@pytest.mark.asyncio
async def test_corrupted_upload_restarts_once(
    catalog, test_config, flaky_storage, remote_dir: Path, temp_dir: Path, payload: bytes
):
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    flaky_storage.corrupt_completes = 1
    engine = _engine(flaky_storage, catalog, test_config)

    remote = await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)

    assert remote.status == SnapshotStatus.REMOTE
    assert engine.stats.restarts == 1
    assert (remote_dir / REMOTE_KEY).read_bytes() == payload


@pytest.mark.asyncio
async def test_corrupted_upload_twice_fails_snapshot(
    catalog, test_config, flaky_storage, remote_dir: Path, temp_dir: Path, payload: bytes
):
    """CRITICAL: A snapshot is never marked REMOTE without a verified copy."""
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    flaky_storage.corrupt_completes = 2
    engine = _engine(flaky_storage, catalog, test_config)

    with pytest.raises(TransferIntegrityFailed):
        await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)

    assert (await catalog.get(snapshot.id)).status == SnapshotStatus.FAILED
    assert not (remote_dir / REMOTE_KEY).exists()
    assert not (remote_dir / (REMOTE_KEY + ".inflight")).exists()
    assert await catalog.load_marker(snapshot.id, "upload") is None


@pytest.mark.asyncio
async def test_rejected_upload_fails_without_retry(
    catalog, test_config, flaky_storage, temp_dir: Path, payload: bytes
):
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    flaky_storage.reject.add("upload_part")
    engine = _engine(flaky_storage, catalog, test_config)

    with pytest.raises(AuthorizationFailed):
        await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)

    assert flaky_storage.calls["upload_part"] == 1
    assert engine.stats.retries == 0
    assert (await catalog.get(snapshot.id)).status == SnapshotStatus.FAILED


@pytest.mark.asyncio
async def test_upload_of_remote_snapshot_is_noop(
    catalog, test_config, flaky_storage, temp_dir: Path, payload: bytes
):
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    engine = _engine(flaky_storage, catalog, test_config)
    remote = await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)
    calls = dict(flaky_storage.calls)

    assert await engine.upload(remote, Path(snapshot.local_path), REMOTE_KEY) == remote
    assert flaky_storage.calls == calls


@pytest.mark.asyncio
async def test_cancelled_upload_leaves_no_remote_trace(
    catalog, test_config, flaky_storage, remote_dir: Path, temp_dir: Path, payload: bytes
):
    """
    CRITICAL: Cancelling mid-transfer removes the inflight object and the
    marker, and the snapshot goes back to LOCAL.
    """
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    flaky_storage.hold_after_parts = 2
    engine = _engine(flaky_storage, catalog, test_config)

    running = asyncio.create_task(engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY))
    await asyncio.wait_for(flaky_storage.part_waiting.wait(), 5)
    assert await catalog.load_marker(snapshot.id, "upload") is not None

    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running

    assert (await catalog.get(snapshot.id)).status == SnapshotStatus.LOCAL
    assert await catalog.load_marker(snapshot.id, "upload") is None
    assert not (remote_dir / REMOTE_KEY).exists()
    assert not (remote_dir / (REMOTE_KEY + ".inflight")).exists()
    assert not (remote_dir / (REMOTE_KEY + ".manifest.json")).exists()
    assert list((remote_dir / ".uploads").iterdir()) == []


# ============================================================================
# Download
# ============================================================================

@pytest.mark.asyncio
async def test_download_verifies_and_moves_into_place(
    catalog, test_config, flaky_storage, temp_dir: Path, payload: bytes
):
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    engine = _engine(flaky_storage, catalog, test_config)
    await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)
    flaky_storage.transient["get_range"] = 1

    dest = temp_dir / "downloads" / "copy.sql"
    result = await engine.download(REMOTE_KEY, dest, snapshot.digest, artifact_id=snapshot.id)

    assert result == dest
    assert dest.read_bytes() == payload
    assert not dest.with_name("copy.sql.part").exists()
    assert await catalog.load_marker(snapshot.id, "download") is None
    assert engine.stats.retries == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("size, parts", [(0, 1), (1024, 1), (5000, 5)])
async def test_round_trip_is_byte_identical(
    catalog, test_config, flaky_storage, temp_dir: Path, size: int, parts: int
):
    from conftest import big_payload

    data = big_payload(size)
    snapshot = await _local_snapshot(catalog, temp_dir, data)
    engine = _engine(flaky_storage, catalog, test_config)

    await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)
    dest = await engine.download(
        REMOTE_KEY, temp_dir / "downloads" / "copy.sql", snapshot.digest, artifact_id=snapshot.id
    )

    assert dest.read_bytes() == data
    assert engine.stats.chunks_sent == parts


@pytest.mark.asyncio
async def test_download_resumes_from_marker(
    catalog, test_config, flaky_storage, temp_dir: Path, payload: bytes
):
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    await _engine(flaky_storage, catalog, test_config).upload(
        snapshot, Path(snapshot.local_path), REMOTE_KEY
    )

    dest = temp_dir / "downloads" / "copy.sql"
    dest.parent.mkdir(parents=True)
    dest.with_name("copy.sql.part").write_bytes(payload[:2048])
    await catalog.save_marker(
        TransferMarker(
            artifact_id=snapshot.id,
            direction="download",
            bytes_completed=2048,
            total_bytes=len(payload),
            attempt_count=1,
        )
    )
    flaky_storage.calls.clear()

    await _engine(flaky_storage, catalog, test_config).download(
        REMOTE_KEY, dest, snapshot.digest, artifact_id=snapshot.id
    )

    assert dest.read_bytes() == payload
    assert flaky_storage.calls["get_range"] == 3


@pytest.mark.asyncio
async def test_download_mismatch_fails_after_restart(
    catalog, test_config, flaky_storage, temp_dir: Path, payload: bytes
):
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    await _engine(flaky_storage, catalog, test_config).upload(
        snapshot, Path(snapshot.local_path), REMOTE_KEY
    )
    flaky_storage.calls.clear()
    engine = _engine(flaky_storage, catalog, test_config)

    dest = temp_dir / "downloads" / "copy.sql"
    with pytest.raises(TransferIntegrityFailed):
        await engine.download(REMOTE_KEY, dest, "00" * 32, artifact_id=snapshot.id)

    assert not dest.exists()
    assert not dest.with_name("copy.sql.part").exists()
    assert flaky_storage.calls["get_range"] == 10
    assert engine.stats.restarts == 1


@pytest.mark.asyncio
async def test_download_missing_object(catalog, test_config, flaky_storage, temp_dir: Path):
    engine = _engine(flaky_storage, catalog, test_config)
    with pytest.raises(SnapshotNotFound):
        await engine.download("pg-main/missing.sql", temp_dir / "x.sql", "00" * 32)


@pytest.mark.asyncio
async def test_manifest_and_delete_remote(
    catalog, test_config, flaky_storage, remote_dir: Path, temp_dir: Path, payload: bytes
):
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    engine = _engine(flaky_storage, catalog, test_config)
    await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)

    manifest = await engine.fetch_manifest(REMOTE_KEY)
    assert manifest.id == snapshot.id
    assert manifest.digest == snapshot.digest
    assert manifest.status == SnapshotStatus.REMOTE

    await engine.delete_remote(REMOTE_KEY)
    assert not (remote_dir / REMOTE_KEY).exists()
    with pytest.raises(SnapshotNotFound):
        await engine.fetch_manifest(REMOTE_KEY)


@pytest.mark.asyncio
async def test_unreadable_remote_manifest(
    catalog, test_config, flaky_storage, remote_dir: Path, temp_dir: Path, payload: bytes
):
    snapshot = await _local_snapshot(catalog, temp_dir, payload)
    engine = _engine(flaky_storage, catalog, test_config)
    await engine.upload(snapshot, Path(snapshot.local_path), REMOTE_KEY)
    manifest_file = remote_dir / (REMOTE_KEY + ".manifest.json")

    manifest_file.write_bytes(b"{not json")
    with pytest.raises(ValidationFailed) as exc_info:
        await engine.fetch_manifest(REMOTE_KEY)
    assert exc_info.value.details["remote_key"] == REMOTE_KEY

    # Valid JSON missing required fields is just as unreadable
    manifest_file.write_text('{"id": "pg-main-20260301T120000Z"}')
    with pytest.raises(ValidationFailed):
        await engine.fetch_manifest(REMOTE_KEY)


def test_remote_key_for():
    from snapkeep.transfer.engine import remote_key_for

    snapshot = Snapshot(
        id="cache-1",
        service_kind=ServiceKind.KEY_VALUE,
        source_name="cache",
        created_at=datetime.now(UTC),
        local_path="/vault/artifacts/cache/cache-1.rdb.zst",
    )
    assert remote_key_for(snapshot) == "cache/cache-1.rdb.zst"

    with pytest.raises(SnapshotNotFound):
        remote_key_for(Snapshot("x", ServiceKind.KEY_VALUE, "cache", datetime.now(UTC)))


# ============================================================================
# Retry policy
# ============================================================================

def test_calculate_delay_is_capped():
    from snapkeep.transfer.retry import RetryPolicy, calculate_delay

    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)
    assert [calculate_delay(n, policy) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    jittered = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=True)
    assert 0.75 <= calculate_delay(0, jittered) <= 1.25


@pytest.mark.asyncio
async def test_retry_async_exhausts_on_transient_errors():
    from snapkeep.transfer.retry import RetryPolicy, retry_async

    attempts = []

    async def flaky():
        attempts.append(1)
        raise TransientStorageError("503")

    with pytest.raises(TransferRetriesExhausted) as exc_info:
        await retry_async(flaky, RetryPolicy(max_attempts=3, base_delay=0.0, jitter=False))

    assert len(attempts) == 3
    assert isinstance(exc_info.value.__cause__, TransientStorageError)


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_rejections():
    from snapkeep.transfer.retry import RetryPolicy, retry_async

    attempts = []

    async def denied():
        attempts.append(1)
        raise TransferRejected("400")

    with pytest.raises(TransferRejected):
        await retry_async(denied, RetryPolicy(max_attempts=3, base_delay=0.0))
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_retry_async_times_out_slow_attempts():
    from snapkeep.transfer.retry import RetryPolicy, retry_async

    attempts = []

    async def slow_then_fast():
        attempts.append(1)
        if len(attempts) == 1:
            await asyncio.sleep(5)
        return "ok"

    retried = []
    result = await retry_async(
        slow_then_fast,
        RetryPolicy(max_attempts=2, base_delay=0.0, timeout=0.05, jitter=False),
        on_retry=lambda attempt, error: retried.append(attempt),
    )
    assert result == "ok"
    assert retried == [1]


# ============================================================================
# Storage error classification
# ============================================================================

def test_classify_s3_errors():
    from snapkeep.transfer.storage import classify_s3_error

    def client_error(code: str, status: int = 400) -> ClientError:
        return ClientError(
            {"Error": {"Code": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
            "UploadPart",
        )

    assert isinstance(classify_s3_error(client_error("SlowDown", 503), "upload_part"), TransientStorageError)
    assert isinstance(classify_s3_error(client_error("AccessDenied", 403), "put"), AuthorizationFailed)
    assert isinstance(classify_s3_error(client_error("NoSuchUpload", 404), "upload_part"), BlobNotFound)
    assert isinstance(classify_s3_error(client_error("QuotaExceeded"), "put"), QuotaExceeded)
    assert isinstance(classify_s3_error(client_error("InvalidPart"), "complete"), TransferRejected)
    assert isinstance(
        classify_s3_error(EndpointConnectionError(endpoint_url="http://s3"), "get"),
        TransientStorageError,
    )


def test_parse_locator():
    from snapkeep.exceptions import ConfigurationError
    from snapkeep.transfer.storage import parse_locator

    assert parse_locator("s3://backups/prod/pg") == ("s3", "backups", "prod/pg")
    assert parse_locator("file:///srv/my%20backups") == ("file", "", "/srv/my backups")
    with pytest.raises(ConfigurationError):
        parse_locator("ftp://host/x")


@pytest.mark.asyncio
async def test_local_storage_rejects_escaping_keys(remote_dir: Path):
    from snapkeep.transfer.storage import LocalBlobStorage

    storage = LocalBlobStorage(remote_dir)
    with pytest.raises(TransferRejected):
        await storage.put("../outside", b"x")
