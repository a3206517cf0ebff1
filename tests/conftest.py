# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for snapkeep tests.

Provides an in-memory service target, a fault-injecting storage wrapper,
and test configuration helpers.
"""

import asyncio
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Dict, Generator, List

import pytest
import pytest_asyncio

from snapkeep.exceptions import (
    ApplyFailed,
    AuthorizationFailed,
    ProducerProcessFailed,
    ProducerUnavailable,
    TransientStorageError,
)
from snapkeep.models import Scope, ServiceKind
from snapkeep.transfer.storage import LocalBlobStorage

# Set test environment variables
os.environ["SNAPKEEP_ADMIN_API_KEY"] = "test-api-key-12345"


SQL_DUMP = (
    b"--\n-- PostgreSQL database cluster dump\n--\n"
    b"CREATE ROLE app;\n"
    b"\\connect template1\n"
    b"SET client_encoding = 'UTF8';\n"
    b"\\connect shop\n"
    b"CREATE TABLE orders (id integer);\n"
    b"INSERT INTO orders VALUES (1), (2), (3);\n"
    b"\\connect \"Billing DB\"\n"
    b"CREATE TABLE invoices (id integer);\n"
    b"\\connect -reuse-previous=on \"dbname='analytics'\"\n"
    b"CREATE TABLE events (id integer);\n"
)


class FakeTarget:
    """
    In-memory service target.

    `data` is what a snapshot produces; apply() replaces it for FULL scope
    and appends the applied bytes to `applied` either way.
    """

    def __init__(
        self,
        name: str = "pg-main",
        kind: ServiceKind = ServiceKind.SQL_RELATIONAL,
        data: bytes = SQL_DUMP,
        chunk_size: int = 64,
    ):
        self.name = name
        self.kind = kind
        self.data = data
        self.chunk_size = chunk_size
        self.reachable = True
        self.fail_snapshot = False
        self.apply_failures = 0
        self.fail_apply_when = None  # callable(bytes) -> bool
        self.applied: List[bytes] = []
        self.quiesce_events: List[str] = []
        self.snapshot_gate: asyncio.Event | None = None
        self.apply_gate: asyncio.Event | None = None
        self.apply_started = asyncio.Event()

    async def probe(self) -> None:
        if not self.reachable:
            raise ProducerUnavailable(f"{self.name} is down")

    async def snapshot(self, scope: Scope) -> AsyncIterator[bytes]:
        for start in range(0, len(self.data), self.chunk_size):
            if self.snapshot_gate is not None:
                await self.snapshot_gate.wait()
            yield self.data[start:start + self.chunk_size]
        if self.fail_snapshot:
            raise ProducerProcessFailed("pg_dumpall exited with status 1", stderr="boom")

    async def apply(self, chunks: AsyncIterable[bytes], scope: Scope) -> None:
        payload = b"".join([chunk async for chunk in chunks])
        self.apply_started.set()
        if self.apply_gate is not None:
            await self.apply_gate.wait()
        if self.apply_failures > 0:
            self.apply_failures -= 1
            raise ApplyFailed("psql exited with status 3")
        if self.fail_apply_when is not None and self.fail_apply_when(payload):
            raise ApplyFailed("psql exited with status 3")
        self.applied.append(payload)
        if not scope.is_subset:
            self.data = payload

    @asynccontextmanager
    async def quiesced(self, scope: Scope):
        self.quiesce_events.append("enter")
        try:
            yield
        finally:
            self.quiesce_events.append("exit")


class FlakyStorage:
    """
    LocalBlobStorage wrapper that injects failures per operation.

    `transient[op] = n` makes the next n calls of `op` raise
    TransientStorageError; `reject[op]` raises AuthorizationFailed;
    `stop_after_parts = n` makes every upload_part after the n-th fail
    transiently, simulating a connection that dropped for good.
    `hold_after_parts = n` parks the next upload_part after the n-th on
    `part_gate` and sets `part_waiting`.
    """

    def __init__(self, root: Path):
        self.inner = LocalBlobStorage(root)
        self.calls: Dict[str, int] = {}
        self.transient: Dict[str, int] = {}
        self.reject: set = set()
        self.stop_after_parts: int | None = None
        self.parts_uploaded: List[int] = []
        self.corrupt_completes = 0
        self.hold_after_parts: int | None = None
        self.part_gate = asyncio.Event()
        self.part_waiting = asyncio.Event()

    def _enter(self, op: str) -> None:
        self.calls[op] = self.calls.get(op, 0) + 1
        if op in self.reject:
            raise AuthorizationFailed(f"{op} denied", details={"operation": op})
        if self.transient.get(op, 0) > 0:
            self.transient[op] -= 1
            raise TransientStorageError(f"{op} timed out", details={"operation": op})

    def locator(self, key: str) -> str:
        return self.inner.locator(key)

    async def put(self, key, data):
        self._enter("put")
        await self.inner.put(key, data)

    async def get(self, key, chunk_size=1024 * 1024):
        self._enter("get")
        async for chunk in self.inner.get(key, chunk_size):
            yield chunk

    async def get_range(self, key, start, end):
        self._enter("get_range")
        return await self.inner.get_range(key, start, end)

    async def exists(self, key):
        self._enter("exists")
        return await self.inner.exists(key)

    async def size(self, key):
        self._enter("size")
        return await self.inner.size(key)

    async def delete(self, key):
        self._enter("delete")
        await self.inner.delete(key)

    async def begin_upload(self, key):
        self._enter("begin_upload")
        return await self.inner.begin_upload(key)

    async def upload_part(self, key, upload_id, part_number, data):
        if self.hold_after_parts is not None and len(self.parts_uploaded) >= self.hold_after_parts:
            self.part_waiting.set()
            await self.part_gate.wait()
        if self.stop_after_parts is not None and len(self.parts_uploaded) >= self.stop_after_parts:
            self.calls["upload_part"] = self.calls.get("upload_part", 0) + 1
            raise TransientStorageError("connection reset")
        self._enter("upload_part")
        part = await self.inner.upload_part(key, upload_id, part_number, data)
        self.parts_uploaded.append(part_number)
        return part

    async def complete_upload(self, key, upload_id, parts):
        self._enter("complete_upload")
        await self.inner.complete_upload(key, upload_id, parts)
        if self.corrupt_completes > 0:
            self.corrupt_completes -= 1
            path = self.inner._path(key)
            data = bytearray(path.read_bytes())
            data[0] ^= 0xFF
            path.write_bytes(bytes(data))

    async def abort_upload(self, key, upload_id):
        self._enter("abort_upload")
        await self.inner.abort_upload(key, upload_id)

    async def promote(self, src_key, dst_key):
        self._enter("promote")
        await self.inner.promote(src_key, dst_key)

    async def close(self):
        await self.inner.close()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def remote_dir(temp_dir: Path) -> Path:
    path = temp_dir / "remote"
    path.mkdir()
    return path


@pytest.fixture
def test_config(temp_dir: Path, remote_dir: Path):
    """Create a test configuration with file:// remote storage and tiny chunks."""
    from snapkeep.builder import create_config

    return create_config(
        vault_path=temp_dir / "vault",
        remote_storage=remote_dir.as_uri(),
        chunk_size=1024,
        max_attempts=3,
        base_delay_seconds=0.0,
        max_delay_seconds=0.0,
        chunk_timeout_seconds=5.0,
    )


@pytest.fixture
def local_only_config(temp_dir: Path):
    """Configuration without remote storage."""
    from snapkeep.builder import create_config

    return create_config(vault_path=temp_dir / "vault", chunk_size=1024)


@pytest_asyncio.fixture
async def catalog(test_config):
    """Initialized catalog in the test vault."""
    from snapkeep.vault.catalog import CatalogStore

    store = CatalogStore(test_config.catalog_db_path)
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def engine_state(test_config):
    """Initialized engine state; shut down after the test."""
    from snapkeep.core import initialize_state, shutdown_state

    state = await initialize_state(test_config)
    yield state
    await shutdown_state(state)


@pytest.fixture
def target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def flaky_storage(remote_dir: Path) -> FlakyStorage:
    return FlakyStorage(remote_dir)


def big_payload(size: int = 5000) -> bytes:
    """Deterministic, poorly compressible bytes."""
    import hashlib

    out = bytearray()
    counter = 0
    while len(out) < size:
        out.extend(hashlib.sha256(counter.to_bytes(8, "big")).digest())
        counter += 1
    return bytes(out[:size])


@pytest.fixture
def make_target():
    """Factory for extra in-memory targets."""
    return FakeTarget


@pytest.fixture
def payload() -> bytes:
    """Five chunks' worth of incompressible bytes at the test chunk size."""
    return big_payload(5000)
