# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Catalog - Durable ledger of snapshots, transfers and restores.

The catalog is a SQLite database that outlives any single process:
1. Snapshots - one row per snapshot id, REMOTE/FAILED rows are immutable
2. Transfer markers - resume points for interrupted chunked transfers
3. Restores - audit trail of every restore attempt and its final state

Every write commits with synchronous=FULL before returning, so a crash
right after a successful backup never loses the record of its artifact.
"""

import asyncio
import json
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import AsyncIterator, Dict, List, TypedDict

import aiosqlite
import structlog

from snapkeep.exceptions import CatalogError, SnapshotNotFound
from snapkeep.models import (
    SNAPSHOT_TRANSITIONS,
    Scope,
    ServiceKind,
    Snapshot,
    SnapshotStatus,
    TransferMarker,
)

logger = structlog.get_logger()

_SNAPSHOT_COLUMNS = """
    seq, id, service_kind, source_name, created_at, size_bytes, digest,
    digest_algorithm, storage_location, status, local_path, scope, compression
"""


class RestoreRecord(TypedDict):
    """Audit record of one restore attempt."""

    id: str  # ULID
    target: str
    snapshot_id: str
    scope: str
    state: str
    started_at: str  # ISO 8601
    completed_at: str | None
    error: str | None
    history: List[str]


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _row_to_snapshot(row) -> Snapshot:
    return Snapshot(
        id=row[1],
        service_kind=ServiceKind(row[2]),
        source_name=row[3],
        created_at=datetime.fromisoformat(row[4]),
        size_bytes=row[5],
        digest=row[6],
        digest_algorithm=row[7],
        storage_location=row[8],
        status=SnapshotStatus(row[9]),
        local_path=row[10],
        scope=Scope.parse(row[11]),
        compression=row[12],
    )


async def init_catalog_db(db_path: Path) -> None:
    """
    Initialize the catalog database schema.

    Creates tables if they don't exist. This is idempotent.

    Args:
        db_path: Path to the SQLite database file
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            # WAL lets readers proceed while a writer commits
            await db.execute("PRAGMA journal_mode=WAL")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    service_kind TEXT NOT NULL,
                    source_name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    digest TEXT,
                    digest_algorithm TEXT NOT NULL,
                    storage_location TEXT,
                    status TEXT NOT NULL,
                    local_path TEXT,
                    scope TEXT NOT NULL,
                    compression TEXT,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS transfer_markers (
                    artifact_id TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    bytes_completed INTEGER NOT NULL,
                    total_bytes INTEGER NOT NULL,
                    attempt_count INTEGER NOT NULL,
                    upload_id TEXT,
                    parts TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (artifact_id, direction)
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS restores (
                    id TEXT PRIMARY KEY,
                    target TEXT NOT NULL,
                    snapshot_id TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    state TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    error TEXT,
                    history TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS confirmations (
                    token TEXT PRIMARY KEY,
                    target TEXT NOT NULL,
                    snapshot_ref TEXT NOT NULL,
                    snapshot_id TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_snapshots_source_created
                ON snapshots(source_name, created_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_snapshots_created
                ON snapshots(created_at)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_restores_target
                ON restores(target, started_at)
            """)

            await db.commit()

        logger.info("catalog_db_initialized", db_path=str(db_path))

    except Exception as e:
        raise CatalogError(
            f"Failed to initialize catalog database: {e}",
            details={"db_path": str(db_path)},
        ) from e


class SnapshotListing:
    """
    Lazy, restartable sequence of snapshots, newest first.

    Each `async for` starts a fresh keyset-paginated scan, so a partially
    consumed iteration has no side effects on later ones.
    """

    def __init__(
        self,
        store: "CatalogStore",
        source_name: str | None = None,
        page_size: int = 100,
    ):
        self._store = store
        self.source_name = source_name
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[Snapshot]:
        return self._scan()

    async def _scan(self) -> AsyncIterator[Snapshot]:
        cursor_key: tuple | None = None
        while True:
            page = await self._store._list_page(self.source_name, cursor_key, self.page_size)
            for seq, snapshot in page:
                yield snapshot
            if len(page) < self.page_size:
                return
            last_seq, last = page[-1]
            cursor_key = (_iso(last.created_at), last_seq)

    async def collect(self, limit: int | None = None) -> List[Snapshot]:
        """Materialise up to `limit` snapshots."""
        items: List[Snapshot] = []
        async for snapshot in self:
            items.append(snapshot)
            if limit is not None and len(items) >= limit:
                break
        return items


class CatalogStore:
    """
    Persisted snapshot ledger.

    Writes are serialised per snapshot id; reads use their own
    connections and see the last committed state.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA synchronous=FULL")
            await db.execute("PRAGMA busy_timeout=5000")
            yield db

    async def initialize(self) -> None:
        await init_catalog_db(self.db_path)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def put(self, snapshot: Snapshot) -> Snapshot:
        """
        Insert or advance a snapshot record; durable on return.

        Raises:
            CatalogError: If the record is terminal or the status change is illegal
        """
        async with self._locks[snapshot.id]:
            async with self._connect() as db:
                existing = await self._fetch(db, snapshot.id)
                now = _iso(datetime.now(UTC))

                if existing is None:
                    await db.execute(
                        """
                        INSERT INTO snapshots
                        (id, service_kind, source_name, created_at, size_bytes, digest,
                         digest_algorithm, storage_location, status, local_path, scope,
                         compression, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            snapshot.id,
                            snapshot.service_kind.value,
                            snapshot.source_name,
                            _iso(snapshot.created_at),
                            snapshot.size_bytes,
                            snapshot.digest,
                            snapshot.digest_algorithm,
                            snapshot.storage_location,
                            snapshot.status.value,
                            snapshot.local_path,
                            snapshot.scope.describe(),
                            snapshot.compression,
                            now,
                        ),
                    )
                else:
                    if existing.is_terminal:
                        if existing == snapshot:
                            return existing
                        raise CatalogError(
                            f"Snapshot {snapshot.id} is {existing.status.value} and immutable",
                            details={"snapshot_id": snapshot.id},
                        )
                    if (
                        snapshot.status != existing.status
                        and snapshot.status not in SNAPSHOT_TRANSITIONS[existing.status]
                    ):
                        raise CatalogError(
                            f"Illegal snapshot transition "
                            f"{existing.status.value} -> {snapshot.status.value}",
                            details={"snapshot_id": snapshot.id},
                        )
                    await db.execute(
                        """
                        UPDATE snapshots
                        SET size_bytes = ?, digest = ?, digest_algorithm = ?,
                            storage_location = ?, status = ?, local_path = ?,
                            compression = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            snapshot.size_bytes,
                            snapshot.digest,
                            snapshot.digest_algorithm,
                            snapshot.storage_location,
                            snapshot.status.value,
                            snapshot.local_path,
                            snapshot.compression,
                            now,
                            snapshot.id,
                        ),
                    )
                await db.commit()

        logger.debug(
            "snapshot_recorded",
            snapshot_id=snapshot.id,
            status=snapshot.status.value,
        )
        return snapshot

    async def get(self, snapshot_id: str) -> Snapshot:
        """
        Look up a snapshot by id.

        Raises:
            SnapshotNotFound: If no such snapshot exists
        """
        async with self._connect() as db:
            snapshot = await self._fetch(db, snapshot_id)
        if snapshot is None:
            raise SnapshotNotFound(
                f"Snapshot not found: {snapshot_id}",
                details={"snapshot_id": snapshot_id},
            )
        return snapshot

    async def exists(self, snapshot_id: str) -> bool:
        async with self._connect() as db:
            return await self._fetch(db, snapshot_id) is not None

    async def find_by_location(self, storage_location: str) -> Snapshot | None:
        """Find the snapshot stored at a remote locator, if catalogued."""
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots WHERE storage_location = ?",
                (storage_location,),
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_snapshot(row) if row else None

    def list(self, source_name: str | None = None, page_size: int = 100) -> SnapshotListing:
        """List snapshots newest first, optionally for one source."""
        return SnapshotListing(self, source_name, page_size)

    async def delete(self, snapshot_id: str) -> bool:
        """
        Delete a snapshot record (retention).

        Returns:
            True if a record was deleted
        """
        async with self._locks[snapshot_id]:
            async with self._connect() as db:
                cursor = await db.execute(
                    "DELETE FROM snapshots WHERE id = ?", (snapshot_id,)
                )
                await db.execute(
                    "DELETE FROM transfer_markers WHERE artifact_id = ?", (snapshot_id,)
                )
                await db.commit()
                deleted = cursor.rowcount > 0
        self._locks.pop(snapshot_id, None)

        if deleted:
            logger.info("snapshot_deleted", snapshot_id=snapshot_id)
        return deleted

    async def _fetch(self, db: aiosqlite.Connection, snapshot_id: str) -> Snapshot | None:
        async with db.execute(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots WHERE id = ?",
            (snapshot_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_snapshot(row) if row else None

    async def _list_page(
        self,
        source_name: str | None,
        after: tuple | None,
        limit: int,
    ) -> List[tuple]:
        query = f"SELECT {_SNAPSHOT_COLUMNS} FROM snapshots"
        clauses: List[str] = []
        params: List = []

        if source_name is not None:
            clauses.append("source_name = ?")
            params.append(source_name)

        if after is not None:
            clauses.append("(created_at < ? OR (created_at = ? AND seq < ?))")
            params.extend([after[0], after[0], after[1]])

        if clauses:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC, seq DESC LIMIT ?"
        params.append(limit)

        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [(row[0], _row_to_snapshot(row)) for row in rows]

    # ------------------------------------------------------------------
    # Transfer markers
    # ------------------------------------------------------------------

    async def save_marker(self, marker: TransferMarker) -> None:
        """Persist the resume point of a transfer."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO transfer_markers
                (artifact_id, direction, bytes_completed, total_bytes, attempt_count,
                 upload_id, parts, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(artifact_id, direction) DO UPDATE SET
                    bytes_completed = excluded.bytes_completed,
                    total_bytes = excluded.total_bytes,
                    attempt_count = excluded.attempt_count,
                    upload_id = excluded.upload_id,
                    parts = excluded.parts,
                    updated_at = excluded.updated_at
                """,
                (
                    marker.artifact_id,
                    marker.direction,
                    marker.bytes_completed,
                    marker.total_bytes,
                    marker.attempt_count,
                    marker.upload_id,
                    json.dumps(marker.parts),
                    _iso(datetime.now(UTC)),
                ),
            )
            await db.commit()

    async def load_marker(self, artifact_id: str, direction: str) -> TransferMarker | None:
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT artifact_id, direction, bytes_completed, total_bytes,
                       attempt_count, upload_id, parts
                FROM transfer_markers
                WHERE artifact_id = ? AND direction = ?
                """,
                (artifact_id, direction),
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None
        return TransferMarker(
            artifact_id=row[0],
            direction=row[1],
            bytes_completed=row[2],
            total_bytes=row[3],
            attempt_count=row[4],
            upload_id=row[5],
            parts=json.loads(row[6]),
        )

    async def clear_marker(self, artifact_id: str, direction: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM transfer_markers WHERE artifact_id = ? AND direction = ?",
                (artifact_id, direction),
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Restore confirmation tokens
    # ------------------------------------------------------------------

    async def save_confirmation(
        self,
        token: str,
        target: str,
        snapshot_ref: str,
        snapshot_id: str,
        scope: Scope,
        expires_at: datetime,
    ) -> None:
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM confirmations WHERE expires_at <= ?",
                (_iso(datetime.now(UTC)),),
            )
            await db.execute(
                """
                INSERT INTO confirmations
                (token, target, snapshot_ref, snapshot_id, scope, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (token, target, snapshot_ref, snapshot_id, scope.describe(), _iso(expires_at)),
            )
            await db.commit()

    async def take_confirmation(self, token: str) -> dict | None:
        """
        Remove a token and return what it was bound to.

        Returns None for unknown or expired tokens. Of two concurrent
        callers with the same token only one gets the binding.
        """
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT target, snapshot_ref, snapshot_id, scope, expires_at
                FROM confirmations WHERE token = ?
                """,
                (token,),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            cursor = await db.execute("DELETE FROM confirmations WHERE token = ?", (token,))
            await db.commit()
            if cursor.rowcount != 1:
                return None

        if datetime.fromisoformat(row[4]) <= datetime.now(UTC):
            return None
        return {
            "target": row[0],
            "snapshot_ref": row[1],
            "snapshot_id": row[2],
            "scope": row[3],
        }

    # ------------------------------------------------------------------
    # Restore audit trail
    # ------------------------------------------------------------------

    async def record_restore(
        self,
        restore_id: str,
        target: str,
        snapshot_id: str,
        scope: Scope,
        state: str,
        started_at: datetime,
        history: List[str],
        error: str | None = None,
    ) -> None:
        """Record the final state of a restore for audit."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO restores
                (id, target, snapshot_id, scope, state, started_at, completed_at, error, history)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    state = excluded.state,
                    completed_at = excluded.completed_at,
                    error = excluded.error,
                    history = excluded.history
                """,
                (
                    restore_id,
                    target,
                    snapshot_id,
                    scope.describe(),
                    state,
                    _iso(started_at),
                    _iso(datetime.now(UTC)),
                    error,
                    json.dumps(history),
                ),
            )
            await db.commit()

        logger.info(
            "restore_recorded",
            restore_id=restore_id,
            target=target,
            snapshot_id=snapshot_id,
            state=state,
        )

    async def _restores(self, where: str, params: List, limit: int) -> List[RestoreRecord]:
        query = f"""
            SELECT id, target, snapshot_id, scope, state, started_at,
                   completed_at, error, history
            FROM restores {where}
            ORDER BY started_at DESC LIMIT ?
        """
        records: List[RestoreRecord] = []
        async with self._connect() as db:
            async with db.execute(query, [*params, limit]) as cursor:
                async for row in cursor:
                    records.append(
                        RestoreRecord(
                            id=row[0],
                            target=row[1],
                            snapshot_id=row[2],
                            scope=row[3],
                            state=row[4],
                            started_at=row[5],
                            completed_at=row[6],
                            error=row[7],
                            history=json.loads(row[8]),
                        )
                    )
        return records

    async def get_restore(self, restore_id: str) -> RestoreRecord | None:
        records = await self._restores("WHERE id = ?", [restore_id], 1)
        return records[0] if records else None

    async def list_restores(
        self,
        target: str | None = None,
        limit: int = 50,
    ) -> List[RestoreRecord]:
        if target:
            return await self._restores("WHERE target = ?", [target], limit)
        return await self._restores("", [], limit)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def stats(self) -> dict:
        """
        Get catalog statistics.

        Returns:
            Dict with snapshot counts by status, total bytes and restore counts
        """
        stats: dict = {}
        async with self._connect() as db:
            async with db.execute("SELECT COUNT(*) FROM snapshots") as cursor:
                row = await cursor.fetchone()
                stats["total_snapshots"] = row[0] if row else 0

            async with db.execute(
                "SELECT status, COUNT(*) FROM snapshots GROUP BY status"
            ) as cursor:
                stats["snapshots_by_status"] = {row[0]: row[1] async for row in cursor}

            async with db.execute("SELECT SUM(size_bytes) FROM snapshots") as cursor:
                row = await cursor.fetchone()
                stats["total_bytes"] = (row[0] or 0) if row else 0

            async with db.execute(
                "SELECT state, COUNT(*) FROM restores GROUP BY state"
            ) as cursor:
                stats["restores_by_state"] = {row[0]: row[1] async for row in cursor}

        return stats
