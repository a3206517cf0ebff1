# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Models - Snapshot records, scopes and state enums.

Snapshot records are immutable; every status change produces a new
instance through Snapshot.with_status(), which enforces the lifecycle:

    CREATING -> LOCAL -> UPLOADING -> REMOTE
         \\         \\         \\-> LOCAL (interrupted, resumable)
          \\---------\\---------\\-> FAILED

REMOTE and FAILED are terminal.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List


class ServiceKind(str, Enum):
    """Kind of stateful service a snapshot was taken from."""

    SQL_RELATIONAL = "sql_relational"
    KEY_VALUE = "key_value"


class SnapshotStatus(str, Enum):
    """Lifecycle status of a snapshot."""

    CREATING = "creating"
    LOCAL = "local"
    UPLOADING = "uploading"
    REMOTE = "remote"
    FAILED = "failed"


SNAPSHOT_TRANSITIONS: Dict[SnapshotStatus, frozenset] = {
    SnapshotStatus.CREATING: frozenset({SnapshotStatus.LOCAL, SnapshotStatus.FAILED}),
    SnapshotStatus.LOCAL: frozenset({SnapshotStatus.UPLOADING, SnapshotStatus.FAILED}),
    SnapshotStatus.UPLOADING: frozenset(
        {SnapshotStatus.REMOTE, SnapshotStatus.LOCAL, SnapshotStatus.FAILED}
    ),
    SnapshotStatus.REMOTE: frozenset(),
    SnapshotStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({SnapshotStatus.REMOTE, SnapshotStatus.FAILED})


class ScopeMode(str, Enum):
    """Whole-service or single named unit (e.g. one database)."""

    FULL = "full"
    NAMED_SUBSET = "named_subset"


# Restore plans use the same two modes as backups
RestoreMode = ScopeMode


@dataclass(frozen=True)
class Scope:
    """What part of a service a backup or restore covers."""

    mode: ScopeMode = ScopeMode.FULL
    subset_key: str | None = None

    def __post_init__(self) -> None:
        if self.mode == ScopeMode.NAMED_SUBSET and not self.subset_key:
            raise ValueError("NAMED_SUBSET scope requires a subset_key")
        if self.mode == ScopeMode.FULL and self.subset_key is not None:
            raise ValueError("FULL scope must not carry a subset_key")

    @classmethod
    def full(cls) -> "Scope":
        return cls(ScopeMode.FULL)

    @classmethod
    def subset(cls, key: str) -> "Scope":
        return cls(ScopeMode.NAMED_SUBSET, key)

    @property
    def is_subset(self) -> bool:
        return self.mode == ScopeMode.NAMED_SUBSET

    def describe(self) -> str:
        return f"subset:{self.subset_key}" if self.is_subset else "full"

    @classmethod
    def parse(cls, text: str) -> "Scope":
        """Inverse of describe()."""
        if text == "full":
            return cls.full()
        if text.startswith("subset:"):
            return cls.subset(text[len("subset:"):])
        raise ValueError(f"Unrecognised scope: {text!r}")


@dataclass(frozen=True)
class Snapshot:
    """A point-in-time artifact of a service plus its metadata."""

    id: str
    service_kind: ServiceKind
    source_name: str
    created_at: datetime
    size_bytes: int = 0
    digest: str | None = None
    digest_algorithm: str = "sha256"
    storage_location: str | None = None
    status: SnapshotStatus = SnapshotStatus.CREATING
    local_path: str | None = None
    scope: Scope = field(default_factory=Scope.full)
    compression: str | None = None

    def with_status(self, status: SnapshotStatus, **changes: Any) -> "Snapshot":
        """
        Return a copy in a new status, enforcing the lifecycle.

        Raises:
            CatalogError: If the transition is not allowed
        """
        if status != self.status and status not in SNAPSHOT_TRANSITIONS[self.status]:
            from snapkeep.exceptions import CatalogError

            raise CatalogError(
                f"Illegal snapshot transition {self.status.value} -> {status.value}",
                details={"snapshot_id": self.id},
            )
        return replace(self, status=status, **changes)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_manifest(self) -> dict:
        """Serialise to the JSON manifest stored next to remote artifacts."""
        data = asdict(self)
        data["service_kind"] = self.service_kind.value
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["scope"] = self.scope.describe()
        data.pop("local_path", None)
        return data

    @classmethod
    def from_manifest(cls, data: dict, local_path: str | None = None) -> "Snapshot":
        return cls(
            id=data["id"],
            service_kind=ServiceKind(data["service_kind"]),
            source_name=data["source_name"],
            created_at=datetime.fromisoformat(data["created_at"]),
            size_bytes=int(data["size_bytes"]),
            digest=data.get("digest"),
            digest_algorithm=data.get("digest_algorithm", "sha256"),
            storage_location=data.get("storage_location"),
            status=SnapshotStatus(data.get("status", SnapshotStatus.REMOTE.value)),
            local_path=local_path,
            scope=Scope.parse(data.get("scope", "full")),
            compression=data.get("compression"),
        )


def make_snapshot_id(source_name: str, when: datetime, attempt: int = 1) -> str:
    """
    Build a snapshot id of the form {source_name}-{timestamp}.

    Ids have second granularity; attempt > 1 appends a disambiguating suffix.
    """
    stamp = when.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")
    base = f"{source_name}-{stamp}"
    return base if attempt <= 1 else f"{base}-{attempt}"


@dataclass
class TransferMarker:
    """Persisted resume point for a chunked transfer."""

    artifact_id: str
    direction: str  # "upload" or "download"
    bytes_completed: int
    total_bytes: int
    attempt_count: int = 0
    upload_id: str | None = None
    parts: List[dict] = field(default_factory=list)


@dataclass
class RestorePlan:
    """In-memory description of one restore; never persisted."""

    target: Any  # ServiceTarget
    snapshot: Snapshot
    mode: RestoreMode
    subset_key: str | None = None
    artifact_path: Path | None = None
    # True when artifact_path was fetched from remote storage for this plan
    downloaded: bool = False

    @property
    def scope(self) -> Scope:
        if self.mode == ScopeMode.NAMED_SUBSET:
            return Scope.subset(self.subset_key or "")
        return Scope.full()


class RestoreState(str, Enum):
    """States of the restore state machine."""

    VALIDATING = "validating"
    STAGING = "staging"
    SWAPPING = "swapping"
    COMPLETE = "complete"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


RESTORE_TRANSITIONS: Dict[RestoreState, frozenset] = {
    RestoreState.VALIDATING: frozenset(
        {RestoreState.STAGING, RestoreState.FAILED, RestoreState.CANCELLED}
    ),
    RestoreState.STAGING: frozenset(
        {RestoreState.SWAPPING, RestoreState.FAILED, RestoreState.CANCELLED}
    ),
    RestoreState.SWAPPING: frozenset(
        {
            RestoreState.COMPLETE,
            RestoreState.ROLLED_BACK,
            RestoreState.FAILED,
            RestoreState.CANCELLED,
        }
    ),
    # A single re-attempt after rollback goes back through SWAPPING
    RestoreState.ROLLED_BACK: frozenset({RestoreState.SWAPPING, RestoreState.FAILED}),
    RestoreState.COMPLETE: frozenset(),
    RestoreState.FAILED: frozenset(),
    RestoreState.CANCELLED: frozenset(),
}


class ResultCode(str, Enum):
    """Outcome of an operation as seen by a CLI or API caller."""

    OK = "ok"
    VALIDATION_FAILED = "validation_failed"
    BACKUP_FAILED = "backup_failed"
    TRANSFER_FAILED = "transfer_failed"
    RESTORE_FAILED = "restore_failed"
    RESTORE_UNRECOVERABLE = "restore_unrecoverable"
    CANCELLED = "cancelled"
    BUSY = "busy"

    @property
    def exit_status(self) -> int:
        return _EXIT_STATUS[self]


_EXIT_STATUS = {
    ResultCode.OK: 0,
    ResultCode.VALIDATION_FAILED: 2,
    ResultCode.BACKUP_FAILED: 3,
    ResultCode.TRANSFER_FAILED: 4,
    ResultCode.RESTORE_FAILED: 5,
    ResultCode.RESTORE_UNRECOVERABLE: 70,
    ResultCode.CANCELLED: 130,
    ResultCode.BUSY: 75,
}
