# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation and passed
explicitly into each component; nothing reads the environment at runtime
except the helpers in snapkeep.env.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List
import hashlib
import re

MIN_CHUNK_SIZE = 1024  # 1 KiB
MIN_S3_PART_SIZE = 5 * 1024 * 1024  # S3 multipart minimum for all but the last part
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024  # 8 MiB

SUPPORTED_STORAGE_SCHEMES = ("s3://", "file://")


def _validate_remote_storage(locator: str) -> bool:
    """
    Validate a remote storage locator.

    Accepted forms:
    - s3://bucket[/prefix]
    - file:///absolute/directory
    """
    if locator.startswith("s3://"):
        bucket = locator[len("s3://"):].split("/", 1)[0]
        return _validate_bucket_name(bucket)
    if locator.startswith("file://"):
        return bool(locator[len("file://"):])
    return False


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate S3 bucket name according to AWS rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_daily_time(time_str: str) -> bool:
    """Validate HH:MM time format."""
    if not time_str:
        return False
    try:
        parts = time_str.split(":")
        if len(parts) != 2:
            return False
        hour, minute = int(parts[0]), int(parts[1])
        return 0 <= hour <= 23 and 0 <= minute <= 59
    except (ValueError, AttributeError):
        return False


@dataclass(frozen=True)
class SnapkeepConfig:
    """
    Immutable configuration for backup, transfer and restore.

    Frozen after creation so concurrently running operations on
    different targets can share one instance safely.
    """

    # Local vault: catalog database, artifacts, staging and rollback copies
    vault_path: Path = field(default_factory=lambda: Path("./snapkeep_vault"))

    # Remote storage locator, e.g. s3://bucket/prefix or file:///mnt/backups
    remote_storage: str | None = None

    # AWS region and optional endpoint (MinIO, localstack)
    region: str = "us-east-1"
    endpoint_url: str | None = None

    # Transfer chunking and retry policy
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_attempts: int = 5
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    chunk_timeout_seconds: float = 120.0

    # Integrity
    digest_algorithm: str = "sha256"
    verify_after_upload: bool = True

    # Artifact compression (zstd)
    compress_artifacts: bool = True
    compression_level: int = 6

    # Keep a copy of live data taken right before a destructive swap
    retain_pre_restore_copy: bool = True

    # Remove the local artifact once it is verified remotely
    delete_local_after_upload: bool = False

    # How long a dry-run confirmation token stays valid
    confirmation_ttl_seconds: int = 900

    # Retention
    retention_keep_last: int | None = None
    retention_days: int | None = None

    # Daily scheduled backups in HH:MM (UTC), used by the FastAPI integration
    schedule_daily_at: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if self.remote_storage and not _validate_remote_storage(self.remote_storage):
            errors.append(
                f"Invalid remote_storage: {self.remote_storage}, "
                f"expected one of {', '.join(SUPPORTED_STORAGE_SCHEMES)}"
            )

        if self.chunk_size < MIN_CHUNK_SIZE:
            errors.append(f"chunk_size must be >= {MIN_CHUNK_SIZE}, got {self.chunk_size}")
        elif (
            self.remote_storage
            and self.remote_storage.startswith("s3://")
            and self.chunk_size < MIN_S3_PART_SIZE
        ):
            errors.append(
                f"chunk_size must be >= {MIN_S3_PART_SIZE} for s3:// storage, "
                f"got {self.chunk_size}"
            )

        if self.max_attempts < 1:
            errors.append(f"max_attempts must be >= 1, got {self.max_attempts}")

        if self.base_delay_seconds < 0:
            errors.append(
                f"base_delay_seconds must be >= 0, got {self.base_delay_seconds}"
            )

        if self.max_delay_seconds < self.base_delay_seconds:
            errors.append("max_delay_seconds must be >= base_delay_seconds")

        if self.chunk_timeout_seconds <= 0:
            errors.append(
                f"chunk_timeout_seconds must be > 0, got {self.chunk_timeout_seconds}"
            )

        if self.digest_algorithm not in hashlib.algorithms_guaranteed:
            errors.append(f"Unsupported digest_algorithm: {self.digest_algorithm}")
        elif self.digest_algorithm in ("md5", "sha1"):
            errors.append(f"digest_algorithm {self.digest_algorithm} is not collision-resistant")

        if not 1 <= self.compression_level <= 22:
            errors.append(
                f"compression_level must be between 1 and 22, got {self.compression_level}"
            )

        if self.confirmation_ttl_seconds < 1:
            errors.append("confirmation_ttl_seconds must be >= 1")

        if self.retention_keep_last is not None and self.retention_keep_last < 1:
            errors.append(
                f"retention_keep_last must be >= 1, got {self.retention_keep_last}"
            )

        if self.retention_days is not None and self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if self.schedule_daily_at and not _validate_daily_time(self.schedule_daily_at):
            errors.append(
                f"Invalid schedule_daily_at format: {self.schedule_daily_at}, expected HH:MM"
            )

        if errors:
            from snapkeep.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    def with_updates(self, **kwargs) -> "SnapkeepConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return SnapkeepConfig(**current)

    @property
    def catalog_db_path(self) -> Path:
        return self.vault_path / "catalog.db"

    @property
    def artifacts_path(self) -> Path:
        return self.vault_path / "artifacts"

    @property
    def staging_path(self) -> Path:
        return self.vault_path / "staging"

    @property
    def rollback_path(self) -> Path:
        return self.vault_path / "rollback"

    @property
    def downloads_path(self) -> Path:
        return self.vault_path / "downloads"
