# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep Builder - Functional builder pattern for configuration.

This module provides pure functions for building SnapkeepConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from functools import reduce
from pathlib import Path
from typing import Any, Callable, Dict

from snapkeep.config import DEFAULT_CHUNK_SIZE, SnapkeepConfig


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "vault_path": Path("./snapkeep_vault"),
        "remote_storage": None,
        "region": "us-east-1",
        "endpoint_url": None,
        "chunk_size": DEFAULT_CHUNK_SIZE,
        "max_attempts": 5,
        "base_delay_seconds": 0.5,
        "max_delay_seconds": 30.0,
        "chunk_timeout_seconds": 120.0,
        "digest_algorithm": "sha256",
        "verify_after_upload": True,
        "compress_artifacts": True,
        "compression_level": 6,
        "retain_pre_restore_copy": True,
        "delete_local_after_upload": False,
        "confirmation_ttl_seconds": 900,
        "retention_keep_last": None,
        "retention_days": None,
        "schedule_daily_at": None,
    }


def with_vault(config: ConfigDict, vault_path: Path | str) -> ConfigDict:
    """
    Set the local vault directory.

    Args:
        config: Current configuration dictionary
        vault_path: Directory holding the catalog, artifacts and staging area

    Returns:
        New configuration dictionary with vault_path set
    """
    path = Path(vault_path) if isinstance(vault_path, str) else vault_path
    return {**config, "vault_path": path}


def with_remote_storage(
    config: ConfigDict,
    locator: str,
    region: str | None = None,
    endpoint_url: str | None = None,
) -> ConfigDict:
    """
    Stage artifacts in remote object storage.

    Args:
        config: Current configuration dictionary
        locator: s3://bucket/prefix or file:///directory
        region: AWS region (S3 only)
        endpoint_url: Custom S3 endpoint such as MinIO

    Returns:
        New configuration dictionary with remote storage set
    """
    updated = {**config, "remote_storage": locator}
    if region:
        updated["region"] = region
    if endpoint_url:
        updated["endpoint_url"] = endpoint_url
    return updated


def with_chunk_size(config: ConfigDict, chunk_size: int) -> ConfigDict:
    """
    Set the transfer chunk size in bytes.

    S3 multipart uploads require at least 5 MiB for every part but the last.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    return {**config, "chunk_size": chunk_size}


def with_retry_policy(
    config: ConfigDict,
    max_attempts: int = 5,
    base_delay_seconds: float = 0.5,
    max_delay_seconds: float = 30.0,
    chunk_timeout_seconds: float | None = None,
) -> ConfigDict:
    """
    Configure per-chunk retry with exponential backoff.

    Args:
        config: Current configuration dictionary
        max_attempts: Attempts per chunk, including the first
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Upper bound on any single delay
        chunk_timeout_seconds: Stall limit for one chunk

    Returns:
        New configuration dictionary with the retry policy set
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
    updated = {
        **config,
        "max_attempts": max_attempts,
        "base_delay_seconds": base_delay_seconds,
        "max_delay_seconds": max_delay_seconds,
    }
    if chunk_timeout_seconds is not None:
        updated["chunk_timeout_seconds"] = chunk_timeout_seconds
    return updated


def without_compression(config: ConfigDict) -> ConfigDict:
    """Store artifacts exactly as the service produced them."""
    return {**config, "compress_artifacts": False}


def without_pre_restore_copy(config: ConfigDict) -> ConfigDict:
    """
    Skip the pre-swap copy of live data.

    WARNING: a failed apply can then no longer be rolled back.
    """
    return {**config, "retain_pre_restore_copy": False}


def keep_last(config: ConfigDict, count: int) -> ConfigDict:
    """
    Keep only the newest `count` snapshots per source when pruning.
    """
    if count < 1:
        raise ValueError(f"keep_last count must be >= 1, got {count}")
    return {**config, "retention_keep_last": count}


def retain_snapshots_for(config: ConfigDict, days: int) -> ConfigDict:
    """
    Prune snapshots older than `days` days.
    """
    if days < 0:
        raise ValueError(f"retention days must be >= 0, got {days}")
    return {**config, "retention_days": days}


def run_daily_at(config: ConfigDict, time: str) -> ConfigDict:
    """
    Set the daily backup time (UTC).

    Args:
        config: Current configuration dictionary
        time: Time in HH:MM format (e.g., '02:30' for 2:30 AM UTC)

    Returns:
        New configuration dictionary with schedule set
    """
    parts = time.split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid time format: {time}, expected HH:MM")
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid time format: {time}, expected HH:MM")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time: {time}")

    return {**config, "schedule_daily_at": time}


def build_config(config: ConfigDict) -> SnapkeepConfig:
    """
    Freeze a configuration dictionary into a validated SnapkeepConfig.

    Raises:
        ConfigurationError: If validation fails
    """
    return SnapkeepConfig(**config)


def compose(*builders: BuilderFunc) -> BuilderFunc:
    """
    Compose builder functions left to right.

    Example:
        >>> make = compose(
        ...     lambda c: with_vault(c, "/var/lib/snapkeep"),
        ...     lambda c: keep_last(c, 7),
        ... )
        >>> config = build_config(make(create_empty_config()))
    """
    return lambda config: reduce(lambda acc, fn: fn(acc), builders, config)


def create_config(**overrides: Any) -> SnapkeepConfig:
    """
    Create a SnapkeepConfig from keyword overrides on top of defaults.
    """
    config = create_empty_config()
    unknown = set(overrides) - set(config)
    if unknown:
        raise TypeError(f"Unknown configuration options: {sorted(unknown)}")
    if "vault_path" in overrides:
        config = with_vault(config, overrides.pop("vault_path"))
    return build_config({**config, **overrides})
