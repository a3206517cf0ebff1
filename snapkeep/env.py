# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

Only outer layers (the CLI and application integrations) read the
environment; the engine itself receives an explicit SnapkeepConfig.
"""

from __future__ import annotations

import os

from snapkeep.builder import create_config
from snapkeep.config import SnapkeepConfig, _validate_remote_storage
from snapkeep.errors import (
    explain_invalid_bool_env,
    explain_invalid_int_env,
    explain_invalid_remote_storage_env,
)
from snapkeep.exceptions import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_positive_int(name: str, value: str | None) -> int | None:
    if not value:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc
    if number < 1:
        raise ConfigurationError(explain_invalid_int_env(name, value))
    return number


def _parse_bool(name: str, value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(explain_invalid_bool_env(name, value))


def _parse_remote_storage(value: str | None) -> str | None:
    if not value:
        return None
    if not _validate_remote_storage(value):
        raise ConfigurationError(explain_invalid_remote_storage_env(value))
    return value


def create_config_from_env(**overrides) -> SnapkeepConfig:
    """
    Create a SnapkeepConfig from environment variables.

    Explicit keyword overrides win over the environment.

    Optional environment variables:
        - SNAPKEEP_VAULT_PATH: Local vault directory (default: ./snapkeep_vault)
        - SNAPKEEP_REMOTE_STORAGE: s3://bucket/prefix or file:///dir
        - AWS_REGION: AWS region (default: us-east-1)
        - SNAPKEEP_S3_ENDPOINT: Custom S3 endpoint (MinIO, localstack)
        - SNAPKEEP_CHUNK_SIZE: Transfer chunk size in bytes
        - SNAPKEEP_MAX_ATTEMPTS: Attempts per chunk
        - SNAPKEEP_COMPRESS: Compress artifacts with zstd (default: true)
        - SNAPKEEP_RETAIN_PRE_RESTORE_COPY: Keep a rollback copy (default: true)
        - SNAPKEEP_RETENTION_KEEP_LAST: Snapshots to keep per source
        - SNAPKEEP_SCHEDULE_DAILY_AT: Daily backup time HH:MM (UTC)
    """
    values: dict = {}

    vault_path = os.getenv("SNAPKEEP_VAULT_PATH")
    if vault_path:
        values["vault_path"] = vault_path

    remote = _parse_remote_storage(os.getenv("SNAPKEEP_REMOTE_STORAGE"))
    if remote:
        values["remote_storage"] = remote

    values["region"] = os.getenv("AWS_REGION", "us-east-1")

    endpoint = os.getenv("SNAPKEEP_S3_ENDPOINT")
    if endpoint:
        values["endpoint_url"] = endpoint

    chunk_size = _parse_positive_int("SNAPKEEP_CHUNK_SIZE", os.getenv("SNAPKEEP_CHUNK_SIZE"))
    if chunk_size:
        values["chunk_size"] = chunk_size

    max_attempts = _parse_positive_int(
        "SNAPKEEP_MAX_ATTEMPTS", os.getenv("SNAPKEEP_MAX_ATTEMPTS")
    )
    if max_attempts:
        values["max_attempts"] = max_attempts

    values["compress_artifacts"] = _parse_bool(
        "SNAPKEEP_COMPRESS", os.getenv("SNAPKEEP_COMPRESS"), True
    )
    values["retain_pre_restore_copy"] = _parse_bool(
        "SNAPKEEP_RETAIN_PRE_RESTORE_COPY",
        os.getenv("SNAPKEEP_RETAIN_PRE_RESTORE_COPY"),
        True,
    )

    keep = _parse_positive_int(
        "SNAPKEEP_RETENTION_KEEP_LAST", os.getenv("SNAPKEEP_RETENTION_KEEP_LAST")
    )
    if keep:
        values["retention_keep_last"] = keep

    schedule = os.getenv("SNAPKEEP_SCHEDULE_DAILY_AT")
    if schedule:
        values["schedule_daily_at"] = schedule

    values.update({k: v for k, v in overrides.items() if v is not None})
    return create_config(**values)
