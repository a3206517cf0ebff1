# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for snapkeep.

These helpers centralize wording for common configuration errors so that
all modules present consistent, actionable messages.
"""


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be a positive integer."
    )


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    """
    Explain that a boolean environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "Expected one of: 1, 0, true, false, yes, no."
    )


def explain_invalid_remote_storage_env(value: str | None) -> str:
    """
    Explain that SNAPKEEP_REMOTE_STORAGE is invalid.
    """

    return (
        f"Invalid SNAPKEEP_REMOTE_STORAGE value: {value!r}. "
        "Use s3://bucket/prefix or file:///absolute/directory, "
        "or leave unset to keep snapshots local only."
    )


def explain_missing_remote_storage() -> str:
    """
    Explain that an operation needs remote storage but none is configured.
    """

    return (
        "Remote storage is not configured. "
        "Set SNAPKEEP_REMOTE_STORAGE or pass remote_storage=... to create_config()."
    )


def explain_confirmation_required(target: str, snapshot_id: str) -> str:
    """
    Explain how to confirm a destructive restore.
    """

    return (
        f"Restoring {snapshot_id} onto {target} replaces live data. "
        "Run a dry-run first and pass its confirmation token, or use force=True."
    )
