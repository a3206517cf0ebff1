# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapkeep - Verified backups and reversible restores for stateful services.

Produces checksummed snapshots of PostgreSQL and Redis containers, moves
them to object storage with resumable chunked transfers, and restores
them through a staged swap that rolls back on failure. Package name:
snapkeep.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from snapkeep.builder import create_config

# Core functions
from snapkeep.core import (
    get_metrics,
    initialize_state,
    list_snapshots,
    plan_restore,
    prune_snapshots,
    resume_upload,
    run_backup,
    run_restore,
    shutdown_state,
)

# Environment-based configuration
from snapkeep.env import create_config_from_env

from snapkeep.models import ResultCode, Scope, Snapshot, SnapshotStatus

__all__ = [
    # Version
    "__version__",
    # Configuration creation
    "create_config",
    "create_config_from_env",
    # Core operations
    "initialize_state",
    "run_backup",
    "plan_restore",
    "run_restore",
    "list_snapshots",
    "prune_snapshots",
    "resume_upload",
    "get_metrics",
    "shutdown_state",
    # Models
    "ResultCode",
    "Scope",
    "Snapshot",
    "SnapshotStatus",
]
