# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Snapshot production, artifact lifecycle and restores.
"""

from snapkeep.backup.manager import (
    artifact_path,
    get_artifact_stats,
    prune_partials,
    read_manifest,
    remove_artifact,
    write_manifest,
)

from snapkeep.backup.producer import SnapshotProducer

from snapkeep.backup.restore import (
    RestoreCoordinator,
    RestoreRun,
)

__all__ = [
    # Manager
    "artifact_path",
    "get_artifact_stats",
    "prune_partials",
    "read_manifest",
    "remove_artifact",
    "write_manifest",
    # Producer
    "SnapshotProducer",
    # Restore
    "RestoreCoordinator",
    "RestoreRun",
]
