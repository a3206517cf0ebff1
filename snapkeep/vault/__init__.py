# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapshot Vault - Catalog, checksums and compression for local artifacts.
"""

from snapkeep.vault.catalog import (
    CatalogStore,
    RestoreRecord,
    SnapshotListing,
    init_catalog_db,
)

from snapkeep.vault.checksum import (
    ChecksummingWriter,
    compute_digest,
    verify,
    verify_stream,
    wrap,
)

from snapkeep.vault.compressor import (
    artifact_suffix,
    compress_stream,
    decompress_stream,
    get_compression_stats,
)

__all__ = [
    # Catalog
    "CatalogStore",
    "RestoreRecord",
    "SnapshotListing",
    "init_catalog_db",
    # Checksums
    "ChecksummingWriter",
    "compute_digest",
    "verify",
    "verify_stream",
    "wrap",
    # Compressor
    "artifact_suffix",
    "compress_stream",
    "decompress_stream",
    "get_compression_stats",
]
