# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Transfer Engine - Chunked, resumable transfers to remote storage.
"""

from snapkeep.transfer.engine import (
    TransferEngine,
    TransferStats,
    remote_key_for,
)

from snapkeep.transfer.retry import (
    RetryPolicy,
    calculate_delay,
    retry_async,
)

from snapkeep.transfer.storage import (
    BlobStorage,
    LocalBlobStorage,
    S3BlobStorage,
    create_blob_storage,
    open_locator,
    parse_locator,
)

__all__ = [
    # Engine
    "TransferEngine",
    "TransferStats",
    "remote_key_for",
    # Retry
    "RetryPolicy",
    "calculate_delay",
    "retry_async",
    # Storage
    "BlobStorage",
    "LocalBlobStorage",
    "S3BlobStorage",
    "create_blob_storage",
    "open_locator",
    "parse_locator",
]
