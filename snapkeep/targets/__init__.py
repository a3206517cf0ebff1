# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Service Targets - The databases and caches being backed up.
"""

from snapkeep.targets.base import ServiceTarget

from snapkeep.targets.docker import (
    PostgresContainerTarget,
    RedisContainerTarget,
    target_from_name,
)

from snapkeep.targets.subset import (
    contains_subset,
    extract_subset,
    list_subsets,
    parse_connect_line,
)

__all__ = [
    # Protocol
    "ServiceTarget",
    # Container targets
    "PostgresContainerTarget",
    "RedisContainerTarget",
    "target_from_name",
    # Subset extraction
    "contains_subset",
    "extract_subset",
    "list_subsets",
    "parse_connect_line",
]
