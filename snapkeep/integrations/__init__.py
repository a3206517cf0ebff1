# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI admin API.
"""

from snapkeep.integrations.fastapi import (
    create_app,
    register_snapkeep_routes,
    snapkeep_lifespan,
    verify_api_key,
)

__all__ = [
    "create_app",
    "register_snapkeep_routes",
    "snapkeep_lifespan",
    "verify_api_key",
]
