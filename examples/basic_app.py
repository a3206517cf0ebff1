# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application serving the Snapkeep admin API.

Backs up a PostgreSQL container and a Redis container, stages artifacts
in S3 and runs a nightly backup with retention.

Run with:
    uvicorn examples.basic_app:app

Environment variables:
    AWS_ACCESS_KEY_ID: AWS access key
    AWS_SECRET_ACCESS_KEY: AWS secret key
    SNAPKEEP_ADMIN_API_KEY: API key for admin endpoints
    SNAPKEEP_REMOTE_STORAGE: s3://bucket/prefix (optional)
    PG_CONTAINER / REDIS_CONTAINER: container names
"""

import os

from snapkeep.builder import (
    build_config,
    compose,
    create_empty_config,
    keep_last,
    run_daily_at,
    with_remote_storage,
    with_vault,
)
from snapkeep.integrations.fastapi import create_app
from snapkeep.targets.docker import PostgresContainerTarget, RedisContainerTarget


def create_snapkeep_config():
    """Nightly backups at 02:30 UTC, keeping the last 14 per service."""
    steps = [
        lambda c: with_vault(c, os.getenv("SNAPKEEP_VAULT_PATH", "/var/lib/snapkeep")),
        lambda c: keep_last(c, 14),
        lambda c: run_daily_at(c, "02:30"),
    ]
    remote = os.getenv("SNAPKEEP_REMOTE_STORAGE")
    if remote:
        steps.append(lambda c: with_remote_storage(c, remote, region=os.getenv("AWS_REGION")))
    return build_config(compose(*steps)(create_empty_config()))


targets = {
    "orders-db": PostgresContainerTarget(
        os.getenv("PG_CONTAINER", "orders-postgres"), name="orders-db"
    ),
    "sessions": RedisContainerTarget(
        os.getenv("REDIS_CONTAINER", "sessions-redis"),
        password=os.getenv("SNAPKEEP_REDIS_PASSWORD"),
        name="sessions",
    ),
}

app = create_app(create_snapkeep_config(), targets)

# Endpoints registered under /admin/snapkeep:
#
# POST   /targets/{name}/backup         - Back up a target now
# POST   /targets/{name}/restore/plan   - Dry run, returns a confirmation token
# POST   /targets/{name}/restore        - Restore with the token (or force=true)
# GET    /snapshots                     - List snapshots, newest first
# GET    /snapshots/{id}                - One snapshot
# DELETE /snapshots/{id}                - Delete locally and remotely
# POST   /snapshots/{id}/upload         - Resume an interrupted upload
# POST   /prune                         - Apply retention (dry run by default)
# GET    /restores                      - Restore audit log
# GET    /status, /health, /config
#
# All admin endpoints require: Authorization: Bearer <SNAPKEEP_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
