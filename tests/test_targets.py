# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Target Tests for Snapkeep.

Covers SQL dump subset extraction, the subprocess helpers the container
targets are built on, and the container targets' command construction.
"""

import pytest

from snapkeep.exceptions import (
    ApplyFailed,
    ConfigurationError,
    ProducerProcessFailed,
    ProducerUnavailable,
    SubsetNotPresent,
    UnsupportedScope,
)
from snapkeep.models import Scope, ServiceKind


async def _aiter(*chunks: bytes):
    for chunk in chunks:
        yield chunk


def _chunked(data: bytes, size: int):
    return _aiter(*[data[i:i + size] for i in range(0, len(data), size)])


# ============================================================================
# Subset extraction
# ============================================================================

def test_parse_connect_line_spellings():
    """All three \\connect spellings emitted by pg_dump and pg_dumpall parse."""
    from snapkeep.targets.subset import parse_connect_line

    assert parse_connect_line(b"\\connect shop\n") == "shop"
    assert parse_connect_line(b'\\connect "Billing DB"\n') == "Billing DB"
    assert parse_connect_line(b'\\connect "say ""hi"""\r\n') == 'say "hi"'
    assert (
        parse_connect_line(b"\\connect -reuse-previous=on \"dbname='analytics'\"\n")
        == "analytics"
    )
    assert (
        parse_connect_line(b"\\connect -reuse-previous=on \"dbname='o\\'brien'\"\n")
        == "o'brien"
    )
    assert parse_connect_line(b"SELECT 1;\n") is None
    assert parse_connect_line(b"-- \\connect shop\n") is None


@pytest.mark.asyncio
async def test_extract_subset_returns_only_that_section():
    from conftest import SQL_DUMP
    from snapkeep.targets.subset import extract_subset

    # Tiny chunks split lines across chunk boundaries
    section = b"".join([c async for c in extract_subset(_chunked(SQL_DUMP, 7), "shop")])

    assert section == (
        b"\\connect shop\n"
        b"CREATE TABLE orders (id integer);\n"
        b"INSERT INTO orders VALUES (1), (2), (3);\n"
    )


@pytest.mark.asyncio
async def test_extract_subset_quoted_and_conninfo_names():
    from conftest import SQL_DUMP
    from snapkeep.targets.subset import extract_subset

    billing = b"".join([c async for c in extract_subset(_chunked(SQL_DUMP, 64), "Billing DB")])
    assert billing.startswith(b'\\connect "Billing DB"\n')
    assert b"invoices" in billing and b"orders" not in billing

    analytics = b"".join([c async for c in extract_subset(_aiter(SQL_DUMP), "analytics")])
    assert analytics.endswith(b"CREATE TABLE events (id integer);\n")


@pytest.mark.asyncio
async def test_extract_subset_missing_key():
    from conftest import SQL_DUMP
    from snapkeep.targets.subset import extract_subset

    with pytest.raises(SubsetNotPresent) as exc_info:
        async for _ in extract_subset(_aiter(SQL_DUMP), "inventory"):
            pass
    assert exc_info.value.details["subset_key"] == "inventory"


@pytest.mark.asyncio
async def test_list_and_contains_subsets():
    from conftest import SQL_DUMP
    from snapkeep.targets.subset import contains_subset, list_subsets

    assert await list_subsets(_chunked(SQL_DUMP, 16)) == [
        "template1", "shop", "Billing DB", "analytics"
    ]
    assert await contains_subset(_aiter(SQL_DUMP), "shop")
    assert not await contains_subset(_aiter(SQL_DUMP), "Shop")


@pytest.mark.asyncio
async def test_iter_lines_keeps_unterminated_tail():
    from snapkeep.targets.subset import iter_lines

    lines = [line async for line in iter_lines(_aiter(b"a\nb", b"c\n", b"tail"))]
    assert lines == [b"a\n", b"bc\n", b"tail"]


# ============================================================================
# Subprocess helpers
# ============================================================================

@pytest.mark.asyncio
async def test_stream_process_yields_stdout():
    from snapkeep.targets.process import stream_process

    out = b"".join([c async for c in stream_process(["sh", "-c", "printf 'dump-bytes'"])])
    assert out == b"dump-bytes"


@pytest.mark.asyncio
async def test_stream_process_failure_carries_stderr():
    from snapkeep.targets.process import stream_process

    with pytest.raises(ProducerProcessFailed) as exc_info:
        async for _ in stream_process(["sh", "-c", "printf partial; echo 'role missing' >&2; exit 2"]):
            pass

    error = exc_info.value
    assert "role missing" in error.stderr
    assert error.details["returncode"] == 2


@pytest.mark.asyncio
async def test_stream_process_missing_executable():
    from snapkeep.targets.process import stream_process

    with pytest.raises(ProducerUnavailable):
        async for _ in stream_process(["snapkeep-no-such-binary"]):
            pass


@pytest.mark.asyncio
async def test_feed_process_pipes_stdin():
    from snapkeep.targets.process import feed_process

    out = await feed_process(["sh", "-c", "wc -c"], _aiter(b"12345", b"678"))
    assert out.strip() == "8"


@pytest.mark.asyncio
async def test_feed_process_failure_raises_apply_failed():
    from snapkeep.targets.process import feed_process

    with pytest.raises(ApplyFailed) as exc_info:
        await feed_process(["sh", "-c", "cat >/dev/null; echo 'syntax error' >&2; exit 3"], _aiter(b"x"))
    assert "syntax error" in exc_info.value.details["stderr"]


@pytest.mark.asyncio
async def test_run_command_timeout():
    from snapkeep.targets.process import run_command

    rc, _, stderr = await run_command(["sh", "-c", "sleep 5"], timeout=0.2)
    assert rc == -1
    assert "timed out" in stderr


# ============================================================================
# Container targets
# ============================================================================

def test_target_from_name():
    from snapkeep.targets.docker import (
        PostgresContainerTarget,
        RedisContainerTarget,
        target_from_name,
    )

    pg = target_from_name("postgres", "db-1", user="admin", name="orders-db")
    assert isinstance(pg, PostgresContainerTarget)
    assert pg.name == "orders-db"
    assert pg.kind == ServiceKind.SQL_RELATIONAL

    redis = target_from_name("redis", "cache", password="s3cret")
    assert isinstance(redis, RedisContainerTarget)
    assert redis.name == "cache"
    assert redis._cli("PING") == [
        "docker", "exec", "cache", "redis-cli", "-a", "s3cret", "--no-auth-warning", "PING"
    ]

    with pytest.raises(ConfigurationError):
        target_from_name("mongo", "db")


def test_postgres_exec_command():
    from snapkeep.targets.docker import PostgresContainerTarget

    target = PostgresContainerTarget("db-1", user="admin")
    assert target._exec("pg_isready") == ["docker", "exec", "db-1", "pg_isready"]
    assert target._exec("psql", interactive=True) == ["docker", "exec", "-i", "db-1", "psql"]


@pytest.mark.asyncio
async def test_postgres_probe_without_docker():
    from snapkeep.targets.docker import PostgresContainerTarget

    target = PostgresContainerTarget("db-1", docker="snapkeep-no-such-docker")
    with pytest.raises(ProducerUnavailable):
        await target.probe()


@pytest.mark.asyncio
async def test_redis_rejects_subset_scope():
    from snapkeep.targets.docker import RedisContainerTarget

    target = RedisContainerTarget("cache", docker="snapkeep-no-such-docker")
    with pytest.raises(UnsupportedScope):
        async for _ in target.snapshot(Scope.subset("0")):
            pass
    with pytest.raises(UnsupportedScope):
        await target.apply(_aiter(b"REDIS"), Scope.subset("0"))
