# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Container-backed service targets.

PostgreSQL and Redis running in Docker containers, driven through
`docker exec`. These targets only know how to produce and apply bytes;
staging, verification and rollback live in the restore coordinator.
"""

import asyncio
import shlex
from contextlib import asynccontextmanager
from typing import AsyncIterable, AsyncIterator, List

import structlog

from snapkeep.exceptions import (
    ApplyFailed,
    ConfigurationError,
    ProducerUnavailable,
    UnsupportedScope,
)
from snapkeep.models import Scope, ServiceKind
from snapkeep.targets.process import feed_process, run_command, stream_process

logger = structlog.get_logger()


class PostgresContainerTarget:
    """
    PostgreSQL in a container.

    FULL scope uses pg_dumpall; NAMED_SUBSET uses pg_dump --create on one
    database. Both emit `\\connect` section delimiters.
    """

    kind = ServiceKind.SQL_RELATIONAL

    def __init__(
        self,
        container: str,
        user: str = "postgres",
        name: str | None = None,
        docker: str = "docker",
    ):
        self.container = container
        self.user = user
        self.name = name or container
        self.docker = docker

    def _exec(self, *args: str, interactive: bool = False) -> List[str]:
        cmd = [self.docker, "exec"]
        if interactive:
            cmd.append("-i")
        cmd.append(self.container)
        cmd.extend(args)
        return cmd

    async def probe(self) -> None:
        rc, _, stderr = await run_command(
            self._exec("pg_isready", "-U", self.user), timeout=30
        )
        if rc != 0:
            raise ProducerUnavailable(
                f"PostgreSQL in {self.container} is not accepting connections",
                details={"container": self.container, "stderr": stderr.strip()},
            )

    def snapshot(self, scope: Scope) -> AsyncIterator[bytes]:
        if scope.is_subset:
            cmd = self._exec(
                "pg_dump", "-U", self.user,
                "--create", "--clean", "--if-exists",
                "-d", scope.subset_key,
            )
        else:
            cmd = self._exec("pg_dumpall", "-U", self.user, "--clean", "--if-exists")
        return stream_process(cmd)

    async def apply(self, chunks: AsyncIterable[bytes], scope: Scope) -> None:
        """
        Feed SQL to psql with ON_ERROR_STOP.

        A subset section starts at its `\\connect` line and carries no
        CREATE DATABASE, so the database is recreated empty first.
        """
        if scope.is_subset:
            ident = '"' + scope.subset_key.replace('"', '""') + '"'
            await self._psql(f"DROP DATABASE IF EXISTS {ident} WITH (FORCE)")
            await self._psql(f"CREATE DATABASE {ident}")
        cmd = self._exec(
            "psql", "-U", self.user, "-v", "ON_ERROR_STOP=1", "-q", "-d", "postgres",
            interactive=True,
        )
        await feed_process(cmd, chunks)
        logger.info(
            "postgres_applied",
            container=self.container,
            scope=scope.describe(),
        )

    async def _psql(self, sql: str) -> None:
        rc, _, stderr = await run_command(
            self._exec("psql", "-U", self.user, "-d", "postgres", "-v", "ON_ERROR_STOP=1", "-c", sql),
            timeout=60,
        )
        if rc != 0:
            raise ApplyFailed(
                "psql command failed",
                details={"container": self.container, "stderr": stderr.strip()},
            )

    @asynccontextmanager
    async def quiesced(self, scope: Scope) -> AsyncIterator[None]:
        """
        Block new connections and terminate existing client backends.

        For a subset only that database is affected, and only for
        non-superusers, so the pre-swap dump can still connect.
        """
        if scope.is_subset:
            ident = '"' + scope.subset_key.replace('"', '""') + '"'
            literal = "'" + scope.subset_key.replace("'", "''") + "'"
            await self._psql(f"REVOKE CONNECT ON DATABASE {ident} FROM PUBLIC")
            await self._psql(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                f"WHERE datname = {literal} AND pid <> pg_backend_pid()"
            )
            try:
                yield
            finally:
                await self._psql(f"GRANT CONNECT ON DATABASE {ident} TO PUBLIC")
        else:
            await self._psql(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                "WHERE backend_type = 'client backend' AND pid <> pg_backend_pid()"
            )
            yield


class RedisContainerTarget:
    """
    Redis in a container, backed up through its RDB file.

    Only FULL scope is supported.
    """

    kind = ServiceKind.KEY_VALUE

    def __init__(
        self,
        container: str,
        data_path: str = "/data/dump.rdb",
        name: str | None = None,
        docker: str = "docker",
        password: str | None = None,
        start_timeout: float = 60.0,
    ):
        self.container = container
        self.data_path = data_path
        self.name = name or container
        self.docker = docker
        self.password = password
        self.start_timeout = start_timeout

    def _cli(self, *args: str) -> List[str]:
        cmd = [self.docker, "exec", self.container, "redis-cli"]
        if self.password:
            cmd.extend(["-a", self.password, "--no-auth-warning"])
        cmd.extend(args)
        return cmd

    @staticmethod
    def _require_full(scope: Scope) -> None:
        if scope.is_subset:
            raise UnsupportedScope(
                "Redis targets only support FULL scope",
                details={"scope": scope.describe()},
            )

    async def probe(self) -> None:
        rc, _, stderr = await run_command(self._cli("PING"), timeout=30)
        if rc != 0:
            raise ProducerUnavailable(
                f"Redis in {self.container} is not reachable",
                details={"container": self.container, "stderr": stderr.strip()},
            )

    async def snapshot(self, scope: Scope) -> AsyncIterator[bytes]:
        self._require_full(scope)
        rc, _, stderr = await run_command(self._cli("SAVE"), timeout=3600)
        if rc != 0:
            raise ProducerUnavailable(
                "Redis SAVE failed",
                details={"container": self.container, "stderr": stderr.strip()},
            )
        async for chunk in stream_process(
            [self.docker, "exec", self.container, "cat", self.data_path]
        ):
            yield chunk

    async def apply(self, chunks: AsyncIterable[bytes], scope: Scope) -> None:
        """
        Write the RDB beside the live file, rename it over, restart Redis.

        SHUTDOWN NOSAVE keeps Redis from overwriting the new file on exit.
        """
        self._require_full(scope)
        side_path = f"{self.data_path}.restore"
        quoted_side = shlex.quote(side_path)
        await feed_process(
            [self.docker, "exec", "-i", self.container, "sh", "-c", f"cat > {quoted_side}"],
            chunks,
        )

        rc, _, stderr = await run_command(
            [self.docker, "exec", self.container, "mv", side_path, self.data_path],
            timeout=60,
        )
        if rc != 0:
            raise ApplyFailed(
                "Failed to move restored RDB into place",
                details={"container": self.container, "stderr": stderr.strip()},
            )

        # The container exits when Redis shuts down; the exit status is irrelevant
        await run_command(self._cli("SHUTDOWN", "NOSAVE"), timeout=60)

        rc, _, stderr = await run_command([self.docker, "start", self.container], timeout=120)
        if rc != 0:
            raise ApplyFailed(
                "Failed to start Redis container after restore",
                details={"container": self.container, "stderr": stderr.strip()},
            )
        await self._wait_ready()
        logger.info("redis_applied", container=self.container)

    async def _wait_ready(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.start_timeout
        while loop.time() < deadline:
            rc, _, _ = await run_command(self._cli("PING"), timeout=10)
            if rc == 0:
                return
            await asyncio.sleep(1)
        raise ApplyFailed(
            "Redis did not become ready after restore",
            details={"container": self.container, "timeout": self.start_timeout},
        )

    @asynccontextmanager
    async def quiesced(self, scope: Scope) -> AsyncIterator[None]:
        """Pause client writes for the duration of the swap."""
        self._require_full(scope)
        pause_ms = str(int(self.start_timeout * 1000) + 600_000)
        await run_command(self._cli("CLIENT", "PAUSE", pause_ms, "WRITE"), timeout=30)
        try:
            yield
        finally:
            await run_command(self._cli("CLIENT", "UNPAUSE"), timeout=30)


def target_from_name(
    kind: str,
    container: str,
    *,
    user: str = "postgres",
    data_path: str = "/data/dump.rdb",
    name: str | None = None,
    password: str | None = None,
):
    """
    Build a container target from CLI-style arguments.

    Args:
        kind: "postgres" or "redis"
        container: Container name or id
    """
    if kind == "postgres":
        return PostgresContainerTarget(container, user=user, name=name)
    if kind == "redis":
        return RedisContainerTarget(container, data_path=data_path, name=name, password=password)
    raise ConfigurationError(
        f"Unknown target kind: {kind!r}",
        details={"expected": ["postgres", "redis"]},
    )
