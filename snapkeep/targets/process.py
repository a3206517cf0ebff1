# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Subprocess helpers for service targets.

External tools (docker, pg_dumpall, psql, redis-cli) are judged by exit
status and captured stderr only; their text output is never scanned for
keywords. Processes are killed whenever the awaiting task is cancelled or
the consumer stops reading early.
"""

import asyncio
import os
from typing import AsyncIterable, AsyncIterator, Dict, List, Tuple

import structlog

from snapkeep.exceptions import ApplyFailed, ProducerProcessFailed, ProducerUnavailable

logger = structlog.get_logger()

DEFAULT_READ_SIZE = 1024 * 1024  # 1 MiB
_STDERR_LIMIT = 8192


def _merged_env(env: Dict[str, str] | None) -> Dict[str, str] | None:
    if not env:
        return None
    merged = os.environ.copy()
    merged.update(env)
    return merged


def _tail(data: bytes) -> str:
    return data[-_STDERR_LIMIT:].decode("utf-8", errors="replace").strip()


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


async def _spawn(cmd: List[str], env: Dict[str, str] | None, **pipes) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(*cmd, env=_merged_env(env), **pipes)
    except FileNotFoundError as e:
        raise ProducerUnavailable(
            f"Command not found: {cmd[0]}",
            details={"command": cmd[0]},
        ) from e


async def run_command(
    cmd: List[str],
    env: Dict[str, str] | None = None,
    timeout: float = 300,
) -> Tuple[int, str, str]:
    """
    Run a subprocess and return (returncode, stdout, stderr).

    A timeout kills the process and reports returncode -1.
    """
    proc = await _spawn(
        cmd,
        env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        return -1, "", f"Command timed out after {timeout}s"
    except BaseException:
        await _terminate(proc)
        raise

    stdout_str = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
    stderr_str = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
    return proc.returncode or 0, stdout_str, stderr_str


async def stream_process(
    cmd: List[str],
    env: Dict[str, str] | None = None,
    read_size: int = DEFAULT_READ_SIZE,
) -> AsyncIterator[bytes]:
    """
    Yield a process's stdout in chunks.

    Raises:
        ProducerUnavailable: If the executable does not exist
        ProducerProcessFailed: If the process exits non-zero (with stderr)
    """
    proc = await _spawn(
        cmd,
        env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stderr_task = asyncio.ensure_future(proc.stderr.read())
    finished = False
    try:
        while True:
            chunk = await proc.stdout.read(read_size)
            if not chunk:
                break
            yield chunk
        returncode = await proc.wait()
        stderr = _tail(await stderr_task)
        finished = True
    finally:
        if not finished:
            stderr_task.cancel()
            await _terminate(proc)

    if returncode != 0:
        logger.warning(
            "snapshot_process_failed",
            command=cmd[0],
            returncode=returncode,
            stderr=stderr,
        )
        raise ProducerProcessFailed(
            f"{cmd[0]} exited with status {returncode}",
            details={"command": " ".join(cmd), "returncode": returncode},
            stderr=stderr,
        )


async def feed_process(
    cmd: List[str],
    chunks: AsyncIterable[bytes],
    env: Dict[str, str] | None = None,
) -> str:
    """
    Pipe `chunks` into a process's stdin and wait for it to finish.

    Returns:
        The process's stdout

    Raises:
        ApplyFailed: If the process exits non-zero (with stderr)
    """
    try:
        proc = await _spawn(
            cmd,
            env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except ProducerUnavailable as e:
        raise ApplyFailed(e.message, details=e.details) from e

    stdout_task = asyncio.ensure_future(proc.stdout.read())
    stderr_task = asyncio.ensure_future(proc.stderr.read())
    finished = False
    try:
        try:
            async for chunk in chunks:
                proc.stdin.write(chunk)
                await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # The process exited early; its status below says why
            pass
        finally:
            if not proc.stdin.is_closing():
                proc.stdin.close()
        returncode = await proc.wait()
        stdout = (await stdout_task).decode("utf-8", errors="replace")
        stderr = _tail(await stderr_task)
        finished = True
    finally:
        if not finished:
            stdout_task.cancel()
            stderr_task.cancel()
            await _terminate(proc)

    if returncode != 0:
        raise ApplyFailed(
            f"{cmd[0]} exited with status {returncode}",
            details={"command": " ".join(cmd), "returncode": returncode, "stderr": stderr},
        )
    return stdout
