# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Subset extraction for SQL dumps.

A combined cluster dump is split into per-database sections by psql
`\\connect` meta-commands, which pg_dumpall and `pg_dump --create` emit
at the start of every database section. Three spellings occur:

    \\connect mydb
    \\connect "My DB"
    \\connect -reuse-previous=on "dbname='mydb'"

A section runs from its `\\connect` line up to (not including) the next
one. Everything works on async byte streams, one line at a time.
"""

import re
from typing import AsyncIterable, AsyncIterator, List

from snapkeep.exceptions import SubsetNotPresent

_CONNECT_RE = re.compile(rb"^\\connect\s+(?:-reuse-previous=on\s+)?(.+?)\s*$")
_DBNAME_RE = re.compile(r"^dbname='((?:[^'\\]|\\.)*)'$")

_FLUSH_SIZE = 1024 * 1024


def parse_connect_line(line: bytes) -> str | None:
    """
    Return the database named by a `\\connect` line, or None.

    Examples:
        >>> parse_connect_line(b"\\\\connect shop\\n")
        'shop'
        >>> parse_connect_line(b"SELECT 1;\\n") is None
        True
    """
    match = _CONNECT_RE.match(line.rstrip(b"\r\n"))
    if not match:
        return None
    arg = match.group(1).decode("utf-8", errors="replace")

    if len(arg) >= 2 and arg.startswith('"') and arg.endswith('"'):
        inner = arg[1:-1].replace('""', '"')
        conninfo = _DBNAME_RE.match(inner)
        if conninfo:
            return re.sub(r"\\(.)", r"\1", conninfo.group(1))
        return inner
    return arg


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """Re-chunk a byte stream into lines, keeping line terminators."""
    pending = b""
    async for chunk in chunks:
        pending += chunk
        start = 0
        while True:
            end = pending.find(b"\n", start)
            if end < 0:
                break
            yield pending[start:end + 1]
            start = end + 1
        pending = pending[start:]
    if pending:
        yield pending


async def list_subsets(chunks: AsyncIterable[bytes]) -> List[str]:
    """Names of all database sections, in dump order."""
    names: List[str] = []
    async for line in iter_lines(chunks):
        if line.startswith(b"\\connect"):
            name = parse_connect_line(line)
            if name is not None and name not in names:
                names.append(name)
    return names


async def contains_subset(chunks: AsyncIterable[bytes], key: str) -> bool:
    """True if the dump has a section for database `key`."""
    async for line in iter_lines(chunks):
        if line.startswith(b"\\connect") and parse_connect_line(line) == key:
            return True
    return False


async def extract_subset(chunks: AsyncIterable[bytes], key: str) -> AsyncIterator[bytes]:
    """
    Yield only the section for database `key`, starting at its `\\connect`.

    Raises:
        SubsetNotPresent: If the dump has no such section
    """
    found = False
    inside = False
    buffer: List[bytes] = []
    buffered = 0

    async for line in iter_lines(chunks):
        if line.startswith(b"\\connect"):
            name = parse_connect_line(line)
            if name is not None:
                if inside and name != key:
                    inside = False
                elif name == key:
                    inside = True
                    found = True
        if inside:
            buffer.append(line)
            buffered += len(line)
            if buffered >= _FLUSH_SIZE:
                yield b"".join(buffer)
                buffer.clear()
                buffered = 0

    if buffer:
        yield b"".join(buffer)

    if not found:
        raise SubsetNotPresent(
            f"Subset {key!r} not present in artifact",
            details={"subset_key": key},
        )
