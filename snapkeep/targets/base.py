# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Service target interface.

A service target is the running database or cache being backed up. The
engine only ever talks to it through this protocol: it never parses the
engine's data beyond the subset delimiters in snapkeep.targets.subset.
"""

from contextlib import AbstractAsyncContextManager
from typing import AsyncIterable, AsyncIterator, Protocol, runtime_checkable

from snapkeep.models import Scope, ServiceKind


@runtime_checkable
class ServiceTarget(Protocol):
    """A stateful service that can produce and apply snapshots."""

    name: str
    kind: ServiceKind

    async def probe(self) -> None:
        """
        Check the service is reachable.

        Raises:
            ProducerUnavailable: If it is not
        """
        ...

    def snapshot(self, scope: Scope) -> AsyncIterator[bytes]:
        """
        Stream the service's data for `scope`.

        Raises:
            ProducerProcessFailed: If the producing process exits non-zero
        """
        ...

    async def apply(self, chunks: AsyncIterable[bytes], scope: Scope) -> None:
        """
        Replace the service's data for `scope` with `chunks`.

        Raises:
            ApplyFailed: If the service reports failure
        """
        ...

    def quiesced(self, scope: Scope) -> AbstractAsyncContextManager[None]:
        """Hold the service in a state safe for destructive replacement."""
        ...
