"""Per-member advisory locks for ledger writes."""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator


class MemberLockRegistry:
    """One asyncio.Lock per member id.

    Serializes "read tail balance -> compute -> append" for a member inside
    this process while different members proceed in parallel. Writers in
    other processes are caught by the ledger's (member_id, sequence) unique
    key instead.
    """

    def __init__(self) -> None:
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def get(self, member_id: int) -> asyncio.Lock:
        return self._locks[member_id]

    @asynccontextmanager
    async def hold(self, member_id: int) -> AsyncIterator[None]:
        async with self._locks[member_id]:
            yield

    def __len__(self) -> int:
        return len(self._locks)


_default_registry = MemberLockRegistry()


def get_member_locks() -> MemberLockRegistry:
    """Process-wide registry shared by the engine, payments and API."""
    return _default_registry


__all__ = ["MemberLockRegistry", "get_member_locks"]
