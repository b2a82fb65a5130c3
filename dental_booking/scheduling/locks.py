"""In-process per-resource write locks for the booking path."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from dental_booking.scheduling.models import ResourceKind

logger = logging.getLogger(__name__)

ResourceKey = tuple[str, str]


def resource_key(kind: ResourceKind, resource_id: uuid.UUID) -> ResourceKey:
    # Doctors and participants share one lock since both roles occupy the employee
    if kind is ResourceKind.PARTICIPANT:
        kind = ResourceKind.DOCTOR
    return (kind.value, str(resource_id))


class ResourceLockRegistry:
    """Hands out one ``asyncio.Lock`` per resource key.

    Locks for a booking are taken in sorted key order, so two bookings that
    share resources cannot deadlock, and bookings with disjoint resources
    never wait on each other.
    """

    def __init__(self) -> None:
        self._locks: dict[ResourceKey, asyncio.Lock] = {}

    def _lock_for(self, key: ResourceKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, keys: Iterable[ResourceKey]) -> AsyncIterator[list[ResourceKey]]:
        ordered = sorted(set(keys))
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                await lock.acquire()
                acquired.append(lock)
            logger.debug("Holding %d resource locks", len(ordered))
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()

    def is_locked(self, key: ResourceKey) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


resource_locks = ResourceLockRegistry()
