"""Per-server concurrency permits."""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Optional

from mcpchat.core.log_sanitizer import sanitize_for_logging

logger = logging.getLogger(__name__)


class _ServerSlots:
    """Slot accounting for one server: ``in_use`` never exceeds ``limit`` on admission."""

    __slots__ = ("limit", "in_use", "waiters")

    def __init__(self, limit: int):
        self.limit = limit
        self.in_use = 0
        self.waiters: Deque[asyncio.Future] = deque()

    def has_waiters(self) -> bool:
        return any(not w.done() for w in self.waiters)

    def wake(self) -> None:
        """Hand free slots to waiters in arrival order."""
        while self.waiters and self.in_use < self.limit:
            waiter = self.waiters.popleft()
            if waiter.done():
                continue
            self.in_use += 1
            waiter.set_result(None)


class Permit:
    """One concurrency slot on one server.

    ``release()`` is idempotent. A permit taken before a limit change still
    counts against the server until it is released.
    """

    def __init__(self, server_id: str, slots: _ServerSlots):
        self.server_id = server_id
        self._slots = slots
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        if self._released:
            return False
        self._released = True
        self._slots.in_use -= 1
        self._slots.wake()
        return True


class ServerPermitPool:
    """Bounds in-flight calls per server by its current max_concurrency.

    Lowering a limit never revokes permits already held; new acquirers wait
    until the count in use drops below the new limit.
    """

    def __init__(self):
        self._servers: Dict[str, _ServerSlots] = {}

    def _slots_for(self, server_id: str, limit: int) -> _ServerSlots:
        if limit < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {limit}")
        slots = self._servers.get(server_id)
        if slots is None:
            slots = _ServerSlots(limit)
            self._servers[server_id] = slots
        elif slots.limit != limit:
            logger.info(
                "Concurrency limit for %s changed %s -> %s (%d in use)",
                sanitize_for_logging(server_id),
                slots.limit,
                limit,
                slots.in_use,
            )
            slots.limit = limit
            slots.wake()
        return slots

    def would_block(self, server_id: str, limit: int) -> bool:
        slots = self._slots_for(server_id, limit)
        return slots.in_use >= slots.limit or slots.has_waiters()

    async def acquire(self, server_id: str, limit: int) -> Permit:
        """Wait for a free slot on ``server_id``. Cancellable while waiting."""
        slots = self._slots_for(server_id, limit)
        if slots.in_use < slots.limit and not slots.has_waiters():
            slots.in_use += 1
            return Permit(server_id, slots)

        waiter = asyncio.get_running_loop().create_future()
        slots.waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Woken and cancelled in the same turn: pass the slot on
                slots.in_use -= 1
                slots.wake()
            elif waiter in slots.waiters:
                slots.waiters.remove(waiter)
            raise
        return Permit(server_id, slots)

    def in_use(self, server_id: str) -> int:
        slots = self._servers.get(server_id)
        return slots.in_use if slots else 0

    def limit(self, server_id: str) -> Optional[int]:
        slots = self._servers.get(server_id)
        return slots.limit if slots else None
