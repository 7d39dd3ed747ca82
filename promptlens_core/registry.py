"""
In-Flight Registry - One outstanding generation per request identity

Coordinators acquire an entry for an identity; the first one creates the
computation, later ones join it. Each coordinator releases its hold when it
stops waiting; the computation is cancelled once nobody waits for it.
Entries disappear as soon as the computation settles.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2025-12-04
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class InFlight:
    """A shared pending computation."""
    identity: Hashable
    task: asyncio.Future
    waiters: int = 1


class InFlightRegistry:
    """Thread-safe map identity -> InFlight."""

    def __init__(self):
        self._entries: Dict[Hashable, InFlight] = {}
        self._lock = threading.Lock()
        self.created = 0
        self.joined = 0

    def acquire(self, identity: Hashable, factory: Callable[[], asyncio.Future]) -> Tuple[InFlight, bool]:
        """
        Join the pending computation for identity, or start one.

        Returns:
            (entry, created)
        """
        with self._lock:
            entry = self._entries.get(identity)
            if entry is not None and not entry.task.done():
                entry.waiters += 1
                self.joined += 1
                logger.debug(f"Joined in-flight computation ({entry.waiters} waiters)")
                return entry, False

            entry = InFlight(identity=identity, task=factory())
            self._entries[identity] = entry
            self.created += 1

        entry.task.add_done_callback(lambda _t, e=entry: self.discard(e))
        return entry, True

    def release(self, entry: InFlight) -> int:
        """
        Drop one waiter. Cancels the computation when none remain.

        Returns:
            Remaining waiter count
        """
        with self._lock:
            entry.waiters = max(0, entry.waiters - 1)
            remaining = entry.waiters
            if remaining == 0 and self._entries.get(entry.identity) is entry:
                del self._entries[entry.identity]
        if remaining == 0 and not entry.task.done():
            logger.debug("No waiters left, cancelling in-flight computation")
            entry.task.cancel()
        return remaining

    def discard(self, entry: InFlight):
        """Forget entry (if still registered) without touching its computation."""
        with self._lock:
            if self._entries.get(entry.identity) is entry:
                del self._entries[entry.identity]

    def get(self, identity: Hashable) -> Optional[InFlight]:
        with self._lock:
            return self._entries.get(identity)

    def __contains__(self, identity: Hashable) -> bool:
        return self.get(identity) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
