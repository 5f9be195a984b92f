"""Per-agent mutual exclusion for the dispatch critical section.

Dispatches for different agents never contend. Dispatches for the same
agent are serialized by a lock that is acquired with a bounded timeout so
that a stuck caller turns into a retryable ``DispatchBusy`` rather than a
deadlock.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from .errors import DispatchBusy

logger = logging.getLogger("vandispatch.locks")


class AgentLocks:
    """Registry of one ``threading.Lock`` per agent id.

    The registry itself is guarded by an internal lock; entries are created
    lazily and kept for the life of the registry.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, agent_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(agent_id)
            if lock is None:
                lock = self._locks[agent_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, agent_id: str) -> Iterator[None]:
        """Hold the agent's lock for the duration of the ``with`` block.

        Raises:
            DispatchBusy: If the lock is not acquired within ``timeout``.
        """
        lock = self._lock_for(agent_id)
        if not lock.acquire(timeout=self.timeout):
            logger.warning("agent lock timeout", extra={"agent_id": agent_id, "timeout": self.timeout})
            raise DispatchBusy(agent_id)
        try:
            yield
        finally:
            lock.release()

    def is_held(self, agent_id: str) -> bool:
        return self._lock_for(agent_id).locked()
