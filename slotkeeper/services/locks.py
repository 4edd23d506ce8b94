"""
Per-professional mutual exclusion with a bounded wait.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from ..domain.exceptions import BusyError
from ..domain.models import EntityId

logger = logging.getLogger(__name__)


class ProfessionalLocks:
    """
    Registry of one lock per professional.

    Holding the guard for professional A never blocks work for professional
    B. Acquisition waits at most ``timeout`` seconds and then raises
    BusyError, which callers may retry with backoff.
    """

    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout
        self._locks: Dict[EntityId, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, professional_id: EntityId) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(professional_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[professional_id] = lock
            return lock

    @contextmanager
    def guard(self, professional_id: EntityId, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the professional's lock for the duration of the block."""
        wait = self.timeout if timeout is None else timeout
        lock = self._lock_for(professional_id)

        if not lock.acquire(timeout=wait):
            logger.warning("Timed out after %.2fs waiting for professional %s", wait, professional_id)
            raise BusyError(
                "Professional is busy, retry later",
                professional_id=professional_id,
                waited_seconds=wait,
            )

        try:
            yield
        finally:
            lock.release()
