from __future__ import annotations

import logging
import threading
from functools import lru_cache

from driftwatch.services.store import RecordStore

logger = logging.getLogger(__name__)


class SessionCorrelator:
    """Issues strictly increasing sweep session ids for the lifetime of the process.

    The counter is seeded from the largest session id already present in storage so
    a restart never reissues an id that tags existing workflow records.
    """

    def __init__(self, seed: int = 0) -> None:
        self._lock = threading.Lock()
        self._last = max(0, seed)
        self._initialized = False

    @property
    def last_session(self) -> int:
        with self._lock:
            return self._last

    @property
    def initialized(self) -> bool:
        return self._initialized

    def seed(self, observed: int) -> int:
        with self._lock:
            # never move backwards, even if storage was truncated
            self._last = max(self._last, observed)
            self._initialized = True
            return self._last

    async def initialize(self, store: RecordStore) -> int:
        observed = await store.max_session_id()
        seeded = self.seed(observed)
        logger.info("session correlator seeded observed=%s last_session=%s", observed, seeded)
        return seeded

    def next_session(self) -> int:
        with self._lock:
            self._last += 1
            return self._last

    async def allocate(self, store: RecordStore) -> int:
        """Take the next id from the shared store counter.

        Every process writing to the same store draws from one sequence, so ids stay
        unique across the API and the worker. The local counter only keeps this process
        from ever going backwards.
        """
        issued = await store.allocate_session_id(floor=self.last_session)
        with self._lock:
            self._last = max(self._last, issued)
            self._initialized = True
        return issued


@lru_cache
def get_session_correlator() -> SessionCorrelator:
    return SessionCorrelator()
