"""
Per-entity lock registry

Serialises work on a single slot, appointment or escrow transaction inside
this process. Database row locks (SELECT ... FOR UPDATE) and conditional
updates cover the cross-process case; these locks keep threads of one worker
from interleaving read-check-write sequences on the same entity.

Ordering rule: take every key you need in one hold() call (keys are acquired
in sorted order). Nested hold() calls on keys already held by the thread are
reentrant.
"""

import logging
from contextlib import contextmanager
from threading import Lock, RLock

logger = logging.getLogger(__name__)


def slot_key(doctor_id: str, slot_date, start_time: str, end_time: str) -> str:
    # Keyed by slot identity so reserve() can lock before the row exists
    return f"slot:{doctor_id}:{slot_date}:{start_time}-{end_time}"


def appointment_key(appointment_id: str) -> str:
    return f"appointment:{appointment_id}"


def escrow_key(txn_id: str) -> str:
    return f"escrow:{txn_id}"


class EntityLockRegistry:
    """Reference-counted map of key -> RLock; idle keys are dropped"""

    def __init__(self):
        self._guard = Lock()
        # Format: {key: [RLock, waiters_and_holders]}
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, *keys: str):
        ordered = sorted({k for k in keys if k})
        entries = []
        with self._guard:
            for key in ordered:
                entry = self._locks.setdefault(key, [RLock(), 0])
                entry[1] += 1
                entries.append(entry)

        acquired = []
        try:
            for entry in entries:
                entry[0].acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry[0].release()
            with self._guard:
                for key, entry in zip(ordered, entries):
                    entry[1] -= 1
                    if entry[1] == 0:
                        self._locks.pop(key, None)

    def active_keys(self) -> int:
        """Number of keys currently held or awaited"""
        with self._guard:
            return len(self._locks)


# Process-wide registry shared by every ledger
entity_locks = EntityLockRegistry()
