"""
In-process locks scoped to a ledger key (employee_id, leave_type, year).

Keys are always taken in one global order: by employee and year, the Annual
Leave Quota before any leave type, then leave types sorted. Two operations
touching the same keys can never wait on each other in opposite order.

A key's lock lives in the registry only while some caller holds or waits
for it.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Tuple

from leave_engine.constants import ANNUAL_QUOTA_LEAVE_TYPE
from leave_engine.core.config import settings
from leave_engine.core.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

LedgerKey = Tuple[int, str, int]


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


_registry: Dict[LedgerKey, _Slot] = {}
_registry_guard = threading.Lock()


def _checkout(key: LedgerKey) -> threading.RLock:
    with _registry_guard:
        slot = _registry.get(key)
        if slot is None:
            slot = _registry[key] = _Slot()
        slot.users += 1
        return slot.lock


def _checkin(key: LedgerKey) -> None:
    with _registry_guard:
        slot = _registry[key]
        slot.users -= 1
        if slot.users == 0:
            del _registry[key]


def registered_keys() -> List[LedgerKey]:
    """Keys currently held or waited on."""
    with _registry_guard:
        return sorted(_registry)


def key_order(keys: Iterable[LedgerKey]) -> List[LedgerKey]:
    """Distinct keys in acquisition order."""
    return sorted(
        set(keys),
        key=lambda k: (k[0], k[2], k[1] != ANNUAL_QUOTA_LEAVE_TYPE, k[1]),
    )


def lock_order(employee_id: int, year: int, leave_types: Iterable[str]) -> List[LedgerKey]:
    """Keys in acquisition order: aggregate quota first, then leave types sorted."""
    return key_order((employee_id, leave_type, year) for leave_type in leave_types)


@contextmanager
def ledger_key_locks(keys: Iterable[LedgerKey]) -> Iterator[None]:
    """
    Hold the locks for every key, which may span leave types and years.

    Raises:
        ConcurrencyConflict: If a lock is not obtained within LEDGER_LOCK_TIMEOUT_SECONDS
    """
    checked_out: List[LedgerKey] = []
    acquired: List[threading.RLock] = []
    try:
        for key in key_order(keys):
            lock = _checkout(key)
            checked_out.append(key)
            if not lock.acquire(timeout=settings.LEDGER_LOCK_TIMEOUT_SECONDS):
                logger.warning("Timed out waiting for ledger lock %s", key)
                raise ConcurrencyConflict(
                    f"Ledger for employee {key[0]}, {key[1]} {key[2]} is busy; retry the operation",
                    employee_id=key[0],
                    leave_type=key[1],
                    year=key[2],
                )
            acquired.append(lock)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()
        for key in checked_out:
            _checkin(key)


@contextmanager
def ledger_locks(employee_id: int, year: int, leave_types: Iterable[str]) -> Iterator[None]:
    """Hold the locks for every (employee_id, leave_type, year) key of one year."""
    with ledger_key_locks((employee_id, leave_type, year) for leave_type in leave_types):
        yield
