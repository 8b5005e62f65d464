import threading
from contextlib import contextmanager
from typing import Any, Callable, Hashable, Iterator, Optional
from uuid import UUID

from .models import PricingConfig


class InMemoryStorage:
    """Row store for the ledger.

    Rows are plain dicts keyed by id. Every balance-affecting operation runs
    inside ``locked(...)`` for the users (or withdrawals) it touches, so the
    reads that feed a write decision and the write itself form one unit.
    Top-level maps are only mutated through ``insert``/``snapshot`` which hold
    a short structural lock.
    """

    def __init__(self, pricing: PricingConfig):
        self.pricing = pricing
        self.transactions: dict[UUID, dict] = {}
        self.payouts: dict[UUID, dict] = {}
        self.withdrawals: dict[UUID, dict] = {}
        self.bank_accounts: dict[UUID, dict] = {}
        self.storage_accounts: dict[UUID, dict] = {}
        # (user_id, period) -> row id; uniqueness for the monthly jobs
        self.payout_index: dict[tuple[UUID, str], UUID] = {}
        self.storage_billing_index: dict[tuple[UUID, str], UUID] = {}

        self._rows_lock = threading.Lock()
        self._registry_lock = threading.Lock()
        self._locks: dict[Hashable, threading.RLock] = {}

    def _lock_for(self, key: Hashable) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def locked(self, *keys: Optional[Hashable]) -> Iterator[None]:
        """Hold the locks for ``keys`` for the duration of one atomic unit.

        Locks are taken in a stable order so two units touching the same pair
        of users cannot deadlock. ``None`` keys are ignored.
        """
        ordered = sorted({k for k in keys if k is not None}, key=str)
        locks = [self._lock_for(k) for k in ordered]
        acquired: list[threading.RLock] = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def insert(self, table: dict, row: dict, key: Any = None) -> dict:
        with self._rows_lock:
            table[key if key is not None else row["id"]] = row
        return row

    def snapshot(self, table: dict, predicate: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        with self._rows_lock:
            rows = list(table.values())
        if predicate is None:
            return rows
        return [r for r in rows if predicate(r)]

    def claim_period(self, index: dict, key: tuple[UUID, str], row_id: UUID) -> bool:
        """Record ``row_id`` under ``key`` unless the key is already taken."""
        with self._rows_lock:
            if key in index:
                return False
            index[key] = row_id
            return True

    def known_user_ids(self) -> list[UUID]:
        with self._rows_lock:
            ids = {row["user_id"] for row in self.transactions.values()}
        return sorted(ids, key=str)
