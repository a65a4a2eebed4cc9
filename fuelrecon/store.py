"""In-process fuel record store with single-record transactions."""
from __future__ import annotations

import copy
import logging
from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, List

from .balance import refresh_balance
from .errors import UnknownRecordError
from .models import FuelRecord
from .normalization import normalize_truck_no

LOGGER = logging.getLogger(__name__)


class FuelRecordStore:
    """Holds fuel records and serialises writers.

    Every write goes through :meth:`transaction`, which works on a copy of the
    record, recomputes its balance and commits only when the block exits
    cleanly. :meth:`truck_guard` serialises link and reconciliation work for
    one truck; take it before any record transaction, never after.
    """

    def __init__(self) -> None:
        self._records: Dict[str, FuelRecord] = {}
        self._lock = Lock()
        self._record_locks: Dict[str, Lock] = {}
        self._truck_locks: Dict[str, Lock] = {}
        self._counter = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def next_id(self) -> str:
        with self._lock:
            self._counter += 1
            return f"FR-{self._counter:05d}"

    def add(self, record: FuelRecord) -> FuelRecord:
        refresh_balance(record)
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Fuel record {record.id} already exists")
            self._records[record.id] = copy.deepcopy(record)
            self._record_locks[record.id] = Lock()
        LOGGER.debug("Stored fuel record %s for %s", record.id, record.truck_no)
        return copy.deepcopy(record)

    def get(self, record_id: str) -> FuelRecord:
        with self._lock:
            try:
                return copy.deepcopy(self._records[record_id])
            except KeyError:
                raise UnknownRecordError(f"Unknown fuel record: {record_id}") from None

    def all(self) -> List[FuelRecord]:
        with self._lock:
            records = [copy.deepcopy(record) for record in self._records.values()]
        return sorted(records, key=lambda r: (r.date, r.id))

    @contextmanager
    def transaction(self, record_id: str) -> Iterator[FuelRecord]:
        with self._lock:
            lock = self._record_locks.get(record_id)
        if lock is None:
            raise UnknownRecordError(f"Unknown fuel record: {record_id}")

        with lock:
            with self._lock:
                working = copy.deepcopy(self._records[record_id])
            yield working
            refresh_balance(working)
            with self._lock:
                self._records[record_id] = working

    @contextmanager
    def truck_guard(self, truck_no: str) -> Iterator[None]:
        key = normalize_truck_no(truck_no)
        with self._lock:
            lock = self._truck_locks.setdefault(key, Lock())
        with lock:
            yield
