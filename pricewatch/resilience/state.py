"""Synchronized hostname -> state mapping shared by resilience components."""
from __future__ import annotations

import threading
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

S = TypeVar("S")


class DomainStateStore(Generic[S]):
    """Owned per-domain state map with lazy record creation.

    Records are created on first access through ``factory`` and live for the
    lifetime of the store. Only map membership is guarded here; the component
    owning the records synchronizes access to each record's fields.
    """

    def __init__(self, factory: Callable[[], S]) -> None:
        self._factory = factory
        self._records: Dict[str, S] = {}
        self._lock = threading.Lock()

    @staticmethod
    def normalize(domain: str) -> str:
        return domain.strip().lower()

    def get(self, domain: str) -> S:
        """Return the record for ``domain``, creating it if needed."""
        key = self.normalize(domain)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = self._factory()
                self._records[key] = record
            return record

    def peek(self, domain: str) -> Optional[S]:
        """Return the record for ``domain`` without creating one."""
        with self._lock:
            return self._records.get(self.normalize(domain))

    def pop(self, domain: str) -> Optional[S]:
        with self._lock:
            return self._records.pop(self.normalize(domain), None)

    def items(self) -> List[Tuple[str, S]]:
        with self._lock:
            return list(self._records.items())

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __contains__(self, domain: object) -> bool:
        if not isinstance(domain, str):
            return False
        with self._lock:
            return self.normalize(domain) in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter([key for key, _ in self.items()])
