"""
In-memory record store.
"""

from __future__ import annotations

import threading
from typing import Optional

from ..models import Record
from .base import RecordStore


class MemoryRecordStore(RecordStore):
    """Thread-safe in-process store keyed by ``(namespace, name)``.

    Args:
        namespace: Namespace used by :meth:`get` lookups.
    """

    def __init__(self, namespace: str = "default"):
        self.namespace = namespace
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], Record] = {}

    @property
    def name(self) -> str:
        return "memory"

    def put(self, record: Record) -> None:
        """Create or replace a record."""
        with self._lock:
            self._records[(record.namespace, record.name)] = record

    def delete(self, name: str, namespace: Optional[str] = None) -> bool:
        """Delete a record. Returns True if it existed."""
        with self._lock:
            return self._records.pop((namespace or self.namespace, name), None) is not None

    def list(self, type_tag: str) -> list[Record]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values() if r.type == type_tag]

    def get(self, name: str) -> Optional[Record]:
        with self._lock:
            record = self._records.get((self.namespace, name))
            return record.model_copy(deep=True) if record else None
