"""
Abstract record store.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from ..models import Record


class RecordStore(ABC):
    """Read-only view of the records keysync mirrors."""

    @abstractmethod
    def list(self, type_tag: str) -> list[Record]:
        """Return every record whose type matches ``type_tag``.

        Raises:
            StoreQueryError: If the snapshot cannot be obtained.
        """

    @abstractmethod
    def get(self, name: str) -> Optional[Record]:
        """Return the named record, or None if it does not exist.

        Raises:
            StoreQueryError: If the lookup itself fails.
        """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable store name."""
