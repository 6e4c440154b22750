"""
Record stores — where key-bearing secrets are read from.

The store is the source of truth. Each pass asks it for a complete
snapshot of the records of every handled type.

Memory: in-process store, for embedding and tests.
Directory: one YAML manifest per record, for plain hosts.
Kubernetes: secrets of one namespace, filtered by secret type.
"""

from .base import RecordStore
from .directory import DirectoryRecordStore
from .kubernetes import KubeSecretStore
from .memory import MemoryRecordStore

__all__ = [
    "DirectoryRecordStore",
    "KubeSecretStore",
    "MemoryRecordStore",
    "RecordStore",
]
