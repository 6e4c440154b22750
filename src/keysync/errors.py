"""
Error taxonomy for the key sync loop.

Every error below is recovered inside a reconciliation pass: it is
logged, recorded on the pass report, and the pass moves on to the
next tag, record, entry, or file.
"""

from __future__ import annotations


class KeySyncError(Exception):
    """Base class for all keysync errors."""


class ConfigError(KeySyncError):
    """Invalid or unreadable configuration."""


class StoreQueryError(KeySyncError):
    """Listing records for a type tag failed. Skips the tag for the pass."""

    def __init__(self, type_tag: str, message: str):
        super().__init__(f"listing '{type_tag}' records failed: {message}")
        self.type_tag = type_tag


class HandlerError(KeySyncError):
    """A secret handler could not transform a record. Skips the record."""


class MalformedPayload(HandlerError):
    """Required payload fields are absent or empty."""


class DecodeError(HandlerError):
    """Payload or unwrapped material is not valid for its encoding."""


class UpstreamError(HandlerError):
    """The remote unwrap service call failed."""


class MaterializeError(KeySyncError):
    """Writing a key file or correcting its mode/owner failed."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class CollectorListError(KeySyncError):
    """The sync directory could not be listed."""


class CollectorDeleteError(KeySyncError):
    """A stale key file could not be removed."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
