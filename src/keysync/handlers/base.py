"""
Secret handler interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Union

Blobs = dict[str, bytes]


class SecretHandler(ABC):
    """Transforms a record's raw blobs into the blobs written to disk.

    Handlers must not touch local disk. Any internal client state
    (an authenticated KMS session, for example) is captured at
    construction time.
    """

    @abstractmethod
    def transform(self, data: Blobs) -> Blobs:
        """Transform raw record blobs.

        Args:
            data: Mapping of entry name to raw bytes.

        Returns:
            Mapping of output entry name to key file content.

        Raises:
            HandlerError: If the record cannot be transformed.
        """

    @property
    def name(self) -> str:
        """Human-readable handler name for logs."""
        return type(self).__name__


class FunctionHandler(SecretHandler):
    """Wraps a plain ``blobs -> blobs`` callable as a handler."""

    def __init__(self, func: Callable[[Blobs], Blobs]):
        self._func = func

    def transform(self, data: Blobs) -> Blobs:
        return self._func(data)

    @property
    def name(self) -> str:
        return getattr(self._func, "__name__", "function")


def as_handler(handler: Union[SecretHandler, Callable[[Blobs], Blobs]]) -> SecretHandler:
    """Coerce a callable into a SecretHandler."""
    if isinstance(handler, SecretHandler):
        return handler
    if callable(handler):
        return FunctionHandler(handler)
    raise TypeError(f"not a secret handler: {handler!r}")
