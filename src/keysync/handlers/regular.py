"""
Identity handler for plain ``key`` records.
"""

from __future__ import annotations

from .base import Blobs, SecretHandler


class IdentityHandler(SecretHandler):
    """Each entry already is a key file, so the data passes through."""

    def transform(self, data: Blobs) -> Blobs:
        return dict(data)
