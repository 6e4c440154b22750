"""
Handler registry — which handler applies to which record type.

Registrations are queued in a pending map and only become active when
the reconciliation loop merges them at the start of a pass. Slow
handler construction (establishing a KMS session, say) never holds the
loop, and a pass always runs against a stable set of handlers.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Union

from . import DEFAULT_KEY_TYPE
from .handlers import IdentityHandler, SecretHandler, as_handler
from .handlers.base import Blobs

logger = logging.getLogger("keysync.registry")


class HandlerRegistry:
    """Thread-safe mapping of record type tag to secret handler.

    The identity handler for the ``key`` type is active from the start.
    """

    def __init__(self, default_tag: str = DEFAULT_KEY_TYPE):
        self._lock = threading.Lock()
        self._active: dict[str, SecretHandler] = {default_tag: IdentityHandler()}
        self._pending: dict[str, SecretHandler] = {}

    def register(
        self,
        tag: str,
        handler: Union[SecretHandler, Callable[[Blobs], Blobs]],
    ) -> None:
        """Queue a handler for ``tag``; it takes effect on the next pass.

        Safe to call from any thread. The last registration for a tag
        before a merge wins.
        """
        handler = as_handler(handler)
        with self._lock:
            self._pending[tag] = handler
        logger.info("Queued secret handler %s for type=%s", handler.name, tag)

    def merge_pending(self) -> dict[str, SecretHandler]:
        """Move pending handlers into the active set.

        Returns:
            A snapshot copy of the active handlers for this pass.
        """
        with self._lock:
            if self._pending:
                self._active.update(self._pending)
                logger.info(
                    "Activated secret handlers: %s", ", ".join(sorted(self._pending))
                )
                self._pending = {}
            return dict(self._active)
