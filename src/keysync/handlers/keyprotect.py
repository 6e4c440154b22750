"""
Key Protect handler — unwraps KMS-wrapped keys.

Two payload layouts are supported:

Per-entry JSON, one wrapped key document per entry, as returned by
Key Protect's wrap action. The output keeps the entry name:

    {
        "ciphertext": "eyJjBoZXJ.........0Z1YmYwIn0=",
        "keyVersion": {"id": "27b941a0-ab34-4b92-960d-30fa80f15bf0"}
    }

Two-field form, with ``keyid`` and ``ciphertext`` entries directly on
the record. The output is a single ``kpkey`` entry.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from abc import ABC, abstractmethod
from typing import Union

from ..errors import DecodeError, HandlerError, MalformedPayload, UpstreamError
from .base import Blobs, SecretHandler

logger = logging.getLogger("keysync.handlers.keyprotect")

KEYID_ENTRY = "keyid"
CIPHERTEXT_ENTRY = "ciphertext"
KEYPROTECT_OUTPUT_ENTRY = "kpkey"


class UnwrapClient(ABC):
    """Remote unwrap capability consumed by the Key Protect handler."""

    @abstractmethod
    def unwrap(self, key_id: str, ciphertext: bytes) -> Union[bytes, str]:
        """Unwrap ciphertext with the given key version.

        Returns:
            Base64-encoded plaintext.

        Raises:
            UpstreamError: If the remote call fails.
        """


class KeyProtectHandler(SecretHandler):
    """Unwraps each record through a Key Protect client.

    Args:
        client: Authenticated unwrap client, shared across passes.
    """

    def __init__(self, client: UnwrapClient):
        self._client = client

    def transform(self, data: Blobs) -> Blobs:
        if KEYID_ENTRY in data and CIPHERTEXT_ENTRY in data:
            key_id = _text(data[KEYID_ENTRY], KEYID_ENTRY)
            content = self._unwrap(key_id, data[CIPHERTEXT_ENTRY])
            return {KEYPROTECT_OUTPUT_ENTRY: content}

        result: Blobs = {}
        for entry, raw in data.items():
            key_id, ciphertext = _parse_wrapped_key(entry, raw)
            result[entry] = self._unwrap(key_id, ciphertext)
        return result

    def _unwrap(self, key_id: str, ciphertext: bytes) -> bytes:
        if not key_id:
            raise MalformedPayload("key version id is empty")
        if not ciphertext:
            raise MalformedPayload("ciphertext is empty")

        logger.debug("Unwrapping key with version %s", key_id)
        try:
            b64content = self._client.unwrap(key_id, ciphertext)
        except HandlerError:
            raise
        except Exception as exc:
            raise UpstreamError(f"unwrap with key {key_id} failed: {exc}") from exc

        if isinstance(b64content, str):
            b64content = b64content.encode("ascii", errors="replace")
        try:
            return base64.b64decode(b64content, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"unwrapped key is not valid base64: {exc}") from exc


def _text(raw: bytes, field: str) -> str:
    try:
        return raw.decode("utf-8").strip()
    except UnicodeDecodeError as exc:
        raise MalformedPayload(f"{field} is not valid UTF-8") from exc


def _parse_wrapped_key(entry: str, raw: bytes) -> tuple[str, bytes]:
    """Extract ``(key version id, ciphertext)`` from a wrapped key document."""
    try:
        doc = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedPayload(f"entry {entry} is not a wrapped key document: {exc}") from exc
    if not isinstance(doc, dict):
        raise MalformedPayload(f"entry {entry} is not a wrapped key document")

    key_version = doc.get("keyVersion") or {}
    key_id = key_version.get("id", "") if isinstance(key_version, dict) else ""
    ciphertext = doc.get("ciphertext", "")

    if not isinstance(key_id, str) or not key_id:
        raise MalformedPayload(f"entry {entry}: keyVersion.id field is empty")
    if not isinstance(ciphertext, str) or not ciphertext:
        raise MalformedPayload(f"entry {entry}: ciphertext field is empty")
    return key_id, ciphertext.encode("utf-8")
