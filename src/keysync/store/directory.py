"""
Directory-backed record store.

Each ``*.yaml`` / ``*.yml`` file in the directory describes one record,
in the shape of a Kubernetes secret manifest:

    name: my-secret
    namespace: default
    type: key
    data:
      mykey: dGhpcyBpcyBhIGtleQ==    # base64
    stringData:
      other: plain text value
"""

from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from ..errors import StoreQueryError
from ..models import Record
from .base import RecordStore

logger = logging.getLogger("keysync.store.directory")


class DirectoryRecordStore(RecordStore):
    """Reads records from YAML manifests in a directory.

    Args:
        root: Directory holding the manifests.
        namespace: Only return records from this namespace; None for all.
    """

    def __init__(self, root: Path, namespace: Optional[str] = None):
        self.root = Path(root).expanduser()
        self.namespace = namespace

    @property
    def name(self) -> str:
        return f"directory:{self.root}"

    def list(self, type_tag: str) -> list[Record]:
        return [r for r in self._load_all(type_tag) if r.type == type_tag]

    def get(self, name: str) -> Optional[Record]:
        for record in self._load_all(name):
            if record.name == name:
                return record
        return None

    def _load_all(self, query: str) -> list[Record]:
        if not self.root.is_dir():
            raise StoreQueryError(query, f"{self.root} is not a directory")

        records = []
        for manifest in sorted(self.root.iterdir()):
            if manifest.suffix not in (".yaml", ".yml") or not manifest.is_file():
                continue
            try:
                record = _load_manifest(manifest)
            except (OSError, yaml.YAMLError, ValueError) as exc:
                logger.warning("Skipping %s: %s", manifest.name, exc)
                continue
            if self.namespace and record.namespace != self.namespace:
                continue
            records.append(record)
        return records


def _load_manifest(path: Path) -> Record:
    """Parse one manifest file into a Record.

    Raises:
        ValueError: If the manifest is not a valid record.
    """
    doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(doc, dict):
        raise ValueError("manifest must be a mapping")

    raw_data = doc.get("data") or {}
    string_data = doc.get("stringData") or {}
    if not isinstance(raw_data, dict):
        raise ValueError("data must be a mapping")
    if not isinstance(string_data, dict):
        raise ValueError("stringData must be a mapping")

    data: dict[str, bytes] = {}
    for entry, value in raw_data.items():
        try:
            data[str(entry)] = base64.b64decode(str(value), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"data.{entry} is not valid base64: {exc}")
    for entry, value in string_data.items():
        data[str(entry)] = str(value).encode("utf-8")

    try:
        return Record(
            name=doc.get("name") or path.stem,
            namespace=doc.get("namespace") or "default",
            type=doc.get("type") or "key",
            data=data,
        )
    except ValidationError as exc:
        raise ValueError(str(exc))
