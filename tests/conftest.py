"""Shared test fixtures for keysync."""

from __future__ import annotations

import base64
import time
from pathlib import Path

import pytest

from keysync.models import KeySyncConfig, Record
from keysync.server import KeySyncServer
from keysync.store import MemoryRecordStore


def _b64_decode_all(data: dict[str, bytes]) -> dict[str, bytes]:
    return {k: base64.b64decode(v, validate=True) for k, v in data.items()}


def _wait_for(predicate, timeout: float = 5.0, step: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step)
    return bool(predicate())


@pytest.fixture
def b64_handler():
    """Handler that base64-decodes every entry."""
    return _b64_decode_all


@pytest.fixture
def wait_for():
    """Poll a predicate until it is truthy or a timeout elapses."""
    return _wait_for


@pytest.fixture
def sync_dir(tmp_path: Path) -> Path:
    """Provide an empty key sync directory."""
    d = tmp_path / "keys"
    d.mkdir()
    return d


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore(namespace="default")


@pytest.fixture
def config(sync_dir: Path) -> KeySyncConfig:
    return KeySyncConfig(
        interval=0.05,
        sync_dir=sync_dir,
        namespace="default",
        file_permissions=0o600,
    )


@pytest.fixture
def server(config: KeySyncConfig, store: MemoryRecordStore) -> KeySyncServer:
    srv = KeySyncServer(config, store)
    yield srv
    srv.stop()


@pytest.fixture
def sample_record() -> Record:
    """The plain key record used across scenarios."""
    return Record(name="my-secret", data={"mykey": b"this is a key"})
