"""Tests for the Key Protect client, config loading, and config watcher."""

from __future__ import annotations

import base64
import json
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from keysync.errors import ConfigError, UpstreamError
from keysync.handlers import KeyProtectHandler
from keysync.keyprotect import (
    IAM_TOKEN_URL,
    KeyProtectClient,
    KeyProtectConfigWatcher,
    handler_from_config,
    load_keyprotect_config,
)
from keysync.models import Record
from keysync.registry import HandlerRegistry
from keysync.store import MemoryRecordStore

CONFIG = {
    "keyprotect-url": "https://us-south.kms.cloud.ibm.com",
    "instance-id": "a3c5e3g5-9ef7-4838-a285-398efb23e6f3",
    "apikey": "ZWh0YWVyZwbvHwo-345mfwSOST6wtdMFqeLcdE4Tsxbz",
}


def _response(status: int = 200, body=None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.text = text
    return resp


@pytest.fixture
def client() -> KeyProtectClient:
    c = KeyProtectClient(load_keyprotect_config(json.dumps(CONFIG).encode()))
    c._session = MagicMock()
    return c


class TestConfig:
    """Config parsing from bytes and files."""

    def test_from_bytes(self):
        config = load_keyprotect_config(json.dumps(CONFIG).encode())
        assert config.url == CONFIG["keyprotect-url"]
        assert config.instance_id == CONFIG["instance-id"]
        assert config.apikey == CONFIG["apikey"]
        assert config.iam_url == IAM_TOKEN_URL

    def test_from_file(self, tmp_path: Path):
        path = tmp_path / "kp.json"
        path.write_text(json.dumps(CONFIG))
        assert load_keyprotect_config(path).instance_id == CONFIG["instance-id"]

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="unable to read"):
            load_keyprotect_config(tmp_path / "nope.json")

    def test_invalid_json(self):
        with pytest.raises(ConfigError, match="unable to parse"):
            load_keyprotect_config(b"{not json")

    def test_missing_field(self):
        with pytest.raises(ConfigError, match="invalid"):
            load_keyprotect_config(json.dumps({"apikey": "x"}).encode())

    def test_handler_from_config(self):
        assert isinstance(handler_from_config(json.dumps(CONFIG).encode()), KeyProtectHandler)


class TestKeyProtectClient:
    """REST calls, with the HTTP session mocked."""

    def test_unwrap(self, client: KeyProtectClient):
        client._session.post.side_effect = [
            _response(body={"access_token": "iam-token", "expires_in": 3600}),
            _response(body={"plaintext": "cGxhaW4="}),
        ]
        assert client.unwrap("v1", b"wrapped") == "cGxhaW4="

        token_call, unwrap_call = client._session.post.call_args_list
        assert token_call.args[0] == IAM_TOKEN_URL
        assert token_call.kwargs["data"]["apikey"] == CONFIG["apikey"]

        assert unwrap_call.args[0] == (
            "https://us-south.kms.cloud.ibm.com/api/v2/keys/v1/actions/unwrap"
        )
        headers = unwrap_call.kwargs["headers"]
        assert headers["Authorization"] == "Bearer iam-token"
        assert headers["bluemix-instance"] == CONFIG["instance-id"]
        assert unwrap_call.kwargs["json"] == {"ciphertext": "wrapped"}

    def test_token_cached(self, client: KeyProtectClient):
        client._session.post.side_effect = [
            _response(body={"access_token": "t", "expiration": time.time() + 3600}),
            _response(body={"plaintext": "YQ=="}),
            _response(body={"plaintext": "Yg=="}),
        ]
        client.unwrap("v1", b"a")
        client.unwrap("v1", b"b")
        assert client._session.post.call_count == 3

    def test_expired_token_refreshed(self, client: KeyProtectClient):
        client._session.post.side_effect = [
            _response(body={"access_token": "t1", "expires_in": 0}),
            _response(body={"plaintext": "YQ=="}),
            _response(body={"access_token": "t2", "expires_in": 3600}),
            _response(body={"plaintext": "Yg=="}),
        ]
        client.unwrap("v1", b"a")
        client.unwrap("v1", b"b")
        last = client._session.post.call_args_list[-1]
        assert last.kwargs["headers"]["Authorization"] == "Bearer t2"

    def test_http_error(self, client: KeyProtectClient):
        client._session.post.side_effect = [
            _response(body={"access_token": "t", "expires_in": 3600}),
            _response(status=400, text="bad ciphertext"),
        ]
        with pytest.raises(UpstreamError, match="400"):
            client.unwrap("v1", b"a")

    def test_auth_failure(self, client: KeyProtectClient):
        client._session.post.return_value = _response(status=401, text="bad apikey")
        with pytest.raises(UpstreamError, match="401"):
            client.unwrap("v1", b"a")

    def test_transport_error(self, client: KeyProtectClient):
        client._session.post.side_effect = requests.Timeout("timed out")
        with pytest.raises(UpstreamError, match="timed out"):
            client.unwrap("v1", b"a")

    def test_missing_plaintext(self, client: KeyProtectClient):
        client._session.post.side_effect = [
            _response(body={"access_token": "t", "expires_in": 3600}),
            _response(body={}),
        ]
        with pytest.raises(UpstreamError, match="no plaintext"):
            client.unwrap("v1", b"a")

    def test_handler_end_to_end(self, client: KeyProtectClient):
        client._session.post.side_effect = [
            _response(body={"access_token": "t", "expires_in": 3600}),
            _response(body={"plaintext": base64.b64encode(b"the key").decode()}),
        ]
        out = KeyProtectHandler(client).transform({"keyid": b"v1", "ciphertext": b"wrapped"})
        assert out == {"kpkey": b"the key"}


class TestKeyProtectConfigWatcher:
    """Registering the handler when the config secret appears or changes."""

    @pytest.fixture
    def parts(self):
        store = MemoryRecordStore()
        registry = HandlerRegistry()
        watcher = KeyProtectConfigWatcher(store, "kp-config", registry, interval=0.05)
        return store, registry, watcher

    def test_no_secret_no_handler(self, parts):
        store, registry, watcher = parts
        assert watcher.poll_once() is False
        assert "kp-key" not in registry.merge_pending()

    def test_registers_on_new_config(self, parts):
        store, registry, watcher = parts
        store.put(Record(name="kp-config", type="Opaque",
                         data={"config.json": json.dumps(CONFIG).encode()}))
        assert watcher.poll_once() is True
        assert isinstance(registry.merge_pending()["kp-key"], KeyProtectHandler)

    def test_unchanged_config_not_reregistered(self, parts):
        store, registry, watcher = parts
        store.put(Record(name="kp-config", type="Opaque",
                         data={"config.json": json.dumps(CONFIG).encode()}))
        assert watcher.poll_once() is True
        assert watcher.poll_once() is False

    def test_invalid_config_logged_and_skipped(self, parts):
        store, registry, watcher = parts
        store.put(Record(name="kp-config", type="Opaque", data={"config.json": b"{bad"}))
        assert watcher.poll_once() is False
        assert "kp-key" not in registry.merge_pending()

    def test_invalid_config_skipped_until_changed(self, parts):
        store, registry, watcher = parts
        store.put(Record(name="kp-config", type="Opaque", data={"config.json": b"{bad"}))
        with patch("keysync.keyprotect.handler_from_config",
                   wraps=handler_from_config) as build:
            assert watcher.poll_once() is False
            assert watcher.poll_once() is False
            assert build.call_count == 1

            store.put(Record(name="kp-config", type="Opaque",
                             data={"config.json": json.dumps(CONFIG).encode()}))
            assert watcher.poll_once() is True
        assert isinstance(registry.merge_pending()["kp-key"], KeyProtectHandler)

    def test_background_thread(self, parts, wait_for):
        store, registry, watcher = parts
        watcher.start()
        try:
            store.put(Record(name="kp-config", type="Opaque",
                             data={"config.json": json.dumps(CONFIG).encode()}))
            assert wait_for(lambda: "kp-key" in registry.merge_pending())
        finally:
            watcher.stop()
