"""
IBM Key Protect integration — unwrap client, config, and config watcher.

Config is a JSON document, read from a file or from a secret:

    {
        "keyprotect-url": "https://us-south.kms.cloud.ibm.com",
        "instance-id": "a3c5e3g5-9ef7-4838-a285-398efb23e6f3",
        "apikey": "ZWh0YWVyZwbvHwo-345mfwSOST6wtdMFqeLcdE4Tsxbz"
    }

The API key is exchanged for an IAM bearer token, which is cached until
shortly before it expires.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Optional, Union

import requests
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError, KeySyncError, UpstreamError
from .handlers import KeyProtectHandler, UnwrapClient
from .registry import HandlerRegistry
from .store import RecordStore

logger = logging.getLogger("keysync.keyprotect")

IAM_TOKEN_URL = "https://iam.cloud.ibm.com/identity/token"
IAM_GRANT_TYPE = "urn:ibm:params:oauth:grant-type:apikey"
CONFIG_ENTRY = "config.json"

# Refresh the bearer token this many seconds before it expires
TOKEN_EXPIRY_MARGIN = 60


class KeyProtectConfig(BaseModel):
    """Connection settings for a Key Protect instance."""

    url: str = Field(alias="keyprotect-url", min_length=1)
    instance_id: str = Field(alias="instance-id", min_length=1)
    apikey: str = Field(min_length=1)
    iam_url: str = Field(default=IAM_TOKEN_URL, alias="iam-url")


def load_keyprotect_config(source: Union[bytes, str, Path]) -> KeyProtectConfig:
    """Parse Key Protect config from raw JSON bytes or a file path.

    Raises:
        ConfigError: If the config cannot be read or is incomplete.
    """
    if isinstance(source, (str, Path)):
        try:
            source = Path(source).read_bytes()
        except OSError as exc:
            raise ConfigError(f"unable to read keyprotect config: {exc}")
    try:
        return KeyProtectConfig(**json.loads(source))
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as exc:
        raise ConfigError(f"unable to parse keyprotect config: {exc}")
    except ValidationError as exc:
        raise ConfigError(f"invalid keyprotect config: {exc}")


class KeyProtectClient(UnwrapClient):
    """Minimal Key Protect REST client for the unwrap action.

    Args:
        config: Instance URL, instance id, and API key.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, config: KeyProtectConfig, timeout: float = 30):
        self.config = config
        self._timeout = timeout
        self._session = requests.Session()
        self._token: Optional[str] = None
        self._token_expires = 0.0
        self._lock = threading.Lock()

    def unwrap(self, key_id: str, ciphertext: bytes) -> str:
        """Unwrap ``ciphertext`` with key ``key_id``.

        Returns:
            The base64-encoded plaintext.

        Raises:
            UpstreamError: On transport, auth, or service errors.
        """
        url = f"{self.config.url.rstrip('/')}/api/v2/keys/{key_id}/actions/unwrap"
        headers = {
            "Authorization": f"Bearer {self._bearer_token()}",
            "bluemix-instance": self.config.instance_id,
            "Content-Type": "application/vnd.ibm.kms.key_action_unwrap+json",
            "Accept": "application/json",
        }
        body = {"ciphertext": ciphertext.decode("utf-8", errors="replace")}

        data = self._post(url, headers=headers, json=body)
        plaintext = data.get("plaintext")
        if not plaintext:
            raise UpstreamError(f"unwrap with key {key_id} returned no plaintext")
        return plaintext

    def _bearer_token(self) -> str:
        """Return a cached IAM token, refreshing it when close to expiry."""
        with self._lock:
            if self._token and time.time() < self._token_expires - TOKEN_EXPIRY_MARGIN:
                return self._token

            data = self._post(
                self.config.iam_url,
                headers={"Accept": "application/json"},
                data={"grant_type": IAM_GRANT_TYPE, "apikey": self.config.apikey},
            )
            token = data.get("access_token")
            if not token:
                raise UpstreamError("IAM token response has no access_token")

            self._token = token
            if "expiration" in data:
                self._token_expires = float(data["expiration"])
            else:
                self._token_expires = time.time() + float(data.get("expires_in", 0))
            logger.debug("Obtained IAM token, expires at %s", self._token_expires)
            return token

    def _post(self, url: str, **kwargs) -> dict:
        try:
            resp = self._session.post(url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamError(f"POST {url} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise UpstreamError(f"POST {url} failed: {resp.status_code} {resp.text}")
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(f"POST {url} returned invalid JSON: {exc}") from exc


def handler_from_config(source: Union[bytes, str, Path]) -> KeyProtectHandler:
    """Build a Key Protect handler from config bytes or a config file.

    Raises:
        ConfigError: If the config is invalid.
    """
    return KeyProtectHandler(KeyProtectClient(load_keyprotect_config(source)))


class KeyProtectConfigWatcher:
    """Watches a secret for Key Protect config and registers the handler.

    Polls ``secret_name`` every ``interval`` seconds. Whenever its
    ``config.json`` entry changes, a new handler is built and queued on
    the registry under ``tag``.

    Args:
        store: Store to read the config secret from.
        secret_name: Name of the secret holding ``config.json``.
        registry: Registry to queue the handler on.
        interval: Seconds between polls.
        tag: Record type the handler serves.
    """

    def __init__(
        self,
        store: RecordStore,
        secret_name: str,
        registry: HandlerRegistry,
        interval: float,
        tag: str = "kp-key",
    ):
        self.store = store
        self.secret_name = secret_name
        self.registry = registry
        self.interval = interval
        self.tag = tag
        self._last_config: Optional[bytes] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start polling on a background thread."""
        self._thread = threading.Thread(
            target=self._watch_loop, name="keysync-kp-watcher", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop polling and wait for the thread to exit."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def poll_once(self) -> bool:
        """Check the secret once. Returns True if a handler was registered."""
        try:
            record = self.store.get(self.secret_name)
        except KeySyncError as exc:
            logger.debug("Keyprotect config secret unavailable: %s", exc)
            return False
        if record is None:
            return False

        config = record.data.get(CONFIG_ENTRY, b"")
        if not config or config == self._last_config:
            return False
        self._last_config = config

        logger.info("New keyprotect config detected in secrets, configuring...")
        try:
            handler = handler_from_config(config)
        except ConfigError as exc:
            logger.error("Unable to parse keyprotect config: %s", exc)
            return False

        self.registry.register(self.tag, handler)
        return True

    def _watch_loop(self) -> None:
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(timeout=self.interval)
