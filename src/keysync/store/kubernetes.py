"""
Kubernetes secret store.

Lists the secrets of one namespace through the Kubernetes REST API,
filtered server-side with a ``type=<tag>`` field selector. Inside a pod
the service account token and CA bundle are picked up automatically;
outside one, server and credentials come from a kubeconfig file.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

import requests
import yaml
from pydantic import BaseModel

from ..errors import ConfigError, StoreQueryError
from ..models import Record
from .base import RecordStore

logger = logging.getLogger("keysync.store.kubernetes")

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
KEY_TYPE_FIELD_SELECTOR_PREFIX = "type="


class KubeSecretStore(RecordStore):
    """Reads key secrets from a Kubernetes namespace.

    Args:
        namespace: Namespace holding the key secrets.
        api_url: API server URL. Defaults to the in-cluster service.
        token: Bearer token. Defaults to the service account token.
        verify: CA bundle path or bool for TLS verification.
        cert: Client certificate and key paths for TLS client auth.
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        namespace: str = "default",
        api_url: Optional[str] = None,
        token: Optional[str] = None,
        verify: Union[bool, str, None] = None,
        cert: Optional[tuple[str, str]] = None,
        timeout: float = 30,
    ):
        self.namespace = namespace
        self.api_url = (api_url or _in_cluster_url()).rstrip("/")
        self._token = token if token is not None else _read_service_account("token")
        if verify is None:
            ca = SERVICE_ACCOUNT_DIR / "ca.crt"
            verify = str(ca) if ca.exists() else True
        self._verify = verify
        self._timeout = timeout
        self._session = requests.Session()
        if cert:
            self._session.cert = cert

    @classmethod
    def from_kubeconfig(
        cls,
        path: Path,
        namespace: str = "default",
        api_url: Optional[str] = None,
        context: Optional[str] = None,
        timeout: float = 30,
    ) -> "KubeSecretStore":
        """Build a store from a kubeconfig file.

        ``api_url``, when given, overrides the cluster server.

        Raises:
            ConfigError: If the kubeconfig cannot be read or resolved.
        """
        conn = load_kubeconfig(path, context=context)
        return cls(
            namespace=namespace,
            api_url=api_url or conn.server,
            token=conn.token or "",
            verify=conn.verify,
            cert=conn.cert,
            timeout=timeout,
        )

    @property
    def name(self) -> str:
        return f"kubernetes:{self.namespace}"

    def list(self, type_tag: str) -> list[Record]:
        body = self._request(
            f"/api/v1/namespaces/{self.namespace}/secrets",
            type_tag,
            params={"fieldSelector": KEY_TYPE_FIELD_SELECTOR_PREFIX + type_tag},
        )
        records = []
        for item in (body or {}).get("items") or []:
            try:
                records.append(_secret_to_record(item))
            except ValueError as exc:
                logger.warning("Skipping malformed secret: %s", exc)
        return records

    def get(self, name: str) -> Optional[Record]:
        body = self._request(
            f"/api/v1/namespaces/{self.namespace}/secrets/{name}", name,
        )
        if body is None:
            return None
        try:
            return _secret_to_record(body)
        except ValueError as exc:
            raise StoreQueryError(name, str(exc))

    def _request(
        self, endpoint: str, query: str, params: Optional[dict] = None
    ) -> Optional[dict[str, Any]]:
        """GET an API endpoint. Returns None on 404."""
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            resp = self._session.get(
                self.api_url + endpoint,
                params=params,
                headers=headers,
                verify=self._verify,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise StoreQueryError(query, str(exc)) from exc

        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise StoreQueryError(
                query, f"GET {endpoint} failed: {resp.status_code} {resp.text}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise StoreQueryError(query, f"invalid JSON from API server: {exc}") from exc


def _in_cluster_url() -> str:
    host = os.environ.get("KUBERNETES_SERVICE_HOST", "kubernetes.default.svc")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
    if ":" in host:
        host = f"[{host}]"
    return f"https://{host}:{port}"


def _read_service_account(name: str) -> Optional[str]:
    path = SERVICE_ACCOUNT_DIR / name
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return None


def _secret_to_record(item: dict[str, Any]) -> Record:
    """Convert a Secret API object into a Record.

    Raises:
        ValueError: If the object has no name or undecodable data.
    """
    meta = item.get("metadata") or {}
    name = meta.get("name")
    if not name:
        raise ValueError("secret has no name")

    data: dict[str, bytes] = {}
    for entry, value in (item.get("data") or {}).items():
        try:
            data[entry] = base64.b64decode(value or "", validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"secret {name}: data.{entry} is not base64: {exc}")

    return Record(
        name=name,
        namespace=meta.get("namespace") or "default",
        type=item.get("type") or "",
        data=data,
    )


class KubeConnection(BaseModel):
    """API server and credentials resolved from a kubeconfig context."""

    server: str
    token: Optional[str] = None
    verify: Union[bool, str] = True
    cert: Optional[tuple[str, str]] = None


def load_kubeconfig(path: Path, context: Optional[str] = None) -> KubeConnection:
    """Resolve the server and credentials of a kubeconfig context.

    Supports bearer tokens (``token`` / ``tokenFile``), CA bundles, and
    client certificates, given either as file paths or inline ``*-data``.
    Relative paths are resolved against the kubeconfig's directory.

    Args:
        path: Kubeconfig file.
        context: Context name. Defaults to ``current-context``.

    Raises:
        ConfigError: If the file cannot be read or the context is incomplete.
    """
    path = Path(path).expanduser()
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"unable to read kubeconfig {path}: {exc}")
    if not isinstance(doc, dict):
        raise ConfigError(f"kubeconfig {path} must be a mapping")

    context = context or doc.get("current-context")
    if not context:
        raise ConfigError(f"kubeconfig {path} has no current-context")
    ctx = _named(doc, "contexts", context, "context", path)
    cluster = _named(doc, "clusters", ctx.get("cluster"), "cluster", path)
    user = _named(doc, "users", ctx.get("user"), "user", path) if ctx.get("user") else {}

    server = cluster.get("server")
    if not server:
        raise ConfigError(f"kubeconfig {path}: cluster {ctx.get('cluster')} has no server")

    base = path.parent
    verify: Union[bool, str] = True
    if cluster.get("insecure-skip-tls-verify"):
        verify = False
    elif cluster.get("certificate-authority-data"):
        verify = _inline_file(cluster["certificate-authority-data"], "ca")
    elif cluster.get("certificate-authority"):
        verify = str(base / cluster["certificate-authority"])

    token = user.get("token")
    if not token and user.get("tokenFile"):
        try:
            token = (base / user["tokenFile"]).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigError(f"unable to read kubeconfig token file: {exc}")

    cert = None
    if user.get("client-certificate-data") and user.get("client-key-data"):
        cert = (
            _inline_file(user["client-certificate-data"], "crt"),
            _inline_file(user["client-key-data"], "key"),
        )
    elif user.get("client-certificate") and user.get("client-key"):
        cert = (str(base / user["client-certificate"]), str(base / user["client-key"]))

    if user.get("exec") or user.get("auth-provider"):
        logger.warning("kubeconfig user %s uses an auth plugin, which is not supported",
                       ctx.get("user"))

    return KubeConnection(server=server, token=token, verify=verify, cert=cert)


def _named(doc: dict, section: str, name: Optional[str], key: str, path: Path) -> dict:
    """Find ``name`` in a kubeconfig list section and return its body."""
    for item in doc.get(section) or []:
        if isinstance(item, dict) and item.get("name") == name:
            body = item.get(key)
            if isinstance(body, dict):
                return body
    raise ConfigError(f"kubeconfig {path}: {key} {name!r} not found")


def _inline_file(b64data: str, suffix: str) -> str:
    """Write base64 kubeconfig data to a private temp file; requests needs paths."""
    try:
        raw = base64.b64decode(b64data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigError(f"kubeconfig {suffix} data is not base64: {exc}")
    fd, name = tempfile.mkstemp(prefix="keysync-kube-", suffix=f".{suffix}")
    with os.fdopen(fd, "wb") as fh:
        fh.write(raw)
    return name
