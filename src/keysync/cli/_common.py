"""Shared helpers for the CLI command modules.

Provides the Rich console, shared server options, and the wiring that
turns CLI flags into a configured server.
"""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from ..errors import ConfigError
from ..keyprotect import KeyProtectConfigWatcher, handler_from_config
from ..models import KeySyncConfig, load_config, parse_ownership
from ..server import KeySyncServer
from ..store import DirectoryRecordStore, KubeSecretStore, RecordStore

console = Console()


def server_options(func):
    """Attach the options shared by every command that builds a server."""
    options = [
        click.option("--config", "config_path", type=click.Path(path_type=Path),
                     help="YAML config file."),
        click.option("--interval", type=float, help="Seconds between sync passes (default: 10)."),
        click.option("--dir", "sync_dir", type=click.Path(path_type=Path),
                     help="Directory to sync keys to (default: /tmp/keys)."),
        click.option("--namespace", help="Namespace holding the key secrets."),
        click.option("--store-dir", type=click.Path(path_type=Path),
                     help="Read secrets from YAML manifests in this directory instead of Kubernetes."),
        click.option("--kube-api-url", help="Kubernetes API server URL (default: in-cluster)."),
        click.option("--kubeconfig", type=click.Path(path_type=Path),
                     help="Kubeconfig file to use instead of the in-cluster service account."),
        click.option("--keyprotect-config-file", type=click.Path(path_type=Path),
                     help="Key Protect config file."),
        click.option("--keyprotect-config-secret",
                     help="Secret holding the Key Protect config.json."),
        click.option("--key-file-permissions",
                     help="Octal permissions for created key files (default: 0600)."),
        click.option("--key-file-ownership",
                     help="UID:GID ownership for key files (requires CAP_CHOWN)."),
        click.option("--preserve-failed-tags/--collect-failed-tags", default=None,
                     help="Keep a type's key files while its secrets cannot be listed."),
        click.option("--log-file", type=click.Path(path_type=Path), help="Also log to this file."),
        click.option("--verbose", "-v", is_flag=True, help="Debug logging."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_config(
    config_path: Optional[Path],
    key_file_permissions: Optional[str],
    key_file_ownership: Optional[str],
    **overrides,
) -> KeySyncConfig:
    """Merge the config file with CLI overrides.

    Raises:
        ConfigError: If any value is invalid.
    """
    if key_file_permissions is not None:
        overrides["file_permissions"] = key_file_permissions
    if key_file_ownership:
        overrides["owner_uid"], overrides["owner_gid"] = parse_ownership(key_file_ownership)
    return load_config(config_path, **overrides)


def build_store(
    config: KeySyncConfig,
    store_dir: Optional[Path],
    kube_api_url: Optional[str],
) -> RecordStore:
    """Pick the record store the flags ask for.

    Raises:
        ConfigError: If the kubeconfig is invalid.
    """
    if store_dir:
        return DirectoryRecordStore(store_dir, namespace=config.namespace)
    if config.kubeconfig:
        return KubeSecretStore.from_kubeconfig(
            config.kubeconfig, namespace=config.namespace, api_url=kube_api_url
        )
    return KubeSecretStore(namespace=config.namespace, api_url=kube_api_url)


def build_server(
    config: KeySyncConfig, store: RecordStore
) -> tuple[KeySyncServer, Optional[KeyProtectConfigWatcher]]:
    """Create the server and wire up the Key Protect handler if configured.

    Raises:
        ConfigError: If the Key Protect config file is invalid.
    """
    server = KeySyncServer(config, store)
    watcher = None

    if config.keyprotect_config_file:
        server.add_secret_key_handler(
            config.keyprotect_tag, handler_from_config(config.keyprotect_config_file)
        )
    elif config.keyprotect_config_secret:
        watcher = KeyProtectConfigWatcher(
            store,
            config.keyprotect_config_secret,
            server.registry,
            interval=config.interval,
            tag=config.keyprotect_tag,
        )
    return server, watcher


def fail(exc: ConfigError) -> None:
    """Print a configuration error and exit non-zero."""
    console.print(f"[bold red]Configuration error:[/] {exc}")
    raise SystemExit(1)


def handles_config_errors(func):
    """Turn ConfigError into a clean CLI failure."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ConfigError as exc:
            fail(exc)

    return wrapper
