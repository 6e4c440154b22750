"""
Pydantic models for records, configuration, and pass results.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from . import DEFAULT_KEY_TYPE, DEFAULT_SYNC_DIR, NAMESPACE_ENV
from .errors import ConfigError


class Record(BaseModel):
    """A key-bearing secret as returned by a record store.

    Records are owned by the store and read-only to keysync.
    """

    name: str
    namespace: str = "default"
    type: str = DEFAULT_KEY_TYPE
    data: dict[str, bytes] = Field(default_factory=dict)

    @field_validator("namespace")
    @classmethod
    def namespace_defaults(cls, v: str) -> str:
        """An empty namespace means the default namespace."""
        return v or "default"


def parse_permissions(value: str) -> int:
    """Parse an octal permission string such as ``"0600"``.

    Raises:
        ConfigError: If the value is not a valid octal mode.
    """
    try:
        mode = int(value, 8)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid permissions specified: {value!r}")
    if mode < 0 or mode > 0o7777:
        raise ConfigError(f"invalid permissions specified: {value!r}")
    return mode


def parse_ownership(value: str) -> tuple[int, int]:
    """Parse a ``"UID:GID"`` ownership string.

    Raises:
        ConfigError: If the value is malformed or negative.
    """
    uid_s, sep, gid_s = value.partition(":")
    try:
        if not sep:
            raise ValueError(value)
        uid, gid = int(uid_s), int(gid_s)
    except ValueError:
        raise ConfigError(f"invalid ownership specified: {value!r}")
    if uid < 0 or gid < 0:
        raise ConfigError(f"invalid ownership specified: {value!r}")
    return uid, gid


class KeySyncConfig(BaseModel):
    """Runtime configuration for the key sync server."""

    interval: float = Field(default=10, gt=0, description="Seconds between passes")
    sync_dir: Path = Path(DEFAULT_SYNC_DIR)
    namespace: str = Field(
        default_factory=lambda: os.environ.get(NAMESPACE_ENV) or "default"
    )
    file_permissions: int = 0o600
    owner_uid: Optional[int] = Field(default=None, ge=0)
    owner_gid: Optional[int] = Field(default=None, ge=0)

    # Keep a failed tag's last known files instead of collecting them
    preserve_failed_tags: bool = True

    # Out-of-cluster access; in-cluster service account otherwise
    kubeconfig: Optional[Path] = None

    keyprotect_config_file: Optional[Path] = None
    keyprotect_config_secret: Optional[str] = None
    keyprotect_tag: str = "kp-key"

    log_file: Optional[Path] = None

    @field_validator("file_permissions", mode="before")
    @classmethod
    def permissions_from_octal(cls, v):
        """Accept ``"0600"`` style strings alongside plain ints."""
        if isinstance(v, str):
            try:
                return parse_permissions(v)
            except ConfigError as exc:
                raise ValueError(str(exc))
        return v

    @property
    def owner_configured(self) -> bool:
        """True when any target owner id is set."""
        return self.owner_uid is not None or self.owner_gid is not None


def load_config(path: Path, **overrides) -> KeySyncConfig:
    """Load configuration from a YAML file, applying non-None overrides.

    Args:
        path: YAML config file. A missing file yields defaults.
        **overrides: Field values that take priority over the file.

    Returns:
        KeySyncConfig: The merged configuration.

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid.
    """
    data: dict = {}
    if path is not None and path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigError(f"failed to load config {path}: {exc}")
        if not isinstance(data, dict):
            raise ConfigError(f"config {path} must be a mapping")

    data.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return KeySyncConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}")


class PassReport(BaseModel):
    """Aggregated outcome of one reconciliation pass.

    Each per-item failure is recorded here instead of aborting the pass.
    """

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    tags: list[str] = Field(default_factory=list)
    written: list[str] = Field(default_factory=list)
    observed: set[str] = Field(default_factory=set)
    deleted: list[str] = Field(default_factory=list)
    permission_fixes: list[str] = Field(default_factory=list)
    carried_forward: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True if nothing failed during the pass."""
        return not self.errors

    def record_error(self, exc: Exception) -> None:
        """Record a recovered per-item failure."""
        self.errors.append(f"{type(exc).__name__}: {exc}")
