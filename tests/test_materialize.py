"""Tests for content-addressed key file materialization."""

from __future__ import annotations

import hashlib
import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from keysync.errors import MaterializeError
from keysync.materialize import FileMaterializer, key_filename


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


class TestKeyFilename:
    """Canonical filename format."""

    def test_format(self):
        digest = hashlib.md5(b"this is a key").hexdigest()
        assert key_filename("default", "my-secret", "mykey", b"this is a key") == (
            f"{digest}-default-my-secret-mykey"
        )

    def test_same_content_same_name(self):
        assert key_filename("ns", "s", "k", b"abc") == key_filename("ns", "s", "k", b"abc")

    def test_different_content_different_name(self):
        assert key_filename("ns", "s", "k", b"abc") != key_filename("ns", "s", "k", b"abd")


class TestFileMaterializer:
    """Write-if-absent and attribute drift correction."""

    def test_writes_new_file(self, sync_dir: Path):
        m = FileMaterializer(sync_dir, mode=0o600)
        filename, written, fixed = m.materialize("default", "s", "k", b"secret")

        path = sync_dir / filename
        assert written is True
        assert fixed is False
        assert path.read_bytes() == b"secret"
        assert _mode(path) == 0o600

    def test_existing_file_not_rewritten(self, sync_dir: Path):
        m = FileMaterializer(sync_dir, mode=0o600)
        filename, _, _ = m.materialize("default", "s", "k", b"secret")
        path = sync_dir / filename
        os.utime(path, (1_000_000, 1_000_000))

        again, written, fixed = m.materialize("default", "s", "k", b"secret")
        assert again == filename
        assert written is False
        assert fixed is False
        assert path.stat().st_mtime == 1_000_000

    def test_mode_ignores_umask(self, sync_dir: Path):
        old = os.umask(0o077)
        try:
            m = FileMaterializer(sync_dir, mode=0o644)
            filename, _, fixed = m.materialize("default", "s", "k", b"x")
        finally:
            os.umask(old)
        assert fixed is True
        assert _mode(sync_dir / filename) == 0o644

    def test_mode_drift_corrected_without_rewrite(self, sync_dir: Path):
        m = FileMaterializer(sync_dir, mode=0o600)
        filename, _, _ = m.materialize("default", "s", "k", b"secret")
        path = sync_dir / filename
        os.chmod(path, 0o666)
        os.utime(path, (1_000_000, 1_000_000))

        _, written, fixed = m.materialize("default", "s", "k", b"secret")
        assert written is False
        assert fixed is True
        assert _mode(path) == 0o600
        assert path.read_bytes() == b"secret"
        assert path.stat().st_mtime == 1_000_000

    def test_no_chown_without_target_owner(self, sync_dir: Path):
        m = FileMaterializer(sync_dir, mode=0o600)
        with patch("keysync.materialize.os.chown") as chown:
            m.materialize("default", "s", "k", b"x")
        chown.assert_not_called()

    def test_no_chown_when_owner_matches(self, sync_dir: Path):
        m = FileMaterializer(sync_dir, mode=0o600, uid=os.getuid(), gid=os.getgid())
        with patch("keysync.materialize.os.chown") as chown:
            _, _, fixed = m.materialize("default", "s", "k", b"x")
        chown.assert_not_called()
        assert fixed is False

    def test_chown_on_owner_drift(self, sync_dir: Path):
        m = FileMaterializer(sync_dir, mode=0o600, uid=os.getuid() + 1)
        with patch("keysync.materialize.os.chown") as chown:
            filename, _, fixed = m.materialize("default", "s", "k", b"x")
        chown.assert_called_once_with(sync_dir / filename, os.getuid() + 1, -1)
        assert fixed is True

    def test_chown_failure_raises(self, sync_dir: Path):
        m = FileMaterializer(sync_dir, mode=0o600, gid=os.getgid() + 1)
        with patch("keysync.materialize.os.chown", side_effect=PermissionError("EPERM")):
            with pytest.raises(MaterializeError, match="chown"):
                m.materialize("default", "s", "k", b"x")

    def test_write_failure_raises(self, tmp_path: Path):
        m = FileMaterializer(tmp_path / "missing", mode=0o600)
        with pytest.raises(MaterializeError, match="unable to write"):
            m.materialize("default", "s", "k", b"x")
