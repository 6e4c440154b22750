"""
File materializer — writes key files under content-addressed names.

Filenames take the form ``<md5>-<namespace>-<record>-<entry>``. The
hash covers the file content, so an existing file with the right name
is already up to date and is never rewritten. A changed record yields a
new name and the old file is left for the garbage collector.

Mode and ownership drift is corrected on every pass, not only when a
file is created.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
from pathlib import Path
from typing import Optional

from .errors import MaterializeError

logger = logging.getLogger("keysync.materialize")


def key_filename(namespace: str, name: str, entry: str, content: bytes) -> str:
    """Return the canonical filename for a key file.

    e.g. ``a948904f2f0f479b8f8197694b30184b-default-mysecret-a.pem``
    """
    # md5 only detects content changes here, it protects nothing
    digest = hashlib.md5(content, usedforsecurity=False).hexdigest()
    return f"{digest}-{namespace}-{name}-{entry}"


class FileMaterializer:
    """Writes key files into the sync directory.

    Args:
        directory: Flat directory that holds the key files.
        mode: Permission bits every key file must carry.
        uid: Target owner user id, or None to accept the process default.
        gid: Target owner group id, or None to accept the process default.
    """

    def __init__(
        self,
        directory: Path,
        mode: int = 0o600,
        uid: Optional[int] = None,
        gid: Optional[int] = None,
    ):
        self.directory = Path(directory)
        self.mode = mode
        self.uid = uid
        self.gid = gid

    def materialize(
        self, namespace: str, name: str, entry: str, content: bytes
    ) -> tuple[str, bool, bool]:
        """Ensure a key file exists with the configured mode and owner.

        Args:
            namespace: Record namespace.
            name: Record name.
            entry: Output entry name produced by the handler.
            content: Key file content.

        Returns:
            ``(filename, written, fixed)`` where ``written`` is True if the
            file was created this call and ``fixed`` is True if its mode or
            owner had to be corrected.

        Raises:
            MaterializeError: If the write or a correction fails.
        """
        filename = key_filename(namespace, name, entry, content)
        path = self.directory / filename

        written = False
        if not self._exists(path):
            logger.info("Syncing new key: %s", filename)
            self._write(path, content)
            written = True

        fixed = self._correct_attributes(path)
        return filename, written, fixed

    def _exists(self, path: Path) -> bool:
        try:
            os.stat(path)
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            # ENAMETOOLONG, EACCES, or a NUL byte in the name
            raise MaterializeError(str(path), f"unable to stat file: {exc}") from exc
        return True

    def _write(self, path: Path, content: bytes) -> None:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, self.mode)
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
        except (OSError, ValueError) as exc:
            raise MaterializeError(str(path), f"unable to write file: {exc}") from exc

    def _correct_attributes(self, path: Path) -> bool:
        """Re-apply mode and owner if they drifted. Returns True on change."""
        try:
            st = path.stat()
        except (OSError, ValueError) as exc:
            raise MaterializeError(str(path), f"unable to stat file: {exc}") from exc

        fixed = False
        # umask may have masked the mode at creation time
        if stat.S_IMODE(st.st_mode) != self.mode:
            try:
                os.chmod(path, self.mode)
            except OSError as exc:
                raise MaterializeError(str(path), f"unable to chmod: {exc}") from exc
            logger.info(
                "Corrected mode of %s: %o -> %o",
                path.name, stat.S_IMODE(st.st_mode), self.mode,
            )
            fixed = True

        uid_drift = self.uid is not None and st.st_uid != self.uid
        gid_drift = self.gid is not None and st.st_gid != self.gid
        if uid_drift or gid_drift:
            # Needs root or CAP_CHOWN
            uid = self.uid if self.uid is not None else -1
            gid = self.gid if self.gid is not None else -1
            try:
                os.chown(path, uid, gid)
            except OSError as exc:
                raise MaterializeError(str(path), f"unable to chown: {exc}") from exc
            logger.info("Corrected owner of %s to %d:%d", path.name, uid, gid)
            fixed = True

        return fixed
