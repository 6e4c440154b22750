"""
Garbage collector — removes key files no longer backed by a record.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from .errors import CollectorDeleteError, CollectorListError, KeySyncError

logger = logging.getLogger("keysync.collector")


def list_entries(directory: Path) -> list[str]:
    """List the names directly inside ``directory``.

    Raises:
        CollectorListError: If the directory cannot be read.
    """
    try:
        return sorted(os.listdir(directory))
    except OSError as exc:
        raise CollectorListError(f"unable to list {directory} for cleanup: {exc}") from exc


def collect(
    directory: Path, observed: set[str]
) -> tuple[list[str], list[KeySyncError]]:
    """Delete every entry in ``directory`` that is not in ``observed``.

    An unreadable directory counts as empty. A failed deletion is logged
    and the scan continues.

    Args:
        directory: The sync directory.
        observed: Filenames that should exist after this pass.

    Returns:
        ``(deleted, errors)``: names removed, and the recovered errors.
    """
    directory = Path(directory)
    errors: list[KeySyncError] = []

    try:
        names = list_entries(directory)
    except CollectorListError as exc:
        logger.error("%s", exc)
        return [], [exc]

    deleted: list[str] = []
    for name in names:
        if name in observed:
            continue
        path = directory / name
        logger.info("Deleting old key: %s", name)
        try:
            path.unlink()
        except OSError as exc:
            err = CollectorDeleteError(str(path), f"unable to delete old key: {exc}")
            logger.error("%s", err)
            errors.append(err)
            continue
        deleted.append(name)

    return deleted, errors
