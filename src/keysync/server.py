"""
KeySync server — the reconciliation loop.

Every interval the server:

    1. activates handlers queued since the last pass
    2. for each handled type, lists its records, runs them through the
       handler, and materializes the resulting key files
    3. deletes every file in the sync directory not produced in step 2

Failures are isolated per type, per record, and per file. They are
logged and recorded on the pass report, and the loop keeps running.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from .collector import collect
from .errors import HandlerError, MaterializeError, StoreQueryError
from .handlers import SecretHandler
from .handlers.base import Blobs
from .materialize import FileMaterializer
from .models import KeySyncConfig, PassReport, Record
from .registry import HandlerRegistry
from .store import RecordStore

logger = logging.getLogger("keysync.server")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


class SyncState:
    """Thread-safe counters describing the server's progress.

    All access is lock-protected.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_pass: Optional[datetime] = None
        self.passes: int = 0
        self.files_written: int = 0
        self.files_deleted: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def mark_started(self) -> None:
        with self._lock:
            self.running = True
            self.started_at = datetime.now(timezone.utc)

    def mark_stopped(self) -> None:
        with self._lock:
            self.running = False

    def record_pass(self, report: PassReport) -> None:
        """Fold a finished pass into the counters."""
        with self._lock:
            self.last_pass = report.finished_at
            self.passes += 1
            self.files_written += len(report.written)
            self.files_deleted += len(report.deleted)
            ts = (report.finished_at or datetime.now(timezone.utc)).isoformat()
            self.errors.extend(f"[{ts}] {err}" for err in report.errors)
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]

    def snapshot(self) -> dict:
        """Return a JSON-safe snapshot of current state."""
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "last_pass": self.last_pass.isoformat() if self.last_pass else None,
                "passes": self.passes,
                "files_written": self.files_written,
                "files_deleted": self.files_deleted,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }


class KeySyncServer:
    """Keeps a directory of key files in step with a record store.

    Args:
        config: Server configuration.
        store: Source of key-bearing records.
        registry: Handler registry. A fresh one (serving plain ``key``
            records) is created if omitted.
    """

    def __init__(
        self,
        config: KeySyncConfig,
        store: RecordStore,
        registry: Optional[HandlerRegistry] = None,
    ):
        self.config = config
        self.store = store
        self.registry = registry or HandlerRegistry()
        self.materializer = FileMaterializer(
            config.sync_dir,
            mode=config.file_permissions,
            uid=config.owner_uid,
            gid=config.owner_gid,
        )
        self.state = SyncState()
        self._last_observed: dict[str, set[str]] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_secret_key_handler(
        self, tag: str, handler: Union[SecretHandler, Callable[[Blobs], Blobs]]
    ) -> None:
        """Queue a handler for records of type ``tag``.

        Takes effect at the start of the next pass.
        """
        self.registry.register(tag, handler)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run the reconciliation loop on a background thread."""
        self.config.sync_dir.mkdir(parents=True, exist_ok=True)
        self._stop_event.clear()
        self.state.mark_started()

        logger.info(
            "Starting KeySync server with sync-dir %s, interval %ss, store %s",
            self.config.sync_dir, self.config.interval, self.store.name,
        )
        self._thread = threading.Thread(
            target=self._sync_loop, name="keysync-loop", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Signal the loop to exit and wait for the current pass to end."""
        logger.info("KeySync server stopping...")
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=max(5.0, self.config.interval))
        self.state.mark_stopped()
        logger.info("KeySync server stopped.")

    def run_forever(self) -> None:
        """Block until stop is signaled, then shut down."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def setup_signals(self) -> None:
        """Register SIGTERM/SIGINT handlers for graceful shutdown."""
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s — stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _sync_loop(self) -> None:
        while not self._stop_event.is_set():
            self._stop_event.wait(timeout=self.config.interval)
            if self._stop_event.is_set():
                break
            try:
                self.sync_once()
            except Exception:
                # sync_once recovers per-item errors; anything else is a bug
                logger.exception("Unexpected error during sync pass")

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    def sync_once(self) -> PassReport:
        """Run one full reconciliation pass.

        Returns:
            PassReport: What was written, kept, deleted, and what failed.
        """
        report = PassReport()
        handlers = self.registry.merge_pending()
        report.tags = sorted(handlers)

        for tag, handler in handlers.items():
            try:
                records = self.store.list(tag)
            except Exception as exc:
                err = exc if isinstance(exc, StoreQueryError) else StoreQueryError(tag, str(exc))
                logger.error("Error listing secrets: %s", err)
                report.record_error(err)
                self._carry_forward(tag, report)
                continue

            observed = self._sync_records(records, handler, report)
            self._last_observed[tag] = observed
            report.observed |= observed

        deleted, errors = collect(self.config.sync_dir, report.observed)
        report.deleted = deleted
        for err in errors:
            report.record_error(err)

        report.finished_at = datetime.now(timezone.utc)
        self.state.record_pass(report)
        logger.debug(
            "Pass complete: %d observed, %d written, %d deleted, %d errors",
            len(report.observed), len(report.written),
            len(report.deleted), len(report.errors),
        )
        return report

    def _carry_forward(self, tag: str, report: PassReport) -> None:
        """Protect a failed tag's last known files from collection."""
        if not self.config.preserve_failed_tags:
            return
        previous = self._last_observed.get(tag)
        if previous:
            logger.warning(
                "Keeping %d key file(s) of type=%s until its secrets can be listed",
                len(previous), tag,
            )
            report.observed |= previous
            report.carried_forward.append(tag)

    def _sync_records(
        self, records: list[Record], handler: SecretHandler, report: PassReport
    ) -> set[str]:
        """Materialize every record of one type. Returns the filenames kept."""
        observed: set[str] = set()
        for record in records:
            try:
                key_files = handler.transform(record.data)
                if not isinstance(key_files, Mapping):
                    raise HandlerError(
                        f"{record.name}: handler returned {type(key_files).__name__}, not a mapping"
                    )
            except HandlerError as exc:
                logger.error("Unable to process secret %s: %s", record.name, exc)
                report.record_error(exc)
                continue
            except Exception as exc:
                logger.error("Handler %s failed on secret %s: %s", handler.name, record.name, exc)
                report.record_error(HandlerError(f"{record.name}: {exc}"))
                continue

            for entry, content in key_files.items():
                if isinstance(content, str):
                    content = content.encode("utf-8")
                if not isinstance(content, (bytes, bytearray)):
                    err = HandlerError(f"{record.name}: entry {entry} is not bytes")
                    logger.error("Unable to process secret %s: %s", record.name, err)
                    report.record_error(err)
                    continue
                try:
                    filename, written, fixed = self.materializer.materialize(
                        record.namespace, record.name, entry, content
                    )
                except MaterializeError as exc:
                    logger.error("Unable to write key file: %s", exc)
                    report.record_error(exc)
                    continue

                observed.add(filename)
                if written:
                    report.written.append(filename)
                if fixed:
                    report.permission_fixes.append(filename)
        return observed


def setup_logging(verbose: bool = False, log_file=None) -> None:
    """Configure console (and optional file) logging."""
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.setLevel(logging.DEBUG if verbose else logging.INFO)
