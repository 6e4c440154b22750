"""Sync commands: run, once."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from ..server import setup_logging
from ._common import (
    build_config,
    build_server,
    build_store,
    console,
    handles_config_errors,
    server_options,
)


def register_run_commands(main: click.Group) -> None:
    """Register the run and once commands."""

    @main.command("run")
    @server_options
    @handles_config_errors
    def run(
        config_path: Optional[Path],
        store_dir: Optional[Path],
        kube_api_url: Optional[str],
        key_file_permissions: Optional[str],
        key_file_ownership: Optional[str],
        verbose: bool,
        **overrides,
    ):
        """Run the key sync loop until interrupted.

        Every interval, secrets of each handled type are listed,
        unwrapped, and written to the sync directory. Key files whose
        secret is gone are deleted.

        Examples:

            keysync run --dir /tmp/keys --interval 10

            keysync run --store-dir ./secrets --keyprotect-config-file kp.json
        """
        config = build_config(
            config_path, key_file_permissions, key_file_ownership, **overrides
        )
        setup_logging(verbose=verbose, log_file=config.log_file)

        store = build_store(config, store_dir, kube_api_url)
        server, watcher = build_server(config, store)

        ownership = "process default"
        if config.owner_configured:
            ownership = f"{config.owner_uid}:{config.owner_gid} (requires root or CAP_CHOWN)"

        console.print(
            Panel(
                f"Sync dir: [bold]{config.sync_dir}[/]\n"
                f"Interval: [bold]{config.interval}s[/]\n"
                f"Namespace: [bold]{config.namespace}[/]\n"
                f"Store: [bold]{store.name}[/]\n"
                f"Key file mode: [bold]{config.file_permissions:04o}[/]\n"
                f"Key file owner: [bold]{ownership}[/]",
                title="[green]KeySync[/]",
                border_style="green",
            )
        )
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")

        server.setup_signals()
        if watcher:
            watcher.start()
        server.start()
        try:
            server.run_forever()
        finally:
            if watcher:
                watcher.stop()

    @main.command("once")
    @server_options
    @click.option("--json-out", is_flag=True, help="Output the pass report as JSON.")
    @handles_config_errors
    def once(
        config_path: Optional[Path],
        store_dir: Optional[Path],
        kube_api_url: Optional[str],
        key_file_permissions: Optional[str],
        key_file_ownership: Optional[str],
        verbose: bool,
        json_out: bool,
        **overrides,
    ):
        """Run a single sync pass and report what changed.

        Exits non-zero if any secret, key file, or cleanup failed.
        """
        config = build_config(
            config_path, key_file_permissions, key_file_ownership, **overrides
        )
        if verbose or config.log_file:
            setup_logging(verbose=verbose, log_file=config.log_file)

        store = build_store(config, store_dir, kube_api_url)
        server, watcher = build_server(config, store)
        if watcher:
            watcher.poll_once()

        config.sync_dir.mkdir(parents=True, exist_ok=True)
        report = server.sync_once()

        if json_out:
            click.echo(json.dumps(report.model_dump(mode="json"), indent=2, default=str))
        else:
            table = Table(title="Sync pass", show_header=True, header_style="bold")
            table.add_column("Result", style="cyan")
            table.add_column("Count", justify="right")
            table.add_row("Types", str(len(report.tags)))
            table.add_row("Key files", str(len(report.observed)))
            table.add_row("Written", str(len(report.written)))
            table.add_row("Permissions fixed", str(len(report.permission_fixes)))
            table.add_row("Deleted", str(len(report.deleted)))
            table.add_row("Errors", str(len(report.errors)))
            console.print(table)
            for err in report.errors:
                console.print(f"  [red]{err}[/]")

        if not report.ok:
            raise SystemExit(1)
