"""
KeySync CLI — run the key sync loop from the command line.

Each command group lives in its own module and is attached to the
main Click group through a register function.

Entry point: keysync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="keysync")
def main():
    """KeySync — mirror decryption keys from secrets to disk."""


from .run import register_run_commands

register_run_commands(main)
