"""
KeySync — decryption key synchronization daemon.

Polls a record store for key-bearing secrets, unwraps them through
pluggable handlers, and mirrors the result into a flat directory of
content-addressed key files. Stale files are garbage-collected.
"""

__version__ = "0.1.0"

DEFAULT_SYNC_DIR = "/tmp/keys"
DEFAULT_KEY_TYPE = "key"
NAMESPACE_ENV = "POD_NAMESPACE"
