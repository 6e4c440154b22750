"""
Secret handlers — how a record's raw blobs become key files.

A handler receives a record's named byte blobs and returns the named
blobs to materialize. The identity handler serves plain ``key`` records;
the Key Protect handler unwraps keys through a remote KMS.
"""

from .base import FunctionHandler, SecretHandler, as_handler
from .keyprotect import KEYPROTECT_OUTPUT_ENTRY, KeyProtectHandler, UnwrapClient
from .regular import IdentityHandler

__all__ = [
    "FunctionHandler",
    "IdentityHandler",
    "KEYPROTECT_OUTPUT_ENTRY",
    "KeyProtectHandler",
    "SecretHandler",
    "UnwrapClient",
    "as_handler",
]
