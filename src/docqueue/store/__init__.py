"""Shared key-value store backends."""

from .backends import KeyValueStore
from .sqlite_backend import SQLiteStore

__all__ = ["KeyValueStore", "SQLiteStore"]
