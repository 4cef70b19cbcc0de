"""
Local store backends.

Durable on-device tables used as the offline cache and queue.
"""

from .file_store import JsonFileLocalStore

__all__ = [
    "JsonFileLocalStore",
]
