"""
Remote store backends.
"""

from .cosmos import CosmosRemoteStore

__all__ = [
    "CosmosRemoteStore",
]
