"""
Data adapters package.

A data adapter stores the last ruleset payload and ID lists outside the
network so a fresh process can start serving without the ruleset API,
or so several processes can share one synced copy.
"""

from .data_adapter import AdapterResponse, DataAdapter
from .redis_adapter import RedisDataAdapter

__all__ = [
    "AdapterResponse",
    "DataAdapter",
    "RedisDataAdapter",
]
