"""
Pluggable storage for ruleset payloads and ID lists outside the network.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


CONFIG_SPECS_KEY = "flags.config_specs"
ID_LISTS_KEY = "flags.id_lists"


def id_list_key(list_name: str) -> str:
    return f"{ID_LISTS_KEY}::{list_name}"


@dataclass
class AdapterResponse:
    result: Optional[str] = None
    time: Optional[int] = None
    error: Optional[Exception] = None


class DataAdapter(ABC):
    """Storage used to bootstrap and back up the store's snapshot."""

    @abstractmethod
    async def initialize(self) -> None:
        """Startup work that must finish before get or set."""

    @abstractmethod
    async def get(self, key: str) -> AdapterResponse:
        """Return the value stored under the key; errors go in the response."""

    @abstractmethod
    async def set(self, key: str, value: str, time: Optional[int] = None) -> None:
        """Store a value under the key."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Release connections."""

    def supports_polling_updates_for(self, key: str) -> bool:
        """Whether the store should poll this adapter instead of the network for the key."""
        return False
