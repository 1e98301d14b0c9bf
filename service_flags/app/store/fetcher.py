"""
HTTP collaborator that downloads rulesets and ID lists.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from shared.config import FlagsConfig
from shared.errors import ExternalServiceError, LocalModeNetworkError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception


API_KEY_HEADER = "STATSIG-API-KEY"

_RETRY = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)


@dataclass
class IDListChunk:
    """Tail of an ID list file read from a byte offset."""
    text: str
    content_length: int


class SpecsFetcher:
    """Talks to the ruleset API. Never touches the network in local mode."""

    def __init__(self, config: FlagsConfig, client: Optional[httpx.AsyncClient] = None):
        self.base_url = config.api_url.rstrip('/')
        self.server_secret = config.server_secret
        self.local_mode = config.local_mode
        self.timeout = config.request_timeout_seconds
        self.logger = get_logger("flags.store.fetcher")
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        return {API_KEY_HEADER: self.server_secret or "", "Content-Type": "application/json"}

    @retry_on_exception((httpx.HTTPError,), config=_RETRY)
    async def download_config_specs(self, since_time: int = 0) -> Dict[str, Any]:
        """Fetch ruleset changes since the given sync time."""
        if self.local_mode:
            raise LocalModeNetworkError()

        response = await self.client.post(
            f"{self.base_url}/download_config_specs",
            json={"sinceTime": since_time},
            headers=self._headers(),
        )
        response.raise_for_status()
        self.logger.debug("Downloaded config specs", since_time=since_time, size=len(response.content))
        return response.json()

    @retry_on_exception((httpx.HTTPError,), config=_RETRY)
    async def get_id_lists(self) -> Dict[str, Any]:
        """Fetch the ID list lookup table."""
        if self.local_mode:
            raise LocalModeNetworkError()

        response = await self.client.post(
            f"{self.base_url}/get_id_lists",
            json={},
            headers=self._headers(),
        )
        response.raise_for_status()
        return response.json()

    @retry_on_exception((httpx.HTTPError,), config=_RETRY)
    async def fetch_id_list_range(self, url: str, offset: int) -> IDListChunk:
        """Read an ID list file from the given byte offset to its end."""
        if self.local_mode:
            raise LocalModeNetworkError()

        response = await self.client.get(url, headers={"Range": f"bytes={offset}-"})
        response.raise_for_status()

        content_length = response.headers.get("content-length")
        if content_length is None:
            raise ExternalServiceError(
                "id_list_cdn",
                "Content-Length missing from id list response",
                details={"url": url},
            )
        return IDListChunk(text=response.text, content_length=int(content_length))
