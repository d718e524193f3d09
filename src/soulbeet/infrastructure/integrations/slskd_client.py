"""slskd HTTP client implementation."""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from soulbeet.config.settings import SlskdSettings

logger = logging.getLogger(__name__)


class SlskdApiError(Exception):
    """slskd answered with a non-success HTTP status."""

    def __init__(self, status_code: int, body: str, endpoint: str) -> None:
        super().__init__(f"slskd {endpoint} returned HTTP {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500


class SlskdClient:
    """Thin HTTP client for the slskd REST API (v0).

    Hey future me - this class only speaks HTTP. It does NOT interpret transfer
    states or decide what is retryable; that's SlskdAgentClient's job. Transport
    errors (httpx.TransportError) are propagated as-is, HTTP error statuses become
    SlskdApiError.
    """

    API_PREFIX = "/api/v0"

    def __init__(self, settings: SlskdSettings) -> None:
        """
        Initialize slskd client.

        Args:
            settings: slskd configuration settings
        """
        self.settings = settings
        self._client: httpx.AsyncClient | None = None

    # slskd wants the API key in X-API-Key. Without a key we still send requests,
    # slskd instances with auth disabled accept them.
    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.settings.api_key:
                headers["X-API-Key"] = self.settings.api_key
            self._client = httpx.AsyncClient(
                base_url=self.settings.url + self.API_PREFIX,
                headers=headers,
                timeout=self.settings.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        client = await self._get_client()
        response = await client.request(method, endpoint, **kwargs)
        if response.is_error:
            raise SlskdApiError(response.status_code, response.text, endpoint)
        text = response.text.strip()
        if not text:
            return None
        try:
            return response.json()
        except ValueError:
            # Some slskd versions answer enqueue with plain text
            logger.debug("slskd %s returned non-JSON body: %.200s", endpoint, text)
            return text

    async def enqueue_downloads(
        self, username: str, files: list[dict[str, Any]]
    ) -> Any:
        """
        Ask slskd to download files from one user.

        Args:
            username: Soulseek user sharing the files
            files: List of {"filename": ..., "size": ...}

        Returns:
            Raw response body (None, object, list or {"enqueued", "failed"})
        """
        endpoint = f"/transfers/downloads/{quote(username, safe='')}"
        logger.debug("Enqueuing %d file(s) from %s", len(files), username)
        return await self._request("POST", endpoint, json=files)

    async def get_user_downloads(self, username: str) -> dict[str, Any] | None:
        """
        Get all download transfers from one user.

        Returns:
            User transfer record ({"username", "directories": [...]}) or None if slskd
            has no transfers for this user
        """
        endpoint = f"/transfers/downloads/{quote(username, safe='')}"
        try:
            data = await self._request("GET", endpoint)
        except SlskdApiError as e:
            if e.status_code == 404:
                return None
            raise
        return data if isinstance(data, dict) else None

    async def cancel_download(
        self, username: str, transfer_id: str, remove: bool = False
    ) -> None:
        """Cancel a download transfer (optionally removing it from slskd's list)."""
        endpoint = (
            f"/transfers/downloads/{quote(username, safe='')}/{quote(transfer_id, safe='')}"
        )
        await self._request(
            "DELETE", endpoint, params={"remove": "true" if remove else "false"}
        )

    async def test_connection(self) -> dict[str, Any]:
        """Check that slskd is reachable and accepts our API key."""
        try:
            data = await self._request("GET", "/application")
        except (httpx.HTTPError, SlskdApiError) as e:
            return {"success": False, "error": str(e)}
        version = data.get("version") if isinstance(data, dict) else None
        return {"success": True, "version": version}


def flatten_user_transfers(user: dict[str, Any]) -> list[dict[str, Any]]:
    """Flatten slskd's {username, directories: [{files: [...]}]} into file dicts."""
    username = user.get("username", "")
    files: list[dict[str, Any]] = []
    for directory in user.get("directories") or []:
        for entry in directory.get("files") or []:
            if isinstance(entry, dict):
                files.append({"username": username, **entry})
    return files
