"""Async HTTP client for the Tally data service."""

import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from ..errors import (
    BadResponseError,
    NetworkError,
    SyncError,
    TimeoutSyncError,
    sync_error_for_status,
)

logger = logging.getLogger(__name__)

SALES_EXTRACT_PATH = "/api/reports/salesextract"
LEDGERS_PATH = "/api/tally/ledgerlist-w-addrs"
STOCK_ITEMS_PATH = "/api/tally/stockitem"
CONNECTIONS_PATH = "/api/tally/user-connections"


class TallyApiClient:
    """Thin JSON-over-HTTP client with typed errors.

    Every failure surfaces as a ``SyncError`` subclass. There is no retry
    here: callers resume from their checkpoint instead.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = 300,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Service root, e.g. "https://api.example.com"
            token: Bearer token sent with every request
            timeout_seconds: Total timeout per request
            session: Existing session to use; the client will not close it
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout_seconds
        self.session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, api_config) -> "TallyApiClient":
        return cls(
            api_config.base_url,
            token=api_config.resolved_token(),
            timeout_seconds=api_config.timeout_seconds,
        )

    async def __aenter__(self) -> "TallyApiClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        """Create the HTTP session if needed."""
        if self.session is None:
            headers = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=headers,
            )
            self._owns_session = True
            logger.debug("HTTP session created for %s", self.base_url)

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            logger.debug("HTTP session closed")
        if self._owns_session:
            self.session = None

    async def post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a JSON body and return the decoded JSON object."""
        return await self._request("POST", path, json_body=payload)

    async def get(self, path: str) -> Any:
        return await self._request("GET", path)

    async def _request(
        self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None
    ) -> Any:
        await self.start()
        url = f"{self.base_url}{path}"
        # Cache buster, as the service sits behind caching proxies
        params = {"ts": str(int(time.time() * 1000))}

        started = time.monotonic()
        try:
            async with self.session.request(method, url, json=json_body, params=params) as response:
                text = await response.text()
                if response.status >= 400:
                    raise sync_error_for_status(response.status, text or response.reason or "")
        except SyncError:
            raise
        except asyncio.TimeoutError as e:
            raise TimeoutSyncError(f"Request to {path} timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Request to {path} failed: {e}") from e

        logger.debug("%s %s -> %d in %.2fs", method, path, response.status, time.monotonic() - started)

        if not text.strip():
            raise BadResponseError(f"Empty response from {path}", response.status)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise BadResponseError(f"Invalid JSON from {path}: {e}", response.status) from e
