import asyncio
from typing import Optional

import aiohttp
from loguru import logger

from build_status_client.errors import StatusFetchError
from build_status_client.models import JobStatus, StatusPollingConfig


class JobStatusClient:
    def __init__(
        self,
        base_url: str,
        config: Optional[StatusPollingConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.config = config or StatusPollingConfig()
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    def status_url(self, entity_id: str) -> str:
        return f"{self.base_url}/{self.config.resource}/{entity_id}/builds/status"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
            self._owns_session = True
        return self._session

    async def fetch_status(self, entity_id: str) -> JobStatus:
        """Fetches the current build status of an entity from the server"""
        url = self.status_url(entity_id)
        session = await self._get_session()

        try:
            async with session.get(url) as response:
                response.raise_for_status()
                data = await response.json(content_type=None)
        except aiohttp.ClientResponseError as e:
            self.logger.debug(f"HTTP error {e.status} at {url}: {e.message}")
            raise StatusFetchError(entity_id, f"HTTP {e.status}") from e
        except aiohttp.ClientError as e:
            self.logger.debug(f"Request to {url} failed: {e}")
            raise StatusFetchError(entity_id, str(e) or type(e).__name__) from e
        except asyncio.TimeoutError as e:
            raise StatusFetchError(entity_id, "request timed out") from e
        except ValueError as e:
            raise StatusFetchError(entity_id, f"unparsable body: {e}") from e

        if not isinstance(data, dict):
            raise StatusFetchError(entity_id, "status body is not an object")

        return JobStatus.from_payload(entity_id, data)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "JobStatusClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
