import asyncio
from typing import Any, Optional

import aiohttp
from loguru import logger

from build_status_client.models import (
    CompletedSync,
    Enqueued,
    Failed,
    JobState,
    JobStatus,
    RunOutcome,
    StatusPollingConfig,
)
from build_status_client.orchestrator import JobOrchestrator


class RunRequestDispatcher:
    """Starts builds and routes the backend's answer to the right flow.

    A 202 means the build was queued: the entity is seeded as ``queued`` and
    handed to the orchestrator for polling. A 200 with ``mode: "sync"`` means
    the build already finished within the request, so the entity is seeded as
    ``ok`` and never polled. Everything else is a Failed outcome with no
    status table change.
    """

    def __init__(
        self,
        base_url: str,
        orchestrator: JobOrchestrator,
        config: Optional[StatusPollingConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.orchestrator = orchestrator
        self.config = config or orchestrator.config
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    @property
    def table(self):
        return self.orchestrator.table

    def run_url(self, entity_id: str) -> str:
        return f"{self.base_url}/{self.config.resource}/{entity_id}/builds/run-now"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
            self._owns_session = True
        return self._session

    async def start(self, entity_id: str, materialize: bool = True) -> RunOutcome:
        if self.orchestrator.closed:
            return self._failed(entity_id, "orchestrator disposed")

        url = self.run_url(entity_id)
        session = await self._get_session()

        try:
            async with session.post(url, json={"materialize": materialize}) as response:
                status_code = response.status
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None
        except aiohttp.ClientError as e:
            return self._failed(entity_id, f"request failed: {str(e) or type(e).__name__}")
        except asyncio.TimeoutError:
            return self._failed(entity_id, "request timed out")

        if status_code == 202:
            return await self._handle_enqueued(entity_id, body)
        if status_code == 200:
            return await self._handle_sync(entity_id, body)

        reason = _error_text(body) or f"Build failed ({status_code})"
        return self._failed(entity_id, reason, status_code)

    async def _handle_enqueued(self, entity_id: str, body: Any) -> RunOutcome:
        if not isinstance(body, dict) or "entryId" not in body:
            return self._failed(entity_id, "accepted response without entryId", 202)

        entry_id = body["entryId"]
        if entry_id is not None and not isinstance(entry_id, (str, int)):
            return self._failed(entity_id, "accepted response with malformed entryId", 202)
        entry_id = str(entry_id) if entry_id is not None else None

        if self.orchestrator.closed:
            return self._failed(entity_id, "orchestrator disposed", 202)

        # Drop any poller for an earlier build so its in-flight result is discarded.
        self.orchestrator.untrack(entity_id)
        await self.table.reset(
            JobStatus(entity_id=entity_id, state=JobState.queued, entry_id=entry_id)
        )
        self.orchestrator.track(entity_id)
        self.logger.info(f"Build for {entity_id} queued (entry {entry_id})")
        return Enqueued(entity_id=entity_id, entry_id=entry_id)

    async def _handle_sync(self, entity_id: str, body: Any) -> RunOutcome:
        if not isinstance(body, dict) or body.get("mode") != "sync":
            return self._failed(entity_id, "unexpected response shape", 200)

        status = body.get("status")
        if status == "error":
            return self._failed(entity_id, _error_text(body) or "Build failed", 200)
        if status != "ok":
            return self._failed(entity_id, f"unexpected sync status {status!r}", 200)

        result = body.get("result")
        if self.orchestrator.closed:
            return self._failed(entity_id, "orchestrator disposed", 200)

        self.orchestrator.untrack(entity_id)
        await self.table.reset(
            JobStatus(entity_id=entity_id, state=JobState.ok, progress=100)
        )
        self.logger.info(f"Build for {entity_id} completed synchronously")
        return CompletedSync(
            entity_id=entity_id, result=result if isinstance(result, dict) else None
        )

    def _failed(self, entity_id: str, reason: str, status_code: Optional[int] = None) -> Failed:
        self.logger.warning(f"Could not start build for {entity_id}: {reason}")
        return Failed(entity_id=entity_id, reason=reason, status_code=status_code)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "RunRequestDispatcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def _error_text(body: Any) -> Optional[str]:
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return None
