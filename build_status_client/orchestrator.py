"""Per-entity build status polling.

One asyncio task per tracked entity id polls the status endpoint until the
build reaches a terminal state (``ok`` or ``error``), feeding every result
into the shared StatusTable. Terminal results stop the task and fire a
single TerminalEvent for that job.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from build_status_client.errors import OrchestratorClosedError, StatusFetchError
from build_status_client.models import JobStatus, StatusPollingConfig, TerminalEvent
from build_status_client.status_client import JobStatusClient
from build_status_client.status_table import StatusTable

TerminalCallback = Callable[[TerminalEvent], Any]


@dataclass(eq=False)
class _PollerHandle:
    interval: float
    task: Optional[asyncio.Task] = field(default=None)


class JobOrchestrator:
    def __init__(
        self,
        client: JobStatusClient,
        table: Optional[StatusTable] = None,
        config: Optional[StatusPollingConfig] = None,
        on_terminal: Optional[TerminalCallback] = None,
    ):
        self.client = client
        self.table = table if table is not None else StatusTable()
        self.config = config or StatusPollingConfig()
        self.logger = logger
        self._pollers: Dict[str, _PollerHandle] = {}
        self._terminal_callbacks: List[TerminalCallback] = []
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._closed = False
        if on_terminal is not None:
            self._terminal_callbacks.append(on_terminal)

    @property
    def active_entities(self) -> List[str]:
        return list(self._pollers)

    @property
    def closed(self) -> bool:
        return self._closed

    def is_tracking(self, entity_id: str) -> bool:
        return entity_id in self._pollers

    def on_terminal(self, callback: TerminalCallback) -> None:
        self._terminal_callbacks.append(callback)

    def track(self, entity_id: str, interval: Optional[float] = None) -> None:
        """Start polling an entity. No-op if it is already being polled.

        Must be called from within a running event loop. The first poll runs
        right away, later ones every ``interval`` seconds.
        """
        if self._closed:
            raise OrchestratorClosedError()
        if entity_id in self._pollers:
            self.logger.debug(f"Already tracking {entity_id}")
            return

        handle = _PollerHandle(interval=interval if interval is not None else self.config.poll_interval)
        self._pollers[entity_id] = handle
        handle.task = asyncio.get_running_loop().create_task(
            self._run_poller(entity_id, handle), name=f"build-poller-{entity_id}"
        )
        self.logger.debug(f"Tracking {entity_id} every {handle.interval:.2f}s")

    def untrack(self, entity_id: str) -> None:
        """Stop polling an entity. Safe to call when nothing is tracked."""
        handle = self._pollers.pop(entity_id, None)
        if handle is None:
            return
        self._cancel(handle)
        self.logger.debug(f"Stopped tracking {entity_id}")

    async def poll_once(self, entity_id: str) -> JobStatus:
        """Poll an entity once and return its status as held by the table"""
        return await self._poll(entity_id, handle=None)

    async def wait_for_terminal(
        self, entity_id: str, timeout: Optional[float] = None
    ) -> TerminalEvent:
        """Wait until the job for an entity finishes.

        Returns right away if the entity is not being polled and its last
        known status is already terminal.
        """
        current = self.table.get(entity_id)
        if (
            entity_id not in self._pollers
            and current is not None
            and current.state.is_terminal
        ):
            return _terminal_event(current)

        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(entity_id, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Build for {entity_id} did not finish within {timeout} seconds")
        finally:
            waiters = self._waiters.get(entity_id, [])
            if future in waiters:
                waiters.remove(future)
            if not waiters:
                self._waiters.pop(entity_id, None)

    async def dispose(self) -> None:
        """Cancel every poller and pending waiter. No poll runs afterwards."""
        self._closed = True
        handles = list(self._pollers.values())
        self._pollers.clear()
        for handle in handles:
            self._cancel(handle)

        tasks = [h.task for h in handles if h.task is not None and h.task is not asyncio.current_task()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for waiters in self._waiters.values():
            for future in waiters:
                if not future.done():
                    future.cancel()
        self._waiters.clear()
        self.logger.debug(f"Orchestrator disposed, cancelled {len(handles)} poller(s)")

    async def __aenter__(self) -> "JobOrchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.dispose()

    async def _run_poller(self, entity_id: str, handle: _PollerHandle) -> None:
        try:
            while self._pollers.get(entity_id) is handle:
                try:
                    await self._poll(entity_id, handle)
                except Exception as e:
                    self.logger.error(f"Unexpected error polling {entity_id}: {e}")

                if self._pollers.get(entity_id) is not handle:
                    break
                await asyncio.sleep(handle.interval)
        finally:
            if self._pollers.get(entity_id) is handle:
                del self._pollers[entity_id]

    async def _poll(self, entity_id: str, handle: Optional[_PollerHandle]) -> JobStatus:
        try:
            status = await self.client.fetch_status(entity_id)
        except StatusFetchError as e:
            self.logger.warning(f"Poll for {entity_id} failed, keeping last status: {e.reason}")
            return self._current(entity_id)

        if self._closed or (handle is not None and self._pollers.get(entity_id) is not handle):
            self.logger.debug(f"Discarding stale status for {entity_id}")
            return self._current(entity_id)

        self.logger.debug(f"Polled {entity_id}: {status.state.value}")
        stored = await self.table.merge(status)

        # A terminal result for another entry leaves the current job polling.
        if status.state.is_terminal and (
            stored is not None or self._current(entity_id).state.is_terminal
        ):
            finished = self._pollers.pop(entity_id, None)
            if finished is not None and finished.task is not asyncio.current_task():
                self._cancel(finished)
            if stored is not None:
                await self._emit_terminal(_terminal_event(stored))

        return stored if stored is not None else self._current(entity_id)

    def _current(self, entity_id: str) -> JobStatus:
        return self.table.get(entity_id) or JobStatus(entity_id=entity_id)

    @staticmethod
    def _cancel(handle: _PollerHandle) -> None:
        if handle.task is not None and handle.task is not asyncio.current_task():
            handle.task.cancel()

    async def _emit_terminal(self, event: TerminalEvent) -> None:
        outcome = "succeeded" if event.success else "failed"
        self.logger.info(f"Build for {event.entity_id} {outcome}")

        for future in self._waiters.pop(event.entity_id, []):
            if not future.done():
                future.set_result(event)

        for callback in list(self._terminal_callbacks):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Terminal callback failed for {event.entity_id}: {e}")


def _terminal_event(status: JobStatus) -> TerminalEvent:
    return TerminalEvent(
        entity_id=status.entity_id,
        entry_id=status.entry_id,
        state=status.state,
        message=status.message,
    )
