import inspect
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger

from build_status_client.models import JobState, JobStatus

StatusObserver = Callable[[JobStatus], Any]


class StatusTable:
    """Latest JobStatus per entity id, shared between dispatcher, orchestrator and observers.

    Entries are immutable models, so readers can hold on to whatever they got
    from ``get`` or ``snapshot`` while poll ticks keep writing.
    """

    def __init__(self):
        self._entries: Dict[str, JobStatus] = {}
        self._observers: List[StatusObserver] = []
        self.logger = logger

    def get(self, entity_id: str) -> Optional[JobStatus]:
        return self._entries.get(entity_id)

    def snapshot(self) -> Mapping[str, JobStatus]:
        return MappingProxyType(dict(self._entries))

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def subscribe(self, observer: StatusObserver) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: StatusObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def reset(self, status: JobStatus) -> JobStatus:
        """Replace the entry unconditionally, starting a new job lifecycle"""
        self._entries[status.entity_id] = status
        await self._notify(status)
        return status

    async def merge(self, status: JobStatus) -> Optional[JobStatus]:
        """Apply a polled status. Returns the stored entry, or None when rejected.

        Rejected updates: older than the current entry, ``unknown`` over a
        known state, anything over a terminal state, and statuses for a
        different entry than the stored one. Only ``reset`` starts a new
        job lifecycle.
        """
        current = self._entries.get(status.entity_id)
        if current is not None and not self._accepts(current, status):
            self.logger.debug(
                f"Ignoring {status.state.value} for {status.entity_id}, "
                f"keeping {current.state.value}"
            )
            return None

        if current is not None and status.entry_id is None and current.entry_id is not None:
            status = status.model_copy(update={"entry_id": current.entry_id})

        self._entries[status.entity_id] = status
        await self._notify(status)
        return status

    @staticmethod
    def _accepts(current: JobStatus, incoming: JobStatus) -> bool:
        if incoming.updated_at < current.updated_at:
            return False
        if incoming.state == JobState.unknown and current.state != JobState.unknown:
            return False
        if current.state.is_terminal:
            return False
        if (
            incoming.entry_id is not None
            and current.entry_id is not None
            and incoming.entry_id != current.entry_id
        ):
            return False
        return True

    async def _notify(self, status: JobStatus) -> None:
        for observer in list(self._observers):
            try:
                result = observer(status)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Status observer failed for {status.entity_id}: {e}")
