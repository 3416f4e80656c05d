"""Record lifecycle — allowed transitions and the external status boundary.

::

    pending ──▶ completed
       │
       └──────▶ failed ──(reprocess)──▶ pending

``completed`` and ``failed`` are terminal for the scheduler.  Nothing moves a
``failed`` record back to ``pending`` except an explicit :meth:`StatusTracker.reprocess`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from taskvec.exceptions import InvalidTransitionError, RecordNotFoundError, SchedulerClosedError
from taskvec.models.records import EmbeddingStatus
from taskvec.types import StatusInfo

if TYPE_CHECKING:
    from taskvec.scheduler import GenerationScheduler, JobHandle
    from taskvec.store.protocols import VectorStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[EmbeddingStatus, frozenset[EmbeddingStatus]] = {
    EmbeddingStatus.PENDING: frozenset({EmbeddingStatus.COMPLETED, EmbeddingStatus.FAILED}),
    EmbeddingStatus.FAILED: frozenset({EmbeddingStatus.PENDING}),
    EmbeddingStatus.COMPLETED: frozenset(),
}


def check_transition(current: EmbeddingStatus, target: EmbeddingStatus) -> None:
    """Raise :class:`InvalidTransitionError` unless *current* → *target* is allowed."""
    if target not in ALLOWED_TRANSITIONS[EmbeddingStatus(current)]:
        msg = f"Cannot transition from {EmbeddingStatus(current).value} to {target.value}"
        raise InvalidTransitionError(msg)


class StatusTracker:
    """Polling and reprocessing for individual records.

    ``get_status`` is read-only.  ``reprocess`` is the only way a ``failed``
    record becomes ``pending`` again; it re-enqueues the text exactly once
    and never schedules further attempts.
    """

    def __init__(self, store: VectorStore, scheduler: GenerationScheduler) -> None:
        self._store = store
        self._scheduler = scheduler

    async def get_status(self, record_id: str) -> StatusInfo:
        """Return the lifecycle state of *record_id*."""
        record = await self._store.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"No record with id {record_id}")
        return StatusInfo(
            record_id=record.record_id,
            status=EmbeddingStatus(record.status),
            error_message=record.error_message,
            updated_at=record.updated_at,
        )

    async def reprocess(self, record_id: str) -> JobHandle:
        """Move *record_id* back to ``pending`` and re-enqueue its text once.

        - ``failed``: cleared to ``pending`` and re-enqueued.
        - ``pending``: left as is and re-enqueued (a stable resting state
          that was never picked up); a no-op if it is already in flight.
        - ``completed``: raises :class:`InvalidTransitionError`.
        """
        record = await self._store.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"No record with id {record_id}")
        match EmbeddingStatus(record.status):
            case EmbeddingStatus.FAILED:
                # A closed scheduler would leave the reset row stranded in pending
                if self._scheduler.closed:
                    raise SchedulerClosedError("Scheduler is closed")
                record = await self._store.reset_to_pending(record_id)
                logger.info("Record %s reset to pending for reprocessing", record_id)
            case EmbeddingStatus.PENDING:
                logger.info("Record %s already pending; re-enqueueing", record_id)
            case EmbeddingStatus.COMPLETED:
                check_transition(EmbeddingStatus.COMPLETED, EmbeddingStatus.PENDING)

        return await self._scheduler.enqueue([record.text], record.parent_id)
