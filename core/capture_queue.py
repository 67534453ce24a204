"""
capture_queue.py — Hybrid capture: freeze arrival times now, attach bibs later.

During a burst finish the operator taps once per runner crossing the line
(enqueue_timestamp) and types bibs afterwards (confirm_bib); each bib takes the
oldest unclaimed timestamp. Each station owns its own CaptureQueue value; all
functions return a new queue and never mutate the one passed in.

The queue cannot check that bibs are typed in arrival order. If they are not,
times are silently swapped between runners.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from core.errors import NotFoundError, RaceNotRunningError
from core.models import (
    CaptureQueue, QueuedTimestamp, ConfirmResult, Participant, Passage, Race,
    RaceStatus, ParticipantStatus, FINISH_ID, FINISH_NAME, new_id,
)
from core.capture import missing_mandatory
from core.course import resolve_course_model

logger = logging.getLogger("trailtiming.capture")

Resolver = Callable[[str], Optional[tuple[Participant, Race]]]


def enqueue_timestamp(queue: CaptureQueue, now: int,
                      entry_id: Optional[str] = None) -> CaptureQueue:
    entry = QueuedTimestamp(entry_id or new_id(), now)
    return CaptureQueue(queue.entries + (entry,))


def cancel_timestamp(queue: CaptureQueue, entry_id: str) -> CaptureQueue:
    """Drop one ghost timestamp; the others keep their order."""
    remaining = tuple(e for e in queue.entries if e.id != entry_id)
    if len(remaining) == len(queue.entries):
        raise NotFoundError(f"Queued timestamp {entry_id} not found")
    return CaptureQueue(remaining)


def confirm_bib(queue: CaptureQueue, bib: str, resolve_participant: Resolver,
                now: int, passages: Optional[list[Passage]] = None) -> ConfirmResult:
    """Record a finish for `bib` using the oldest queued timestamp (or `now`).

    Unknown bibs and races that are not running are rejected before the queue
    is touched. `passages` (the runner's existing passages) is only used to
    report mandatory checkpoints the runner never passed.
    """
    resolved = resolve_participant(bib)
    if resolved is None:
        raise NotFoundError(f"Unknown bib {bib}")
    participant, race = resolved
    if race.status != RaceStatus.RUNNING:
        raise RaceNotRunningError(f"Race {race.name} is not running")

    head = queue.peek()
    if head is not None:
        timestamp = head.timestamp
        remaining = CaptureQueue(queue.entries[1:])
    else:
        timestamp = now
        remaining = queue

    start = participant.effective_start_time(race, fallback=timestamp)
    passage = Passage(
        id=new_id(),
        participant_id=participant.id,
        bib=participant.bib,
        checkpoint_id=FINISH_ID,
        checkpoint_name=FINISH_NAME,
        timestamp=timestamp,
        net_time=timestamp - start,
    )

    own = [p for p in (passages or []) if p.participant_id == participant.id]
    missing = missing_mandatory(resolve_course_model(race), race, own)
    if missing:
        logger.warning("Bib %s finished without mandatory points: %s",
                       bib, ", ".join(missing))

    logger.info("Bib %s confirmed at %d (%s)", bib, timestamp,
                "queued" if head is not None else "live")
    return ConfirmResult(
        passage=passage,
        queue=remaining,
        status_update=(participant.id, ParticipantStatus.FINISHED),
        used_queued_timestamp=head is not None,
        missing_mandatory=missing,
    )
