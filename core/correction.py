"""
correction.py — Rebuild one runner's passages from another runner's.

Used when a finish was attributed to the wrong bib or missed entirely: the
target gets a copy of the reference runner's history, finish shifted by
FINISH_OFFSET_MS so the target ranks strictly behind the reference.

The result is a ChangeSet (delete all target passages, insert the clones,
copy the status). It must be applied in a single transaction.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from core.errors import NotFoundError, NoDataError, InvalidOperationError
from core.models import (
    Participant, Passage, Race, ChangeSet, FINISH_ID, new_id,
)

logger = logging.getLogger("trailtiming.correction")

FINISH_OFFSET_MS = 100


def correct_ranking(target: Participant, reference_bib: str,
                    participants: Iterable[Participant],
                    passages: Iterable[Passage],
                    races: Iterable[Race],
                    id_factory: Callable[[], str] = new_id) -> ChangeSet:
    """Return the writes that make `target` finish just behind `reference_bib`."""
    reference_bib = reference_bib.strip()
    reference = next(
        (p for p in participants
         if p.race_id == target.race_id and p.bib == reference_bib),
        None,
    )
    if reference is None:
        raise NotFoundError(f"Bib {reference_bib} not found in race {target.race_id}")
    if reference.id == target.id:
        raise InvalidOperationError("A runner cannot be corrected from itself")

    passages = list(passages)
    ref_passages = sorted(
        (p for p in passages if p.participant_id == reference.id),
        key=lambda p: p.timestamp,
    )
    if not ref_passages:
        raise NoDataError(f"Bib {reference_bib} has no passages to copy")

    race = next((r for r in races if r.id == target.race_id), None)

    changes = ChangeSet(
        passages_to_delete=[p.id for p in passages if p.participant_id == target.id],
        status_updates={target.id: reference.status},
    )
    for ref in ref_passages:
        timestamp = ref.timestamp
        if ref.checkpoint_id == FINISH_ID:
            timestamp += FINISH_OFFSET_MS
        start = target.effective_start_time(race, fallback=timestamp)
        changes.passages_to_insert.append(Passage(
            id=id_factory(),
            participant_id=target.id,
            bib=target.bib,
            checkpoint_id=ref.checkpoint_id,
            checkpoint_name=ref.checkpoint_name,
            timestamp=timestamp,
            net_time=timestamp - start,
        ))

    logger.info("Bib %s corrected from bib %s: %d deleted, %d cloned",
                target.bib, reference_bib, len(changes.passages_to_delete),
                len(changes.passages_to_insert))
    return changes
