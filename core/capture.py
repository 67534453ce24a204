"""
capture.py — Write-side operations of the marshal and finish terminals.

Each function validates first and returns the records or ChangeSet to write;
nothing is persisted here. Errors are raised before any change is produced.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from core.errors import NotFoundError, RaceNotRunningError, InvalidOperationError
from core.models import (
    Race, Participant, Passage, CourseModel, ChangeSet, CombinedPost,
    RaceStatus, ParticipantStatus, FINISH_ID, new_id,
)

logger = logging.getLogger("trailtiming.capture")


def resolve_bib(participants: Iterable[Participant], races: Iterable[Race],
                bib: str, race_id: Optional[str] = None
                ) -> Optional[tuple[Participant, Race]]:
    """Find a runner by bib, preferring `race_id`; bibs are unique per race only."""
    bib = bib.strip()
    race_map = {r.id: r for r in races}
    candidates = [p for p in participants if p.bib == bib and p.race_id in race_map]
    if not candidates:
        return None
    if race_id is not None:
        for p in candidates:
            if p.race_id == race_id:
                return p, race_map[p.race_id]
    p = candidates[0]
    return p, race_map[p.race_id]


def missing_mandatory(course: CourseModel, race: Race,
                      passages: Iterable[Passage]) -> list[str]:
    """Names of mandatory checkpoints (finish excluded) with no passage."""
    passed = {p.checkpoint_id for p in passages}
    return [
        race.checkpoint_name(cp_id) or cp_id
        for cp_id in (pt.id for pt in course.points)
        if cp_id in course.mandatory_ids and cp_id != FINISH_ID and cp_id not in passed
    ]


def record_passage(participant: Participant, race: Race, checkpoint_id: str,
                   now: int, id_factory: Callable[[], str] = new_id) -> Passage:
    """Marshal entry: `participant` seen at `checkpoint_id` at `now`."""
    if race.status != RaceStatus.RUNNING:
        raise RaceNotRunningError(f"Race {race.name} is not running")
    name = race.checkpoint_name(checkpoint_id)
    if name is None:
        raise NotFoundError(f"Checkpoint {checkpoint_id} not in race {race.name}")

    start = participant.effective_start_time(race, fallback=now)
    return Passage(
        id=id_factory(),
        participant_id=participant.id,
        bib=participant.bib,
        checkpoint_id=checkpoint_id,
        checkpoint_name=name,
        timestamp=now,
        net_time=now - start,
    )


def check_post(post: CombinedPost, races: Iterable[Race]) -> None:
    """Every assignment must name a known race and one of its points."""
    race_map = {r.id: r for r in races}
    if not post.assignments:
        raise InvalidOperationError(f"Post {post.name} has no assignment")
    seen = set()
    for a in post.assignments:
        race = race_map.get(a.race_id)
        if race is None:
            raise NotFoundError(f"Race {a.race_id} not found")
        if race.checkpoint_name(a.checkpoint_id) is None:
            raise NotFoundError(f"Checkpoint {a.checkpoint_id} not in race {race.name}")
        if a.race_id in seen:
            raise InvalidOperationError(f"Race {race.name} assigned twice to post {post.name}")
        seen.add(a.race_id)


def record_at_post(post: CombinedPost, participants: Iterable[Participant],
                   races: Iterable[Race], bib: str, now: int,
                   id_factory: Callable[[], str] = new_id) -> Passage:
    """Combined post entry: the bib's own race decides which checkpoint is hit.

    Only races served by the post are searched; the first assignment's race
    wins when a bib exists in several of them.
    """
    served = {a.race_id for a in post.assignments}
    resolved = resolve_bib(
        participants, [r for r in races if r.id in served], bib,
        post.assignments[0].race_id if post.assignments else None,
    )
    if resolved is None:
        raise NotFoundError(f"Bib {bib} not in a race served by post {post.name}")
    participant, race = resolved

    passage = record_passage(participant, race, post.checkpoint_for(race.id),
                             now, id_factory)
    passage.post_id = post.id
    logger.info("Post %s: bib %s recorded at %s (%s)", post.name, participant.bib,
                passage.checkpoint_name, race.name)
    return passage


def cancel_arrival(passage: Passage) -> ChangeSet:
    """Undo a finish: drop the passage and put the runner back on course."""
    if passage.checkpoint_id != FINISH_ID:
        raise InvalidOperationError(f"Passage {passage.id} is not a finish")
    return ChangeSet(
        passages_to_delete=[passage.id],
        status_updates={passage.participant_id: ParticipantStatus.STARTED},
    )


def mark_abandoned(participant: Participant) -> ChangeSet:
    return ChangeSet(status_updates={participant.id: ParticipantStatus.DNF})


def start_race(race: Race, participants: Iterable[Participant], now: int) -> ChangeSet:
    """Fire the gun: race running from `now`, registered runners started."""
    if race.status == RaceStatus.FINISHED:
        raise InvalidOperationError(f"Race {race.name} is already finished")
    changes = ChangeSet(race_updates={
        race.id: {"status": RaceStatus.RUNNING, "start_time": race.start_time or now},
    })
    for p in participants:
        if p.race_id == race.id and p.status == ParticipantStatus.REGISTERED:
            changes.status_updates[p.id] = ParticipantStatus.STARTED
    logger.info("Race %s started with %d runners", race.name,
                len(changes.status_updates))
    return changes


def finish_race(race: Race) -> ChangeSet:
    return ChangeSet(race_updates={race.id: {"status": RaceStatus.FINISHED}})
