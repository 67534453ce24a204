"""
stats.py — Counts derived from a ranked result list.

Always computed from compute_ranked_results() output so the numbers shown next
to a leaderboard come from the same snapshot as its ranks.
"""

from __future__ import annotations

from typing import Iterable

from core.models import (
    Race, RankedResult, RaceStats, ParticipantStatus, START_ID, FINISH_ID,
)


def compute_stats(results: Iterable[RankedResult]) -> RaceStats:
    stats = RaceStats()
    for r in results:
        stats.total_engaged += 1
        if r.status == ParticipantStatus.FINISHED:
            stats.finished_count += 1
        elif r.status == ParticipantStatus.DNF:
            stats.dnf_count += 1
        elif r.status == ParticipantStatus.STARTED:
            stats.on_track_count += 1
    return stats


def compute_course_flow(race: Race, results: Iterable[RankedResult]) -> dict[str, int]:
    """Where the field currently is: runners per last known point, plus DNFs.

    Abandoned runners are only counted under 'dnf'. Passages at points the
    race does not know are ignored.
    """
    flow = {START_ID: 0}
    for cp in race.checkpoints:
        flow[cp.id] = 0
    flow[FINISH_ID] = 0
    flow["dnf"] = 0

    for r in results:
        if r.status == ParticipantStatus.DNF:
            flow["dnf"] += 1
            continue
        if r.last_checkpoint_id in flow:
            flow[r.last_checkpoint_id] += 1
    return flow
