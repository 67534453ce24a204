"""
timing_engine.py — Progress extraction and ranking for one race.

compute_ranked_results() is a pure function of (races, participants, passages,
race_id): it keeps no state between calls and is re-run from scratch on every
data change. Nothing here raises for bad data; passages at unknown checkpoints
are simply left out of the affected accounting.

Ranking rules:
- overall: more mandatory points passed first; among equals, net time when both
  runners have one, otherwise the earlier last signal
- gender / category: sequential numbering along the overall order
- segment: raw segment duration in ms, ascending; unknown or non-positive
  durations stay unranked
"""

from __future__ import annotations

from collections import defaultdict
from functools import cmp_to_key
from typing import Iterable, Optional

from core.course import resolve_course_model
from core.formatting import (
    UNKNOWN_DURATION, UNKNOWN_SPEED,
    format_ms_to_display, format_duration, format_time_behind, calculate_speed,
)
from core.models import (
    Race, Participant, Passage, CourseModel, RankedResult, SegmentSplit,
    FINISH_ID, START_ID, START_NAME,
)


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def _segment_splits(participant: Participant, race: Race, course: CourseModel,
                    by_point: dict[str, Passage]) -> list[SegmentSplit]:
    """Walk the course and measure each segment from the last point reached."""
    splits = []
    last_point_time = participant.effective_start_time(race)
    last_point_distance = 0.0

    for idx, point in enumerate(course.points[1:]):
        label = course.segment_names[idx]
        passage = by_point.get(point.id)
        if passage is None:
            splits.append(SegmentSplit(label, None, UNKNOWN_DURATION, UNKNOWN_SPEED))
            continue

        duration_ms = passage.timestamp - last_point_time
        distance = point.distance - last_point_distance
        splits.append(SegmentSplit(
            label,
            duration_ms,
            format_duration(duration_ms),
            calculate_speed(distance, duration_ms),
        ))
        last_point_time = passage.timestamp
        last_point_distance = point.distance

    return splits


def extract_progress(participant: Participant, passages: Iterable[Passage],
                     race: Race, course: Optional[CourseModel] = None) -> RankedResult:
    """Reduce one participant's passages to an unranked result row."""
    if course is None:
        course = resolve_course_model(race)

    ordered = sorted(passages, key=lambda p: p.timestamp)
    last = ordered[-1] if ordered else None

    # First scan wins at a checkpoint, last scan wins at the finish.
    by_point: dict[str, Passage] = {}
    for p in ordered:
        if p.checkpoint_id == FINISH_ID or p.checkpoint_id not in by_point:
            by_point[p.checkpoint_id] = p

    is_finished = FINISH_ID in by_point
    passed_mandatory = len(course.mandatory_ids.intersection(by_point))
    if is_finished:
        progress = 100
    else:
        progress = _round_half_up(passed_mandatory / course.total_mandatory * 100)

    net_time_ms = last.net_time if last else 0
    splits = _segment_splits(participant, race, course, by_point)

    return RankedResult(
        id=participant.id,
        bib=participant.bib,
        full_name=participant.full_name,
        first_name=participant.first_name,
        last_name=participant.last_name,
        category=participant.category,
        gender=participant.gender,
        club=participant.club or "Individuel",
        city=participant.city or "N/A",
        status=participant.status,
        progress=progress,
        net_time_ms=net_time_ms,
        display_time=format_ms_to_display(net_time_ms),
        display_speed=calculate_speed(race.distance, net_time_ms),
        last_checkpoint_id=last.checkpoint_id if last else START_ID,
        last_checkpoint_name=last.checkpoint_name if last else START_NAME,
        passed_checkpoints_count=passed_mandatory,
        last_timestamp=last.timestamp if last else 0,
        segment_times={s.label: s.duration for s in splits},
        splits=splits,
    )


# ---------------------------------------------------------------------------
# Rankings
# ---------------------------------------------------------------------------

def _compare_overall(a: RankedResult, b: RankedResult) -> int:
    if a.passed_checkpoints_count != b.passed_checkpoints_count:
        return b.passed_checkpoints_count - a.passed_checkpoints_count
    if a.net_time_ms > 0 and b.net_time_ms > 0:
        return a.net_time_ms - b.net_time_ms
    return a.last_timestamp - b.last_timestamp


def _assign_group_ranks(ordered: list[RankedResult], key: str, attr: str) -> None:
    """Number members of each group sequentially along the overall order."""
    counters: dict[str, int] = defaultdict(int)
    for r in ordered:
        group = getattr(r, key)
        counters[group] += 1
        setattr(r, attr, counters[group])


def _assign_segment_ranks(ordered: list[RankedResult], segment_count: int) -> None:
    for idx in range(segment_count):
        # Non-positive durations come from out-of-order scans and are not ranked.
        known = [r.splits[idx] for r in ordered
                 if r.splits[idx].duration_ms is not None
                 and r.splits[idx].duration_ms > 0]
        known.sort(key=lambda s: s.duration_ms)
        for pos, split in enumerate(known, 1):
            split.rank_on_segment = pos


def _assign_time_behind(ordered: list[RankedResult]) -> None:
    if not ordered:
        return
    leader = ordered[0]
    for r in ordered[1:]:
        if leader.net_time_ms > 0 and r.net_time_ms > 0:
            r.time_behind = format_time_behind(r.net_time_ms - leader.net_time_ms)


def rank_results(results: list[RankedResult], course: CourseModel) -> list[RankedResult]:
    """Sort rows overall and fill in every rank field in place."""
    ordered = sorted(results, key=cmp_to_key(_compare_overall))
    for pos, r in enumerate(ordered, 1):
        r.rank = pos

    _assign_group_ranks(ordered, "gender", "rank_gender")
    _assign_group_ranks(ordered, "category", "rank_category")
    _assign_segment_ranks(ordered, len(course.segment_names))
    _assign_time_behind(ordered)
    return ordered


def compute_ranked_results(races: Iterable[Race],
                           participants: Iterable[Participant],
                           passages: Iterable[Passage],
                           race_id: str) -> list[RankedResult]:
    """Full ranked result list for one race; [] for an unknown race id."""
    race = next((r for r in races if r.id == race_id), None)
    if race is None:
        return []

    course = resolve_course_model(race)

    by_participant: dict[str, list[Passage]] = defaultdict(list)
    for p in passages:
        by_participant[p.participant_id].append(p)

    results = [
        extract_progress(p, by_participant.get(p.id, []), race, course)
        for p in participants
        if p.race_id == race_id
    ]
    return rank_results(results, course)
