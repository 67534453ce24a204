"""
course.py — Resolve a race definition into its ordered measurement points.

start → checkpoints ordered by distance → finish, plus one label per segment
between consecutive points.
"""

from __future__ import annotations

from core.models import (
    Race, CoursePoint, CourseModel,
    START_ID, START_NAME, FINISH_ID, FINISH_NAME,
)


def segment_label(a: CoursePoint, b: CoursePoint) -> str:
    return f"{a.name} → {b.name}"


def resolve_course_model(race: Race) -> CourseModel:
    """Build the point sequence, segment labels and mandatory set for a race.

    Explicit race.segment_names are used verbatim. If the list is shorter than
    the number of segments, labels for the missing tail are synthesized; extra
    names are ignored.
    """
    ordered = sorted(race.checkpoints, key=lambda cp: cp.distance)
    points = (
        CoursePoint(START_ID, START_NAME, 0.0),
        *(CoursePoint(cp.id, cp.name, cp.distance) for cp in ordered),
        CoursePoint(FINISH_ID, FINISH_NAME, race.distance),
    )

    explicit = race.segment_names or []
    labels = []
    for i in range(len(points) - 1):
        if i < len(explicit):
            labels.append(explicit[i])
        else:
            labels.append(segment_label(points[i], points[i + 1]))

    mandatory = {cp.id for cp in race.checkpoints if cp.is_mandatory}
    mandatory.add(FINISH_ID)

    return CourseModel(
        points=points,
        segment_names=tuple(labels),
        mandatory_ids=frozenset(mandatory),
        total_mandatory=len(mandatory),
    )
