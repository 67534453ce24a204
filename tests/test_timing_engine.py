"""
test_timing_engine.py — Ranking kernel against hand-computed races.

Covers progress, segment splits, overall/gender/category/segment ranks and the
degenerate inputs (empty race, unknown race, passages at unknown points).
"""

import itertools
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.models import (
    Race, Checkpoint, Participant, Passage, RaceStatus, ParticipantStatus,
    FINISH_ID, FINISH_NAME,
)
from core.timing_engine import compute_ranked_results, extract_progress

MIN = 60_000
HOUR = 3_600_000


def make_race(**kw):
    defaults = dict(
        id="r1", name="Trail 10", distance=10.0,
        status=RaceStatus.RUNNING, start_time=0,
        checkpoints=[Checkpoint("cp1", "Col", 5.0, is_mandatory=True)],
    )
    defaults.update(kw)
    return Race(**defaults)


def runner(pid, bib, gender="M", category="SEN", status=ParticipantStatus.STARTED,
           race_id="r1", start_time=None):
    return Participant(pid, bib, f"First{bib}", f"Last{bib}", gender, category,
                       race_id, status=status, start_time=start_time)


def passage(pid, cp_id, ts, start=0, name=None):
    return Passage(f"{pid}-{cp_id}-{ts}", pid, pid, cp_id,
                   name or (FINISH_NAME if cp_id == FINISH_ID else cp_id),
                   ts, ts - start)


# ======================================================================
# Worked examples
# ======================================================================

def test_finisher_splits_and_speed():
    race = make_race()
    p = runner("a", "1", status=ParticipantStatus.FINISHED)
    passages = [passage("a", "cp1", 30 * MIN), passage("a", FINISH_ID, HOUR)]

    [r] = compute_ranked_results([race], [p], passages, "r1")

    assert r.progress == 100
    assert r.display_time == "01:00:00.00"
    assert r.display_speed == "10.00"
    assert [s.duration for s in r.splits] == ["00:30:00", "00:30:00"]
    assert [s.speed for s in r.splits] == ["10.00", "10.00"]
    assert [s.duration_ms for s in r.splits] == [30 * MIN, 30 * MIN]
    assert r.segment_times == {"Départ → Col": "00:30:00", "Col → Arrivée": "00:30:00"}
    assert r.last_checkpoint_id == FINISH_ID
    assert r.rank == 1 and r.time_behind == ""


def test_partial_runner_ranked_between_finisher_and_idle():
    race = make_race()
    participants = [
        runner("idle", "3"),
        runner("half", "2"),
        runner("fin", "1", status=ParticipantStatus.FINISHED),
    ]
    passages = [
        passage("fin", "cp1", 30 * MIN), passage("fin", FINISH_ID, HOUR),
        passage("half", "cp1", 1_000_000),
    ]

    results = compute_ranked_results([race], participants, passages, "r1")

    assert [r.id for r in results] == ["fin", "half", "idle"]
    half = results[1]
    assert half.progress == 50
    assert half.splits[1].duration == "--:--:--"
    assert half.splits[1].speed == "--"
    assert half.splits[1].rank_on_segment == 0
    idle = results[2]
    assert idle.progress == 0
    assert idle.display_time == "00:00:00.00"
    assert idle.last_checkpoint_id == "start"
    assert idle.club == "Individuel" and idle.city == "N/A"


# ======================================================================
# Ranking rules
# ======================================================================

def test_ranks_independent_of_input_order():
    race = make_race()
    participants = [
        runner("a", "1", gender="F", category="V1", status=ParticipantStatus.FINISHED),
        runner("b", "2", gender="M", category="SEN", status=ParticipantStatus.FINISHED),
        runner("c", "3", gender="F", category="SEN", status=ParticipantStatus.FINISHED),
        runner("d", "4", gender="M", category="V1"),
    ]
    passages = [
        passage("a", "cp1", 28 * MIN), passage("a", FINISH_ID, 62 * MIN),
        passage("b", "cp1", 25 * MIN), passage("b", FINISH_ID, 58 * MIN),
        passage("c", "cp1", 31 * MIN), passage("c", FINISH_ID, 61 * MIN),
        passage("d", "cp1", 27 * MIN),
    ]

    expected = None
    for perm in itertools.permutations(participants):
        results = compute_ranked_results([race], list(perm), passages, "r1")
        ranks = {r.id: (r.rank, r.rank_gender, r.rank_category,
                        tuple(s.rank_on_segment for s in r.splits))
                 for r in results}
        if expected is None:
            expected = ranks
        assert ranks == expected

    assert expected["b"][:3] == (1, 1, 1)
    assert expected["c"][:3] == (2, 1, 2)
    assert expected["a"][:3] == (3, 2, 1)
    assert expected["d"][:3] == (4, 2, 2)
    # cp1 split: b 25, d 27, a 28, c 31
    assert expected["b"][3][0] == 1
    assert expected["d"][3][0] == 2
    # finish split: c 30, b 33, a 34, d unknown
    assert expected["c"][3][1] == 1
    assert expected["d"][3][1] == 0


def test_time_behind_leader():
    race = make_race()
    participants = [runner("a", "1"), runner("b", "2")]
    passages = [
        passage("a", "cp1", 30 * MIN), passage("a", FINISH_ID, HOUR),
        passage("b", "cp1", 31 * MIN), passage("b", FINISH_ID, HOUR + 90_000),
    ]
    results = compute_ranked_results([race], participants, passages, "r1")
    assert results[1].time_behind == "+00:01:30"


def test_progress_never_drops_with_more_passages():
    race = make_race(checkpoints=[
        Checkpoint("cp1", "A", 3.0, True),
        Checkpoint("cp2", "B", 6.0, True),
        Checkpoint("cp3", "C", 8.0, False),
    ])
    timeline = [
        passage("a", "cp1", 10 * MIN),
        passage("a", "cp2", 20 * MIN),
        passage("a", "cp3", 30 * MIN),
        passage("a", FINISH_ID, 40 * MIN),
    ]
    p = runner("a", "1")
    seen = []
    for n in range(len(timeline) + 1):
        seen.append(extract_progress(p, timeline[:n], race).progress)
    assert seen == sorted(seen)
    assert seen == [0, 33, 67, 67, 100]


def test_individual_start_wins_over_race_start():
    race = make_race(start_time=1000)
    p = runner("a", "1", start_time=10 * MIN)
    passages = [passage("a", "cp1", 40 * MIN, start=10 * MIN)]
    [r] = compute_ranked_results([race], [p], passages, "r1")
    assert r.splits[0].duration_ms == 30 * MIN


def test_latest_duplicate_finish_wins():
    race = make_race()
    p = runner("a", "1")
    passages = [
        passage("a", "cp1", 30 * MIN),
        passage("a", FINISH_ID, 70 * MIN),
        passage("a", FINISH_ID, HOUR),
    ]
    [r] = compute_ranked_results([race], [p], passages, "r1")
    assert r.splits[1].duration_ms == 40 * MIN
    assert r.net_time_ms == 70 * MIN


# ======================================================================
# Degenerate inputs
# ======================================================================

def test_empty_and_unknown_race():
    race = make_race()
    assert compute_ranked_results([race], [], [], "r1") == []
    assert compute_ranked_results([race], [runner("a", "1")], [], "nope") == []


def test_passage_at_unknown_checkpoint_is_ignored_for_progress():
    race = make_race()
    p = runner("a", "1")
    [r] = compute_ranked_results([race], [p], [passage("a", "ghost", 10 * MIN)], "r1")
    assert r.progress == 0
    assert r.passed_checkpoints_count == 0
    assert all(s.duration_ms is None for s in r.splits)


def test_other_race_participants_excluded():
    race = make_race()
    other = make_race(id="r2", name="Other")
    participants = [runner("a", "1"), runner("b", "1", race_id="r2")]
    results = compute_ranked_results([race, other], participants, [], "r1")
    assert [r.id for r in results] == ["a"]


def test_rescan_at_checkpoint_after_finish_keeps_first_split():
    race = make_race()
    participants = [runner("a", "1"), runner("b", "2")]
    passages = [
        passage("a", "cp1", 30 * MIN), passage("a", FINISH_ID, HOUR),
        passage("a", "cp1", 65 * MIN),
        passage("b", "cp1", 25 * MIN), passage("b", FINISH_ID, 50 * MIN),
    ]
    results = {r.id: r for r in compute_ranked_results([race], participants, passages, "r1")}

    finish_split = results["a"].splits[1]
    assert finish_split.duration_ms == 30 * MIN
    assert finish_split.rank_on_segment == 2
    assert results["b"].splits[1].rank_on_segment == 1


def test_non_positive_split_left_unranked():
    race = make_race(start_time=40 * MIN)
    participants = [runner("a", "1"), runner("b", "2", start_time=1)]
    passages = [
        passage("a", "cp1", 30 * MIN, start=40 * MIN),
        passage("b", "cp1", 25 * MIN, start=1),
    ]
    results = {r.id: r for r in compute_ranked_results([race], participants, passages, "r1")}
    assert results["a"].splits[0].duration_ms < 0
    assert results["a"].splits[0].rank_on_segment == 0
    assert results["b"].splits[0].rank_on_segment == 1


def test_checkpoint_beyond_race_distance_is_not_fatal():
    race = make_race(checkpoints=[
        Checkpoint("far", "Sommet", 12.0, True),
        Checkpoint("cp1", "Col", 5.0, True),
    ])
    p = runner("a", "1")
    passages = [
        passage("a", "cp1", 30 * MIN),
        passage("a", "far", 70 * MIN),
        passage("a", FINISH_ID, 80 * MIN),
    ]
    [r] = compute_ranked_results([race], [p], passages, "r1")

    assert [s.label for s in r.splits] == [
        "Départ → Col", "Col → Sommet", "Sommet → Arrivée",
    ]
    assert r.splits[2].duration_ms == 10 * MIN
    assert r.splits[2].speed == "0.00"
    assert r.progress == 100
