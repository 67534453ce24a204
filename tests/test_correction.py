"""
test_correction.py — Rebuilding a runner's passages from a reference bib.
"""

import itertools
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.correction import correct_ranking, FINISH_OFFSET_MS
from core.errors import NotFoundError, NoDataError, InvalidOperationError
from core.models import (
    Race, Checkpoint, Participant, Passage, RaceStatus, ParticipantStatus,
    FINISH_ID,
)
from core.timing_engine import compute_ranked_results


def setup_race():
    race = Race("r1", "Trail", 10.0, status=RaceStatus.RUNNING, start_time=0,
                checkpoints=[Checkpoint("cp1", "Col", 5.0, is_mandatory=True)])
    ref = Participant("ref", "10", "Ana", "Ruiz", "F", "SEN", "r1",
                      status=ParticipantStatus.FINISHED)
    target = Participant("tgt", "11", "Luc", "Morel", "M", "SEN", "r1",
                         status=ParticipantStatus.STARTED, start_time=60_000)
    passages = [
        Passage("p2", "ref", "10", FINISH_ID, "Arrivée", 3_600_000, 3_600_000),
        Passage("p1", "ref", "10", "cp1", "Col", 1_800_000, 1_800_000),
        Passage("old", "tgt", "11", "cp1", "Col", 2_000_000, 1_940_000),
    ]
    return race, ref, target, passages


def test_clones_reference_with_finish_offset():
    race, ref, target, passages = setup_race()
    ids = (f"new{i}" for i in itertools.count())
    changes = correct_ranking(target, "10", [ref, target], passages, [race],
                              id_factory=lambda: next(ids))

    assert changes.passages_to_delete == ["old"]
    cp1, finish = changes.passages_to_insert
    assert (cp1.id, cp1.checkpoint_id, cp1.timestamp) == ("new0", "cp1", 1_800_000)
    assert finish.checkpoint_id == FINISH_ID
    assert finish.timestamp == 3_600_000 + FINISH_OFFSET_MS
    assert finish.participant_id == "tgt" and finish.bib == "11"
    # net time from the target's own start
    assert finish.net_time == 3_600_000 + FINISH_OFFSET_MS - 60_000
    assert changes.status_updates == {"tgt": ParticipantStatus.FINISHED}


def test_corrected_runner_ranks_behind_reference():
    race, ref, target, passages = setup_race()
    target.start_time = None
    changes = correct_ranking(target, "10", [ref, target], passages, [race])
    kept = [p for p in passages if p.id not in changes.passages_to_delete]
    results = compute_ranked_results(
        [race], [ref, target], kept + changes.passages_to_insert, "r1")
    assert [r.id for r in results] == ["ref", "tgt"]
    assert results[1].net_time_ms - results[0].net_time_ms == FINISH_OFFSET_MS


def test_reference_errors():
    race, ref, target, passages = setup_race()
    with pytest.raises(NotFoundError):
        correct_ranking(target, "99", [ref, target], passages, [race])
    with pytest.raises(InvalidOperationError):
        correct_ranking(target, "11", [ref, target], passages, [race])

    idle = Participant("idle", "12", "Zoé", "Blanc", "F", "SEN", "r1")
    with pytest.raises(NoDataError):
        correct_ranking(target, "12", [ref, target, idle], passages, [race])


def test_reference_must_be_in_same_race():
    race, ref, target, passages = setup_race()
    ref.race_id = "r2"
    with pytest.raises(NotFoundError):
        correct_ranking(target, "10", [ref, target], passages, [race])
