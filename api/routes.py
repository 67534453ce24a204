"""
routes.py — REST API endpoints for TrailTiming.

All endpoints under /api/. Reads go through a fresh Snapshot of the store and
the ranking kernel; writes are built by the core as ChangeSets and applied in
one transaction, then the race's standings are recomputed and broadcast.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from core.database import (
    get_connection,
    create_race, get_races, get_race, create_participant, get_participants,
    get_participant, get_passages, get_passage, load_snapshot, apply_changes,
    log_audit, get_audit_log, get_setting, set_setting,
    create_backup, list_backups,
    create_combined_post, get_combined_posts, get_combined_post,
)
from core.capture import (
    resolve_bib, record_passage, record_at_post, check_post,
    cancel_arrival, mark_abandoned,
    start_race, finish_race,
)
from core.capture_queue import enqueue_timestamp, cancel_timestamp, confirm_bib
from core.correction import correct_ranking
from core.course import resolve_course_model
from core.errors import (
    TimingError, NotFoundError, NoDataError, RaceNotRunningError,
    InvalidOperationError,
)
from core.models import (
    Checkpoint, CaptureQueue, ChangeSet, CombinedPost, PostAssignment,
    RaceType, RaceStatus, new_id,
)
from core.stats import compute_stats, compute_course_flow
from core.timing_engine import compute_ranked_results
from api.websocket import manager as ws_manager, generate_highlights

logger = logging.getLogger("trailtiming.api")

router = APIRouter()


# ─── Capture station state ───────────────────────────────────────────
# Ghost timestamps are local to a capture station and are not persisted.

_station_queues: dict[str, CaptureQueue] = {}


def get_station_queue(station_id: str) -> CaptureQueue:
    return _station_queues.get(station_id, CaptureQueue())


def reset_station_queues() -> None:
    _station_queues.clear()


# ─── Helper ──────────────────────────────────────────────────────────

def _get_conn():
    return get_connection()


def _now_ms() -> int:
    return int(time.time() * 1000)


_HTTP_STATUS = {
    NotFoundError: 404,
    NoDataError: 409,
    RaceNotRunningError: 409,
    InvalidOperationError: 409,
}


def _http_error(exc: TimingError) -> HTTPException:
    return HTTPException(_HTTP_STATUS.get(type(exc), 400), str(exc))


def _queue_to_list(queue: CaptureQueue) -> list[dict]:
    return [{"id": e.id, "timestamp": e.timestamp} for e in queue.entries]


def _require_race(conn, race_id: str):
    race = get_race(conn, race_id)
    if race is None:
        raise HTTPException(404, "Race not found")
    return race


def _require_participant(conn, participant_id: str):
    participant = get_participant(conn, participant_id)
    if participant is None:
        raise HTTPException(404, "Participant not found")
    return participant


def _standings(conn, race_id: str):
    snap = load_snapshot(conn)
    return compute_ranked_results(snap.races, snap.participants, snap.passages, race_id)


async def _publish(conn, race_id: str, participant_id: Optional[str] = None):
    """Recompute the race after a write and push it to all screens."""
    results = _standings(conn, race_id)
    await ws_manager.broadcast_standings(race_id, results)
    if participant_id:
        for h in generate_highlights(results, participant_id):
            await ws_manager.broadcast_highlight(
                race_id, h["category"], h["text"], h["bib"], h["priority"],
            )


# ─── Pydantic models ─────────────────────────────────────────────────

class CheckpointBody(BaseModel):
    id: str
    name: str
    distance: float
    is_mandatory: bool = False

class RaceCreate(BaseModel):
    name: str
    distance: float
    type: RaceType = RaceType.MASS_START
    checkpoints: list[CheckpointBody] = []
    segment_names: Optional[list[str]] = None
    start_time: Optional[int] = None

class ParticipantCreate(BaseModel):
    bib: str
    first_name: str
    last_name: str
    gender: str
    category: str = ""
    club: Optional[str] = None
    city: Optional[str] = None
    start_time: Optional[int] = None

class PassageCreate(BaseModel):
    bib: str
    checkpoint_id: str
    timestamp: Optional[int] = None

class QueueTap(BaseModel):
    timestamp: Optional[int] = None

class BibConfirm(BaseModel):
    bib: str
    race_id: Optional[str] = None

class CorrectionBody(BaseModel):
    reference_bib: str

class RaceStart(BaseModel):
    start_time: Optional[int] = None

class PostAssignmentBody(BaseModel):
    race_id: str
    checkpoint_id: str

class PostCreate(BaseModel):
    name: str
    assignments: list[PostAssignmentBody]

class PostPassageCreate(BaseModel):
    bib: str
    timestamp: Optional[int] = None

class EventName(BaseModel):
    name: str


# ═══════════════════════════════════════════════════════════════════════
# RACES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races")
async def list_races():
    conn = _get_conn()
    try:
        return [asdict(r) for r in get_races(conn)]
    finally:
        conn.close()


@router.post("/races")
async def create_race_endpoint(body: RaceCreate):
    ids = [cp.id for cp in body.checkpoints]
    if len(ids) != len(set(ids)):
        raise HTTPException(400, "Checkpoint ids must be unique within a race")
    conn = _get_conn()
    try:
        race_id = create_race(
            conn, body.name, body.distance, body.type,
            [Checkpoint(cp.id, cp.name, cp.distance, cp.is_mandatory)
             for cp in body.checkpoints],
            body.segment_names, body.start_time,
        )
        log_audit(conn, race_id, "create_race", "race", race_id, body.name)
        return {"id": race_id}
    finally:
        conn.close()


@router.get("/races/{race_id}")
async def get_race_endpoint(race_id: str):
    conn = _get_conn()
    try:
        return asdict(_require_race(conn, race_id))
    finally:
        conn.close()


@router.get("/races/{race_id}/course")
async def get_course_endpoint(race_id: str):
    conn = _get_conn()
    try:
        course = resolve_course_model(_require_race(conn, race_id))
        return {
            "points": [asdict(p) for p in course.points],
            "segment_names": list(course.segment_names),
            "mandatory_ids": sorted(course.mandatory_ids),
            "total_mandatory": course.total_mandatory,
        }
    finally:
        conn.close()


@router.post("/races/{race_id}/start")
async def start_race_endpoint(race_id: str, body: Optional[RaceStart] = None):
    conn = _get_conn()
    try:
        race = _require_race(conn, race_id)
        now = body.start_time if body and body.start_time is not None else _now_ms()
        try:
            changes = start_race(race, get_participants(conn, race_id), now)
        except TimingError as e:
            raise _http_error(e)
        apply_changes(conn, changes)
        log_audit(conn, race_id, "start_race", "race", race_id, str(now))
        await _publish(conn, race_id)
        return {"ok": True, "started": len(changes.status_updates)}
    finally:
        conn.close()


@router.post("/races/{race_id}/finish")
async def finish_race_endpoint(race_id: str):
    conn = _get_conn()
    try:
        race = _require_race(conn, race_id)
        apply_changes(conn, finish_race(race))
        log_audit(conn, race_id, "finish_race", "race", race_id)
        await _publish(conn, race_id)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# PARTICIPANTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/participants")
async def list_participants(race_id: str):
    conn = _get_conn()
    try:
        return [asdict(p) for p in get_participants(conn, race_id)]
    finally:
        conn.close()


@router.post("/races/{race_id}/participants")
async def create_participant_endpoint(race_id: str, body: ParticipantCreate):
    conn = _get_conn()
    try:
        _require_race(conn, race_id)
        try:
            pid = create_participant(
                conn, race_id, body.bib, body.first_name, body.last_name,
                body.gender, body.category, body.club, body.city, body.start_time,
            )
        except sqlite3.IntegrityError:
            raise HTTPException(409, f"Bib {body.bib} already used in this race")
        return {"id": pid}
    finally:
        conn.close()


@router.post("/participants/{participant_id}/abandon")
async def abandon_endpoint(participant_id: str):
    conn = _get_conn()
    try:
        participant = _require_participant(conn, participant_id)
        apply_changes(conn, mark_abandoned(participant))
        log_audit(conn, participant.race_id, "abandon", "participant",
                  participant_id, f"bib {participant.bib}")
        logger.info("Bib %s marked DNF", participant.bib)
        await _publish(conn, participant.race_id)
        return {"ok": True}
    finally:
        conn.close()


@router.post("/participants/{participant_id}/correct")
async def correct_endpoint(participant_id: str, body: CorrectionBody):
    """Rebuild a runner's passages from `reference_bib`, finishing 100 ms behind."""
    conn = _get_conn()
    try:
        target = _require_participant(conn, participant_id)
        snap = load_snapshot(conn)
        try:
            changes = correct_ranking(
                target, body.reference_bib,
                snap.participants, snap.passages, snap.races,
            )
        except TimingError as e:
            logger.warning("Correction of bib %s rejected: %s", target.bib, e)
            raise _http_error(e)
        apply_changes(conn, changes)
        log_audit(conn, target.race_id, "correct_ranking", "participant",
                  participant_id, f"bib {target.bib} from bib {body.reference_bib}")
        await _publish(conn, target.race_id, participant_id)
        return {
            "deleted": len(changes.passages_to_delete),
            "inserted": len(changes.passages_to_insert),
            "status": changes.status_updates[target.id].value,
        }
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# PASSAGES
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/passages")
async def list_passages(race_id: str, checkpoint_id: Optional[str] = None):
    conn = _get_conn()
    try:
        rows = get_passages(conn, race_id)
        if checkpoint_id:
            rows = [p for p in rows if p.checkpoint_id == checkpoint_id]
        return [asdict(p) for p in rows]
    finally:
        conn.close()


@router.post("/races/{race_id}/passages")
async def create_passage_endpoint(race_id: str, body: PassageCreate):
    """Marshal entry: bib seen at a checkpoint."""
    conn = _get_conn()
    try:
        snap = load_snapshot(conn)
        resolved = resolve_bib(snap.participants, snap.races, body.bib, race_id)
        if resolved is None:
            raise HTTPException(404, f"Unknown bib {body.bib}")
        participant, race = resolved
        try:
            passage = record_passage(participant, race, body.checkpoint_id,
                                     body.timestamp if body.timestamp is not None else _now_ms())
        except TimingError as e:
            raise _http_error(e)
        apply_changes(conn, ChangeSet(passages_to_insert=[passage]))
        await ws_manager.broadcast_passage(race.id, passage)
        await _publish(conn, race.id)
        return asdict(passage)
    finally:
        conn.close()


@router.delete("/passages/{passage_id}")
async def cancel_arrival_endpoint(passage_id: str):
    """Cancel a finish: passage removed, runner back on course."""
    conn = _get_conn()
    try:
        passage = get_passage(conn, passage_id)
        if passage is None:
            raise HTTPException(404, "Passage not found")
        try:
            changes = cancel_arrival(passage)
        except TimingError as e:
            raise _http_error(e)
        participant = _require_participant(conn, passage.participant_id)
        apply_changes(conn, changes)
        log_audit(conn, participant.race_id, "cancel_arrival", "passage",
                  passage_id, f"bib {passage.bib}")
        await _publish(conn, participant.race_id)
        return {"ok": True}
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# COMBINED MARSHAL POSTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/posts")
async def list_posts():
    conn = _get_conn()
    try:
        return [asdict(p) for p in get_combined_posts(conn)]
    finally:
        conn.close()


@router.post("/posts")
async def create_post_endpoint(body: PostCreate):
    """One physical post serving a checkpoint in each of several races."""
    post = CombinedPost(
        id=new_id(), name=body.name,
        assignments=[PostAssignment(a.race_id, a.checkpoint_id) for a in body.assignments],
    )
    conn = _get_conn()
    try:
        try:
            check_post(post, get_races(conn))
        except TimingError as e:
            raise HTTPException(400, str(e))
        create_combined_post(conn, post)
        log_audit(conn, None, "create_post", "post", post.id, post.name)
        return {"id": post.id}
    finally:
        conn.close()


@router.get("/posts/{post_id}")
async def get_post_endpoint(post_id: str):
    conn = _get_conn()
    try:
        post = get_combined_post(conn, post_id)
        if post is None:
            raise HTTPException(404, "Post not found")
        return asdict(post)
    finally:
        conn.close()


@router.post("/posts/{post_id}/passages")
async def post_passage_endpoint(post_id: str, body: PostPassageCreate):
    """Bib seen at a combined post; the bib's race picks the checkpoint."""
    conn = _get_conn()
    try:
        post = get_combined_post(conn, post_id)
        if post is None:
            raise HTTPException(404, "Post not found")
        snap = load_snapshot(conn)
        now = body.timestamp if body.timestamp is not None else _now_ms()
        try:
            passage = record_at_post(post, snap.participants, snap.races, body.bib, now)
        except TimingError as e:
            logger.warning("Post %s: bib %s rejected: %s", post.name, body.bib, e)
            raise _http_error(e)
        apply_changes(conn, ChangeSet(passages_to_insert=[passage]))
        participant = get_participant(conn, passage.participant_id)
        await ws_manager.broadcast_passage(participant.race_id, passage)
        await _publish(conn, participant.race_id)
        return asdict(passage)
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════

@router.get("/races/{race_id}/results")
async def results_endpoint(race_id: str, gender: Optional[str] = None,
                           category: Optional[str] = None):
    conn = _get_conn()
    try:
        results = _standings(conn, race_id)
        if gender:
            results = [r for r in results if r.gender == gender]
        if category:
            results = [r for r in results if r.category == category]
        return [r.to_dict() for r in results]
    finally:
        conn.close()


@router.get("/races/{race_id}/stats")
async def stats_endpoint(race_id: str):
    conn = _get_conn()
    try:
        return asdict(compute_stats(_standings(conn, race_id)))
    finally:
        conn.close()


@router.get("/races/{race_id}/flow")
async def flow_endpoint(race_id: str):
    conn = _get_conn()
    try:
        race = _require_race(conn, race_id)
        return compute_course_flow(race, _standings(conn, race_id))
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# CAPTURE STATIONS (hybrid finish queue)
# ═══════════════════════════════════════════════════════════════════════

@router.get("/stations/{station_id}/queue")
async def get_queue_endpoint(station_id: str):
    return _queue_to_list(get_station_queue(station_id))


@router.post("/stations/{station_id}/queue")
async def enqueue_endpoint(station_id: str, body: Optional[QueueTap] = None):
    """Freeze an arrival time now; the bib is attached later."""
    now = body.timestamp if body and body.timestamp is not None else _now_ms()
    queue = enqueue_timestamp(get_station_queue(station_id), now)
    _station_queues[station_id] = queue
    return {"id": queue.entries[-1].id, "timestamp": now, "pending": len(queue)}


@router.delete("/stations/{station_id}/queue/{entry_id}")
async def cancel_queue_entry_endpoint(station_id: str, entry_id: str):
    try:
        queue = cancel_timestamp(get_station_queue(station_id), entry_id)
    except TimingError as e:
        raise _http_error(e)
    _station_queues[station_id] = queue
    return {"pending": len(queue)}


@router.post("/stations/{station_id}/confirm")
async def confirm_bib_endpoint(station_id: str, body: BibConfirm):
    """Attach a bib to the oldest queued time (or now) as a finish."""
    conn = _get_conn()
    try:
        snap = load_snapshot(conn)
        try:
            result = confirm_bib(
                get_station_queue(station_id), body.bib,
                lambda bib: resolve_bib(snap.participants, snap.races, bib, body.race_id),
                _now_ms(), snap.passages,
            )
        except TimingError as e:
            logger.warning("Station %s: bib %s rejected: %s", station_id, body.bib, e)
            raise _http_error(e)

        apply_changes(conn, result.to_changes())
        _station_queues[station_id] = result.queue

        participant = get_participant(conn, result.passage.participant_id)
        await ws_manager.broadcast_passage(participant.race_id, result.passage)
        await _publish(conn, participant.race_id, participant.id)
        return {
            "passage": asdict(result.passage),
            "used_queued_timestamp": result.used_queued_timestamp,
            "missing_mandatory": result.missing_mandatory,
            "pending": len(result.queue),
        }
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════
# SETTINGS / AUDIT / BACKUP
# ═══════════════════════════════════════════════════════════════════════

@router.get("/settings/event-name")
async def get_event_name():
    conn = _get_conn()
    try:
        return {"name": get_setting(conn, "event_name", "Mon Événement")}
    finally:
        conn.close()


@router.put("/settings/event-name")
async def set_event_name(body: EventName):
    conn = _get_conn()
    try:
        set_setting(conn, "event_name", body.name.strip())
        return {"ok": True}
    finally:
        conn.close()


@router.get("/audit")
async def audit_endpoint(race_id: Optional[str] = None, limit: int = 100):
    conn = _get_conn()
    try:
        return [dict(r) for r in get_audit_log(conn, race_id, limit)]
    finally:
        conn.close()


@router.post("/backup")
async def backup_endpoint():
    try:
        path = create_backup("manual")
    except FileNotFoundError as e:
        raise HTTPException(409, str(e))
    return {"filename": path.name}


@router.get("/backups")
async def backups_endpoint():
    return list_backups()


@router.get("/status")
async def status_endpoint():
    conn = _get_conn()
    try:
        races = get_races(conn)
        return {
            "ok": True,
            "races": len(races),
            "running": sum(1 for r in races if r.status == RaceStatus.RUNNING),
            "ws_clients": ws_manager.connection_count,
            "stations": {sid: len(q) for sid, q in _station_queues.items()},
        }
    finally:
        conn.close()
