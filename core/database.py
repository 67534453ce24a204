"""
database.py — SQLite store for races, participants and passages.

Single-file database with WAL mode for concurrent reads. The timing core never
touches this module; it receives a Snapshot from load_snapshot() and hands back
ChangeSets that apply_changes() writes in one transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Optional

from core.models import (
    Race, Checkpoint, Participant, Passage, Snapshot, ChangeSet,
    CombinedPost, PostAssignment,
    RaceType, RaceStatus, ParticipantStatus, new_id,
)

logger = logging.getLogger("trailtiming.db")

DB_DIR = Path(__file__).parent.parent / "data"
DB_NAME = "trailtiming.db"


def get_db_path() -> Path:
    DB_DIR.mkdir(parents=True, exist_ok=True)
    return DB_DIR / DB_NAME


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Return a new connection with WAL mode and foreign keys enabled."""
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(str(db_path), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS races (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    distance        REAL NOT NULL,
    type            TEXT NOT NULL DEFAULT 'mass_start',
    status          TEXT NOT NULL DEFAULT 'ready',
    start_time      INTEGER,
    checkpoints     TEXT NOT NULL DEFAULT '[]',
    segment_names   TEXT,
    created_at      TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS participants (
    id          TEXT PRIMARY KEY,
    race_id     TEXT NOT NULL REFERENCES races(id),
    bib         TEXT NOT NULL,
    first_name  TEXT NOT NULL,
    last_name   TEXT NOT NULL,
    gender      TEXT NOT NULL,
    category    TEXT NOT NULL DEFAULT '',
    club        TEXT,
    city        TEXT,
    status      TEXT NOT NULL DEFAULT 'registered',
    start_time  INTEGER,
    UNIQUE(race_id, bib)
);

CREATE TABLE IF NOT EXISTS passages (
    id              TEXT PRIMARY KEY,
    participant_id  TEXT NOT NULL REFERENCES participants(id),
    bib             TEXT NOT NULL,
    checkpoint_id   TEXT NOT NULL,
    checkpoint_name TEXT NOT NULL,
    timestamp       INTEGER NOT NULL,
    net_time        INTEGER NOT NULL,
    post_id         TEXT,
    received_at     TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    race_id     TEXT,
    action      TEXT NOT NULL,
    entity_type TEXT,
    entity_id   TEXT,
    details     TEXT,
    source      TEXT DEFAULT 'operator',
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_participants_race ON participants(race_id, bib);
CREATE INDEX IF NOT EXISTS idx_passages_participant ON passages(participant_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_race ON audit_log(race_id, created_at);

CREATE TABLE IF NOT EXISTS combined_posts (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    assignments TEXT NOT NULL DEFAULT '[]',
    created_at  TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


def migrate_db(conn: sqlite3.Connection) -> None:
    """Bring databases created by earlier versions up to the current schema."""
    def _has_column(table: str, column: str) -> bool:
        cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(c["name"] == column for c in cols)

    # passages: combined marshal post that recorded the passage
    if not _has_column("passages", "post_id"):
        conn.execute("ALTER TABLE passages ADD COLUMN post_id TEXT")
        logger.info("Migrated passages: added post_id")

    conn.commit()


# ======================================================================
# SETTINGS
# ======================================================================

def get_setting(conn: sqlite3.Connection, key: str, default: str = "") -> str:
    row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute(
        "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
        (key, value)
    )
    conn.commit()


# ======================================================================
# ROW CONVERSION
# ======================================================================

def row_to_race(row: sqlite3.Row) -> Race:
    checkpoints = [
        Checkpoint(cp["id"], cp["name"], float(cp["distance"]),
                   bool(cp.get("is_mandatory", False)))
        for cp in json.loads(row["checkpoints"] or "[]")
    ]
    segment_names = json.loads(row["segment_names"]) if row["segment_names"] else None
    return Race(
        id=row["id"],
        name=row["name"],
        distance=row["distance"],
        type=RaceType(row["type"]),
        status=RaceStatus(row["status"]),
        start_time=row["start_time"],
        checkpoints=checkpoints,
        segment_names=segment_names,
    )


def row_to_participant(row: sqlite3.Row) -> Participant:
    return Participant(
        id=row["id"],
        bib=row["bib"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        gender=row["gender"],
        category=row["category"],
        race_id=row["race_id"],
        status=ParticipantStatus(row["status"]),
        club=row["club"],
        city=row["city"],
        start_time=row["start_time"],
    )


def row_to_passage(row: sqlite3.Row) -> Passage:
    return Passage(
        id=row["id"],
        participant_id=row["participant_id"],
        bib=row["bib"],
        checkpoint_id=row["checkpoint_id"],
        checkpoint_name=row["checkpoint_name"],
        timestamp=row["timestamp"],
        net_time=row["net_time"],
        post_id=row["post_id"],
    )


# ======================================================================
# CREATE
# ======================================================================

def create_race(conn: sqlite3.Connection, name: str, distance: float,
                race_type: RaceType = RaceType.MASS_START,
                checkpoints: Optional[list[Checkpoint]] = None,
                segment_names: Optional[list[str]] = None,
                start_time: Optional[int] = None,
                race_id: Optional[str] = None) -> str:
    """Insert a new race and return its id."""
    race_id = race_id or new_id()
    cps = [
        {"id": cp.id, "name": cp.name, "distance": cp.distance,
         "is_mandatory": cp.is_mandatory}
        for cp in (checkpoints or [])
    ]
    conn.execute(
        """INSERT INTO races (id, name, distance, type, start_time, checkpoints, segment_names)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (race_id, name, distance, RaceType(race_type).value, start_time,
         json.dumps(cps, ensure_ascii=False),
         json.dumps(segment_names, ensure_ascii=False) if segment_names else None)
    )
    conn.commit()
    return race_id


def create_participant(conn: sqlite3.Connection, race_id: str, bib: str,
                       first_name: str, last_name: str, gender: str,
                       category: str = "", club: Optional[str] = None,
                       city: Optional[str] = None,
                       start_time: Optional[int] = None,
                       participant_id: Optional[str] = None) -> str:
    """Insert a participant. Raises sqlite3.IntegrityError on a duplicate bib."""
    participant_id = participant_id or new_id()
    conn.execute(
        """INSERT INTO participants (id, race_id, bib, first_name, last_name,
           gender, category, club, city, start_time)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (participant_id, race_id, bib.strip(), first_name, last_name.upper(),
         gender, category, club, city, start_time)
    )
    conn.commit()
    return participant_id


def _insert_passage(conn: sqlite3.Connection, p: Passage) -> None:
    conn.execute(
        """INSERT INTO passages (id, participant_id, bib, checkpoint_id,
           checkpoint_name, timestamp, net_time, post_id)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (p.id, p.participant_id, p.bib, p.checkpoint_id,
         p.checkpoint_name, p.timestamp, p.net_time, p.post_id)
    )


def create_passage(conn: sqlite3.Connection, passage: Passage) -> str:
    _insert_passage(conn, passage)
    conn.commit()
    return passage.id


# ======================================================================
# READ
# ======================================================================

def get_races(conn: sqlite3.Connection) -> list[Race]:
    rows = conn.execute("SELECT * FROM races ORDER BY created_at, name").fetchall()
    return [row_to_race(r) for r in rows]


def get_race(conn: sqlite3.Connection, race_id: str) -> Optional[Race]:
    row = conn.execute("SELECT * FROM races WHERE id=?", (race_id,)).fetchone()
    return row_to_race(row) if row else None


def get_participants(conn: sqlite3.Connection,
                     race_id: Optional[str] = None) -> list[Participant]:
    if race_id is None:
        rows = conn.execute("SELECT * FROM participants ORDER BY race_id, bib").fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM participants WHERE race_id=? ORDER BY bib", (race_id,)
        ).fetchall()
    return [row_to_participant(r) for r in rows]


def get_participant(conn: sqlite3.Connection,
                    participant_id: str) -> Optional[Participant]:
    row = conn.execute(
        "SELECT * FROM participants WHERE id=?", (participant_id,)
    ).fetchone()
    return row_to_participant(row) if row else None


def get_passages(conn: sqlite3.Connection,
                 race_id: Optional[str] = None) -> list[Passage]:
    """Passages in timestamp order, optionally limited to one race."""
    if race_id is None:
        rows = conn.execute(
            "SELECT * FROM passages ORDER BY timestamp ASC, rowid ASC"
        ).fetchall()
    else:
        rows = conn.execute(
            """SELECT pa.* FROM passages pa
               JOIN participants p ON pa.participant_id = p.id
               WHERE p.race_id=?
               ORDER BY pa.timestamp ASC, pa.rowid ASC""",
            (race_id,)
        ).fetchall()
    return [row_to_passage(r) for r in rows]


def get_passage(conn: sqlite3.Connection, passage_id: str) -> Optional[Passage]:
    row = conn.execute("SELECT * FROM passages WHERE id=?", (passage_id,)).fetchone()
    return row_to_passage(row) if row else None


def load_snapshot(conn: sqlite3.Connection) -> Snapshot:
    """Everything the ranking kernel needs, read in one go."""
    return Snapshot(
        races=get_races(conn),
        participants=get_participants(conn),
        passages=get_passages(conn),
    )


# ======================================================================
# BATCHED WRITE
# ======================================================================

_RACE_UPDATABLE = {"name", "status", "start_time"}


def apply_changes(conn: sqlite3.Connection, changes: ChangeSet) -> None:
    """Write a ChangeSet all-or-nothing.

    Deletes run before inserts so a correction never leaves a runner with
    both old and cloned passages. Any failure rolls the whole batch back.
    """
    if changes.is_empty():
        return

    try:
        for passage_id in changes.passages_to_delete:
            conn.execute("DELETE FROM passages WHERE id=?", (passage_id,))

        for passage in changes.passages_to_insert:
            _insert_passage(conn, passage)

        for participant_id, status in changes.status_updates.items():
            cur = conn.execute(
                "UPDATE participants SET status=? WHERE id=?",
                (ParticipantStatus(status).value, participant_id)
            )
            if cur.rowcount == 0:
                raise sqlite3.IntegrityError(f"Unknown participant {participant_id}")

        for race_id, fields in changes.race_updates.items():
            unknown = set(fields) - _RACE_UPDATABLE
            if unknown:
                raise ValueError(f"Cannot update race fields: {sorted(unknown)}")
            for key, value in fields.items():
                if isinstance(value, RaceStatus):
                    value = value.value
                conn.execute(f"UPDATE races SET {key}=? WHERE id=?", (value, race_id))

        conn.commit()
    except Exception:
        conn.rollback()
        logger.warning("Write batch rolled back (%d deletes, %d inserts)",
                       len(changes.passages_to_delete),
                       len(changes.passages_to_insert))
        raise


# ======================================================================
# AUDIT LOG
# ======================================================================

def log_audit(conn: sqlite3.Connection, race_id: Optional[str],
              action: str, entity_type: str = "",
              entity_id: Optional[str] = None,
              details: str = "", source: str = "operator") -> int:
    """Log an operator action for audit trail."""
    cur = conn.execute(
        """INSERT INTO audit_log (race_id, action, entity_type, entity_id,
           details, source)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (race_id, action, entity_type, entity_id, details, source)
    )
    conn.commit()
    return cur.lastrowid


def get_audit_log(conn: sqlite3.Connection, race_id: Optional[str] = None,
                  limit: int = 100) -> list[sqlite3.Row]:
    """Get audit log entries, newest first."""
    if race_id:
        return conn.execute(
            "SELECT * FROM audit_log WHERE race_id=? ORDER BY id DESC LIMIT ?",
            (race_id, limit)
        ).fetchall()
    return conn.execute(
        "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
    ).fetchall()


# ======================================================================
# COMBINED POSTS
# ======================================================================

def row_to_post(row: sqlite3.Row) -> CombinedPost:
    return CombinedPost(
        id=row["id"],
        name=row["name"],
        assignments=[
            PostAssignment(a["race_id"], a["checkpoint_id"])
            for a in json.loads(row["assignments"] or "[]")
        ],
    )


def create_combined_post(conn: sqlite3.Connection, post: CombinedPost) -> str:
    conn.execute(
        "INSERT INTO combined_posts (id, name, assignments) VALUES (?, ?, ?)",
        (post.id, post.name,
         json.dumps([{"race_id": a.race_id, "checkpoint_id": a.checkpoint_id}
                     for a in post.assignments]))
    )
    conn.commit()
    return post.id


def get_combined_posts(conn: sqlite3.Connection) -> list[CombinedPost]:
    rows = conn.execute("SELECT * FROM combined_posts ORDER BY created_at, name").fetchall()
    return [row_to_post(r) for r in rows]


def get_combined_post(conn: sqlite3.Connection, post_id: str) -> Optional[CombinedPost]:
    row = conn.execute("SELECT * FROM combined_posts WHERE id=?", (post_id,)).fetchone()
    return row_to_post(row) if row else None


# ======================================================================
# BACKUP
# ======================================================================

BACKUP_PREFIX = "trailtiming_"


def get_backup_dir() -> Path:
    return DB_DIR / "backups"


def create_backup(label: str = "") -> Path:
    """Copy the live database with the SQLite backup API.

    Raises FileNotFoundError when no database has been created yet.
    """
    src = get_db_path()
    if not src.exists():
        raise FileNotFoundError(f"No database at {src}")

    backup_dir = get_backup_dir()
    backup_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    target = backup_dir / f"{BACKUP_PREFIX}{stamp}{'_' + label if label else ''}.db"

    with closing(sqlite3.connect(str(src))) as source, \
            closing(sqlite3.connect(str(target))) as dest:
        source.backup(dest)

    logger.info("Backup written: %s", target.name)
    return target


def list_backups() -> list[dict]:
    """Backup files, most recent first."""
    backup_dir = get_backup_dir()
    if not backup_dir.is_dir():
        return []

    entries = []
    for f in backup_dir.glob(f"{BACKUP_PREFIX}*.db"):
        st = f.stat()
        entries.append({
            "filename": f.name,
            "size_bytes": st.st_size,
            "created": datetime.fromtimestamp(st.st_mtime).isoformat(timespec="seconds"),
        })
    entries.sort(key=lambda e: (e["created"], e["filename"]), reverse=True)
    return entries
