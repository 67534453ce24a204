"""
models.py — Race, participant and passage records plus derived result types.

All instants are epoch milliseconds, distances are kilometres.
Input records (Race, Participant, Passage) are owned by the store; result types
(RankedResult, SegmentSplit, RaceStats) are recomputed on every change and
never persisted.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional

START_ID = "start"
FINISH_ID = "finish"
START_NAME = "Départ"
FINISH_NAME = "Arrivée"


def new_id() -> str:
    return uuid.uuid4().hex


class RaceType(str, Enum):
    MASS_START = "mass_start"
    TIME_TRIAL = "time_trial"


class RaceStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    FINISHED = "finished"


class ParticipantStatus(str, Enum):
    REGISTERED = "registered"
    STARTED = "started"
    FINISHED = "finished"
    DNF = "dnf"


# ---------------------------------------------------------------------------
# Input records
# ---------------------------------------------------------------------------

@dataclass
class Checkpoint:
    id: str
    name: str
    distance: float
    is_mandatory: bool = False


@dataclass
class Race:
    id: str
    name: str
    distance: float
    type: RaceType = RaceType.MASS_START
    status: RaceStatus = RaceStatus.READY
    start_time: Optional[int] = None
    checkpoints: list[Checkpoint] = field(default_factory=list)
    segment_names: Optional[list[str]] = None

    def checkpoint_name(self, checkpoint_id: str) -> Optional[str]:
        """Name of a checkpoint or sentinel point, None if unknown."""
        if checkpoint_id == START_ID:
            return START_NAME
        if checkpoint_id == FINISH_ID:
            return FINISH_NAME
        for cp in self.checkpoints:
            if cp.id == checkpoint_id:
                return cp.name
        return None


@dataclass
class Participant:
    id: str
    bib: str
    first_name: str
    last_name: str
    gender: str
    category: str
    race_id: str
    status: ParticipantStatus = ParticipantStatus.REGISTERED
    club: Optional[str] = None
    city: Optional[str] = None
    start_time: Optional[int] = None

    def effective_start_time(self, race: Optional[Race],
                             fallback: int = 0) -> int:
        """Individual start wins over the race's global start."""
        if self.start_time:
            return self.start_time
        if race is not None and race.start_time:
            return race.start_time
        return fallback

    @property
    def full_name(self) -> str:
        return f"{self.last_name.upper()} {self.first_name}"


@dataclass
class Passage:
    id: str
    participant_id: str
    bib: str
    checkpoint_id: str
    checkpoint_name: str
    timestamp: int
    net_time: int
    post_id: Optional[str] = None


@dataclass
class PostAssignment:
    race_id: str
    checkpoint_id: str


@dataclass
class CombinedPost:
    """One physical marshal post serving a checkpoint in several races."""
    id: str
    name: str
    assignments: list[PostAssignment] = field(default_factory=list)

    def checkpoint_for(self, race_id: str) -> Optional[str]:
        for a in self.assignments:
            if a.race_id == race_id:
                return a.checkpoint_id
        return None


@dataclass
class Snapshot:
    races: list[Race] = field(default_factory=list)
    participants: list[Participant] = field(default_factory=list)
    passages: list[Passage] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Course model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CoursePoint:
    id: str
    name: str
    distance: float


@dataclass(frozen=True)
class CourseModel:
    points: tuple[CoursePoint, ...]
    segment_names: tuple[str, ...]
    mandatory_ids: frozenset[str]
    total_mandatory: int


# ---------------------------------------------------------------------------
# Derived results
# ---------------------------------------------------------------------------

@dataclass
class SegmentSplit:
    label: str
    duration_ms: Optional[int]
    duration: str
    speed: str
    rank_on_segment: int = 0


@dataclass
class RankedResult:
    id: str
    bib: str
    full_name: str
    first_name: str
    last_name: str
    category: str
    gender: str
    club: str
    city: str
    status: ParticipantStatus
    progress: int
    net_time_ms: int
    display_time: str
    display_speed: str
    last_checkpoint_id: str
    last_checkpoint_name: str
    passed_checkpoints_count: int
    last_timestamp: int
    segment_times: dict[str, str] = field(default_factory=dict)
    splits: list[SegmentSplit] = field(default_factory=list)
    rank: int = 0
    rank_gender: int = 0
    rank_category: int = 0
    time_behind: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class RaceStats:
    total_engaged: int = 0
    finished_count: int = 0
    dnf_count: int = 0
    on_track_count: int = 0


# ---------------------------------------------------------------------------
# Write side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueuedTimestamp:
    id: str
    timestamp: int


@dataclass(frozen=True)
class CaptureQueue:
    """FIFO of ghost timestamps for one capture station."""
    entries: tuple[QueuedTimestamp, ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    def peek(self) -> Optional[QueuedTimestamp]:
        return self.entries[0] if self.entries else None


@dataclass
class ChangeSet:
    """Batch of writes produced by an operation, applied all-or-nothing."""
    passages_to_delete: list[str] = field(default_factory=list)
    passages_to_insert: list[Passage] = field(default_factory=list)
    status_updates: dict[str, ParticipantStatus] = field(default_factory=dict)
    race_updates: dict[str, dict] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.passages_to_delete or self.passages_to_insert
                    or self.status_updates or self.race_updates)


@dataclass
class ConfirmResult:
    passage: Passage
    queue: CaptureQueue
    status_update: tuple[str, ParticipantStatus]
    used_queued_timestamp: bool
    missing_mandatory: list[str] = field(default_factory=list)

    def to_changes(self) -> ChangeSet:
        pid, status = self.status_update
        return ChangeSet(passages_to_insert=[self.passage],
                         status_updates={pid: status})
