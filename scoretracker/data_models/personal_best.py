"""
Personal best data models.

MergedPersonalBest is the in-memory result of a consolidation pass; it is
computed once and may be written more than once if the write is retried.
PersonalBestSnapshot is the pre-image the session tracker measures against.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from scoretracker.constants import ComposedFromConstants


@dataclass(frozen=True)
class ComposedFromEntry:
    name: str
    score_id: str

    def to_dict(self) -> Dict[str, str]:
        return {'name': self.name, 'score_id': self.score_id}


@dataclass(frozen=True)
class MergedPersonalBest:
    """Consolidated state for one (user, chart), not yet persisted."""
    user_id: int
    chart_id: str
    song_id: int
    game: str
    playtype: str
    score: float
    percent: float
    grade: str
    grade_index: int
    lamp: str
    lamp_index: int
    optional: Mapping[str, Any]
    score_pb_id: str
    lamp_pb_id: str
    other: Tuple[ComposedFromEntry, ...]
    calculated: Mapping[str, Optional[float]]
    time_achieved: Optional[datetime]
    # sorted score ids of the record set this was computed from
    fingerprint: Tuple[str, ...] = field(default=(), compare=False)
    # recomputed `calculated` for every source record, by score id
    score_ratings: Mapping[str, Mapping[str, Optional[float]]] = field(default_factory=dict, compare=False)

    @property
    def composed_from(self) -> Dict[str, Any]:
        return {
            ComposedFromConstants.SCORE_PB: self.score_pb_id,
            ComposedFromConstants.LAMP_PB: self.lamp_pb_id,
            ComposedFromConstants.OTHER: [entry.to_dict() for entry in self.other],
        }

    def to_row(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'chart_id': self.chart_id,
            'song_id': self.song_id,
            'game': self.game,
            'playtype': self.playtype,
            'score': self.score,
            'percent': self.percent,
            'grade': self.grade,
            'grade_index': self.grade_index,
            'lamp': self.lamp,
            'lamp_index': self.lamp_index,
            'optional': dict(self.optional),
            'composed_from': self.composed_from,
            'calculated': dict(self.calculated),
            'time_achieved': self.time_achieved,
        }


@dataclass(frozen=True)
class PersonalBestSnapshot:
    """The personal best as it stood before a new score was merged in."""
    score: float
    percent: float
    lamp_index: int
    grade_index: int


@dataclass(frozen=True)
class SessionSummary:
    """Session header plus its per-score deltas, for display."""
    session_id: int
    user_id: int
    game: str
    playtype: str
    name: Optional[str]
    time_started: datetime
    time_ended: datetime
    calculated: Mapping[str, Optional[float]]
    score_infos: List[Dict[str, Any]]
