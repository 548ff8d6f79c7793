"""
Import pipeline data models.

Provides immutable data transfer objects passed between the validator, the
import service and its callers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class MatchType(Enum):
    IN_GAME_ID = "inGameID"
    CHART_ID = "chartID"
    SONG_TITLE = "songTitle"


class ImportStatus(Enum):
    IMPORTED = "imported"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"
    CONSOLIDATION_FAILED = "consolidation_failed"
    # lock timeout or storage failure; nothing was written
    FAILED = "failed"


@dataclass(frozen=True)
class ChartIdentity:
    """How a submission names its chart."""
    match_type: MatchType
    identifier: Any
    difficulty: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChartIdentity":
        return cls(
            match_type=MatchType(data['match_type']),
            identifier=data['identifier'],
            difficulty=data.get('difficulty'),
        )


@dataclass(frozen=True)
class ScoreSubmission:
    """One raw score as handed over by a converter."""
    identity: ChartIdentity
    payload: Mapping[str, Any]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScoreSubmission":
        return cls(
            identity=ChartIdentity.from_dict(data['identity']),
            payload=dict(data['payload']),
        )


@dataclass(frozen=True)
class ValidatedScore:
    """A submission that passed validation, ready to be stored as a Score."""
    score_id: str
    user_id: int
    chart_id: str
    song_id: int
    game: str
    playtype: str
    score: float
    percent: float
    lamp: str
    lamp_index: int
    grade: str
    grade_index: int
    optional: Mapping[str, Any]
    calculated: Mapping[str, Optional[float]]
    time_achieved: Optional[datetime]
    import_type: str
    service: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            'score_id': self.score_id,
            'user_id': self.user_id,
            'chart_id': self.chart_id,
            'song_id': self.song_id,
            'game': self.game,
            'playtype': self.playtype,
            'score': self.score,
            'percent': self.percent,
            'lamp': self.lamp,
            'lamp_index': self.lamp_index,
            'grade': self.grade,
            'grade_index': self.grade_index,
            'optional': dict(self.optional),
            'calculated': dict(self.calculated),
            'time_achieved': self.time_achieved,
            'import_type': self.import_type,
            'service': self.service,
        }


@dataclass(frozen=True)
class ImportResult:
    """Outcome of importing one submission."""
    status: ImportStatus
    score_id: Optional[str] = None
    chart_id: Optional[str] = None
    session_id: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status in (ImportStatus.IMPORTED, ImportStatus.CONSOLIDATION_FAILED)


@dataclass(frozen=True)
class BatchImportSummary:
    results: List[ImportResult]
    counts: Dict[str, int] = field(default_factory=dict)
    session_ids: List[int] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: List[ImportResult]) -> "BatchImportSummary":
        counts = {status.value: 0 for status in ImportStatus}
        session_ids = []
        for result in results:
            counts[result.status.value] += 1
            if result.session_id is not None and result.session_id not in session_ids:
                session_ids.append(result.session_id)
        return cls(results=list(results), counts=counts, session_ids=session_ids)
